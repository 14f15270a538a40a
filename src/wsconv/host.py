"""
Host-side stream model and reference convolution.

Stream framing:
    rx: K*K weight bytes (row-major), then for every output tile in raster
        order its input_tile_size^2 halo'd input bytes (row-major, zero
        beyond the image).
    tx: for every output tile, oh*ow outputs row-major, each output as
        word_bytes little-endian bytes.

Example:
    >>> image = np.random.randint(0, 256, (16, 16), dtype=np.uint8)
    >>> kernel = np.ones((3, 3), dtype=np.uint8)
    >>> run = run_convolution(image, kernel)
    >>> bool(np.array_equal(run.output, conv2d_reference(image, kernel)))
    True
"""

from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np

from .config import DEFAULT_CONFIG, EngineConfig, OutputTile, TileGeometry
from .controller.control_fsm import FsmState
from .top import ConvEngineSim, HostInputs, HostOutputs
from .util.packing import pack_word


def conv2d_reference(image: np.ndarray, kernel: np.ndarray) -> np.ndarray:
    """Valid 2D cross-correlation with unsigned 32-bit wrap-around."""
    windows = np.lib.stride_tricks.sliding_window_view(image.astype(np.int64), kernel.shape)
    out = np.einsum("ijkl,kl->ij", windows, kernel.astype(np.int64))
    return (out & 0xFFFFFFFF).astype(np.uint32)


@dataclass
class HostStream:
    """
    DRAM-side producer/consumer of the engine's byte streams.

    ``rx_valid_pattern`` and ``tx_ready_pattern`` map the cycle number to
    whether the host offers a byte / accepts a byte in that cycle. A byte
    once offered stays offered until it is taken.
    """

    image: np.ndarray
    kernel: np.ndarray
    config: EngineConfig = field(default_factory=lambda: DEFAULT_CONFIG)
    rx_valid_pattern: Callable[[int], bool] | None = None
    tx_ready_pattern: Callable[[int], bool] | None = None

    geometry: TileGeometry = field(init=False)  # type: ignore[assignment]
    rx_bytes: list[int] = field(init=False, default_factory=list)
    tx_bytes: list[int] = field(init=False, default_factory=list)
    rx_cursor: int = 0
    rx_offered: bool = False

    def __post_init__(self):
        n, k = self.image.shape[0], self.kernel.shape[0]
        assert self.image.shape == (n, n), "image must be square"
        assert self.kernel.shape == (k, k), "kernel must be square"
        self.geometry = TileGeometry(n=n, k=k, array_size=self.config.array_size)
        self.rx_bytes = self.ingress_bytes()

    def input_tile(self, tile: OutputTile) -> np.ndarray:
        """Halo'd input region of an output tile, zero beyond the image."""
        size = self.geometry.input_tile_size
        region = np.zeros((size, size), dtype=np.uint8)
        patch = self.image[tile.row : tile.row + size, tile.col : tile.col + size]
        region[: patch.shape[0], : patch.shape[1]] = patch
        return region

    def ingress_bytes(self) -> list[int]:
        data = [int(v) for v in self.kernel.astype(np.uint8).flatten()]
        for tile in self.geometry.output_tiles():
            data.extend(int(v) for v in self.input_tile(tile).flatten())
        return data

    def next_inputs(self, cycle: int) -> HostInputs:
        """Stream signals the host drives in ``cycle``."""
        if not self.rx_offered and self.rx_cursor < len(self.rx_bytes):
            self.rx_offered = self.rx_valid_pattern is None or self.rx_valid_pattern(cycle)
        tx_ready = self.tx_ready_pattern is None or self.tx_ready_pattern(cycle)
        return HostInputs(
            rx_data=self.rx_bytes[self.rx_cursor] if self.rx_offered else 0,
            rx_valid=self.rx_offered,
            tx_ready=tx_ready,
        )

    def observe(self, outputs: HostOutputs):
        """Account for the transfers that fired in the last cycle."""
        if outputs.rx_fire:
            self.rx_cursor += 1
            self.rx_offered = False
        if outputs.tx_fire:
            self.tx_bytes.append(outputs.tx_data)

    def result(self) -> np.ndarray:
        """Reassemble the received bytes into the output_dim^2 result."""
        geo = self.geometry
        wb = self.config.word_bytes
        out = np.zeros((geo.output_dim, geo.output_dim), dtype=np.uint32)
        pos = 0
        for tile in geo.output_tiles():
            for i in range(tile.rows):
                for j in range(tile.cols):
                    word_bytes = self.tx_bytes[pos : pos + wb]
                    pos += wb
                    if len(word_bytes) < wb:
                        return out
                    out[tile.row + i, tile.col + j] = pack_word(word_bytes)
        return out


@dataclass
class ConvRun:
    """Outcome of one end-to-end run."""

    output: np.ndarray
    cycles: int
    completed: bool
    weight_count: int
    input_count: int
    output_count: int
    state_trace: list[FsmState]
    statistics: dict


def run_convolution(
    image: np.ndarray,
    kernel: np.ndarray,
    config: EngineConfig = DEFAULT_CONFIG,
    rx_valid_pattern: Callable[[int], bool] | None = None,
    tx_ready_pattern: Callable[[int], bool] | None = None,
    max_cycles: int = 1_000_000,
    engine: ConvEngineSim | None = None,
) -> ConvRun:
    """
    Run one convolution through the engine.

    Args:
        image: N x N uint8 image
        kernel: K x K uint8 kernel
        config: Engine configuration
        rx_valid_pattern: cycle -> host offers a byte (default: always)
        tx_ready_pattern: cycle -> host accepts a byte (default: always)
        max_cycles: Cycles before giving up
        engine: Existing engine to reuse (default: a fresh one)

    Returns:
        ConvRun with the reassembled output and the final counters.
    """
    engine = engine or ConvEngineSim(config)
    stream = HostStream(
        image,
        kernel,
        config=config,
        rx_valid_pattern=rx_valid_pattern,
        tx_ready_pattern=tx_ready_pattern,
    )

    n, k = image.shape[0], kernel.shape[0]
    outputs = engine.step(HostInputs(start=True, config_n=n, config_k=k))
    trace = [outputs.state]
    cycles = 1

    while not outputs.done and cycles < max_cycles:
        outputs = engine.step(stream.next_inputs(cycles))
        stream.observe(outputs)
        if outputs.state != trace[-1]:
            trace.append(outputs.state)
        cycles += 1
    if outputs.done:
        trace.append(engine.state)

    regs = engine.fsm.regs
    return ConvRun(
        output=stream.result(),
        cycles=cycles,
        completed=outputs.done,
        weight_count=regs.weight_count,
        input_count=regs.input_count,
        output_count=regs.output_count,
        state_trace=trace,
        statistics=engine.get_statistics(),
    )
