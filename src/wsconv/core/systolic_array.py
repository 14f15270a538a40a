"""
SystolicArray - A weight-stationary mesh of PEs for 2D convolution.

Wiring (A x A PEs):

           psum_top_0     psum_top_1         psum_top_{A-1}
              |              |                   |
pixel_in_0 -> [PE 0,0] ----> [PE 0,1] --> ... -> [PE 0,A-1] -> pixel_out_0
              |              |                   |
pixel_in_1 -> [PE 1,0] ----> [PE 1,1] --> ... -> [PE 1,A-1] -> pixel_out_1
              |              |                   |
              ...
              |              |                   |
           psum_out_0     psum_out_1         psum_out_{A-1}

Each arrow carries the previous cycle's registered value: pixels move one PE
right per cycle, partial sums one PE down per cycle.

Convolution mapping (behavioral model):

- PE (r, c) of kernel tile (kr, kc) holds W[kr*A + r][kc*A + (A-1-c)].
- Row r is fed a wave per output row, skewed by r cycles:
      local = step - r,  wave = local // P,  q = local % P,  P = ow + A - 1
      pixel = window[wave + r][q]    (0 outside the fed range)
- Output (i, j) is complete on the bottom edge after step
      tau = i * P + j + 2A - 2
  and equals the sum of the bottom-row psum_out values. It is added into the
  accumulator plane, which is cleared once per kernel application and summed
  across kernel tiles.
"""

from dataclasses import dataclass, field

import numpy as np
from amaranth import Module, unsigned
from amaranth.lib.wiring import Component, In, Out

from ..config import EngineConfig
from ..errors import ProtocolViolation
from .pe import PE


class SystolicArray(Component):
    """
    A x A mesh of PEs.

    Ports:
        pixel_in_0..A-1: Input pixels (left edge, one per row)
        psum_top_0..A-1: Partial sums entering the top edge
        psum_mem_0..A-1: Partial sums restored into the top row (load_psum)
        load_psum: Top row accumulates onto psum_mem instead of psum_top
        weight_valid: Load weight_data into PE (weight_row, weight_col)
        weight_row, weight_col, weight_data: Weight load address and value
        enable: Advance every PE
        clear: Clear every PE (weights kept)

        pixel_out_0..A-1: Pixels leaving the right edge
        psum_out_0..A-1: Partial sums leaving the bottom edge

    While weight_valid is high only the addressed PE changes state.

    Parameters:
        config: EngineConfig with array_size and data widths
    """

    def __init__(self, config: EngineConfig):
        self.config = config

        size = config.array_size
        idx_bits = max(1, (size - 1).bit_length())

        ports = {}
        for r in range(size):
            ports[f"pixel_in_{r}"] = In(unsigned(config.input_bits))
        for c in range(size):
            ports[f"psum_top_{c}"] = In(unsigned(config.acc_bits))
            ports[f"psum_mem_{c}"] = In(unsigned(config.acc_bits))

        ports["load_psum"] = In(1)
        ports["weight_valid"] = In(1)
        ports["weight_row"] = In(unsigned(idx_bits))
        ports["weight_col"] = In(unsigned(idx_bits))
        ports["weight_data"] = In(unsigned(config.weight_bits))
        ports["enable"] = In(1)
        ports["clear"] = In(1)

        for r in range(size):
            ports[f"pixel_out_{r}"] = Out(unsigned(config.input_bits))
        for c in range(size):
            ports[f"psum_out_{c}"] = Out(unsigned(config.acc_bits))

        super().__init__(ports)

    def elaborate(self, _platform):
        m = Module()
        cfg = self.config
        size = cfg.array_size

        pes = [[PE(cfg) for _ in range(size)] for _ in range(size)]
        for r in range(size):
            for c in range(size):
                m.submodules[f"pe_{r}_{c}"] = pes[r][c]

        # =================================================================
        # Horizontal (pixel) wiring - flows left to right
        # =================================================================
        for r in range(size):
            m.d.comb += pes[r][0].pixel_in.eq(getattr(self, f"pixel_in_{r}"))
            for c in range(1, size):
                m.d.comb += pes[r][c].pixel_in.eq(pes[r][c - 1].pixel_out)
            m.d.comb += getattr(self, f"pixel_out_{r}").eq(pes[r][size - 1].pixel_out)

        # =================================================================
        # Vertical (partial sum) wiring - flows top to bottom
        # =================================================================
        for c in range(size):
            m.d.comb += [
                pes[0][c].psum_in.eq(getattr(self, f"psum_top_{c}")),
                pes[0][c].psum_mem.eq(getattr(self, f"psum_mem_{c}")),
                pes[0][c].load_psum.eq(self.load_psum),
            ]
            for r in range(1, size):
                m.d.comb += pes[r][c].psum_in.eq(pes[r - 1][c].psum_out)
            m.d.comb += getattr(self, f"psum_out_{c}").eq(pes[size - 1][c].psum_out)

        # =================================================================
        # Control broadcast and addressed weight load
        # =================================================================
        for r in range(size):
            for c in range(size):
                pe = pes[r][c]
                selected = (self.weight_row == r) & (self.weight_col == c)
                with m.If(self.weight_valid):
                    m.d.comb += [
                        pe.enable.eq(selected),
                        pe.load_weight.eq(selected),
                    ]
                with m.Else():
                    m.d.comb += pe.enable.eq(self.enable)
                m.d.comb += [
                    pe.weight_in.eq(self.weight_data),
                    pe.clear.eq(self.clear),
                ]

        return m


@dataclass
class ArrayInputs:
    """Per-tick mesh inputs (lists are indexed by row or column)."""

    pixel_in: list[int] | None = None
    psum_top: list[int] | None = None
    load_psum: bool = False
    psum_mem: list[int] | None = None
    weight_valid: bool = False
    weight_row: int = 0
    weight_col: int = 0
    weight_data: int = 0
    enable: bool = False
    clear: bool = False


@dataclass
class ArrayOutputs:
    pixel_out: list[int]
    psum_out: list[int]

    @property
    def psum_total(self) -> int:
        """Edge reduction of the bottom-row partial sums."""
        return sum(self.psum_out)


@dataclass
class SystolicArraySim:
    """
    Behavioral model of the mesh plus its convolution tiling control.

    The grid is held as (row, col)-indexed numpy arrays; every tick computes
    the next arrays from a snapshot of the current ones and commits them
    together.

    Tiling protocol for one output tile:
        start_kernel()                      # clear once
        for each kernel tile:
            start_tile(index, is_last)      # zero weights, keep accumulators
            load_weight(r, c, w) ...
            buffer_pixel(r, c, x) ...
            start_pass(oh, ow); pass_step() until tile_done
        start_writeback(oh, ow); writeback_step() until writeback_done
    """

    config: EngineConfig = field(default_factory=EngineConfig)

    # Grid registers
    weight: np.ndarray = field(init=False)  # type: ignore[assignment]
    product_pipe: np.ndarray = field(init=False)  # type: ignore[assignment]
    psum_pipe: np.ndarray = field(init=False)  # type: ignore[assignment]
    accumulator: np.ndarray = field(init=False)  # type: ignore[assignment]
    pixel_reg: np.ndarray = field(init=False)  # type: ignore[assignment]

    # Tiling state
    cleared_once: bool = False
    kernel_tile_index: int = 0
    is_last_tile: bool = False
    tile_done: bool = False

    # Cross-tile accumulator plane and window pixel buffer
    plane: np.ndarray = field(init=False)  # type: ignore[assignment]
    window: np.ndarray = field(init=False)  # type: ignore[assignment]

    # MAC pass cursor
    passing: bool = False
    pass_rows: int = 0
    pass_cols: int = 0
    pass_cursor: int = 0

    # Write-back cursor
    writing_back: bool = False
    writeback_cursor: int = 0
    writeback_total: int = 0
    writeback_cols: int = 0

    # Statistics
    cycle: int = 0
    mac_cycles: int = 0
    passes: int = 0

    def __post_init__(self):
        size = self.config.array_size
        self.weight = np.zeros((size, size), dtype=np.int64)
        self.product_pipe = np.zeros((size, size), dtype=np.int64)
        self.psum_pipe = np.zeros((size, size), dtype=np.int64)
        self.accumulator = np.zeros((size, size), dtype=np.int64)
        self.pixel_reg = np.zeros((size, size), dtype=np.int64)
        self.plane = np.zeros((size, size), dtype=np.int64)
        buf = self.config.window_buffer_size
        self.window = np.zeros((buf, buf), dtype=np.int64)

    @property
    def size(self) -> int:
        return self.config.array_size

    @property
    def array_done(self) -> bool:
        return self.tile_done and self.is_last_tile

    @property
    def writeback_done(self) -> bool:
        return not self.writing_back

    # =========================================================================
    # Mesh tick
    # =========================================================================

    def _psum_out(self, load_psum: bool, psum_mem) -> np.ndarray:
        base = self.psum_pipe.copy()
        if load_psum:
            base[0, :] = np.asarray(psum_mem, dtype=np.int64)
        return (base + self.product_pipe) & self.config.acc_mask

    def _clear_registers(self):
        self.product_pipe[:] = 0
        self.psum_pipe[:] = 0
        self.accumulator[:] = 0
        self.pixel_reg[:] = 0

    def step(self, inputs: ArrayInputs) -> ArrayOutputs:
        """One clock edge of the mesh; returns edge outputs after the edge."""
        cfg = self.config
        size = self.size
        zeros = [0] * size
        pixel_in = np.asarray(inputs.pixel_in or zeros, dtype=np.int64)
        psum_top = np.asarray(inputs.psum_top or zeros, dtype=np.int64)
        psum_mem = inputs.psum_mem or zeros

        if inputs.clear:
            self._clear_registers()
        elif inputs.weight_valid:
            self.weight[inputs.weight_row, inputs.weight_col] = inputs.weight_data & (
                (1 << cfg.weight_bits) - 1
            )
        elif inputs.enable:
            psum_out = self._psum_out(inputs.load_psum, psum_mem)

            pix = np.empty((size, size), dtype=np.int64)
            pix[:, 0] = pixel_in & ((1 << cfg.input_bits) - 1)
            pix[:, 1:] = self.pixel_reg[:, :-1]

            psum_in = np.empty((size, size), dtype=np.int64)
            psum_in[0, :] = psum_top
            psum_in[1:, :] = psum_out[:-1, :]

            self.product_pipe = (pix * self.weight) & ((1 << cfg.product_bits) - 1)
            self.psum_pipe = psum_in & cfg.acc_mask
            self.accumulator = psum_out
            self.pixel_reg = pix

        self.cycle += 1
        psum_out = self._psum_out(inputs.load_psum, psum_mem)
        return ArrayOutputs(
            pixel_out=[int(v) for v in self.pixel_reg[:, -1]],
            psum_out=[int(v) for v in psum_out[-1, :]],
        )

    # =========================================================================
    # Tiling control
    # =========================================================================

    def clear(self):
        """Clear pipes, accumulators, the plane, the buffer and tiling state (weights kept)."""
        self._clear_registers()
        self.plane[:] = 0
        self.window[:] = 0
        self.cleared_once = False
        self.kernel_tile_index = 0
        self.is_last_tile = False
        self.tile_done = False
        self.passing = False
        self.writing_back = False

    def start_kernel(self):
        """Clear accumulation once for a new kernel application."""
        self._clear_registers()
        self.plane[:] = 0
        self.cleared_once = True
        self.kernel_tile_index = 0
        self.is_last_tile = False
        self.tile_done = False

    def start_tile(self, index: int, is_last: bool):
        """Begin kernel tile ``index``: zero weights, keep accumulators."""
        self.weight[:] = 0
        self.window[:] = 0
        self.kernel_tile_index = index
        self.is_last_tile = is_last
        self.tile_done = False

    def load_weight(self, row: int, col: int, value: int) -> ArrayOutputs:
        return self.step(
            ArrayInputs(weight_valid=True, weight_row=row, weight_col=col, weight_data=value)
        )

    def buffer_pixel(self, row: int, col: int, value: int):
        self.window[row, col] = value

    def pass_length(self, rows: int, cols: int) -> int:
        """Mesh steps needed to stream a rows x cols output block."""
        period = cols + self.size - 1
        return (rows - 1) * period + (cols - 1) + 2 * self.size - 1

    def start_pass(self, rows: int, cols: int):
        assert 1 <= rows <= self.size and 1 <= cols <= self.size, "bad output block"
        self.passing = True
        self.pass_rows = rows
        self.pass_cols = cols
        self.pass_cursor = 0
        self.tile_done = False

    def feed(self, step: int) -> list[int]:
        """Left-edge pixels for MAC step ``step``."""
        period = self.pass_cols + self.size - 1
        pixels = []
        for r in range(self.size):
            local = step - r
            if 0 <= local < self.pass_rows * period:
                wave, q = divmod(local, period)
                pixels.append(int(self.window[wave + r, q]))
            else:
                pixels.append(0)
        return pixels

    def pass_step(self) -> ArrayOutputs:
        """One MAC tick of the current pass, harvesting finished outputs."""
        if not self.passing:
            raise ProtocolViolation("pass_step without start_pass")
        step = self.pass_cursor
        outputs = self.step(ArrayInputs(pixel_in=self.feed(step), enable=True))
        self.mac_cycles += 1

        period = self.pass_cols + self.size - 1
        settled = step - (2 * self.size - 2)
        if settled >= 0:
            i, j = divmod(settled, period)
            if i < self.pass_rows and j < self.pass_cols:
                self.plane[i, j] = (self.plane[i, j] + outputs.psum_total) & self.config.acc_mask

        self.pass_cursor += 1
        if self.pass_cursor >= self.pass_length(self.pass_rows, self.pass_cols):
            self.passing = False
            self.tile_done = True
            self.passes += 1
        return outputs

    def start_writeback(self, rows: int, cols: int):
        self.writing_back = True
        self.writeback_cursor = 0
        self.writeback_total = rows * cols
        self.writeback_cols = cols

    def writeback_step(self) -> tuple[int, int]:
        """Next (row-major offset, accumulated word) of the write-back."""
        if not self.writing_back:
            raise ProtocolViolation("writeback_step without start_writeback")
        offset = self.writeback_cursor
        i, j = divmod(offset, self.writeback_cols)
        word = int(self.plane[i, j])
        self.writeback_cursor += 1
        if self.writeback_cursor >= self.writeback_total:
            self.writing_back = False
        return offset, word

    def reset(self):
        self.weight[:] = 0
        self.clear()
        self.cycle = 0
        self.mac_cycles = 0
        self.passes = 0

    def get_statistics(self) -> dict:
        return {
            "cycles": self.cycle,
            "mac_cycles": self.mac_cycles,
            "passes": self.passes,
            "kernel_tile_index": self.kernel_tile_index,
        }
