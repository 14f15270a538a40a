"""
Wsconv Configuration Module

This module defines the static hardware configuration of the convolution
engine, the per-run convolution parameters latched by the host ``start``
pulse, and the tile geometry derived from them.

Three layers, from most to least static:

- EngineConfig: array edge, data widths, memory size and memory map. Fixed
  for a given piece of hardware.
- ConvParams: input dimension N and kernel dimension K. Latched once per run.
- TileGeometry: everything derived from (N, K, array_size), recomputed for
  every latched configuration.
"""

import math
from dataclasses import dataclass, field

from .errors import ConfigurationError, OverflowRisk


@dataclass(frozen=True)
class MemoryLayout:
    """
    Word-address map of the engine's local memory.

    Regions (word addresses):
        weights:  [weight_base, weight_base + weight_words)
        bank 0:   [input_base, input_base + bank_words)
        bank 1:   [input_base + bank_words, input_base + 2 * bank_words)
        outputs:  [output_base, output_base + output_words)

    The two input banks form the ping-pong pair toggled between output tiles.
    """

    weight_base: int
    weight_words: int
    input_base: int
    bank_words: int
    output_base: int
    output_words: int

    def input_bank_base(self, bank: int) -> int:
        """Base word address of input bank 0 or 1."""
        return self.input_base + (bank & 1) * self.bank_words

    def regions(self) -> dict[str, tuple[int, int]]:
        """Named regions as (base, words) pairs."""
        return {
            "weights": (self.weight_base, self.weight_words),
            "input_bank_0": (self.input_bank_base(0), self.bank_words),
            "input_bank_1": (self.input_bank_base(1), self.bank_words),
            "outputs": (self.output_base, self.output_words),
        }

    @property
    def end(self) -> int:
        """One past the highest word address used by any region."""
        return max(base + words for base, words in self.regions().values())

    def overlaps(self) -> list[tuple[str, str]]:
        """Pairs of region names whose address ranges intersect."""
        items = sorted(self.regions().items(), key=lambda kv: kv[1][0])
        clashes = []
        for (name_a, (base_a, words_a)), (name_b, (base_b, _)) in zip(items, items[1:]):
            if base_a + words_a > base_b:
                clashes.append((name_a, name_b))
        return clashes


@dataclass
class EngineConfig:
    """
    Static configuration of the convolution engine.

    Example:
        >>> config = EngineConfig(array_size=8)
        >>> config.word_bytes
        4
        >>> config.pipeline_latency
        15
    """

    # =========================================================================
    # Array Dimensions
    # =========================================================================
    array_size: int = 8
    """Edge of the square PE grid (rows == cols)."""

    # =========================================================================
    # Data Types (bit widths)
    # =========================================================================
    input_bits: int = 8
    """Bit width of input pixels (unsigned)."""

    weight_bits: int = 8
    """Bit width of kernel weights (unsigned)."""

    acc_bits: int = 32
    """Bit width of PE accumulators and partial sums."""

    # =========================================================================
    # Memory Configuration
    # =========================================================================
    word_bits: int = 32
    """Memory word width. Byte-mask granularity is fixed at 8 bits."""

    memory_depth: int = 1024
    """Number of words in the local memory."""

    weight_base: int | None = None
    """Word address of the weight region (None = packed default)."""

    input_base: int | None = None
    """Word address of input bank 0 (None = packed default)."""

    bank_words: int | None = None
    """Words per input bank (None = sized for the largest input tile)."""

    output_base: int | None = None
    """Word address of the output region (None = packed default)."""

    # =========================================================================
    # Supported Run Configurations
    # =========================================================================
    min_input_dim: int = 16
    """Smallest accepted N."""

    max_input_dim: int = 64
    """Largest accepted N."""

    min_kernel_dim: int = 2
    """Smallest accepted K."""

    max_kernel_dim: int = 16
    """Largest accepted K (further capped at 2 * array_size)."""

    layout: MemoryLayout = field(init=False, repr=False)
    """Resolved memory map."""

    # =========================================================================
    # Computed Properties
    # =========================================================================
    @property
    def rows(self) -> int:
        return self.array_size

    @property
    def cols(self) -> int:
        return self.array_size

    @property
    def total_pes(self) -> int:
        """Total number of processing elements."""
        return self.array_size * self.array_size

    @property
    def product_bits(self) -> int:
        """Width of the PE product pipeline register."""
        return self.input_bits + self.weight_bits

    @property
    def word_bytes(self) -> int:
        """Stream elements (bytes) per memory word."""
        return self.word_bits // 8

    @property
    def byte_mask_bits(self) -> int:
        """Width of the memory write byte mask."""
        return self.word_bytes

    @property
    def byte_offset_bits(self) -> int:
        """Low address bits selecting a byte lane inside a word."""
        return (self.word_bytes - 1).bit_length()

    @property
    def addr_bits(self) -> int:
        """Bits needed to address every memory word."""
        return max(1, (self.memory_depth - 1).bit_length())

    @property
    def kernel_limit(self) -> int:
        """Largest K this hardware accepts."""
        return min(self.max_kernel_dim, 2 * self.array_size)

    @property
    def max_input_tile_size(self) -> int:
        """Edge of the largest halo'd input tile."""
        return self.array_size + self.kernel_limit - 1

    @property
    def window_buffer_size(self) -> int:
        """Edge of the array's window pixel buffer (one kernel tile's halo)."""
        return 2 * self.array_size - 1

    @property
    def pipeline_latency(self) -> int:
        """Ticks from first input until the bottom-right psum_out settles."""
        return self.rows + self.cols - 1

    @property
    def max_accumulated_value(self) -> int:
        """Largest sum one output can reach (K_max^2 full-scale products)."""
        max_pixel = (1 << self.input_bits) - 1
        max_weight = (1 << self.weight_bits) - 1
        return self.kernel_limit * self.kernel_limit * max_pixel * max_weight

    @property
    def accumulator_headroom_bits(self) -> int:
        """Unused accumulator bits above the worst-case sum."""
        return self.acc_bits - self.max_accumulated_value.bit_length()

    @property
    def acc_mask(self) -> int:
        return (1 << self.acc_bits) - 1

    def default_layout(self) -> MemoryLayout:
        """Packed memory map sized for the largest supported tile."""
        weight_words = math.ceil(self.kernel_limit**2 / self.word_bytes)
        bank_words = math.ceil(self.max_input_tile_size**2 / self.word_bytes)
        output_words = self.total_pes
        weight_base = 0
        input_base = weight_base + weight_words
        output_base = input_base + 2 * bank_words
        return MemoryLayout(
            weight_base=weight_base,
            weight_words=weight_words,
            input_base=input_base,
            bank_words=bank_words,
            output_base=output_base,
            output_words=output_words,
        )

    def __post_init__(self):
        """Validate configuration parameters and resolve the memory map."""
        assert self.array_size >= 2, "array_size must be at least 2"
        assert self.input_bits > 0, "input_bits must be positive"
        assert self.weight_bits > 0, "weight_bits must be positive"
        assert self.word_bits % 8 == 0, "word_bits must be a whole number of bytes"
        assert self.word_bytes & (self.word_bytes - 1) == 0, (
            "word_bytes should be a power of 2"
        )
        assert self.memory_depth > 0, "memory_depth must be positive"
        assert 1 <= self.min_kernel_dim <= self.max_kernel_dim, "invalid kernel limits"
        assert 1 <= self.min_input_dim <= self.max_input_dim, "invalid input limits"

        if self.acc_bits < self.max_accumulated_value.bit_length():
            raise OverflowRisk(
                f"acc_bits={self.acc_bits} cannot hold {self.max_accumulated_value} "
                f"(K={self.kernel_limit} full-scale window)"
            )

        default = self.default_layout()
        bank_words = self.bank_words if self.bank_words is not None else default.bank_words
        weight_base = self.weight_base if self.weight_base is not None else default.weight_base
        input_base = self.input_base if self.input_base is not None else weight_base + (
            default.weight_words
        )
        output_base = self.output_base if self.output_base is not None else input_base + (
            2 * bank_words
        )
        self.layout = MemoryLayout(
            weight_base=weight_base,
            weight_words=default.weight_words,
            input_base=input_base,
            bank_words=bank_words,
            output_base=output_base,
            output_words=default.output_words,
        )

        assert bank_words >= default.bank_words, "bank_words too small for the largest input tile"
        assert not self.layout.overlaps(), f"memory regions overlap: {self.layout.overlaps()}"
        assert self.layout.end <= self.memory_depth, (
            f"memory map needs {self.layout.end} words, memory_depth is {self.memory_depth}"
        )


# =============================================================================
# Per-run Parameters
# =============================================================================


@dataclass(frozen=True)
class ConvParams:
    """Convolution parameters latched by the host ``start`` pulse."""

    n: int
    """Input dimension (N x N image)."""

    k: int
    """Kernel dimension (K x K weights)."""

    def validate(self, config: EngineConfig) -> "ConvParams":
        """Check the parameters against the hardware and return self."""
        if not config.min_kernel_dim <= self.k <= config.max_kernel_dim:
            raise ConfigurationError(
                f"K={self.k} outside [{config.min_kernel_dim}, {config.max_kernel_dim}]"
            )
        if self.k > 2 * config.array_size:
            raise ConfigurationError(
                f"K={self.k} exceeds twice the array size ({config.array_size})"
            )
        if not config.min_input_dim <= self.n <= config.max_input_dim:
            raise ConfigurationError(
                f"N={self.n} outside [{config.min_input_dim}, {config.max_input_dim}]"
            )
        if self.n < self.k:
            raise ConfigurationError(f"N={self.n} is smaller than K={self.k}")
        return self

    @classmethod
    def latch(cls, n: int, k: int, config: EngineConfig) -> "ConvParams":
        return cls(n=n, k=k).validate(config)


@dataclass(frozen=True)
class OutputTile:
    """An array_size x array_size (or smaller, at the edge) block of outputs."""

    index: int
    row: int
    col: int
    rows: int
    cols: int

    @property
    def size(self) -> int:
        return self.rows * self.cols


@dataclass(frozen=True)
class KernelTile:
    """The part of the kernel that fits the array in one pass."""

    index: int
    row: int
    col: int
    rows: int
    cols: int
    is_last: bool


@dataclass(frozen=True)
class TileGeometry:
    """
    Tiling derived from (N, K, array_size).

    Output tiles and kernel tiles are both enumerated in raster order.
    """

    n: int
    k: int
    array_size: int

    @classmethod
    def from_params(cls, params: ConvParams, config: EngineConfig) -> "TileGeometry":
        return cls(n=params.n, k=params.k, array_size=config.array_size)

    @property
    def output_dim(self) -> int:
        return self.n - self.k + 1

    @property
    def input_tile_size(self) -> int:
        return self.array_size + self.k - 1

    @property
    def total_weight_elems(self) -> int:
        return self.k * self.k

    @property
    def total_input_elems(self) -> int:
        return self.input_tile_size * self.input_tile_size

    @property
    def kernel_tiles_per_dim(self) -> int:
        return math.ceil(self.k / self.array_size)

    @property
    def num_kernel_tiles(self) -> int:
        return self.kernel_tiles_per_dim**2

    @property
    def output_tiles_per_dim(self) -> int:
        return math.ceil(self.output_dim / self.array_size)

    @property
    def num_output_tiles(self) -> int:
        return self.output_tiles_per_dim**2

    @property
    def total_outputs(self) -> int:
        return self.output_dim * self.output_dim

    def output_tile(self, index: int) -> OutputTile:
        assert 0 <= index < self.num_output_tiles, f"output tile {index} out of range"
        a = self.array_size
        tile_row, tile_col = divmod(index, self.output_tiles_per_dim)
        row, col = tile_row * a, tile_col * a
        return OutputTile(
            index=index,
            row=row,
            col=col,
            rows=min(a, self.output_dim - row),
            cols=min(a, self.output_dim - col),
        )

    def output_tiles(self) -> list[OutputTile]:
        return [self.output_tile(i) for i in range(self.num_output_tiles)]

    def outputs_through_tile(self, index: int) -> int:
        """Number of outputs in tiles 0..index inclusive."""
        return sum(self.output_tile(i).size for i in range(index + 1))

    def kernel_tile(self, index: int) -> KernelTile:
        assert 0 <= index < self.num_kernel_tiles, f"kernel tile {index} out of range"
        a = self.array_size
        tile_row, tile_col = divmod(index, self.kernel_tiles_per_dim)
        row, col = tile_row * a, tile_col * a
        return KernelTile(
            index=index,
            row=row,
            col=col,
            rows=min(a, self.k - row),
            cols=min(a, self.k - col),
            is_last=index == self.num_kernel_tiles - 1,
        )

    def kernel_tiles(self) -> list[KernelTile]:
        return [self.kernel_tile(i) for i in range(self.num_kernel_tiles)]


# Pre-defined configurations
DEFAULT_CONFIG = EngineConfig()
"""Default configuration: 8x8 array, 32-bit words, 1K-word memory."""

SMALL_CONFIG = EngineConfig(
    array_size=4,
    min_input_dim=5,
    max_input_dim=32,
    max_kernel_dim=8,
    memory_depth=256,
)
"""Small configuration for fast simulation."""
