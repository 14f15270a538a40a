"""
Unit tests for engine configuration, run parameters and tile geometry.

These tests verify:
1. Default configuration values and computed properties
2. Memory layout placement and validation
3. Accumulator overflow check
4. Run-time configuration validation (ConfigurationError)
5. Tile geometry for output and kernel tiling
"""

import pytest

from wsconv.config import (
    DEFAULT_CONFIG,
    SMALL_CONFIG,
    ConvParams,
    EngineConfig,
    TileGeometry,
)
from wsconv.errors import ConfigurationError, ConvEngineError, OverflowRisk


class TestEngineConfig:
    """Tests for the static hardware configuration."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.array_size == 8
        assert config.word_bytes == 4
        assert config.byte_mask_bits == 4
        assert config.product_bits == 16
        assert config.kernel_limit == 16
        assert config.pipeline_latency == 15
        assert config.total_pes == 64

    def test_accumulator_headroom(self):
        """256 * 255 * 255 = 16,646,400 < 2^24 leaves 8 spare bits."""
        config = EngineConfig()
        assert config.max_accumulated_value == 16_646_400
        assert config.max_accumulated_value < 2**24
        assert config.accumulator_headroom_bits == 8

    def test_narrow_accumulator_rejected(self):
        with pytest.raises(OverflowRisk):
            EngineConfig(acc_bits=23)

    def test_narrowest_safe_accumulator(self):
        config = EngineConfig(acc_bits=24)
        assert config.accumulator_headroom_bits == 0

    def test_overflow_risk_is_engine_error(self):
        with pytest.raises(ConvEngineError):
            EngineConfig(acc_bits=16)

    def test_kernel_limit_capped_by_array(self):
        config = EngineConfig(array_size=4, max_kernel_dim=16)
        assert config.kernel_limit == 8
        assert config.max_input_tile_size == 11

    def test_invalid_word_size(self):
        with pytest.raises(AssertionError):
            EngineConfig(word_bits=24)

    def test_presets(self):
        assert DEFAULT_CONFIG.array_size == 8
        assert SMALL_CONFIG.array_size == 4
        assert SMALL_CONFIG.layout.end <= SMALL_CONFIG.memory_depth


class TestMemoryLayout:
    """Tests for region placement."""

    def test_default_layout(self):
        layout = EngineConfig().layout
        # 16x16 weights in 4-byte words
        assert layout.weight_base == 0
        assert layout.weight_words == 64
        # (8 + 16 - 1)^2 = 529 bytes per bank
        assert layout.bank_words == 133
        assert layout.input_base == 64
        assert layout.input_bank_base(0) == 64
        assert layout.input_bank_base(1) == 64 + 133
        assert layout.output_base == 64 + 2 * 133
        assert layout.output_words == 64
        assert layout.overlaps() == []

    def test_regions_named(self):
        regions = EngineConfig().layout.regions()
        assert set(regions) == {"weights", "input_bank_0", "input_bank_1", "outputs"}

    def test_overridden_output_base(self):
        config = EngineConfig(output_base=900)
        assert config.layout.output_base == 900
        assert config.layout.end == 964

    def test_overlapping_regions_rejected(self):
        with pytest.raises(AssertionError):
            EngineConfig(output_base=100)

    def test_memory_too_small(self):
        with pytest.raises(AssertionError):
            EngineConfig(memory_depth=300)

    def test_small_bank_rejected(self):
        with pytest.raises(AssertionError):
            EngineConfig(bank_words=100)


class TestConvParams:
    """Tests for configuration latched at start."""

    @pytest.fixture
    def config(self):
        return EngineConfig()

    @pytest.mark.parametrize("n,k", [(16, 2), (16, 3), (64, 16), (20, 9), (16, 16)])
    def test_valid(self, config, n, k):
        params = ConvParams.latch(n, k, config)
        assert (params.n, params.k) == (n, k)

    @pytest.mark.parametrize("n,k", [(15, 3), (65, 3), (16, 1), (32, 17), (0, 0)])
    def test_out_of_range(self, config, n, k):
        with pytest.raises(ConfigurationError):
            ConvParams.latch(n, k, config)

    def test_kernel_larger_than_twice_array(self):
        config = EngineConfig(array_size=4, max_kernel_dim=16, min_input_dim=5)
        ConvParams.latch(16, 8, config)
        with pytest.raises(ConfigurationError, match="twice"):
            ConvParams.latch(16, 9, config)

    def test_input_smaller_than_kernel(self):
        with pytest.raises(ConfigurationError):
            ConvParams.latch(6, 7, SMALL_CONFIG)

    def test_lower_input_bound_configurable(self):
        ConvParams.latch(5, 3, SMALL_CONFIG)
        with pytest.raises(ConfigurationError):
            ConvParams.latch(5, 3, DEFAULT_CONFIG)


class TestTileGeometry:
    """Tests for derived tiling."""

    def test_n16_k3(self):
        geo = TileGeometry(n=16, k=3, array_size=8)
        assert geo.output_dim == 14
        assert geo.input_tile_size == 10
        assert geo.total_weight_elems == 9
        assert geo.total_input_elems == 100
        assert geo.num_kernel_tiles == 1
        assert geo.output_tiles_per_dim == 2
        assert geo.num_output_tiles == 4
        assert geo.total_outputs == 196

    def test_edge_output_tile(self):
        geo = TileGeometry(n=16, k=3, array_size=8)
        tile = geo.output_tile(3)
        assert (tile.row, tile.col, tile.rows, tile.cols) == (8, 8, 6, 6)
        assert geo.output_tile(1).size == 48
        assert geo.outputs_through_tile(1) == 112
        assert geo.outputs_through_tile(3) == 196

    def test_kernel_tiling(self):
        geo = TileGeometry(n=32, k=10, array_size=8)
        assert geo.kernel_tiles_per_dim == 2
        assert geo.num_kernel_tiles == 4
        first = geo.kernel_tile(0)
        assert (first.rows, first.cols, first.is_last) == (8, 8, False)
        last = geo.kernel_tile(3)
        assert (last.row, last.col, last.rows, last.cols) == (8, 8, 2, 2)
        assert last.is_last

    def test_tiles_cover_output(self):
        geo = TileGeometry(n=21, k=4, array_size=8)
        covered = sum(tile.size for tile in geo.output_tiles())
        assert covered == geo.total_outputs

    def test_from_params(self):
        params = ConvParams.latch(16, 3, DEFAULT_CONFIG)
        geo = TileGeometry.from_params(params, DEFAULT_CONFIG)
        assert geo.array_size == 8
        assert geo.k == 3
