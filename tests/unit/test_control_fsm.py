"""
Unit tests for the control FSM.

These tests verify:
1. Invalid start configuration raises ConfigurationError and stays IDLE
2. Entry pulses (AGU start, array clear) last exactly one tick
3. No state or phase exits on an entry tick
4. Byte counting in LOAD_WEIGHTS / LOAD_INPUT and words counted in DRAIN
5. Kernel tile and output tile sequencing, bank toggling
6. DONE returns to IDLE and keeps the counters
7. AGU window derivation for kernel tiles
"""

import logging

import pytest

from wsconv.agu.address_generator import AguMode, AguRegion
from wsconv.config import ConvParams, EngineConfig, TileGeometry
from wsconv.controller.control_fsm import (
    ComputePhase,
    ControlFSMSim,
    DrainPhase,
    FsmInputs,
    FsmRegisters,
    FsmState,
    fsm_next,
    fsm_outputs,
    pixel_window,
    weight_window,
)
from wsconv.errors import ConfigurationError


@pytest.fixture
def config():
    return EngineConfig()


def latched(config, n=16, k=3, **kwargs):
    """Registers of a run already past start."""
    params = ConvParams.latch(n, k, config)
    return FsmRegisters(
        params=params, geometry=TileGeometry.from_params(params, config), **kwargs
    )


class TestStart:
    """Tests for IDLE and configuration latching."""

    def test_idle_outputs(self, config):
        out = fsm_outputs(FsmRegisters(), config)
        assert out.state == FsmState.IDLE
        assert not out.busy
        assert not out.done
        assert not out.rx_enable

    def test_stays_idle_without_start(self, config):
        fsm = ControlFSMSim(config)
        for _ in range(5):
            fsm.step(FsmInputs())
        assert fsm.state == FsmState.IDLE

    @pytest.mark.parametrize("n,k", [(8, 3), (16, 17), (100, 3), (16, 1)])
    def test_invalid_configuration(self, config, n, k):
        fsm = ControlFSMSim(config)
        with pytest.raises(ConfigurationError):
            fsm.step(FsmInputs(start=True, config_n=n, config_k=k))
        assert fsm.state == FsmState.IDLE
        assert fsm.regs.params is None

    def test_start_latches(self, config):
        fsm = ControlFSMSim(config)
        fsm.step(FsmInputs(start=True, config_n=16, config_k=3))
        assert fsm.state == FsmState.LOAD_WEIGHTS
        assert (fsm.regs.params.n, fsm.regs.params.k) == (16, 3)
        assert fsm.regs.geometry.num_output_tiles == 4

    def test_start_ignored_while_busy(self, config):
        fsm = ControlFSMSim(config)
        fsm.step(FsmInputs(start=True, config_n=16, config_k=3))
        fsm.step(FsmInputs(start=True, config_n=64, config_k=16))
        assert fsm.regs.params.n == 16


class TestEntryPulses:
    """Pulses fire on the entry tick only."""

    def test_load_weights_entry(self, config):
        fsm = ControlFSMSim(config)
        fsm.step(FsmInputs(start=True, config_n=16, config_k=3))

        entry = fsm.outputs()
        assert entry.state_entry
        assert entry.agu_start
        assert entry.agu_mode == AguMode.LOAD_WEIGHT
        assert entry.agu_region == AguRegion.WEIGHTS
        assert entry.array_clear
        assert not entry.rx_enable
        assert entry.busy

        fsm.step(FsmInputs())
        steady = fsm.outputs()
        assert not steady.state_entry
        assert not steady.agu_start
        assert not steady.array_clear
        assert steady.rx_enable

    def test_compute_entry(self, config):
        regs = latched(
            config, state=FsmState.COMPUTE, previous_state=FsmState.LOAD_INPUT
        )
        out = fsm_outputs(regs, config)
        assert out.array_start_kernel
        assert out.array_start_tile
        assert out.agu_start
        assert not out.agu_read_enable
        assert out.route_weights

    def test_mac_entry_then_enable(self, config):
        regs = latched(
            config,
            state=FsmState.COMPUTE,
            previous_state=FsmState.COMPUTE,
            compute_phase=ComputePhase.MAC,
            previous_compute_phase=ComputePhase.FETCH_PIXELS,
        )
        out = fsm_outputs(regs, config)
        assert out.array_start_pass
        assert not out.array_enable
        assert not out.array_start_kernel

        out = fsm_outputs(fsm_next(regs, FsmInputs(), config), config)
        assert not out.array_start_pass
        assert out.array_enable


class TestNoExitOnEntry:
    """Flags seen on an entry tick belong to the previous pass."""

    def test_fetch_weights(self, config):
        regs = latched(config, state=FsmState.COMPUTE, previous_state=FsmState.LOAD_INPUT)
        regs = fsm_next(regs, FsmInputs(agu_done=True), config)
        assert regs.compute_phase == ComputePhase.FETCH_WEIGHTS
        assert not regs.phase_entry

        regs = fsm_next(regs, FsmInputs(agu_done=True), config)
        assert regs.compute_phase == ComputePhase.FETCH_PIXELS
        assert regs.phase_entry

    def test_mac(self, config):
        regs = latched(
            config,
            state=FsmState.COMPUTE,
            previous_state=FsmState.COMPUTE,
            compute_phase=ComputePhase.MAC,
            previous_compute_phase=ComputePhase.FETCH_PIXELS,
        )
        regs = fsm_next(regs, FsmInputs(array_done=True, tile_done=True), config)
        assert regs.state == FsmState.COMPUTE

    def test_load_input(self, config):
        geo = TileGeometry(n=16, k=3, array_size=8)
        regs = latched(
            config,
            state=FsmState.LOAD_INPUT,
            previous_state=FsmState.DRAIN,
            input_count=geo.total_input_elems,
        )
        regs = fsm_next(regs, FsmInputs(agu_done=True), config)
        assert regs.state == FsmState.LOAD_INPUT


class TestCounting:
    """Tests for the transfer counters."""

    def test_weights_then_inputs(self, config):
        fsm = ControlFSMSim(config)
        fsm.step(FsmInputs(start=True, config_n=16, config_k=3))
        fsm.step(FsmInputs())  # entry tick
        for _ in range(9):
            fsm.step(FsmInputs(rx_fire=True))
        assert fsm.regs.weight_count == 9
        assert fsm.state == FsmState.LOAD_WEIGHTS

        fsm.step(FsmInputs(agu_done=True))
        assert fsm.state == FsmState.LOAD_INPUT
        assert fsm.regs.input_count == 0

        out = fsm.outputs()
        assert out.agu_mode == AguMode.LOAD_INPUT
        assert out.agu_start
        assert out.agu_bank == 0

    def test_agu_done_alone_does_not_advance(self, config):
        regs = latched(
            config,
            state=FsmState.LOAD_WEIGHTS,
            previous_state=FsmState.LOAD_WEIGHTS,
            weight_count=8,
        )
        regs = fsm_next(regs, FsmInputs(agu_done=True), config)
        assert regs.state == FsmState.LOAD_WEIGHTS

    def test_output_words_counted_per_word_bytes(self, config):
        regs = latched(
            config,
            state=FsmState.DRAIN,
            previous_state=FsmState.DRAIN,
            drain_phase=DrainPhase.UNLOAD,
            previous_drain_phase=DrainPhase.UNLOAD,
        )
        counts = []
        for _ in range(9):
            regs = fsm_next(regs, FsmInputs(tx_fire=True), config)
            counts.append(regs.output_count)
        assert counts == [0, 0, 0, 1, 1, 1, 1, 2, 2]
        assert regs.tx_byte_count == 9

    def test_unload_byte_count(self, config):
        regs = latched(
            config,
            state=FsmState.DRAIN,
            previous_state=FsmState.DRAIN,
            drain_phase=DrainPhase.UNLOAD,
            previous_drain_phase=DrainPhase.WRITEBACK,
            output_tile_index=1,
        )
        out = fsm_outputs(regs, config)
        # tile 1 of N=16, K=3 is 8 x 6 outputs
        assert out.agu_output_bytes == 48 * 4
        assert out.agu_start
        assert not out.tx_enable


class TestSequencing:
    """Tests for kernel tile and output tile loops."""

    def test_next_kernel_tile(self, config):
        regs = latched(
            config,
            n=32,
            k=10,
            state=FsmState.COMPUTE,
            previous_state=FsmState.COMPUTE,
            compute_phase=ComputePhase.MAC,
            previous_compute_phase=ComputePhase.MAC,
        )
        regs = fsm_next(regs, FsmInputs(tile_done=True), config)
        assert regs.compute_phase == ComputePhase.FETCH_WEIGHTS
        assert regs.kernel_tile_index == 1
        out = fsm_outputs(regs, config)
        assert out.array_start_tile
        assert not out.array_start_kernel
        assert out.kernel_tile.col == 8

    def test_array_done_goes_to_drain(self, config):
        regs = latched(
            config,
            state=FsmState.COMPUTE,
            previous_state=FsmState.COMPUTE,
            compute_phase=ComputePhase.MAC,
            previous_compute_phase=ComputePhase.MAC,
        )
        regs = fsm_next(regs, FsmInputs(tile_done=True, array_done=True), config)
        assert regs.state == FsmState.DRAIN
        assert regs.drain_phase == DrainPhase.WRITEBACK
        assert fsm_outputs(regs, config).array_start_writeback

    def test_writeback_then_unload(self, config):
        regs = latched(
            config,
            state=FsmState.DRAIN,
            previous_state=FsmState.DRAIN,
        )
        regs = fsm_next(regs, FsmInputs(writeback_done=True), config)
        assert regs.drain_phase == DrainPhase.UNLOAD

    def test_next_output_tile_toggles_bank(self, config):
        regs = latched(
            config,
            state=FsmState.DRAIN,
            previous_state=FsmState.DRAIN,
            drain_phase=DrainPhase.UNLOAD,
            previous_drain_phase=DrainPhase.UNLOAD,
            output_count=64,
        )
        regs = fsm_next(regs, FsmInputs(agu_done=True), config)
        assert regs.state == FsmState.LOAD_INPUT
        assert regs.output_tile_index == 1
        assert regs.bank == 1
        assert fsm_outputs(regs, config).agu_bank == 1

    def test_unload_waits_for_output_count(self, config):
        regs = latched(
            config,
            state=FsmState.DRAIN,
            previous_state=FsmState.DRAIN,
            drain_phase=DrainPhase.UNLOAD,
            previous_drain_phase=DrainPhase.UNLOAD,
            output_count=63,
        )
        regs = fsm_next(regs, FsmInputs(agu_done=True), config)
        assert regs.state == FsmState.DRAIN

    def test_last_tile_done_then_idle(self, config):
        regs = latched(
            config,
            state=FsmState.DRAIN,
            previous_state=FsmState.DRAIN,
            drain_phase=DrainPhase.UNLOAD,
            previous_drain_phase=DrainPhase.UNLOAD,
            output_tile_index=3,
            output_count=196,
            weight_count=9,
            bank=1,
        )
        regs = fsm_next(regs, FsmInputs(agu_done=True), config)
        assert regs.state == FsmState.DONE
        out = fsm_outputs(regs, config)
        assert out.done
        assert not out.busy

        regs = fsm_next(regs, FsmInputs(), config)
        assert regs.state == FsmState.IDLE
        assert regs.output_count == 196
        assert regs.weight_count == 9
        assert regs.bank == 0
        assert regs.output_tile_index == 0

    def test_history_and_logging(self, config, caplog):
        fsm = ControlFSMSim(config)
        with caplog.at_level(logging.DEBUG, logger="wsconv.controller.control_fsm"):
            fsm.step(FsmInputs(start=True, config_n=16, config_k=3))
        assert fsm.history == [FsmState.IDLE, FsmState.LOAD_WEIGHTS]
        assert "IDLE -> LOAD_WEIGHTS" in caplog.text

        fsm.reset()
        assert fsm.history == [FsmState.IDLE]
        assert fsm.cycle == 0


class TestWindows:
    """AGU windows derived from kernel tiles."""

    def test_single_kernel_tile(self):
        geo = TileGeometry(n=16, k=3, array_size=8)
        tile = geo.kernel_tile(0)
        w = weight_window(geo, tile)
        assert (w.row_offset, w.col_offset, w.rows, w.cols, w.row_stride) == (0, 0, 3, 3, 3)
        p = pixel_window(geo, tile)
        assert (p.row_offset, p.col_offset, p.rows, p.cols, p.row_stride) == (0, 0, 10, 10, 10)

    def test_last_kernel_tile(self):
        geo = TileGeometry(n=32, k=10, array_size=8)
        tile = geo.kernel_tile(3)
        w = weight_window(geo, tile)
        assert (w.row_offset, w.col_offset, w.rows, w.cols, w.row_stride) == (8, 8, 2, 2, 10)
        assert w.linear_index(0, 0) == 88
        p = pixel_window(geo, tile)
        assert (p.row_offset, p.col_offset, p.rows, p.cols, p.row_stride) == (8, 8, 9, 9, 17)
