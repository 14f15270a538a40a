"""
ControlFSM - Top-level orchestrator of the convolution engine.

The FSM selects a phase, tells the AGU which address pattern to generate,
drives the array's enable/clear/tiling pulses and the memory enables, and
advances on completion flags sampled at the start of the tick.

State Machine:
    IDLE -> LOAD_WEIGHTS -> LOAD_INPUT -> COMPUTE -> DRAIN -+-> DONE -> IDLE
                                ^                           |
                                +------- more tiles --------+

    COMPUTE, per kernel tile:  FETCH_WEIGHTS -> FETCH_PIXELS -> MAC
    DRAIN:                     WRITEBACK -> UNLOAD

The FSM is an explicit pair of pure functions:

    fsm_outputs(registers, config)         -> FsmOutputs   (Moore outputs)
    fsm_next(registers, inputs, config)    -> FsmRegisters

Pulses fire for exactly one tick, on state or sub-phase entry, where entry is
``state != previous_state`` (resp. ``phase != previous_phase``). Because the
flags are sampled before the datapath ticks, every exit condition also
requires that the tick is not an entry tick: the flags seen on an entry tick
still belong to the previous pass.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import IntEnum

from ..agu.address_generator import AguMode, AguRegion, SlidingWindow
from ..config import ConvParams, EngineConfig, KernelTile, OutputTile, TileGeometry

logger = logging.getLogger(__name__)


class FsmState(IntEnum):
    IDLE = 0
    LOAD_WEIGHTS = 1
    LOAD_INPUT = 2
    COMPUTE = 3
    DRAIN = 4
    DONE = 5


class ComputePhase(IntEnum):
    FETCH_WEIGHTS = 0
    FETCH_PIXELS = 1
    MAC = 2


class DrainPhase(IntEnum):
    WRITEBACK = 0
    UNLOAD = 1


def weight_window(geometry: TileGeometry, tile: KernelTile) -> SlidingWindow:
    """Window of the weight region holding kernel tile ``tile``."""
    return SlidingWindow(
        row_offset=tile.row,
        col_offset=tile.col,
        rows=tile.rows,
        cols=tile.cols,
        row_stride=geometry.k,
    )


def pixel_window(geometry: TileGeometry, tile: KernelTile) -> SlidingWindow:
    """Window of an input bank that kernel tile ``tile`` convolves."""
    a = geometry.array_size
    return SlidingWindow(
        row_offset=tile.row,
        col_offset=tile.col,
        rows=a + tile.rows - 1,
        cols=a + tile.cols - 1,
        row_stride=geometry.input_tile_size,
    )


@dataclass(frozen=True)
class FsmRegisters:
    """Every register of the FSM. Immutable; fsm_next builds the next one."""

    state: FsmState = FsmState.IDLE
    previous_state: FsmState = FsmState.IDLE
    compute_phase: ComputePhase = ComputePhase.FETCH_WEIGHTS
    previous_compute_phase: ComputePhase = ComputePhase.FETCH_WEIGHTS
    drain_phase: DrainPhase = DrainPhase.WRITEBACK
    previous_drain_phase: DrainPhase = DrainPhase.WRITEBACK

    # Latched configuration
    params: ConvParams | None = None
    geometry: TileGeometry | None = None

    # Counters
    weight_count: int = 0
    input_count: int = 0
    output_count: int = 0
    tx_byte_count: int = 0

    # Sequencing
    output_tile_index: int = 0
    kernel_tile_index: int = 0
    bank: int = 0

    @property
    def state_entry(self) -> bool:
        return self.state != self.previous_state

    @property
    def phase_entry(self) -> bool:
        if self.state_entry:
            return True
        if self.state == FsmState.COMPUTE:
            return self.compute_phase != self.previous_compute_phase
        if self.state == FsmState.DRAIN:
            return self.drain_phase != self.previous_drain_phase
        return False


@dataclass
class FsmInputs:
    """Inputs of one tick. Flags are sampled before the datapath ticks."""

    start: bool = False
    config_n: int = 0
    config_k: int = 0
    rx_fire: bool = False
    tx_fire: bool = False
    agu_done: bool = False
    tile_done: bool = False
    array_done: bool = False
    writeback_done: bool = False


@dataclass
class FsmOutputs:
    """Moore outputs of one tick."""

    state: FsmState = FsmState.IDLE
    state_entry: bool = False
    phase_entry: bool = False

    # AGU
    agu_start: bool = False
    agu_mode: AguMode = AguMode.IDLE
    agu_region: AguRegion = AguRegion.INPUT
    agu_bank: int = 0
    agu_window: SlidingWindow | None = None
    agu_output_bytes: int = 0
    agu_read_enable: bool = False

    # Streams and memory
    rx_enable: bool = False
    tx_enable: bool = False
    mem_read_enable: bool = False
    mem_write_enable: bool = False

    # Array
    array_clear: bool = False
    array_start_kernel: bool = False
    array_start_tile: bool = False
    array_start_pass: bool = False
    array_enable: bool = False
    array_start_writeback: bool = False
    array_writeback_enable: bool = False
    route_weights: bool = False
    route_pixels: bool = False
    kernel_tile: KernelTile | None = None
    output_tile: OutputTile | None = None

    # Host
    done: bool = False
    busy: bool = False


def fsm_outputs(regs: FsmRegisters, config: EngineConfig) -> FsmOutputs:
    """Compute the Moore outputs of a register state."""
    out = FsmOutputs(
        state=regs.state,
        state_entry=regs.state_entry,
        phase_entry=regs.phase_entry,
        busy=regs.state not in (FsmState.IDLE, FsmState.DONE),
    )
    geo = regs.geometry
    entry = regs.state_entry
    phase_entry = regs.phase_entry

    if regs.state == FsmState.LOAD_WEIGHTS:
        out.agu_mode = AguMode.LOAD_WEIGHT
        out.agu_region = AguRegion.WEIGHTS
        out.agu_start = entry
        out.array_clear = entry
        out.rx_enable = not entry
        out.mem_write_enable = True

    elif regs.state == FsmState.LOAD_INPUT:
        out.agu_mode = AguMode.LOAD_INPUT
        out.agu_bank = regs.bank
        out.agu_start = entry
        out.rx_enable = not entry
        out.mem_write_enable = True

    elif regs.state == FsmState.COMPUTE:
        tile = geo.kernel_tile(regs.kernel_tile_index)
        out.kernel_tile = tile
        out.output_tile = geo.output_tile(regs.output_tile_index)
        out.array_start_kernel = entry

        if regs.compute_phase == ComputePhase.FETCH_WEIGHTS:
            out.agu_mode = AguMode.SLIDING_WIN
            out.agu_region = AguRegion.WEIGHTS
            out.agu_window = weight_window(geo, tile)
            out.agu_start = phase_entry
            out.agu_read_enable = not phase_entry
            out.array_start_tile = phase_entry
            out.route_weights = True
            out.mem_read_enable = True
        elif regs.compute_phase == ComputePhase.FETCH_PIXELS:
            out.agu_mode = AguMode.SLIDING_WIN
            out.agu_region = AguRegion.INPUT
            out.agu_bank = regs.bank
            out.agu_window = pixel_window(geo, tile)
            out.agu_start = phase_entry
            out.agu_read_enable = not phase_entry
            out.route_pixels = True
            out.mem_read_enable = True
        else:
            out.array_start_pass = phase_entry
            out.array_enable = not phase_entry

    elif regs.state == FsmState.DRAIN:
        tile = geo.output_tile(regs.output_tile_index)
        out.output_tile = tile
        if regs.drain_phase == DrainPhase.WRITEBACK:
            out.array_start_writeback = phase_entry
            out.array_writeback_enable = not phase_entry
            out.mem_write_enable = True
        else:
            out.agu_mode = AguMode.UNLOAD
            out.agu_region = AguRegion.OUTPUT
            out.agu_start = phase_entry
            out.agu_output_bytes = tile.size * config.word_bytes
            out.tx_enable = not phase_entry
            out.mem_read_enable = True

    elif regs.state == FsmState.DONE:
        out.done = True

    return out


def fsm_next(regs: FsmRegisters, inputs: FsmInputs, config: EngineConfig) -> FsmRegisters:
    """
    Next register state.

    Raises ConfigurationError when ``start`` arrives in IDLE with an
    unsupported configuration; nothing is latched in that case.
    """
    nxt = replace(
        regs,
        previous_state=regs.state,
        previous_compute_phase=regs.compute_phase,
        previous_drain_phase=regs.drain_phase,
    )
    geo = regs.geometry
    entry = regs.state_entry
    phase_entry = regs.phase_entry

    if regs.state == FsmState.IDLE:
        if inputs.start:
            params = ConvParams.latch(inputs.config_n, inputs.config_k, config)
            nxt = replace(
                nxt,
                state=FsmState.LOAD_WEIGHTS,
                params=params,
                geometry=TileGeometry.from_params(params, config),
                weight_count=0,
                input_count=0,
                output_count=0,
                tx_byte_count=0,
                output_tile_index=0,
                kernel_tile_index=0,
                bank=0,
            )

    elif regs.state == FsmState.LOAD_WEIGHTS:
        nxt = replace(nxt, weight_count=regs.weight_count + int(inputs.rx_fire))
        if not entry and regs.weight_count >= geo.total_weight_elems and inputs.agu_done:
            nxt = replace(nxt, state=FsmState.LOAD_INPUT, input_count=0)

    elif regs.state == FsmState.LOAD_INPUT:
        nxt = replace(nxt, input_count=regs.input_count + int(inputs.rx_fire))
        if not entry and regs.input_count >= geo.total_input_elems and inputs.agu_done:
            nxt = replace(
                nxt,
                state=FsmState.COMPUTE,
                compute_phase=ComputePhase.FETCH_WEIGHTS,
                kernel_tile_index=0,
            )

    elif regs.state == FsmState.COMPUTE:
        if phase_entry:
            pass
        elif regs.compute_phase == ComputePhase.FETCH_WEIGHTS:
            if inputs.agu_done:
                nxt = replace(nxt, compute_phase=ComputePhase.FETCH_PIXELS)
        elif regs.compute_phase == ComputePhase.FETCH_PIXELS:
            if inputs.agu_done:
                nxt = replace(nxt, compute_phase=ComputePhase.MAC)
        elif inputs.array_done:
            nxt = replace(nxt, state=FsmState.DRAIN, drain_phase=DrainPhase.WRITEBACK)
        elif inputs.tile_done:
            nxt = replace(
                nxt,
                compute_phase=ComputePhase.FETCH_WEIGHTS,
                kernel_tile_index=regs.kernel_tile_index + 1,
            )

    elif regs.state == FsmState.DRAIN:
        if inputs.tx_fire:
            tx_bytes = regs.tx_byte_count + 1
            nxt = replace(
                nxt,
                tx_byte_count=tx_bytes,
                output_count=regs.output_count + int(tx_bytes % config.word_bytes == 0),
            )
        if phase_entry:
            pass
        elif regs.drain_phase == DrainPhase.WRITEBACK:
            if inputs.writeback_done:
                nxt = replace(nxt, drain_phase=DrainPhase.UNLOAD)
        elif (
            regs.output_count >= geo.outputs_through_tile(regs.output_tile_index)
            and inputs.agu_done
        ):
            if regs.output_tile_index + 1 < geo.num_output_tiles:
                nxt = replace(
                    nxt,
                    state=FsmState.LOAD_INPUT,
                    output_tile_index=regs.output_tile_index + 1,
                    bank=regs.bank ^ 1,
                    input_count=0,
                )
            else:
                nxt = replace(nxt, state=FsmState.DONE)

    elif regs.state == FsmState.DONE:
        # Counters stay observable until the next start
        nxt = replace(
            nxt,
            state=FsmState.IDLE,
            output_tile_index=0,
            kernel_tile_index=0,
            bank=0,
            compute_phase=ComputePhase.FETCH_WEIGHTS,
            drain_phase=DrainPhase.WRITEBACK,
        )

    return nxt


@dataclass
class ControlFSMSim:
    """
    Behavioral model of the control FSM.

    Wraps fsm_outputs/fsm_next with a register, a cycle counter and a
    state-transition log.
    """

    config: EngineConfig = field(default_factory=EngineConfig)
    regs: FsmRegisters = field(default_factory=FsmRegisters)
    cycle: int = 0
    history: list[FsmState] = field(default_factory=list)

    def __post_init__(self):
        self.history = [self.regs.state]

    @property
    def state(self) -> FsmState:
        return self.regs.state

    def outputs(self) -> FsmOutputs:
        return fsm_outputs(self.regs, self.config)

    def step(self, inputs: FsmInputs) -> FsmRegisters:
        nxt = fsm_next(self.regs, inputs, self.config)
        if nxt.state != self.regs.state:
            logger.debug(
                "cycle %d: %s -> %s (tile %d)",
                self.cycle,
                self.regs.state.name,
                nxt.state.name,
                nxt.output_tile_index,
            )
            self.history.append(nxt.state)
        elif nxt.state == FsmState.COMPUTE and nxt.compute_phase != self.regs.compute_phase:
            logger.debug(
                "cycle %d: COMPUTE %s -> %s (kernel tile %d)",
                self.cycle,
                self.regs.compute_phase.name,
                nxt.compute_phase.name,
                nxt.kernel_tile_index,
            )
        self.regs = nxt
        self.cycle += 1
        return nxt

    def reset(self):
        self.regs = FsmRegisters()
        self.cycle = 0
        self.history = [self.regs.state]
