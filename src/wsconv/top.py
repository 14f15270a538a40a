"""
ConvEngineSim - Top-level integration of the convolution engine.

This module wires together all major subsystems behind the host interface:
- ControlFSM: phase sequencing, pulses and enables
- AddressGenerator: stream packing, window walks, output unload
- SystolicArray: MAC mesh with cross-tile accumulator plane
- MemoryPort: weights, ping-pong input banks, outputs

External Interfaces:
- Host: reset, start, config_n, config_k -> done, busy
- rx stream (bytes in):  rx_data, rx_valid -> rx_ready
- tx stream (bytes out): tx_ready -> tx_data, tx_valid

Order of one tick:
1. FSM Moore outputs from the current registers
2. Completion flags sampled (before anything moves)
3. Datapath: rx handshake, AGU, memory requests, array, tx handshake
4. Memory clock edge
5. FSM clock edge
6. Entry pulses (AGU start, array clear/start_kernel/start_tile/
   start_pass/start_writeback) take effect at the same edge
"""

import logging
from dataclasses import dataclass, field

from .agu.address_generator import AddressGeneratorSim, AguInputs
from .config import EngineConfig
from .controller.control_fsm import ControlFSMSim, FsmInputs, FsmState
from .core.systolic_array import SystolicArraySim
from .errors import ProtocolViolation
from .memory.memory_port import MemoryPortSim
from .util.handshake import HandshakeMonitor

logger = logging.getLogger(__name__)


@dataclass
class HostInputs:
    reset: bool = False
    start: bool = False
    config_n: int = 0
    config_k: int = 0
    rx_data: int = 0
    rx_valid: bool = False
    tx_ready: bool = False


@dataclass
class HostOutputs:
    state: FsmState = FsmState.IDLE
    rx_ready: bool = False
    tx_valid: bool = False
    tx_data: int = 0
    rx_fire: bool = False
    tx_fire: bool = False
    done: bool = False
    busy: bool = False


@dataclass
class ConvEngineSim:
    """
    Cycle-accurate behavioral model of the whole engine.

    Example:
        >>> engine = ConvEngineSim(EngineConfig())
        >>> out = engine.step(HostInputs(start=True, config_n=16, config_k=3))
        >>> engine.state
        <FsmState.LOAD_WEIGHTS: 1>
    """

    config: EngineConfig = field(default_factory=EngineConfig)

    fsm: ControlFSMSim = field(init=False)  # type: ignore[assignment]
    agu: AddressGeneratorSim = field(init=False)  # type: ignore[assignment]
    array: SystolicArraySim = field(init=False)  # type: ignore[assignment]
    memory: MemoryPortSim = field(init=False)  # type: ignore[assignment]
    rx_monitor: HandshakeMonitor = field(init=False)  # type: ignore[assignment]
    tx_monitor: HandshakeMonitor = field(init=False)  # type: ignore[assignment]

    cycle: int = 0
    run_start_cycle: int = 0

    def __post_init__(self):
        self.fsm = ControlFSMSim(self.config)
        self.agu = AddressGeneratorSim(self.config)
        self.array = SystolicArraySim(self.config)
        self.memory = MemoryPortSim(self.config)
        self.rx_monitor = HandshakeMonitor("rx")
        self.tx_monitor = HandshakeMonitor("tx")

    @property
    def state(self) -> FsmState:
        return self.fsm.state

    def reset(self):
        """Synchronous global reset. Memory contents are kept."""
        self.fsm.reset()
        self.agu.reset()
        self.array.reset()
        self.memory.reset()
        self.rx_monitor.reset()
        self.tx_monitor.reset()

    def step(self, host: HostInputs) -> HostOutputs:
        """Advance one clock."""
        self.cycle += 1
        if host.reset:
            self.reset()
            return HostOutputs()

        regs = self.fsm.regs
        ctl = self.fsm.outputs()
        size = self.config.array_size

        # Flags as they stand before the datapath ticks
        agu_done = self.agu.is_done()
        tile_done = self.array.tile_done
        array_done = self.array.array_done
        writeback_done = self.array.writeback_done

        # =====================================================================
        # Datapath
        # =====================================================================
        rx_ready = ctl.rx_enable and self.agu.accepting
        rx_fire = self.rx_monitor.observe(host.rx_valid, rx_ready, host.rx_data)

        agu_out = self.agu.step(
            AguInputs(
                in_valid=rx_fire,
                in_data=host.rx_data,
                read_enable=ctl.agu_read_enable,
                mem_read_data=self.memory.read_data,
                mem_read_valid=self.memory.read_valid,
                tx_ready=host.tx_ready and ctl.tx_enable,
            )
        )

        if agu_out.mem_write_en:
            if not ctl.mem_write_enable:
                raise ProtocolViolation(f"AGU write in {ctl.state.name} without write enable")
            self.memory.write(agu_out.mem_write_addr, agu_out.mem_write_data, agu_out.mem_write_mask)
        if agu_out.mem_read_en:
            if not ctl.mem_read_enable:
                raise ProtocolViolation(f"AGU read in {ctl.state.name} without read enable")
            self.memory.read(agu_out.mem_read_addr)

        if agu_out.pixel_valid:
            if ctl.route_weights:
                # Kernel columns are mirrored across the array
                self.array.load_weight(
                    agu_out.window_row, size - 1 - agu_out.window_col, agu_out.pixel
                )
            elif ctl.route_pixels:
                self.array.buffer_pixel(agu_out.window_row, agu_out.window_col, agu_out.pixel)
            else:
                raise ProtocolViolation(f"window byte delivered in {ctl.state.name}")

        if ctl.array_enable and self.array.passing:
            self.array.pass_step()

        if ctl.array_writeback_enable and not self.array.writeback_done:
            if not ctl.mem_write_enable:
                raise ProtocolViolation("write-back without write enable")
            offset, word = self.array.writeback_step()
            self.memory.write(self.config.layout.output_base + offset, word)

        tx_valid = agu_out.tx_valid and ctl.tx_enable
        tx_fire = self.tx_monitor.observe(tx_valid, host.tx_ready, agu_out.tx_data)

        # =====================================================================
        # Clock edge
        # =====================================================================
        self.memory.tick()
        self.fsm.step(
            FsmInputs(
                start=host.start,
                config_n=host.config_n,
                config_k=host.config_k,
                rx_fire=rx_fire,
                tx_fire=tx_fire,
                agu_done=agu_done,
                tile_done=tile_done,
                array_done=array_done,
                writeback_done=writeback_done,
            )
        )
        self._apply_pulses(regs, ctl)

        if ctl.state == FsmState.IDLE and host.start:
            self.run_start_cycle = self.cycle
        if ctl.done:
            params = regs.params
            logger.info(
                "convolution N=%d K=%d finished in %d cycles (%d outputs)",
                params.n,
                params.k,
                self.cycle - self.run_start_cycle,
                regs.output_count,
            )

        return HostOutputs(
            state=ctl.state,
            rx_ready=rx_ready,
            tx_valid=tx_valid,
            tx_data=agu_out.tx_data if tx_valid else 0,
            rx_fire=rx_fire,
            tx_fire=tx_fire,
            done=ctl.done,
            busy=ctl.busy,
        )

    def _apply_pulses(self, regs, ctl):
        if ctl.array_clear:
            self.array.clear()
        if ctl.array_start_kernel:
            self.array.start_kernel()
        if ctl.array_start_tile:
            tile = ctl.kernel_tile
            self.array.start_tile(tile.index, tile.is_last)
        if ctl.array_start_pass:
            self.array.start_pass(ctl.output_tile.rows, ctl.output_tile.cols)
        if ctl.array_start_writeback:
            self.array.start_writeback(ctl.output_tile.rows, ctl.output_tile.cols)
        if ctl.agu_start:
            self.agu.configure(
                ctl.agu_mode,
                geometry=regs.geometry,
                bank=ctl.agu_bank,
                window=ctl.agu_window,
                region=ctl.agu_region,
                output_bytes=ctl.agu_output_bytes,
            )
            self.agu.start()

    def get_statistics(self) -> dict:
        regs = self.fsm.regs
        return {
            "cycles": self.cycle,
            "state": regs.state.name,
            "weight_count": regs.weight_count,
            "input_count": regs.input_count,
            "output_count": regs.output_count,
            "rx_transfers": self.rx_monitor.transfers,
            "tx_transfers": self.tx_monitor.transfers,
            "tx_stall_cycles": self.tx_monitor.stall_cycles,
            **{f"array_{k}": v for k, v in self.array.get_statistics().items()},
            **{f"memory_{k}": v for k, v in self.memory.get_statistics().items()},
        }
