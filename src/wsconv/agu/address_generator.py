"""
Address Generation Unit (AGU).

The AGU turns a configured mode plus tile geometry into a sequence of memory
addresses, one per enabled clock. It is tile-agnostic: the control layer
chooses the region, bank and window; the AGU only walks them.

Modes:
    LOAD_WEIGHT / LOAD_INPUT:
        stream bytes --pack little-endian--> word writes at base+0, base+1, ...
        A word is written once it holds word_bytes bytes or the final byte
        arrived (partial byte mask).

    SLIDING_WIN:
        raster scan (window_row, window_col) over a window of a 2D region
            linear = (row_offset + window_row) * row_stride
                     + col_offset + window_col
            addr   = base + linear // word_bytes,  lane = linear % word_bytes
        One read per clock while read_enable is high; the byte arrives with
        its window coordinates one clock later.

    UNLOAD:
        per output byte: ISSUE read -> CAPTURE lane -> PRESENT on tx until
        tx_ready. The byte is presented in the CAPTURE cycle already and held
        in PRESENT if the consumer stalls.

Timing (one tick):
    inputs (incl. mem_read_data of the read issued last tick)
        -> combinational outputs (write/read request, pixel, tx)
        -> state update at the clock edge
"""

from dataclasses import dataclass, field
from enum import IntEnum

from amaranth import Module, Signal, unsigned
from amaranth.lib.wiring import Component, In, Out

from ..config import EngineConfig, TileGeometry
from ..errors import ProtocolViolation
from ..util.packing import byte_lane, lane_mask, replace_lane


class AguMode(IntEnum):
    """AGU operating mode."""

    IDLE = 0
    LOAD_WEIGHT = 1
    LOAD_INPUT = 2
    SLIDING_WIN = 3
    UNLOAD = 4


class AguRegion(IntEnum):
    """Memory region an AGU pass walks."""

    WEIGHTS = 0
    INPUT = 1
    OUTPUT = 2


class UnloadPhase(IntEnum):
    ISSUE = 0
    CAPTURE = 1
    PRESENT = 2


@dataclass(frozen=True)
class SlidingWindow:
    """Rectangular window of a row-major 2D byte region."""

    row_offset: int
    col_offset: int
    rows: int
    cols: int
    row_stride: int

    @property
    def size(self) -> int:
        return self.rows * self.cols

    def linear_index(self, window_row: int, window_col: int) -> int:
        """Byte offset of a window position from the region base."""
        return (self.row_offset + window_row) * self.row_stride + self.col_offset + window_col

    def positions(self):
        """Window coordinates in raster order."""
        for row in range(self.rows):
            for col in range(self.cols):
                yield row, col


@dataclass
class AguInputs:
    """Per-tick AGU inputs."""

    in_valid: bool = False
    """A stream byte was delivered this tick (transfer already fired)."""

    in_data: int = 0
    read_enable: bool = False
    """SLIDING_WIN consumer can take a byte."""

    mem_read_data: int = 0
    """Memory read register (word of the read issued last tick)."""

    mem_read_valid: bool = False
    """mem_read_data holds the word of a read issued last tick."""

    tx_ready: bool = False


@dataclass
class AguOutputs:
    """Per-tick AGU outputs."""

    in_ready: bool = False

    mem_read_en: bool = False
    mem_read_addr: int = 0
    mem_write_en: bool = False
    mem_write_addr: int = 0
    mem_write_data: int = 0
    mem_write_mask: int = 0

    pixel_valid: bool = False
    pixel: int = 0
    window_row: int = 0
    window_col: int = 0

    tx_valid: bool = False
    tx_data: int = 0

    done: bool = False


def _count_bits(config: EngineConfig) -> int:
    largest = max(
        config.kernel_limit**2,
        config.max_input_tile_size**2,
        config.total_pes * config.word_bytes,
    )
    return largest.bit_length() + 1


def _dim_bits(config: EngineConfig) -> int:
    return max(1, config.max_input_tile_size.bit_length())


class AddressGenerator(Component):
    """
    Address Generation Unit RTL.

    The configuration ports are latched by ``start``; the state of the
    previous pass is discarded at the same edge.

    Ports:
        Configuration:
            start: Latch configuration and reset the walk
            mode: AguMode
            base_addr: Region base word address
            count: Element count (LOAD: stream bytes, UNLOAD: output bytes)
            win_row_offset, win_col_offset, win_rows, win_cols, row_stride:
                SLIDING_WIN window

        Stream in (LOAD_*):
            in_valid: Byte delivered this cycle
            in_data: Byte value
            in_ready: Pass still needs bytes

        Window consumer (SLIDING_WIN):
            read_en: Consumer can take a byte
            pix_valid, pix_data, pix_row, pix_col: Byte and window position

        Memory:
            mem_read_en, mem_read_addr, mem_read_data
            mem_write_en, mem_write_addr, mem_write_data, mem_write_mask

        Stream out (UNLOAD):
            tx_valid, tx_data, tx_ready

        Status:
            done: Pass complete
            busy: Pass started and not complete
    """

    def __init__(self, config: EngineConfig):
        self.config = config

        addr_bits = config.addr_bits
        count_bits = _count_bits(config)
        dim_bits = _dim_bits(config)

        super().__init__(
            {
                # Configuration
                "start": In(1),
                "mode": In(3),
                "base_addr": In(unsigned(addr_bits)),
                "count": In(unsigned(count_bits)),
                "win_row_offset": In(unsigned(dim_bits)),
                "win_col_offset": In(unsigned(dim_bits)),
                "win_rows": In(unsigned(dim_bits)),
                "win_cols": In(unsigned(dim_bits)),
                "row_stride": In(unsigned(dim_bits)),
                # Stream in
                "in_valid": In(1),
                "in_data": In(8),
                "in_ready": Out(1),
                # Window consumer
                "read_en": In(1),
                "pix_valid": Out(1),
                "pix_data": Out(8),
                "pix_row": Out(unsigned(dim_bits)),
                "pix_col": Out(unsigned(dim_bits)),
                # Memory
                "mem_read_en": Out(1),
                "mem_read_addr": Out(unsigned(addr_bits)),
                "mem_read_data": In(unsigned(config.word_bits)),
                "mem_write_en": Out(1),
                "mem_write_addr": Out(unsigned(addr_bits)),
                "mem_write_data": Out(unsigned(config.word_bits)),
                "mem_write_mask": Out(unsigned(config.byte_mask_bits)),
                # Stream out
                "tx_valid": Out(1),
                "tx_data": Out(8),
                "tx_ready": In(1),
                # Status
                "done": Out(1),
                "busy": Out(1),
            }
        )

    def elaborate(self, _platform):
        m = Module()
        cfg = self.config

        addr_bits = cfg.addr_bits
        count_bits = _count_bits(cfg)
        dim_bits = _dim_bits(cfg)
        off_bits = cfg.byte_offset_bits
        lane_bits = max(1, off_bits)
        wb = cfg.word_bytes

        # Latched configuration
        mode = Signal(3, name="mode_r")
        base = Signal(addr_bits, name="base_r")
        count = Signal(count_bits, name="count_r")
        row_off = Signal(dim_bits, name="row_off_r")
        col_off = Signal(dim_bits, name="col_off_r")
        rows = Signal(dim_bits, name="rows_r")
        cols = Signal(dim_bits, name="cols_r")
        stride = Signal(dim_bits, name="stride_r")

        # LOAD state
        n_bytes = Signal(count_bits)
        lane = Signal(lane_bits)
        pack = Signal(cfg.word_bits)
        cursor = Signal(addr_bits)

        # SLIDING_WIN state
        win_r = Signal(dim_bits)
        win_c = Signal(dim_bits)
        issued_all = Signal()
        pending = Signal()
        pend_lane = Signal(lane_bits)
        pend_r = Signal(dim_bits)
        pend_c = Signal(dim_bits)

        # UNLOAD state
        byte_idx = Signal(count_bits)
        phase = Signal(2, init=UnloadPhase.ISSUE)
        tx_byte = Signal(8)

        # =================================================================
        # Status
        # =================================================================
        done = Signal()
        with m.Switch(mode):
            with m.Case(AguMode.LOAD_WEIGHT, AguMode.LOAD_INPUT):
                m.d.comb += done.eq(n_bytes >= count)
            with m.Case(AguMode.SLIDING_WIN):
                m.d.comb += done.eq(issued_all & ~pending)
            with m.Case(AguMode.UNLOAD):
                m.d.comb += done.eq(byte_idx >= count)

        m.d.comb += [
            self.done.eq(done),
            self.busy.eq((mode != AguMode.IDLE) & ~done),
        ]

        # =================================================================
        # LOAD_WEIGHT / LOAD_INPUT: pack bytes into words
        # =================================================================
        is_load = (mode == AguMode.LOAD_WEIGHT) | (mode == AguMode.LOAD_INPUT)
        m.d.comb += self.in_ready.eq(is_load & (n_bytes < count))

        merged = Signal(cfg.word_bits)
        m.d.comb += merged.eq(pack | (self.in_data << (lane * 8)))

        write_mask = Signal(cfg.byte_mask_bits)
        with m.Switch(lane):
            for i in range(wb):
                with m.Case(i):
                    m.d.comb += write_mask.eq(lane_mask(i + 1))

        flush = (lane == wb - 1) | (n_bytes + 1 == count)

        with m.If(self.in_valid & self.in_ready):
            m.d.sync += n_bytes.eq(n_bytes + 1)
            with m.If(flush):
                m.d.comb += [
                    self.mem_write_en.eq(1),
                    self.mem_write_addr.eq(base + cursor),
                    self.mem_write_data.eq(merged),
                    self.mem_write_mask.eq(write_mask),
                ]
                m.d.sync += [
                    cursor.eq(cursor + 1),
                    pack.eq(0),
                    lane.eq(0),
                ]
            with m.Else():
                m.d.sync += [
                    pack.eq(merged),
                    lane.eq(lane + 1),
                ]

        # =================================================================
        # SLIDING_WIN: raster-scan reads, bytes delivered one cycle later
        # =================================================================
        linear = Signal(count_bits + dim_bits)
        m.d.comb += linear.eq((row_off + win_r) * stride + col_off + win_c)

        m.d.comb += [
            self.pix_valid.eq(pending),
            self.pix_data.eq(self.mem_read_data.word_select(pend_lane, 8)),
            self.pix_row.eq(pend_r),
            self.pix_col.eq(pend_c),
        ]

        issue = Signal()
        m.d.comb += issue.eq((mode == AguMode.SLIDING_WIN) & self.read_en & ~issued_all)
        m.d.sync += pending.eq(issue)

        with m.If(issue):
            m.d.comb += [
                self.mem_read_en.eq(1),
                self.mem_read_addr.eq(base + linear[off_bits:]),
            ]
            m.d.sync += [
                pend_lane.eq(linear[:off_bits]),
                pend_r.eq(win_r),
                pend_c.eq(win_c),
            ]
            with m.If(win_c == cols - 1):
                m.d.sync += win_c.eq(0)
                with m.If(win_r == rows - 1):
                    m.d.sync += issued_all.eq(1)
                with m.Else():
                    m.d.sync += win_r.eq(win_r + 1)
            with m.Else():
                m.d.sync += win_c.eq(win_c + 1)

        # =================================================================
        # UNLOAD: read, capture lane, present on tx
        # =================================================================
        captured = Signal(8)
        if off_bits:
            m.d.comb += captured.eq(self.mem_read_data.word_select(byte_idx[:off_bits], 8))
        else:
            m.d.comb += captured.eq(self.mem_read_data[:8])

        with m.If(mode == AguMode.UNLOAD):
            with m.Switch(phase):
                with m.Case(UnloadPhase.ISSUE):
                    with m.If(byte_idx < count):
                        m.d.comb += [
                            self.mem_read_en.eq(1),
                            self.mem_read_addr.eq(base + byte_idx[off_bits:]),
                        ]
                        m.d.sync += phase.eq(UnloadPhase.CAPTURE)

                with m.Case(UnloadPhase.CAPTURE):
                    m.d.comb += [
                        self.tx_valid.eq(1),
                        self.tx_data.eq(captured),
                    ]
                    with m.If(self.tx_ready):
                        m.d.sync += [
                            byte_idx.eq(byte_idx + 1),
                            phase.eq(UnloadPhase.ISSUE),
                        ]
                    with m.Else():
                        m.d.sync += [
                            tx_byte.eq(captured),
                            phase.eq(UnloadPhase.PRESENT),
                        ]

                with m.Case(UnloadPhase.PRESENT):
                    m.d.comb += [
                        self.tx_valid.eq(1),
                        self.tx_data.eq(tx_byte),
                    ]
                    with m.If(self.tx_ready):
                        m.d.sync += [
                            byte_idx.eq(byte_idx + 1),
                            phase.eq(UnloadPhase.ISSUE),
                        ]

        # =================================================================
        # Start: latch configuration, reset the walk (overrides the above)
        # =================================================================
        with m.If(self.start):
            m.d.sync += [
                mode.eq(self.mode),
                base.eq(self.base_addr),
                count.eq(self.count),
                row_off.eq(self.win_row_offset),
                col_off.eq(self.win_col_offset),
                rows.eq(self.win_rows),
                cols.eq(self.win_cols),
                stride.eq(self.row_stride),
                n_bytes.eq(0),
                lane.eq(0),
                pack.eq(0),
                cursor.eq(0),
                win_r.eq(0),
                win_c.eq(0),
                issued_all.eq(0),
                pending.eq(0),
                byte_idx.eq(0),
                phase.eq(UnloadPhase.ISSUE),
                tx_byte.eq(0),
            ]

        return m


@dataclass
class AddressGeneratorSim:
    """
    Behavioral model of the AGU.

    Usage per pass:
        agu.configure(AguMode.LOAD_INPUT, geometry, bank=1)
        agu.start()
        while not agu.is_done():
            outputs = agu.step(inputs)
    """

    config: EngineConfig = field(default_factory=EngineConfig)

    # Configuration (set by configure, used from start on)
    mode: AguMode = AguMode.IDLE
    base_address: int = 0
    count: int = 0
    window: SlidingWindow | None = None

    # LOAD state
    bytes_transferred: int = 0
    write_cursor: int = 0
    pack_buffer: int = 0
    pack_lane: int = 0

    # SLIDING_WIN state
    window_row: int = 0
    window_col: int = 0
    read_cursor: int = 0
    pending: tuple[int, int, int] | None = None

    # UNLOAD state
    unload_phase: UnloadPhase = UnloadPhase.ISSUE
    tx_byte: int = 0

    def configure(
        self,
        mode: AguMode,
        geometry: TileGeometry | None = None,
        bank: int = 0,
        window: SlidingWindow | None = None,
        region: AguRegion | None = None,
        output_bytes: int | None = None,
    ):
        """
        Select a mode and derive base address and count.

        The base address comes from the memory layout: the weight region for
        LOAD_WEIGHT, input bank ``bank`` for LOAD_INPUT, the output region for
        UNLOAD, and ``region`` (input bank by default) for SLIDING_WIN.
        """
        layout = self.config.layout
        if region is None:
            region = {
                AguMode.LOAD_WEIGHT: AguRegion.WEIGHTS,
                AguMode.UNLOAD: AguRegion.OUTPUT,
            }.get(mode, AguRegion.INPUT)
        base = {
            AguRegion.WEIGHTS: layout.weight_base,
            AguRegion.INPUT: layout.input_bank_base(bank),
            AguRegion.OUTPUT: layout.output_base,
        }[region]

        if mode == AguMode.LOAD_WEIGHT:
            assert geometry is not None, "LOAD_WEIGHT needs a tile geometry"
            count = geometry.total_weight_elems
        elif mode == AguMode.LOAD_INPUT:
            assert geometry is not None, "LOAD_INPUT needs a tile geometry"
            count = geometry.total_input_elems
        elif mode == AguMode.SLIDING_WIN:
            assert window is not None, "SLIDING_WIN needs a window"
            count = window.size
        elif mode == AguMode.UNLOAD:
            assert output_bytes is not None, "UNLOAD needs an output byte count"
            count = output_bytes
        else:
            count = 0

        self.program(mode, base, count, window)

    def program(
        self, mode: AguMode, base_address: int, count: int, window: SlidingWindow | None = None
    ):
        """Set raw configuration (what the RTL configuration ports carry)."""
        if mode == AguMode.SLIDING_WIN:
            assert window is not None and window.rows > 0 and window.cols > 0, "empty window"
        self.mode = mode
        self.base_address = base_address
        self.count = count
        self.window = window

    def start(self):
        """Reset the walk for the configured mode."""
        self.bytes_transferred = 0
        self.write_cursor = 0
        self.pack_buffer = 0
        self.pack_lane = 0
        self.window_row = 0
        self.window_col = 0
        self.read_cursor = 0
        self.pending = None
        self.unload_phase = UnloadPhase.ISSUE
        self.tx_byte = 0

    def reset(self):
        self.program(AguMode.IDLE, 0, 0)
        self.start()

    @property
    def is_load(self) -> bool:
        return self.mode in (AguMode.LOAD_WEIGHT, AguMode.LOAD_INPUT)

    @property
    def accepting(self) -> bool:
        """A LOAD pass still needs stream bytes."""
        return self.is_load and self.bytes_transferred < self.count

    @property
    def issued_all(self) -> bool:
        return self.read_cursor >= self.count

    def is_done(self) -> bool:
        if self.is_load:
            return self.bytes_transferred >= self.count
        if self.mode == AguMode.SLIDING_WIN:
            return self.issued_all and self.pending is None
        if self.mode == AguMode.UNLOAD:
            return self.bytes_transferred >= self.count
        return False

    def step(self, inputs: AguInputs) -> AguOutputs:
        """Advance one clock."""
        out = AguOutputs(in_ready=self.accepting, done=self.is_done())

        if inputs.in_valid:
            if not self.is_load:
                raise ProtocolViolation(f"stream byte delivered to AGU in mode {self.mode.name}")
            if not self.accepting:
                raise ProtocolViolation(
                    f"stream byte delivered after all {self.count} bytes were loaded"
                )
            self._step_load(inputs, out)
        elif self.mode == AguMode.SLIDING_WIN:
            self._step_window(inputs, out)
        elif self.mode == AguMode.UNLOAD:
            self._step_unload(inputs, out)
        return out

    def _step_load(self, inputs: AguInputs, out: AguOutputs):
        wb = self.config.word_bytes
        merged = replace_lane(self.pack_buffer, self.pack_lane, inputs.in_data)
        self.bytes_transferred += 1
        if self.pack_lane == wb - 1 or self.bytes_transferred == self.count:
            out.mem_write_en = True
            out.mem_write_addr = self.base_address + self.write_cursor
            out.mem_write_data = merged
            out.mem_write_mask = lane_mask(self.pack_lane + 1)
            self.write_cursor += 1
            self.pack_buffer = 0
            self.pack_lane = 0
        else:
            self.pack_buffer = merged
            self.pack_lane += 1

    def _step_window(self, inputs: AguInputs, out: AguOutputs):
        wb = self.config.word_bytes
        if self.pending is not None:
            if not inputs.mem_read_valid:
                raise ProtocolViolation("window read returned no data")
            lane, row, col = self.pending
            out.pixel_valid = True
            out.pixel = byte_lane(inputs.mem_read_data, lane)
            out.window_row = row
            out.window_col = col
            self.pending = None

        if inputs.read_enable and not self.issued_all:
            linear = self.window.linear_index(self.window_row, self.window_col)
            out.mem_read_en = True
            out.mem_read_addr = self.base_address + linear // wb
            self.pending = (linear % wb, self.window_row, self.window_col)
            self.read_cursor += 1
            self.window_col += 1
            if self.window_col == self.window.cols:
                self.window_col = 0
                self.window_row += 1

    def _step_unload(self, inputs: AguInputs, out: AguOutputs):
        wb = self.config.word_bytes
        if self.unload_phase == UnloadPhase.ISSUE:
            if self.bytes_transferred < self.count:
                out.mem_read_en = True
                out.mem_read_addr = self.base_address + self.bytes_transferred // wb
                self.unload_phase = UnloadPhase.CAPTURE
            return

        if self.unload_phase == UnloadPhase.CAPTURE:
            if not inputs.mem_read_valid:
                raise ProtocolViolation("unload read returned no data")
            data = byte_lane(inputs.mem_read_data, self.bytes_transferred % wb)
        else:
            data = self.tx_byte
        out.tx_valid = True
        out.tx_data = data
        if inputs.tx_ready:
            self.bytes_transferred += 1
            self.unload_phase = UnloadPhase.ISSUE
        else:
            self.tx_byte = data
            self.unload_phase = UnloadPhase.PRESENT
