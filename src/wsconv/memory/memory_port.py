"""
Memory Port.

Word-addressable local memory shared by the weight region, the two input
banks and the output region (see ``MemoryLayout``). One read and one write
per clock:

- read(addr) issued in tick T returns data in tick T+1
- write(addr, word, mask) in tick T is visible to reads issued from T+1 on
- a read of the address being written in the same tick returns the old word

Architecture:
    write_addr/data/mask ──►┌──────────────────┐
                            │  memory_depth x  │
    read_addr/en ──────────►│  word_bits words │──► read_data (T+1)
                            └──────────────────┘
"""

from dataclasses import dataclass, field

import numpy as np
from amaranth import Module, unsigned
from amaranth.lib.memory import Memory
from amaranth.lib.wiring import Component, In, Out

from ..config import EngineConfig
from ..errors import ProtocolViolation
from ..util.packing import apply_byte_mask, lane_mask


class MemoryPort(Component):
    """
    Single-bank memory with one read port and one byte-masked write port.

    Ports:
        read_addr: Word address to read
        read_en: Read enable
        read_data: Word read in the previous cycle
        read_valid: High when read_data holds a word read in the previous cycle

        write_addr: Word address to write
        write_en: Write enable
        write_data: Word to write
        write_mask: Byte-level write mask (1 = write that byte)
    """

    def __init__(self, config: EngineConfig):
        self.config = config

        width = config.word_bits
        addr_bits = config.addr_bits

        super().__init__(
            {
                # Read port
                "read_addr": In(unsigned(addr_bits)),
                "read_en": In(1),
                "read_data": Out(unsigned(width)),
                "read_valid": Out(1),
                # Write port
                "write_addr": In(unsigned(addr_bits)),
                "write_en": In(1),
                "write_data": In(unsigned(width)),
                "write_mask": In(unsigned(config.byte_mask_bits)),
            }
        )

    def elaborate(self, _platform):
        m = Module()
        cfg = self.config

        mem = Memory(shape=unsigned(cfg.word_bits), depth=cfg.memory_depth, init=[])
        m.submodules.mem = mem

        # Non-transparent read port: one cycle of latency
        rd_port = mem.read_port()
        m.d.comb += [
            rd_port.addr.eq(self.read_addr),
            rd_port.en.eq(self.read_en),
            self.read_data.eq(rd_port.data),
        ]
        m.d.sync += self.read_valid.eq(self.read_en)

        wr_port = mem.write_port(granularity=8)
        m.d.comb += [
            wr_port.addr.eq(self.write_addr),
            wr_port.data.eq(self.write_data),
        ]
        for byte_idx in range(cfg.word_bytes):
            m.d.comb += wr_port.en[byte_idx].eq(self.write_en & self.write_mask[byte_idx])

        return m


@dataclass
class MemoryPortSim:
    """
    Behavioral model of the memory port.

    Requests are staged with ``read``/``write`` during a tick and committed
    by ``tick``. Staging a second read or write in the same tick, or using an
    address outside the memory, raises ProtocolViolation.
    """

    config: EngineConfig = field(default_factory=EngineConfig)

    words: np.ndarray = field(init=False)  # type: ignore[assignment]

    # Registered outputs
    read_data: int = 0
    read_valid: bool = False

    # Requests staged for the current tick
    _read_req: int | None = None
    _write_req: tuple[int, int, int] | None = None

    # Statistics
    total_reads: int = 0
    total_writes: int = 0

    def __post_init__(self):
        self.words = np.zeros(self.config.memory_depth, dtype=np.uint64)

    def _check_addr(self, addr: int, kind: str):
        if not 0 <= addr < self.config.memory_depth:
            raise ProtocolViolation(
                f"{kind} address {addr} outside memory of {self.config.memory_depth} words"
            )

    def read(self, addr: int):
        """Issue a read; the word appears on read_data after the next tick."""
        if self._read_req is not None:
            raise ProtocolViolation(f"second read in one tick (addr {self._read_req} and {addr})")
        self._check_addr(addr, "read")
        self._read_req = addr

    def write(self, addr: int, word: int, mask: int | None = None):
        """Issue a byte-masked write, committed at the next tick."""
        if self._write_req is not None:
            raise ProtocolViolation(
                f"second write in one tick (addr {self._write_req[0]} and {addr})"
            )
        self._check_addr(addr, "write")
        if mask is None:
            mask = lane_mask(self.config.word_bytes)
        self._write_req = (addr, word & ((1 << self.config.word_bits) - 1), mask)

    def tick(self):
        """Advance one clock: latch read data, then commit the staged write."""
        if self._read_req is not None:
            self.read_data = int(self.words[self._read_req])
            self.read_valid = True
            self.total_reads += 1
        else:
            self.read_valid = False

        if self._write_req is not None:
            addr, word, mask = self._write_req
            self.words[addr] = apply_byte_mask(
                int(self.words[addr]), word, mask, self.config.word_bytes
            )
            self.total_writes += 1

        self._read_req = None
        self._write_req = None

    def reset(self):
        """Synchronous reset: drop staged requests and the read register."""
        self._read_req = None
        self._write_req = None
        self.read_data = 0
        self.read_valid = False

    def peek(self, addr: int) -> int:
        self._check_addr(addr, "peek")
        return int(self.words[addr])

    def poke(self, addr: int, word: int):
        self._check_addr(addr, "poke")
        self.words[addr] = word & ((1 << self.config.word_bits) - 1)

    def get_statistics(self) -> dict:
        return {
            "total_reads": self.total_reads,
            "total_writes": self.total_writes,
        }
