"""
Valid/ready handshake checker.

A transfer happens in a tick when ``valid`` and ``ready`` are both high. Once
a producer raises ``valid`` it must keep ``valid`` high and ``data`` stable
until the transfer happens.
"""

from dataclasses import dataclass

from ..errors import ProtocolViolation


@dataclass
class HandshakeMonitor:
    """
    Per-channel protocol monitor.

    Call ``observe`` once per tick with the channel's current signals. It
    returns True when a transfer fires in that tick.
    """

    name: str = "stream"

    # State
    pending: bool = False
    pending_data: int = 0

    # Statistics
    transfers: int = 0
    stall_cycles: int = 0

    def observe(self, valid: bool, ready: bool, data: int) -> bool:
        if self.pending:
            if not valid:
                raise ProtocolViolation(f"{self.name}: valid dropped before ready")
            if data != self.pending_data:
                raise ProtocolViolation(
                    f"{self.name}: data changed from {self.pending_data:#x} to {data:#x} "
                    "while waiting for ready"
                )

        fire = bool(valid and ready)
        if fire:
            self.pending = False
            self.transfers += 1
        elif valid:
            self.pending = True
            self.pending_data = data
            self.stall_cycles += 1
        else:
            self.pending = False
        return fire

    def reset(self):
        self.pending = False
        self.pending_data = 0
        self.transfers = 0
        self.stall_cycles = 0
