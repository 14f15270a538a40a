"""Utility modules for the convolution engine."""

from .handshake import HandshakeMonitor
from .packing import (
    apply_byte_mask,
    byte_lane,
    lane_mask,
    pack_word,
    replace_lane,
    unpack_word,
    words_to_bytes,
)

__all__ = [
    "apply_byte_mask",
    "HandshakeMonitor",
    "byte_lane",
    "lane_mask",
    "pack_word",
    "replace_lane",
    "unpack_word",
    "words_to_bytes",
]
