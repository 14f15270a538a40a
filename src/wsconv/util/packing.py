"""
Little-endian byte/word helpers.

Stream elements are bytes; memory holds ``word_bytes``-wide words. Lane 0 is
the least significant byte of a word.
"""

from collections.abc import Iterable, Sequence

BYTE_BITS = 8
BYTE_MASK = 0xFF


def byte_lane(word: int, lane: int) -> int:
    """Extract byte ``lane`` from ``word``."""
    return (word >> (lane * BYTE_BITS)) & BYTE_MASK


def replace_lane(word: int, lane: int, value: int) -> int:
    """Return ``word`` with byte ``lane`` replaced by ``value``."""
    shift = lane * BYTE_BITS
    return (word & ~(BYTE_MASK << shift)) | ((value & BYTE_MASK) << shift)


def lane_mask(num_lanes: int) -> int:
    """Byte mask with the low ``num_lanes`` lanes enabled."""
    return (1 << num_lanes) - 1


def pack_word(data: Sequence[int]) -> int:
    """Pack up to ``word_bytes`` bytes into a word, lane 0 first."""
    word = 0
    for lane, value in enumerate(data):
        word |= (value & BYTE_MASK) << (lane * BYTE_BITS)
    return word


def unpack_word(word: int, word_bytes: int) -> list[int]:
    """Split a word into ``word_bytes`` bytes, lane 0 first."""
    return [byte_lane(word, lane) for lane in range(word_bytes)]


def words_to_bytes(words: Iterable[int], word_bytes: int) -> list[int]:
    """Flatten words into their little-endian byte stream."""
    out: list[int] = []
    for word in words:
        out.extend(unpack_word(word, word_bytes))
    return out


def apply_byte_mask(old: int, new: int, mask: int, word_bytes: int) -> int:
    """Merge ``new`` into ``old`` for every lane set in ``mask``."""
    merged = old
    for lane in range(word_bytes):
        if mask & (1 << lane):
            merged = replace_lane(merged, lane, byte_lane(new, lane))
    return merged
