"""Internet checksum helpers used for IP and TCP headers."""

from __future__ import annotations

import struct

_U64 = 0xFFFFFFFFFFFFFFFF


def checksum_no_fold(data: bytes, initial: int) -> int:
    """Add ``data`` as big-endian words onto ``initial`` without folding."""
    view = memoryview(data)
    words_end = len(view) // 4 * 4
    total = initial + sum(word for (word,) in struct.iter_unpack(">I", view[:words_end]))
    rest = view[words_end:]
    if len(rest) >= 2:
        total += (rest[0] << 8) | rest[1]
        rest = rest[2:]
    if len(rest) == 1:
        total += rest[0] << 8
    return total & _U64


def checksum(data: bytes, initial: int) -> int:
    """Return the 16-bit folded one's complement sum of ``data``."""
    total = checksum_no_fold(data, initial)
    for _ in range(4):
        total = (total >> 16) + (total & 0xFFFF)
    return total & 0xFFFF


def pseudo_header_checksum_no_fold(
    protocol: int, src_addr: bytes, dst_addr: bytes, total_len: int
) -> int:
    """Return the unfolded sum of a TCP/UDP pseudo header."""
    total = checksum_no_fold(src_addr, 0)
    total = checksum_no_fold(dst_addr, total)
    total = checksum_no_fold(bytes((0, protocol & 0xFF)), total)
    return checksum_no_fold((total_len & 0xFFFF).to_bytes(2, "big"), total)