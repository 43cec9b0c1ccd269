"""Sliding-window anti-replay filter as described in RFC 6479."""

from __future__ import annotations

from dataclasses import dataclass, field

_BLOCK_BIT_LOG = 6
_BLOCK_BITS = 1 << _BLOCK_BIT_LOG
_RING_BLOCKS = 1 << 7
_BLOCK_MASK = _RING_BLOCKS - 1
_BIT_MASK = _BLOCK_BITS - 1

WINDOW_SIZE = (_RING_BLOCKS - 1) * _BLOCK_BITS
"""Number of counters behind the newest one that are still tracked."""


@dataclass
class ReplayFilter:
    """Rejects message counters that were already seen or fell out of the window.

    A fresh filter is empty and ready to use. Filters are not thread safe.
    """

    last: int = 0
    _ring: list[int] = field(
        default_factory=lambda: [0] * _RING_BLOCKS, init=False, repr=False
    )

    def reset(self) -> None:
        """Return the filter to its empty state."""
        self.last = 0
        self._ring[0] = 0

    def validate_counter(self, counter: int, limit: int) -> bool:
        """Record ``counter`` and tell whether it should be accepted.

        Counters at or above ``limit`` are always rejected.
        """
        if counter < 0:
            raise ValueError("counter must not be negative")
        if counter >= limit:
            return False
        index_block = counter >> _BLOCK_BIT_LOG
        if counter > self.last:
            current = self.last >> _BLOCK_BIT_LOG
            diff = min(index_block - current, _RING_BLOCKS)
            for block in range(current + 1, current + diff + 1):
                self._ring[block & _BLOCK_MASK] = 0
            self.last = counter
        elif self.last - counter > WINDOW_SIZE:
            return False
        index_block &= _BLOCK_MASK
        old = self._ring[index_block]
        new = old | (1 << (counter & _BIT_MASK))
        self._ring[index_block] = new
        return old != new