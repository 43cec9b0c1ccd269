"""TAI64N timestamps with whitened sub-second precision."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

TIMESTAMP_SIZE = 12
_BASE = 0x400000000000000A
_WHITENER_MASK = 0x1000000 - 1
_NS_PER_SECOND = 1_000_000_000
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_LAYOUT = struct.Struct(">QI")


@dataclass(frozen=True, order=True)
class Timestamp:
    """A 12-byte TAI64N label: big-endian seconds then nanoseconds."""

    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != TIMESTAMP_SIZE:
            raise ValueError(
                f"timestamp must be {TIMESTAMP_SIZE} bytes, got {len(self.data)}"
            )
        object.__setattr__(self, "data", bytes(self.data))

    def __bytes__(self) -> bytes:
        return self.data

    def after(self, other: Timestamp) -> bool:
        """Tell whether this timestamp is strictly later than ``other``."""
        return self.data > other.data

    def __str__(self) -> str:
        secs, nanos = _LAYOUT.unpack(self.data)
        moment = _EPOCH + timedelta(seconds=secs - _BASE)
        text = moment.strftime("%Y-%m-%d %H:%M:%S")
        if nanos:
            text += "." + f"{nanos:09d}".rstrip("0")
        return text + " +0000 UTC"


def _to_nanoseconds(t: int | datetime) -> int:
    if isinstance(t, datetime):
        if t.tzinfo is None:
            t = t.astimezone()
        delta = t - _EPOCH
        return (
            (delta.days * 86400 + delta.seconds) * _NS_PER_SECOND
            + delta.microseconds * 1000
        )
    return int(t)


def stamp(t: int | datetime) -> Timestamp:
    """Build a timestamp from a datetime or from nanoseconds since the epoch."""
    secs, nanos = divmod(_to_nanoseconds(t), _NS_PER_SECOND)
    nanos &= ~_WHITENER_MASK
    return Timestamp(
        _LAYOUT.pack((_BASE + secs) & 0xFFFFFFFFFFFFFFFF, nanos & 0xFFFFFFFF)
    )


def now() -> Timestamp:
    """Return the timestamp for the current time."""
    return stamp(time.time_ns())