"""The interface that every TUN device implementation provides."""

from __future__ import annotations

import abc
import enum
from collections.abc import Iterator, Sequence
from typing import BinaryIO, Optional


class Event(enum.IntEnum):
    """Notifications a device reports about its link."""

    UP = 1
    DOWN = 2
    MTU_UPDATE = 4


class TooManySegmentsError(Exception):
    """Segmentation produced more packets than the supplied buffers hold.

    Raised from a read; it need not stop further reads.
    """

    def __init__(self, message: str = "too many segments") -> None:
        super().__init__(message)


class Device(abc.ABC):
    """A packet device: reads and writes whole IP packets in batches."""

    @abc.abstractmethod
    def file(self) -> Optional[BinaryIO]:
        """Return the underlying file object, if the device has one."""

    @abc.abstractmethod
    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Read packets into ``bufs`` starting at ``offset`` in each.

        Returns the sizes of the packets read, one per filled buffer.
        """

    @abc.abstractmethod
    def write(self, bufs: Sequence[bytes], offset: int) -> int:
        """Write the packets found at ``offset`` in each buffer.

        Returns how many were written.
        """

    @abc.abstractmethod
    def mtu(self) -> int:
        """Return the device MTU."""

    @abc.abstractmethod
    def name(self) -> str:
        """Return the current interface name."""

    @abc.abstractmethod
    def events(self) -> Iterator[Event]:
        """Return an iterator over device events; it ends when the device closes."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop the device and end its event stream."""

    @abc.abstractmethod
    def batch_size(self) -> int:
        """Return the preferred number of packets per read or write call."""

    def __enter__(self) -> Device:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()