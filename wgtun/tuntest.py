"""An in-memory TUN device and packet builders for tests."""

from __future__ import annotations

import errno
import ipaddress
import queue
import struct
import threading
from collections.abc import Iterator, Sequence
from typing import Optional

from .device import Device, Event

DEFAULT_MTU = 1420

_BE16 = struct.Struct(">H")
_POLL_INTERVAL = 0.05

_ICMPV4_PROTOCOL_NUMBER = 1
_ICMPV4_ECHO = 8
_ICMPV4_CHECKSUM_OFFSET = 2
_ICMPV4_SIZE = 8
_IPV4_SIZE = 20
_IPV4_TOTAL_LEN_OFFSET = 2
_IPV4_CHECKSUM_OFFSET = 10
_TTL = 65
_HEADER_SIZE = _IPV4_SIZE + _ICMPV4_SIZE


class DeviceClosedError(OSError):
    """The channel device has been closed."""

    def __init__(self, message: str = "file already closed") -> None:
        super().__init__(errno.EBADF, message)


def _checksum(buf: bytes, initial: int) -> int:
    """The RFC 1071 internet checksum, already complemented."""
    even = len(buf) // 2 * 2
    total = initial + sum(word for (word,) in struct.iter_unpack(">H", buf[:even]))
    if len(buf) % 2:
        total += buf[-1] << 8
    while total > 0xFFFF:
        total = (total >> 16) + (total & 0xFFFF)
    return ~total & 0xFFFF


def _gen_icmpv4(
    payload: bytes, dst: ipaddress.IPv4Address, src: ipaddress.IPv4Address
) -> bytes:
    pkt = bytearray(_HEADER_SIZE + len(payload))

    pkt[_IPV4_SIZE] = _ICMPV4_ECHO
    pkt[_IPV4_SIZE + 1] = 0
    icmp_csum = ~_checksum(pkt[_IPV4_SIZE:_HEADER_SIZE], _checksum(payload, 0)) & 0xFFFF
    _BE16.pack_into(pkt, _IPV4_SIZE + _ICMPV4_CHECKSUM_OFFSET, icmp_csum)

    pkt[0] = (4 << 4) | (_IPV4_SIZE // 4)
    _BE16.pack_into(pkt, _IPV4_TOTAL_LEN_OFFSET, len(pkt))
    pkt[8] = _TTL
    pkt[9] = _ICMPV4_PROTOCOL_NUMBER
    pkt[12:16] = src.packed
    pkt[16:20] = dst.packed
    ip_csum = ~_checksum(pkt[:_IPV4_SIZE], 0) & 0xFFFF
    _BE16.pack_into(pkt, _IPV4_CHECKSUM_OFFSET, ip_csum)

    pkt[_HEADER_SIZE:] = payload
    return bytes(pkt)


def ping(
    dst: str | ipaddress.IPv4Address, src: str | ipaddress.IPv4Address
) -> bytes:
    """Build an IPv4 ICMP echo request from ``src`` to ``dst``."""
    local_port = 1337
    seq = 0
    payload = struct.pack(">HH", local_port, seq)
    return _gen_icmpv4(
        payload, ipaddress.IPv4Address(str(dst)), ipaddress.IPv4Address(str(src))
    )


class _ChannelDevice(Device):
    def __init__(self, owner: ChannelTUN) -> None:
        self._owner = owner

    def file(self) -> None:
        return None

    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        owner = self._owner
        while True:
            if owner._closed.is_set():
                raise DeviceClosedError()
            try:
                msg = owner.outbound.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            n = min(len(msg), max(len(bufs[0]) - offset, 0))
            bufs[0][offset : offset + n] = msg[:n]
            return [n]

    def write(self, bufs: Sequence[bytes], offset: int) -> int:
        owner = self._owner
        for data in bufs:
            if owner._closed.is_set():
                raise DeviceClosedError()
            owner.inbound.put(bytes(data[offset:]))
        return len(bufs)

    def mtu(self) -> int:
        return DEFAULT_MTU

    def name(self) -> str:
        return "loopbackTun1"

    def events(self) -> Iterator[Event]:
        while True:
            event = self._owner._events.get()
            if event is None:
                self._owner._events.put(None)
                return
            yield event

    def close(self) -> None:
        owner = self._owner
        with owner._close_lock:
            if owner._closed.is_set():
                return
            owner._closed.set()
            owner._events.put(None)

    def batch_size(self) -> int:
        return 1


class ChannelTUN:
    """A TUN device backed by queues.

    Packets the device writes appear on ``inbound``; packets put on
    ``outbound`` are returned by the device's reads.
    """

    def __init__(self) -> None:
        self.inbound: queue.Queue[bytes] = queue.Queue()
        self.outbound: queue.Queue[bytes] = queue.Queue()
        self._closed = threading.Event()
        self._close_lock = threading.Lock()
        self._events: queue.Queue[Optional[Event]] = queue.Queue()
        self._events.put(Event.UP)
        self._device = _ChannelDevice(self)

    def tun(self) -> Device:
        """Return the device end of the channels."""
        return self._device