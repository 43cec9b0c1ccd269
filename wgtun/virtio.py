"""The virtio-net header that prefixes packets on an offload-enabled TUN device."""

from __future__ import annotations

import struct
from dataclasses import dataclass

VIRTIO_NET_HDR_F_NEEDS_CSUM = 1
VIRTIO_NET_HDR_F_DATA_VALID = 2

VIRTIO_NET_HDR_GSO_NONE = 0
VIRTIO_NET_HDR_GSO_TCPV4 = 1
VIRTIO_NET_HDR_GSO_UDP = 3
VIRTIO_NET_HDR_GSO_TCPV6 = 4
VIRTIO_NET_HDR_GSO_ECN = 0x80

# Host byte order, no padding: the shape of the kernel's struct virtio_net_hdr.
_LAYOUT = struct.Struct("=BBHHHH")

VIRTIO_NET_HDR_LEN = _LAYOUT.size
"""Size in bytes of an encoded header."""


class ShortBufferError(ValueError):
    """The buffer is too small to hold a virtio-net header."""

    def __init__(self, message: str = "short buffer") -> None:
        super().__init__(message)


@dataclass
class VirtioNetHdr:
    """Offload metadata the kernel exchanges with a TUN device in vnet-hdr mode."""

    flags: int = 0
    gso_type: int = 0
    hdr_len: int = 0
    gso_size: int = 0
    csum_start: int = 0
    csum_offset: int = 0

    @classmethod
    def decode(cls, data: bytes) -> VirtioNetHdr:
        """Parse a header from the first bytes of ``data``."""
        if len(data) < VIRTIO_NET_HDR_LEN:
            raise ShortBufferError()
        return cls(*_LAYOUT.unpack_from(data))

    def encode(self, buf: bytearray | memoryview) -> None:
        """Write the header over the first bytes of ``buf``."""
        if len(buf) < VIRTIO_NET_HDR_LEN:
            raise ShortBufferError()
        buf[:VIRTIO_NET_HDR_LEN] = bytes(self)

    def __bytes__(self) -> bytes:
        return _LAYOUT.pack(
            self.flags,
            self.gso_type,
            self.hdr_len,
            self.gso_size,
            self.csum_start,
            self.csum_offset,
        )