"""Segmentation offload: splitting oversized TCP packets read from a TUN device."""

from __future__ import annotations

import struct
from collections.abc import Sequence

from .checksum import checksum, pseudo_header_checksum_no_fold
from .device import TooManySegmentsError
from .gro import (
    IPPROTO_TCP,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_FIN,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
)
from .virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_NONE,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)

_U16 = 0xFFFF
_U32 = 0xFFFFFFFF
_BE16 = struct.Struct(">H")
_BE32 = struct.Struct(">I")


def tcp_tso(
    data: bytearray,
    hdr: VirtioNetHdr,
    out_bufs: Sequence[bytearray],
    out_offset: int,
) -> list[int]:
    """Split the TCP packet in ``data`` into segments written to ``out_bufs``.

    Each segment is placed at ``out_offset`` in its buffer. Returns the size
    of every segment written. ``data`` has its checksum fields cleared.
    Raises TooManySegmentsError when ``out_bufs`` runs out.
    """
    iph_len = hdr.csum_start
    is_v4 = hdr.gso_type == VIRTIO_NET_HDR_GSO_TCPV4
    if is_v4:
        data[10:12] = b"\x00\x00"
        src_at, addr_len = IPV4_SRC_ADDR_OFFSET, 4
    else:
        src_at, addr_len = IPV6_SRC_ADDR_OFFSET, 16
    csum_at = hdr.csum_start + hdr.csum_offset
    data[csum_at : csum_at + 2] = b"\x00\x00"
    first_seq = _BE32.unpack_from(data, hdr.csum_start + 4)[0]
    src_addr = bytes(data[src_at : src_at + addr_len])
    dst_addr = bytes(data[src_at + addr_len : src_at + 2 * addr_len])
    tcph_len = hdr.hdr_len - hdr.csum_start

    if hdr.gso_size == 0 and hdr.hdr_len < len(data):
        raise ValueError("GSO size must be positive")

    sizes: list[int] = []
    starts = range(hdr.hdr_len, len(data), max(hdr.gso_size, 1))
    for i, start in enumerate(starts):
        if i == len(out_bufs):
            raise TooManySegmentsError()
        end = min(start + hdr.gso_size, len(data))
        segment_len = end - start
        total_len = hdr.hdr_len + segment_len
        out = out_bufs[i]
        if len(out) - out_offset < total_len:
            raise ValueError(
                f"segment len {total_len} overflows bufs element len {len(out) - out_offset}"
            )

        segment = bytearray(data[: hdr.hdr_len])
        segment += data[start:end]
        if is_v4:
            # IPv4 needs a fresh ID, total length and header checksum per segment.
            if i > 0:
                packet_id = (_BE16.unpack_from(segment, 4)[0] + i) & _U16
                _BE16.pack_into(segment, 4, packet_id)
            _BE16.pack_into(segment, 2, total_len & _U16)
            _BE16.pack_into(segment, 10, ~checksum(segment[:iph_len], 0) & _U16)
        else:
            _BE16.pack_into(segment, 4, (total_len - iph_len) & _U16)

        seq = (first_seq + ((hdr.gso_size * i) & _U16)) & _U32
        _BE32.pack_into(segment, hdr.csum_start + 4, seq)
        if end != len(data):
            # FIN and PSH belong on the last segment only.
            segment[hdr.csum_start + TCP_FLAGS_OFFSET] &= ~(TCP_FLAG_FIN | TCP_FLAG_PSH) & 0xFF

        psum = pseudo_header_checksum_no_fold(
            IPPROTO_TCP, src_addr, dst_addr, (tcph_len + segment_len) & _U16
        )
        tcp_csum = ~checksum(segment[hdr.csum_start :], psum) & _U16
        _BE16.pack_into(segment, csum_at, tcp_csum)

        out[out_offset : out_offset + total_len] = segment
        sizes.append(total_len)
    return sizes


def gso_none_checksum(data: bytearray, csum_start: int, csum_offset: int) -> None:
    """Finish a partial checksum in place.

    The value already at the checksum field, typically the pseudo-header
    sum, is folded into the sum computed from ``csum_start`` onwards.
    """
    csum_at = csum_start + csum_offset
    if csum_at + 2 > len(data):
        raise ValueError(
            f"end of checksum offset ({csum_at + 1}) exceeds packet length ({len(data)})"
        )
    initial = _BE16.unpack_from(data, csum_at)[0]
    data[csum_at : csum_at + 2] = b"\x00\x00"
    _BE16.pack_into(data, csum_at, ~checksum(data[csum_start:], initial) & _U16)


def handle_virtio_read(
    data: bytes, bufs: Sequence[bytearray], offset: int
) -> list[int]:
    """Split a vnet-hdr prefixed read into packets placed at ``offset`` in ``bufs``.

    Returns the size of each packet produced.
    """
    hdr = VirtioNetHdr.decode(data)
    payload = bytearray(data[VIRTIO_NET_HDR_LEN:])

    if hdr.gso_type == VIRTIO_NET_HDR_GSO_NONE:
        if hdr.flags & VIRTIO_NET_HDR_F_NEEDS_CSUM:
            # CHECKSUM_PARTIAL: the checksum from csum_start is ours to finish.
            gso_none_checksum(payload, hdr.csum_start, hdr.csum_offset)
        room = len(bufs[0]) - offset
        if len(payload) > room:
            raise ValueError(f"read len {len(payload)} overflows bufs element len {room}")
        bufs[0][offset : offset + len(payload)] = payload
        return [len(payload)]

    if hdr.gso_type not in (VIRTIO_NET_HDR_GSO_TCPV4, VIRTIO_NET_HDR_GSO_TCPV6):
        raise ValueError(f"unsupported virtio GSO type: {hdr.gso_type}")

    if not payload:
        raise ValueError("packet is too short")
    ip_version = payload[0] >> 4
    if ip_version == 4:
        if hdr.gso_type != VIRTIO_NET_HDR_GSO_TCPV4:
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    elif ip_version == 6:
        if hdr.gso_type != VIRTIO_NET_HDR_GSO_TCPV6:
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    else:
        raise ValueError(f"invalid ip header version: {ip_version}")

    if len(payload) <= hdr.csum_start + 12:
        raise ValueError("packet is too short")
    # The kernel's hdr_len may cover the whole first packet on the forward
    # path, so derive it from the TCP data offset instead.
    tcph_len = (payload[hdr.csum_start + 12] >> 4) * 4
    if tcph_len < 20 or tcph_len > 60:
        raise ValueError(f"tcp header len is invalid: {tcph_len}")
    hdr.hdr_len = hdr.csum_start + tcph_len

    if len(payload) < hdr.hdr_len:
        raise ValueError(
            f"length of packet ({len(payload)}) < virtioNetHdr.hdrLen ({hdr.hdr_len})"
        )
    csum_at = hdr.csum_start + hdr.csum_offset
    if csum_at + 1 >= len(payload):
        raise ValueError(
            f"end of checksum offset ({csum_at + 1}) exceeds packet length ({len(payload)})"
        )

    return tcp_tso(payload, hdr, bufs, offset)