"""Generic receive offload: coalescing TCP segments before writing them to a TUN device."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import NamedTuple, Optional, Sequence

from .checksum import checksum, pseudo_header_checksum_no_fold
from .virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)

IPPROTO_TCP = 6

TCP_FLAGS_OFFSET = 13
TCP_FLAG_FIN = 0x01
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10

IPV4_FLAG_MORE_FRAGMENTS = 0x20
IPV4_SRC_ADDR_OFFSET = 12
IPV6_SRC_ADDR_OFFSET = 8
MAX_UINT16 = 0xFFFF

# Buffers are treated as holding at most this many bytes, offset included.
_BUFFER_CAPACITY = MAX_UINT16
_U32 = 0xFFFFFFFF
_U16 = 0xFFFF
_BE16 = struct.Struct(">H")
_BE32 = struct.Struct(">I")


class _FlowKey(NamedTuple):
    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    # Differing ack values are never coalesced, so they form separate flows.
    rx_ack: int


def _flow_key(pkt: bytes, src_addr: int, dst_addr: int, tcph_offset: int) -> _FlowKey:
    addr_size = dst_addr - src_addr
    return _FlowKey(
        pkt[src_addr:dst_addr],
        pkt[dst_addr : dst_addr + addr_size],
        _BE16.unpack_from(pkt, tcph_offset)[0],
        _BE16.unpack_from(pkt, tcph_offset + 2)[0],
        _BE32.unpack_from(pkt, tcph_offset + 8)[0],
    )


@dataclass
class _GROItem:
    """Bookkeeping for one TCP packet while a batch is being coalesced."""

    key: _FlowKey
    sent_seq: int
    bufs_index: int
    num_merged: int
    gso_size: int
    iph_len: int
    tcph_len: int
    psh_set: bool


class TCPGROTable:
    """Packets seen so far in a batch, grouped by TCP flow."""

    def __init__(self) -> None:
        self._items_by_flow: dict[_FlowKey, list[_GROItem]] = {}

    def __len__(self) -> int:
        return len(self._items_by_flow)

    def _lookup_or_insert(
        self, pkt: bytes, src_off: int, dst_off: int, tcph_off: int, tcph_len: int, index: int
    ) -> Optional[list[_GROItem]]:
        key = _flow_key(pkt, src_off, dst_off, tcph_off)
        items = self._items_by_flow.get(key)
        if items is not None:
            return items
        self._insert(pkt, src_off, dst_off, tcph_off, tcph_len, index)
        return None

    def _insert(
        self, pkt: bytes, src_off: int, dst_off: int, tcph_off: int, tcph_len: int, index: int
    ) -> None:
        key = _flow_key(pkt, src_off, dst_off, tcph_off)
        item = _GROItem(
            key=key,
            sent_seq=_BE32.unpack_from(pkt, tcph_off + 4)[0],
            bufs_index=index,
            num_merged=0,
            gso_size=len(pkt) - tcph_off - tcph_len,
            iph_len=tcph_off,
            tcph_len=tcph_len,
            psh_set=bool(pkt[tcph_off + TCP_FLAGS_OFFSET] & TCP_FLAG_PSH),
        )
        self._items_by_flow.setdefault(key, []).append(item)

    def _delete_at(self, key: _FlowKey, i: int) -> _GROItem:
        """Remove and return the item at position ``i`` of the flow ``key``."""
        items = self._items_by_flow[key]
        return items.pop(i)

    def reset(self) -> None:
        """Forget every tracked flow."""
        self._items_by_flow.clear()


class _CanCoalesce(enum.Enum):
    PREPEND = -1
    UNAVAILABLE = 0
    APPEND = 1


class _CoalesceResult(enum.Enum):
    INSUFFICIENT_CAP = 0
    PSH_ENDING = 1
    ITEM_INVALID_CSUM = 2
    PKT_INVALID_CSUM = 3
    SUCCESS = 4


def _can_coalesce(
    pkt: bytes,
    iph_len: int,
    tcph_len: int,
    seq: int,
    psh_set: bool,
    gso_size: int,
    item: _GROItem,
    bufs: Sequence[bytearray],
    offset: int,
) -> _CanCoalesce:
    """Decide whether ``pkt`` may join the packet ``item`` describes, and on which side."""
    target = bufs[item.bufs_index]
    base = offset
    if tcph_len != item.tcph_len:
        return _CanCoalesce.UNAVAILABLE
    if tcph_len > 20:
        if pkt[iph_len + 20 : iph_len + tcph_len] != target[
            base + item.iph_len + 20 : base + iph_len + tcph_len
        ]:
            return _CanCoalesce.UNAVAILABLE
    if pkt[0] >> 4 == 6:
        if pkt[0] != target[base] or pkt[1] >> 4 != target[base + 1] >> 4:
            return _CanCoalesce.UNAVAILABLE
        if pkt[7] != target[base + 7]:
            return _CanCoalesce.UNAVAILABLE
    else:
        if pkt[1] != target[base + 1]:
            return _CanCoalesce.UNAVAILABLE
        if pkt[6] >> 5 != target[base + 6] >> 5:
            return _CanCoalesce.UNAVAILABLE
        if pkt[8] != target[base + 8]:
            return _CanCoalesce.UNAVAILABLE

    lhs_len = (item.gso_size + item.num_merged * item.gso_size) & _U16
    if seq == (item.sent_seq + lhs_len) & _U32:
        if item.psh_set:
            # PSH may only be set on the final segment of a group.
            return _CanCoalesce.UNAVAILABLE
        target_payload = len(target) - base - iph_len - tcph_len
        if target_payload % item.gso_size != 0:
            # A short segment was already appended; nothing may follow it.
            return _CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size:
            return _CanCoalesce.UNAVAILABLE
        return _CanCoalesce.APPEND
    if (seq + gso_size) & _U32 == item.sent_seq:
        if psh_set:
            return _CanCoalesce.UNAVAILABLE
        if gso_size < item.gso_size:
            return _CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size and item.num_merged > 0:
            return _CanCoalesce.UNAVAILABLE
        return _CanCoalesce.PREPEND
    return _CanCoalesce.UNAVAILABLE


def _addr_layout(is_v6: bool) -> tuple[int, int]:
    return (IPV6_SRC_ADDR_OFFSET, 16) if is_v6 else (IPV4_SRC_ADDR_OFFSET, 4)


def _tcp_checksum_valid(pkt: bytes, iph_len: int, is_v6: bool) -> bool:
    src_at, addr_size = _addr_layout(is_v6)
    tcp_total_len = (len(pkt) - iph_len) & _U16
    psum = pseudo_header_checksum_no_fold(
        IPPROTO_TCP,
        pkt[src_at : src_at + addr_size],
        pkt[src_at + addr_size : src_at + 2 * addr_size],
        tcp_total_len,
    )
    return checksum(pkt[iph_len:], psum) == _U16


def _coalesce(
    mode: _CanCoalesce,
    pkt: bytes,
    pkt_index: int,
    gso_size: int,
    seq: int,
    psh_set: bool,
    item: _GROItem,
    bufs: list[bytearray],
    offset: int,
    is_v6: bool,
) -> _CoalesceResult:
    """Merge ``pkt`` into the packet ``item`` tracks, swapping buffers on prepend."""
    headers_len = item.iph_len + item.tcph_len
    coalesced_len = len(bufs[item.bufs_index]) - offset + len(pkt) - headers_len
    if offset + coalesced_len > _BUFFER_CAPACITY:
        return _CoalesceResult.INSUFFICIENT_CAP

    if mode is _CanCoalesce.PREPEND:
        if psh_set:
            return _CoalesceResult.PSH_ENDING
        if item.num_merged == 0 and not _tcp_checksum_valid(
            bytes(bufs[item.bufs_index][offset:]), item.iph_len, is_v6
        ):
            return _CoalesceResult.ITEM_INVALID_CSUM
        if not _tcp_checksum_valid(pkt, item.iph_len, is_v6):
            return _CoalesceResult.PKT_INVALID_CSUM
        item.sent_seq = seq
        bufs[pkt_index].extend(bufs[item.bufs_index][offset + headers_len :])
        # The item's index is the one already queued for writing, so the
        # merged packet has to live there.
        bufs[item.bufs_index], bufs[pkt_index] = bufs[pkt_index], bufs[item.bufs_index]
        head = bufs[item.bufs_index]
    else:
        head = bufs[item.bufs_index]
        if item.num_merged == 0 and not _tcp_checksum_valid(
            bytes(head[offset:]), item.iph_len, is_v6
        ):
            return _CoalesceResult.ITEM_INVALID_CSUM
        if not _tcp_checksum_valid(pkt, item.iph_len, is_v6):
            return _CoalesceResult.PKT_INVALID_CSUM
        if psh_set:
            item.psh_set = True
            head[offset + item.iph_len + TCP_FLAGS_OFFSET] |= TCP_FLAG_PSH
        head.extend(pkt[headers_len:])

    item.gso_size = max(item.gso_size, gso_size)
    hdr = VirtioNetHdr(
        flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
        hdr_len=headers_len,
        gso_size=item.gso_size,
        csum_start=item.iph_len,
        csum_offset=16,
    )
    if is_v6:
        hdr.gso_type = VIRTIO_NET_HDR_GSO_TCPV6
        _BE16.pack_into(head, offset + 4, (coalesced_len - item.iph_len) & _U16)
    else:
        hdr.gso_type = VIRTIO_NET_HDR_GSO_TCPV4
        head[offset + 10 : offset + 12] = b"\x00\x00"
        _BE16.pack_into(head, offset + 2, coalesced_len & _U16)
        iph_csum = ~checksum(head[offset : offset + item.iph_len], 0) & _U16
        _BE16.pack_into(head, offset + 10, iph_csum)
    hdr.encode(memoryview(head)[offset - VIRTIO_NET_HDR_LEN :])

    # Store the pseudo-header sum in the TCP checksum field; checksum
    # offload downstream completes it over the header and payload.
    addr_offset, addr_len = _addr_layout(is_v6)
    src_at = offset + addr_offset
    psum = pseudo_header_checksum_no_fold(
        IPPROTO_TCP,
        bytes(head[src_at : src_at + addr_len]),
        bytes(head[src_at + addr_len : src_at + 2 * addr_len]),
        (coalesced_len - item.iph_len) & _U16,
    )
    _BE16.pack_into(head, offset + hdr.csum_start + hdr.csum_offset, checksum(b"", psum))

    item.num_merged = (item.num_merged + 1) & _U16
    return _CoalesceResult.SUCCESS


def _tcp_gro(
    bufs: list[bytearray], offset: int, pkt_index: int, table: TCPGROTable, is_v6: bool
) -> bool:
    """Try to coalesce the packet at ``pkt_index``; True means it was merged away."""
    pkt = bytes(bufs[pkt_index][offset:])
    if len(pkt) > MAX_UINT16:
        return False
    if is_v6:
        iph_len = 40
        if _BE16.unpack_from(pkt, 4)[0] != len(pkt) - iph_len:
            return False
    else:
        iph_len = (pkt[0] & 0x0F) * 4
        if _BE16.unpack_from(pkt, 2)[0] != len(pkt):
            return False
    if len(pkt) < iph_len:
        return False
    tcph_len = (pkt[iph_len + 12] >> 4) * 4
    if tcph_len < 20 or tcph_len > 60:
        return False
    if len(pkt) < iph_len + tcph_len:
        return False
    if not is_v6:
        if pkt[6] & IPV4_FLAG_MORE_FRAGMENTS or (pkt[6] << 3) & 0xFF or pkt[7]:
            # Fragmented segments are not coalesced.
            return False
    tcp_flags = pkt[iph_len + TCP_FLAGS_OFFSET]
    psh_set = False
    if tcp_flags != TCP_FLAG_ACK:
        if tcp_flags != TCP_FLAG_ACK | TCP_FLAG_PSH:
            return False
        psh_set = True
    gso_size = len(pkt) - tcph_len - iph_len
    if gso_size < 1:
        return False
    seq = _BE32.unpack_from(pkt, iph_len + 4)[0]
    src_off, addr_len = _addr_layout(is_v6)
    items = table._lookup_or_insert(
        pkt, src_off, src_off + addr_len, iph_len, tcph_len, pkt_index
    )
    if items is None:
        return False
    # Newest first: in-order arrival finds its match quickly, and deleting
    # at the current position leaves the earlier positions untouched.
    for i, item in reversed(list(enumerate(items))):
        mode = _can_coalesce(pkt, iph_len, tcph_len, seq, psh_set, gso_size, item, bufs, offset)
        if mode is _CanCoalesce.UNAVAILABLE:
            continue
        result = _coalesce(mode, pkt, pkt_index, gso_size, seq, psh_set, item, bufs, offset, is_v6)
        if result is _CoalesceResult.SUCCESS:
            return True
        if result is _CoalesceResult.ITEM_INVALID_CSUM:
            table._delete_at(item.key, i)
        elif result is _CoalesceResult.PKT_INVALID_CSUM:
            return False
    table._insert(pkt, src_off, src_off + addr_len, iph_len, tcph_len, pkt_index)
    return False


def is_tcp4_no_ip_options(data: bytes) -> bool:
    """Tell whether ``data`` is an IPv4 TCP packet without IP options."""
    return (
        len(data) >= 40
        and data[0] >> 4 == 4
        and data[0] & 0x0F == 5
        and data[9] == IPPROTO_TCP
    )


def is_tcp6_no_eh(data: bytes) -> bool:
    """Tell whether ``data`` is an IPv6 TCP packet without extension headers."""
    return len(data) >= 60 and data[0] >> 4 == 6 and data[6] == IPPROTO_TCP


def handle_gro(
    bufs: list[bytearray], offset: int, tcp4_table: TCPGROTable, tcp6_table: TCPGROTable
) -> list[int]:
    """Coalesce the TCP packets in ``bufs`` and return the indices still to be written.

    Each buffer holds a packet at ``offset`` with room for a virtio-net
    header just before it. Buffers are extended and swapped in place.
    """
    to_write: list[int] = []
    for i, buf in enumerate(bufs):
        if offset < VIRTIO_NET_HDR_LEN or offset > len(buf) - 1:
            raise ValueError("invalid offset")
        packet = buf[offset:]
        coalesced = False
        if is_tcp4_no_ip_options(packet):
            coalesced = _tcp_gro(bufs, offset, i, tcp4_table, False)
        elif is_tcp6_no_eh(packet):
            coalesced = _tcp_gro(bufs, offset, i, tcp6_table, True)
        if not coalesced:
            VirtioNetHdr().encode(memoryview(bufs[i])[offset - VIRTIO_NET_HDR_LEN :])
            to_write.append(i)
    return to_write