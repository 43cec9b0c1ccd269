import ipaddress
import random
import struct

import pytest

from wgtun.checksum import checksum, pseudo_header_checksum_no_fold
from wgtun.gro import TCPGROTable, handle_gro, is_tcp4_no_ip_options, is_tcp6_no_eh
from wgtun.virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)

OFFSET = VIRTIO_NET_HDR_LEN
ACK = 0x10
PSH = 0x08


def _ap(addr, port):
    return ipaddress.ip_address(addr).packed, port


IP4_A = _ap("192.0.2.1", 1)
IP4_B = _ap("192.0.2.2", 1)
IP4_C = _ap("192.0.2.3", 1)
IP6_A = _ap("2001:db8::1", 1)
IP6_B = _ap("2001:db8::2", 1)
IP6_C = _ap("2001:db8::3", 1)


def _tcp_header(buf, at, src, dst, flags, seq):
    struct.pack_into(">HHIIBBH", buf, at, src[1], dst[1], seq, 1, 0x50, flags, 3000)


def _set_tcp_checksum(buf, at, src, dst, segment_size):
    psum = pseudo_header_checksum_no_fold(6, src[0], dst[0], 20 + segment_size)
    struct.pack_into(">H", buf, at + 16, ~checksum(bytes(buf[at:]), psum) & 0xFFFF)


def tcp4_packet(src, dst, flags, segment_size, seq, ttl=64, tos=0, ip_flags=0):
    total_len = 40 + segment_size
    b = bytearray(OFFSET + total_len)
    ip = OFFSET
    b[ip] = 0x45
    b[ip + 1] = tos
    struct.pack_into(">H", b, ip + 2, total_len)
    struct.pack_into(">H", b, ip + 6, ip_flags << 13)
    b[ip + 8] = ttl
    b[ip + 9] = 6
    b[ip + 12 : ip + 16] = src[0]
    b[ip + 16 : ip + 20] = dst[0]
    struct.pack_into(">H", b, ip + 10, ~checksum(bytes(b[ip : ip + 20]), 0) & 0xFFFF)
    _tcp_header(b, ip + 20, src, dst, flags, seq)
    _set_tcp_checksum(b, ip + 20, src, dst, segment_size)
    return b


def tcp6_packet(src, dst, flags, segment_size, seq, hop_limit=64, traffic_class=0):
    total_len = 60 + segment_size
    b = bytearray(OFFSET + total_len)
    ip = OFFSET
    b[ip] = 0x60 | (traffic_class >> 4)
    b[ip + 1] = (traffic_class & 0x0F) << 4
    struct.pack_into(">H", b, ip + 4, 20 + segment_size)
    b[ip + 6] = 6
    b[ip + 7] = hop_limit
    b[ip + 8 : ip + 24] = src[0]
    b[ip + 24 : ip + 40] = dst[0]
    _tcp_header(b, ip + 40, src, dst, flags, seq)
    _set_tcp_checksum(b, ip + 40, src, dst, segment_size)
    return b


def flip_tcp4_checksum(b):
    at = VIRTIO_NET_HDR_LEN + 20 + 16
    b[at] ^= 0xFF
    b[at + 1] ^= 0xFF
    return b


GRO_CASES = [
    (
        "multiple flows",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101),
            tcp4_packet(IP4_A, IP4_C, ACK, 100, 201),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 101),
            tcp6_packet(IP6_A, IP6_C, ACK, 100, 201),
        ],
        [0, 2, 3, 5],
        [240, 140, 260, 160],
    ),
    (
        "PSH interleaved",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK | PSH, 100, 101),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 201),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 301),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
            tcp6_packet(IP6_A, IP6_B, ACK | PSH, 100, 101),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 201),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 301),
        ],
        [0, 2, 4, 6],
        [240, 240, 260, 260],
    ),
    (
        "coalesceItemInvalidCSum",
        lambda: [
            flip_tcp4_checksum(tcp4_packet(IP4_A, IP4_B, ACK, 100, 1)),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 201),
        ],
        [0, 1],
        [140, 240],
    ),
    (
        "out of order",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 201),
        ],
        [0],
        [340],
    ),
    (
        "tcp4 unequal TTL",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101, ttl=65),
        ],
        [0, 1],
        [140, 140],
    ),
    (
        "tcp4 unequal ToS",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101, tos=1),
        ],
        [0, 1],
        [140, 140],
    ),
    (
        "tcp4 unequal flags more fragments set",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101, ip_flags=1),
        ],
        [0, 1],
        [140, 140],
    ),
    (
        "tcp4 unequal flags DF set",
        lambda: [
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
            tcp4_packet(IP4_A, IP4_B, ACK, 100, 101, ip_flags=2),
        ],
        [0, 1],
        [140, 140],
    ),
    (
        "tcp6 unequal hop limit",
        lambda: [
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 101, hop_limit=65),
        ],
        [0, 1],
        [160, 160],
    ),
    (
        "tcp6 unequal traffic class",
        lambda: [
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
            tcp6_packet(IP6_A, IP6_B, ACK, 100, 101, traffic_class=1),
        ],
        [0, 1],
        [160, 160],
    ),
]


@pytest.mark.parametrize(
    "make_pkts, want_to_write, want_lens",
    [case[1:] for case in GRO_CASES],
    ids=[case[0] for case in GRO_CASES],
)
def test_handle_gro(make_pkts, want_to_write, want_lens):
    pkts = make_pkts()
    to_write = handle_gro(pkts, OFFSET, TCPGROTable(), TCPGROTable())
    assert to_write == want_to_write
    assert [len(pkts[i]) - OFFSET for i in to_write] == want_lens


def test_coalesced_ipv4_headers_are_rewritten():
    pkts = [
        tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
        tcp4_packet(IP4_A, IP4_B, ACK, 100, 101),
    ]
    assert handle_gro(pkts, OFFSET, TCPGROTable(), TCPGROTable()) == [0]
    head = pkts[0]
    assert struct.unpack_from(">H", head, OFFSET + 2)[0] == 240
    assert checksum(bytes(head[OFFSET : OFFSET + 20]), 0) == 0xFFFF
    hdr = VirtioNetHdr.decode(bytes(head[:OFFSET]))
    assert hdr == VirtioNetHdr(
        flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
        gso_type=VIRTIO_NET_HDR_GSO_TCPV4,
        hdr_len=40,
        gso_size=100,
        csum_start=20,
        csum_offset=16,
    )


def test_coalesced_ipv6_payload_length():
    pkts = [
        tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
        tcp6_packet(IP6_A, IP6_B, ACK, 100, 101),
    ]
    assert handle_gro(pkts, OFFSET, TCPGROTable(), TCPGROTable()) == [0]
    assert struct.unpack_from(">H", pkts[0], OFFSET + 4)[0] == 220
    hdr = VirtioNetHdr.decode(bytes(pkts[0][:OFFSET]))
    assert hdr.gso_type == VIRTIO_NET_HDR_GSO_TCPV6
    assert hdr.hdr_len == 60
    assert hdr.csum_start == 40


def test_append_with_psh_marks_head():
    pkts = [
        tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
        tcp4_packet(IP4_A, IP4_B, ACK | PSH, 100, 101),
    ]
    assert handle_gro(pkts, OFFSET, TCPGROTable(), TCPGROTable()) == [0]
    assert pkts[0][OFFSET + 20 + 13] == ACK | PSH


def test_uncoalesced_packets_get_empty_header():
    pkt = tcp4_packet(IP4_A, IP4_B, ACK, 100, 1)
    pkt[:OFFSET] = b"\xff" * OFFSET
    other = bytearray(b"\xff" * OFFSET + b"\x00" * 30)
    pkts = [pkt, other]
    assert handle_gro(pkts, OFFSET, TCPGROTable(), TCPGROTable()) == [0, 1]
    assert pkts[0][:OFFSET] == bytes(OFFSET)
    assert pkts[1][:OFFSET] == bytes(OFFSET)


@pytest.mark.parametrize("offset", [OFFSET - 1, 0])
def test_offset_too_small_raises(offset):
    with pytest.raises(ValueError, match="invalid offset"):
        handle_gro([tcp4_packet(IP4_A, IP4_B, ACK, 100, 1)], offset, TCPGROTable(), TCPGROTable())


def test_offset_past_packet_raises():
    pkt = tcp4_packet(IP4_A, IP4_B, ACK, 100, 1)
    with pytest.raises(ValueError):
        handle_gro([pkt], len(pkt), TCPGROTable(), TCPGROTable())


def test_table_reset_forgets_flows():
    table4, table6 = TCPGROTable(), TCPGROTable()
    pkts = [
        tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
        tcp4_packet(IP4_A, IP4_C, ACK, 100, 1),
        tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
    ]
    handle_gro(pkts, OFFSET, table4, table6)
    assert len(table4) == 2
    assert len(table6) == 1
    table4.reset()
    table6.reset()
    assert len(table4) == 0
    assert len(table6) == 0


def test_fuzzed_packets_yield_unique_indices_in_range():
    rng = random.Random(1)
    base = [
        tcp4_packet(IP4_A, IP4_B, ACK, 100, 1),
        tcp4_packet(IP4_A, IP4_B, ACK, 100, 101),
        tcp4_packet(IP4_A, IP4_C, ACK, 100, 201),
        tcp6_packet(IP6_A, IP6_B, ACK, 100, 1),
        tcp6_packet(IP6_A, IP6_B, ACK, 100, 101),
        tcp6_packet(IP6_A, IP6_C, ACK, 100, 201),
    ]
    for _ in range(200):
        pkts = [bytearray(p) for p in base]
        for pkt in pkts:
            for _ in range(rng.randrange(3)):
                at = rng.randrange(OFFSET, len(pkt))
                pkt[at] = rng.randrange(256)
        to_write = handle_gro(pkts, OFFSET, TCPGROTable(), TCPGROTable())
        assert len(to_write) <= len(pkts)
        assert len(set(to_write)) == len(to_write)
        assert all(0 <= i < len(pkts) for i in to_write)


def _tcp4_valid():
    return bytes(tcp4_packet(IP4_A, IP4_B, ACK, 100, 1)[VIRTIO_NET_HDR_LEN:])


def _with_byte(data, index, value):
    out = bytearray(data)
    out[index] = value
    return bytes(out)


@pytest.mark.parametrize(
    "data, want",
    [
        (_tcp4_valid(), True),
        (_tcp4_valid()[:39], False),
        (b"\x00", False),
        (_with_byte(_tcp4_valid(), 0, 0x46), False),
        (_with_byte(_tcp4_valid(), 9, 7), False),
    ],
    ids=["valid", "invalid length", "invalid version", "invalid header len", "invalid protocol"],
)
def test_is_tcp4_no_ip_options(data, want):
    assert is_tcp4_no_ip_options(data) is want


def test_is_tcp6_no_eh():
    valid = bytes(tcp6_packet(IP6_A, IP6_B, ACK, 100, 1)[OFFSET:])
    assert is_tcp6_no_eh(valid) is True
    assert is_tcp6_no_eh(valid[:59]) is False
    assert is_tcp6_no_eh(_with_byte(valid, 6, 17)) is False
    assert is_tcp6_no_eh(_tcp4_valid()) is False