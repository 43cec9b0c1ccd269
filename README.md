# wgtun

Building blocks for software that moves IP packets through a TUN device.
The package has no dependencies outside the standard library.

## Modules

- `wgtun.replay.ReplayFilter` is a sliding-window anti-replay filter for
  message counters. `validate_counter(counter, limit)` returns `True` the first
  time a counter inside the window is seen and `False` for a repeat, for a
  counter too far behind the newest one, or for one at or above `limit`.
  Negative counters raise `ValueError`. `reset()` empties the filter.
- `wgtun.tai64n` gives 12-byte TAI64N timestamps. `stamp(t)` builds one from a
  `datetime` or from nanoseconds since the Unix epoch, and `now()` builds one
  for the current time. The nanosecond field is rounded down to a multiple of
  2**24 ns (about 16.8 ms), so close moments often produce equal timestamps.
  `Timestamp.after(other)` tells whether one is strictly later.
- `wgtun.checksum` has the internet checksum helpers `checksum`,
  `checksum_no_fold` and `pseudo_header_checksum_no_fold`.
- `wgtun.device` defines the abstract `Device` interface (`file`, `read`,
  `write`, `mtu`, `name`, `events`, `close`, `batch_size`, and use as a context
  manager), the `Event` flags `UP`, `DOWN` and `MTU_UPDATE`, and
  `TooManySegmentsError`.
- `wgtun.virtio.VirtioNetHdr` is the 10-byte virtio network header
  (`VIRTIO_NET_HDR_LEN`) that comes before each packet on an offload-capable
  TUN. `decode` and `encode` raise `ShortBufferError` on a buffer that is too
  small.
- `wgtun.gro.handle_gro(bufs, offset, tcp4_table, tcp6_table)` merges a batch
  of TCP segments in place and returns the indices of the buffers still to be
  written, each with a virtio header in the `offset` bytes before its packet.
  Its per-flow state lives in two `TCPGROTable` objects. An `offset` smaller
  than the header, or past the end of a buffer, raises `ValueError`.
  `is_tcp4_no_ip_options` and `is_tcp6_no_eh` tell which packets are candidates.
- `wgtun.tso.handle_virtio_read(data, bufs, offset)` takes one read from the
  device, header included, and places the resulting packet or packets at
  `offset` in `bufs`, returning their sizes. Large TCP segments are split by
  `tcp_tso`; a partial checksum on an unsegmented packet is finished by
  `gso_none_checksum`. Malformed input raises `ValueError`; running out of
  buffers raises `TooManySegmentsError`.
- `wgtun.rwcancel.RWCancel` wraps a file descriptor, makes it non-blocking,
  and waits on it with `poll`. `read(size)` and `write(data)` retry on
  `EAGAIN`/`EINTR`; after `cancel()` a waiting call raises `ClosedError`.
  `close()` releases its internal pipe but leaves the wrapped descriptor open.
  `retry_after_error(err)` tells whether an error only means "try again".
- `wgtun.tuntest.ChannelTUN` is an in-memory device for tests. Packets put on
  its `outbound` queue are returned by reads on `tun()`, and packets written to
  `tun()` appear on `inbound`. Once closed, reads and writes raise
  `DeviceClosedError`. `ping(dst, src)` builds an IPv4 ICMP echo request.

## Install

```
pip install wgtun
```

To run the test suite:

```
pip install "wgtun[test]"
pytest
```

## Examples

Reject replayed counters:

```python
from wgtun.replay import ReplayFilter

f = ReplayFilter()
limit = 2**64 - 2**13 - 1
assert f.validate_counter(5, limit)
assert not f.validate_counter(5, limit)  # replay
```

Compare timestamps:

```python
from wgtun.tai64n import stamp

assert not stamp(10_000_000).after(stamp(0))  # 10 ms apart: same label
assert stamp(20_000_000).after(stamp(0))
```

Coalesce a batch of packets before writing it. Each buffer is a `bytearray`
holding the packet after `offset` bytes of room, and that room receives the
virtio header:

```python
from wgtun.gro import TCPGROTable, handle_gro
from wgtun.virtio import VIRTIO_NET_HDR_LEN

to_write = handle_gro(bufs, offset, TCPGROTable(), TCPGROTable())
for index in to_write:
    device_file.write(bufs[index][offset - VIRTIO_NET_HDR_LEN:])
```

Use the in-memory device:

```python
from wgtun.tuntest import ChannelTUN, ping

chan = ChannelTUN()
dev = chan.tun()
dev.write([ping("10.0.0.2", "10.0.0.1")], 0)
packet = chan.inbound.get()
```

## What it does not do

The package does not create, open or configure a kernel TUN interface, and
has no `Device` implementation backed by one; the only concrete device is the
in-memory `ChannelTUN`. It does not watch the system for link or MTU changes,
and it contains no tunnel protocol, handshake or encryption. It offers no
command-line program.