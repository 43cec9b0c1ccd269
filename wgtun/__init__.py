"""TUN packet primitives: anti-replay, TAI64N, checksums, virtio GRO/TSO and a test device."""

__version__ = "0.1.0"