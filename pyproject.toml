[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wgtun"
version = "0.1.0"
description = "Packet primitives for TUN-based tunnels: anti-replay filtering, TAI64N timestamps, internet checksums, virtio TCP GRO/TSO handling and an in-memory test device."
requires-python = ">=3.10"
dependencies = []
keywords = ["tun", "tunnel", "vpn", "gro", "tso", "virtio", "checksum", "tai64n", "replay"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["wgtun"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
