"""Buildabox - static BusyBox builds for many architectures.

This package downloads BusyBox source, cross-compiles it inside per-architecture
dockcross containers, smoke tests the binaries under QEMU user-mode emulation,
and packages dated release bundles with checksums.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
