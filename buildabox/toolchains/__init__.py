"""Toolchain management module.

This module handles:
- The single target -> dockcross image / QEMU emulator table
- Pulling dockcross images and generating runner scripts
- Validating runner scripts
"""

from buildabox.toolchains.dockcross import (
    DockerUnavailableError,
    ToolchainSetupError,
    ValidationReport,
    check_docker,
    setup_toolchain,
    setup_toolchains,
    validate_toolchain,
)
from buildabox.toolchains.mapping import (
    Toolchain,
    ToolchainMapping,
    ToolchainTableError,
    UnknownTargetError,
    get_toolchain_mapping,
    init_toolchain_mapping,
    resolve_emulator,
    resolve_toolchain,
)

__all__ = [
    # Mapping
    "Toolchain",
    "ToolchainMapping",
    "ToolchainTableError",
    "UnknownTargetError",
    "get_toolchain_mapping",
    "init_toolchain_mapping",
    "resolve_emulator",
    "resolve_toolchain",
    # dockcross
    "DockerUnavailableError",
    "ToolchainSetupError",
    "ValidationReport",
    "check_docker",
    "setup_toolchain",
    "setup_toolchains",
    "validate_toolchain",
]
