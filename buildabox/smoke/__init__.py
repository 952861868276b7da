"""Smoke testing of built binaries.

This module handles:
- Native or QEMU-emulated execution of built binaries
- Applet checks and forensic applet reporting
"""

from buildabox.smoke.tester import (
    FORENSIC_APPLETS,
    BinaryNotFoundError,
    CheckResult,
    EmulatorNotFoundError,
    SmokeTestReport,
    find_emulator,
    run_smoke_tests,
)

__all__ = [
    "BinaryNotFoundError",
    "CheckResult",
    "EmulatorNotFoundError",
    "FORENSIC_APPLETS",
    "SmokeTestReport",
    "find_emulator",
    "run_smoke_tests",
]
