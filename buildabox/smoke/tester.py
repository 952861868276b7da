"""Smoke tests for built BusyBox binaries.

This module handles:
- Choosing between native execution and QEMU user-mode emulation
- Running a fixed set of applet checks against a binary
- Reporting which forensic applets the binary provides
"""

from __future__ import annotations

import logging
import os
import platform
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from buildabox.toolchains.mapping import ToolchainMapping, get_toolchain_mapping
from buildabox.types import TestStatus

logger = logging.getLogger(__name__)

FORENSIC_APPLETS = (
    "hexdump",
    "strings",
    "xxd",
    "md5sum",
    "sha1sum",
    "sha256sum",
    "stat",
    "find",
    "grep",
    "dd",
    "nc",
    "wget",
)

ECHO_TEXT = "Hello from BusyBox"
YEAR_PATTERN = re.compile(r"^\d{4}$")


class BinaryNotFoundError(Exception):
    """Raised when the binary to test is missing or not executable."""

    def __init__(self, path: Path, code: str = "binary_not_found") -> None:
        super().__init__(f"Binary not found or not executable: {path}")
        self.path = path
        self.code = code


class EmulatorNotFoundError(Exception):
    """Raised when the QEMU emulator for a target is not installed."""

    def __init__(self, emulator: str, code: str = "emulator_not_found") -> None:
        super().__init__(
            f"QEMU emulator {emulator} not found; install qemu-user-static"
        )
        self.emulator = emulator
        self.code = code


@dataclass
class CheckResult:
    """Result of one smoke check."""

    name: str
    passed: bool
    detail: str = ""


@dataclass
class SmokeTestReport:
    """Results of the smoke tests of one binary.

    Attributes:
        target: Target name.
        binary: Tested binary.
        emulator: Emulator path used, or None when run natively.
        checks: Results of the individual checks, in run order.
        applets: Availability of each forensic applet.
    """

    target: str
    binary: Path
    emulator: str | None = None
    checks: list[CheckResult] = field(default_factory=list)
    applets: dict[str, bool] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    @property
    def status(self) -> TestStatus:
        return TestStatus.PASSED if self.passed else TestStatus.FAILED

    @property
    def failed_checks(self) -> list[str]:
        return [c.name for c in self.checks if not c.passed]


def find_emulator(emulator: str) -> str:
    """Locate an emulator on PATH.

    Falls back from ``qemu-<arch>-static`` to ``qemu-<arch>``.

    Raises:
        EmulatorNotFoundError: If neither is installed.
    """
    candidates = [emulator]
    if emulator.endswith("-static"):
        candidates.append(emulator.removesuffix("-static"))
    for candidate in candidates:
        found = shutil.which(candidate)
        if found:
            return found
    raise EmulatorNotFoundError(emulator)


def runs_natively(machine: str, host_machine: str | None = None) -> bool:
    """Check whether a binary for ``machine`` runs on this host without QEMU."""
    if host_machine is None:
        host_machine = platform.machine()
    return host_machine == machine


def _run(cmd: list[str], timeout: int) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def run_smoke_tests(
    binary: Path,
    target: str,
    timeout: int = 60,
    mapping: ToolchainMapping | None = None,
    host_machine: str | None = None,
) -> SmokeTestReport:
    """Run the smoke checks against one binary.

    Args:
        binary: Binary to test. Never modified.
        target: Target the binary was built for.
        timeout: Timeout per invocation in seconds.
        mapping: Toolchain mapping; uses the process-wide one if not provided.
        host_machine: Host machine name; detected if not provided.

    Returns:
        SmokeTestReport.

    Raises:
        BinaryNotFoundError: If the binary is missing or not executable.
        UnknownTargetError: If the target has no toolchain.
        EmulatorNotFoundError: If emulation is needed but unavailable.
    """
    if not binary.is_file() or not os.access(binary, os.X_OK):
        raise BinaryNotFoundError(binary)

    if mapping is None:
        mapping = get_toolchain_mapping()
    toolchain = mapping.resolve(target)

    prefix: list[str] = []
    emulator: str | None = None
    if runs_natively(toolchain.machine, host_machine):
        logger.info("[%s] Running natively", target)
    else:
        emulator = find_emulator(toolchain.emulator)
        prefix = [emulator]
        logger.info("[%s] Running under %s", target, emulator)

    report = SmokeTestReport(target=target, binary=binary, emulator=emulator)

    def invoke(*args: str) -> tuple[int, str]:
        try:
            result = _run([*prefix, str(binary), *args], timeout)
        except subprocess.TimeoutExpired:
            return -1, f"timed out after {timeout}s"
        except OSError as e:
            return -1, str(e)
        return result.returncode, result.stdout + result.stderr

    def check(name: str, ok: bool, detail: str) -> None:
        report.checks.append(CheckResult(name=name, passed=ok, detail=detail.strip()))
        if ok:
            logger.info("[%s] %s: passed", target, name)
        else:
            logger.warning("[%s] %s: failed (%s)", target, name, detail.strip()[:200])

    # BusyBox --help exits 0 or 1 depending on the build; only the banner matters
    _, output = invoke("--help")
    first_line = output.splitlines()[0] if output else ""
    check("version", "BusyBox v" in output, first_line)

    code, output = invoke("--list")
    applets = {line.strip() for line in output.splitlines() if line.strip()}
    check("list applets", code == 0 and bool(applets), f"{len(applets)} applets")

    code, output = invoke("echo", ECHO_TEXT)
    check("echo", code == 0 and output.strip() == ECHO_TEXT, output)

    code, output = invoke("date", "+%Y")
    check("date", code == 0 and bool(YEAR_PATTERN.match(output.strip())), output)

    code, output = invoke("expr", "2", "+", "2")
    check("expr", code == 0 and output.strip() == "4", output)

    code, output = invoke("basename", "/path/to/file.txt")
    check("basename", code == 0 and output.strip() == "file.txt", output)

    report.applets = {name: name in applets for name in FORENSIC_APPLETS}
    available = sum(report.applets.values())
    logger.info(
        "[%s] Forensic applets available: %d/%d",
        target,
        available,
        len(FORENSIC_APPLETS),
    )
    return report


__all__ = [
    "BinaryNotFoundError",
    "CheckResult",
    "EmulatorNotFoundError",
    "FORENSIC_APPLETS",
    "SmokeTestReport",
    "find_emulator",
    "run_smoke_tests",
    "runs_natively",
]
