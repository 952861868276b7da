"""Single-target build runner.

This module handles:
- Staging an isolated copy of the source tree and composed config
- Running the BusyBox build inside the target's dockcross container
- Capturing container output to a per-target log file
- Stripping and collecting the static binary
- Removing the per-target work directory on every path
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from buildabox.source.service import source_dir_for
from buildabox.toolchains.dockcross import is_script_ready, script_path
from buildabox.toolchains.mapping import ToolchainMapping, get_toolchain_mapping

if TYPE_CHECKING:
    from buildabox.config import Settings
    from buildabox.types import BuildJob

logger = logging.getLogger(__name__)

# dockcross mounts the current directory at /work
CONTAINER_WORKDIR = "/work"
SOURCE_SUBDIR = "busybox"
INSTALLED_BINARY = Path(SOURCE_SUBDIR) / "_install" / "bin" / "busybox"

# oldconfig prompts for symbols missing from the config; feed it the defaults
BUILD_COMMANDS = " && ".join(
    [
        f"cd {CONTAINER_WORKDIR}/{SOURCE_SUBDIR}",
        "echo 'Starting BusyBox build...'",
        "yes '' | make oldconfig",
        "echo 'Configuration complete, starting compilation...'",
        "make -j$(nproc) LDFLAGS='-static' CFLAGS='-Os' V=1",
        "echo 'Compilation complete, installing...'",
        "make install",
        "echo 'Installation complete'",
        "ls -la _install/bin/",
    ]
)

LOG_TAIL_LINES = 20
STRIP_TIMEOUT = 300
BINARY_MODE = 0o755


class BuildExecutionError(Exception):
    """Raised when a target build fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_failed",
        log_path: Path | None = None,
        log_tail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.log_path = log_path
        self.log_tail = log_tail


class ToolchainUnavailableError(BuildExecutionError):
    """Raised when the target's dockcross runner script is missing."""

    def __init__(self, target: str, script: Path) -> None:
        super().__init__(
            f"dockcross script not found for {target}: {script}",
            code="toolchain_unavailable",
        )
        self.target = target
        self.script = script


class SourceMissingError(BuildExecutionError):
    """Raised when the extracted BusyBox source tree is missing."""

    def __init__(self, source_tree: Path) -> None:
        super().__init__(
            f"BusyBox source directory not found: {source_tree}",
            code="source_missing",
        )
        self.source_tree = source_tree


class ArtifactMissingError(BuildExecutionError):
    """Raised when a build exits 0 but the binary is not where expected."""

    def __init__(
        self,
        expected: Path,
        log_path: Path | None = None,
        log_tail: str | None = None,
    ) -> None:
        super().__init__(
            f"Built binary not found: {expected}",
            code="artifact_missing",
            log_path=log_path,
            log_tail=log_tail,
        )
        self.expected = expected


def output_binary_path(build_dir: Path, version: str, target: str) -> Path:
    """Return the output path of a built binary."""
    return build_dir / f"busybox-{version}-{target}"


def log_path_for(build_dir: Path, version: str, target: str) -> Path:
    """Return the build log path of a target."""
    return build_dir / "logs" / f"busybox-{version}-{target}.log"


def work_dir_for(build_dir: Path, target: str) -> Path:
    """Return the ephemeral work directory of a target."""
    return build_dir / target


def compose_build_command(script: Path) -> list[str]:
    """Compose the containerized build command.

    Args:
        script: dockcross runner script.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    return [str(script), "bash", "-c", BUILD_COMMANDS]


def compose_strip_command(script: Path) -> list[str]:
    """Compose the containerized strip command for the installed binary."""
    return [str(script), "strip", f"{CONTAINER_WORKDIR}/{INSTALLED_BINARY.as_posix()}"]


def read_log_tail(log_path: Path, lines: int = LOG_TAIL_LINES) -> str | None:
    """Return the last lines of a log file, or None if it does not exist."""
    if not log_path.exists():
        return None
    with log_path.open(encoding="utf-8", errors="replace") as f:
        return "".join(deque(f, maxlen=lines))


def stage_work_dir(source_tree: Path, config_path: Path, work_dir: Path) -> Path:
    """Stage a private copy of the source tree and config.

    Args:
        source_tree: Extracted BusyBox source (read-only input).
        config_path: Composed config (read-only input).
        work_dir: Target work directory, replaced if it exists.

    Returns:
        Path to the staged source tree.
    """
    if work_dir.exists():
        shutil.rmtree(work_dir)
    work_dir.mkdir(parents=True)

    staged = work_dir / SOURCE_SUBDIR
    shutil.copytree(source_tree, staged, symlinks=True)
    shutil.copyfile(config_path, staged / ".config")
    return staged


def run_in_toolchain(
    cmd: list[str],
    cwd: Path,
    log_path: Path,
    timeout: int | None = None,
) -> int:
    """Run a command through a dockcross script, logging its output.

    Args:
        cmd: Command including the runner script.
        cwd: Directory mounted at /work inside the container.
        log_path: Log file; created or replaced.
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        Process exit code.

    Raises:
        BuildExecutionError: If the command times out or cannot start.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    started_at = datetime.now(timezone.utc)

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {' '.join(cmd[:3])} ...\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )
            exit_code = result.returncode

    except subprocess.TimeoutExpired as e:
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        raise BuildExecutionError(
            f"Build timed out after {timeout} seconds",
            exit_code=-1,
            code="build_timeout",
            log_path=log_path,
            log_tail=read_log_tail(log_path),
        ) from e

    except OSError as e:
        raise BuildExecutionError(
            f"Failed to execute build: {e}",
            exit_code=None,
            code="execution_error",
            log_path=log_path,
        ) from e

    finished_at = datetime.now(timezone.utc)
    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return exit_code


def strip_binary(script: Path, work_dir: Path, target: str) -> bool:
    """Strip the installed binary with the target toolchain's strip.

    Failure only costs binary size, so it is logged and reported but not
    raised.

    Returns:
        True if the binary was stripped.
    """
    try:
        result = subprocess.run(
            compose_strip_command(script),
            cwd=work_dir,
            capture_output=True,
            text=True,
            timeout=STRIP_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("[%s] Failed to strip binary, continuing anyway: %s", target, e)
        return False

    if result.returncode != 0:
        logger.warning(
            "[%s] Failed to strip binary, continuing anyway: %s",
            target,
            result.stderr.strip(),
        )
        return False
    return True


def build_target(
    job: BuildJob,
    settings: Settings,
    mapping: ToolchainMapping | None = None,
) -> Path:
    """Build one target.

    Args:
        job: Build job (target, version, composed config).
        settings: Application settings.
        mapping: Toolchain mapping; uses the process-wide one if not provided.

    Returns:
        Path to the built binary.

    Raises:
        UnknownTargetError: If the target has no toolchain.
        ToolchainUnavailableError: If the dockcross script is missing.
        SourceMissingError: If the source tree is missing.
        BuildExecutionError: If the build fails or times out.
        ArtifactMissingError: If the binary was not produced.
    """

    if mapping is None:
        mapping = get_toolchain_mapping()
    toolchain = mapping.resolve(job.target)

    script = script_path(settings.dockcross_dir, toolchain).resolve()
    if not is_script_ready(script):
        raise ToolchainUnavailableError(job.target, script)

    source_tree = source_dir_for(settings.src_dir, job.version)
    if not source_tree.is_dir():
        raise SourceMissingError(source_tree)

    build_dir = settings.build_dir
    work_dir = work_dir_for(build_dir, job.target)
    log_path = log_path_for(build_dir, job.version, job.target)
    output = output_binary_path(build_dir, job.version, job.target)

    logger.info(
        "[%s] Building BusyBox %s using %s", job.target, job.version, toolchain.image
    )

    try:
        stage_work_dir(source_tree, job.config_path, work_dir)

        exit_code = run_in_toolchain(
            compose_build_command(script),
            cwd=work_dir,
            log_path=log_path,
            timeout=settings.build_timeout,
        )
        if exit_code != 0:
            raise BuildExecutionError(
                f"Build failed with exit code {exit_code}",
                exit_code=exit_code,
                code="build_failed",
                log_path=log_path,
                log_tail=read_log_tail(log_path),
            )

        installed = work_dir / INSTALLED_BINARY
        if not installed.is_file():
            raise ArtifactMissingError(
                installed, log_path=log_path, log_tail=read_log_tail(log_path)
            )

        logger.info("[%s] Stripping binary...", job.target)
        strip_binary(script, work_dir, job.target)

        output.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(installed, output)
        output.chmod(BINARY_MODE)

    finally:
        # Work dirs hold a full source copy; never leave one behind
        if work_dir.exists():
            shutil.rmtree(work_dir, ignore_errors=True)

    logger.info(
        "[%s] Build complete! Binary size: %d bytes", job.target, output.stat().st_size
    )
    return output


__all__ = [
    "ArtifactMissingError",
    "BUILD_COMMANDS",
    "BuildExecutionError",
    "INSTALLED_BINARY",
    "SourceMissingError",
    "ToolchainUnavailableError",
    "build_target",
    "compose_build_command",
    "compose_strip_command",
    "log_path_for",
    "output_binary_path",
    "read_log_tail",
    "run_in_toolchain",
    "stage_work_dir",
    "strip_binary",
    "work_dir_for",
]
