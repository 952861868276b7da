"""dockcross toolchain provisioning.

This module handles:
- Checking that Docker is installed and its daemon is reachable
- Pulling dockcross images and generating their runner scripts
- Validating generated runner scripts

A dockcross image prints its own runner script when run without arguments;
the script mounts the current directory at /work inside the container.
"""

from __future__ import annotations

import logging
import shutil
import stat
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from buildabox.toolchains.mapping import (
    Toolchain,
    ToolchainMapping,
    UnknownTargetError,
    get_toolchain_mapping,
)
from buildabox.types import OperationResult

logger = logging.getLogger(__name__)

SCRIPT_MODE = 0o755


class DockerUnavailableError(Exception):
    """Raised when Docker is missing or its daemon is not running."""

    def __init__(self, message: str, code: str = "docker_unavailable") -> None:
        super().__init__(message)
        self.code = code


class ToolchainSetupError(Exception):
    """Raised when a dockcross runner script cannot be generated."""

    def __init__(self, message: str, code: str = "toolchain_setup_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class ValidationReport:
    """Validation outcome for one target's runner script.

    Attributes:
        target: Target name.
        image: dockcross image name.
        script_exists: Whether the runner script exists.
        executable: Whether the script is (or was made) executable.
        works: Whether the script ran ``echo test`` successfully.
        message: Human-readable summary.
    """

    target: str
    image: str
    script_exists: bool
    executable: bool
    works: bool
    message: str

    @property
    def ok(self) -> bool:
        """Whether the toolchain is usable."""
        return self.script_exists and self.executable and self.works


def script_path(dockcross_dir: Path, toolchain: Toolchain) -> Path:
    """Return the runner script path for a toolchain."""
    return dockcross_dir / toolchain.script_name


def is_script_ready(path: Path) -> bool:
    """Check that a runner script exists, is non-empty and executable."""
    if not path.is_file():
        return False
    st = path.stat()
    return st.st_size > 0 and bool(st.st_mode & stat.S_IXUSR)


def check_docker(docker: str = "docker", timeout: int = 30) -> str:
    """Check Docker installation and daemon.

    Args:
        docker: Docker executable name.
        timeout: Command timeout in seconds.

    Returns:
        Docker server version string.

    Raises:
        DockerUnavailableError: If docker is missing or the daemon is down.
    """
    if shutil.which(docker) is None:
        raise DockerUnavailableError(
            "Docker is required but not installed", code="docker_not_installed"
        )

    try:
        result = subprocess.run(
            [docker, "version", "--format", "{{.Server.Version}}"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise DockerUnavailableError(f"Failed to query Docker: {e}") from e

    if result.returncode != 0:
        raise DockerUnavailableError(
            "Docker daemon is not running", code="docker_daemon_down"
        )

    version = result.stdout.strip()
    logger.info("Docker is installed and running (server %s)", version)
    return version


def setup_toolchain(
    toolchain: Toolchain,
    dockcross_dir: Path,
    docker: str = "docker",
    timeout: int = 1800,
    force: bool = False,
) -> Path:
    """Pull a dockcross image and write its runner script.

    Args:
        toolchain: Toolchain to provision.
        dockcross_dir: Directory for runner scripts.
        docker: Docker executable name.
        timeout: Timeout for each docker command in seconds.
        force: Regenerate the script even if it already exists.

    Returns:
        Path to the runner script.

    Raises:
        ToolchainSetupError: If pulling the image or writing the script fails.
    """
    path = script_path(dockcross_dir, toolchain)
    if not force and is_script_ready(path):
        logger.debug("dockcross script for %s already exists", toolchain.target)
        return path

    dockcross_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Pulling Docker image %s", toolchain.docker_image)

    try:
        pull = subprocess.run(
            [docker, "pull", toolchain.docker_image],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
        if pull.returncode != 0:
            raise ToolchainSetupError(
                f"Failed to pull {toolchain.docker_image}: {pull.stderr.strip()}",
                code="pull_failed",
            )

        run = subprocess.run(
            [docker, "run", "--rm", toolchain.docker_image],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise ToolchainSetupError(
            f"Timed out provisioning {toolchain.docker_image}", code="timeout"
        ) from e
    except OSError as e:
        raise ToolchainSetupError(
            f"Failed to run {docker}: {e}", code="execution_error"
        ) from e

    if run.returncode != 0 or not run.stdout.strip():
        raise ToolchainSetupError(
            f"Failed to create dockcross script for {toolchain.target}",
            code="empty_script",
        )

    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(run.stdout, encoding="utf-8")
    tmp_path.chmod(SCRIPT_MODE)
    tmp_path.replace(path)

    logger.info("Set up dockcross for %s (%s)", toolchain.target, toolchain.image)
    return path


def setup_toolchains(
    targets: Iterable[str],
    dockcross_dir: Path,
    docker: str = "docker",
    timeout: int = 1800,
    mapping: ToolchainMapping | None = None,
) -> dict[str, OperationResult]:
    """Provision runner scripts for several targets, best effort.

    Targets sharing an image are provisioned once.

    Args:
        targets: Target names.
        dockcross_dir: Directory for runner scripts.
        docker: Docker executable name.
        timeout: Timeout for each docker command in seconds.
        mapping: Toolchain mapping; uses the process-wide one if not provided.

    Returns:
        Per-target OperationResult.
    """
    if mapping is None:
        mapping = get_toolchain_mapping()

    results: dict[str, OperationResult] = {}
    by_image: dict[str, OperationResult] = {}

    for target in targets:
        try:
            toolchain = mapping.resolve(target)
        except UnknownTargetError as e:
            results[target] = OperationResult(
                success=False, message=str(e), code=e.code
            )
            continue

        if toolchain.image in by_image:
            results[target] = by_image[toolchain.image]
            continue

        try:
            path = setup_toolchain(toolchain, dockcross_dir, docker, timeout)
            result = OperationResult(
                success=True,
                message=f"dockcross ready for {target}",
                details={"script": str(path), "image": toolchain.image},
            )
        except ToolchainSetupError as e:
            logger.error("Skipping %s: %s", target, e)
            result = OperationResult(success=False, message=str(e), code=e.code)

        by_image[toolchain.image] = result
        results[target] = result

    return results


def validate_toolchain(
    toolchain: Toolchain,
    dockcross_dir: Path,
    timeout: int = 300,
) -> ValidationReport:
    """Validate one runner script.

    A script that exists but lost its executable bit is fixed in place.

    Args:
        toolchain: Toolchain to validate.
        dockcross_dir: Directory for runner scripts.
        timeout: Timeout for the test command in seconds.

    Returns:
        ValidationReport for the target.
    """
    path = script_path(dockcross_dir, toolchain)
    report = ValidationReport(
        target=toolchain.target,
        image=toolchain.image,
        script_exists=path.is_file(),
        executable=False,
        works=False,
        message="",
    )

    if not report.script_exists:
        report.message = "Script missing"
        return report

    if not path.stat().st_mode & stat.S_IXUSR:
        logger.warning("%s is not executable, fixing", path)
        path.chmod(SCRIPT_MODE)
    report.executable = True

    try:
        result = subprocess.run(
            [str(path), "echo", "test"],
            cwd=dockcross_dir,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
        report.works = result.returncode == 0
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Validation of %s failed: %s", path, e)
        report.works = False

    report.message = "Works" if report.works else "Script execution failed"
    return report


__all__ = [
    "DockerUnavailableError",
    "ToolchainSetupError",
    "ValidationReport",
    "check_docker",
    "is_script_ready",
    "script_path",
    "setup_toolchain",
    "setup_toolchains",
    "validate_toolchain",
]
