"""Shared type definitions for buildabox.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class BuildOutcome(str, Enum):
    """Terminal outcome of one target build."""

    SUCCESS = "success"
    FAILURE = "failure"


class RunStatus(str, Enum):
    """Status of an orchestration run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TestStatus(str, Enum):
    """Status of the smoke tests for one target."""

    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SourceState(str, Enum):
    """Staging state of a BusyBox source version."""

    NOT_FETCHED = "not_fetched"
    FETCHED = "fetched"
    VERIFIED = "verified"
    EXTRACTED = "extracted"


class SignatureStatus(str, Enum):
    """Result of GPG signature verification."""

    VERIFIED = "verified"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclass
class OperationResult:
    """Result of an operation (toolchain setup, validation, etc.)."""

    success: bool
    message: str
    code: str | None = None
    log_path: str | None = None
    details: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class BuildJob:
    """One target build to run.

    Attributes:
        target: Target name.
        version: BusyBox version.
        config_path: Composed config for this target.
    """

    target: str
    version: str
    config_path: Path


@dataclass(frozen=True)
class BuildResult:
    """Terminal result of one BuildJob.

    Attributes:
        target: Target name.
        outcome: Success or failure.
        artifact_path: Built binary on success.
        reason: Stable failure code (e.g. 'unknown_target', 'build_failed').
        message: Human-readable failure description.
        log_path: Build log, when one was written.
        log_tail: Last lines of the build log on failure.
        started_at: Time the job was admitted.
        finished_at: Time the job reached its terminal state.
    """

    target: str
    outcome: BuildOutcome
    artifact_path: Path | None = None
    reason: str | None = None
    message: str | None = None
    log_path: Path | None = None
    log_tail: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the build succeeded."""
        return self.outcome == BuildOutcome.SUCCESS

    @property
    def duration(self) -> float | None:
        """Wall-clock duration in seconds."""
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class ArtifactInfo:
    """Information about a released binary."""

    filename: str
    target: str
    size_bytes: int
    sha256: str
    sha512: str
    md5: str


__all__ = [
    "ArtifactInfo",
    "BuildJob",
    "BuildOutcome",
    "BuildResult",
    "OperationResult",
    "RunStatus",
    "SignatureStatus",
    "SourceState",
    "TestStatus",
]
