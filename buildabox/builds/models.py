"""Run history ORM models.

This module defines the BuildRun and TargetRecord models for storing
orchestration runs and their per-target outcomes in the database. All
timestamps are UTC.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from buildabox.db import Base
from buildabox.types import BuildOutcome, RunStatus, TestStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BuildRun(Base):
    """ORM model for one orchestration run.

    Attributes:
        id: Primary key.
        busybox_version: BusyBox version built.
        status: Run status (running, succeeded, failed).
        concurrency: Configured maximum number of parallel builds.
        options: JSON snapshot of the run options.
        requested_at: Timestamp when the run was requested.
        started_at: Timestamp when the run started executing.
        finished_at: Timestamp when the run finished.
        release_dir: Release directory, when packaging ran.
        exit_code: Process exit code reported for the run.
        error_type: Type of error if the run failed before building.
        error_message: Error message if the run failed before building.
    """

    __tablename__ = "build_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    busybox_version: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.RUNNING.value, index=True
    )
    concurrency: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    options: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Outputs
    release_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    targets: Mapped[list["TargetRecord"]] = relationship(
        "TargetRecord",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="TargetRecord.position",
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRun."""
        return (
            f"<BuildRun(id={self.id}, version='{self.busybox_version}', "
            f"status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this run as running."""
        self.status = RunStatus.RUNNING.value
        self.started_at = _utcnow()

    def mark_finished(self, exit_code: int) -> None:
        """Mark this run as finished with the given exit code."""
        self.status = (
            RunStatus.SUCCEEDED.value if exit_code == 0 else RunStatus.FAILED.value
        )
        self.exit_code = exit_code
        self.finished_at = _utcnow()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this run as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = RunStatus.FAILED.value
        self.finished_at = _utcnow()
        if self.exit_code is None:
            self.exit_code = 1
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this run succeeded."""
        return self.status == RunStatus.SUCCEEDED.value


class TargetRecord(Base):
    """ORM model for the outcome of one target within a run.

    Attributes:
        id: Primary key.
        run_id: Foreign key to BuildRun.
        position: Index of the target in the requested target list.
        target: Target name.
        outcome: Build outcome (success, failure).
        reason: Failure code if the build failed.
        message: Failure message if the build failed.
        artifact_path: Built binary path on success.
        size_bytes: Built binary size on success.
        log_path: Build log path.
        test_status: Smoke test status (passed, failed, skipped).
        started_at: Timestamp when the build started.
        finished_at: Timestamp when the build finished.
    """

    __tablename__ = "target_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_runs.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Build outcome
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Paths and file metadata
    artifact_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    test_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TestStatus.SKIPPED.value
    )

    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    run: Mapped["BuildRun"] = relationship("BuildRun", back_populates="targets")

    __table_args__ = (Index("ix_target_records_run_target", "run_id", "target"),)

    def __repr__(self) -> str:
        """Return string representation of TargetRecord."""
        return (
            f"<TargetRecord(id={self.id}, target='{self.target}', "
            f"outcome='{self.outcome}')>"
        )

    def is_succeeded(self) -> bool:
        """Check if this target built successfully."""
        return self.outcome == BuildOutcome.SUCCESS.value


__all__ = ["BuildRun", "TargetRecord"]
