"""Build orchestration service.

This module provides the high-level build API:
- run_pipeline(): Main entry point - provision, fetch, compose, build, test,
  package and record a run
- plan_jobs(): Compose the config of every target into a BuildJob
- validate_options(): Configuration checks made before any job starts
- Run history queries (list_runs, get_run)
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from buildabox.builds.compose import compose_config
from buildabox.builds.models import BuildRun, TargetRecord
from buildabox.builds.runner import build_target, output_binary_path
from buildabox.builds.scheduler import (
    BuildScheduler,
    Builder,
    ScheduleReport,
    find_duplicate_targets,
)
from buildabox.config import get_settings
from buildabox.db import get_session, open_history
from buildabox.release.packager import PackagingError, ReleaseResult, package_release
from buildabox.smoke.tester import (
    BinaryNotFoundError,
    EmulatorNotFoundError,
    SmokeTestReport,
    run_smoke_tests,
)
from buildabox.source.service import clean_sources, ensure_source
from buildabox.toolchains.dockcross import (
    DockerUnavailableError,
    check_docker,
    is_script_ready,
    script_path,
    setup_toolchains,
)
from buildabox.toolchains.mapping import (
    ToolchainMapping,
    UnknownTargetError,
    init_toolchain_mapping,
)
from buildabox.types import BuildJob, RunStatus, TestStatus

if TYPE_CHECKING:
    from buildabox.config import Settings

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when a run is misconfigured. Raised before any job starts."""

    def __init__(self, message: str, code: str = "configuration_error") -> None:
        super().__init__(message)
        self.code = code


class RunNotFoundError(Exception):
    """Raised when a run is not found."""

    def __init__(self, run_id: int, code: str = "run_not_found") -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id
        self.code = code


@dataclass
class PipelineOptions:
    """Inputs of one orchestration run.

    Attributes:
        version: BusyBox version.
        targets: Targets in build order.
        config_file: Base BusyBox config.
        jobs: Maximum concurrent builds.
        skip_tests: Skip smoke tests.
        clean: Wipe build and source directories first.
        release: Package successful targets into a release.
    """

    version: str
    targets: list[str]
    config_file: Path
    jobs: int = 4
    skip_tests: bool = False
    clean: bool = False
    release: bool = False

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> PipelineOptions:
        """Build options from settings, with non-None overrides applied."""
        values: dict[str, Any] = {
            "version": settings.busybox_version,
            "targets": settings.target_list,
            "config_file": settings.config_file,
            "jobs": settings.parallel_builds,
            "skip_tests": settings.skip_tests,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-serializable copy of the options."""
        data = asdict(self)
        data["config_file"] = str(self.config_file)
        return data


@dataclass
class PipelineReport:
    """Outcome of one orchestration run.

    Attributes:
        version: BusyBox version.
        run_id: Run history ID.
        schedule: Build results.
        tests: Smoke test reports of tested targets.
        test_status: Smoke test status per successfully built target.
        test_errors: Why a target's tests could not run.
        release: Release outputs, when packaging succeeded.
        release_error: Why packaging failed, when it was requested.
        release_requested: Whether packaging was requested.
    """

    version: str
    run_id: int | None = None
    schedule: ScheduleReport = field(default_factory=lambda: ScheduleReport(()))
    tests: dict[str, SmokeTestReport] = field(default_factory=dict)
    test_status: dict[str, TestStatus] = field(default_factory=dict)
    test_errors: dict[str, str] = field(default_factory=dict)
    release: ReleaseResult | None = None
    release_error: str | None = None
    release_requested: bool = False

    @property
    def tests_passed(self) -> bool:
        return all(s != TestStatus.FAILED for s in self.test_status.values())

    @property
    def release_ok(self) -> bool:
        return not self.release_requested or self.release is not None

    @property
    def exit_code(self) -> int:
        ok = self.schedule.success and self.tests_passed and self.release_ok
        return 0 if ok else 1

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable summary."""
        return {
            "run_id": self.run_id,
            "busybox_version": self.version,
            "exit_code": self.exit_code,
            "max_concurrency": self.schedule.max_concurrency,
            "targets": [
                {
                    "target": r.target,
                    "outcome": r.outcome.value,
                    "artifact": str(r.artifact_path) if r.artifact_path else None,
                    "reason": r.reason,
                    "message": r.message,
                    "duration": r.duration,
                    "test_status": self.test_status.get(
                        r.target, TestStatus.SKIPPED
                    ).value,
                    "test_error": self.test_errors.get(r.target),
                }
                for r in self.schedule.results
            ],
            "release": (
                {
                    "tag": self.release.tag,
                    "release_dir": str(self.release.release_dir),
                    "archives": [str(p) for p in self.release.archives],
                }
                if self.release
                else None
            ),
            "release_error": self.release_error,
        }


def validate_options(options: PipelineOptions, mapping: ToolchainMapping) -> None:
    """Check a run's configuration before any job starts.

    Raises:
        ConfigurationError: On a missing base config, a duplicate or unknown
            target, or fewer than one job.
    """
    if options.jobs < 1:
        raise ConfigurationError(
            f"--jobs must be at least 1, got {options.jobs}", code="invalid_jobs"
        )
    if not options.targets:
        # An empty target list is a valid, empty run
        return

    duplicates = find_duplicate_targets(
        [BuildJob(t, options.version, options.config_file) for t in options.targets]
    )
    if duplicates:
        raise ConfigurationError(
            f"Duplicate targets: {', '.join(duplicates)}", code="duplicate_target"
        )

    unknown = mapping.unknown(options.targets)
    if unknown:
        raise ConfigurationError(
            f"Unknown targets: {', '.join(unknown)}. "
            f"Known targets: {', '.join(sorted(mapping))}",
            code="unknown_target",
        )

    if not options.config_file.is_file():
        raise ConfigurationError(
            f"Config file not found: {options.config_file}", code="config_not_found"
        )


def plan_jobs(options: PipelineOptions, settings: Settings) -> list[BuildJob]:
    """Compose the config of every target and return one job per target."""
    jobs = []
    for target in options.targets:
        config_path = compose_config(
            options.config_file,
            target,
            settings.overrides_dir,
            settings.build_dir,
        )
        jobs.append(
            BuildJob(target=target, version=options.version, config_path=config_path)
        )
    return jobs


def clean_outputs(settings: Settings) -> None:
    """Remove the build and source directories."""
    logger.info("Cleaning build and source directories")
    if settings.build_dir.exists():
        shutil.rmtree(settings.build_dir)
    clean_sources(settings.src_dir)


def provision_toolchains(
    targets: Sequence[str],
    settings: Settings,
    mapping: ToolchainMapping,
) -> list[str]:
    """Provision runner scripts missing for the given targets.

    Failures are logged only; the affected targets fail in their own build.

    Returns:
        Targets whose runner script is still missing.
    """
    missing = [
        t
        for t in targets
        if not is_script_ready(script_path(settings.dockcross_dir, mapping.resolve(t)))
    ]
    if not missing:
        return []

    logger.info("Setting up dockcross for: %s", " ".join(missing))
    try:
        check_docker(settings.docker_binary)
    except DockerUnavailableError as e:
        logger.error("Cannot provision toolchains: %s", e)
        return missing

    results = setup_toolchains(
        missing,
        settings.dockcross_dir,
        docker=settings.docker_binary,
        timeout=settings.docker_timeout,
        mapping=mapping,
    )
    return [t for t, r in results.items() if not r.success]


def run_tests(
    report: PipelineReport,
    settings: Settings,
    mapping: ToolchainMapping,
) -> None:
    """Smoke test every successfully built target, recording into the report."""
    for result in report.schedule.succeeded:
        binary = result.artifact_path or output_binary_path(
            settings.build_dir, report.version, result.target
        )
        try:
            tests = run_smoke_tests(
                binary,
                result.target,
                timeout=settings.test_timeout,
                mapping=mapping,
            )
        except (
            BinaryNotFoundError,
            EmulatorNotFoundError,
            UnknownTargetError,
            OSError,
        ) as e:
            logger.error("[%s] Cannot run tests: %s", result.target, e)
            report.test_status[result.target] = TestStatus.FAILED
            report.test_errors[result.target] = str(e)
            continue
        report.tests[result.target] = tests
        report.test_status[result.target] = tests.status


def release_successes(report: PipelineReport, settings: Settings) -> None:
    """Package every successfully built target, recording into the report.

    Packaging failures, including filesystem errors, are kept in
    ``report.release_error`` so the build results are still recorded.
    """
    report.release_requested = True
    targets = [r.target for r in report.schedule.succeeded]
    try:
        report.release = package_release(report.version, targets, settings)
    except (PackagingError, OSError) as e:
        logger.error("Packaging failed: %s", e)
        report.release_error = str(e)


def start_run(session: Session, options: PipelineOptions) -> BuildRun:
    """Create a BuildRun in running state."""
    run = BuildRun(
        busybox_version=options.version,
        concurrency=options.jobs,
        options=options.snapshot(),
        status=RunStatus.RUNNING.value,
    )
    run.mark_running()
    session.add(run)
    session.flush()
    return run


def record_run(session: Session, run: BuildRun, report: PipelineReport) -> BuildRun:
    """Persist per-target outcomes and finish a run."""
    for position, result in enumerate(report.schedule.results):
        size = None
        if result.artifact_path is not None and result.artifact_path.exists():
            size = result.artifact_path.stat().st_size
        run.targets.append(
            TargetRecord(
                position=position,
                target=result.target,
                outcome=result.outcome.value,
                reason=result.reason,
                message=result.message,
                artifact_path=(
                    str(result.artifact_path) if result.artifact_path else None
                ),
                size_bytes=size,
                log_path=str(result.log_path) if result.log_path else None,
                test_status=report.test_status.get(
                    result.target, TestStatus.SKIPPED
                ).value,
                started_at=result.started_at,
                finished_at=result.finished_at,
            )
        )
    if report.release is not None:
        run.release_dir = str(report.release.release_dir)
    if report.release_error:
        run.error_type = "packaging_error"
        run.error_message = report.release_error
    run.mark_finished(report.exit_code)
    session.flush()
    return run


def run_pipeline(
    options: PipelineOptions,
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    builder: Builder | None = None,
    client: httpx.Client | None = None,
) -> PipelineReport:
    """Run a full build.

    Args:
        options: Run options.
        settings: Application settings.
        session_factory: Run history session factory; created from
            ``settings.db_url`` if not provided.
        builder: Single-target builder; defaults to build_target.
        client: HTTPX client for the source download.

    Returns:
        PipelineReport; ``exit_code`` is 0 only if every build passed, every
        run test passed and packaging (if requested) succeeded.

    Raises:
        ConfigurationError: If the configuration is invalid.
        OfflineModeError, DownloadError, SignatureError, ExtractionError:
            If the source cannot be staged.
    """
    if settings is None:
        settings = get_settings()

    mapping = init_toolchain_mapping(settings.toolchains_file)
    validate_options(options, mapping)

    if session_factory is None:
        session_factory = open_history(settings.db_url)

    with get_session(session_factory) as session:
        run_id = start_run(session, options).id

    report = PipelineReport(version=options.version, run_id=run_id)

    if not options.targets:
        logger.info("No targets requested (run %d)", run_id)
    else:
        logger.info(
            "Building BusyBox %s for %d target(s) (run %d)",
            options.version,
            len(options.targets),
            run_id,
        )
        try:
            if options.clean:
                clean_outputs(settings)

            provision_toolchains(options.targets, settings, mapping)
            ensure_source(options.version, settings, client=client)

            jobs = plan_jobs(options, settings)
        except Exception as e:
            with get_session(session_factory) as session:
                get_run(session, run_id).mark_failed(
                    getattr(e, "code", type(e).__name__), str(e)
                )
            raise

        if builder is None:
            builder = partial(build_target, settings=settings, mapping=mapping)
        report.schedule = BuildScheduler(builder, options.jobs).run(jobs)

        # Builds are finished; later failures only land in the report
        if options.skip_tests:
            logger.info("Skipping smoke tests")
        else:
            run_tests(report, settings, mapping)

        if options.release:
            release_successes(report, settings)

    with get_session(session_factory) as session:
        record_run(session, get_run(session, run_id), report)

    logger.info(
        "Run %d finished: %d succeeded, %d failed",
        run_id,
        len(report.schedule.succeeded),
        len(report.schedule.failed),
    )
    return report


def get_run(session: Session, run_id: int) -> BuildRun:
    """Get a run by ID.

    Raises:
        RunNotFoundError: If the run is not found.
    """
    run = session.get(BuildRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def list_runs(
    session: Session,
    status: RunStatus | None = None,
    version: str | None = None,
    limit: int = 20,
) -> list[BuildRun]:
    """List runs, most recent first.

    Args:
        session: Database session.
        status: Filter by status.
        version: Filter by BusyBox version.
        limit: Maximum results to return.

    Returns:
        List of BuildRun instances.
    """
    stmt = select(BuildRun)
    if status is not None:
        stmt = stmt.where(BuildRun.status == status.value)
    if version is not None:
        stmt = stmt.where(BuildRun.busybox_version == version)
    stmt = stmt.order_by(BuildRun.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


def format_started(run: BuildRun) -> str:
    """Format a run's start time for display."""
    when: datetime | None = run.started_at or run.requested_at
    return when.strftime("%Y-%m-%d %H:%M:%S") if when else "-"


__all__ = [
    "ConfigurationError",
    "PipelineOptions",
    "PipelineReport",
    "RunNotFoundError",
    "clean_outputs",
    "format_started",
    "get_run",
    "list_runs",
    "plan_jobs",
    "provision_toolchains",
    "record_run",
    "release_successes",
    "run_pipeline",
    "run_tests",
    "start_run",
    "validate_options",
]
