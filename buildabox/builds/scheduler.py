"""Bounded-concurrency multi-target build scheduler.

This module handles:
- Running one build job per target with at most C jobs in flight
- Admitting jobs in input order
- Turning any per-job exception into a Failure result for that target only
- Reporting results in input order
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from buildabox.types import BuildJob, BuildOutcome, BuildResult

logger = logging.getLogger(__name__)

Builder = Callable[[BuildJob], Path]

INTERNAL_ERROR = "internal_error"


class SchedulerConfigError(Exception):
    """Raised when the scheduler is configured with an invalid concurrency."""

    def __init__(self, message: str, code: str = "invalid_concurrency") -> None:
        super().__init__(message)
        self.code = code


class DuplicateTargetError(Exception):
    """Raised when the same target appears in more than one job."""

    def __init__(self, targets: list[str], code: str = "duplicate_target") -> None:
        super().__init__(f"Duplicate targets: {', '.join(targets)}")
        self.targets = targets
        self.code = code


@dataclass(frozen=True)
class ScheduleReport:
    """Results of one scheduler run.

    Attributes:
        results: One result per job, in input order.
        max_concurrency: Highest number of jobs observed running at once.
    """

    results: tuple[BuildResult, ...]
    max_concurrency: int = 0

    @property
    def success(self) -> bool:
        return all(r.succeeded for r in self.results)

    @property
    def succeeded(self) -> list[BuildResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def failed(self) -> list[BuildResult]:
        return [r for r in self.results if not r.succeeded]

    def get(self, target: str) -> BuildResult | None:
        for result in self.results:
            if result.target == target:
                return result
        return None


def find_duplicate_targets(jobs: Sequence[BuildJob]) -> list[str]:
    """Return targets appearing more than once, in first-seen order."""
    seen: set[str] = set()
    duplicates: list[str] = []
    for job in jobs:
        if job.target in seen and job.target not in duplicates:
            duplicates.append(job.target)
        seen.add(job.target)
    return duplicates


def failure_from_exception(
    job: BuildJob,
    exc: BaseException,
    started_at: datetime | None,
) -> BuildResult:
    """Convert an exception raised by a builder into a Failure result."""
    return BuildResult(
        target=job.target,
        outcome=BuildOutcome.FAILURE,
        reason=getattr(exc, "code", None) or INTERNAL_ERROR,
        message=str(exc) or type(exc).__name__,
        log_path=getattr(exc, "log_path", None),
        log_tail=getattr(exc, "log_tail", None),
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
    )


class BuildScheduler:
    """Run build jobs on a bounded worker pool.

    Every job is attempted. A failing job never cancels or affects the
    others.

    Args:
        builder: Callable building one job and returning the binary path.
        concurrency: Maximum number of jobs running at once.

    Raises:
        SchedulerConfigError: If concurrency is less than 1.
    """

    def __init__(self, builder: Builder, concurrency: int) -> None:
        if concurrency < 1:
            raise SchedulerConfigError(
                f"Concurrency must be at least 1, got {concurrency}"
            )
        self.builder = builder
        self.concurrency = concurrency

        self._lock = threading.Lock()
        self._active = 0
        self._peak = 0

    def _run_job(self, job: BuildJob) -> BuildResult:
        started_at = datetime.now(timezone.utc)
        with self._lock:
            self._active += 1
            self._peak = max(self._peak, self._active)

        try:
            logger.info("[%s] Build started", job.target)
            artifact = self.builder(job)
        except Exception as e:
            logger.error("[%s] Build failed: %s", job.target, e)
            return failure_from_exception(job, e, started_at)
        finally:
            with self._lock:
                self._active -= 1

        logger.info("[%s] Build succeeded: %s", job.target, artifact)
        return BuildResult(
            target=job.target,
            outcome=BuildOutcome.SUCCESS,
            artifact_path=artifact,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    def run(self, jobs: Sequence[BuildJob]) -> ScheduleReport:
        """Run all jobs and wait for every one to finish.

        Args:
            jobs: Jobs with distinct targets.

        Returns:
            ScheduleReport with one result per job in input order.

        Raises:
            DuplicateTargetError: If two jobs share a target.
        """
        duplicates = find_duplicate_targets(jobs)
        if duplicates:
            raise DuplicateTargetError(duplicates)

        if not jobs:
            return ScheduleReport(results=())

        with self._lock:
            self._active = 0
            self._peak = 0

        logger.info(
            "Scheduling %d build(s) with concurrency %d", len(jobs), self.concurrency
        )

        slots = threading.BoundedSemaphore(self.concurrency)
        futures: dict[str, Future[BuildResult]] = {}

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="buildabox-build"
        ) as executor:
            for job in jobs:
                # Blocks while C jobs are in flight, so admission follows input order
                slots.acquire()
                future = executor.submit(self._run_job, job)
                future.add_done_callback(lambda _f: slots.release())
                futures[job.target] = future

        results = []
        for job in jobs:
            future = futures[job.target]
            try:
                results.append(future.result())
            except Exception as e:
                # _run_job handles builder errors; this covers executor failures
                results.append(failure_from_exception(job, e, None))

        report = ScheduleReport(results=tuple(results), max_concurrency=self._peak)
        logger.info(
            "Builds finished: %d succeeded, %d failed",
            len(report.succeeded),
            len(report.failed),
        )
        return report


__all__ = [
    "BuildScheduler",
    "Builder",
    "DuplicateTargetError",
    "ScheduleReport",
    "SchedulerConfigError",
    "failure_from_exception",
    "find_duplicate_targets",
]
