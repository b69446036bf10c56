"""Parallel build scheduling.

Runs one job per variant on a bounded thread pool. A failing job never
cancels its siblings; every job ends in a terminal state that is
reported in resolver order once all jobs finish.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from variant_release.matrix.resolver import VariantSpec
from variant_release.types import AggregateStatus, Artifact, JobState

if TYPE_CHECKING:
    from variant_release.releases.manifest import ManifestEntry

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.RUNNING}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT}),
}


class JobStateError(Exception):
    """Raised on an illegal job state transition."""

    def __init__(self, job_id: str, current: JobState, target: JobState) -> None:
        super().__init__(
            f"Job {job_id}: illegal transition {current.value} -> {target.value}"
        )
        self.job_id = job_id
        self.current = current
        self.target = target
        self.code = "illegal_transition"


@dataclass
class JobOutput:
    """Successful result of a job executor."""

    artifacts: list[Artifact]
    entries: list[ManifestEntry]
    cache_hit: bool = False
    log_path: Path | None = None


@dataclass
class BuildJob:
    """One scheduled build of a single variant.

    Attributes:
        variant: Variant being built.
        index: Position in resolver order.
        job_id: Unique job identifier.
        state: Current state.
        timeout: Per-job deadline in seconds, measured from start.
        deadline: Monotonic deadline, set when the job starts running.
        started_at: Start time.
        finished_at: Finish time.
        artifacts: Final artifacts (on success).
        entries: Manifest entries, one per artifact (on success).
        cache_hit: Whether the compiled outputs came from the cache.
        log_path: Build log location.
        error_type: Error code of the failure.
        error_message: Human-readable failure description.
    """

    variant: VariantSpec
    index: int
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: JobState = JobState.PENDING
    timeout: float | None = None
    deadline: float | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    artifacts: list[Artifact] = field(default_factory=list)
    entries: list[ManifestEntry] = field(default_factory=list)
    cache_hit: bool = False
    log_path: Path | None = None
    error_type: str | None = None
    error_message: str | None = None

    def _transition(self, target: JobState) -> None:
        if target not in _TRANSITIONS.get(self.state, frozenset()):
            raise JobStateError(self.job_id, self.state, target)
        logger.debug("Job %s (%s): %s -> %s", self.job_id, self.variant.name,
                     self.state.value, target.value)
        self.state = target

    def mark_running(self) -> None:
        self._transition(JobState.RUNNING)
        self.started_at = datetime.now(timezone.utc)
        if self.timeout is not None:
            self.deadline = time.monotonic() + self.timeout

    def mark_succeeded(self, output: JobOutput) -> None:
        self._transition(JobState.SUCCEEDED)
        self.finished_at = datetime.now(timezone.utc)
        self.artifacts = list(output.artifacts)
        self.entries = list(output.entries)
        self.cache_hit = output.cache_hit
        if output.log_path is not None:
            self.log_path = output.log_path

    def mark_failed(self, error_type: str, message: str) -> None:
        self._transition(JobState.FAILED)
        self.finished_at = datetime.now(timezone.utc)
        self.error_type = error_type
        self.error_message = message

    def mark_timed_out(self, message: str) -> None:
        self._transition(JobState.TIMED_OUT)
        self.finished_at = datetime.now(timezone.utc)
        self.error_type = "timeout"
        self.error_message = message

    def remaining(self) -> float | None:
        """Seconds left before the deadline (None = no deadline)."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "job_id": self.job_id,
            "variant": self.variant.name,
            "required": self.variant.required,
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "cache_hit": self.cache_hit,
            "artifacts": [a.release_path for a in self.artifacts],
            "log_path": str(self.log_path) if self.log_path else None,
            "error_type": self.error_type,
            "error_message": self.error_message,
        }


JobExecutor = Callable[[BuildJob], JobOutput]


@dataclass
class ScheduleResult:
    """Terminal states of all scheduled jobs, in resolver order."""

    jobs: list[BuildJob]

    @property
    def all_terminal(self) -> bool:
        return all(job.state.is_terminal for job in self.jobs)

    @property
    def failed_variants(self) -> list[str]:
        return [j.variant.name for j in self.jobs if j.state != JobState.SUCCEEDED]

    @property
    def required_failures(self) -> list[str]:
        return [
            j.variant.name
            for j in self.jobs
            if j.variant.required and j.state != JobState.SUCCEEDED
        ]

    @property
    def status(self) -> AggregateStatus:
        failed = self.failed_variants
        if not failed:
            return AggregateStatus.ALL_SUCCEEDED
        if len(failed) == len(self.jobs):
            return AggregateStatus.TOTAL_FAILURE
        return AggregateStatus.PARTIAL_FAILURE

    def job(self, variant_name: str) -> BuildJob:
        """Return the job of a variant.

        Raises:
            KeyError: If no job built the variant.
        """
        for job in self.jobs:
            if job.variant.name == variant_name:
                return job
        raise KeyError(variant_name)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status.value,
            "failed_variants": self.failed_variants,
            "required_failures": self.required_failures,
            "jobs": [job.to_dict() for job in self.jobs],
        }


def _error_code(error: BaseException, default: str) -> str:
    code = getattr(error, "code", None)
    return code if isinstance(code, str) else default


class BuildScheduler:
    """Runs build jobs with bounded parallelism.

    Args:
        executor: Callable building one job; returns JobOutput or raises.
        max_workers: Maximum concurrent jobs (default: CPU count).
        job_timeout: Per-job deadline in seconds.
        on_job_finished: Called as each job reaches a terminal state.
    """

    def __init__(
        self,
        executor: JobExecutor,
        max_workers: int | None = None,
        job_timeout: float | None = None,
        on_job_finished: Callable[[BuildJob], None] | None = None,
    ) -> None:
        if max_workers is not None and max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.executor = executor
        self.max_workers = max_workers or os.cpu_count() or 1
        self.job_timeout = job_timeout
        self.on_job_finished = on_job_finished

    def _run_job(self, job: BuildJob) -> BuildJob:
        job.mark_running()
        logger.info("Building %s (job %s)", job.variant.name, job.job_id)
        try:
            output = self.executor(job)
        except TimeoutError as e:
            logger.error("%s timed out: %s", job.variant.name, e)
            job.mark_timed_out(str(e))
        except Exception as e:
            logger.error("%s failed: %s", job.variant.name, e)
            job.mark_failed(_error_code(e, type(e).__name__), str(e))
        else:
            if job.expired():
                logger.error("%s finished after its deadline", job.variant.name)
                job.mark_timed_out(f"Job exceeded its {self.job_timeout}s deadline")
            else:
                job.mark_succeeded(output)
                logger.info("%s succeeded", job.variant.name)

        if self.on_job_finished is not None:
            try:
                self.on_job_finished(job)
            except Exception:
                logger.exception("Job completion callback failed for %s", job.variant.name)
        return job

    def run(self, variants: Sequence[VariantSpec]) -> ScheduleResult:
        """Build every variant and wait for all jobs to finish.

        Args:
            variants: Variants in resolver order.

        Returns:
            ScheduleResult with jobs in resolver order.

        Raises:
            ValueError: If no variants are given.
        """
        if not variants:
            raise ValueError("No variants to build")

        jobs = [
            BuildJob(variant=variant, index=index, timeout=self.job_timeout)
            for index, variant in enumerate(variants)
        ]
        workers = min(self.max_workers, len(jobs))
        logger.info("Scheduling %d build jobs on %d workers", len(jobs), workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="build") as pool:
            futures = [pool.submit(self._run_job, job) for job in jobs]
            for future in as_completed(futures):
                # _run_job records every job failure; anything raised here is a bug
                future.result()

        jobs.sort(key=lambda j: j.index)
        result = ScheduleResult(jobs=jobs)
        logger.info(
            "Build finished: %s (%d/%d succeeded)",
            result.status.value,
            len(jobs) - len(result.failed_variants),
            len(jobs),
        )
        return result


__all__ = [
    "BuildJob",
    "BuildScheduler",
    "JobExecutor",
    "JobOutput",
    "JobStateError",
    "ScheduleResult",
]
