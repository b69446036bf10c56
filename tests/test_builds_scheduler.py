"""Tests for builds/scheduler.py module."""

import threading
import time
from pathlib import Path

import pytest

from variant_release.builds.runner import BuildFailure
from variant_release.builds.scheduler import (
    BuildJob,
    BuildScheduler,
    JobOutput,
    JobStateError,
    ScheduleResult,
)
from variant_release.matrix.resolver import VariantSpec
from variant_release.types import AggregateStatus, Artifact, JobState


def _variant(name: str, required: bool = True) -> VariantSpec:
    channel, crypto_mode = name.split("-")
    return VariantSpec(
        name=name,
        channel=channel,
        crypto_mode=crypto_mode,
        required=required,
        outputs=(f"{name}.apk",),
    )


def _output(job: BuildJob) -> JobOutput:
    artifact = Artifact(
        variant=job.variant.name,
        filename=f"{job.variant.name}.apk",
        path=Path("/tmp") / f"{job.variant.name}.apk",
    )
    return JobOutput(artifacts=[artifact], entries=[])


class TestBuildJob:
    """Tests for the job state machine."""

    def test_happy_path(self) -> None:
        """Pending -> Running -> Succeeded."""
        job = BuildJob(variant=_variant("play-standard"), index=0)
        assert job.state == JobState.PENDING

        job.mark_running()
        assert job.started_at is not None
        job.mark_succeeded(_output(job))

        assert job.state == JobState.SUCCEEDED
        assert job.duration_seconds is not None
        assert job.to_dict()["artifacts"] == ["play-standard/play-standard.apk"]

    def test_cannot_skip_running(self) -> None:
        """A pending job cannot succeed directly."""
        job = BuildJob(variant=_variant("play-standard"), index=0)
        with pytest.raises(JobStateError) as exc_info:
            job.mark_succeeded(_output(job))
        assert exc_info.value.code == "illegal_transition"

    def test_terminal_is_final(self) -> None:
        """Terminal jobs do not transition again."""
        job = BuildJob(variant=_variant("play-standard"), index=0)
        job.mark_running()
        job.mark_failed("build_failed", "exit 1")
        with pytest.raises(JobStateError):
            job.mark_running()
        with pytest.raises(JobStateError):
            job.mark_timed_out("late")

    def test_deadline_starts_when_running(self) -> None:
        """remaining() is None until the job runs."""
        job = BuildJob(variant=_variant("play-standard"), index=0, timeout=60)
        assert job.remaining() is None
        job.mark_running()
        remaining = job.remaining()
        assert remaining is not None
        assert 59 < remaining <= 60
        assert job.expired() is False

    def test_unique_job_ids(self) -> None:
        """Jobs get distinct identifiers."""
        a = BuildJob(variant=_variant("play-standard"), index=0)
        b = BuildJob(variant=_variant("play-standard"), index=0)
        assert a.job_id != b.job_id


class TestScheduleResult:
    """Tests for ScheduleResult aggregation."""

    def _result(self, states: dict[str, tuple[bool, JobState]]) -> ScheduleResult:
        jobs = []
        for index, (name, (required, state)) in enumerate(states.items()):
            job = BuildJob(variant=_variant(name, required), index=index)
            job.mark_running()
            if state == JobState.SUCCEEDED:
                job.mark_succeeded(_output(job))
            elif state == JobState.FAILED:
                job.mark_failed("build_failed", "boom")
            else:
                job.mark_timed_out("slow")
            jobs.append(job)
        return ScheduleResult(jobs=jobs)

    def test_all_succeeded(self) -> None:
        """No failures is AllSucceeded."""
        result = self._result({"a-x": (True, JobState.SUCCEEDED)})
        assert result.status == AggregateStatus.ALL_SUCCEEDED
        assert result.failed_variants == []

    def test_partial_failure(self) -> None:
        """Some failures is PartialFailure with failures listed."""
        result = self._result(
            {
                "a-x": (True, JobState.FAILED),
                "b-x": (True, JobState.SUCCEEDED),
                "c-x": (False, JobState.TIMED_OUT),
            }
        )
        assert result.status == AggregateStatus.PARTIAL_FAILURE
        assert result.failed_variants == ["a-x", "c-x"]
        assert result.required_failures == ["a-x"]

    def test_total_failure(self) -> None:
        """All jobs failing is TotalFailure."""
        result = self._result(
            {"a-x": (True, JobState.FAILED), "b-x": (False, JobState.TIMED_OUT)}
        )
        assert result.status == AggregateStatus.TOTAL_FAILURE

    def test_job_lookup(self) -> None:
        """Jobs are found by variant name."""
        result = self._result({"a-x": (True, JobState.SUCCEEDED)})
        assert result.job("a-x").variant.name == "a-x"
        with pytest.raises(KeyError):
            result.job("missing-x")


class TestBuildScheduler:
    """Tests for BuildScheduler."""

    def test_invalid_workers(self) -> None:
        """max_workers must be positive."""
        with pytest.raises(ValueError):
            BuildScheduler(_output, max_workers=0)

    def test_no_variants(self) -> None:
        """Scheduling nothing is an error."""
        with pytest.raises(ValueError):
            BuildScheduler(_output).run([])

    def test_results_in_resolver_order(self) -> None:
        """Completion order does not affect result order."""
        delays = {"a-x": 0.3, "b-x": 0.0, "c-x": 0.1}

        def executor(job: BuildJob) -> JobOutput:
            time.sleep(delays[job.variant.name])
            return _output(job)

        result = BuildScheduler(executor, max_workers=3).run(
            [_variant(name) for name in delays]
        )

        assert [j.variant.name for j in result.jobs] == ["a-x", "b-x", "c-x"]
        assert result.status == AggregateStatus.ALL_SUCCEEDED
        assert result.all_terminal

    def test_failure_does_not_cancel_siblings(self) -> None:
        """fail-fast is off: every job runs to a terminal state."""
        ran = []
        lock = threading.Lock()

        def executor(job: BuildJob) -> JobOutput:
            with lock:
                ran.append(job.variant.name)
            if job.variant.name == "a-x":
                raise BuildFailure("exit 1", exit_code=1, code="build_failed")
            return _output(job)

        result = BuildScheduler(executor, max_workers=1).run(
            [_variant("a-x"), _variant("b-x"), _variant("c-x")]
        )

        assert sorted(ran) == ["a-x", "b-x", "c-x"]
        assert result.job("a-x").state == JobState.FAILED
        assert result.job("a-x").error_type == "build_failed"
        assert result.job("b-x").state == JobState.SUCCEEDED
        assert result.status == AggregateStatus.PARTIAL_FAILURE

    def test_unknown_exception_uses_class_name(self) -> None:
        """Errors without a code are typed by class name."""

        def executor(job: BuildJob) -> JobOutput:
            raise RuntimeError("unexpected")

        result = BuildScheduler(executor).run([_variant("a-x")])
        assert result.job("a-x").error_type == "RuntimeError"
        assert result.status == AggregateStatus.TOTAL_FAILURE

    def test_timeout_error_marks_timed_out(self) -> None:
        """Any TimeoutError from the executor is a timeout."""

        def executor(job: BuildJob) -> JobOutput:
            raise TimeoutError("deadline")

        result = BuildScheduler(executor, job_timeout=5).run([_variant("a-x")])
        job = result.job("a-x")
        assert job.state == JobState.TIMED_OUT
        assert job.error_type == "timeout"

    def test_late_success_is_timed_out(self) -> None:
        """A job returning after its deadline is TimedOut."""

        def executor(job: BuildJob) -> JobOutput:
            time.sleep(0.3)
            return _output(job)

        result = BuildScheduler(executor, job_timeout=0.1).run([_variant("a-x")])
        assert result.job("a-x").state == JobState.TIMED_OUT

    def test_executor_sees_deadline(self) -> None:
        """Jobs are running with a deadline when the executor is called."""
        seen = []

        def executor(job: BuildJob) -> JobOutput:
            seen.append((job.state, job.remaining()))
            return _output(job)

        BuildScheduler(executor, job_timeout=30).run([_variant("a-x")])
        state, remaining = seen[0]
        assert state == JobState.RUNNING
        assert remaining is not None and remaining > 0

    def test_bounded_concurrency(self) -> None:
        """No more than max_workers jobs run at once."""
        running = 0
        peak = 0
        lock = threading.Lock()

        def executor(job: BuildJob) -> JobOutput:
            nonlocal running, peak
            with lock:
                running += 1
                peak = max(peak, running)
            time.sleep(0.05)
            with lock:
                running -= 1
            return _output(job)

        BuildScheduler(executor, max_workers=2).run(
            [_variant(f"v{i}-x") for i in range(6)]
        )
        assert peak <= 2

    def test_callback_called_per_job(self) -> None:
        """on_job_finished sees every terminal job."""
        finished = []

        BuildScheduler(_output, on_job_finished=lambda j: finished.append(j.state)).run(
            [_variant("a-x"), _variant("b-x")]
        )
        assert finished == [JobState.SUCCEEDED, JobState.SUCCEEDED]

    def test_callback_errors_are_contained(self) -> None:
        """A failing callback does not change job results."""

        def callback(job: BuildJob) -> None:
            raise RuntimeError("display broken")

        result = BuildScheduler(_output, on_job_finished=callback).run([_variant("a-x")])
        assert result.status == AggregateStatus.ALL_SUCCEEDED
