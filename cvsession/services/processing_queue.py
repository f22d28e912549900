"""Processing queue for long-running backend jobs.

Schedules jobs with dependency ordering, priority, bounded retries and
checkpointing.

Job state machine:
- queued -> processing
- processing -> completed | failed
- failed -> queued (automatic while retry_count < max_retries, or an
  explicit user retry of a terminal failure)

Retry policy: deterministic exponential backoff,
min(base_delay * 2**retry_count, max_delay). A requeued job is not eligible
before its available_at time. A job fails at most max_retries + 1 times
before it is terminal.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from cvsession.core.config import settings
from cvsession.core.errors import (
    DependencyError,
    InvalidTransitionError,
    TerminalError,
    ValidationError,
)
from cvsession.models.processing import (
    CheckpointDecision,
    CheckpointState,
    JobStatus,
    JobType,
    ProcessingCheckpoint,
    ProcessingJob,
    QueueStats,
    ResumeData,
)
from cvsession.models.steps import CVStep

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Step a job reports against when it does not name one explicitly.
_STEP_FOR_JOB_TYPE: dict[JobType, CVStep] = {
    JobType.CV_PROCESSING: CVStep.PROCESSING,
    JobType.DATA_EXTRACTION: CVStep.PROCESSING,
    JobType.ANALYSIS: CVStep.ANALYSIS,
    JobType.FEATURE_GENERATION: CVStep.FEATURES,
    JobType.TEMPLATE_APPLICATION: CVStep.TEMPLATES,
}

_VALID_TRANSITIONS: dict[JobStatus, list[JobStatus]] = {
    JobStatus.QUEUED: [JobStatus.PROCESSING],
    JobStatus.PROCESSING: [JobStatus.COMPLETED, JobStatus.FAILED],
    JobStatus.FAILED: [JobStatus.QUEUED],
    JobStatus.COMPLETED: [],  # Terminal state
}

_RESUMABLE_STATES = frozenset({CheckpointState.CREATED, CheckpointState.FAILED})


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobExecutor(Protocol):
    """Backend collaborator that performs the work behind a job."""

    async def execute(self, job: ProcessingJob) -> Any:
        """Run the job and return its result, or raise on failure.

        Raising TerminalError marks the job failed without further retries.
        """
        ...


@dataclass(frozen=True)
class JobRunResult:
    """Outcome of running one job.

    Attributes:
        job: Copy of the job after the run.
        succeeded: The job completed.
        requeued: The job failed and was scheduled for another attempt.
        error: Failure message, if the run failed.
        terminal_error: Set when the job is now terminally failed.
    """

    job: ProcessingJob
    succeeded: bool
    requeued: bool = False
    error: str | None = None
    terminal_error: TerminalError | None = None


class ProcessingQueue:
    """Dependency-ordered, priority-ordered, retryable job queue.

    All returned jobs and checkpoints are copies.

    Args:
        max_retries: Default retry budget for jobs that do not set one.
        base_delay_ms: Backoff base delay.
        max_delay_ms: Backoff cap.
        default_timeout_ms: Default timeout for jobs that do not set one.
        clock: Source of the current time.
    """

    def __init__(
        self,
        *,
        max_retries: int | None = None,
        base_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        default_timeout_ms: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._max_retries = (
            settings.job_max_retries if max_retries is None else max_retries
        )
        self._base_delay_ms = (
            settings.job_retry_base_delay_ms if base_delay_ms is None else base_delay_ms
        )
        self._max_delay_ms = (
            settings.job_retry_max_delay_ms if max_delay_ms is None else max_delay_ms
        )
        self._default_timeout_ms = (
            settings.job_default_timeout_ms
            if default_timeout_ms is None
            else default_timeout_ms
        )
        self._clock = clock or _utcnow
        self._jobs: dict[str, ProcessingJob] = {}
        self._checkpoints: dict[str, ProcessingCheckpoint] = {}
        self._paused = False

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def paused(self) -> bool:
        return self._paused

    def get(self, job_id: str) -> ProcessingJob:
        """Copy of a job.

        Raises:
            ValidationError: If the job is unknown.
        """
        return self._require(job_id).model_copy(deep=True)

    def jobs(self) -> list[ProcessingJob]:
        """Copies of all jobs in enqueue order."""
        return [job.model_copy(deep=True) for job in self._jobs.values()]

    @property
    def stats(self) -> QueueStats:
        """Aggregate statistics derived from the job list."""
        jobs = list(self._jobs.values())
        completed = [job for job in jobs if job.status == JobStatus.COMPLETED]
        failed = [job for job in jobs if job.status == JobStatus.FAILED]
        finished = len(completed) + len(failed)
        durations = [
            (job.completed_at - job.started_at).total_seconds() * 1000
            for job in completed
            if job.completed_at and job.started_at
        ]
        return QueueStats(
            total_jobs=len(jobs),
            completed_jobs=len(completed),
            failed_jobs=len(failed),
            queued_jobs=sum(1 for job in jobs if job.status == JobStatus.QUEUED),
            processing_jobs=sum(
                1 for job in jobs if job.status == JobStatus.PROCESSING
            ),
            success_rate=len(completed) / finished if finished else 0.0,
            average_job_duration_ms=(
                sum(durations) / len(durations) if durations else 0.0
            ),
            paused=self._paused,
        )

    def backoff_delay_ms(self, retry_count: int) -> int:
        """Delay before the attempt following retry_count earlier retries."""
        return min(self._base_delay_ms * 2**retry_count, self._max_delay_ms)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def enqueue(self, job: ProcessingJob) -> ProcessingJob:
        """Add a queued job.

        Args:
            job: Job to add. Copied.

        Returns:
            Copy of the stored job with defaults filled in.

        Raises:
            ValidationError: If the id is taken, the job is not queued, or it
                depends on itself.
            DependencyError: If any dependency id is not in the queue.
        """
        if job.id in self._jobs:
            raise ValidationError(f"Job '{job.id}' is already queued")
        if job.status != JobStatus.QUEUED:
            raise ValidationError(
                f"Job '{job.id}' must be enqueued as queued, got {job.status.value}"
            )
        if job.id in job.dependencies:
            raise ValidationError(f"Job '{job.id}' cannot depend on itself")
        dangling = [dep for dep in job.dependencies if dep not in self._jobs]
        if dangling:
            raise DependencyError(
                job.id,
                dangling,
                message=(
                    f"Job '{job.id}' depends on unknown jobs: {', '.join(dangling)}"
                ),
            )

        stored = job.model_copy(deep=True)
        if stored.max_retries is None:
            stored.max_retries = self._max_retries
        if stored.timeout_ms is None:
            stored.timeout_ms = self._default_timeout_ms
        self._jobs[stored.id] = stored
        logger.debug("Enqueued job %s (%s)", stored.id, stored.type.value)
        return stored.model_copy(deep=True)

    def next(self) -> ProcessingJob | None:
        """Claim the next eligible job.

        Picks the highest-priority queued job whose dependencies are all
        completed and whose backoff has elapsed; ties go to the earliest
        queued_at. The job moves to processing and a checkpoint is created.

        Returns:
            Copy of the claimed job, or None when paused or nothing is
            eligible. Callers should wait for a job to finish rather than
            polling in a tight loop.
        """
        if self._paused:
            return None
        now = self._clock()
        eligible = [job for job in self._jobs.values() if self._is_eligible(job, now)]
        if not eligible:
            return None
        job = min(eligible, key=lambda j: (-j.priority, j.queued_at))
        self._transition(job, JobStatus.PROCESSING)
        job.started_at = now
        self._start_checkpoint(job, now)
        return job.model_copy(deep=True)

    def mark_progress(
        self, job_id: str, percentage: int, partial_result: Any = None
    ) -> ProcessingJob:
        """Record progress of a processing job and checkpoint partial results.

        Raises:
            ValidationError: If the job is unknown, not processing, or the
                percentage is outside 0-100.
        """
        job = self._require(job_id)
        if job.status != JobStatus.PROCESSING:
            raise ValidationError(
                f"Job '{job_id}' is {job.status.value}; only processing jobs "
                "report progress"
            )
        if not 0 <= percentage <= 100:
            raise ValidationError(
                f"Progress must be between 0 and 100, got {percentage}"
            )
        job.progress = percentage
        checkpoint = self._checkpoint_for(job)
        if checkpoint is not None:
            checkpoint.state = CheckpointState.PROCESSING
            checkpoint.resume_data.progress = percentage
            if partial_result is not None:
                checkpoint.resume_data.partial_results = partial_result
            checkpoint.timestamp = self._clock()
        return job.model_copy(deep=True)

    def complete(self, job_id: str, result: Any = None) -> ProcessingJob:
        """Mark a processing job completed.

        Raises:
            ValidationError: If the job is unknown.
            InvalidTransitionError: If the job is not processing.
        """
        job = self._require(job_id)
        self._transition(job, JobStatus.COMPLETED)
        now = self._clock()
        job.progress = 100
        job.completed_at = now
        job.result = result
        checkpoint = self._checkpoint_for(job)
        if checkpoint is not None:
            checkpoint.state = CheckpointState.COMPLETED
            checkpoint.resume_data.progress = 100
            checkpoint.resume_data.partial_results = result
            self._finish_performance(checkpoint, now)
        logger.debug("Job %s completed", job_id)
        return job.model_copy(deep=True)

    def fail(self, job_id: str, error: str, *, retryable: bool = True) -> ProcessingJob:
        """Record a failure of a processing job.

        The job is requeued with backoff while retry_count < max_retries.

        Args:
            job_id: Failed job.
            error: Failure message.
            retryable: False marks the job terminal regardless of budget.

        Returns:
            Copy of the requeued job.

        Raises:
            ValidationError: If the job is unknown.
            InvalidTransitionError: If the job is not processing.
            TerminalError: If the job is now terminally failed.
        """
        job = self._require(job_id)
        self._transition(job, JobStatus.FAILED)
        now = self._clock()
        job.failed_at = now
        job.last_error = error
        max_retries = job.max_retries if job.max_retries is not None else 0
        checkpoint = self._checkpoint_for(job)

        if retryable and job.retry_count < max_retries:
            delay_ms = self.backoff_delay_ms(job.retry_count)
            job.retry_count += 1
            self._transition(job, JobStatus.QUEUED)
            job.queued_at = now
            job.available_at = now + timedelta(milliseconds=delay_ms)
            if checkpoint is not None:
                checkpoint.state = CheckpointState.FAILED
                checkpoint.error_recovery.retry_count = job.retry_count
                checkpoint.error_recovery.last_error = error
                checkpoint.error_recovery.next_retry_at = job.available_at
            logger.warning(
                "Job %s failed (attempt %d/%d): %s. Retrying in %dms",
                job_id,
                job.retry_count,
                max_retries + 1,
                error,
                delay_ms,
            )
            return job.model_copy(deep=True)

        if checkpoint is not None:
            checkpoint.state = CheckpointState.FAILED
            checkpoint.error_recovery.last_error = error
            checkpoint.error_recovery.next_retry_at = None
            self._finish_performance(checkpoint, now)
        logger.error(
            "Job %s failed permanently after %d retries: %s",
            job_id,
            job.retry_count,
            error,
        )
        raise TerminalError(job_id, error)

    def retry(self, job_id: str) -> ProcessingJob:
        """Requeue a terminally failed job at the user's request.

        The retry budget starts over.

        Raises:
            ValidationError: If the job is unknown.
            InvalidTransitionError: If the job is not failed.
        """
        job = self._require(job_id)
        self._transition(job, JobStatus.QUEUED)
        job.retry_count = 0
        job.progress = 0
        job.queued_at = self._clock()
        job.available_at = None
        logger.info("Job %s requeued by user", job_id)
        return job.model_copy(deep=True)

    def release(self, job_id: str) -> ProcessingJob:
        """Return an interrupted processing job to the queue without a retry."""
        job = self._require(job_id)
        if job.status != JobStatus.PROCESSING:
            raise ValidationError(f"Job '{job_id}' is not processing")
        job.status = JobStatus.QUEUED
        job.started_at = None
        checkpoint = self._checkpoint_for(job)
        if checkpoint is not None:
            checkpoint.state = CheckpointState.CREATED
        return job.model_copy(deep=True)

    def pause(self) -> None:
        """Stop handing out jobs. In-flight jobs keep running."""
        self._paused = True
        logger.info("Processing queue paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Processing queue resumed")

    def expire_timed_out(self, now: datetime | None = None) -> list[JobRunResult]:
        """Fail processing jobs that ran past their timeout.

        Returns:
            One result per expired job.
        """
        now = now or self._clock()
        results: list[JobRunResult] = []
        for job in list(self._jobs.values()):
            if (
                job.status != JobStatus.PROCESSING
                or job.timeout_ms is None
                or job.started_at is None
            ):
                continue
            if now - job.started_at < timedelta(milliseconds=job.timeout_ms):
                continue
            results.append(
                self._record_failure(job.id, f"Timed out after {job.timeout_ms}ms")
            )
        return results

    async def run_next(self, executor: JobExecutor) -> JobRunResult | None:
        """Claim the next eligible job and run it with the executor.

        A job that exceeds its timeout is failed like any other error. If the
        calling task is cancelled, the job goes back to the queue without
        consuming a retry.

        Returns:
            JobRunResult, or None when no job is eligible.
        """
        job = self.next()
        if job is None:
            return None

        timeout = job.timeout_ms / 1000 if job.timeout_ms else None
        try:
            async with asyncio.timeout(timeout):
                result = await executor.execute(job)
        except TimeoutError:
            return self._record_failure(job.id, f"Timed out after {job.timeout_ms}ms")
        except asyncio.CancelledError:
            self.release(job.id)
            raise
        except TerminalError as e:
            return self._record_failure(job.id, e.last_error, retryable=False)
        except Exception as e:  # noqa: BLE001
            return self._record_failure(job.id, str(e) or type(e).__name__)

        completed = self.complete(job.id, result)
        return JobRunResult(job=completed, succeeded=True)

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    def checkpoints(self) -> list[ProcessingCheckpoint]:
        return [cp.model_copy(deep=True) for cp in self._checkpoints.values()]

    def restore_checkpoints(self, checkpoints: list[ProcessingCheckpoint]) -> None:
        """Load checkpoints persisted with a session."""
        for checkpoint in checkpoints:
            self._checkpoints[checkpoint.id] = checkpoint.model_copy(deep=True)

    def resumable_checkpoints(self) -> list[ProcessingCheckpoint]:
        """Checkpoints that were created or failed, highest priority first."""
        resumable = [
            cp for cp in self._checkpoints.values() if cp.state in _RESUMABLE_STATES
        ]
        resumable.sort(key=lambda cp: (-cp.priority, cp.timestamp))
        return [cp.model_copy(deep=True) for cp in resumable]

    def clear_completed_checkpoints(self) -> int:
        """Drop completed checkpoints.

        Returns:
            Number of checkpoints removed.
        """
        completed = [
            checkpoint_id
            for checkpoint_id, cp in self._checkpoints.items()
            if cp.state == CheckpointState.COMPLETED
        ]
        for checkpoint_id in completed:
            del self._checkpoints[checkpoint_id]
        return len(completed)

    @staticmethod
    def decide_resume(checkpoint: ProcessingCheckpoint) -> CheckpointDecision:
        """Decide what to do with a checkpoint when a session is reopened.

        - completed: skip, the work is done
        - failed and skippable: skip
        - partial progress recorded: resume from the partial results
        - otherwise: reissue the operation from the start
        """
        if checkpoint.state == CheckpointState.COMPLETED:
            return CheckpointDecision.SKIP
        if checkpoint.state == CheckpointState.FAILED and checkpoint.can_skip:
            return CheckpointDecision.SKIP
        if checkpoint.resume_data.progress > 0 or (
            checkpoint.resume_data.partial_results is not None
        ):
            return CheckpointDecision.RESUME
        return CheckpointDecision.REISSUE

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _require(self, job_id: str) -> ProcessingJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise ValidationError(
                f"Unknown job '{job_id}'", details=[{"job_id": job_id}]
            )
        return job

    def _is_eligible(self, job: ProcessingJob, now: datetime) -> bool:
        if job.status != JobStatus.QUEUED:
            return False
        if job.available_at is not None and job.available_at > now:
            return False
        return all(
            self._jobs[dep].status == JobStatus.COMPLETED for dep in job.dependencies
        )

    @staticmethod
    def _transition(job: ProcessingJob, target: JobStatus) -> None:
        valid = _VALID_TRANSITIONS.get(job.status, [])
        if target not in valid:
            raise InvalidTransitionError(
                subject=f"job '{job.id}'",
                current=job.status.value,
                target=target.value,
                valid_targets=[status.value for status in valid],
            )
        job.status = target

    def _record_failure(
        self, job_id: str, error: str, *, retryable: bool = True
    ) -> JobRunResult:
        try:
            job = self.fail(job_id, error, retryable=retryable)
        except TerminalError as e:
            return JobRunResult(
                job=self.get(job_id),
                succeeded=False,
                error=error,
                terminal_error=e,
            )
        return JobRunResult(job=job, succeeded=False, requeued=True, error=error)

    def _checkpoint_for(self, job: ProcessingJob) -> ProcessingCheckpoint | None:
        if job.checkpoint_id is None:
            return None
        return self._checkpoints.get(job.checkpoint_id)

    def _start_checkpoint(self, job: ProcessingJob, now: datetime) -> None:
        checkpoint = self._checkpoint_for(job)
        if checkpoint is None:
            feature_id = job.payload.get("feature_id")
            checkpoint = ProcessingCheckpoint(
                step_id=job.step or _STEP_FOR_JOB_TYPE[job.type],
                feature_id=feature_id if isinstance(feature_id, str) else None,
                job_id=job.id,
                timestamp=now,
                resume_data=ResumeData(
                    function_name=job.type.value,
                    parameters=dict(job.payload),
                ),
                dependencies=list(job.dependencies),
                can_skip="optional" in job.tags,
                priority=job.priority,
            )
            checkpoint.error_recovery.max_retries = job.max_retries or 0
            checkpoint.performance.start_time = now
            self._checkpoints[checkpoint.id] = checkpoint
            job.checkpoint_id = checkpoint.id
        checkpoint.state = CheckpointState.PROCESSING
        checkpoint.timestamp = now

    @staticmethod
    def _finish_performance(checkpoint: ProcessingCheckpoint, now: datetime) -> None:
        checkpoint.performance.end_time = now
        checkpoint.performance.duration_ms = int(
            (now - checkpoint.performance.start_time).total_seconds() * 1000
        )
