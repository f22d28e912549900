"""Tests for the processing queue.

Covers:
- Dependency ordering and priority selection
- Deterministic exponential backoff and the retry bound
- Timeouts, cancellation and checkpoints
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

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
    ProcessingJob,
)
from cvsession.models.steps import CVStep
from cvsession.services.processing_queue import ProcessingQueue


@pytest.fixture
def queue(clock) -> ProcessingQueue:
    return ProcessingQueue(
        max_retries=2, base_delay_ms=100, max_delay_ms=1000, clock=clock
    )


def _job(job_id: str, **kwargs) -> ProcessingJob:
    return ProcessingJob(id=job_id, type=kwargs.pop("type", JobType.ANALYSIS), **kwargs)


# =============================================================================
# Enqueue
# =============================================================================


class TestEnqueue:
    """Tests for enqueue() validation."""

    def test_fills_in_default_retry_budget(self, queue) -> None:
        """Jobs without a retry budget take the queue default."""
        assert queue.enqueue(_job("a")).max_retries == 2

    def test_duplicate_id_rejected(self, queue) -> None:
        """A job id can only be queued once."""
        queue.enqueue(_job("a"))
        with pytest.raises(ValidationError, match="already queued"):
            queue.enqueue(_job("a"))

    def test_unknown_dependency_rejected(self, queue) -> None:
        """Dependencies must already be in the queue."""
        with pytest.raises(DependencyError) as exc_info:
            queue.enqueue(_job("b", dependencies=["a"]))
        assert exc_info.value.unmet == ["a"]

    def test_self_dependency_rejected(self, queue) -> None:
        """A job cannot depend on itself."""
        with pytest.raises(ValidationError, match="cannot depend on itself"):
            queue.enqueue(_job("a", dependencies=["a"]))


# =============================================================================
# Selection
# =============================================================================


class TestNext:
    """Tests for next() selection."""

    def test_never_returns_job_with_incomplete_dependency(self, queue) -> None:
        """A job is held back until its dependencies complete."""
        queue.enqueue(_job("a"))
        queue.enqueue(_job("b", dependencies=["a"], priority=10))

        claimed = queue.next()
        assert claimed is not None and claimed.id == "a"
        for _ in range(3):
            assert queue.next() is None

        queue.complete("a")
        assert queue.next().id == "b"

    def test_higher_priority_first_then_fifo(self, queue, clock) -> None:
        """Higher priority wins, then the earliest queued."""
        queue.enqueue(_job("first", queued_at=clock()))
        clock.advance(seconds=1)
        queue.enqueue(_job("second", queued_at=clock()))
        queue.enqueue(_job("urgent", priority=5, queued_at=clock()))

        assert [queue.next().id for _ in range(3)] == ["urgent", "first", "second"]

    def test_paused_queue_hands_out_nothing(self, queue) -> None:
        """A paused queue claims nothing until resumed."""
        queue.enqueue(_job("a"))
        queue.pause()
        assert queue.next() is None
        assert queue.stats.paused is True
        queue.resume()
        assert queue.next().id == "a"

    def test_claim_creates_checkpoint(self, queue) -> None:
        """Claiming a job opens a checkpoint for its step."""
        queue.enqueue(_job("a", type=JobType.CV_PROCESSING, tags=["optional"]))
        job = queue.next()
        (checkpoint,) = queue.checkpoints()
        assert job.checkpoint_id == checkpoint.id
        assert checkpoint.step_id == CVStep.PROCESSING
        assert checkpoint.state == CheckpointState.PROCESSING
        assert checkpoint.can_skip is True


# =============================================================================
# Failure and Retry
# =============================================================================


class TestFailAndRetry:
    """Tests for failure handling, backoff and the retry bound."""

    def test_backoff_is_exponential_and_capped(self, queue) -> None:
        """Backoff doubles per retry up to the cap."""
        assert [queue.backoff_delay_ms(n) for n in range(6)] == [
            100,
            200,
            400,
            800,
            1000,
            1000,
        ]

    def test_requeued_job_waits_for_backoff(self, queue, clock) -> None:
        """A requeued job is not claimable until its backoff elapses."""
        queue.enqueue(_job("a"))
        queue.next()
        requeued = queue.fail("a", "boom")

        assert requeued.status == JobStatus.QUEUED
        assert requeued.retry_count == 1
        assert queue.next() is None

        clock.advance(milliseconds=100)
        assert queue.next().id == "a"

    def test_fails_terminally_after_max_retries_plus_one(self, queue, clock) -> None:
        """A job fails for good on its max_retries + 1 failure."""
        queue.enqueue(_job("a"))
        failures = 0
        with pytest.raises(TerminalError) as exc_info:
            while True:
                clock.advance(seconds=10)
                assert queue.next() is not None
                failures += 1
                queue.fail("a", f"failure {failures}")

        assert failures == 3
        assert exc_info.value.last_error == "failure 3"
        assert queue.get("a").status == JobStatus.FAILED
        clock.advance(hours=1)
        assert queue.next() is None

    def test_non_retryable_failure_is_terminal_immediately(self, queue) -> None:
        """A non-retryable failure skips the retry budget."""
        queue.enqueue(_job("a"))
        queue.next()
        with pytest.raises(TerminalError):
            queue.fail("a", "bad input", retryable=False)
        assert queue.get("a").retry_count == 0

    def test_user_retry_resets_budget(self, queue) -> None:
        """A user retry requeues a failed job with a fresh budget."""
        queue.enqueue(_job("a", max_retries=0))
        queue.next()
        with pytest.raises(TerminalError):
            queue.fail("a", "boom")

        retried = queue.retry("a")
        assert retried.status == JobStatus.QUEUED
        assert retried.retry_count == 0
        assert queue.next().id == "a"

    def test_completed_job_cannot_be_failed(self, queue) -> None:
        """Completed jobs reject a late failure."""
        queue.enqueue(_job("a"))
        queue.next()
        queue.complete("a")
        with pytest.raises(InvalidTransitionError):
            queue.fail("a", "late error")


# =============================================================================
# Running Jobs
# =============================================================================


class TestRunNext:
    """Tests for run_next() and timeout expiry."""

    async def test_success_completes_job(self, queue) -> None:
        """A successful run stores the result and completes the checkpoint."""
        queue.enqueue(_job("a"))
        executor = AsyncMock()
        executor.execute.return_value = {"score": 87}

        result = await queue.run_next(executor)

        assert result.succeeded is True
        assert result.job.result == {"score": 87}
        assert queue.stats.completed_jobs == 1
        assert queue.checkpoints()[0].state == CheckpointState.COMPLETED

    async def test_exception_requeues(self, queue) -> None:
        """An executor exception requeues the job."""
        queue.enqueue(_job("a"))
        executor = AsyncMock()
        executor.execute.side_effect = RuntimeError("backend unavailable")

        result = await queue.run_next(executor)

        assert result.requeued is True
        assert result.error == "backend unavailable"

    async def test_terminal_error_from_executor_skips_retries(self, queue) -> None:
        """TerminalError from the executor fails the job at once."""
        queue.enqueue(_job("a"))
        executor = AsyncMock()
        executor.execute.side_effect = TerminalError("a", "unsupported file")

        result = await queue.run_next(executor)

        assert result.terminal_error is not None
        assert result.job.status == JobStatus.FAILED

    async def test_timeout_counts_as_failure(self, queue) -> None:
        """Exceeding the job timeout counts as a failed attempt."""
        queue.enqueue(_job("a", timeout_ms=10))

        class SlowExecutor:
            async def execute(self, job):
                await asyncio.sleep(1)

        result = await queue.run_next(SlowExecutor())

        assert result.requeued is True
        assert result.error == "Timed out after 10ms"

    async def test_cancellation_releases_job_without_retry(self, queue) -> None:
        """Cancelling a run requeues the job without charging a retry."""
        queue.enqueue(_job("a"))
        started = asyncio.Event()

        class BlockingExecutor:
            async def execute(self, job):
                started.set()
                await asyncio.Event().wait()

        task = asyncio.create_task(queue.run_next(BlockingExecutor()))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        job = queue.get("a")
        assert job.status == JobStatus.QUEUED
        assert job.retry_count == 0

    async def test_nothing_eligible_returns_none(self, queue) -> None:
        """An empty queue runs nothing."""
        assert await queue.run_next(AsyncMock()) is None

    def test_expire_timed_out(self, queue, clock) -> None:
        """Jobs past their timeout are failed by expire_timed_out()."""
        queue.enqueue(_job("a", timeout_ms=1000))
        queue.next()
        clock.advance(seconds=2)

        (result,) = queue.expire_timed_out()
        assert result.requeued is True
        assert queue.get("a").last_error == "Timed out after 1000ms"


# =============================================================================
# Checkpoints
# =============================================================================


class TestCheckpoints:
    """Tests for checkpoint bookkeeping and resume decisions."""

    def test_progress_is_checkpointed(self, queue) -> None:
        """Progress updates are stored on the checkpoint."""
        queue.enqueue(_job("a"))
        queue.next()
        queue.mark_progress("a", 40, {"pages": 2})
        checkpoint = queue.checkpoints()[0]
        assert checkpoint.resume_data.progress == 40
        assert checkpoint.resume_data.partial_results == {"pages": 2}
        assert ProcessingQueue.decide_resume(checkpoint) == CheckpointDecision.RESUME

    def test_failed_checkpoints_are_resumable(self, queue) -> None:
        """A failed job leaves a checkpoint that can be reissued."""
        queue.enqueue(_job("a", max_retries=0))
        queue.next()
        with pytest.raises(TerminalError):
            queue.fail("a", "boom")
        (checkpoint,) = queue.resumable_checkpoints()
        assert checkpoint.error_recovery.last_error == "boom"
        assert ProcessingQueue.decide_resume(checkpoint) == CheckpointDecision.REISSUE

    def test_clear_completed_checkpoints(self, queue) -> None:
        """Completed checkpoints can be cleared."""
        queue.enqueue(_job("a"))
        queue.next()
        queue.complete("a")
        assert queue.clear_completed_checkpoints() == 1
        assert queue.checkpoints() == []

    def test_mark_progress_rejects_out_of_range(self, queue) -> None:
        """Progress outside 0-100 is rejected."""
        queue.enqueue(_job("a"))
        queue.next()
        with pytest.raises(ValidationError):
            queue.mark_progress("a", 140)
