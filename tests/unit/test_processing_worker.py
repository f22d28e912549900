"""Tests for the processing worker lifecycle and passes."""

from unittest.mock import AsyncMock, MagicMock, patch

from cvsession.core.config import settings
from cvsession.models.processing import JobType, ProcessingJob
from cvsession.services.processing_worker import ProcessingWorker


class TestWorkerLifecycle:
    """Tests for ProcessingWorker start/stop."""

    async def test_start_sets_running(self) -> None:
        """Start flips the running flag."""
        worker = ProcessingWorker(MagicMock(), AsyncMock(), interval_seconds=60)

        with patch.object(worker, "_run_loop", new_callable=AsyncMock):
            worker.start()
            assert worker.is_running is True
            await worker.stop()

    async def test_stop_clears_running(self) -> None:
        """Stop clears the running flag."""
        worker = ProcessingWorker(MagicMock(), AsyncMock(), interval_seconds=60)

        with patch.object(worker, "_run_loop", new_callable=AsyncMock):
            worker.start()
            await worker.stop()
            assert worker.is_running is False

    async def test_start_is_idempotent(self) -> None:
        """A second start does not launch another loop."""
        worker = ProcessingWorker(MagicMock(), AsyncMock(), interval_seconds=60)

        with patch.object(worker, "_run_loop", new_callable=AsyncMock) as loop:
            worker.start()
            worker.start()  # Second call should be no-op
            assert worker.is_running is True
            await worker.stop()

        loop.assert_called_once()

    async def test_stop_without_start_is_safe(self) -> None:
        """Stopping a worker that never started is a no-op."""
        worker = ProcessingWorker(MagicMock(), AsyncMock(), interval_seconds=60)
        await worker.stop()  # Should not raise

    async def test_default_interval(self) -> None:
        """The poll interval defaults to the configured value."""
        worker = ProcessingWorker(MagicMock(), AsyncMock())
        assert worker._interval_seconds == settings.worker_poll_interval_seconds


class TestWorkerRunOnce:
    """Tests for ProcessingWorker.run_once()."""

    async def test_run_once_drains_every_session(self, store) -> None:
        """One pass runs every eligible job in every loaded session."""
        await store.create("s1")
        await store.create("s2")
        await store.enqueue_job("s1", ProcessingJob(id="ok", type=JobType.ANALYSIS))
        await store.enqueue_job(
            "s1",
            ProcessingJob(id="flaky", type=JobType.DATA_EXTRACTION, max_retries=1),
        )
        await store.enqueue_job(
            "s2",
            ProcessingJob(id="broken", type=JobType.CV_PROCESSING, max_retries=0),
        )

        async def execute(job):
            if job.id != "ok":
                raise RuntimeError(f"{job.id} failed")
            return {"done": True}

        executor = AsyncMock()
        executor.execute.side_effect = execute
        worker = ProcessingWorker(store, executor, interval_seconds=60)

        result = await worker.run_once()

        assert result.jobs_completed == 1
        assert result.jobs_requeued == 1
        assert result.jobs_failed == 1
        assert worker.last_run_at == result.finished_at
        assert [f.job_id for f in store.job_failures("s2")] == ["broken"]

    async def test_run_once_only_serves_given_sessions(self, store) -> None:
        """A worker scoped to sessions leaves the others alone."""
        await store.create("s1")
        await store.create("s2")
        await store.enqueue_job("s2", ProcessingJob(id="j", type=JobType.ANALYSIS))
        executor = AsyncMock()
        worker = ProcessingWorker(store, executor, session_ids=["s1"])

        result = await worker.run_once()

        assert result.jobs_completed == 0
        executor.execute.assert_not_called()
