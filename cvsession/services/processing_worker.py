"""Processing queue background worker.

Drains the processing queues of loaded sessions on a polling interval.
Each pass expires timed-out jobs, then runs eligible jobs until none is
left for any session.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from cvsession.core.config import settings
from cvsession.services.processing_queue import JobExecutor
from cvsession.services.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class WorkerPassResult:
    """Statistics for one worker pass.

    Attributes:
        jobs_completed: Jobs that finished successfully.
        jobs_requeued: Jobs that failed and were scheduled for a retry.
        jobs_failed: Jobs that failed for good.
        started_at: Start of the pass.
        finished_at: End of the pass.
    """

    jobs_completed: int = 0
    jobs_requeued: int = 0
    jobs_failed: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None


class ProcessingWorker:
    """Background worker that runs queued processing jobs.

    Lifecycle:
    - start() creates an asyncio task that runs the polling loop.
    - stop() cancels the task and waits for it; an interrupted job goes
      back to its queue without using a retry.
    - run_once() executes a single pass (for testing).

    Args:
        store: Session store whose queues are drained.
        executor: Backend collaborator that performs the jobs.
        session_ids: Sessions to serve. Defaults to every loaded session.
        interval_seconds: Seconds between passes.
    """

    def __init__(
        self,
        store: SessionStore,
        executor: JobExecutor,
        *,
        session_ids: list[str] | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._session_ids = session_ids
        self._interval_seconds = (
            settings.worker_poll_interval_seconds
            if interval_seconds is None
            else interval_seconds
        )
        self._task: asyncio.Task[None] | None = None
        self._last_run_at: datetime | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the background task is currently active."""
        return self._running and self._task is not None and not self._task.done()

    @property
    def last_run_at(self) -> datetime | None:
        """Timestamp of the most recent completed pass."""
        return self._last_run_at

    def start(self) -> None:
        """Start the background loop.

        No-op if already running. Must be called with a running event loop.
        """
        if self.is_running:
            logger.warning("Processing worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Processing worker started (interval=%ss)", self._interval_seconds)

    async def stop(self) -> None:
        """Stop the background loop and wait for it to finish."""
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("Processing worker stopped")

    async def run_once(self) -> WorkerPassResult:
        """Run every eligible job of the served sessions once.

        Returns:
            WorkerPassResult with statistics from the pass.
        """
        result = WorkerPassResult()
        session_ids = (
            self._session_ids
            if self._session_ids is not None
            else self._store.session_ids()
        )
        for session_id in session_ids:
            for expired in await self._store.expire_timed_out_jobs(session_id):
                self._count(result, expired.succeeded, expired.requeued)
            while True:
                run = await self._store.run_next_job(session_id, self._executor)
                if run is None:
                    break
                self._count(result, run.succeeded, run.requeued)
        result.finished_at = datetime.now(UTC)
        self._last_run_at = result.finished_at
        return result

    @staticmethod
    def _count(result: WorkerPassResult, succeeded: bool, requeued: bool) -> None:
        if succeeded:
            result.jobs_completed += 1
        elif requeued:
            result.jobs_requeued += 1
        else:
            result.jobs_failed += 1

    async def _run_loop(self) -> None:
        """Background loop: run_once -> sleep -> repeat."""
        try:
            while self._running:
                try:
                    result = await self.run_once()
                    if result.jobs_completed or result.jobs_requeued or result.jobs_failed:
                        logger.info(
                            "Processing pass: %d completed, %d requeued, %d failed",
                            result.jobs_completed,
                            result.jobs_requeued,
                            result.jobs_failed,
                        )
                except Exception:  # noqa: BLE001
                    logger.exception("Error in processing pass")
                await asyncio.sleep(self._interval_seconds)
        except asyncio.CancelledError:
            logger.debug("Processing loop cancelled")
            raise
