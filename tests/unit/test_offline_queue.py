"""Tests for the offline action queue.

Covers:
- Replay order: dependencies dominate priority
- Bounded retries, fallbacks and permanent failures
- Connectivity and cancellation leave actions queued
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from cvsession.core.errors import TerminalError, ValidationError
from cvsession.models.offline import OfflineAction, OfflineActionType
from cvsession.services.offline_queue import OfflineActionQueue

_T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def _action(action_id: str, **kwargs) -> OfflineAction:
    kwargs.setdefault("timestamp", _T0)
    return OfflineAction(id=action_id, type=kwargs.pop("type", OfflineActionType.API_CALL), **kwargs)


class RecordingExecutor:
    """Executor that records calls and fails according to a script."""

    def __init__(self, failures: dict[str, list[Exception]] | None = None) -> None:
        self.calls: list[str] = []
        self._failures = failures or {}

    async def execute(self, action: OfflineAction) -> int:
        self.calls.append(action.id)
        pending = self._failures.get(action.id)
        if pending:
            raise pending.pop(0)
        return 10


class TestReplayOrder:
    """Tests for the order in which queued actions replay."""

    async def test_dependency_dominates_priority(self) -> None:
        """A dependency replays before its dependent whatever their priorities."""
        queue = OfflineActionQueue(online=False)
        queue.enqueue(_action("p3", priority=3))
        queue.enqueue(_action("p1", priority=1, dependencies=["p3"]))
        queue.enqueue(_action("p2", priority=2))

        queue.set_online(True)
        executor = RecordingExecutor()
        results = await queue.drain(executor)

        assert executor.calls == ["p2", "p3", "p1"]
        assert executor.calls.index("p3") < executor.calls.index("p1")
        assert all(r.success for r in results)
        assert len(queue) == 0

    async def test_equal_priority_replays_in_timestamp_order(self) -> None:
        """Equal-priority actions replay oldest first."""
        queue = OfflineActionQueue()
        queue.enqueue(_action("late", timestamp=_T0 + timedelta(seconds=5)))
        queue.enqueue(_action("early", timestamp=_T0))

        executor = RecordingExecutor()
        await queue.drain(executor)

        assert executor.calls == ["early", "late"]

    async def test_dependency_never_queued_counts_as_satisfied(self) -> None:
        """A dependency that was never queued does not block."""
        queue = OfflineActionQueue()
        queue.enqueue(_action("a", dependencies=["already-synced"]))
        executor = RecordingExecutor()
        await queue.drain(executor)
        assert executor.calls == ["a"]


class TestEnqueue:
    """Tests for enqueue()."""

    def test_offline_enqueue_marks_pending_network(self) -> None:
        """Network actions queued offline wait for the network."""
        queue = OfflineActionQueue(online=False)
        stored = queue.enqueue(_action("a"))
        assert stored.pending_network is True

    def test_offline_capable_action_is_not_pending_network(self) -> None:
        """Offline-capable actions are runnable without a network."""
        queue = OfflineActionQueue(online=False)
        stored = queue.enqueue(
            _action("a", requires_network=False, can_execute_offline=True)
        )
        assert stored.pending_network is False

    def test_duplicate_id_rejected(self) -> None:
        """An id that is already queued is rejected."""
        queue = OfflineActionQueue()
        queue.enqueue(_action("a"))
        with pytest.raises(ValidationError):
            queue.enqueue(_action("a"))


class TestRetries:
    """Tests for retry backoff, fallbacks and permanent failures."""

    async def test_failed_action_waits_for_backoff(self, clock) -> None:
        """A failed action is not retried until its backoff has elapsed."""
        queue = OfflineActionQueue(max_retries=3, base_delay_ms=1000, clock=clock)
        queue.enqueue(_action("a"))
        executor = RecordingExecutor({"a": [RuntimeError("timeout"), RuntimeError("timeout")]})

        assert await queue.drain(executor) == []
        (pending,) = queue.pending()
        assert pending.retry_count == 1
        assert pending.next_retry_at == clock.now + timedelta(seconds=1)

        clock.advance(milliseconds=999)
        assert await queue.drain(executor) == []
        assert executor.calls == ["a"]

        clock.advance(milliseconds=1)
        assert await queue.drain(executor) == []
        assert queue.pending()[0].next_retry_at == clock.now + timedelta(seconds=2)

        clock.advance(seconds=2)
        (result,) = await queue.drain(executor)

        assert result.success is True
        assert executor.calls == ["a", "a", "a"]

    async def test_attempts_are_spread_over_time(self, clock) -> None:
        """Each retry runs at a later clock instant than the one before."""
        queue = OfflineActionQueue(max_retries=3, clock=clock)
        queue.enqueue(_action("a"))
        seen: list = []

        class TimestampingExecutor:
            async def execute(self, action: OfflineAction) -> int:
                seen.append(clock.now)
                if len(seen) < 3:
                    raise RuntimeError("flaky")
                return 1

        executor = TimestampingExecutor()
        for _ in range(3):
            await queue.drain(executor)
            clock.advance(seconds=30)

        assert len(seen) == 3
        assert seen[0] < seen[1] < seen[2]

    def test_backoff_is_capped(self) -> None:
        """Backoff doubles per retry up to the configured cap."""
        queue = OfflineActionQueue(base_delay_ms=1000, max_delay_ms=5000)
        assert [queue.backoff_delay_ms(n) for n in range(5)] == [
            1000,
            2000,
            4000,
            5000,
            5000,
        ]

    async def test_exhausted_action_fails_permanently(self, clock) -> None:
        """The last allowed failure removes the action for good."""
        queue = OfflineActionQueue(max_retries=1, clock=clock)
        queue.enqueue(_action("a"))
        executor = RecordingExecutor({"a": [RuntimeError("e1"), RuntimeError("e2")]})

        await queue.drain(executor)
        clock.advance(minutes=1)
        (result,) = await queue.drain(executor)

        assert result.success is False
        assert result.permanent is True
        assert result.error == "e2"
        assert executor.calls == ["a", "a"]
        assert [f.action_id for f in queue.failures()] == ["a"]

    async def test_fallback_runs_once_after_exhaustion(self) -> None:
        """An exhausted action with a fallback succeeds through the fallback."""
        queue = OfflineActionQueue(max_retries=0)
        fallback = _action("a-fallback", type=OfflineActionType.STATE_UPDATE)
        queue.enqueue(_action("a", fallback_action=fallback))
        executor = RecordingExecutor({"a": [RuntimeError("upload rejected")]})

        (result,) = await queue.drain(executor)

        assert result.success is True
        assert result.used_fallback is True
        assert executor.calls == ["a", "a-fallback"]

    async def test_terminal_error_skips_retries(self) -> None:
        """TerminalError fails the action without spending its retry budget."""
        queue = OfflineActionQueue(max_retries=5)
        queue.enqueue(_action("a"))
        executor = RecordingExecutor({"a": [TerminalError("a", "forbidden")]})

        (result,) = await queue.drain(executor)

        assert result.permanent is True
        assert executor.calls == ["a"]

    async def test_dependents_of_failed_action_fail(self) -> None:
        """Actions depending on a permanently failed action fail with it."""
        queue = OfflineActionQueue(max_retries=0)
        queue.enqueue(_action("parent"))
        queue.enqueue(_action("child", dependencies=["parent"]))
        executor = RecordingExecutor({"parent": [RuntimeError("boom")]})

        results = await queue.drain(executor)

        assert {r.action_id: r.success for r in results} == {
            "parent": False,
            "child": False,
        }
        assert executor.calls == ["parent"]


class TestBookkeeping:
    """Tests for the bounded success and failure records."""

    async def test_failure_history_keeps_most_recent(self) -> None:
        """Only the configured number of permanent failures is retained."""
        queue = OfflineActionQueue(max_retries=0, failure_history=2)
        for action_id in ("a", "b", "c"):
            queue.enqueue(_action(action_id))
        executor = RecordingExecutor(
            {action_id: [RuntimeError("boom")] for action_id in ("a", "b", "c")}
        )

        await queue.drain(executor)

        assert [f.action_id for f in queue.failures()] == ["b", "c"]

    async def test_succeeded_ids_are_released_once_unneeded(self) -> None:
        """Success records are dropped when no queued action depends on them."""
        queue = OfflineActionQueue()
        queue.enqueue(_action("parent"))
        queue.enqueue(_action("child", dependencies=["parent"]))

        await queue.drain(RecordingExecutor())

        assert queue._succeeded == set()

    async def test_later_dependent_of_released_success_still_runs(self) -> None:
        """A dependency that already succeeded does not block new actions."""
        queue = OfflineActionQueue()
        queue.enqueue(_action("parent"))
        await queue.drain(RecordingExecutor())

        queue.enqueue(_action("child", dependencies=["parent"]))
        executor = RecordingExecutor()
        (result,) = await queue.drain(executor)

        assert result.success is True
        assert executor.calls == ["child"]


class TestConnectivity:
    """Tests for connectivity changes and cancellation during replay."""

    async def test_offline_drain_only_runs_offline_capable_actions(self) -> None:
        """While offline only offline-capable actions run."""
        queue = OfflineActionQueue(online=False)
        queue.enqueue(_action("net"))
        queue.enqueue(_action("local", requires_network=False, can_execute_offline=True))

        executor = RecordingExecutor()
        await queue.drain(executor)

        assert executor.calls == ["local"]
        assert [a.id for a in queue.pending()] == ["net"]

    async def test_going_offline_mid_retry_leaves_action_queued(self) -> None:
        """A failure after losing the network keeps the action queued."""
        queue = OfflineActionQueue(max_retries=3)
        queue.enqueue(_action("a"))

        class DisconnectingExecutor:
            calls = 0

            async def execute(self, action):
                DisconnectingExecutor.calls += 1
                queue.set_online(False)
                raise RuntimeError("network down")

        results = await queue.drain(DisconnectingExecutor())

        assert results == []
        (pending,) = queue.pending()
        assert pending.id == "a"
        assert pending.retry_count == 1
        assert DisconnectingExecutor.calls == 1

    async def test_cancelled_drain_keeps_action_queued(self) -> None:
        """Cancelling a drain keeps the in-flight action without charging a retry."""
        queue = OfflineActionQueue()
        queue.enqueue(_action("a"))
        started = asyncio.Event()

        class BlockingExecutor:
            async def execute(self, action):
                started.set()
                await asyncio.Event().wait()

        task = asyncio.create_task(queue.drain(BlockingExecutor()))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        (pending,) = queue.pending()
        assert pending.retry_count == 0
