"""Offline action queue.

Buffers actions issued while disconnected and replays them on reconnect.

Replay order: among actions whose queued dependencies have all succeeded,
the lowest priority number runs first, then the earliest timestamp. A
dependency always runs before its dependents regardless of priority.

Retry policy: a failed action stays queued with next_retry_at set by
deterministic exponential backoff, min(base * 2**retry_count, cap), and is
skipped by drain() until that time has passed.

Every action ends in exactly one of three states: acknowledged (removed),
permanently failed (removed and listed in failures()), or still queued.
"""

import asyncio
import itertools
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog

from cvsession.core.config import settings
from cvsession.core.errors import TerminalError, ValidationError
from cvsession.models.offline import OfflineAction, SyncResult

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ActionExecutor(Protocol):
    """Collaborator that performs an offline action against the backend."""

    async def execute(self, action: OfflineAction) -> int:
        """Run the action and return the number of bytes transferred.

        Raising TerminalError marks the action permanently failed.
        """
        ...


class OfflineActionQueue:
    """Priority- and dependency-ordered replay buffer.

    Args:
        online: Initial connectivity.
        max_retries: Default retry budget for actions that do not set one.
        base_delay_ms: Backoff before the first retry.
        max_delay_ms: Backoff cap.
        failure_history: Permanent failures kept for failures().
        clock: Source of the current time.
    """

    def __init__(
        self,
        *,
        online: bool = True,
        max_retries: int | None = None,
        base_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        failure_history: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._online = online
        self._max_retries = (
            settings.offline_max_retries if max_retries is None else max_retries
        )
        self._base_delay_ms = (
            settings.offline_retry_base_delay_ms
            if base_delay_ms is None
            else base_delay_ms
        )
        self._max_delay_ms = (
            settings.offline_retry_max_delay_ms if max_delay_ms is None else max_delay_ms
        )
        self._failure_history = (
            settings.offline_failure_history
            if failure_history is None
            else failure_history
        )
        self._clock = clock or _utcnow
        self._actions: dict[str, OfflineAction] = {}
        self._order: dict[str, int] = {}
        self._sequence = itertools.count()
        # Only ids that a queued action still depends on are kept.
        self._succeeded: set[str] = set()
        self._failed: dict[str, SyncResult] = {}

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Update connectivity. Going offline stops a running drain between actions."""
        self._online = online
        if online:
            for action in self._actions.values():
                action.pending_network = False

    def enqueue(self, action: OfflineAction) -> OfflineAction:
        """Queue an action. Never rejects for lack of connectivity.

        Raises:
            ValidationError: If an action with the same id is already queued.
        """
        if action.id in self._actions:
            raise ValidationError(f"Offline action '{action.id}' is already queued")
        stored = action.model_copy(deep=True)
        if stored.max_retries is None:
            stored.max_retries = self._max_retries
        stored.pending_network = not self._online and not self._runs_offline(stored)
        self._actions[stored.id] = stored
        self._order[stored.id] = next(self._sequence)
        logger.debug(
            "offline_action_queued",
            action_id=stored.id,
            action_type=stored.type.value,
            pending_network=stored.pending_network,
        )
        return stored.model_copy(deep=True)

    def pending(self) -> list[OfflineAction]:
        """Copies of the queued actions in replay-priority order."""
        return [
            action.model_copy(deep=True)
            for action in sorted(self._actions.values(), key=self._sort_key)
        ]

    def failures(self) -> list[SyncResult]:
        """Most recent permanent failures, oldest first."""
        return [result.model_copy() for result in self._failed.values()]

    def __len__(self) -> int:
        return len(self._actions)

    async def drain(self, executor: ActionExecutor) -> list[SyncResult]:
        """Replay queued actions until none is ready.

        A failed action stays queued until its backoff has elapsed, so a
        later drain retries it. An exhausted action runs its fallback once,
        if it has one. While offline, only actions that can run offline are
        attempted.

        Returns:
            One final SyncResult per action that left the queue.

        Raises:
            asyncio.CancelledError: If the draining task is cancelled. The
                in-flight action stays queued and is not counted as a retry.
        """
        results: list[SyncResult] = []
        while True:
            results.extend(self._fail_orphaned_dependents())
            action = self._next_ready()
            if action is None:
                break
            result = await self._replay(action, executor)
            if result is not None:
                results.append(result)
        if results:
            logger.info(
                "offline_queue_drained",
                replayed=len(results),
                succeeded=sum(1 for r in results if r.success),
                remaining=len(self._actions),
            )
        return results

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def backoff_delay_ms(self, retry_count: int) -> int:
        """Delay before the attempt following retry_count earlier failures."""
        return min(self._base_delay_ms * 2**retry_count, self._max_delay_ms)

    @staticmethod
    def _runs_offline(action: OfflineAction) -> bool:
        return action.can_execute_offline and not action.requires_network

    def _sort_key(self, action: OfflineAction) -> tuple[int, datetime, int]:
        return (action.priority, action.timestamp, self._order[action.id])

    def _dependency_done(self, dep: str) -> bool:
        # Dependencies that were never queued are treated as satisfied.
        return dep in self._succeeded or (
            dep not in self._actions and dep not in self._failed
        )

    def _next_ready(self) -> OfflineAction | None:
        now = self._clock()
        ready = [
            action
            for action in self._actions.values()
            if (self._online or self._runs_offline(action))
            and (action.next_retry_at is None or action.next_retry_at <= now)
            and all(self._dependency_done(dep) for dep in action.dependencies)
        ]
        if not ready:
            return None
        return min(ready, key=self._sort_key)

    def _fail_orphaned_dependents(self) -> list[SyncResult]:
        results: list[SyncResult] = []
        changed = True
        while changed:
            changed = False
            for action in list(self._actions.values()):
                failed_deps = [dep for dep in action.dependencies if dep in self._failed]
                if failed_deps:
                    results.append(
                        self._fail_permanently(
                            action, f"Dependency failed: {', '.join(failed_deps)}"
                        )
                    )
                    changed = True
        return results

    async def _replay(
        self, action: OfflineAction, executor: ActionExecutor
    ) -> SyncResult | None:
        max_retries = action.max_retries if action.max_retries is not None else 0
        try:
            transferred = await executor.execute(action.model_copy(deep=True))
        except asyncio.CancelledError:
            logger.info("offline_drain_cancelled", action_id=action.id)
            raise
        except TerminalError as e:
            action.last_error = e.last_error
            return await self._exhausted(action, executor)
        except Exception as e:  # noqa: BLE001
            action.retry_count += 1
            action.last_error = str(e) or type(e).__name__
            if action.retry_count > max_retries:
                logger.warning(
                    "offline_action_failed",
                    action_id=action.id,
                    attempt=action.retry_count,
                    max_attempts=max_retries + 1,
                    error=action.last_error,
                )
                return await self._exhausted(action, executor)
            delay_ms = self.backoff_delay_ms(action.retry_count - 1)
            action.next_retry_at = self._clock() + timedelta(milliseconds=delay_ms)
            logger.warning(
                "offline_action_failed",
                action_id=action.id,
                attempt=action.retry_count,
                max_attempts=max_retries + 1,
                error=action.last_error,
                retry_in_ms=delay_ms,
            )
            return None
        return self._succeed(action, transferred)

    async def _exhausted(
        self, action: OfflineAction, executor: ActionExecutor
    ) -> SyncResult:
        fallback = action.fallback_action
        if fallback is None:
            return self._fail_permanently(action, action.last_error or "unknown error")
        try:
            transferred = await executor.execute(fallback.model_copy(deep=True))
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            return self._fail_permanently(
                action,
                f"{action.last_error}; fallback failed: {str(e) or type(e).__name__}",
                used_fallback=True,
            )
        logger.info("offline_fallback_succeeded", action_id=action.id)
        return self._succeed(action, transferred, used_fallback=True)

    def _succeed(
        self, action: OfflineAction, transferred: int, *, used_fallback: bool = False
    ) -> SyncResult:
        self._remove(action.id)
        self._succeeded.add(action.id)
        self._prune_succeeded()
        return SyncResult(
            action_id=action.id,
            success=True,
            used_fallback=used_fallback,
            synced_at=self._clock(),
            data_transferred=transferred or 0,
        )

    def _fail_permanently(
        self, action: OfflineAction, error: str, *, used_fallback: bool = False
    ) -> SyncResult:
        self._remove(action.id)
        result = SyncResult(
            action_id=action.id,
            success=False,
            error=error,
            permanent=True,
            used_fallback=used_fallback,
            synced_at=self._clock(),
        )
        self._failed[action.id] = result
        self._prune_succeeded()
        while len(self._failed) > self._failure_history:
            del self._failed[next(iter(self._failed))]
        logger.error("offline_action_abandoned", action_id=action.id, error=error)
        return result

    def _remove(self, action_id: str) -> None:
        self._actions.pop(action_id, None)
        self._order.pop(action_id, None)

    def _prune_succeeded(self) -> None:
        needed = {dep for action in self._actions.values() for dep in action.dependencies}
        self._succeeded &= needed
