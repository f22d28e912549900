"""Persistence contract for session documents.

The engine treats the backend as a document store keyed by session id, with
a sync_version integer used for optimistic concurrency:

- get(session_id) -> StoredSession | None
- put(session_id, state, expected_sync_version) -> PutResult
- subscribe_remote_changes(session_id, callback) -> unsubscribe

InMemorySessionPersistence is the reference implementation used by tests and
local mode. The SQL implementation lives in
cvsession.repositories.session_document_repository.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from cvsession.models.session import EnhancedSessionState

logger = structlog.get_logger()


@dataclass(frozen=True)
class StoredSession:
    """A session document as stored remotely.

    Attributes:
        state: The stored session aggregate.
        sync_version: Version of the stored document. Starts at 1.
    """

    state: EnhancedSessionState
    sync_version: int


@dataclass(frozen=True)
class PutResult:
    """Outcome of an optimistic-concurrency write.

    Attributes:
        ok: The write was accepted.
        sync_version: Version after the write, or the current remote version
            when rejected.
        remote: Current remote document when the write was rejected because
            the remote version moved on.
    """

    ok: bool
    sync_version: int
    remote: StoredSession | None = None


RemoteChangeCallback = Callable[[StoredSession], Awaitable[None]]
Unsubscribe = Callable[[], None]


class SessionPersistence(ABC):
    """Document store collaborator for session state."""

    @abstractmethod
    async def get(self, session_id: str) -> StoredSession | None:
        """Fetch a session document.

        Returns:
            The stored session, or None when it does not exist.
        """
        ...

    @abstractmethod
    async def put(
        self,
        session_id: str,
        state: EnhancedSessionState,
        expected_sync_version: int,
    ) -> PutResult:
        """Write a session document if the remote version still matches.

        Args:
            session_id: Document key.
            state: Full session aggregate to store.
            expected_sync_version: Version the write is based on. 0 creates a
                new document.

        Returns:
            PutResult with ok=False and the remote document on a version
            mismatch.
        """
        ...

    @abstractmethod
    def subscribe_remote_changes(
        self, session_id: str, callback: RemoteChangeCallback
    ) -> Unsubscribe:
        """Register a callback for documents written by any writer.

        Returns:
            Function that removes the subscription.
        """
        ...


class InMemorySessionPersistence(SessionPersistence):
    """In-process document store with optimistic concurrency.

    Subscribers are notified from separate tasks after each accepted write,
    so a writer's own callback never runs inside its put().
    """

    def __init__(self) -> None:
        self._documents: dict[str, StoredSession] = {}
        self._subscribers: dict[str, list[RemoteChangeCallback]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    async def get(self, session_id: str) -> StoredSession | None:
        stored = self._documents.get(session_id)
        if stored is None:
            return None
        return StoredSession(
            state=stored.state.model_copy(deep=True),
            sync_version=stored.sync_version,
        )

    async def put(
        self,
        session_id: str,
        state: EnhancedSessionState,
        expected_sync_version: int,
    ) -> PutResult:
        current = self._documents.get(session_id)
        current_version = current.sync_version if current else 0
        if current_version != expected_sync_version:
            return PutResult(
                ok=False,
                sync_version=current_version,
                remote=await self.get(session_id),
            )

        stored = StoredSession(
            state=state.model_copy(deep=True),
            sync_version=current_version + 1,
        )
        self._documents[session_id] = stored
        self._notify(session_id, stored)
        return PutResult(ok=True, sync_version=stored.sync_version)

    def subscribe_remote_changes(
        self, session_id: str, callback: RemoteChangeCallback
    ) -> Unsubscribe:
        callbacks = self._subscribers.setdefault(session_id, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _notify(self, session_id: str, stored: StoredSession) -> None:
        for callback in list(self._subscribers.get(session_id, [])):
            snapshot = StoredSession(
                state=stored.state.model_copy(deep=True),
                sync_version=stored.sync_version,
            )
            task = asyncio.get_running_loop().create_task(callback(snapshot))
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "remote_change_callback_failed",
                error=str(task.exception()),
            )
