"""Repository and persistence adapter for session documents.

SessionDocumentRepository holds the table operations; SqlSessionPersistence
implements the SessionPersistence contract on top of it. A write only lands
when the stored sync_version still equals the version the writer based its
change on.
"""

import asyncio
from typing import Any, cast

import structlog
from sqlalchemy import update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvsession.core.database import create_session_factory
from cvsession.models.document import SessionDocument
from cvsession.models.session import EnhancedSessionState
from cvsession.services.persistence import (
    PutResult,
    RemoteChangeCallback,
    SessionPersistence,
    StoredSession,
    Unsubscribe,
)

logger = structlog.get_logger()


class SessionDocumentRepository:
    """Stateless repository for session_documents table operations.

    All methods are static. Pass an AsyncSession for every call so the
    caller controls transaction boundaries.
    """

    @staticmethod
    async def get(db: AsyncSession, session_id: str) -> SessionDocument | None:
        """Fetch a session document by primary key.

        Returns:
            SessionDocument if found, None otherwise.
        """
        return await db.get(SessionDocument, session_id)

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        session_id: str,
        state: dict[str, Any],
        user_id: str | None = None,
    ) -> SessionDocument:
        """Insert a new document at sync_version 1.

        Raises:
            sqlalchemy.exc.IntegrityError: If the session id already exists.
        """
        document = SessionDocument(
            session_id=session_id,
            user_id=user_id,
            sync_version=1,
            state=state,
        )
        db.add(document)
        await db.flush()
        await db.refresh(document)
        return document

    @staticmethod
    async def compare_and_set(
        db: AsyncSession,
        *,
        session_id: str,
        expected_sync_version: int,
        state: dict[str, Any],
        user_id: str | None = None,
    ) -> int | None:
        """Replace the document if its version still matches.

        Uses WHERE sync_version = :expected so concurrent writers cannot
        overwrite each other.

        Returns:
            The new sync_version, or None if the version moved on or the
            document does not exist.
        """
        stmt = (
            update(SessionDocument)
            .where(
                SessionDocument.session_id == session_id,
                SessionDocument.sync_version == expected_sync_version,
            )
            .values(
                state=state,
                user_id=user_id,
                sync_version=SessionDocument.sync_version + 1,
            )
            .returning(SessionDocument.sync_version)
        )
        result = cast(CursorResult[Any], await db.execute(stmt))
        new_version: int | None = result.scalar_one_or_none()
        return new_version


class SqlSessionPersistence(SessionPersistence):
    """SessionPersistence backed by the session_documents table.

    Remote change callbacks fire for writes made through this adapter
    instance and for documents found newer by refresh().

    Args:
        session_factory: Async session factory for DB access. Defaults to
            a factory bound to the configured database.
    """

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._session_factory = session_factory or create_session_factory()
        self._subscribers: dict[str, list[RemoteChangeCallback]] = {}
        self._seen_versions: dict[str, int] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    async def get(self, session_id: str) -> StoredSession | None:
        async with self._session_factory() as db:
            document = await SessionDocumentRepository.get(db, session_id)
        if document is None:
            return None
        return self._to_stored(document)

    async def put(
        self,
        session_id: str,
        state: EnhancedSessionState,
        expected_sync_version: int,
    ) -> PutResult:
        payload = state.model_dump(mode="json")
        async with self._session_factory() as db:
            try:
                if expected_sync_version == 0:
                    await SessionDocumentRepository.create(
                        db, session_id=session_id, state=payload, user_id=state.user_id
                    )
                    new_version: int | None = 1
                else:
                    new_version = await SessionDocumentRepository.compare_and_set(
                        db,
                        session_id=session_id,
                        expected_sync_version=expected_sync_version,
                        state=payload,
                        user_id=state.user_id,
                    )
                if new_version is None:
                    await db.rollback()
                else:
                    await db.commit()
            except IntegrityError:
                await db.rollback()
                new_version = None

        if new_version is None:
            remote = await self.get(session_id)
            logger.info(
                "session_write_rejected",
                session_id=session_id,
                expected_sync_version=expected_sync_version,
                remote_sync_version=remote.sync_version if remote else 0,
            )
            return PutResult(
                ok=False,
                sync_version=remote.sync_version if remote else 0,
                remote=remote,
            )

        stored = StoredSession(state=state.model_copy(deep=True), sync_version=new_version)
        self._publish(session_id, stored)
        return PutResult(ok=True, sync_version=new_version)

    def subscribe_remote_changes(
        self, session_id: str, callback: RemoteChangeCallback
    ) -> Unsubscribe:
        callbacks = self._subscribers.setdefault(session_id, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    async def refresh(self, session_id: str) -> StoredSession | None:
        """Re-read a document and notify subscribers if another process moved it on.

        Returns:
            The stored session when it was newer than the last one seen.
        """
        stored = await self.get(session_id)
        if stored is None or stored.sync_version <= self._seen_versions.get(
            session_id, 0
        ):
            return None
        self._publish(session_id, stored)
        return stored

    @staticmethod
    def _to_stored(document: SessionDocument) -> StoredSession:
        return StoredSession(
            state=EnhancedSessionState.model_validate(document.state),
            sync_version=document.sync_version,
        )

    def _publish(self, session_id: str, stored: StoredSession) -> None:
        self._seen_versions[session_id] = max(
            self._seen_versions.get(session_id, 0), stored.sync_version
        )
        for callback in list(self._subscribers.get(session_id, [])):
            snapshot = StoredSession(
                state=stored.state.model_copy(deep=True),
                sync_version=stored.sync_version,
            )
            task = asyncio.get_running_loop().create_task(callback(snapshot))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
