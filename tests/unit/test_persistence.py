"""Tests for the in-memory persistence collaborator."""

import asyncio
from unittest.mock import AsyncMock

from cvsession.models.session import EnhancedSessionState
from cvsession.services.persistence import InMemorySessionPersistence


class TestInMemorySessionPersistence:
    """Tests for the versioned in-memory document store."""

    async def test_versions_start_at_one_and_increase(self, persistence) -> None:
        """The first write is version 1 and each accepted write increments it."""
        state = EnhancedSessionState(session_id="s1")

        first = await persistence.put("s1", state, 0)
        second = await persistence.put("s1", state, 1)

        assert (first.ok, first.sync_version) == (True, 1)
        assert (second.ok, second.sync_version) == (True, 2)

    async def test_version_mismatch_returns_remote(self, persistence) -> None:
        """A stale write is refused and returns the stored document."""
        await persistence.put("s1", EnhancedSessionState(session_id="s1", job_id="j1"), 0)

        result = await persistence.put("s1", EnhancedSessionState(session_id="s1"), 0)

        assert result.ok is False
        assert result.sync_version == 1
        assert result.remote.state.job_id == "j1"

    async def test_stored_documents_are_copies(self, persistence) -> None:
        """Writers and readers cannot mutate the stored document."""
        state = EnhancedSessionState(session_id="s1")
        await persistence.put("s1", state, 0)
        state.job_id = "changed-after-write"

        stored = await persistence.get("s1")
        stored.state.user_id = "changed-after-read"

        again = await persistence.get("s1")
        assert again.state.job_id is None
        assert again.state.user_id is None

    async def test_get_missing_returns_none(self) -> None:
        """Reading an unknown session returns None."""
        assert await InMemorySessionPersistence().get("missing") is None

    async def test_subscribers_are_notified_after_write(self, persistence) -> None:
        """Subscribers hear about writes on the next loop tick until unsubscribed."""
        callback = AsyncMock()
        unsubscribe = persistence.subscribe_remote_changes("s1", callback)

        await persistence.put("s1", EnhancedSessionState(session_id="s1"), 0)
        callback.assert_not_awaited()
        await asyncio.sleep(0)
        callback.assert_awaited_once()

        unsubscribe()
        await persistence.put("s1", EnhancedSessionState(session_id="s1"), 1)
        await asyncio.sleep(0)
        callback.assert_awaited_once()
