"""Tests for the sync engine.

Covers:
- Conflict resolution closure for local_wins / remote_wins
- Merge strategy: non-overlapping changes, list union, escalation
- Deferred user_choice conflicts and external resolution
- Bounded push attempts, offline behaviour and presence
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from cvsession.core.errors import ConflictError, ValidationError
from cvsession.models.session import EnhancedSessionState
from cvsession.models.steps import CVStep
from cvsession.models.sync import (
    ChangeType,
    PresenceStatus,
    ResolutionStrategy,
    StateChange,
    SyncState,
    UserPresence,
)
from cvsession.services.persistence import (
    InMemorySessionPersistence,
    PutResult,
    StoredSession,
)
from cvsession.services.sync_engine import SyncEngine, merge3

_SESSION_ID = "s1"


def _change(path: str, value) -> StateChange:
    return StateChange(
        session_id=_SESSION_ID,
        change_type=ChangeType.UPDATE,
        path=path,
        new_value=value,
    )


async def _setup(
    strategy: ResolutionStrategy, persistence=None, clock=None
) -> tuple[InMemorySessionPersistence, SyncEngine, EnhancedSessionState]:
    persistence = persistence or InMemorySessionPersistence()
    base = EnhancedSessionState(session_id=_SESSION_ID, user_id="u1")
    result = await persistence.put(_SESSION_ID, base, 0)
    engine = SyncEngine(
        _SESSION_ID, persistence, strategy=strategy, local_user_id="u1", clock=clock
    )
    engine.initialize(base, result.sync_version)
    return persistence, engine, base


async def _remote_write(persistence, base: EnhancedSessionState, **form_updates) -> None:
    remote = base.model_copy(deep=True)
    for key, value in form_updates.items():
        setattr(remote.form_data, key, value)
    stored = await persistence.get(_SESSION_ID)
    result = await persistence.put(_SESSION_ID, remote, stored.sync_version)
    assert result.ok


def _local_edit(engine: SyncEngine, base: EnhancedSessionState, **form_updates) -> EnhancedSessionState:
    local = base.model_copy(deep=True)
    for key, value in form_updates.items():
        setattr(local.form_data, key, value)
        engine.record_local(_change(f"form_data.{key}", value))
    return local


# =============================================================================
# Strategy closure
# =============================================================================


class TestConflictResolutionClosure:
    """Tests that every automatic strategy ends without open conflicts."""

    async def test_local_wins_ends_synced_with_local_value(self) -> None:
        """local_wins pushes the local value over a remote edit."""
        persistence, engine, base = await _setup(ResolutionStrategy.LOCAL_WINS)
        local = _local_edit(engine, base, target_role="Engineer")
        await _remote_write(persistence, base, target_role="Designer")

        outcome = await engine.push(local)

        assert outcome.pushed is True
        assert engine.status.status == SyncState.SYNCED
        assert engine.status.conflicts == []
        stored = await persistence.get(_SESSION_ID)
        assert stored.state.form_data.target_role == "Engineer"
        assert stored.sync_version == 3
        (resolution,) = engine.resolved_conflicts()
        assert resolution.path == "form_data.target_role"
        assert resolution.local_value == "Engineer"
        assert resolution.remote_value == "Designer"

    async def test_remote_wins_ends_synced_with_remote_value(self) -> None:
        """remote_wins adopts the remote value and drops the local edit."""
        persistence, engine, base = await _setup(ResolutionStrategy.REMOTE_WINS)
        local = _local_edit(engine, base, target_role="Engineer")
        await _remote_write(persistence, base, target_role="Designer")

        outcome = await engine.push(local)

        assert engine.status.status == SyncState.SYNCED
        assert engine.status.conflicts == []
        assert engine.pending_changes() == []
        assert outcome.state.form_data.target_role == "Designer"
        assert engine.sync_version == 2


# =============================================================================
# Merge strategy
# =============================================================================


class TestMergeStrategy:
    """Tests for the merge and user_choice strategies."""

    async def test_non_overlapping_changes_are_both_kept(self) -> None:
        """Edits to different paths are both kept."""
        persistence, engine, base = await _setup(ResolutionStrategy.MERGE)
        local = _local_edit(engine, base, target_role="Engineer")
        await _remote_write(persistence, base, job_description="Build things")

        outcome = await engine.push(local)

        assert outcome.pushed is True
        assert outcome.resolutions == []
        stored = await persistence.get(_SESSION_ID)
        assert stored.state.form_data.target_role == "Engineer"
        assert stored.state.form_data.job_description == "Build things"
        assert [c.path for c in outcome.remote_changes] == ["form_data.job_description"]

    async def test_divergent_scalar_is_deferred_to_user(self) -> None:
        """Conflicting scalar edits wait for the user and block pushes."""
        persistence, engine, base = await _setup(ResolutionStrategy.MERGE)
        local = _local_edit(engine, base, target_role="Engineer")
        await _remote_write(persistence, base, target_role="Designer")

        outcome = await engine.push(local)

        assert outcome.pushed is False
        status = engine.status
        assert status.status == SyncState.CONFLICTED
        (conflict,) = status.conflicts
        assert conflict.strategy == ResolutionStrategy.USER_CHOICE
        assert conflict.is_resolved is False

        # Pushes are blocked until the conflict is resolved
        assert (await engine.push(outcome.state)).pushed is False

        resolved = engine.resolve_conflict(conflict.conflict_id, "Designer", "u1")
        assert resolved.resolved_by == "u1"
        assert engine.status.conflicts == []
        assert engine.status.status == SyncState.SYNCED

    async def test_resolving_unknown_conflict_raises(self) -> None:
        """Resolving an unknown conflict id is a validation error."""
        _, engine, _ = await _setup(ResolutionStrategy.USER_CHOICE)
        with pytest.raises(ValidationError):
            engine.resolve_conflict("missing", "x", "u1")


class TestMerge3:
    """Tests for the three-way value merge."""

    def test_list_union_honours_both_sides(self) -> None:
        """Items added on either side are kept."""
        merged, ok = merge3(["upload"], ["upload", "processing"], ["upload", "keywords"])
        assert ok is True
        assert merged == ["upload", "keywords", "processing"]

    def test_list_deletion_is_kept(self) -> None:
        """An item removed on one side stays removed."""
        merged, ok = merge3(["a", "b"], ["a"], ["a", "b", "c"])
        assert ok is True
        assert merged == ["a", "c"]

    def test_volatile_keys_take_newest_value(self) -> None:
        """Derived counters take the newer value instead of conflicting."""
        merged, ok = merge3(
            {"completion": 0, "blockers": []},
            {"completion": 33, "blockers": []},
            {"completion": 66, "blockers": []},
        )
        assert ok is True
        assert merged["completion"] == 66

    def test_keyed_records_merge_per_item(self) -> None:
        """Lists of records with ids merge item by item."""
        base = [{"id": "s1", "status": "pending"}, {"id": "s2", "status": "pending"}]
        local = [{"id": "s1", "status": "completed"}, {"id": "s2", "status": "pending"}]
        remote = [{"id": "s1", "status": "pending"}, {"id": "s2", "status": "completed"}]
        merged, ok = merge3(base, local, remote)
        assert ok is True
        assert merged == [
            {"id": "s1", "status": "completed"},
            {"id": "s2", "status": "completed"},
        ]

    def test_divergent_scalars_are_not_mergeable(self) -> None:
        """Two different scalar edits cannot be merged."""
        merged, ok = merge3("a", "b", "c")
        assert ok is False
        assert merged == "b"


# =============================================================================
# Push bounds, connectivity, presence
# =============================================================================


class TestPush:
    """Tests for push() bounds and connectivity."""

    async def test_push_exhaustion_raises_conflict_error(self) -> None:
        """A push that keeps losing the race raises after max attempts."""
        base = EnhancedSessionState(session_id=_SESSION_ID)
        persistence = MagicMock()
        persistence.put = AsyncMock(
            side_effect=[
                PutResult(ok=False, sync_version=v, remote=StoredSession(base, v))
                for v in (2, 3, 4)
            ]
        )
        engine = SyncEngine(
            _SESSION_ID,
            persistence,
            strategy=ResolutionStrategy.LOCAL_WINS,
            max_push_attempts=3,
        )
        engine.initialize(base, 1)
        local = _local_edit(engine, base, target_role="Engineer")

        with pytest.raises(ConflictError) as exc_info:
            await engine.push(local)

        assert exc_info.value.attempts == 3
        assert engine.status.status == SyncState.ERROR
        assert persistence.put.await_count == 3

    async def test_single_push_attempt_is_honoured(self) -> None:
        """An explicit budget of one attempt is not replaced by the default."""
        base = EnhancedSessionState(session_id=_SESSION_ID)
        persistence = MagicMock()
        persistence.put = AsyncMock(
            return_value=PutResult(
                ok=False, sync_version=2, remote=StoredSession(base, 2)
            )
        )
        engine = SyncEngine(
            _SESSION_ID,
            persistence,
            strategy=ResolutionStrategy.LOCAL_WINS,
            max_push_attempts=1,
        )
        engine.initialize(base, 1)
        local = _local_edit(engine, base, target_role="Engineer")

        with pytest.raises(ConflictError) as exc_info:
            await engine.push(local)

        assert exc_info.value.attempts == 1
        persistence.put.assert_awaited_once()

    def test_zero_push_attempts_is_rejected(self) -> None:
        """A zero attempt budget is an error, not a request for the default."""
        with pytest.raises(ValidationError):
            SyncEngine(_SESSION_ID, MagicMock(), max_push_attempts=0)

    async def test_nothing_pending_is_a_noop(self) -> None:
        """Nothing is written when nothing is pending."""
        persistence, engine, base = await _setup(ResolutionStrategy.MERGE)
        assert (await engine.push(base)).pushed is False
        assert engine.sync_version == 1

    async def test_offline_push_is_deferred(self) -> None:
        """Pushing offline writes nothing and keeps changes pending."""
        persistence, engine, base = await _setup(ResolutionStrategy.MERGE)
        local = _local_edit(engine, base, target_role="Engineer")
        engine.set_online(False)

        outcome = await engine.push(local)

        assert outcome.pushed is False
        assert engine.status.status == SyncState.OFFLINE
        assert engine.status.pending_changes == 1

        engine.set_online(True)
        assert (await engine.push(local)).pushed is True


class TestReceiveRemote:
    """Tests for receive_remote()."""

    async def test_older_versions_are_ignored(self) -> None:
        """Remote documents at or below the local version are ignored."""
        persistence, engine, base = await _setup(ResolutionStrategy.MERGE)
        assert engine.receive_remote(base, StoredSession(base, 1)) is None

    async def test_newer_remote_is_adopted(self) -> None:
        """A newer remote document is adopted with its changes."""
        persistence, engine, base = await _setup(ResolutionStrategy.MERGE)
        await _remote_write(persistence, base, target_role="Designer")
        stored = await persistence.get(_SESSION_ID)

        result = engine.receive_remote(base, stored)

        assert result.document["form_data"]["target_role"] == "Designer"
        assert engine.sync_version == 2
        assert engine.status.status == SyncState.SYNCED


class TestPresence:
    """Tests for presence tracking."""

    def test_active_users_exclude_local_user_and_idle_users(self) -> None:
        """Active users omit the local user and idle users."""
        engine = SyncEngine(_SESSION_ID, MagicMock(), local_user_id="u1")
        engine.update_presence(UserPresence(user_id="u1", session_id=_SESSION_ID))
        engine.update_presence(
            UserPresence(user_id="u2", session_id=_SESSION_ID, current_step=CVStep.FEATURES)
        )
        engine.update_presence(
            UserPresence(user_id="u3", session_id=_SESSION_ID, status=PresenceStatus.IDLE)
        )

        assert [p.user_id for p in engine.active_users()] == ["u2"]
        assert engine.active_users(CVStep.UPLOAD) == []
