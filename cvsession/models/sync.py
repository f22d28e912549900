"""State change, conflict and sync status records.

StateChange and ConflictResolution are immutable: a change is an append-only
audit record, and a resolved conflict is terminal. Resolving a deferred
conflict produces a new ConflictResolution rather than editing the old one.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cvsession.models.steps import CVStep


def _now() -> datetime:
    return datetime.now(UTC)


class ChangeType(str, Enum):
    """Kind of field mutation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeSource(str, Enum):
    """Where a change originated."""

    LOCAL = "local"
    REMOTE = "remote"
    SYSTEM = "system"


class StateChange(BaseModel):
    """Immutable record of a single field mutation.

    Attributes:
        id: Change identifier.
        session_id: Session the change belongs to.
        timestamp: When the change was made.
        change_type: create, update or delete.
        path: Dotted path into the session document.
        old_value: JSON value before the change.
        new_value: JSON value after the change.
        user_id: Originating user, if known.
        source: local, remote or system.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    timestamp: datetime = Field(default_factory=_now)
    change_type: ChangeType
    path: str
    old_value: Any = None
    new_value: Any = None
    user_id: str | None = None
    source: ChangeSource = ChangeSource.LOCAL


class ResolutionStrategy(str, Enum):
    """How overlapping local and remote changes are reconciled."""

    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MERGE = "merge"
    USER_CHOICE = "user_choice"


class ConflictResolution(BaseModel):
    """Outcome of reconciling changes that touch overlapping paths.

    A conflict with resolved_at unset is deferred (user_choice) and blocks
    pushes until an external caller resolves it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    conflict_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    path: str
    conflicts: list[StateChange] = Field(default_factory=list)
    strategy: ResolutionStrategy
    local_value: Any = None
    remote_value: Any = None
    resolved_value: Any = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    remote_users: list[str] = Field(default_factory=list)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


class SyncState(str, Enum):
    """Synchronization state of a session."""

    SYNCED = "synced"
    SYNCING = "syncing"
    CONFLICTED = "conflicted"
    OFFLINE = "offline"
    ERROR = "error"


class SyncStatus(BaseModel):
    """Per-session synchronization status.

    Attributes:
        session_id: Session this status belongs to.
        status: Current sync state.
        last_sync_at: Last successful push or pull.
        pending_changes: Local changes not yet acknowledged by the remote.
        conflicts: Unresolved conflicts.
        sync_version: Optimistic concurrency token; never decreases.
    """

    session_id: str
    status: SyncState = SyncState.SYNCED
    last_sync_at: datetime | None = None
    pending_changes: int = 0
    conflicts: list[ConflictResolution] = Field(default_factory=list)
    sync_version: int = 0


class PresenceStatus(str, Enum):
    """Presence of a collaborator."""

    ACTIVE = "active"
    IDLE = "idle"
    AWAY = "away"


class UserPresence(BaseModel):
    """Presence heartbeat for a user viewing a session."""

    user_id: str
    session_id: str
    last_seen: datetime = Field(default_factory=_now)
    current_step: CVStep | None = None
    status: PresenceStatus = PresenceStatus.ACTIVE
    device_id: str | None = None
