"""Offline action records."""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(UTC)


class OfflineActionType(str, Enum):
    """Kinds of intent buffered while disconnected."""

    STATE_UPDATE = "state_update"
    FILE_UPLOAD = "file_upload"
    API_CALL = "api_call"
    FORM_SUBMIT = "form_submit"


class OfflineAction(BaseModel):
    """A queued, not-yet-applied intent.

    Attributes:
        id: Action identifier.
        type: Kind of action.
        payload: Opaque payload for the action executor.
        timestamp: When the action was issued.
        retry_count: Failed attempts so far.
        max_retries: Attempts allowed before the action fails permanently.
            None takes the configured default.
        priority: Lower numbers replay first.
        dependencies: Action ids that must succeed before this one runs.
        requires_network: Action needs connectivity to run.
        can_execute_offline: Action may run while disconnected.
        fallback_action: Run once if this action exhausts its retries.
        pending_network: Set when enqueued offline and not runnable offline.
        last_error: Last failure message.
        next_retry_at: Earliest time a failed action may run again.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: OfflineActionType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int | None = Field(default=None, ge=0)
    priority: int = 0
    dependencies: list[str] = Field(default_factory=list)
    requires_network: bool = True
    can_execute_offline: bool = False
    fallback_action: "OfflineAction | None" = None
    pending_network: bool = False
    last_error: str | None = None
    next_retry_at: datetime | None = None


class SyncResult(BaseModel):
    """Outcome of replaying one offline action.

    Attributes:
        action_id: The replayed action.
        success: Whether the action was acknowledged.
        error: Error message for failed attempts.
        permanent: True when the action will not be retried again.
        used_fallback: True when the result came from the fallback action.
        conflict_resolved: True when the remote reported a resolved conflict.
        synced_at: When the attempt finished.
        data_transferred: Bytes reported by the executor.
    """

    action_id: str
    success: bool
    error: str | None = None
    permanent: bool = False
    used_fallback: bool = False
    conflict_resolved: bool = False
    synced_at: datetime = Field(default_factory=_now)
    data_transferred: int = 0
