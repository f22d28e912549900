"""Sync engine.

Reconciles local state changes against the remote document store.

Protocol:
1. Local changes are recorded as StateChanges against the last synced
   document (the base) and its sync_version.
2. push() writes the full document with expected_sync_version. If another
   writer moved the remote version on, the remote document is fetched and
   reconciled:
   - base -> remote is diffed into remote StateChanges
   - each pending local path overlapping a remote change (equal path or
     ancestor/descendant) becomes a conflict on the shorter path
   - conflicts are resolved with the configured strategy; non-overlapping
     changes from both sides are kept
3. The reconciled document is pushed again, up to max_push_attempts times.

Strategies:
- local_wins: local value kept, remote change dropped for that path
- remote_wins: remote value kept, local pending change dropped
- merge: three-way merge against the base; maps merge key by key, lists
  merge as a union, divergent scalars escalate to user_choice
- user_choice: deferred; status stays conflicted and pushes are blocked
  until resolve_conflict() is called
"""

import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from cvsession.core.config import settings
from cvsession.core.errors import ConflictError, ValidationError
from cvsession.models.session import EnhancedSessionState
from cvsession.models.steps import CVStep
from cvsession.models.sync import (
    ChangeSource,
    ChangeType,
    ConflictResolution,
    PresenceStatus,
    ResolutionStrategy,
    StateChange,
    SyncState,
    SyncStatus,
    UserPresence,
)
from cvsession.services.persistence import SessionPersistence, StoredSession
from cvsession.services.state_paths import (
    delete_path,
    diff_documents,
    get_path,
    paths_overlap,
    set_path,
    split_path,
)

logger = structlog.get_logger()

Clock = Callable[[], datetime]
StateFactory = Callable[[dict[str, Any]], EnhancedSessionState]

_MISSING = object()

# Bookkeeping fields; divergence never escalates, the larger value is kept.
_VOLATILE_KEYS = frozenset(
    {
        "last_active_at",
        "last_modified",
        "completion",
        "progress_percentage",
        "time_spent_ms",
    }
)

_STEP_IDS = frozenset(step.value for step in CVStep)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Three-way merge
# =============================================================================


def _newest(local: Any, remote: Any) -> Any:
    # ISO timestamps and counters both order correctly with max().
    if type(local) is type(remote) and isinstance(local, (int, float, str)):
        return max(local, remote)
    return copy.deepcopy(local)


def _keyed(items: list[Any]) -> str | None:
    """Identity key for lists of records, e.g. substeps or checkpoints."""
    for key in ("id", "step_id"):
        if items and all(isinstance(item, dict) and key in item for item in items):
            return key
    return None


def _merge_lists(base: Any, local: list[Any], remote: list[Any]) -> tuple[Any, bool]:
    base_list = base if isinstance(base, list) else []
    key = _keyed(local + remote + base_list)
    if key is None:
        merged = [item for item in remote if item in local or item not in base_list]
        merged.extend(
            item for item in local if item not in merged and item not in base_list
        )
        return merged, True

    base_by_id = {item[key]: item for item in base_list}
    local_by_id = {item[key]: item for item in local}
    remote_by_id = {item[key]: item for item in remote}
    order = list(remote_by_id) + [k for k in local_by_id if k not in remote_by_id]
    merged_items: list[Any] = []
    ok = True
    for item_id in order:
        value, item_ok = merge3(
            base_by_id.get(item_id, _MISSING),
            local_by_id.get(item_id, _MISSING),
            remote_by_id.get(item_id, _MISSING),
        )
        ok = ok and item_ok
        if value is not _MISSING:
            merged_items.append(value)
    return merged_items, ok


def merge3(base: Any, local: Any, remote: Any) -> tuple[Any, bool]:
    """Three-way merge of JSON values.

    A missing value is passed as the module's _MISSING sentinel and may be
    returned to mean "absent".

    Returns:
        (merged value, mergeable). When not mergeable the local value is
        returned and the caller must escalate.
    """
    if local == remote:
        return copy.deepcopy(local), True
    if local == base:
        return copy.deepcopy(remote), True
    if remote == base:
        return copy.deepcopy(local), True

    if isinstance(local, dict) and isinstance(remote, dict):
        base_dict = base if isinstance(base, dict) else {}
        merged: dict[str, Any] = {}
        ok = True
        for key in list(remote) + [k for k in local if k not in remote]:
            local_value = local.get(key, _MISSING)
            remote_value = remote.get(key, _MISSING)
            if key in _VOLATILE_KEYS and local_value is not _MISSING:
                merged[key] = _newest(local_value, remote_value)
                continue
            value, key_ok = merge3(
                base_dict.get(key, _MISSING), local_value, remote_value
            )
            ok = ok and key_ok
            if value is not _MISSING:
                merged[key] = value
        return merged, ok

    if isinstance(local, list) and isinstance(remote, list):
        return _merge_lists(base, local, remote)

    return copy.deepcopy(local), False


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class ReconcileResult:
    """Outcome of reconciling local state with a remote document.

    Attributes:
        document: Reconciled JSON document.
        remote_changes: StateChanges found between the base and the remote.
        resolutions: Conflicts produced, resolved and deferred.
    """

    document: dict[str, Any]
    remote_changes: list[StateChange] = field(default_factory=list)
    resolutions: list[ConflictResolution] = field(default_factory=list)

    @property
    def deferred(self) -> list[ConflictResolution]:
        return [r for r in self.resolutions if not r.is_resolved]


@dataclass
class PushOutcome:
    """Outcome of a push.

    Attributes:
        pushed: The remote accepted the local document.
        state: Reconciled state the store must adopt, when reconciliation
            changed it.
        remote_changes: Remote changes observed during reconciliation.
        resolutions: Conflicts produced during reconciliation.
    """

    pushed: bool
    state: EnhancedSessionState | None = None
    remote_changes: list[StateChange] = field(default_factory=list)
    resolutions: list[ConflictResolution] = field(default_factory=list)


# =============================================================================
# Engine
# =============================================================================


class SyncEngine:
    """Per-session reconciliation against the remote store.

    Args:
        session_id: Session this engine syncs.
        persistence: Remote document store.
        strategy: Conflict resolution strategy. Defaults to the configured one.
        max_push_attempts: Bound on the push/reconcile loop.
        local_user_id: User on this client, excluded from presence annotations.
        clock: Source of the current time.
    """

    def __init__(
        self,
        session_id: str,
        persistence: SessionPersistence,
        *,
        strategy: ResolutionStrategy | None = None,
        max_push_attempts: int | None = None,
        local_user_id: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session_id = session_id
        self._persistence = persistence
        self._strategy = strategy or ResolutionStrategy(settings.sync_conflict_strategy)
        self._max_push_attempts = (
            settings.sync_max_push_attempts
            if max_push_attempts is None
            else max_push_attempts
        )
        if self._max_push_attempts < 1:
            raise ValidationError(
                f"max_push_attempts must be at least 1, got {self._max_push_attempts}"
            )
        self._local_user_id = local_user_id
        self._clock = clock or _utcnow
        self._status = SyncStatus(session_id=session_id)
        self._pending: list[StateChange] = []
        self._base: dict[str, Any] = {}
        self._online = True
        self._presence: dict[str, UserPresence] = {}
        self._resolved: list[ConflictResolution] = []

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def status(self) -> SyncStatus:
        return self._status.model_copy(deep=True)

    @property
    def strategy(self) -> ResolutionStrategy:
        return self._strategy

    @property
    def sync_version(self) -> int:
        return self._status.sync_version

    def pending_changes(self) -> list[StateChange]:
        return list(self._pending)

    def resolved_conflicts(self) -> list[ConflictResolution]:
        return list(self._resolved)

    def initialize(self, state: EnhancedSessionState, sync_version: int) -> None:
        """Adopt a freshly loaded document as the synced base."""
        self._base = state.model_dump(mode="json")
        self._pending = []
        self._status = SyncStatus(
            session_id=self._session_id,
            status=SyncState.SYNCED if self._online else SyncState.OFFLINE,
            last_sync_at=self._clock(),
            sync_version=sync_version,
        )

    def record_local(self, change: StateChange) -> None:
        """Queue a local change for the next push."""
        self._pending.append(change)
        self._status.pending_changes = len(self._pending)

    def set_online(self, online: bool) -> None:
        self._online = online
        if not online:
            self._status.status = SyncState.OFFLINE
        else:
            self._status.status = self._settled_state()
        logger.info(
            "sync_connectivity_changed",
            session_id=self._session_id,
            online=online,
        )

    # -------------------------------------------------------------------------
    # Presence
    # -------------------------------------------------------------------------

    def update_presence(self, presence: UserPresence) -> None:
        """Record a presence heartbeat. Heartbeat timing is external."""
        self._presence[presence.user_id] = presence.model_copy()

    def active_users(self, step: CVStep | None = None) -> list[UserPresence]:
        """Active collaborators other than the local user, optionally on a step."""
        return [
            presence.model_copy()
            for presence in self._presence.values()
            if presence.status == PresenceStatus.ACTIVE
            and presence.user_id != self._local_user_id
            and (step is None or presence.current_step == step)
        ]

    def _users_at(self, path: str) -> list[str]:
        segments = split_path(path)
        step = next((CVStep(s) for s in segments if s in _STEP_IDS), None)
        return sorted(presence.user_id for presence in self.active_users(step))

    # -------------------------------------------------------------------------
    # Push / reconcile
    # -------------------------------------------------------------------------

    async def push(
        self,
        local_state: EnhancedSessionState,
        state_factory: StateFactory | None = None,
    ) -> PushOutcome:
        """Push pending changes to the remote store.

        Args:
            local_state: Current local aggregate.
            state_factory: Turns a reconciled JSON document back into a valid
                aggregate (the store recomputes derived fields here).
                Defaults to plain validation.

        Returns:
            PushOutcome. Nothing is pushed while offline, while conflicts are
            unresolved, or when there is nothing pending.

        Raises:
            ConflictError: If the remote keeps moving on for
                max_push_attempts attempts.
        """
        outcome = PushOutcome(pushed=False)
        if not self._online or self._status.conflicts or not self._pending:
            return outcome

        factory = state_factory or EnhancedSessionState.model_validate
        state = local_state
        for attempt in range(1, self._max_push_attempts + 1):
            self._status.status = SyncState.SYNCING
            result = await self._persistence.put(
                self._session_id, state, self._status.sync_version
            )
            if result.ok:
                self._mark_synced(state, result.sync_version)
                outcome.pushed = True
                logger.debug(
                    "sync_push_accepted",
                    session_id=self._session_id,
                    sync_version=result.sync_version,
                    attempt=attempt,
                )
                return outcome

            if result.remote is None:
                self._status.status = SyncState.ERROR
                raise ValidationError(
                    f"Remote rejected session '{self._session_id}' without a document"
                )

            logger.info(
                "sync_remote_advanced",
                session_id=self._session_id,
                local_version=self._status.sync_version,
                remote_version=result.remote.sync_version,
                attempt=attempt,
            )
            reconciled = self.reconcile(state, result.remote)
            state = factory(reconciled.document)
            outcome.state = state
            outcome.remote_changes.extend(reconciled.remote_changes)
            outcome.resolutions.extend(reconciled.resolutions)
            self._pending = self._diff_as_changes(
                self._base, state.model_dump(mode="json")
            )
            self._status.pending_changes = len(self._pending)

            if reconciled.deferred:
                self._status.status = SyncState.CONFLICTED
                return outcome
            if not self._pending:
                self._status.status = SyncState.SYNCED
                self._status.last_sync_at = self._clock()
                return outcome

        self._status.status = SyncState.ERROR
        logger.error(
            "sync_push_exhausted",
            session_id=self._session_id,
            attempts=self._max_push_attempts,
        )
        raise ConflictError(self._session_id, self._max_push_attempts)

    def reconcile(
        self, local_state: EnhancedSessionState, remote: StoredSession
    ) -> ReconcileResult:
        """Reconcile local pending changes with a newer remote document.

        Moves the base and sync_version to the remote document. Deferred
        conflicts are added to the status.

        Returns:
            ReconcileResult with the reconciled document.
        """
        local_doc = local_state.model_dump(mode="json")
        remote_doc = remote.state.model_dump(mode="json")
        base_doc = self._base
        remote_changes = self._diff_as_changes(
            base_doc, remote_doc, source=ChangeSource.REMOTE
        )
        merged = copy.deepcopy(remote_doc)
        result = ReconcileResult(document=merged, remote_changes=remote_changes)

        handled: list[str] = []
        for local_path in self._collapsed_local_paths():
            if any(paths_overlap(local_path, done) for done in handled):
                continue
            overlapping = [
                rc for rc in remote_changes if paths_overlap(local_path, rc.path)
            ]
            if not overlapping:
                self._write(merged, local_path, get_path(local_doc, local_path, _MISSING))
                handled.append(local_path)
                continue

            conflict_path = min(
                [local_path] + [rc.path for rc in overlapping],
                key=lambda p: len(split_path(p)),
            )
            handled.append(conflict_path)
            conflicting = [
                change
                for change in self._pending + remote_changes
                if paths_overlap(conflict_path, change.path)
            ]
            resolution = self._resolve(
                conflict_path, conflicting, base_doc, local_doc, remote_doc
            )
            self._write(merged, conflict_path, resolution.resolved_value)
            result.resolutions.append(resolution)

        self._base = remote_doc
        self._status.sync_version = max(self._status.sync_version, remote.sync_version)
        for resolution in result.resolutions:
            if resolution.is_resolved:
                self._resolved.append(resolution)
            else:
                self._status.conflicts.append(resolution)
        if result.resolutions:
            logger.info(
                "sync_conflicts_reconciled",
                session_id=self._session_id,
                strategy=self._strategy.value,
                resolved=len(result.resolutions) - len(result.deferred),
                deferred=len(result.deferred),
            )
        return result

    def receive_remote(
        self, local_state: EnhancedSessionState, remote: StoredSession
    ) -> ReconcileResult | None:
        """Handle a document pushed by the remote store.

        Returns:
            None when the remote is not newer than the local version,
            otherwise the reconciled result the store should adopt.
        """
        if remote.sync_version <= self._status.sync_version:
            return None
        result = self.reconcile(local_state, remote)
        self._pending = self._diff_as_changes(self._base, result.document)
        self._status.pending_changes = len(self._pending)
        if not self._pending and not self._status.conflicts:
            self._status.status = SyncState.SYNCED if self._online else SyncState.OFFLINE
            self._status.last_sync_at = self._clock()
        elif self._status.conflicts:
            self._status.status = SyncState.CONFLICTED
        return result

    def resolve_conflict(
        self, conflict_id: str, value: Any, resolved_by: str
    ) -> ConflictResolution:
        """Resolve a deferred conflict with an externally chosen value.

        The caller applies the value to the local state, which records a new
        pending change for the next push.

        Raises:
            ValidationError: If no unresolved conflict has that id.
        """
        for index, conflict in enumerate(self._status.conflicts):
            if conflict.conflict_id == conflict_id:
                break
        else:
            raise ValidationError(f"No unresolved conflict '{conflict_id}'")

        resolved = conflict.model_copy(
            update={
                "resolved_value": copy.deepcopy(value),
                "resolved_at": self._clock(),
                "resolved_by": resolved_by,
            }
        )
        del self._status.conflicts[index]
        self._resolved.append(resolved)
        if self._online:
            self._status.status = self._settled_state()
        logger.info(
            "sync_conflict_resolved",
            session_id=self._session_id,
            conflict_id=conflict_id,
            path=conflict.path,
            resolved_by=resolved_by,
        )
        return resolved

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _settled_state(self) -> SyncState:
        return SyncState.CONFLICTED if self._status.conflicts else SyncState.SYNCED

    def _mark_synced(self, state: EnhancedSessionState, sync_version: int) -> None:
        self._base = state.model_dump(mode="json")
        self._pending = []
        self._status.pending_changes = 0
        self._status.sync_version = sync_version
        self._status.last_sync_at = self._clock()
        self._status.status = SyncState.SYNCED

    def _collapsed_local_paths(self) -> list[str]:
        """Pending paths in order, without paths already covered by an ancestor."""
        paths: list[str] = []
        for change in self._pending:
            if change.path not in paths:
                paths.append(change.path)
        return [
            path
            for path in paths
            if not any(
                other != path
                and paths_overlap(other, path)
                and len(split_path(other)) < len(split_path(path))
                for other in paths
            )
        ]

    def _resolve(
        self,
        path: str,
        conflicting: list[StateChange],
        base_doc: dict[str, Any],
        local_doc: dict[str, Any],
        remote_doc: dict[str, Any],
    ) -> ConflictResolution:
        local_value = get_path(local_doc, path, _MISSING)
        remote_value = get_path(remote_doc, path, _MISSING)
        strategy = self._strategy
        resolved_value: Any = local_value
        resolved = True

        if strategy == ResolutionStrategy.REMOTE_WINS:
            resolved_value = remote_value
        elif strategy == ResolutionStrategy.MERGE:
            resolved_value, resolved = merge3(
                get_path(base_doc, path, _MISSING), local_value, remote_value
            )
            if not resolved:
                strategy = ResolutionStrategy.USER_CHOICE
        elif strategy == ResolutionStrategy.USER_CHOICE:
            resolved = False

        return ConflictResolution(
            session_id=self._session_id,
            path=path,
            conflicts=conflicting,
            strategy=strategy,
            local_value=None if local_value is _MISSING else local_value,
            remote_value=None if remote_value is _MISSING else remote_value,
            resolved_value=resolved_value if resolved_value is not _MISSING else None,
            resolved_at=self._clock() if resolved else None,
            resolved_by="system" if resolved else None,
            remote_users=self._users_at(path),
        )

    @staticmethod
    def _write(document: dict[str, Any], path: str, value: Any) -> None:
        if value is _MISSING:
            if get_path(document, path, _MISSING) is not _MISSING:
                delete_path(document, path)
            return
        set_path(document, path, copy.deepcopy(value))

    def _diff_as_changes(
        self,
        before: dict[str, Any],
        after: dict[str, Any],
        source: ChangeSource = ChangeSource.LOCAL,
    ) -> list[StateChange]:
        now = self._clock()
        changes = []
        for path, old_value, new_value in diff_documents(before, after):
            if split_path(path)[-1] in _VOLATILE_KEYS:
                continue
            if get_path(before, path, _MISSING) is _MISSING:
                change_type = ChangeType.CREATE
            elif get_path(after, path, _MISSING) is _MISSING:
                change_type = ChangeType.DELETE
            else:
                change_type = ChangeType.UPDATE
            changes.append(
                StateChange(
                    session_id=self._session_id,
                    timestamp=now,
                    change_type=change_type,
                    path=path,
                    old_value=old_value,
                    new_value=new_value,
                    source=source,
                )
            )
        return changes
