"""Session store.

Single authoritative holder of EnhancedSessionState per session id and the
only mutation entry point. Each session has its own lock, sync engine,
processing queue, offline action queue and listeners; sessions are
independent of each other.

Mutation flow for apply():
1. Dump the current state to JSON and write the proposed paths into the copy
2. Validate the copy and recompute derived fields (step completion,
   progress_percentage, last_active_at)
3. Reject the change if it introduces a feature dependency violation
4. Swap the new state in, append StateChanges, hand them to the sync engine
5. Notify listeners once per event-loop tick
6. Push when online and auto-sync is on; queue a state update when offline

Any failure in steps 1-3 leaves the state exactly as it was.
"""

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pydantic
import structlog
from pydantic import TypeAdapter

from cvsession.core.config import settings
from cvsession.core.errors import (
    ConflictError,
    DependencyError,
    InvalidTransitionError,
    SessionNotFoundError,
    TerminalError,
    ValidationError,
)
from cvsession.models.features import FeatureState
from cvsession.models.navigation import (
    NavigationContext,
    NavigationPath,
    NavigationState,
    ResumeRecommendation,
)
from cvsession.models.offline import OfflineAction, OfflineActionType, SyncResult
from cvsession.models.processing import JobType, ProcessingJob, QueueStats
from cvsession.models.progress import StepProgressState, SubstepStatus, UserInteraction
from cvsession.models.session import EnhancedSessionState
from cvsession.models.steps import CVStep, SessionStatus
from cvsession.models.sync import (
    ChangeSource,
    ChangeType,
    ConflictResolution,
    ResolutionStrategy,
    StateChange,
    SyncStatus,
    UserPresence,
)
from cvsession.services import navigation_advisor, step_progress
from cvsession.services.feature_registry import (
    ApplyOutcome,
    FeatureStateRegistry,
    RuleEvaluation,
    default_feature_states,
)
from cvsession.services.offline_queue import ActionExecutor, OfflineActionQueue
from cvsession.services.persistence import SessionPersistence, StoredSession, Unsubscribe
from cvsession.services.processing_queue import (
    JobExecutor,
    JobRunResult,
    ProcessingQueue,
)
from cvsession.services.state_paths import (
    PathError,
    delete_path,
    get_path,
    set_path,
    split_path,
)
from cvsession.services.sync_engine import SyncEngine

logger = structlog.get_logger()

Clock = Callable[[], datetime]
Listener = Callable[[EnhancedSessionState, list[StateChange]], None]

# Fields that are immutable or derived; apply() refuses to write them.
_PROTECTED_PATHS = frozenset({"session_id", "created_at", "progress_percentage"})

_MISSING = object()
_JSON = TypeAdapter(Any)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_json(value: Any) -> Any:
    return _JSON.dump_python(value, mode="json")


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ProposedChange:
    """A mutation proposed to the store.

    Attributes:
        path: Dotted path into the session document, e.g. "current_step" or
            "feature_states.podcast-generation.enabled".
        value: New value. Pydantic models and enums are converted to JSON.
        change_type: update (default), create or delete.
        user_id: User proposing the change.
    """

    path: str
    value: Any = None
    change_type: ChangeType = ChangeType.UPDATE
    user_id: str | None = None


@dataclass(frozen=True)
class JobFailure:
    """A terminal job failure surfaced to the user.

    Attributes:
        job_id: Failed job.
        job_type: Kind of job.
        step: Step the job reported against, if any.
        error: Last error message.
        failed_at: When the job failed for good.
    """

    job_id: str
    job_type: JobType
    step: CVStep | None
    error: str
    failed_at: datetime


@dataclass
class FeatureRulesResult:
    """Outcome of evaluating and applying feature rules for a session."""

    evaluation: RuleEvaluation
    outcome: ApplyOutcome
    changes: list[StateChange] = field(default_factory=list)


@dataclass
class _SessionSlot:
    state: EnhancedSessionState
    engine: SyncEngine
    queue: ProcessingQueue
    offline: OfflineActionQueue
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    listeners: list[Listener] = field(default_factory=list)
    history: list[StateChange] = field(default_factory=list)
    failures: list[JobFailure] = field(default_factory=list)
    unnotified: list[StateChange] = field(default_factory=list)
    notify_scheduled: bool = False
    unsubscribe_remote: Unsubscribe | None = None


class _StoreActionExecutor:
    """Runs offline actions for one session.

    State updates are replayed by pushing through the sync engine; every
    other action type goes to the application's executor.
    """

    def __init__(
        self,
        store: "SessionStore",
        slot: _SessionSlot,
        delegate: ActionExecutor | None,
    ) -> None:
        self._store = store
        self._slot = slot
        self._delegate = delegate

    async def execute(self, action: OfflineAction) -> int:
        if action.type == OfflineActionType.STATE_UPDATE:
            pushed = await self._store._push_locked(self._slot)
            return len(self._slot.state.model_dump_json()) if pushed else 0
        if self._delegate is None:
            raise TerminalError(action.id, "No executor for offline action")
        return await self._delegate.execute(action)


# =============================================================================
# Store
# =============================================================================


class SessionStore:
    """Owner of every loaded session's state.

    Args:
        persistence: Remote document store.
        job_executor: Default executor for processing jobs.
        action_executor: Executor for non-state offline actions.
        strategy: Conflict resolution strategy for new sync engines.
        auto_sync: Push after every applied change while online.
        online: Initial connectivity.
        clock: Source of the current time.
    """

    def __init__(
        self,
        persistence: SessionPersistence,
        *,
        job_executor: JobExecutor | None = None,
        action_executor: ActionExecutor | None = None,
        strategy: ResolutionStrategy | None = None,
        auto_sync: bool | None = None,
        online: bool = True,
        clock: Clock | None = None,
    ) -> None:
        self._persistence = persistence
        self._job_executor = job_executor
        self._action_executor = action_executor
        self._strategy = strategy
        self._auto_sync = settings.auto_sync if auto_sync is None else auto_sync
        self._online = online
        self._clock = clock or _utcnow
        self._slots: dict[str, _SessionSlot] = {}

    @property
    def online(self) -> bool:
        return self._online

    def session_ids(self) -> list[str]:
        return list(self._slots)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create(
        self,
        session_id: str | None = None,
        *,
        user_id: str | None = None,
        job_id: str | None = None,
        features: dict[str, FeatureState] | None = None,
    ) -> EnhancedSessionState:
        """Create a new session on the upload step and persist it.

        Args:
            session_id: Session id. Generated when omitted.
            user_id: Owning user.
            job_id: Backend CV job, if already known.
            features: Feature catalog. Defaults to the standard catalog.

        Returns:
            Snapshot of the new session.

        Raises:
            ValidationError: If the session already exists locally or remotely.
        """
        session_id = session_id or str(uuid.uuid4())
        if session_id in self._slots:
            raise ValidationError(f"Session '{session_id}' is already loaded")

        now = self._clock()
        state = EnhancedSessionState(
            session_id=session_id,
            user_id=user_id,
            job_id=job_id,
            schema_version=settings.session_schema_version,
            created_at=now,
            last_active_at=now,
            feature_states=features if features is not None else default_feature_states(),
            step_progress={
                CVStep.UPLOAD: step_progress.create_step_progress(CVStep.UPLOAD, now)
            },
        )
        slot = self._new_slot(state)
        creation = StateChange(
            session_id=session_id,
            timestamp=now,
            change_type=ChangeType.CREATE,
            path="session_id",
            new_value=session_id,
            user_id=user_id,
            source=ChangeSource.SYSTEM,
        )

        if self._online:
            result = await self._persistence.put(session_id, state, 0)
            if not result.ok:
                raise ValidationError(f"Session '{session_id}' already exists")
            slot.engine.initialize(state, result.sync_version)
        else:
            slot.engine.initialize(state, 0)
            slot.engine.record_local(creation)
            self._queue_state_update(slot)

        slot.history.append(creation)
        self._attach(session_id, slot)
        logger.info("session_created", session_id=session_id, user_id=user_id)
        return state.model_copy(deep=True)

    async def load(self, session_id: str) -> EnhancedSessionState:
        """Fetch a session from the persistence collaborator and hydrate it.

        Returns:
            Snapshot of the loaded session. An already loaded session is
            returned as is.

        Raises:
            SessionNotFoundError: If no document exists. Not retried.
        """
        if session_id in self._slots:
            return self.snapshot(session_id)

        stored = await self._persistence.get(session_id)
        if stored is None:
            logger.info("session_not_found", session_id=session_id)
            raise SessionNotFoundError(session_id)

        slot = self._new_slot(stored.state.model_copy(deep=True))
        slot.engine.initialize(stored.state, stored.sync_version)
        slot.queue.restore_checkpoints(stored.state.processing_checkpoints)
        self._attach(session_id, slot)
        logger.info(
            "session_loaded",
            session_id=session_id,
            sync_version=stored.sync_version,
            current_step=stored.state.current_step.value,
        )
        return stored.state.model_copy(deep=True)

    def unload(self, session_id: str) -> None:
        """Forget a session locally and stop listening for remote changes."""
        slot = self._slots.pop(session_id, None)
        if slot is not None and slot.unsubscribe_remote is not None:
            slot.unsubscribe_remote()

    def snapshot(self, session_id: str) -> EnhancedSessionState:
        """Deep copy of the current state. Never a live reference."""
        return self._slot(session_id).state.model_copy(deep=True)

    def history(self, session_id: str) -> list[StateChange]:
        """Audit trail of applied local, system and remote changes."""
        return list(self._slot(session_id).history)

    def subscribe(self, session_id: str, listener: Listener) -> Callable[[], None]:
        """Register a listener called with (snapshot, changes).

        Changes applied within one event-loop tick are delivered together.

        Returns:
            Function that removes the listener.
        """
        listeners = self._slot(session_id).listeners
        listeners.append(listener)

        def unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    async def apply(self, session_id: str, change: ProposedChange) -> StateChange:
        """Apply one proposed change.

        Returns:
            The recorded StateChange.

        Raises:
            ValidationError: If the change would violate an invariant. The
                state is left unchanged.
            DependencyError: If the change enables a feature with unmet
                dependencies.
        """
        records = await self.apply_many(session_id, [change])
        return records[0]

    async def apply_many(
        self, session_id: str, changes: list[ProposedChange]
    ) -> list[StateChange]:
        """Apply several changes atomically: all of them or none."""
        slot = self._slot(session_id)
        async with slot.lock:
            return await self._commit(slot, changes, check_transitions=True)

    async def navigate_to(
        self,
        session_id: str,
        step: CVStep,
        substep: str | None = None,
        *,
        user_id: str | None = None,
    ) -> list[StateChange]:
        """Move to a step, creating its progress record on first visit.

        Raises:
            ValidationError: If the step is not accessible.
        """

        def build(state: EnhancedSessionState) -> list[ProposedChange]:
            path = next(
                p
                for p in navigation_advisor.compute_reachable_paths(state)
                if p.step == step
            )
            if not path.accessible:
                raise ValidationError(
                    f"Step '{step.value}' is not accessible: {path.reason}",
                    details=[{"step": step.value, "reason": path.reason}],
                )
            proposed = [ProposedChange("current_step", step, user_id=user_id)]
            if step not in state.step_progress:
                proposed.append(
                    ProposedChange(
                        f"step_progress.{step.value}",
                        step_progress.create_step_progress(step, self._clock()),
                        ChangeType.CREATE,
                        user_id,
                    )
                )
            entry = NavigationState(
                session_id=state.session_id,
                step=step,
                substep=substep,
                timestamp=self._clock(),
                url=navigation_advisor.step_url(state.session_id, step, substep),
                referrer=navigation_advisor.step_url(
                    state.session_id, state.current_step
                ),
            )
            proposed.append(
                ProposedChange(
                    f"navigation_history.{len(state.navigation_history)}",
                    entry,
                    ChangeType.CREATE,
                    user_id,
                )
            )
            return proposed

        return await self._mutate(session_id, build)

    async def complete_step(
        self, session_id: str, step: CVStep, *, user_id: str | None = None
    ) -> list[StateChange]:
        """Complete every substep of a step and mark the step completed."""

        def build(state: EnhancedSessionState) -> list[ProposedChange]:
            progress = state.step_progress.get(step) or (
                step_progress.create_step_progress(step, self._clock())
            )
            proposed = []
            if step not in state.step_progress or not all(
                substep.is_done for substep in progress.substeps
            ):
                updated = step_progress.complete_all_substeps(progress, self._clock())
                proposed.append(
                    ProposedChange(f"step_progress.{step.value}", updated, user_id=user_id)
                )
            if step not in state.completed_steps:
                proposed.append(
                    ProposedChange(
                        "completed_steps",
                        [*state.completed_steps, step],
                        user_id=user_id,
                    )
                )
            return proposed

        return await self._mutate(session_id, build)

    async def transition_substep(
        self,
        session_id: str,
        step: CVStep,
        substep_id: str,
        status: SubstepStatus,
        *,
        validation_errors: list[str] | None = None,
        user_id: str | None = None,
    ) -> list[StateChange]:
        """Transition a substep; a step reaching 100% is marked completed.

        Raises:
            ValidationError: If the substep is unknown.
            InvalidTransitionError: If the transition is not allowed.
        """

        def build(state: EnhancedSessionState) -> list[ProposedChange]:
            return self._substep_changes(
                state, step, substep_id, status, validation_errors, user_id
            )

        return await self._mutate(session_id, build)

    async def record_interaction(
        self, session_id: str, step: CVStep, interaction: UserInteraction
    ) -> list[StateChange]:
        """Append a user interaction to a step and count it."""

        def build(state: EnhancedSessionState) -> list[ProposedChange]:
            progress = state.step_progress.get(step) or (
                step_progress.create_step_progress(step, self._clock())
            )
            updated = step_progress.record_interaction(
                progress, interaction, self._clock()
            )
            return [
                ProposedChange(f"step_progress.{step.value}", updated),
                ProposedChange(
                    "performance_metrics.interaction_count",
                    state.performance_metrics.interaction_count + 1,
                ),
            ]

        return await self._mutate(session_id, build)

    async def set_feature_enabled(
        self,
        session_id: str,
        feature_id: str,
        enabled: bool,
        *,
        user_id: str | None = None,
    ) -> FeatureState:
        """Toggle a feature through the registry's dependency checks.

        Raises:
            DependencyError: If the toggle violates a hard dependency.
            ValidationError: If the feature is unknown.
        """
        updated: list[FeatureState] = []

        def build(state: EnhancedSessionState) -> list[ProposedChange]:
            registry = FeatureStateRegistry.from_session(state)
            feature = registry.set_enabled(feature_id, enabled)
            updated.append(feature)
            return [
                ProposedChange(
                    f"feature_states.{feature_id}.enabled", enabled, user_id=user_id
                )
            ]

        await self._mutate(session_id, build)
        return updated[0]

    async def configure_feature(
        self,
        session_id: str,
        feature_id: str,
        configuration: dict[str, Any],
        *,
        user_id: str | None = None,
    ) -> FeatureState:
        """Replace a feature's configuration and flag it configured."""
        updated: list[FeatureState] = []

        def build(state: EnhancedSessionState) -> list[ProposedChange]:
            feature = FeatureStateRegistry.from_session(state).configure(
                feature_id, configuration
            )
            updated.append(feature)
            return [
                ProposedChange(f"feature_states.{feature_id}", feature, user_id=user_id)
            ]

        await self._mutate(session_id, build)
        return updated[0]

    async def evaluate_feature_rules(self, session_id: str) -> FeatureRulesResult:
        """Evaluate every feature rule and apply the winning actions.

        Rule errors and unsatisfiable actions are reported in the result;
        they do not block the actions that did apply.
        """
        results: list[FeatureRulesResult] = []

        def build(state: EnhancedSessionState) -> list[ProposedChange]:
            registry = FeatureStateRegistry.from_session(state)
            evaluation = registry.evaluate()
            outcome = registry.apply_resolved_actions(evaluation.actions)
            results.append(FeatureRulesResult(evaluation=evaluation, outcome=outcome))
            proposed = [
                ProposedChange(f"feature_states.{feature_id}", feature)
                for feature_id, feature in registry.features.items()
                if feature != state.feature_states.get(feature_id)
            ]
            proposed.extend(
                ProposedChange(f"step_directives.{step.value}", action)
                for step, action in outcome.step_directives.items()
                if state.step_directives.get(step) != action
            )
            return proposed

        changes = await self._mutate(session_id, build, source=ChangeSource.SYSTEM)
        result = results[0]
        result.changes = changes
        return result

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def enqueue_job(self, session_id: str, job: ProcessingJob) -> ProcessingJob:
        """Add a job to the session's processing queue.

        Raises:
            DependencyError: If the job depends on unknown jobs.
        """
        slot = self._slot(session_id)
        async with slot.lock:
            queued = slot.queue.enqueue(job)
        logger.info(
            "job_enqueued",
            session_id=session_id,
            job_id=queued.id,
            job_type=queued.type.value,
        )
        return queued

    async def run_next_job(
        self, session_id: str, executor: JobExecutor | None = None
    ) -> JobRunResult | None:
        """Run the next eligible job and fold its outcome into the session.

        A completed job with a step and substep completes that substep. A
        terminal failure is recorded as a JobFailure, sets last_error and
        notifies listeners; it never blocks unrelated steps.

        Returns:
            The run result, or None when no job is eligible.
        """
        executor = executor or self._job_executor
        if executor is None:
            raise ValidationError("No job executor configured")
        slot = self._slot(session_id)
        result = await slot.queue.run_next(executor)
        if result is None:
            return None
        async with slot.lock:
            await self._fold_job_result(slot, result)
        return result

    async def expire_timed_out_jobs(self, session_id: str) -> list[JobRunResult]:
        """Fail processing jobs that exceeded their timeout."""
        slot = self._slot(session_id)
        async with slot.lock:
            results = slot.queue.expire_timed_out(self._clock())
            for result in results:
                await self._fold_job_result(slot, result)
        return results

    async def mark_job_progress(
        self,
        session_id: str,
        job_id: str,
        percentage: int,
        partial_result: Any = None,
    ) -> ProcessingJob:
        """Record job progress and persist the updated checkpoint."""
        slot = self._slot(session_id)
        async with slot.lock:
            job = slot.queue.mark_progress(job_id, percentage, partial_result)
            await self._commit(
                slot, self._checkpoint_changes(slot), source=ChangeSource.SYSTEM
            )
        return job

    async def retry_job(self, session_id: str, job_id: str) -> ProcessingJob:
        """Requeue a terminally failed job at the user's request."""
        slot = self._slot(session_id)
        async with slot.lock:
            job = slot.queue.retry(job_id)
            slot.failures = [f for f in slot.failures if f.job_id != job_id]
            proposed = self._checkpoint_changes(slot)
            if slot.state.last_error is not None and not slot.failures:
                proposed.append(ProposedChange("last_error", None))
            await self._commit(slot, proposed, source=ChangeSource.SYSTEM)
        return job

    def job_failures(self, session_id: str) -> list[JobFailure]:
        """Terminal job failures awaiting a retry-or-abandon decision."""
        return list(self._slot(session_id).failures)

    def queue_stats(self, session_id: str) -> QueueStats:
        return self._slot(session_id).queue.stats

    def pause_processing(self, session_id: str) -> None:
        self._slot(session_id).queue.pause()

    def resume_processing(self, session_id: str) -> None:
        self._slot(session_id).queue.resume()

    # -------------------------------------------------------------------------
    # Connectivity and sync
    # -------------------------------------------------------------------------

    async def submit_action(
        self, session_id: str, action: OfflineAction
    ) -> list[SyncResult]:
        """Queue an action and replay the queue right away when possible."""
        slot = self._slot(session_id)
        slot.offline.enqueue(action)
        async with slot.lock:
            return await self._drain_locked(slot)

    async def set_online(self, online: bool) -> list[SyncResult]:
        """Feed the connectivity signal to every session.

        Going offline takes effect immediately, stopping running drains
        between actions. Coming online replays offline queues and pushes
        pending changes.

        Returns:
            Replay results across all sessions.
        """
        self._online = online
        for slot in self._slots.values():
            slot.engine.set_online(online)
            slot.offline.set_online(online)
        logger.info("connectivity_changed", online=online)
        if not online:
            return []

        results: list[SyncResult] = []
        for session_id, slot in list(self._slots.items()):
            async with slot.lock:
                results.extend(await self._drain_locked(slot))
                try:
                    await self._push_locked(slot)
                except ConflictError:
                    logger.warning("reconnect_sync_failed", session_id=session_id)
        return results

    async def sync(self, session_id: str) -> SyncStatus:
        """Push pending changes now.

        Raises:
            ConflictError: If the remote keeps moving on.
        """
        slot = self._slot(session_id)
        async with slot.lock:
            await self._push_locked(slot)
        return slot.engine.status

    def sync_status(self, session_id: str) -> SyncStatus:
        return self._slot(session_id).engine.status

    async def resolve_conflict(
        self,
        session_id: str,
        conflict_id: str,
        value: Any,
        resolved_by: str,
    ) -> ConflictResolution:
        """Resolve a deferred conflict and write the chosen value.

        Raises:
            ValidationError: If the conflict is unknown or the value is
                invalid for its path.
        """
        slot = self._slot(session_id)
        async with slot.lock:
            conflict = next(
                (
                    c
                    for c in slot.engine.status.conflicts
                    if c.conflict_id == conflict_id
                ),
                None,
            )
            if conflict is None:
                raise ValidationError(f"No unresolved conflict '{conflict_id}'")
            new_state, records = self._stage(
                slot,
                [ProposedChange(conflict.path, value, user_id=resolved_by)],
                ChangeSource.LOCAL,
            )
            resolution = slot.engine.resolve_conflict(conflict_id, value, resolved_by)
            await self._install(slot, new_state, records)
        return resolution

    def update_presence(self, session_id: str, presence: UserPresence) -> None:
        self._slot(session_id).engine.update_presence(presence)

    def active_users(self, session_id: str) -> list[UserPresence]:
        return self._slot(session_id).engine.active_users()

    # -------------------------------------------------------------------------
    # Navigation (read-only)
    # -------------------------------------------------------------------------

    def reachable_paths(self, session_id: str) -> list[NavigationPath]:
        return navigation_advisor.compute_reachable_paths(self._slot(session_id).state)

    def resume_recommendation(self, session_id: str) -> ResumeRecommendation:
        return navigation_advisor.recommend_resume(self._slot(session_id).state)

    def navigation_context(self, session_id: str) -> NavigationContext:
        return navigation_advisor.navigation_context(self._slot(session_id).state)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _slot(self, session_id: str) -> _SessionSlot:
        slot = self._slots.get(session_id)
        if slot is None:
            raise SessionNotFoundError(session_id)
        return slot

    def _new_slot(self, state: EnhancedSessionState) -> _SessionSlot:
        engine = SyncEngine(
            state.session_id,
            self._persistence,
            strategy=self._strategy,
            local_user_id=state.user_id,
            clock=self._clock,
        )
        engine.set_online(self._online)
        return _SessionSlot(
            state=state,
            engine=engine,
            queue=ProcessingQueue(clock=self._clock),
            offline=OfflineActionQueue(online=self._online, clock=self._clock),
        )

    def _attach(self, session_id: str, slot: _SessionSlot) -> None:
        self._slots[session_id] = slot

        async def on_remote_change(stored: StoredSession) -> None:
            await self._receive_remote(session_id, stored)

        slot.unsubscribe_remote = self._persistence.subscribe_remote_changes(
            session_id, on_remote_change
        )

    async def _receive_remote(self, session_id: str, stored: StoredSession) -> None:
        slot = self._slots.get(session_id)
        if slot is None:
            return
        async with slot.lock:
            result = slot.engine.receive_remote(slot.state, stored)
            if result is None:
                return
            slot.state = self._prepare(result.document, touch=False)
            slot.history.extend(result.remote_changes)
            self._notify(slot, result.remote_changes)
        logger.debug(
            "remote_change_applied",
            session_id=session_id,
            sync_version=stored.sync_version,
            changes=len(result.remote_changes),
        )

    async def _mutate(
        self,
        session_id: str,
        build: Callable[[EnhancedSessionState], list[ProposedChange]],
        *,
        source: ChangeSource = ChangeSource.LOCAL,
    ) -> list[StateChange]:
        slot = self._slot(session_id)
        async with slot.lock:
            proposed = build(slot.state.model_copy(deep=True))
            return await self._commit(slot, proposed, source=source)

    async def _commit(
        self,
        slot: _SessionSlot,
        proposed: list[ProposedChange],
        *,
        source: ChangeSource = ChangeSource.LOCAL,
        check_transitions: bool = False,
    ) -> list[StateChange]:
        if not proposed:
            return []
        new_state, records = self._stage(
            slot, proposed, source, check_transitions=check_transitions
        )
        await self._install(slot, new_state, records)
        return records

    async def _install(
        self,
        slot: _SessionSlot,
        new_state: EnhancedSessionState,
        records: list[StateChange],
    ) -> None:
        slot.state = new_state
        slot.history.extend(records)
        for record in records:
            slot.engine.record_local(record)
        self._notify(slot, records)

        if not self._online:
            self._queue_state_update(slot)
        elif self._auto_sync:
            try:
                await self._push_locked(slot)
            except ConflictError as e:
                logger.warning(
                    "auto_sync_failed",
                    session_id=new_state.session_id,
                    attempts=e.attempts,
                )

    def _stage(
        self,
        slot: _SessionSlot,
        proposed: list[ProposedChange],
        source: ChangeSource,
        *,
        check_transitions: bool = False,
    ) -> tuple[EnhancedSessionState, list[StateChange]]:
        """Build the next state without touching the current one.

        With check_transitions, substep statuses written through raw paths
        must follow the substep state machine.
        """
        session_id = slot.state.session_id
        now = self._clock()
        document = slot.state.model_dump(mode="json")
        records: list[StateChange] = []

        for change in proposed:
            try:
                root = split_path(change.path)[0]
            except PathError as e:
                raise ValidationError(str(e.args[0])) from e
            if root in _PROTECTED_PATHS:
                raise ValidationError(
                    f"'{change.path}' cannot be set directly",
                    details=[{"path": change.path}],
                )
            if root not in EnhancedSessionState.model_fields:
                raise ValidationError(
                    f"Unknown session field '{root}'",
                    details=[{"path": change.path}],
                )

            old_value = get_path(document, change.path, _MISSING)
            change_type = change.change_type
            try:
                if change_type == ChangeType.DELETE:
                    if old_value is _MISSING:
                        raise ValidationError(f"Nothing to delete at '{change.path}'")
                    delete_path(document, change.path)
                    new_value = None
                else:
                    new_value = _to_json(change.value)
                    set_path(document, change.path, new_value)
                    if old_value is _MISSING:
                        change_type = ChangeType.CREATE
            except PathError as e:
                raise ValidationError(
                    str(e.args[0]), details=[{"path": change.path}]
                ) from e

            records.append(
                StateChange(
                    session_id=session_id,
                    timestamp=now,
                    change_type=change_type,
                    path=change.path,
                    old_value=None if old_value is _MISSING else old_value,
                    new_value=new_value,
                    user_id=change.user_id,
                    source=source,
                )
            )

        new_state = self._prepare(document, touch=True)
        if check_transitions:
            self._check_substep_transitions(slot.state, new_state)
        self._check_feature_dependencies(slot.state, new_state)
        finished = self._mark_finished_steps(slot.state, new_state, source)
        if finished is not None:
            records.append(finished)
        return new_state, records

    def _prepare(
        self, document: dict[str, Any], *, touch: bool
    ) -> EnhancedSessionState:
        """Validate a document and recompute its derived fields."""
        try:
            state = EnhancedSessionState.model_validate(document)
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Change rejected: session state would be invalid",
                details=[
                    {
                        "field": ".".join(str(loc) for loc in error["loc"]),
                        "error": error["msg"],
                    }
                    for error in e.errors()
                ],
            ) from e

        for progress in state.step_progress.values():
            if progress.substeps:
                progress.completion = step_progress.compute_completion(progress)
        state.progress_percentage = step_progress.compute_overall_progress(
            state.step_progress
        )
        if touch:
            state.last_active_at = self._clock()
            if state.status == SessionStatus.DRAFT:
                state.status = SessionStatus.IN_PROGRESS
        return state

    @staticmethod
    def _check_feature_dependencies(
        before: EnhancedSessionState, after: EnhancedSessionState
    ) -> None:
        previous = set(FeatureStateRegistry.from_session(before).validate_invariants())
        registry = FeatureStateRegistry.from_session(after)
        for feature_id in registry.validate_invariants():
            if feature_id not in previous:
                raise DependencyError(
                    feature_id, registry.unmet_dependencies(feature_id)
                )

    @staticmethod
    def _check_substep_transitions(
        before: EnhancedSessionState, after: EnhancedSessionState
    ) -> None:
        for step, previous in before.step_progress.items():
            progress = after.step_progress.get(step)
            kept = {s.id for s in progress.substeps} if progress else set()
            removed = [s.id for s in previous.substeps if s.id not in kept]
            if progress is None or removed:
                raise ValidationError(
                    f"Progress of step '{step.value}' cannot be removed",
                    details=[{"step": step.value, "substeps": removed}],
                )

        for step, progress in after.step_progress.items():
            previous = before.step_progress.get(step)
            for substep in progress.substeps:
                old = previous.get_substep(substep.id) if previous else None
                current = old.status if old else SubstepStatus.PENDING
                if substep.status == current or step_progress.is_valid_transition(
                    current, substep.status
                ):
                    continue
                raise InvalidTransitionError(
                    subject=f"substep '{substep.id}'",
                    current=current.value,
                    target=substep.status.value,
                    valid_targets=[
                        s.value for s in step_progress.get_valid_transitions(current)
                    ],
                )

    def _mark_finished_steps(
        self,
        before: EnhancedSessionState,
        after: EnhancedSessionState,
        source: ChangeSource,
    ) -> StateChange | None:
        """Add steps that just reached 100% to completed_steps."""
        finished = [
            step
            for step, progress in after.step_progress.items()
            if progress.substeps
            and progress.completion == 100
            and step not in after.completed_steps
            and (
                step not in before.step_progress
                or before.step_progress[step].completion < 100
            )
        ]
        if not finished:
            return None
        old_value = _to_json(after.completed_steps)
        after.completed_steps = [*after.completed_steps, *finished]
        return StateChange(
            session_id=after.session_id,
            timestamp=self._clock(),
            change_type=ChangeType.UPDATE,
            path="completed_steps",
            old_value=old_value,
            new_value=_to_json(after.completed_steps),
            source=source,
        )

    def _substep_changes(
        self,
        state: EnhancedSessionState,
        step: CVStep,
        substep_id: str,
        status: SubstepStatus,
        validation_errors: list[str] | None,
        user_id: str | None,
    ) -> list[ProposedChange]:
        progress: StepProgressState = state.step_progress.get(step) or (
            step_progress.create_step_progress(step, self._clock())
        )
        updated = step_progress.transition_substep(
            progress, substep_id, status, self._clock(), validation_errors
        )
        proposed = [
            ProposedChange(f"step_progress.{step.value}", updated, user_id=user_id)
        ]
        if updated.completion == 100 and step not in state.completed_steps:
            proposed.append(
                ProposedChange(
                    "completed_steps", [*state.completed_steps, step], user_id=user_id
                )
            )
        return proposed

    def _checkpoint_changes(self, slot: _SessionSlot) -> list[ProposedChange]:
        checkpoints = slot.queue.checkpoints()
        if checkpoints == slot.state.processing_checkpoints:
            return []
        return [ProposedChange("processing_checkpoints", checkpoints)]

    async def _fold_job_result(self, slot: _SessionSlot, result: JobRunResult) -> None:
        job = result.job
        session_id = slot.state.session_id
        proposed = self._checkpoint_changes(slot)

        if result.succeeded:
            logger.info("job_completed", session_id=session_id, job_id=job.id)
            if job.step is not None and job.substep_id is not None:
                proposed.extend(
                    self._complete_substep_changes(
                        slot.state, job.step, job.substep_id
                    )
                )
        elif result.terminal_error is not None:
            failure = JobFailure(
                job_id=job.id,
                job_type=job.type,
                step=job.step,
                error=result.terminal_error.last_error,
                failed_at=job.failed_at or self._clock(),
            )
            slot.failures.append(failure)
            proposed.append(
                ProposedChange(
                    "last_error", f"Job {job.id} failed: {failure.error}"
                )
            )
            proposed.append(
                ProposedChange(
                    "performance_metrics.error_count",
                    slot.state.performance_metrics.error_count + 1,
                )
            )
            logger.error(
                "job_failed_permanently",
                session_id=session_id,
                job_id=job.id,
                job_type=job.type.value,
                error=failure.error,
            )

        await self._commit(slot, proposed, source=ChangeSource.SYSTEM)

    def _complete_substep_changes(
        self, state: EnhancedSessionState, step: CVStep, substep_id: str
    ) -> list[ProposedChange]:
        progress = state.step_progress.get(step) or (
            step_progress.create_step_progress(step, self._clock())
        )
        substep = progress.get_substep(substep_id)
        if substep is None or substep.is_done:
            return []
        working = state.model_copy(deep=True)
        if substep.status != SubstepStatus.IN_PROGRESS:
            working.step_progress[step] = step_progress.transition_substep(
                progress, substep_id, SubstepStatus.IN_PROGRESS, self._clock()
            )
        return self._substep_changes(
            working, step, substep_id, SubstepStatus.COMPLETED, None, None
        )

    def _queue_state_update(self, slot: _SessionSlot) -> None:
        if any(
            action.type == OfflineActionType.STATE_UPDATE
            for action in slot.offline.pending()
        ):
            return
        slot.offline.enqueue(
            OfflineAction(
                type=OfflineActionType.STATE_UPDATE,
                payload={"session_id": slot.state.session_id},
                timestamp=self._clock(),
            )
        )

    async def _drain_locked(self, slot: _SessionSlot) -> list[SyncResult]:
        executor = _StoreActionExecutor(self, slot, self._action_executor)
        return await slot.offline.drain(executor)

    async def _push_locked(self, slot: _SessionSlot) -> bool:
        outcome = await slot.engine.push(
            slot.state, lambda document: self._prepare(document, touch=False)
        )
        if outcome.state is not None:
            slot.state = outcome.state
            slot.history.extend(outcome.remote_changes)
            self._notify(slot, outcome.remote_changes)
        deferred = [r for r in outcome.resolutions if not r.is_resolved]
        if deferred:
            logger.warning(
                "sync_conflicts_deferred",
                session_id=slot.state.session_id,
                paths=[r.path for r in deferred],
            )
        return outcome.pushed

    def _notify(self, slot: _SessionSlot, changes: list[StateChange]) -> None:
        slot.unnotified.extend(changes)
        if slot.notify_scheduled:
            return
        slot.notify_scheduled = True
        asyncio.get_running_loop().call_soon(self._flush_notifications, slot)

    def _flush_notifications(self, slot: _SessionSlot) -> None:
        changes = slot.unnotified
        slot.unnotified = []
        slot.notify_scheduled = False
        for listener in list(slot.listeners):
            try:
                listener(slot.state.model_copy(deep=True), list(changes))
            except Exception:  # noqa: BLE001
                logger.exception(
                    "session_listener_failed", session_id=slot.state.session_id
                )
