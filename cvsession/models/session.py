"""EnhancedSessionState aggregate root.

One EnhancedSessionState exists per wizard run. The session store owns and
mutates it; every other component reads copies and proposes changes through
the store.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from cvsession.models.features import FeatureState, RuleAction
from cvsession.models.navigation import NavigationState
from cvsession.models.processing import ProcessingCheckpoint
from cvsession.models.progress import StepProgressState
from cvsession.models.steps import CVStep, SessionStatus


def _now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Pass-through snapshots
# =============================================================================


class FormSettings(BaseModel):
    """Quick-create preferences captured on the upload page."""

    model_config = ConfigDict(extra="forbid")

    apply_all_enhancements: bool = False
    generate_all_formats: bool = False
    enable_pii_protection: bool = False
    create_podcast: bool = False
    use_recommended_template: bool = False


class SessionFormData(BaseModel):
    """Form input collected across wizard pages.

    Section maps (personal_info, work_experience, ...) are opaque to the
    engine and only passed through to persistence.
    """

    model_config = ConfigDict(extra="forbid")

    file_url: str | None = None
    user_instructions: str | None = None
    selected_template_id: str | None = None
    selected_features: list[str] = Field(default_factory=list)
    target_role: str | None = None
    industry_keywords: list[str] = Field(default_factory=list)
    job_description: str | None = None
    quick_create: bool = False
    settings: FormSettings = Field(default_factory=FormSettings)
    personal_info: dict[str, Any] = Field(default_factory=dict)
    work_experience: dict[str, Any] = Field(default_factory=dict)
    education: dict[str, Any] = Field(default_factory=dict)
    skills: dict[str, Any] = Field(default_factory=dict)
    customizations: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class UIStateSnapshot(BaseModel):
    """UI state captured by the view layer. Opaque to the engine."""

    model_config = ConfigDict(extra="allow")

    current_url: str = ""
    previous_urls: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Validation outcome for one field."""

    model_config = ConfigDict(extra="forbid")

    field: str
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_now)


class ValidationStateSnapshot(BaseModel):
    """Latest validation results, grouped by form and by step."""

    model_config = ConfigDict(extra="forbid")

    form_validations: dict[str, list[ValidationResult]] = Field(default_factory=dict)
    step_validations: dict[CVStep, list[ValidationResult]] = Field(
        default_factory=dict
    )
    global_validations: list[ValidationResult] = Field(default_factory=list)
    last_validated_at: datetime | None = None
    validation_version: str = "1.0.0"

    def errors_for_step(self, step: CVStep) -> list[str]:
        """Flatten the validation errors recorded for a step."""
        return [
            error
            for result in self.step_validations.get(step, [])
            if not result.valid
            for error in result.errors
        ]


class PerformanceMetrics(BaseModel):
    """Client-side performance counters."""

    model_config = ConfigDict(extra="forbid")

    load_time_ms: int = 0
    interaction_count: int = 0
    error_count: int = 0
    average_response_time_ms: float = 0.0
    memory_usage: int | None = None


class ContextData(BaseModel):
    """Environment the session was last used from."""

    model_config = ConfigDict(extra="forbid")

    user_agent: str = ""
    screen_width: int | None = None
    screen_height: int | None = None
    timezone: str = "UTC"
    language: str = "en"
    feature_flags: dict[str, bool] = Field(default_factory=dict)
    experiments: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Aggregate
# =============================================================================


class EnhancedSessionState(BaseModel):
    """Root aggregate for one wizard run.

    progress_percentage and each StepProgressState.completion are derived
    values. The session store recomputes them on every applied change and
    refuses direct writes to progress_percentage.

    Attributes:
        session_id: Immutable session identifier.
        user_id: Owning user, if signed in.
        job_id: Backend CV job, once uploaded.
        current_step: Step the user is on.
        completed_steps: Steps marked complete, without duplicates.
        progress_percentage: Derived overall completion, 0-100.
        status: Session lifecycle status.
        created_at: Immutable creation time.
        last_active_at: Last applied change.
        schema_version: Schema version the document was written with.
        form_data: Collected form input.
        last_error: Last surfaced background failure.
        can_resume: Whether the session may be resumed.
        migration_history: Schema migrations applied to the document.
        step_progress: Per-step progress, keyed by step.
        feature_states: Per-feature toggle state, keyed by feature id.
        processing_checkpoints: Resumability records for backend work.
        step_directives: Latest rule directive per step (hide, show, ...).
        ui_state: Opaque UI snapshot.
        validation_results: Latest validation results.
        navigation_history: Visited steps in order.
        performance_metrics: Client performance counters.
        context_data: Client environment.
    """

    model_config = ConfigDict(extra="forbid")

    session_id: str
    user_id: str | None = None
    job_id: str | None = None
    current_step: CVStep = CVStep.UPLOAD
    completed_steps: list[CVStep] = Field(default_factory=list)
    progress_percentage: int = Field(default=0, ge=0, le=100)
    status: SessionStatus = SessionStatus.DRAFT
    created_at: datetime = Field(default_factory=_now)
    last_active_at: datetime = Field(default_factory=_now)
    schema_version: str = "1.0.0"
    form_data: SessionFormData = Field(default_factory=SessionFormData)
    last_error: str | None = None
    can_resume: bool = True
    migration_history: list[str] = Field(default_factory=list)

    step_progress: dict[CVStep, StepProgressState] = Field(default_factory=dict)
    feature_states: dict[str, FeatureState] = Field(default_factory=dict)
    processing_checkpoints: list[ProcessingCheckpoint] = Field(default_factory=list)
    step_directives: dict[CVStep, RuleAction] = Field(default_factory=dict)
    ui_state: UIStateSnapshot = Field(default_factory=UIStateSnapshot)
    validation_results: ValidationStateSnapshot = Field(
        default_factory=ValidationStateSnapshot
    )
    navigation_history: list[NavigationState] = Field(default_factory=list)
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    context_data: ContextData = Field(default_factory=ContextData)

    @model_validator(mode="after")
    def check_aggregate_consistency(self) -> "EnhancedSessionState":
        """Enforce the structural invariants of the aggregate."""
        if len(self.completed_steps) != len(set(self.completed_steps)):
            msg = "completed_steps must not contain duplicates"
            raise ValueError(msg)
        for step, progress in self.step_progress.items():
            if progress.step_id != step:
                msg = (
                    f"step_progress key '{step.value}' does not match "
                    f"step_id '{progress.step_id.value}'"
                )
                raise ValueError(msg)
        for feature_id, feature in self.feature_states.items():
            if feature.feature_id != feature_id:
                msg = (
                    f"feature_states key '{feature_id}' does not match "
                    f"feature_id '{feature.feature_id}'"
                )
                raise ValueError(msg)
        return self

    def checkpoints_for_step(self, step: CVStep) -> list[ProcessingCheckpoint]:
        """Checkpoints attached to a step, oldest first."""
        return [cp for cp in self.processing_checkpoints if cp.step_id == step]
