"""Step progress tracker.

Pure derivation of StepProgressState and overall session completion from
substep events. Every function takes the records it works on and returns
updated copies; inputs are never mutated, so a raised error leaves the
caller's state untouched.

Substep state machine:
- pending -> in_progress
- in_progress -> completed, error, skipped
- error -> in_progress (retry after fixing validation errors)
- completed, skipped -> (terminal)

Re-applying the current status is a no-op.
"""

import math
from collections.abc import Mapping
from datetime import UTC, datetime

from cvsession.core.errors import InvalidTransitionError, ValidationError
from cvsession.models.progress import (
    StepProgressState,
    SubstepProgress,
    SubstepStatus,
    UserInteraction,
)
from cvsession.models.steps import WIZARD_STEPS, CVStep

# =============================================================================
# Substep Catalog
# =============================================================================

# Default substeps seeded when a step is first visited: (id, display name).
DEFAULT_SUBSTEPS: dict[CVStep, list[tuple[str, str]]] = {
    CVStep.UPLOAD: [
        ("file-select", "Select CV file"),
        ("file-validate", "Validate file"),
        ("file-upload", "Upload file"),
    ],
    CVStep.PROCESSING: [
        ("text-extract", "Extract text"),
        ("ai-analysis", "AI analysis"),
        ("structure-parse", "Parse structure"),
    ],
    CVStep.ANALYSIS: [
        ("content-analyze", "Analyze content"),
        ("improvements-identify", "Identify improvements"),
        ("keywords-extract", "Extract keywords"),
    ],
    CVStep.FEATURES: [
        ("features-select", "Select features"),
        ("features-configure", "Configure features"),
        ("features-validate", "Validate feature selection"),
    ],
    CVStep.TEMPLATES: [
        ("template-select", "Select template"),
        ("template-customize", "Customize template"),
        ("template-preview", "Preview template"),
    ],
    CVStep.PREVIEW: [
        ("cv-generate", "Generate CV"),
        ("cv-review", "Review CV"),
        ("cv-approve", "Approve CV"),
    ],
    CVStep.RESULTS: [
        ("results-display", "Display results"),
        ("results-download", "Download results"),
        ("results-share", "Share results"),
    ],
    CVStep.KEYWORDS: [
        ("keywords-review", "Review keywords"),
        ("keywords-optimize", "Optimize keywords"),
        ("keywords-apply", "Apply keywords"),
    ],
    CVStep.COMPLETED: [
        ("completion-confirm", "Confirm completion"),
    ],
}

# =============================================================================
# State Machine Definition
# =============================================================================

_VALID_TRANSITIONS: dict[SubstepStatus, list[SubstepStatus]] = {
    SubstepStatus.PENDING: [SubstepStatus.IN_PROGRESS],
    SubstepStatus.IN_PROGRESS: [
        SubstepStatus.COMPLETED,
        SubstepStatus.ERROR,
        SubstepStatus.SKIPPED,
    ],
    SubstepStatus.ERROR: [SubstepStatus.IN_PROGRESS],
    SubstepStatus.COMPLETED: [],  # Terminal state
    SubstepStatus.SKIPPED: [],  # Terminal state
}


def is_valid_transition(current: SubstepStatus, target: SubstepStatus) -> bool:
    """Check if a substep status transition is allowed."""
    return target in _VALID_TRANSITIONS.get(current, [])


def get_valid_transitions(status: SubstepStatus) -> list[SubstepStatus]:
    """Get valid target statuses from the current substep status."""
    return _VALID_TRANSITIONS.get(status, [])


# =============================================================================
# Public Functions
# =============================================================================


def create_step_progress(
    step: CVStep, now: datetime | None = None
) -> StepProgressState:
    """Create the progress record for a step on its first visit.

    Args:
        step: The step being visited.
        now: Creation time. Defaults to the current UTC time.

    Returns:
        A StepProgressState seeded with the step's default substeps.
    """
    return StepProgressState(
        step_id=step,
        substeps=[
            SubstepProgress(id=substep_id, name=name)
            for substep_id, name in DEFAULT_SUBSTEPS.get(step, [])
        ],
        last_modified=now or datetime.now(UTC),
    )


def compute_completion(progress: StepProgressState) -> int:
    """Percentage of substeps that are completed or skipped, rounded down.

    A step with no substeps reports 0; its completion must be driven
    externally.
    """
    total = len(progress.substeps)
    if total == 0:
        return 0
    done = sum(1 for substep in progress.substeps if substep.is_done)
    return math.floor(done * 100 / total)


def compute_overall_progress(step_progress: Mapping[CVStep, StepProgressState]) -> int:
    """Average step completion over the fixed wizard step count, rounded down.

    Steps without a progress record count as 0.
    """
    total = sum(
        step_progress[step].completion for step in WIZARD_STEPS if step in step_progress
    )
    return math.floor(total / len(WIZARD_STEPS))


def record_interaction(
    progress: StepProgressState,
    interaction: UserInteraction,
    now: datetime | None = None,
) -> StepProgressState:
    """Append a user interaction to a step.

    Returns:
        Updated copy of the progress record.
    """
    updated = progress.model_copy(deep=True)
    updated.user_interactions.append(interaction.model_copy(deep=True))
    updated.last_modified = now or datetime.now(UTC)
    return updated


def transition_substep(
    progress: StepProgressState,
    substep_id: str,
    new_status: SubstepStatus,
    now: datetime | None = None,
    validation_errors: list[str] | None = None,
) -> StepProgressState:
    """Move a substep to a new status and recompute step completion.

    Time spent in IN_PROGRESS is added to the step when the substep leaves
    that status.

    Args:
        progress: Current progress record (not mutated).
        substep_id: Substep to transition.
        new_status: Target status.
        now: Transition time. Defaults to the current UTC time.
        validation_errors: Errors to record when entering ERROR.

    Returns:
        Updated copy of the progress record.

    Raises:
        ValidationError: If the substep does not exist.
        InvalidTransitionError: If the transition is not allowed.
    """
    if progress.get_substep(substep_id) is None:
        raise ValidationError(
            f"Unknown substep '{substep_id}' in step '{progress.step_id.value}'",
            details=[{"step": progress.step_id.value, "substep_id": substep_id}],
        )

    updated = progress.model_copy(deep=True)
    substep = updated.get_substep(substep_id)
    assert substep is not None  # nosec B101 - checked above

    if substep.status == new_status:
        return updated

    if not is_valid_transition(substep.status, new_status):
        raise InvalidTransitionError(
            subject=f"substep '{substep_id}'",
            current=substep.status.value,
            target=new_status.value,
            valid_targets=[s.value for s in get_valid_transitions(substep.status)],
        )

    now = now or datetime.now(UTC)
    if substep.status == SubstepStatus.IN_PROGRESS and substep.started_at:
        elapsed = now - substep.started_at
        updated.time_spent_ms += max(0, int(elapsed.total_seconds() * 1000))

    substep.status = new_status
    if new_status == SubstepStatus.IN_PROGRESS:
        substep.started_at = now
        substep.validation_errors = []
    elif new_status == SubstepStatus.ERROR:
        substep.validation_errors = list(validation_errors or [])
    else:
        substep.completed_at = now

    updated.completion = compute_completion(updated)
    updated.last_modified = now
    return updated


def complete_all_substeps(
    progress: StepProgressState, now: datetime | None = None
) -> StepProgressState:
    """Drive every unfinished substep through to COMPLETED.

    Used when a whole step is completed at once. Substeps in ERROR are
    retried first.
    """
    updated = progress
    for substep in progress.substeps:
        if substep.is_done:
            continue
        if substep.status in (SubstepStatus.PENDING, SubstepStatus.ERROR):
            updated = transition_substep(
                updated, substep.id, SubstepStatus.IN_PROGRESS, now
            )
        updated = transition_substep(updated, substep.id, SubstepStatus.COMPLETED, now)
    return updated if updated is not progress else progress.model_copy(deep=True)


def add_blocker(progress: StepProgressState, blocker: str) -> StepProgressState:
    """Record a blocker description on a step. Duplicates are ignored."""
    updated = progress.model_copy(deep=True)
    if blocker not in updated.blockers:
        updated.blockers.append(blocker)
    return updated


def clear_blockers(progress: StepProgressState) -> StepProgressState:
    updated = progress.model_copy(deep=True)
    updated.blockers = []
    return updated


def estimate_time_to_complete(progress: StepProgressState) -> int | None:
    """Estimate remaining milliseconds from the average time per finished substep.

    Returns:
        None until at least one substep is done and some time was recorded.
    """
    done = sum(1 for substep in progress.substeps if substep.is_done)
    remaining = len(progress.substeps) - done
    if remaining == 0:
        return 0
    if done == 0 or progress.time_spent_ms == 0:
        return None
    return (progress.time_spent_ms // done) * remaining
