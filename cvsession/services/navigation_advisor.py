"""Navigation advisor.

Pure functions over an EnhancedSessionState that describe where the user
can go and where a reopened session should resume. Nothing here mutates the
state it is given.

A step is accessible when every prerequisite is in completed_steps or is
covered by a skippable checkpoint for that step.
"""

from dataclasses import dataclass

from cvsession.models.features import RuleAction
from cvsession.models.navigation import (
    AlternativeResumeOption,
    NavigationContext,
    NavigationPath,
    ResumePriority,
    ResumeRecommendation,
)
from cvsession.models.processing import CheckpointState
from cvsession.models.session import EnhancedSessionState
from cvsession.models.steps import WIZARD_STEPS, CVStep

# =============================================================================
# Route Definitions
# =============================================================================


@dataclass(frozen=True)
class RouteDefinition:
    """Static metadata for a wizard step.

    Attributes:
        step: The step.
        path: URL path template; {session_id} is substituted.
        title: Display title.
        description: Short description.
        required_data: Inputs the step works on.
        estimated_minutes: Typical time to complete the step.
    """

    step: CVStep
    path: str
    title: str
    description: str
    required_data: tuple[str, ...]
    estimated_minutes: int


# (step, title, description, required data, estimated minutes)
_ROUTE_TABLE: tuple[tuple[CVStep, str, str, tuple[str, ...], int], ...] = (
    (CVStep.UPLOAD, "Upload CV", "Upload your CV file", (), 2),
    (CVStep.PROCESSING, "Processing", "AI is analyzing your CV", ("file_data",), 3),
    (
        CVStep.ANALYSIS,
        "Analysis Results",
        "Review AI analysis",
        ("cv_data", "analysis_results"),
        5,
    ),
    (
        CVStep.FEATURES,
        "Select Features",
        "Choose enhancement features",
        ("analysis_results",),
        4,
    ),
    (
        CVStep.TEMPLATES,
        "Choose Template",
        "Select CV template",
        ("selected_features",),
        3,
    ),
    (
        CVStep.PREVIEW,
        "Preview CV",
        "Review your enhanced CV",
        ("template_selection", "feature_configuration"),
        5,
    ),
    (
        CVStep.RESULTS,
        "Final Results",
        "Download and share your CV",
        ("generated_cv",),
        2,
    ),
    (
        CVStep.KEYWORDS,
        "Keyword Optimization",
        "Optimize keywords for ATS",
        ("analysis_results",),
        4,
    ),
    (
        CVStep.COMPLETED,
        "Completed",
        "CV enhancement completed",
        ("final_results",),
        1,
    ),
)

ROUTES: dict[CVStep, RouteDefinition] = {
    step: RouteDefinition(
        step=step,
        path=f"/{step.value}/{{session_id}}",
        title=title,
        description=description,
        required_data=required_data,
        estimated_minutes=minutes,
    )
    for step, title, description, required_data, minutes in _ROUTE_TABLE
}

PREREQUISITES: dict[CVStep, tuple[CVStep, ...]] = {
    CVStep.UPLOAD: (),
    CVStep.PROCESSING: (CVStep.UPLOAD,),
    CVStep.ANALYSIS: (CVStep.UPLOAD, CVStep.PROCESSING),
    CVStep.FEATURES: (CVStep.ANALYSIS,),
    CVStep.TEMPLATES: (CVStep.ANALYSIS,),
    CVStep.PREVIEW: (CVStep.ANALYSIS, CVStep.FEATURES, CVStep.TEMPLATES),
    CVStep.RESULTS: (CVStep.PREVIEW,),
    CVStep.KEYWORDS: (CVStep.ANALYSIS,),
    CVStep.COMPLETED: (CVStep.RESULTS,),
}

REQUIRED_STEPS = frozenset({CVStep.UPLOAD, CVStep.PROCESSING, CVStep.ANALYSIS})

# Main flow excludes the optional keywords step and the terminal step.
MAIN_FLOW: tuple[CVStep, ...] = tuple(
    step for step in WIZARD_STEPS if step not in (CVStep.KEYWORDS, CVStep.COMPLETED)
)

_BASE_CONFIDENCE = 0.9
_MIN_CONFIDENCE = 0.1


def step_url(session_id: str, step: CVStep, substep: str | None = None) -> str:
    """Deep link to a step (and optionally a substep) of a session."""
    path = ROUTES[step].path.format(session_id=session_id)
    return f"{path}/{substep}" if substep else path


# =============================================================================
# Reachability
# =============================================================================


def _satisfied(state: EnhancedSessionState, step: CVStep) -> bool:
    if step in state.completed_steps:
        return True
    return any(cp.can_skip for cp in state.checkpoints_for_step(step))


def compute_reachable_paths(state: EnhancedSessionState) -> list[NavigationPath]:
    """Reachability of every step, in flow order."""
    paths = []
    for step in WIZARD_STEPS:
        route = ROUTES[step]
        prerequisites = list(PREREQUISITES[step])
        missing = [p for p in prerequisites if not _satisfied(state, p)]
        directive = state.step_directives.get(step)
        accessible = not missing
        reason = None
        if missing:
            reason = "Complete first: " + ", ".join(ROUTES[p].title for p in missing)
        if directive == RuleAction.DISABLE:
            accessible = False
            reason = "Disabled by a feature rule"

        progress = state.step_progress.get(step)
        warnings = list(progress.blockers) if progress else []
        if directive == RuleAction.RECOMMEND:
            warnings.append("Recommended by a feature rule")

        paths.append(
            NavigationPath(
                step=step,
                url=step_url(state.session_id, step),
                label=route.title,
                accessible=accessible,
                completed=step in state.completed_steps,
                required=step in REQUIRED_STEPS or directive == RuleAction.REQUIRE,
                hidden=directive == RuleAction.HIDE,
                estimated_time_minutes=route.estimated_minutes,
                prerequisites=prerequisites,
                reason=reason,
                warnings=warnings,
            )
        )
    return paths


# =============================================================================
# Resume Recommendation
# =============================================================================


def _step_completion(state: EnhancedSessionState, step: CVStep) -> int:
    if step in state.completed_steps:
        return 100
    progress = state.step_progress.get(step)
    return progress.completion if progress else 0


def _remaining_minutes(state: EnhancedSessionState, steps: tuple[CVStep, ...]) -> int:
    total = 0.0
    for step in steps:
        if step in state.completed_steps:
            continue
        total += ROUTES[step].estimated_minutes * (
            100 - _step_completion(state, step)
        ) / 100
    return round(total)


def _step_issues(state: EnhancedSessionState, step: CVStep) -> list[str]:
    issues: list[str] = []
    progress = state.step_progress.get(step)
    if progress:
        issues.extend(f"Blocker: {blocker}" for blocker in progress.blockers)
        for substep in progress.substeps:
            issues.extend(
                f"{substep.name}: {error}" for error in substep.validation_errors
            )
    issues.extend(
        f"Validation: {error}"
        for error in state.validation_results.errors_for_step(step)
    )
    issues.extend(
        f"Failed operation: {cp.resume_data.function_name}"
        + (f" ({cp.error_recovery.last_error})" if cp.error_recovery.last_error else "")
        for cp in state.checkpoints_for_step(step)
        if cp.state == CheckpointState.FAILED
    )
    return issues


def _confidence(state: EnhancedSessionState, step: CVStep) -> float:
    progress = state.step_progress.get(step)
    penalty = 0.0
    if progress:
        penalty += 0.1 * len(progress.blockers)
        penalty += 0.05 * sum(len(s.validation_errors) for s in progress.substeps)
    penalty += 0.05 * len(state.validation_results.errors_for_step(step))
    penalty += 0.15 * sum(
        1
        for cp in state.checkpoints_for_step(step)
        if cp.state == CheckpointState.FAILED
    )
    return round(max(_MIN_CONFIDENCE, _BASE_CONFIDENCE - penalty), 2)


def _priority(state: EnhancedSessionState) -> ResumePriority:
    failed = any(
        cp.state == CheckpointState.FAILED for cp in state.processing_checkpoints
    )
    if failed or state.progress_percentage >= 50:
        return ResumePriority.HIGH
    if state.progress_percentage > 0 or state.completed_steps:
        return ResumePriority.MEDIUM
    return ResumePriority.LOW


def recommend_resume(state: EnhancedSessionState) -> ResumeRecommendation:
    """Pick where a reopened session should resume.

    The most advanced main-flow step that is accessible, visible and not
    complete wins. The optional keywords step is suggested only once the
    main flow is exhausted, and the completed step only after that.
    """
    paths = {path.step: path for path in compute_reachable_paths(state)}
    open_steps = [
        step
        for step in WIZARD_STEPS
        if paths[step].accessible
        and not paths[step].completed
        and not paths[step].hidden
    ]
    open_main = [step for step in MAIN_FLOW if step in open_steps]

    if open_main:
        recommended = open_main[-1]
        reason = (
            f"Continue with {ROUTES[recommended].title}, "
            "the furthest step you can work on"
        )
    elif CVStep.KEYWORDS in open_steps:
        recommended = CVStep.KEYWORDS
        reason = "Main flow is done; optimize keywords for ATS"
    elif CVStep.COMPLETED in open_steps:
        recommended = CVStep.COMPLETED
        reason = "Everything is ready; confirm completion"
    else:
        recommended = state.current_step
        reason = "All steps are complete"

    alternatives = _alternatives(state, recommended, open_steps)
    issues = _step_issues(state, recommended)
    if state.last_error:
        issues.append(f"Last error: {state.last_error}")

    return ResumeRecommendation(
        recommended_step=recommended,
        reason=reason,
        time_to_complete=_remaining_minutes(state, MAIN_FLOW + (CVStep.COMPLETED,)),
        confidence=_confidence(state, recommended),
        priority=_priority(state),
        alternative_options=alternatives,
        required_data=list(ROUTES[recommended].required_data),
        warnings=issues,
    )


def _alternatives(
    state: EnhancedSessionState, recommended: CVStep, open_steps: list[CVStep]
) -> list[AlternativeResumeOption]:
    first_open = open_steps[0] if open_steps else recommended
    options = [
        AlternativeResumeOption(
            step=first_open,
            reason="Start over from the first incomplete step",
            time_to_complete=_remaining_minutes(state, MAIN_FLOW),
            confidence=round(
                max(_MIN_CONFIDENCE, _confidence(state, first_open) - 0.2), 2
            ),
            pros=["Review every remaining step in order"],
            cons=["Revisits steps you may not need"],
        )
    ]
    if state.current_step != recommended and state.current_step in open_steps:
        options.append(
            AlternativeResumeOption(
                step=state.current_step,
                reason="Continue where you left off",
                time_to_complete=ROUTES[state.current_step].estimated_minutes,
                confidence=round(
                    max(_MIN_CONFIDENCE, _confidence(state, state.current_step) - 0.1),
                    2,
                ),
                pros=["Picks up exactly where you stopped"],
                cons=["May not be the fastest way to finish"],
            )
        )
    if CVStep.KEYWORDS in open_steps and recommended != CVStep.KEYWORDS:
        options.append(
            AlternativeResumeOption(
                step=CVStep.KEYWORDS,
                reason="Optimize keywords for ATS",
                time_to_complete=ROUTES[CVStep.KEYWORDS].estimated_minutes,
                confidence=0.5,
                pros=["Improves ATS matching"],
                cons=["Optional step"],
            )
        )
    return options


# =============================================================================
# Navigation Context
# =============================================================================


def navigation_context(state: EnhancedSessionState) -> NavigationContext:
    """Summarize available and blocked steps for the current session."""
    paths = compute_reachable_paths(state)
    available = [p for p in paths if p.accessible and not p.hidden]
    blocked = [p for p in paths if not p.accessible]
    critical = _step_issues(state, state.current_step)
    if state.last_error:
        critical.append(state.last_error)
    return NavigationContext(
        session_id=state.session_id,
        current_path=step_url(state.session_id, state.current_step),
        available_paths=available,
        blocked_paths=blocked,
        recommended_next_steps=[p.step for p in available if not p.completed][:3],
        completion_percentage=state.progress_percentage,
        critical_issues=critical,
    )
