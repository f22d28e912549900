"""Navigation guidance records produced by the navigation advisor."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cvsession.models.steps import CVStep


def _now() -> datetime:
    return datetime.now(UTC)


class NavigationState(BaseModel):
    """One entry in a session's navigation history."""

    model_config = ConfigDict(extra="forbid")

    session_id: str
    step: CVStep
    substep: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)
    url: str
    referrer: str | None = None
    transition: str = "push"


class NavigationPath(BaseModel):
    """Reachability of one wizard step.

    Attributes:
        step: The step.
        url: Deep link to the step for this session.
        label: Display title.
        accessible: All prerequisites are satisfied.
        completed: The step is in completed_steps.
        required: The step is part of the mandatory flow.
        hidden: A rule directive hides the step.
        estimated_time_minutes: Rough time to complete the step.
        prerequisites: Steps that must be completed first.
        reason: Why the step is not accessible.
        warnings: Non-blocking notes (blockers, rule directives).
    """

    step: CVStep
    url: str
    label: str
    accessible: bool
    completed: bool
    required: bool
    hidden: bool = False
    estimated_time_minutes: int = 0
    prerequisites: list[CVStep] = Field(default_factory=list)
    reason: str | None = None
    warnings: list[str] = Field(default_factory=list)


class ResumePriority(str, Enum):
    """Urgency of resuming a session."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AlternativeResumeOption(BaseModel):
    """A secondary place to resume from."""

    step: CVStep
    reason: str
    time_to_complete: int
    confidence: float = Field(ge=0.0, le=1.0)
    pros: list[str] = Field(default_factory=list)
    cons: list[str] = Field(default_factory=list)


class ResumeRecommendation(BaseModel):
    """Ranked guidance on where to resume a reopened session.

    Attributes:
        recommended_step: Step to resume at.
        reason: Human-readable explanation.
        time_to_complete: Estimated minutes left across incomplete steps.
        confidence: 0-1 confidence in the recommendation.
        priority: Urgency of resuming.
        alternative_options: Always at least one alternative.
        required_data: Inputs the recommended step still needs.
        warnings: Blockers, validation errors and failed operations.
    """

    recommended_step: CVStep
    reason: str
    time_to_complete: int
    confidence: float = Field(ge=0.0, le=1.0)
    priority: ResumePriority = ResumePriority.MEDIUM
    alternative_options: list[AlternativeResumeOption] = Field(min_length=1)
    required_data: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class NavigationContext(BaseModel):
    """Summary of where the user is and where they can go."""

    session_id: str
    current_path: str
    available_paths: list[NavigationPath] = Field(default_factory=list)
    blocked_paths: list[NavigationPath] = Field(default_factory=list)
    recommended_next_steps: list[CVStep] = Field(default_factory=list)
    completion_percentage: int = 0
    critical_issues: list[str] = Field(default_factory=list)
