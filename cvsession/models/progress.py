"""Per-step progress records.

A StepProgressState is created lazily the first time a step is visited and
is never deleted while the session is alive. Its completion is derived from
its substeps by the step progress tracker.
"""

import math
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from cvsession.models.steps import CVStep


def _now() -> datetime:
    return datetime.now(UTC)


class SubstepStatus(str, Enum):
    """Status of a single substep."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ERROR = "error"


class InteractionType(str, Enum):
    """Kinds of user interaction recorded against a step."""

    CLICK = "click"
    INPUT = "input"
    NAVIGATION = "navigation"
    FORM_SUBMIT = "form_submit"
    FILE_UPLOAD = "file_upload"


class UserInteraction(BaseModel):
    """A single recorded user interaction."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: InteractionType
    timestamp: datetime = Field(default_factory=_now)
    element: str | None = None
    # Any: interaction payloads are produced by the UI and passed through.
    data: dict[str, Any] = Field(default_factory=dict)


class SubstepProgress(BaseModel):
    """Progress of one substep within a step.

    Attributes:
        id: Substep identifier, unique within its step.
        name: Display name.
        status: Current substep status.
        data: Opaque substep data captured by the UI.
        validation_errors: Errors recorded when the substep entered ERROR.
        started_at: When the substep last entered IN_PROGRESS.
        completed_at: When the substep reached COMPLETED or SKIPPED.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    status: SubstepStatus = SubstepStatus.PENDING
    data: dict[str, Any] = Field(default_factory=dict)
    validation_errors: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_done(self) -> bool:
        """True when the substep counts toward completion."""
        return self.status in (SubstepStatus.COMPLETED, SubstepStatus.SKIPPED)


class StepProgressState(BaseModel):
    """Fine-grained progress for one wizard step.

    Attributes:
        step_id: The step this record tracks.
        substeps: Ordered substeps.
        completion: Percentage 0-100 derived from substeps.
        time_spent_ms: Cumulative milliseconds spent in in-progress substeps.
        user_interactions: Interactions recorded on this step.
        last_modified: Last time this record changed.
        estimated_time_to_complete_ms: Optional estimate for the remaining work.
        blockers: Human-readable descriptions of what blocks this step.
    """

    model_config = ConfigDict(extra="forbid")

    step_id: CVStep
    substeps: list[SubstepProgress] = Field(default_factory=list)
    completion: int = Field(default=0, ge=0, le=100)
    time_spent_ms: int = Field(default=0, ge=0)
    user_interactions: list[UserInteraction] = Field(default_factory=list)
    last_modified: datetime = Field(default_factory=_now)
    estimated_time_to_complete_ms: int | None = None
    blockers: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_substeps(self) -> "StepProgressState":
        """Reject duplicate substep ids."""
        ids = [substep.id for substep in self.substeps]
        if len(ids) != len(set(ids)):
            msg = f"Duplicate substep ids in step '{self.step_id.value}': {ids}"
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def derive_completion(self) -> "StepProgressState":
        """Keep completion in line with the substeps, when there are any.

        Steps without substeps keep the completion they were given.
        """
        if self.substeps:
            done = sum(1 for substep in self.substeps if substep.is_done)
            self.completion = math.floor(done * 100 / len(self.substeps))
        return self

    def get_substep(self, substep_id: str) -> SubstepProgress | None:
        """Find a substep by id."""
        for substep in self.substeps:
            if substep.id == substep_id:
                return substep
        return None
