"""Feature toggle records and conditional rules."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RuleAction(str, Enum):
    """Outcome a conditional rule applies to its target."""

    ENABLE = "enable"
    DISABLE = "disable"
    REQUIRE = "require"
    RECOMMEND = "recommend"
    HIDE = "hide"
    SHOW = "show"


class ConditionalRule(BaseModel):
    """A priority-ordered condition -> action mapping.

    Attributes:
        id: Rule identifier.
        condition: Expression in the restricted rule language, evaluated
            against a read-only view of the session.
        action: What to do with the target when the condition holds.
        target: Feature id or step id.
        priority: Higher priority rules are evaluated first.
        description: Optional human-readable description.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    condition: str
    action: RuleAction
    target: str
    priority: int = 0
    description: str | None = None


class FeatureProgress(BaseModel):
    """Processing flags for a feature."""

    model_config = ConfigDict(extra="forbid")

    configured: bool = False
    processing: bool = False
    completed: bool = False
    error: str | None = None
    retry_count: int = 0
    last_processed_at: datetime | None = None


class Complexity(str, Enum):
    """Rough implementation complexity of a feature."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FeatureMetadata(BaseModel):
    """Descriptive metadata for a feature."""

    model_config = ConfigDict(extra="forbid")

    estimated_duration_minutes: int | None = None
    complexity: Complexity = Complexity.MEDIUM
    category: str | None = None


class FeatureState(BaseModel):
    """Toggle state of one selectable feature.

    Attributes:
        feature_id: Feature identifier.
        enabled: Whether the feature is switched on.
        configuration: Opaque configuration passed through to the job executor.
        progress: Processing flags.
        dependencies: Feature ids that must be enabled first (hard dependencies).
        conditional_logic: Rules owned by this feature. Targets may be any
            feature or step.
        user_preferences: UI flags written by rule actions (recommended,
            visible, required).
        metadata: Descriptive metadata.
    """

    model_config = ConfigDict(extra="forbid")

    feature_id: str
    enabled: bool = False
    # Any: feature configuration is opaque to the engine.
    configuration: dict[str, Any] = Field(default_factory=dict)
    progress: FeatureProgress = Field(default_factory=FeatureProgress)
    dependencies: list[str] = Field(default_factory=list)
    conditional_logic: list[ConditionalRule] = Field(default_factory=list)
    user_preferences: dict[str, Any] = Field(default_factory=dict)
    metadata: FeatureMetadata = Field(default_factory=FeatureMetadata)
