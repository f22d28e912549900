"""Wizard step and session status enums.

The wizard runs through a fixed, ordered set of steps. Every step-keyed
record in the engine uses CVStep so that unknown step names are rejected at
validation time.
"""

from enum import Enum


class CVStep(str, Enum):
    """Steps of the CV builder wizard, in flow order."""

    UPLOAD = "upload"
    PROCESSING = "processing"
    ANALYSIS = "analysis"
    FEATURES = "features"
    TEMPLATES = "templates"
    PREVIEW = "preview"
    RESULTS = "results"
    KEYWORDS = "keywords"
    COMPLETED = "completed"


WIZARD_STEPS: tuple[CVStep, ...] = tuple(CVStep)
"""Fixed step order. Used as the denominator for overall progress."""


class SessionStatus(str, Enum):
    """Lifecycle status of a session."""

    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
