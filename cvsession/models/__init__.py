"""Data models for the CV session engine.

All models are exported from this module for convenient imports:
    from cvsession.models import EnhancedSessionState, ProcessingJob, ...

Models are organized by concern:
- steps.py: CVStep, WIZARD_STEPS, SessionStatus
- progress.py: SubstepProgress, StepProgressState, UserInteraction
- features.py: FeatureState, ConditionalRule, RuleAction
- processing.py: ProcessingJob, QueueStats, ProcessingCheckpoint
- sync.py: StateChange, ConflictResolution, SyncStatus, UserPresence
- offline.py: OfflineAction, SyncResult
- navigation.py: NavigationPath, ResumeRecommendation, NavigationContext
- session.py: EnhancedSessionState and its pass-through snapshots
- document.py: SessionDocument (SQLAlchemy, document store adapter)
"""

from cvsession.models.base import Base, TimestampMixin
from cvsession.models.document import SessionDocument
from cvsession.models.features import (
    Complexity,
    ConditionalRule,
    FeatureMetadata,
    FeatureProgress,
    FeatureState,
    RuleAction,
)
from cvsession.models.navigation import (
    AlternativeResumeOption,
    NavigationContext,
    NavigationPath,
    NavigationState,
    ResumePriority,
    ResumeRecommendation,
)
from cvsession.models.offline import OfflineAction, OfflineActionType, SyncResult
from cvsession.models.processing import (
    CheckpointDecision,
    CheckpointState,
    ErrorRecovery,
    JobStatus,
    JobType,
    PerformanceRecord,
    ProcessingCheckpoint,
    ProcessingJob,
    QueueStats,
    ResumeData,
)
from cvsession.models.progress import (
    InteractionType,
    StepProgressState,
    SubstepProgress,
    SubstepStatus,
    UserInteraction,
)
from cvsession.models.session import (
    ContextData,
    EnhancedSessionState,
    FormSettings,
    PerformanceMetrics,
    SessionFormData,
    UIStateSnapshot,
    ValidationResult,
    ValidationStateSnapshot,
)
from cvsession.models.steps import WIZARD_STEPS, CVStep, SessionStatus
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

__all__ = [
    # SQLAlchemy
    "Base",
    "TimestampMixin",
    "SessionDocument",
    # Steps
    "CVStep",
    "WIZARD_STEPS",
    "SessionStatus",
    # Progress
    "InteractionType",
    "StepProgressState",
    "SubstepProgress",
    "SubstepStatus",
    "UserInteraction",
    # Features
    "Complexity",
    "ConditionalRule",
    "FeatureMetadata",
    "FeatureProgress",
    "FeatureState",
    "RuleAction",
    # Processing
    "CheckpointDecision",
    "CheckpointState",
    "ErrorRecovery",
    "JobStatus",
    "JobType",
    "PerformanceRecord",
    "ProcessingCheckpoint",
    "ProcessingJob",
    "QueueStats",
    "ResumeData",
    # Sync
    "ChangeSource",
    "ChangeType",
    "ConflictResolution",
    "PresenceStatus",
    "ResolutionStrategy",
    "StateChange",
    "SyncState",
    "SyncStatus",
    "UserPresence",
    # Offline
    "OfflineAction",
    "OfflineActionType",
    "SyncResult",
    # Navigation
    "AlternativeResumeOption",
    "NavigationContext",
    "NavigationPath",
    "NavigationState",
    "ResumePriority",
    "ResumeRecommendation",
    # Session
    "ContextData",
    "EnhancedSessionState",
    "FormSettings",
    "PerformanceMetrics",
    "SessionFormData",
    "UIStateSnapshot",
    "ValidationResult",
    "ValidationStateSnapshot",
]
