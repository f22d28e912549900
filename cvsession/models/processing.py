"""Processing job, queue statistics and checkpoint records.

Job state machine:
- queued -> processing
- processing -> completed | failed
- failed -> queued (only while retry_count < max_retries)

A checkpoint is the resumability record for a long-running backend
operation. It is created when a job is claimed, updated as partial results
arrive, and consulted on session resume.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cvsession.models.steps import CVStep


def _now() -> datetime:
    return datetime.now(UTC)


class JobType(str, Enum):
    """Kinds of backend work the queue schedules."""

    CV_PROCESSING = "cv-processing"
    FEATURE_GENERATION = "feature-generation"
    TEMPLATE_APPLICATION = "template-application"
    DATA_EXTRACTION = "data-extraction"
    ANALYSIS = "analysis"


class JobStatus(str, Enum):
    """Processing job status."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingJob(BaseModel):
    """A unit of backend work.

    Attributes:
        id: Job identifier.
        type: Kind of job.
        priority: Higher numbers run first.
        dependencies: Job ids that must complete before this job may start.
        retry_count: Failures that have been retried so far.
        max_retries: Retry budget. None takes the configured default.
        payload: Opaque payload handed to the job executor.
        progress: Percentage 0-100.
        status: Current state.
        queued_at: When the job was (re)queued.
        available_at: Earliest time the job may be claimed (retry backoff).
        started_at: When the job was last claimed.
        completed_at: When the job completed.
        failed_at: When the job last failed.
        last_error: Last failure message.
        timeout_ms: Optional execution timeout.
        step: Optional wizard step the job reports progress to.
        substep_id: Optional substep completed by this job.
        checkpoint_id: Checkpoint tracking this job.
        result: Result reported on completion.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: JobType
    priority: int = 0
    dependencies: list[str] = Field(default_factory=list)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int | None = Field(default=None, ge=0)
    # Any: payloads vary by job type; the executor validates its own input.
    payload: dict[str, Any] = Field(default_factory=dict)
    progress: int = Field(default=0, ge=0, le=100)
    status: JobStatus = JobStatus.QUEUED
    estimated_duration_ms: int | None = None
    queued_at: datetime = Field(default_factory=_now)
    available_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    last_error: str | None = None
    timeout_ms: int | None = Field(default=None, gt=0)
    tags: list[str] = Field(default_factory=list)
    step: CVStep | None = None
    substep_id: str | None = None
    checkpoint_id: str | None = None
    result: Any = None

    @property
    def is_terminal(self) -> bool:
        """True for completed jobs and failed jobs that will not be retried."""
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class QueueStats(BaseModel):
    """Aggregate queue statistics. Always derived from the job list."""

    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    queued_jobs: int = 0
    processing_jobs: int = 0
    success_rate: float = 0.0
    average_job_duration_ms: float = 0.0
    paused: bool = False


class CheckpointState(str, Enum):
    """Lifecycle state of a processing checkpoint."""

    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CheckpointDecision(str, Enum):
    """What to do with a checkpoint when a session is resumed."""

    REISSUE = "reissue"
    RESUME = "resume"
    SKIP = "skip"


class ResumeData(BaseModel):
    """Everything needed to re-enter a long-running operation."""

    model_config = ConfigDict(extra="forbid")

    function_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    partial_results: Any = None
    progress: int = Field(default=0, ge=0, le=100)
    execution_context: dict[str, Any] = Field(default_factory=dict)


class ErrorRecovery(BaseModel):
    """Retry bookkeeping for a checkpoint."""

    model_config = ConfigDict(extra="forbid")

    retry_count: int = 0
    max_retries: int = 3
    last_error: str | None = None
    fallback_strategy: str | None = None
    next_retry_at: datetime | None = None


class PerformanceRecord(BaseModel):
    """Timing of the operation behind a checkpoint."""

    model_config = ConfigDict(extra="forbid")

    start_time: datetime = Field(default_factory=_now)
    end_time: datetime | None = None
    duration_ms: int | None = None


class ProcessingCheckpoint(BaseModel):
    """Resumability record for a long-running backend operation."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_id: CVStep
    feature_id: str | None = None
    job_id: str | None = None
    timestamp: datetime = Field(default_factory=_now)
    state: CheckpointState = CheckpointState.CREATED
    resume_data: ResumeData
    dependencies: list[str] = Field(default_factory=list)
    can_skip: bool = False
    priority: int = 0
    error_recovery: ErrorRecovery = Field(default_factory=ErrorRecovery)
    performance: PerformanceRecord = Field(default_factory=PerformanceRecord)
