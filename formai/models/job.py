"""Background job model.

A Job is one durable unit of deferred work tracked by the job store.
Only one job type exists today: AI processing of a form submission.

Pydantic v2. Extra fields are forbidden to prevent drift.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def _ensure_tz_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware (assume UTC if naive)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


DEFAULT_MAX_RETRIES = 3


class JobType(str, Enum):
    """Registered job types."""
    ai_form_processing = "ai_form_processing"


class JobStatus(str, Enum):
    """Job status values."""
    pending = "pending"        # Waiting for scheduled_at
    processing = "processing"  # Claimed by a runner tick
    completed = "completed"    # Handler succeeded
    failed = "failed"          # Retries exhausted, permanent error, or cancelled
    retry = "retry"            # Failed attempt, waiting for backoff


# Statuses that still count as "in the queue" for duplicate checks
ACTIVE_STATUSES = (JobStatus.pending, JobStatus.processing, JobStatus.retry)
# Statuses a runner tick may claim
CLAIMABLE_STATUSES = (JobStatus.pending, JobStatus.retry)
# Operator action preconditions
RETRYABLE_BY_OPERATOR = (JobStatus.failed, JobStatus.retry)
CANCELLABLE_BY_OPERATOR = (JobStatus.pending, JobStatus.retry)


class Job(BaseModel):
    """State for one queued job."""
    model_config = ConfigDict(extra="forbid")

    # Identity
    job_id: str = Field(description="UUID identifier for this job")
    job_type: JobType = Field(
        default=JobType.ai_form_processing,
        description="Handler that processes this job"
    )
    target_id: str = Field(description="Generation configuration to use")
    form_id: Optional[str] = Field(default=None, description="Submitting form")
    entry_id: Optional[str] = Field(default=None, description="Submission entry")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque data handed to the handler"
    )

    # Scheduling
    status: JobStatus = Field(default=JobStatus.pending, description="Current job status")
    priority: int = Field(default=0, description="Higher runs sooner")
    retry_count: int = Field(default=0, ge=0, description="Failed attempts so far")
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, description="Retry budget")
    error_message: Optional[str] = Field(default=None, description="Last failure reason")

    # Timestamps
    scheduled_at: datetime = Field(
        default_factory=_utcnow,
        description="Not eligible to run before this time"
    )
    started_at: Optional[datetime] = Field(default=None, description="Last claim time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal transition time")
    created_at: datetime = Field(default_factory=_utcnow, description="Job creation timestamp")
    updated_at: datetime = Field(default_factory=_utcnow, description="Last mutation timestamp")

    def is_terminal(self) -> bool:
        """Check if job is in a terminal state."""
        return self.status in (JobStatus.completed, JobStatus.failed)

    def can_retry(self) -> bool:
        """Check if another automatic attempt is allowed."""
        return self.retry_count < self.max_retries

    def to_summary(self) -> JobSummary:
        """Project onto the dashboard summary shape."""
        return JobSummary(
            job_id=self.job_id,
            job_type=self.job_type,
            target_id=self.target_id,
            form_id=self.form_id,
            entry_id=self.entry_id,
            status=self.status,
            priority=self.priority,
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            error_message=self.error_message,
            scheduled_at=self.scheduled_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            created_at=self.created_at,
        )


class JobSummary(BaseModel):
    """Job fields shown on operator dashboards (payload omitted)."""
    model_config = ConfigDict(extra="forbid")

    job_id: str
    job_type: JobType
    target_id: str
    form_id: Optional[str] = None
    entry_id: Optional[str] = None
    status: JobStatus
    priority: int
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    scheduled_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class JobStatistics(BaseModel):
    """Per-status job counts over a reporting window."""
    model_config = ConfigDict(extra="forbid")

    window_hours: float
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retry: int = 0


class EnqueueJobRequest(BaseModel):
    """Request body for enqueueing a job."""
    model_config = ConfigDict(extra="forbid")

    job_type: JobType = JobType.ai_form_processing
    target_id: str
    form_id: Optional[str] = None
    entry_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    delay_seconds: Optional[float] = Field(default=None, ge=0)
    priority: int = 0
