"""Models package.

Pydantic models for jobs and generation configuration.
"""

from .generation_config import (
    CompletionSettings,
    GenerationConfig,
    PromptType,
    DEFAULT_COMPLETION_KEYWORDS,
    DEFAULT_COMPLETION_MARKER,
)
from .job import (
    Job,
    JobStatus,
    JobType,
    JobStatistics,
    JobSummary,
    EnqueueJobRequest,
    ACTIVE_STATUSES,
    CLAIMABLE_STATUSES,
    CANCELLABLE_BY_OPERATOR,
    RETRYABLE_BY_OPERATOR,
    DEFAULT_MAX_RETRIES,
)

__all__ = [
    "CompletionSettings",
    "GenerationConfig",
    "PromptType",
    "DEFAULT_COMPLETION_KEYWORDS",
    "DEFAULT_COMPLETION_MARKER",
    "Job",
    "JobStatus",
    "JobType",
    "JobStatistics",
    "JobSummary",
    "EnqueueJobRequest",
    "ACTIVE_STATUSES",
    "CLAIMABLE_STATUSES",
    "CANCELLABLE_BY_OPERATOR",
    "RETRYABLE_BY_OPERATOR",
    "DEFAULT_MAX_RETRIES",
]
