"""Services package for job queueing and AI generation."""

from .chunk_controller import (
    ChunkController,
    ChunkResult,
    ChunkSession,
    StopReason,
    with_chunking_instructions,
)
from .form_processing import (
    FormProcessingHandler,
    FormProcessingResult,
    build_user_prompt,
    should_use_chunking,
)
from .generation_config_store import (
    BaseGenerationConfigStore,
    InMemoryGenerationConfigStore,
    MongoGenerationConfigStore,
    get_generation_config_store,
    set_generation_config_store,
)
from .job_runner import (
    EnqueueResult,
    JobRunner,
    PermanentJobError,
    get_job_runner,
    retry_delay_seconds,
    set_job_runner,
)
from .job_store import (
    BaseJobStore,
    InMemoryJobStore,
    MongoJobStore,
    get_job_store,
    set_job_store,
)
from .settings_resolver import resolve_completion_settings

__all__ = [
    # Chunked generation
    "ChunkController",
    "ChunkResult",
    "ChunkSession",
    "StopReason",
    "with_chunking_instructions",
    # Form processing
    "FormProcessingHandler",
    "FormProcessingResult",
    "build_user_prompt",
    "should_use_chunking",
    # Generation configs
    "BaseGenerationConfigStore",
    "InMemoryGenerationConfigStore",
    "MongoGenerationConfigStore",
    "get_generation_config_store",
    "set_generation_config_store",
    "resolve_completion_settings",
    # Jobs
    "EnqueueResult",
    "JobRunner",
    "PermanentJobError",
    "get_job_runner",
    "retry_delay_seconds",
    "set_job_runner",
    "BaseJobStore",
    "InMemoryJobStore",
    "MongoJobStore",
    "get_job_store",
    "set_job_store",
]
