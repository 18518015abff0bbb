"""Completion settings resolution.

Pure read: a generation configuration id in, fully-defaulted
CompletionSettings out. Missing configurations resolve to the defaults.
"""

from typing import Optional

from formai.models import CompletionSettings
from formai.services.generation_config_store import (
    BaseGenerationConfigStore,
    get_generation_config_store,
)


async def resolve_completion_settings(
    target_id: str,
    store: Optional[BaseGenerationConfigStore] = None,
) -> CompletionSettings:
    """Return the completion settings for a generation configuration."""
    store = store or get_generation_config_store()
    config = await store.get_config(target_id)
    if config is None:
        return CompletionSettings()
    return config.completion
