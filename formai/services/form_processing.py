"""AI form processing job handler.

Turns one submitted form entry into an AI response:

1. load the generation configuration named by the job's target_id
2. build the user prompt (template substitution or a labelled dump of all fields)
3. decide between a single call and chunked generation
4. return the cleaned text

Failures that a retry cannot fix (missing configuration, empty prompt,
unknown provider, missing credentials) are raised as PermanentJobError so
the runner fails the job without spending its retry budget.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from pydantic import BaseModel, Field

from formai.llm.client import LLMClient, get_client
from formai.llm.errors import MissingCredentialsError
from formai.llm.models import ChatMessage, LLMRequest
from formai.models import GenerationConfig, Job, PromptType
from formai.services.chunk_controller import ChunkController, with_chunking_instructions
from formai.services.generation_config_store import (
    BaseGenerationConfigStore,
    get_generation_config_store,
)
from formai.services.job_runner import PermanentJobError
from formai.services.text_cleanup import post_process

logger = logging.getLogger(__name__)

# Chunking triggers
CHUNKING_MAX_TOKENS_THRESHOLD = 4000
CHUNKING_PROMPT_LENGTH_THRESHOLD = 8000
CHUNKING_TEMPLATE_MARKERS = ("HTML",)
CHUNKING_SYSTEM_MARKERS = ("comprehensive", "detailed")

ALL_FORM_DATA_HEADER = "Here is the submitted form data:\n\n"
ALL_FORM_DATA_FOOTER = "\nPlease analyze this information and provide a response."

_LEFTOVER_PLACEHOLDER = re.compile(r"\{[^}]+\}")


class FormProcessingResult(BaseModel):
    """Output of one processed form entry."""

    text: str = Field(description="Final response text")
    provider: str
    model: Optional[str] = None
    chunked: bool = False
    chunks: int = 1
    tokens_used: int = 0
    stop_reason: Optional[str] = None
    partial: bool = Field(default=False, description="True if a later chunk failed")


def _format_value(value: Any) -> Optional[str]:
    """Render a form value as prompt text, or None if it has no scalar form."""
    if isinstance(value, list):
        return ", ".join(str(v) for v in value if not isinstance(v, (dict, list)))
    if isinstance(value, dict):
        return None
    if value is None:
        return ""
    return str(value)


def format_all_form_data(form_data: dict[str, Any], field_labels: dict[str, str]) -> str:
    """Labelled listing of every public field in the submission."""
    lines = []
    for key, value in form_data.items():
        if key.startswith("_"):
            continue
        rendered = _format_value(value)
        if rendered is None:
            continue
        label = field_labels.get(key) or key
        lines.append(f"{label}: {rendered}\n")
    return ALL_FORM_DATA_HEADER + "".join(lines) + ALL_FORM_DATA_FOOTER


def render_template(template: str, form_data: dict[str, Any]) -> str:
    """Substitute {field} placeholders and drop any that have no value."""
    prompt = template
    for key, value in form_data.items():
        rendered = _format_value(value)
        if rendered is None:
            continue
        prompt = prompt.replace("{" + key + "}", rendered)
    return _LEFTOVER_PLACEHOLDER.sub("", prompt)


def build_user_prompt(config: GenerationConfig, form_data: dict[str, Any]) -> str:
    """Build the user prompt for a configuration and a submission.

    Raises:
        PermanentJobError: If no template is configured or the prompt is empty.
    """
    if config.prompt_type == PromptType.all_form_data:
        prompt = format_all_form_data(form_data, config.field_labels)
    else:
        if not config.prompt_template or not config.prompt_template.strip():
            raise PermanentJobError("No user prompt template configured")
        prompt = render_template(config.prompt_template, form_data)

    prompt = prompt.strip()
    if not prompt:
        raise PermanentJobError("User prompt is empty after processing")
    return prompt


def should_use_chunking(config: GenerationConfig, form_data: dict[str, Any]) -> bool:
    """Whether a configuration/submission pair warrants chunked generation."""
    if not config.enable_chunking:
        return False

    if config.max_tokens > CHUNKING_MAX_TOKENS_THRESHOLD:
        return True

    template = config.prompt_template or ""
    estimated_length = (
        len(config.system_prompt)
        + len(template)
        + len(json.dumps(form_data, default=str))
    )
    if estimated_length > CHUNKING_PROMPT_LENGTH_THRESHOLD:
        return True

    if any(marker in template for marker in CHUNKING_TEMPLATE_MARKERS):
        return True

    system_prompt = config.system_prompt.lower()
    return any(marker in system_prompt for marker in CHUNKING_SYSTEM_MARKERS)


class FormProcessingHandler:
    """Job handler for ``ai_form_processing`` jobs."""

    def __init__(
        self,
        client: Optional[LLMClient] = None,
        config_store: Optional[BaseGenerationConfigStore] = None,
    ):
        self._client = client
        self._config_store = config_store

    @property
    def client(self) -> LLMClient:
        return self._client or get_client()

    @property
    def config_store(self) -> BaseGenerationConfigStore:
        return self._config_store or get_generation_config_store()

    async def __call__(self, job: Job) -> FormProcessingResult:
        payload = job.payload or {}
        form_data = payload.get("form_data", payload)
        if not isinstance(form_data, dict):
            raise PermanentJobError("Job payload has no form data")
        return await self.process(job.target_id, form_data)

    async def process(self, target_id: str, form_data: dict[str, Any]) -> FormProcessingResult:
        """Generate the response for one form submission.

        Raises:
            PermanentJobError: For configuration and credential problems.
            LLMError: For provider failures worth retrying.
            ValueError: If the provider returned no usable text.
        """
        config = await self.config_store.get_config(target_id)
        if config is None:
            raise PermanentJobError(f"Generation config {target_id} not found")

        user_prompt = build_user_prompt(config, form_data)

        try:
            profile = self.client.get_profile(config.provider, config.model)
            if should_use_chunking(config, form_data):
                result = await self._generate_chunked(config, user_prompt, profile)
            else:
                result = await self._generate_single(config, user_prompt)
        except MissingCredentialsError as e:
            raise PermanentJobError(str(e)) from e
        except ValueError as e:
            if "Unknown provider" in str(e):
                raise PermanentJobError(str(e)) from e
            raise

        if not result.text.strip():
            raise ValueError("Provider returned an empty response")

        logger.info(
            f"Processed form for {target_id}: provider={result.provider} chunked={result.chunked} "
            f"chunks={result.chunks} tokens={result.tokens_used}"
        )
        return result

    async def _generate_single(self, config: GenerationConfig, user_prompt: str) -> FormProcessingResult:
        messages = []
        if config.system_prompt:
            messages.append(ChatMessage(role="system", content=config.system_prompt))
        messages.append(ChatMessage(role="user", content=user_prompt))

        provider = self.client.get_provider(config.provider)
        response = await self.client.generate(
            LLMRequest(
                messages=messages,
                model=config.model or provider.default_model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
            ),
            provider=config.provider,
        )
        return FormProcessingResult(
            text=post_process(response.text, config.completion.completion_marker),
            provider=response.provider,
            model=response.model,
            tokens_used=response.usage.completion_tokens,
            stop_reason=response.finish_reason,
        )

    async def _generate_chunked(self, config, user_prompt, profile) -> FormProcessingResult:
        settings = config.completion
        system_prompt = with_chunking_instructions(config.system_prompt, settings.completion_marker)
        messages = [
            ChatMessage(role="system", content=system_prompt),
            ChatMessage(role="user", content=user_prompt),
        ]

        provider = self.client.get_provider(config.provider)
        model = config.model or provider.default_model
        controller = ChunkController(self.client, provider.name, profile)
        chunked = await controller.run(
            messages,
            model=model,
            target_tokens=config.max_tokens,
            temperature=config.temperature,
            settings=settings,
        )
        return FormProcessingResult(
            text=chunked.text,
            provider=provider.name,
            model=model,
            chunked=True,
            chunks=chunked.chunks,
            tokens_used=chunked.tokens_used,
            stop_reason=chunked.stop_reason.value,
            partial=chunked.partial,
        )
