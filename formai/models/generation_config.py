"""Generation configuration models.

GenerationConfig is the stored shape of one AI form prompt: which provider
and model to call, how to build the prompt from submitted form data, and the
completion settings that decide when chunked generation is finished.

Pydantic v2. Extra fields are forbidden to prevent drift.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_COMPLETION_MARKER = "<!-- REPORT_END -->"
DEFAULT_COMPLETION_KEYWORDS = "conclusion, summary, final, recommendations, regards, sincerely"


class PromptType(str, Enum):
    """How the user prompt is built from form data."""
    template = "template"            # Interpolate {field} placeholders
    all_form_data = "all_form_data"  # Dump every submitted field


class CompletionSettings(BaseModel):
    """Parameters for the chunked-generation stop decision.

    Immutable for the duration of one chunk session.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    completion_marker: str = Field(
        default=DEFAULT_COMPLETION_MARKER,
        min_length=1,
        description="Literal string the model emits when truly finished"
    )
    min_content_length: int = Field(
        default=500,
        ge=0,
        description="Visible characters required before heuristics may stop"
    )
    completion_word_count: int = Field(
        default=800,
        ge=0,
        description="Word count before keyword checks apply"
    )
    min_chunk_words: int = Field(
        default=300,
        ge=0,
        description="Word count required for a graceful token-threshold stop"
    )
    completion_keywords: str = Field(
        default=DEFAULT_COMPLETION_KEYWORDS,
        description="Comma-separated closing keywords"
    )
    enable_smart_completion: bool = Field(
        default=False,
        description="If false, stop purely on token-budget ratio"
    )
    use_token_percentage: bool = Field(
        default=False,
        description="Enable token-percentage stop checks"
    )
    token_completion_threshold: int = Field(
        default=70,
        ge=1,
        le=100,
        description="Percent of target tokens at which stopping is considered"
    )
    forced_stop_margin: Optional[float] = Field(
        default=None,
        ge=0,
        description="Percent over threshold that forces a stop (provider default if unset)"
    )

    @property
    def keywords(self) -> list[str]:
        """Parsed, non-empty completion keywords."""
        return [kw.strip() for kw in self.completion_keywords.split(",") if kw.strip()]


class GenerationConfig(BaseModel):
    """Stored configuration for one AI form prompt."""
    model_config = ConfigDict(extra="forbid")

    target_id: str = Field(description="Configuration identifier referenced by jobs")
    name: Optional[str] = Field(default=None, description="Human-readable label")

    # Provider selection
    provider: str = Field(default="openai", description="openai, anthropic or gemini")
    model: Optional[str] = Field(default=None, description="Model id, provider default if unset")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1, description="Overall output token budget")

    # Prompt building
    system_prompt: str = Field(default="", description="System instruction")
    prompt_template: Optional[str] = Field(
        default=None,
        description="User prompt with {field} placeholders"
    )
    prompt_type: PromptType = Field(default=PromptType.template)
    field_labels: dict[str, str] = Field(
        default_factory=dict,
        description="Display labels for all_form_data prompts"
    )

    # Chunking
    enable_chunking: bool = Field(default=False, description="Allow multi-call assembly")
    completion: CompletionSettings = Field(default_factory=CompletionSettings)
