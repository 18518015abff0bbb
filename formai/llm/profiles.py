"""Per-provider chunking profiles.

Every numeric and heuristic difference between providers lives here as data,
so the chunk controller and the provider clients stay provider-agnostic.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace

ANTHROPIC = "anthropic"
OPENAI = "openai"
GEMINI = "gemini"

SUPPORTED_PROVIDERS = (OPENAI, ANTHROPIC, GEMINI)

# Keyword followed by a closing </html> later on the same line
HTML_ENDING = r"\b{kw}\b.*?</html>"
# Keyword on the last line, which ends in terminal punctuation or a closing tag
SENTENCE_ENDING = r"\b{kw}\b.*?(\.|!|\?|</[^>]+>)\s*$"

DEFAULT_CONTINUATION_PROMPTS = (
    "Please continue with the next section of the HTML report, maintaining the same structure and styling.",
    "Continue generating the HTML report with additional sections and detailed analysis.",
    "Please proceed with the next portion of the HTML report, ensuring completeness and proper formatting.",
    "Continue with the subsequent sections of the HTML report, providing comprehensive coverage.",
    "Please add the next part of the HTML report with detailed content and proper structure.",
)


@dataclass(frozen=True)
class ChunkingProfile:
    """Limits and heuristics for one provider/model pair."""

    provider: str
    # Output token clamp applied by the provider client
    output_ceiling: int
    output_floor: int
    # Chunk loop sizing
    chunk_size: int
    max_chunks_cap: int
    min_chunk_tokens: int
    max_chunks_divisor: int | None = None
    first_chunk_factor: float = 1.0
    taper_steps: tuple[tuple[float, float], ...] = ()
    late_chunk_factor: float = 1.0
    # Conversation pruning: once longer than threshold keep the first two
    # messages plus the trailing window
    prune_threshold: int = 10
    prune_keep_recent: int = 4
    # Stop heuristics
    smart_off_stop_ratio: float = 0.9
    forced_stop_margin: float = 10.0
    wrap_up_progress: float = 0.8
    natural_ending_pattern: str = HTML_ENDING
    # Context-too-long recovery
    context_reduction_factor: float = 0.7
    min_reduced_tokens: int = 100
    max_reduced_tokens: int | None = None
    # Wire details
    assistant_role: str = "assistant"
    timeout_seconds: float = 120.0
    continuation_prompts: tuple[str, ...] = field(default=DEFAULT_CONTINUATION_PROMPTS)
    # Sent instead of the rotation when the last chunk stopped mid-sentence
    complete_sentence_prompt: str | None = None

    def clamp_output_tokens(self, requested: int | None) -> int:
        """Clamp a requested output budget into [floor, ceiling]."""
        if requested is None or requested <= 0:
            requested = self.output_ceiling
        return max(self.output_floor, min(requested, self.output_ceiling))

    def max_chunks(self, target_tokens: int) -> int:
        """Hard iteration cap for a session with the given budget."""
        divisor = self.max_chunks_divisor or self.chunk_size
        return max(1, min(math.ceil(target_tokens / divisor), self.max_chunks_cap))

    def chunk_size_for(self, chunk_index: int, tokens_used: int, target_tokens: int) -> int:
        """Planned chunk size before the remaining-budget clamp."""
        if chunk_index == 0:
            factor = self.first_chunk_factor
        else:
            progress = tokens_used / target_tokens if target_tokens else 1.0
            factor = self.late_chunk_factor
            for upper_bound, step_factor in self.taper_steps:
                if progress < upper_bound:
                    factor = step_factor
                    break
        return min(int(self.chunk_size * factor), self.output_ceiling)

    def reduce_for_context(self, max_tokens: int) -> int | None:
        """Smaller output budget after a context-too-long error, or None to give up."""
        reduced = int(max_tokens * self.context_reduction_factor)
        if self.max_reduced_tokens is not None:
            reduced = min(reduced, self.max_reduced_tokens)
        if reduced < self.min_reduced_tokens:
            return None
        return reduced

    def has_natural_ending(self, keyword: str, chunk_text: str) -> bool:
        """Whether keyword appears in chunk_text followed by a natural ending."""
        pattern = self.natural_ending_pattern.format(kw=re.escape(keyword))
        return re.search(pattern, chunk_text, re.IGNORECASE) is not None

    def with_overrides(self, **changes) -> ChunkingProfile:
        """Return a copy with some fields replaced."""
        return replace(self, **changes)


# Anthropic

ANTHROPIC_CHUNK_SIZES = {
    "claude-opus-4-20250514": 3500,
    "claude-sonnet-4-20250514": 3500,
    "claude-3-opus-20240229": 3500,
    "claude-3-sonnet-20240229": 3500,
    "claude-3-haiku-20240307": 3000,
}


def _anthropic_profile(model: str) -> ChunkingProfile:
    chunk_size = ANTHROPIC_CHUNK_SIZES.get(model, 3000 if "haiku" in model else 3500)
    return ChunkingProfile(
        provider=ANTHROPIC,
        output_ceiling=4096,
        output_floor=50,
        chunk_size=chunk_size,
        max_chunks_cap=35,
        min_chunk_tokens=100,
        prune_threshold=6,
        prune_keep_recent=2,
        smart_off_stop_ratio=0.9,
        forced_stop_margin=10.0,
        wrap_up_progress=0.8,
        natural_ending_pattern=HTML_ENDING,
        context_reduction_factor=0.7,
        min_reduced_tokens=100,
        timeout_seconds=120.0,
    )


# OpenAI

OPENAI_OUTPUT_LIMITS = {
    "gpt-4": 8192,
    "gpt-4-0613": 8192,
}

# model -> (default chunk size, max chunk size)
OPENAI_CHUNK_SIZES = {
    "gpt-3.5-turbo": (3200, 4096),
    "gpt-4": (6500, 8192),
    "gpt-4-turbo": (3500, 4096),
    "gpt-4o": (3500, 4096),
    "gpt-4o-mini": (3500, 4096),
}

OPENAI_CONTINUATION_PROMPTS = (
    "Please continue with the next section of the report.",
    "Continue generating the report from where you stopped, keeping the same structure.",
    "Please proceed with the next portion of the report with detailed content.",
    "Continue with the subsequent sections, maintaining formatting and depth.",
    "Please add the next part of the report.",
)

OPENAI_COMPLETE_SENTENCE_PROMPT = (
    "Please complete the current sentence and then continue with the next section of the report."
)


def _openai_profile(model: str) -> ChunkingProfile:
    default_size, max_size = OPENAI_CHUNK_SIZES.get(model, (3000, 4096))
    return ChunkingProfile(
        provider=OPENAI,
        output_ceiling=OPENAI_OUTPUT_LIMITS.get(model, 4096),
        output_floor=50,
        chunk_size=min(default_size, max_size),
        max_chunks_cap=50,
        max_chunks_divisor=2500,
        min_chunk_tokens=100,
        first_chunk_factor=1.2,
        taper_steps=((0.3, 1.0), (0.7, 0.9)),
        late_chunk_factor=0.8,
        prune_threshold=10,
        prune_keep_recent=6,
        smart_off_stop_ratio=0.95,
        forced_stop_margin=10.0,
        wrap_up_progress=0.8,
        natural_ending_pattern=HTML_ENDING,
        context_reduction_factor=0.5,
        min_reduced_tokens=100,
        max_reduced_tokens=1000,
        timeout_seconds=240.0,
        continuation_prompts=OPENAI_CONTINUATION_PROMPTS,
        complete_sentence_prompt=OPENAI_COMPLETE_SENTENCE_PROMPT,
    )


# Gemini

GEMINI_LEGACY_CHUNK_SIZES = {
    "gemini-1.5-pro-latest": 8000,
    "gemini-1.5-flash-latest": 8000,
    "gemini-2.0-flash-exp": 10000,
    "gemini-exp-1219": 7000,
}

GEMINI_CONTINUATION_PROMPTS = (
    "Continue the HTML report exactly where you left off. Do not repeat earlier sections.",
    "Please continue with the next sections of the HTML report, keeping the same styling.",
    "Proceed with the remaining parts of the HTML report with full detail.",
    "Continue writing the HTML report, expanding the analysis in the next section.",
)


def _gemini_profile(model: str) -> ChunkingProfile:
    common = dict(
        provider=GEMINI,
        smart_off_stop_ratio=0.95,
        forced_stop_margin=15.0,
        wrap_up_progress=0.9,
        natural_ending_pattern=SENTENCE_ENDING,
        assistant_role="model",
        continuation_prompts=GEMINI_CONTINUATION_PROMPTS,
    )
    if "gemini-2.5-flash" in model:
        return ChunkingProfile(
            output_ceiling=200000,
            output_floor=1000,
            chunk_size=50000,
            max_chunks_cap=100,
            min_chunk_tokens=2000,
            prune_threshold=40,
            prune_keep_recent=30,
            context_reduction_factor=0.85,
            min_reduced_tokens=1000,
            timeout_seconds=600.0,
            **common,
        )
    if "gemini-2.5" in model:
        return ChunkingProfile(
            output_ceiling=100000,
            output_floor=1000,
            chunk_size=30000,
            max_chunks_cap=80,
            min_chunk_tokens=1000,
            prune_threshold=30,
            prune_keep_recent=20,
            context_reduction_factor=0.8,
            min_reduced_tokens=500,
            timeout_seconds=300.0,
            **common,
        )
    return ChunkingProfile(
        output_ceiling=GEMINI_LEGACY_CHUNK_SIZES.get(model, 4000),
        output_floor=100,
        chunk_size=GEMINI_LEGACY_CHUNK_SIZES.get(model, 5000),
        max_chunks_cap=40,
        min_chunk_tokens=500,
        prune_threshold=10,
        prune_keep_recent=4,
        context_reduction_factor=0.6,
        min_reduced_tokens=200,
        timeout_seconds=120.0,
        **common,
    )


_PROFILE_BUILDERS = {
    ANTHROPIC: _anthropic_profile,
    OPENAI: _openai_profile,
    GEMINI: _gemini_profile,
}


def resolve_profile(provider: str, model: str) -> ChunkingProfile:
    """Look up the chunking profile for a provider/model pair.

    Raises:
        ValueError: If the provider is not recognized.
    """
    builder = _PROFILE_BUILDERS.get(provider)
    if builder is None:
        raise ValueError(f"Unknown provider: {provider}. Available: {list(SUPPORTED_PROVIDERS)}")
    return builder(model or "")
