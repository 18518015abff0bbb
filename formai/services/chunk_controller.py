"""Chunked generation controller.

Assembles one long answer out of several sequential provider calls. After
each chunk the controller decides whether the document is finished using,
in priority order:

1. the explicit completion marker
2. a token-budget ratio when smart completion is off
3. the forced token-percentage ceiling (threshold plus margin)
4. a minimum visible-content length
5. a closing keyword near a natural ending once the word target is reached
6. a closing keyword anywhere once the token-percentage threshold is reached

All provider differences come from the ChunkingProfile; the loop itself is
shared by every provider.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from formai.llm.errors import LLMError
from formai.llm.models import ChatMessage, LLMRequest, LLMResponse
from formai.llm.profiles import ChunkingProfile
from formai.models import CompletionSettings
from formai.services.text_cleanup import (
    clean_chunk,
    ends_mid_sentence,
    post_process,
    strip_tags,
    word_count,
)

logger = logging.getLogger(__name__)

CHUNKING_INSTRUCTIONS = (
    "CHUNKING INSTRUCTIONS:\n"
    "1. Generate valid HTML for PDF conversion\n"
    "2. Stop at complete elements if reaching limits\n"
    "3. Continue when prompted\n"
    "4. Only conclude with complete report\n"
    "5. Add {marker} when truly finished"
)


class GenerateClient(Protocol):
    """The slice of LLMClient the controller depends on."""

    async def generate(
        self,
        request: LLMRequest,
        provider: str | None = None,
        correlation_id: str | None = None,
    ) -> LLMResponse: ...


class StopReason(str, Enum):
    """Why a chunk session ended."""
    marker = "marker"
    token_ratio = "token_ratio"
    natural_ending = "natural_ending"
    token_threshold = "token_threshold"
    forced_threshold = "forced_threshold"
    budget_exhausted = "budget_exhausted"
    max_chunks = "max_chunks"
    chunk_error = "chunk_error"


@dataclass
class ChunkSession:
    """In-progress assembly of one answer. Never shared between jobs."""

    conversation: list[ChatMessage]
    target_tokens: int
    settings: CompletionSettings
    accumulated_text: str = ""
    tokens_used: int = 0
    chunk_index: int = 0
    chunks: list[str] = field(default_factory=list)

    @property
    def progress(self) -> float:
        return self.tokens_used / self.target_tokens if self.target_tokens else 1.0

    def add_chunk(self, text: str, completion_tokens: int) -> None:
        self.tokens_used += max(completion_tokens, 0)
        self.chunks.append(text)
        self.accumulated_text = f"{self.accumulated_text}\n{text}" if self.accumulated_text else text


@dataclass
class ChunkResult:
    """Final output of a chunk session."""

    text: str
    chunks: int
    tokens_used: int
    stop_reason: StopReason
    partial: bool = False
    error: LLMError | None = None


def with_chunking_instructions(system_prompt: str, completion_marker: str) -> str:
    """Append the chunking instructions to a system prompt."""
    instructions = CHUNKING_INSTRUCTIONS.format(marker=completion_marker)
    if not system_prompt:
        return instructions
    return f"{system_prompt}\n\n{instructions}"


class ChunkController:
    """Runs the multi-call generation loop for one provider/model pair."""

    def __init__(self, client: GenerateClient, provider: str, profile: ChunkingProfile):
        self._client = client
        self._provider = provider
        self._profile = profile

    @property
    def profile(self) -> ChunkingProfile:
        return self._profile

    async def run(
        self,
        initial_messages: list[ChatMessage],
        model: str,
        target_tokens: int,
        temperature: float,
        settings: CompletionSettings,
    ) -> ChunkResult:
        """Generate until a stop condition fires or the budget runs out.

        Args:
            initial_messages: Optional system message followed by the user request.
            model: Model id passed through to the provider.
            target_tokens: Output token budget for the whole answer.
            temperature: Sampling temperature.
            settings: Completion settings for the stop decision.

        Returns:
            ChunkResult with the post-processed text.

        Raises:
            LLMError: If the first chunk fails (nothing to salvage).
            ValueError: If target_tokens is not positive.
        """
        if target_tokens <= 0:
            raise ValueError("target_tokens must be positive")

        session = ChunkSession(
            conversation=list(initial_messages),
            target_tokens=target_tokens,
            settings=settings,
        )
        correlation_id = str(uuid.uuid4())
        max_chunks = self._profile.max_chunks(target_tokens)
        stop_reason = StopReason.max_chunks
        error: LLMError | None = None

        logger.info(
            f"Chunked generation started: provider={self._provider} model={model} "
            f"target={target_tokens} chunk={self._profile.chunk_size} max_chunks={max_chunks}"
        )

        for chunk_index in range(max_chunks):
            session.chunk_index = chunk_index
            remaining = target_tokens - session.tokens_used
            planned = self._profile.chunk_size_for(chunk_index, session.tokens_used, target_tokens)
            this_chunk = min(planned, remaining)

            if this_chunk < self._profile.min_chunk_tokens:
                logger.info(f"Stopping: only {this_chunk} tokens left in budget")
                stop_reason = StopReason.budget_exhausted
                break

            request = LLMRequest(
                messages=list(session.conversation),
                model=model,
                temperature=temperature,
                max_tokens=this_chunk,
            )

            try:
                response = await self._client.generate(
                    request, provider=self._provider, correlation_id=correlation_id
                )
            except LLMError as e:
                if chunk_index == 0:
                    raise
                logger.warning(
                    f"Chunk {chunk_index + 1} failed ({e.kind.value}), returning partial response: {e}"
                )
                stop_reason = StopReason.chunk_error
                error = e
                break

            chunk_text = clean_chunk(response.text)
            session.add_chunk(chunk_text, response.usage.completion_tokens)

            logger.debug(
                f"Chunk {chunk_index + 1} requested {this_chunk} tokens, used "
                f"{response.usage.completion_tokens}, total {session.tokens_used}"
            )

            reason = self.evaluate_stop(session, chunk_text)
            if reason is not None:
                stop_reason = reason
                break

            self._extend_conversation(session, chunk_text)

        text = post_process(session.accumulated_text, settings.completion_marker)

        logger.info(
            f"Chunked generation finished: {len(session.chunks)} chunks, "
            f"{session.tokens_used} tokens, reason={stop_reason.value}"
        )

        return ChunkResult(
            text=text,
            chunks=len(session.chunks),
            tokens_used=session.tokens_used,
            stop_reason=stop_reason,
            partial=error is not None,
            error=error,
        )

    def evaluate_stop(self, session: ChunkSession, chunk_text: str) -> StopReason | None:
        """Decide whether the session is finished after the latest chunk.

        Returns:
            The stop reason, or None to request another chunk.
        """
        settings = session.settings

        if settings.completion_marker in chunk_text:
            return StopReason.marker

        if not settings.enable_smart_completion:
            if session.tokens_used < session.target_tokens * self._profile.smart_off_stop_ratio:
                return None
            return StopReason.token_ratio

        pct = session.tokens_used / session.target_tokens * 100
        threshold = settings.token_completion_threshold
        margin = (
            settings.forced_stop_margin
            if settings.forced_stop_margin is not None
            else self._profile.forced_stop_margin
        )

        # The forced ceiling bounds token spend even while content is still short
        if settings.use_token_percentage and pct >= threshold + margin:
            logger.info(f"Forcing stop at {pct:.1f}% of token budget")
            return StopReason.forced_threshold

        visible_length = len(strip_tags(session.accumulated_text).strip())
        if visible_length < settings.min_content_length:
            return None

        words = word_count(session.accumulated_text)
        keywords = settings.keywords

        if words > settings.completion_word_count:
            for keyword in keywords:
                if self._profile.has_natural_ending(keyword, chunk_text):
                    logger.info(f"Completion keyword '{keyword}' found near a natural ending")
                    return StopReason.natural_ending

        if settings.use_token_percentage and pct >= threshold:
            lowered = chunk_text.lower()
            if words > settings.min_chunk_words and any(kw.lower() in lowered for kw in keywords):
                return StopReason.token_threshold

        return None

    def continuation_prompt(self, session: ChunkSession) -> str:
        """Next user turn asking the model to carry on."""
        settings = session.settings

        if session.progress > self._profile.wrap_up_progress:
            return (
                "Please conclude the report with final recommendations and add "
                f"{settings.completion_marker} when finished."
            )

        complete_sentence = self._profile.complete_sentence_prompt
        if complete_sentence and session.chunks and ends_mid_sentence(session.chunks[-1]):
            return complete_sentence

        if word_count(session.accumulated_text) < settings.min_content_length:
            return "Please continue developing the report with more detailed content and analysis."

        prompts = self._profile.continuation_prompts
        return prompts[session.chunk_index % len(prompts)]

    def prune_conversation(self, conversation: list[ChatMessage]) -> list[ChatMessage]:
        """Keep the system + original request head plus a trailing window."""
        if len(conversation) <= self._profile.prune_threshold:
            return conversation

        head_end = next(
            (i + 1 for i, msg in enumerate(conversation) if msg.role == "user"),
            1,
        )
        head = conversation[:head_end]
        tail = conversation[head_end:][-self._profile.prune_keep_recent:]
        return head + tail

    def _extend_conversation(self, session: ChunkSession, chunk_text: str) -> None:
        session.conversation = self.prune_conversation(session.conversation)
        session.conversation.append(ChatMessage(role="assistant", content=chunk_text))
        session.conversation.append(
            ChatMessage(role="user", content=self.continuation_prompt(session))
        )
