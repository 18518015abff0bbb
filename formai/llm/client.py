"""Provider-agnostic LLM client.

Wraps the three providers with two recovery paths:

- rate limits and transport failures are retried with jittered
  exponential backoff, honouring a provider's retry-after hint
- a context-too-long rejection is retried once with the output budget
  shrunk by the model profile's reduction factor

Environment:
    LLM_DEFAULT_PROVIDER  provider used when a call names none (openai)
    LLM_TIMEOUT_SECONDS   overrides every provider's request timeout
    LLM_MAX_RETRIES       retries after the first attempt (2)
"""

import asyncio
import logging
import os
import random
import uuid
from dataclasses import dataclass

from .errors import ContextLengthError, LLMError, RateLimitError, RETRYABLE_ERRORS
from .models import LLMRequest, LLMResponse
from .profiles import ChunkingProfile, resolve_profile
from .providers.anthropic import AnthropicProvider
from .providers.base import LLMProvider
from .providers.gemini import GeminiProvider
from .providers.openai import OpenAIProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[LLMProvider]] = {
    cls.name: cls for cls in (OpenAIProvider, AnthropicProvider, GeminiProvider)
}


@dataclass
class RetryPolicy:
    """Backoff schedule for retryable provider errors."""

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25

    def delay_for(self, attempt: int, error: Exception) -> float:
        """Seconds to wait after the given 0-indexed failed attempt."""
        if isinstance(error, RateLimitError) and error.retry_after:
            return min(error.retry_after, self.max_delay)
        delay = self.base_delay * (2 ** attempt)
        delay += delay * self.jitter * (2 * random.random() - 1)
        return min(delay, self.max_delay)


class LLMClient:
    """Entry point for every completion call in the service."""

    def __init__(
        self,
        default_provider: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        openai_api_key: str | None = None,
        anthropic_api_key: str | None = None,
        gemini_api_key: str | None = None,
    ):
        self._default_provider = default_provider or os.environ.get("LLM_DEFAULT_PROVIDER", "openai")

        if max_retries is None:
            max_retries = int(os.environ.get("LLM_MAX_RETRIES", RetryPolicy.max_retries))
        self.retry = RetryPolicy(max_retries=max_retries)

        if timeout is None and os.environ.get("LLM_TIMEOUT_SECONDS"):
            timeout = float(os.environ["LLM_TIMEOUT_SECONDS"])

        api_keys = {
            "openai": openai_api_key,
            "anthropic": anthropic_api_key,
            "gemini": gemini_api_key,
        }
        self._providers: dict[str, LLMProvider] = {
            name: cls(api_key=api_keys[name], timeout=timeout)
            for name, cls in PROVIDER_CLASSES.items()
        }

    def get_provider(self, name: str | None = None) -> LLMProvider:
        """Look up a provider, falling back to the default.

        Raises:
            ValueError: The name is not a known provider.
        """
        name = name or self._default_provider
        try:
            return self._providers[name]
        except KeyError:
            raise ValueError(
                f"Unknown provider: {name}. Available: {sorted(self._providers)}"
            ) from None

    def get_profile(self, provider: str | None, model: str | None) -> ChunkingProfile:
        llm_provider = self.get_provider(provider)
        return resolve_profile(llm_provider.name, model or llm_provider.default_model)

    def is_provider_available(self, name: str) -> bool:
        """Whether the environment holds an API key for the provider."""
        cls = PROVIDER_CLASSES.get(name)
        return cls is not None and any(os.environ.get(var) for var in cls.api_key_env)

    async def generate(
        self,
        request: LLMRequest,
        provider: str | None = None,
        correlation_id: str | None = None,
    ) -> LLMResponse:
        """Run one completion through the recovery paths.

        Raises:
            LLMError: A non-retryable error, a second context-length
                rejection, or the last retryable error once retries run out.
                ``correlation_id`` is set on it.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        llm_provider = self.get_provider(provider)
        profile = resolve_profile(llm_provider.name, request.model or llm_provider.default_model)
        log_extra = {"correlation_id": correlation_id, "provider": llm_provider.name}

        failures = 0
        budget_reduced = False

        while True:
            logger.debug(
                "Sending request to %s (attempt %d/%d)",
                llm_provider.name,
                failures + 1,
                self.retry.max_retries + 1,
                extra={**log_extra, "attempt": failures + 1},
            )
            try:
                response = await llm_provider.generate(request)

            except ContextLengthError as e:
                e.correlation_id = correlation_id
                smaller = None
                if not budget_reduced:
                    smaller = profile.reduce_for_context(llm_provider.output_budget(request))
                if smaller is None:
                    raise
                logger.warning(
                    "Context too long, retrying with max_tokens=%d", smaller, extra=log_extra
                )
                request = request.model_copy(update={"max_tokens": smaller})
                budget_reduced = True

            except RETRYABLE_ERRORS as e:
                e.correlation_id = correlation_id
                if failures >= self.retry.max_retries:
                    logger.error(
                        "Giving up after %d attempts: %s",
                        failures + 1,
                        e,
                        extra={**log_extra, "error_type": type(e).__name__},
                    )
                    raise
                delay = self.retry.delay_for(failures, e)
                failures += 1
                logger.warning(
                    "Retryable %s, waiting %.2fs before attempt %d: %s",
                    type(e).__name__,
                    delay,
                    failures + 1,
                    e,
                    extra={**log_extra, "attempt": failures},
                )
                await asyncio.sleep(delay)

            except LLMError as e:
                e.correlation_id = correlation_id
                logger.error(
                    "Non-retryable %s: %s",
                    type(e).__name__,
                    e,
                    extra={**log_extra, "error_kind": e.kind.value},
                )
                raise

            else:
                logger.info(
                    "LLM request succeeded",
                    extra={
                        **log_extra,
                        "model": response.model,
                        "latency_ms": response.latency_ms,
                        "prompt_tokens": response.usage.prompt_tokens,
                        "completion_tokens": response.usage.completion_tokens,
                        "finish_reason": response.finish_reason,
                    },
                )
                return response


_default_client: LLMClient | None = None


def get_client() -> LLMClient:
    """Process-wide client, created on first use."""
    global _default_client
    if _default_client is None:
        _default_client = LLMClient()
    return _default_client


def set_client(client: LLMClient | None) -> None:
    """Replace the process-wide client (for testing)."""
    global _default_client
    _default_client = client


async def generate(
    request: LLMRequest,
    provider: str | None = None,
    correlation_id: str | None = None,
) -> LLMResponse:
    return await get_client().generate(request, provider=provider, correlation_id=correlation_id)
