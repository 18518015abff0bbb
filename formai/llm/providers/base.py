"""Shared provider plumbing.

A provider subclass supplies its SDK client, the wire request/response
translation and the SDK exception types. Credentials, timing and the
status-code classification live here so every vendor reports failures
through the same taxonomy.
"""

import os
import time
from abc import ABC, abstractmethod
from typing import Any, NoReturn

from ..errors import MissingCredentialsError, ProviderError, TimeoutError, error_for_status
from ..models import LLMRequest, LLMResponse
from ..profiles import ChunkingProfile, resolve_profile


def retry_after_seconds(error: Exception) -> float | None:
    """Read a numeric retry-after header off an SDK status error."""
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def dump_response(response: Any, **kwargs: Any) -> dict[str, Any] | None:
    if hasattr(response, "model_dump"):
        return response.model_dump(**kwargs)
    return None


class LLMProvider(ABC):
    """One vendor API behind the vendor-neutral request/response models."""

    name: str = ""
    label: str = ""
    api_key_env: tuple[str, ...] = ()
    default_timeout: float = 120.0
    fallback_model: str = ""

    # Substrings that split a 400 into context overflow or safety rejection
    context_markers: tuple[str, ...] = ()
    filter_markers: tuple[str, ...] = ("safety",)

    # SDK exception types, checked in this order
    timeout_errors: tuple[type[BaseException], ...] = ()
    connection_errors: tuple[type[BaseException], ...] = ()
    status_errors: tuple[type[BaseException], ...] = ()

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        default_model: str | None = None,
    ):
        self._api_key = api_key or next(
            (os.environ[var] for var in self.api_key_env if os.environ.get(var)), None
        )
        self._timeout = self.default_timeout if timeout is None else timeout
        self._default_model = default_model or self.fallback_model
        self._client: Any = None

    @property
    def default_model(self) -> str:
        return self._default_model

    @property
    def client(self) -> Any:
        """SDK client, built on first use."""
        if self._client is None:
            if not self._api_key:
                raise MissingCredentialsError(
                    f"{self.label} API key not configured. "
                    f"Set {self.api_key_env[0]} environment variable.",
                    provider=self.name,
                )
            self._client = self._create_client()
        return self._client

    @abstractmethod
    def _create_client(self) -> Any: ...

    @abstractmethod
    def _build_request(self, request: LLMRequest) -> dict[str, Any]: ...

    @abstractmethod
    async def _send(self, wire_request: dict[str, Any]) -> Any: ...

    @abstractmethod
    def _parse_response(
        self, response: Any, latency_ms: int, wire_request: dict[str, Any]
    ) -> LLMResponse: ...

    async def generate(self, request: LLMRequest) -> LLMResponse:
        """Send one completion request.

        Raises:
            MissingCredentialsError: API key not configured.
            AuthenticationError: Invalid or expired API key.
            RateLimitError: Rate limit exceeded (retryable).
            TransportError: Timeout, connection or 5xx failure (retryable).
            ContextLengthError: Prompt plus output budget too large.
            ContentFilterError: Blocked by safety filters.
            MalformedResponseError: Response carried no usable text.
        """
        wire_request = self._build_request(request)
        started = time.perf_counter()

        try:
            response = await self._send(wire_request)
        except self.timeout_errors as e:
            raise TimeoutError(
                f"{self.label} request timed out after {self._timeout}s", provider=self.name
            ) from e
        except self.connection_errors as e:
            raise ProviderError(f"Failed to connect to {self.label}: {e}", provider=self.name) from e
        except self.status_errors as e:
            self._handle_api_error(e)

        latency_ms = int((time.perf_counter() - started) * 1000)
        return self._parse_response(response, latency_ms, wire_request)

    def _handle_api_error(self, error: Any) -> NoReturn:
        message = str(getattr(error, "message", None) or error)
        raise error_for_status(
            self.name,
            self.label,
            error.status_code,
            message,
            request_id=getattr(error, "request_id", None),
            retry_after=retry_after_seconds(error),
            context_markers=self.context_markers,
            filter_markers=self.filter_markers,
        ) from error

    def profile_for(self, model: str) -> ChunkingProfile:
        return resolve_profile(self.name, model or self.default_model)

    def output_budget(self, request: LLMRequest) -> int:
        """Requested max_tokens clamped to the model's floor and ceiling."""
        return self.profile_for(request.model).clamp_output_tokens(request.max_tokens)
