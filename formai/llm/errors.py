"""Exceptions raised by the LLM layer.

Every provider failure is reported as one of these classes, whatever the
vendor. ``kind`` is what callers branch on; the message text is for logs.
"""

from enum import Enum


class ErrorKind(str, Enum):
    missing_credentials = "missing_credentials"
    rate_limited = "rate_limited"
    invalid_or_expired_credentials = "invalid_or_expired_credentials"
    context_too_long = "context_too_long"
    content_filtered = "content_filtered"
    malformed_response = "malformed_response"
    transport_error = "transport_error"
    unknown = "unknown"


class LLMError(Exception):
    """Root of the taxonomy.

    ``correlation_id`` is filled in by LLMClient so a failure can be traced
    across its retry attempts.
    """

    kind: ErrorKind = ErrorKind.unknown

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        request_id: str | None = None,
        correlation_id: str | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.request_id = request_id
        self.correlation_id = correlation_id

    def __str__(self) -> str:
        context = [
            f"{key}={value}"
            for key, value in (("provider", self.provider), ("request_id", self.request_id))
            if value
        ]
        return " ".join([super().__str__(), *context])


class MissingCredentialsError(LLMError):
    """No API key in the environment or constructor."""

    kind = ErrorKind.missing_credentials


class AuthenticationError(LLMError):
    """The vendor rejected the key (401/403)."""

    kind = ErrorKind.invalid_or_expired_credentials


class RateLimitError(LLMError):
    """429. ``retry_after`` holds the vendor's hint in seconds, if any."""

    kind = ErrorKind.rate_limited

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        provider: str | None = None,
        request_id: str | None = None,
        correlation_id: str | None = None,
    ):
        super().__init__(message, provider, request_id, correlation_id)
        self.retry_after = retry_after


class TransportError(LLMError):
    kind = ErrorKind.transport_error


class TimeoutError(TransportError):
    pass


class ProviderError(TransportError):
    """Connection failure or a 5xx from the vendor."""


class InvalidRequestError(LLMError):
    """A 400 that is neither a context overflow nor a safety block."""


class ContextLengthError(InvalidRequestError):
    """Prompt plus output budget does not fit the model's window."""

    kind = ErrorKind.context_too_long


class ContentFilterError(LLMError):
    kind = ErrorKind.content_filtered


class MalformedResponseError(LLMError):
    """The call succeeded but carried no usable text."""

    kind = ErrorKind.malformed_response


class ModelNotFoundError(LLMError):
    pass


# LLMClient backs off and retries these; everything else is raised at once
RETRYABLE_ERRORS = (RateLimitError, TransportError)
NON_RETRYABLE_ERRORS = (
    MissingCredentialsError,
    AuthenticationError,
    InvalidRequestError,
    ContentFilterError,
    MalformedResponseError,
    ModelNotFoundError,
)


def error_for_status(
    provider: str,
    label: str,
    status_code: int,
    message: str,
    *,
    request_id: str | None = None,
    retry_after: float | None = None,
    context_markers: tuple[str, ...] = (),
    filter_markers: tuple[str, ...] = ("safety",),
) -> LLMError:
    """Classify an HTTP error returned by a provider SDK.

    ``label`` is the vendor name used in messages. A 400 is split by the
    marker substrings: context overflow first, then safety rejections,
    anything else is an invalid request. 413 always means the prompt was
    too large.
    """
    lowered = message.lower()
    ids = {"provider": provider, "request_id": request_id}

    if status_code == 401:
        return AuthenticationError(f"Invalid or expired {label} API key: {message}", **ids)
    if status_code == 403:
        return AuthenticationError(f"{label} access denied: {message}", **ids)
    if status_code == 404:
        return ModelNotFoundError(f"Model not found: {message}", **ids)
    if status_code == 429:
        return RateLimitError(
            f"{label} rate limit exceeded: {message}", retry_after=retry_after, **ids
        )
    if status_code == 413 or (
        status_code == 400 and any(marker in lowered for marker in context_markers)
    ):
        return ContextLengthError(f"{label} context length exceeded: {message}", **ids)
    if status_code == 400:
        if any(marker in lowered for marker in filter_markers):
            return ContentFilterError(f"Content blocked by {label} safety filters: {message}", **ids)
        return InvalidRequestError(f"Invalid request to {label}: {message}", **ids)
    if status_code >= 500:
        return ProviderError(f"{label} server error ({status_code}): {message}", **ids)
    return LLMError(f"{label} error ({status_code}): {message}", **ids)
