"""OpenAI, Anthropic and Gemini behind one request model and one error taxonomy.

``LLMClient`` adds retries on top; ``resolve_profile`` gives the per-model
numbers the chunked generation loop works from.
"""

from .client import LLMClient
from .errors import (
    AuthenticationError,
    ContentFilterError,
    ContextLengthError,
    ErrorKind,
    InvalidRequestError,
    LLMError,
    MalformedResponseError,
    MissingCredentialsError,
    ProviderError,
    RateLimitError,
    TimeoutError,
    TransportError,
)
from .models import ChatMessage, LLMRequest, LLMResponse, Usage
from .profiles import ChunkingProfile, resolve_profile

__all__ = [
    "LLMClient",
    "LLMRequest",
    "LLMResponse",
    "ChatMessage",
    "Usage",
    "ChunkingProfile",
    "resolve_profile",
    "ErrorKind",
    "LLMError",
    "MissingCredentialsError",
    "AuthenticationError",
    "RateLimitError",
    "TransportError",
    "TimeoutError",
    "InvalidRequestError",
    "ContextLengthError",
    "ContentFilterError",
    "MalformedResponseError",
    "ProviderError",
]
