"""Anthropic Messages provider.

System messages travel in the top-level ``system`` field, and the API
caps temperature at 1.0.
"""

from typing import Any

from anthropic import AsyncAnthropic, APIConnectionError, APIStatusError, APITimeoutError

from ..errors import MalformedResponseError
from ..models import LLMRequest, LLMResponse, Usage
from .base import LLMProvider, dump_response

STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
}


class AnthropicProvider(LLMProvider):
    name = "anthropic"
    label = "Anthropic"
    api_key_env = ("ANTHROPIC_API_KEY",)
    default_timeout = 120.0
    fallback_model = "claude-sonnet-4-20250514"

    context_markers = ("prompt is too long", "context length", "context window", "too many tokens")
    filter_markers = ("safety", "harmful")

    timeout_errors = (APITimeoutError,)
    connection_errors = (APIConnectionError,)
    status_errors = (APIStatusError,)

    def _create_client(self) -> AsyncAnthropic:
        return AsyncAnthropic(api_key=self._api_key, timeout=self._timeout)

    async def _send(self, wire_request: dict[str, Any]) -> Any:
        return await self.client.messages.create(**wire_request)

    def _build_request(self, request: LLMRequest) -> dict[str, Any]:
        wire_request: dict[str, Any] = {
            "model": request.model or self._default_model,
            "messages": [m.model_dump() for m in request.dialogue()],
            "max_tokens": self.output_budget(request),
            "temperature": min(request.temperature, 1.0),
        }
        system = request.system_text()
        if system:
            wire_request["system"] = system
        return wire_request

    def _parse_response(
        self, response: Any, latency_ms: int, wire_request: dict[str, Any]
    ) -> LLMResponse:
        texts = [block.text for block in response.content if block.type == "text"]
        if not texts:
            raise MalformedResponseError(
                "Anthropic response contained no text blocks",
                provider=self.name,
                request_id=getattr(response, "id", None),
            )

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        return LLMResponse(
            text="".join(texts),
            finish_reason=STOP_REASONS.get(response.stop_reason, response.stop_reason or "stop"),
            usage=Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
            model=response.model,
            provider=self.name,
            latency_ms=latency_ms,
            request_id=response.id,
            raw_request=wire_request,
            raw_response=dump_response(response),
        )
