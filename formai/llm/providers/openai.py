"""OpenAI Chat Completions provider."""

from typing import Any

from openai import AsyncOpenAI, APIConnectionError, APIStatusError, APITimeoutError

from ..errors import ContentFilterError, MalformedResponseError
from ..models import LLMRequest, LLMResponse, Usage
from .base import LLMProvider, dump_response


class OpenAIProvider(LLMProvider):
    name = "openai"
    label = "OpenAI"
    api_key_env = ("OPENAI_API_KEY",)
    default_timeout = 240.0
    fallback_model = "gpt-4o"

    context_markers = ("context_length_exceeded", "maximum context length")
    filter_markers = ("content_filter", "safety")

    timeout_errors = (APITimeoutError,)
    connection_errors = (APIConnectionError,)
    status_errors = (APIStatusError,)

    def _create_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=self._api_key, timeout=self._timeout)

    async def _send(self, wire_request: dict[str, Any]) -> Any:
        return await self.client.chat.completions.create(**wire_request)

    def _build_request(self, request: LLMRequest) -> dict[str, Any]:
        return {
            "model": request.model or self._default_model,
            "messages": [m.model_dump() for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": self.output_budget(request),
        }

    def _parse_response(
        self, response: Any, latency_ms: int, wire_request: dict[str, Any]
    ) -> LLMResponse:
        request_id = getattr(response, "id", None)
        if not response.choices:
            raise MalformedResponseError(
                "OpenAI response contained no choices", provider=self.name, request_id=request_id
            )

        choice = response.choices[0]
        finish_reason = choice.finish_reason or "stop"
        text = choice.message.content

        if not text and finish_reason == "content_filter":
            raise ContentFilterError(
                "Response blocked by OpenAI content filter", provider=self.name, request_id=request_id
            )
        if text is None:
            raise MalformedResponseError(
                f"OpenAI returned no message content (finish_reason={finish_reason})",
                provider=self.name,
                request_id=request_id,
            )

        usage = response.usage
        return LLMResponse(
            text=text,
            finish_reason=finish_reason,
            usage=Usage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0),
                completion_tokens=getattr(usage, "completion_tokens", 0),
                total_tokens=getattr(usage, "total_tokens", 0),
            ),
            model=response.model,
            provider=self.name,
            latency_ms=latency_ms,
            request_id=request_id,
            raw_request=wire_request,
            raw_response=dump_response(response),
        )
