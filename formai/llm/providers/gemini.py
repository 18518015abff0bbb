"""Google Gemini provider on the google-genai SDK.

Gemini has no system role: system text is folded into the first user turn,
and assistant turns are sent with the ``model`` role.
"""

from typing import Any, NoReturn

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..errors import ContentFilterError, ContextLengthError, MalformedResponseError, error_for_status
from ..models import LLMRequest, LLMResponse, Usage
from .base import LLMProvider, dump_response

BLOCKED_FINISH_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "RECITATION"}

TOP_P = 0.95
TOP_K = 40


def _enum_value(value: Any) -> str | None:
    """SDK enums are str subclasses; normalize to plain str."""
    if value is None:
        return None
    return str(getattr(value, "value", value))


class GeminiProvider(LLMProvider):
    name = "gemini"
    label = "Gemini"
    api_key_env = ("GEMINI_API_KEY", "GOOGLE_API_KEY")
    default_timeout = 300.0
    fallback_model = "gemini-2.5-flash"

    context_markers = ("exceeds the maximum number of tokens", "input token count", "too long")

    timeout_errors = (httpx.TimeoutException,)
    connection_errors = (httpx.TransportError,)
    status_errors = (genai_errors.APIError,)

    def _create_client(self) -> genai.Client:
        return genai.Client(
            api_key=self._api_key,
            http_options=types.HttpOptions(timeout=int(self._timeout * 1000)),
        )

    async def _send(self, wire_request: dict[str, Any]) -> Any:
        return await self.client.aio.models.generate_content(
            model=wire_request["model"],
            contents=wire_request["contents"],
            config=types.GenerateContentConfig(**wire_request["config"]),
        )

    def _build_request(self, request: LLMRequest) -> dict[str, Any]:
        model = request.model or self._default_model
        assistant_role = self.profile_for(model).assistant_role
        system = request.system_text()

        contents: list[dict[str, Any]] = []
        for message in request.dialogue():
            role = assistant_role if message.role == "assistant" else "user"
            text = message.content
            if system and role == "user" and not contents:
                text = f"{system}\n\n{text}"
            contents.append({"role": role, "parts": [{"text": text}]})

        if not contents and system:
            contents.append({"role": "user", "parts": [{"text": system}]})

        return {
            "model": model,
            "contents": contents,
            "config": {
                "temperature": request.temperature,
                "max_output_tokens": self.output_budget(request),
                "top_p": TOP_P,
                "top_k": TOP_K,
            },
        }

    def _parse_response(
        self, response: Any, latency_ms: int, wire_request: dict[str, Any]
    ) -> LLMResponse:
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = _enum_value(getattr(feedback, "block_reason", None))
        if block_reason:
            raise ContentFilterError(
                f"Prompt blocked by Gemini safety filters: {block_reason}", provider=self.name
            )

        if not response.candidates:
            raise MalformedResponseError("Gemini response contained no candidates", provider=self.name)

        candidate = response.candidates[0]
        finish_reason = _enum_value(candidate.finish_reason) or "STOP"
        if finish_reason in BLOCKED_FINISH_REASONS:
            raise ContentFilterError(
                f"Response blocked by Gemini safety filters: {finish_reason}", provider=self.name
            )

        parts = (candidate.content.parts if candidate.content else None) or []
        text = "".join(part.text for part in parts if getattr(part, "text", None))
        if not text:
            if finish_reason == "MAX_TOKENS":
                # Thinking models can spend the entire budget before emitting text
                raise ContextLengthError("Gemini hit MAX_TOKENS before producing any text", provider=self.name)
            raise MalformedResponseError(
                f"Gemini response contained no text (finish_reason={finish_reason})", provider=self.name
            )

        meta = getattr(response, "usage_metadata", None)
        prompt_tokens = getattr(meta, "prompt_token_count", None) or 0
        completion_tokens = getattr(meta, "candidates_token_count", None) or 0
        total_tokens = getattr(meta, "total_token_count", None) or prompt_tokens + completion_tokens

        return LLMResponse(
            text=text,
            finish_reason="length" if finish_reason == "MAX_TOKENS" else "stop",
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
            ),
            model=getattr(response, "model_version", None) or wire_request["model"],
            provider=self.name,
            latency_ms=latency_ms,
            request_id=getattr(response, "response_id", None),
            raw_request=wire_request,
            raw_response=dump_response(response, mode="json"),
        )

    def _handle_api_error(self, error: Any) -> NoReturn:
        status_code = error.code or 0
        message = str(error.message or error)
        # An invalid key comes back as a plain 400
        if status_code == 400 and "api key" in message.lower():
            status_code = 401
        raise error_for_status(
            self.name,
            self.label,
            status_code,
            message,
            context_markers=self.context_markers,
            filter_markers=self.filter_markers,
        ) from error
