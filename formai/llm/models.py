"""Wire-neutral shapes passed between the client, providers and callers."""

from typing import Any, Literal

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant"]


class ChatMessage(BaseModel):
    role: Role
    content: str


class LLMRequest(BaseModel):
    """One completion call.

    ``max_tokens`` is a wish; each provider clamps it to the model's output
    floor and ceiling before sending.
    """

    messages: list[ChatMessage]
    model: str
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = None
    metadata: dict[str, Any] | None = None

    def system_text(self, separator: str = "\n\n") -> str | None:
        """All system messages joined, or None when there are none."""
        parts = [m.content for m in self.messages if m.role == "system"]
        return separator.join(parts) if parts else None

    def dialogue(self) -> list[ChatMessage]:
        """The user/assistant turns, system messages removed."""
        return [m for m in self.messages if m.role != "system"]


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMResponse(BaseModel):
    """Result of one provider call.

    ``finish_reason`` is normalized to ``stop`` or ``length`` where the
    vendor's vocabulary allows it. Wire payloads ride along for job logs.
    """

    text: str
    finish_reason: str
    usage: Usage
    model: str
    provider: str
    latency_ms: int
    request_id: str | None = None
    raw_request: dict[str, Any] | None = None
    raw_response: dict[str, Any] | None = None
