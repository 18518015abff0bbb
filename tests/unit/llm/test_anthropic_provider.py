"""Unit tests for the Anthropic Messages provider."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from formai.llm.errors import (
    AuthenticationError,
    ContentFilterError,
    ContextLengthError,
    InvalidRequestError,
    MalformedResponseError,
    MissingCredentialsError,
    ProviderError,
    RateLimitError,
)
from formai.llm.models import ChatMessage, LLMRequest
from formai.llm.providers.anthropic import AnthropicProvider


class FakeAPIStatusError(Exception):
    """Stand-in for anthropic.APIStatusError."""

    def __init__(self, status_code: int, message: str, response=None, request_id=None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.response = response
        self.request_id = request_id


def create_mock_response(blocks=(("text", "Hello from Claude"),), stop_reason="end_turn"):
    mock_response = MagicMock()
    mock_response.id = "msg_123"
    mock_response.model = "claude-sonnet-4-20250514"
    content = []
    for block_type, text in blocks:
        block = MagicMock()
        block.type = block_type
        block.text = text
        content.append(block)
    mock_response.content = content
    mock_response.stop_reason = stop_reason
    mock_response.usage.input_tokens = 20
    mock_response.usage.output_tokens = 8
    mock_response.model_dump = MagicMock(return_value={})
    return mock_response


class TestAnthropicProviderInit:
    """Tests for construction and credentials."""

    def test_provider_name(self):
        """Test the provider identifier."""
        provider = AnthropicProvider(api_key="test-key")
        assert provider.name == "anthropic"

    def test_default_timeout(self):
        """Test default timeout."""
        provider = AnthropicProvider(api_key="test-key")
        assert provider._timeout == 120.0

    def test_missing_api_key_raises_error(self):
        """Test that a missing API key raises MissingCredentialsError."""
        provider = AnthropicProvider(api_key=None)
        provider._api_key = None

        with pytest.raises(MissingCredentialsError):
            _ = provider.client


class TestAnthropicRequestBuilding:
    """Tests for the Messages payload."""

    def test_system_messages_become_top_level(self):
        """Test that system messages move to the system field."""
        provider = AnthropicProvider(api_key="test-key")
        request = LLMRequest(
            messages=[
                ChatMessage(role="system", content="Rule one"),
                ChatMessage(role="system", content="Rule two"),
                ChatMessage(role="user", content="Hello"),
            ],
            model="claude-sonnet-4-20250514",
            max_tokens=1000,
        )

        anthropic_request = provider._build_request(request)

        assert anthropic_request["system"] == "Rule one\n\nRule two"
        assert anthropic_request["messages"] == [{"role": "user", "content": "Hello"}]
        assert anthropic_request["max_tokens"] == 1000

    def test_no_system_field_without_system_messages(self):
        """Test that the system field is omitted when unused."""
        provider = AnthropicProvider(api_key="test-key")
        request = LLMRequest(
            messages=[ChatMessage(role="user", content="Hello")],
            model="claude-sonnet-4-20250514",
        )
        assert "system" not in provider._build_request(request)

    def test_temperature_capped(self):
        """Test that temperature is capped at 1.0."""
        provider = AnthropicProvider(api_key="test-key")
        request = LLMRequest(
            messages=[ChatMessage(role="user", content="Hello")],
            model="claude-sonnet-4-20250514",
            temperature=1.8,
        )
        assert provider._build_request(request)["temperature"] == 1.0

    def test_max_tokens_clamped(self):
        """Test that max_tokens is clamped to 4096."""
        provider = AnthropicProvider(api_key="test-key")
        request = LLMRequest(
            messages=[ChatMessage(role="user", content="Hello")],
            model="claude-sonnet-4-20250514",
            max_tokens=20000,
        )
        assert provider._build_request(request)["max_tokens"] == 4096


class TestAnthropicResponseParsing:
    """Tests for reading Messages responses."""

    def test_parse_text_response(self):
        """Test that text blocks and usage are read."""
        provider = AnthropicProvider(api_key="test-key")

        response = provider._parse_response(create_mock_response(), 50, {})

        assert response.text == "Hello from Claude"
        assert response.finish_reason == "stop"
        assert response.usage.total_tokens == 28
        assert response.provider == "anthropic"

    def test_max_tokens_maps_to_length(self):
        """Test that max_tokens stop reason maps to length."""
        provider = AnthropicProvider(api_key="test-key")
        response = provider._parse_response(create_mock_response(stop_reason="max_tokens"), 50, {})
        assert response.finish_reason == "length"

    def test_text_blocks_joined(self):
        """Test that multiple text blocks are concatenated."""
        provider = AnthropicProvider(api_key="test-key")
        response = provider._parse_response(
            create_mock_response(blocks=(("text", "a"), ("tool_use", "x"), ("text", "b"))), 50, {}
        )
        assert response.text == "ab"

    def test_no_text_blocks_is_malformed(self):
        """Test that a response without text raises MalformedResponseError."""
        provider = AnthropicProvider(api_key="test-key")
        with pytest.raises(MalformedResponseError):
            provider._parse_response(create_mock_response(blocks=()), 50, {})


class TestAnthropicErrorHandling:
    """Tests for status-error classification."""

    def test_handle_401_error(self):
        """Test that a rejected key is chained onto AuthenticationError."""
        provider = AnthropicProvider(api_key="test-key")
        error = FakeAPIStatusError(status_code=401, message="invalid x-api-key")

        with pytest.raises(AuthenticationError) as exc_info:
            provider._handle_api_error(error)

        assert exc_info.value.__cause__ is error

    def test_handle_429_error(self):
        """Test that the retry-after header is read."""
        provider = AnthropicProvider(api_key="test-key")
        mock_response = MagicMock()
        mock_response.headers = {"retry-after": "12"}
        error = FakeAPIStatusError(status_code=429, message="rate_limit_error", response=mock_response)

        with pytest.raises(RateLimitError) as exc_info:
            provider._handle_api_error(error)

        assert exc_info.value.retry_after == 12.0

    def test_handle_prompt_too_long(self):
        """Test that an over-long prompt maps to ContextLengthError."""
        provider = AnthropicProvider(api_key="test-key")
        error = FakeAPIStatusError(status_code=400, message="prompt is too long: 210000 tokens > 200000")

        with pytest.raises(ContextLengthError):
            provider._handle_api_error(error)

    def test_handle_413(self):
        """Test that 413 maps to ContextLengthError."""
        provider = AnthropicProvider(api_key="test-key")
        error = FakeAPIStatusError(status_code=413, message="request_too_large")

        with pytest.raises(ContextLengthError):
            provider._handle_api_error(error)

    def test_handle_safety_error(self):
        """Test that safety rejections map to ContentFilterError."""
        provider = AnthropicProvider(api_key="test-key")
        error = FakeAPIStatusError(status_code=400, message="Output blocked for safety reasons")

        with pytest.raises(ContentFilterError):
            provider._handle_api_error(error)

    def test_handle_400_error(self):
        """Test handling a plain 400."""
        provider = AnthropicProvider(api_key="test-key")
        error = FakeAPIStatusError(status_code=400, message="messages: field required")

        with pytest.raises(InvalidRequestError):
            provider._handle_api_error(error)

    def test_handle_overloaded(self):
        """Test that 529 overloaded maps to ProviderError."""
        provider = AnthropicProvider(api_key="test-key")
        error = FakeAPIStatusError(status_code=529, message="Overloaded")

        with pytest.raises(ProviderError):
            provider._handle_api_error(error)


class TestAnthropicProviderGenerate:
    """Tests for calls through a mocked SDK client."""

    @pytest.mark.asyncio
    async def test_generate_success(self):
        """Test that system text reaches the SDK call."""
        provider = AnthropicProvider(api_key="test-key")
        mock_client = AsyncMock()
        mock_client.messages.create = AsyncMock(return_value=create_mock_response())

        with patch.object(provider, "_client", mock_client):
            request = LLMRequest(
                messages=[
                    ChatMessage(role="system", content="Be kind"),
                    ChatMessage(role="user", content="Hi"),
                ],
                model="claude-sonnet-4-20250514",
            )
            response = await provider.generate(request)

        assert response.text == "Hello from Claude"
        sent = mock_client.messages.create.call_args.kwargs
        assert sent["system"] == "Be kind"

    @pytest.mark.asyncio
    async def test_generate_timeout(self):
        """Test that an SDK timeout becomes TimeoutError."""
        from anthropic import APITimeoutError

        from formai.llm.errors import TimeoutError

        provider = AnthropicProvider(api_key="test-key")
        mock_client = AsyncMock()
        mock_client.messages.create = AsyncMock(side_effect=APITimeoutError(request=MagicMock()))

        with patch.object(provider, "_client", mock_client):
            request = LLMRequest(
                messages=[ChatMessage(role="user", content="Hi")],
                model="claude-sonnet-4-20250514",
            )
            with pytest.raises(TimeoutError):
                await provider.generate(request)
