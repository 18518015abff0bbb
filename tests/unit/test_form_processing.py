"""Unit tests for the AI form processing handler."""

import pytest

from formai.llm.errors import MissingCredentialsError, RateLimitError
from formai.models import Job, PromptType
from formai.services.form_processing import (
    ALL_FORM_DATA_FOOTER,
    ALL_FORM_DATA_HEADER,
    FormProcessingHandler,
    build_user_prompt,
    format_all_form_data,
    render_template,
    should_use_chunking,
)
from formai.services.job_runner import PermanentJobError


def make_job(form_data, target_id="cfg-1"):
    return Job(job_id="job-1", target_id=target_id, payload={"form_data": form_data})


# =============================================================================
# Prompt building
# =============================================================================

class TestRenderTemplate:
    """Tests for template substitution."""

    def test_substitutes_fields(self):
        """Test that placeholders are replaced by submitted values."""
        prompt = render_template("Hello {name}, you chose {plan}.", {"name": "Sam", "plan": "Pro"})
        assert prompt == "Hello Sam, you chose Pro."

    def test_lists_joined(self):
        """Test that list values are comma-joined."""
        prompt = render_template("Topics: {topics}", {"topics": ["pricing", "support"]})
        assert prompt == "Topics: pricing, support"

    def test_unfilled_placeholders_removed(self):
        """Test that placeholders without a value are dropped."""
        prompt = render_template("Hi {name}{missing}!", {"name": "Sam", "nested": {"a": 1}})
        assert prompt == "Hi Sam!"


class TestFormatAllFormData:
    """Tests for the all-fields prompt."""

    def test_labels_and_hidden_fields(self):
        """Test that labels apply and underscore-prefixed fields are skipped."""
        prompt = format_all_form_data(
            {"name": "Sam", "score": 9, "_token": "secret", "extra": {"x": 1}},
            {"name": "Full name"},
        )

        assert prompt.startswith(ALL_FORM_DATA_HEADER)
        assert prompt.endswith(ALL_FORM_DATA_FOOTER)
        assert "Full name: Sam\n" in prompt
        assert "score: 9\n" in prompt
        assert "secret" not in prompt
        assert "extra" not in prompt


class TestBuildUserPrompt:
    """Tests for user prompt selection."""

    def test_template_mode(self, sample_config):
        """Test template-mode prompts."""
        prompt = build_user_prompt(sample_config, {"name": "Sam", "feedback": "Great"})
        assert prompt == "Summarize feedback from Sam: Great"

    def test_all_form_data_mode(self, sample_config):
        """Test all-form-data prompts ignore the template."""
        config = sample_config.model_copy(update={"prompt_type": PromptType.all_form_data})
        prompt = build_user_prompt(config, {"name": "Sam"})
        assert "name: Sam" in prompt
        assert "Summarize" not in prompt

    def test_missing_template(self, sample_config):
        """Test that a template-mode config without a template is permanent."""
        config = sample_config.model_copy(update={"prompt_template": "  "})
        with pytest.raises(PermanentJobError, match="No user prompt template configured"):
            build_user_prompt(config, {"name": "Sam"})

    def test_empty_after_substitution(self, sample_config):
        """Test that a prompt that renders empty is permanent."""
        config = sample_config.model_copy(update={"prompt_template": "{comment}"})
        with pytest.raises(PermanentJobError, match="empty after processing"):
            build_user_prompt(config, {"comment": ""})


class TestShouldUseChunking:
    """Tests for the chunking decision."""

    def test_disabled(self, sample_config):
        """Test that chunking is never used when disabled."""
        config = sample_config.model_copy(update={"max_tokens": 20000})
        assert should_use_chunking(config, {}) is False

    def test_small_request(self, sample_config):
        """Test that a short request stays single-call."""
        config = sample_config.model_copy(update={"enable_chunking": True})
        assert should_use_chunking(config, {"name": "Sam"}) is False

    @pytest.mark.parametrize("update,form_data", [
        ({"max_tokens": 4001}, {}),
        ({}, {"essay": "x" * 8000}),
        ({"prompt_template": "Write an HTML report for {name}"}, {}),
        ({"system_prompt": "Write a Detailed analysis."}, {}),
        ({"system_prompt": "Be comprehensive."}, {}),
    ])
    def test_triggers(self, sample_config, update, form_data):
        """Test each chunking trigger."""
        config = sample_config.model_copy(update={"enable_chunking": True, **update})
        assert should_use_chunking(config, form_data) is True


# =============================================================================
# Handler
# =============================================================================

class TestFormProcessingHandler:
    """Tests for the job handler."""

    @pytest.mark.asyncio
    async def test_single_call(self, sample_config, config_store, fake_llm_client):
        """Test the single-call path."""
        await config_store.save_config(sample_config)
        client = fake_llm_client(["Thanks Sam, noted."], completion_tokens=42)
        handler = FormProcessingHandler(client=client, config_store=config_store)

        result = await handler(make_job({"name": "Sam", "feedback": "Great"}))

        assert result.text == "Thanks Sam, noted."
        assert result.chunked is False
        assert result.tokens_used == 42
        assert result.stop_reason == "stop"
        request = client.requests[0]
        assert [m.role for m in request.messages] == ["system", "user"]
        assert request.messages[1].content == "Summarize feedback from Sam: Great"
        assert request.model == "gpt-4o"
        assert request.max_tokens == 1000
        assert client.providers == ["openai"]

    @pytest.mark.asyncio
    async def test_default_model(self, sample_config, config_store, fake_llm_client):
        """Test that an unset model falls back to the provider default."""
        await config_store.save_config(sample_config.model_copy(update={"model": None}))
        client = fake_llm_client(["ok"])
        handler = FormProcessingHandler(client=client, config_store=config_store)

        await handler(make_job({"name": "Sam", "feedback": "Great"}))

        assert client.requests[0].model == client.get_provider("openai").default_model

    @pytest.mark.asyncio
    async def test_payload_without_form_data_key(self, sample_config, config_store, fake_llm_client):
        """Test that a bare payload is treated as the form data."""
        await config_store.save_config(sample_config)
        client = fake_llm_client(["ok"])
        handler = FormProcessingHandler(client=client, config_store=config_store)
        job = Job(job_id="job-1", target_id="cfg-1", payload={"name": "Ana", "feedback": "Slow"})

        await handler(job)

        assert client.requests[0].messages[1].content == "Summarize feedback from Ana: Slow"

    @pytest.mark.asyncio
    async def test_chunked_path(self, sample_config, config_store, fake_llm_client):
        """Test that large configurations go through the chunk controller."""
        config = sample_config.model_copy(update={"enable_chunking": True, "max_tokens": 5000})
        await config_store.save_config(config)
        marker = config.completion.completion_marker
        client = fake_llm_client([f"<p>Full report</p>\n{marker}"], completion_tokens=800)
        handler = FormProcessingHandler(client=client, config_store=config_store)

        result = await handler(make_job({"name": "Sam", "feedback": "Great"}))

        assert result.chunked is True
        assert result.chunks == 1
        assert result.stop_reason == "marker"
        assert result.tokens_used == 800
        assert "<p>Full report</p>" in result.text
        assert marker not in result.text
        assert "CHUNKING INSTRUCTIONS" in client.requests[0].messages[0].content

    @pytest.mark.asyncio
    async def test_missing_config(self, config_store, fake_llm_client):
        """Test that an unknown target_id is a permanent failure."""
        handler = FormProcessingHandler(client=fake_llm_client(["ok"]), config_store=config_store)

        with pytest.raises(PermanentJobError, match="Generation config cfg-404 not found"):
            await handler(make_job({}, target_id="cfg-404"))

    @pytest.mark.asyncio
    async def test_unknown_provider(self, sample_config, config_store, fake_llm_client):
        """Test that an unsupported provider is a permanent failure."""
        await config_store.save_config(sample_config.model_copy(update={"provider": "mistral"}))
        handler = FormProcessingHandler(client=fake_llm_client(["ok"]), config_store=config_store)

        with pytest.raises(PermanentJobError, match="Unknown provider"):
            await handler(make_job({"name": "Sam", "feedback": "Great"}))

    @pytest.mark.asyncio
    async def test_missing_credentials(self, sample_config, config_store, fake_llm_client):
        """Test that missing API keys are a permanent failure."""
        await config_store.save_config(sample_config)
        client = fake_llm_client([MissingCredentialsError("OPENAI_API_KEY not set", provider="openai")])
        handler = FormProcessingHandler(client=client, config_store=config_store)

        with pytest.raises(PermanentJobError, match="OPENAI_API_KEY"):
            await handler(make_job({"name": "Sam", "feedback": "Great"}))

    @pytest.mark.asyncio
    async def test_transient_errors_propagate(self, sample_config, config_store, fake_llm_client):
        """Test that retryable provider errors reach the runner unchanged."""
        await config_store.save_config(sample_config)
        client = fake_llm_client([RateLimitError("slow down", provider="openai")])
        handler = FormProcessingHandler(client=client, config_store=config_store)

        with pytest.raises(RateLimitError):
            await handler(make_job({"name": "Sam", "feedback": "Great"}))

    @pytest.mark.asyncio
    async def test_empty_response(self, sample_config, config_store, fake_llm_client):
        """Test that blank output is an error so the job is retried."""
        await config_store.save_config(sample_config)
        handler = FormProcessingHandler(client=fake_llm_client(["   "]), config_store=config_store)

        with pytest.raises(ValueError, match="empty response"):
            await handler(make_job({"name": "Sam", "feedback": "Great"}))

    @pytest.mark.asyncio
    async def test_non_dict_form_data(self, fake_llm_client, config_store):
        """Test that a malformed payload is rejected."""
        handler = FormProcessingHandler(client=fake_llm_client(["ok"]), config_store=config_store)
        job = Job(job_id="job-1", target_id="cfg-1", payload={"form_data": ["not", "a", "dict"]})

        with pytest.raises(PermanentJobError):
            await handler(job)
