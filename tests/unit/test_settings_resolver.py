"""Unit tests for completion settings resolution."""

import pytest

from formai.models import CompletionSettings, GenerationConfig
from formai.services.settings_resolver import resolve_completion_settings


class TestResolveCompletionSettings:
    """Test that settings resolve from stored configurations."""

    @pytest.mark.asyncio
    async def test_missing_config_returns_defaults(self, config_store):
        """Test that an unknown target resolves to the defaults."""
        settings = await resolve_completion_settings("nope", store=config_store)
        assert settings == CompletionSettings()
        assert settings.completion_marker == "<!-- REPORT_END -->"
        assert settings.min_content_length == 500
        assert settings.completion_word_count == 800
        assert settings.min_chunk_words == 300
        assert settings.enable_smart_completion is False
        assert settings.use_token_percentage is False
        assert settings.token_completion_threshold == 70

    @pytest.mark.asyncio
    async def test_stored_settings_returned(self, config_store):
        """Test that stored values override the defaults."""
        custom = CompletionSettings(
            completion_marker="<!-- DONE -->",
            enable_smart_completion=True,
            token_completion_threshold=85,
            completion_keywords="fin, end",
        )
        await config_store.save_config(GenerationConfig(target_id="cfg-9", completion=custom))

        settings = await resolve_completion_settings("cfg-9", store=config_store)

        assert settings.completion_marker == "<!-- DONE -->"
        assert settings.token_completion_threshold == 85
        assert settings.keywords == ["fin", "end"]
        # Unset fields keep their defaults
        assert settings.min_content_length == 500

    @pytest.mark.asyncio
    async def test_uses_default_store(self, config_store):
        """Test that the module-level store is used when none is passed."""
        await config_store.save_config(
            GenerationConfig(
                target_id="cfg-default",
                completion=CompletionSettings(min_content_length=42),
            )
        )
        settings = await resolve_completion_settings("cfg-default")
        assert settings.min_content_length == 42


class TestCompletionSettingsModel:
    """Test completion settings parsing."""

    def test_keywords_parsed(self):
        """Test that blank keyword entries are dropped."""
        settings = CompletionSettings(completion_keywords=" conclusion, ,summary ,")
        assert settings.keywords == ["conclusion", "summary"]

    def test_default_keywords(self):
        """Test the default keyword list."""
        assert "conclusion" in CompletionSettings().keywords
