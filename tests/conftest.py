"""Shared fixtures: stores, a scripted LLM client, the ASGI app."""

import os
from collections.abc import AsyncGenerator
from typing import Any

# Tests never reach real services
os.environ.setdefault("JOB_STORE_BACKEND", "memory")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from formai.db import mongo
from formai.llm.models import LLMRequest, LLMResponse, Usage
from formai.llm.profiles import resolve_profile
from formai.models import CompletionSettings, GenerationConfig
from formai.services.generation_config_store import (
    InMemoryGenerationConfigStore,
    set_generation_config_store,
)
from formai.services.job_runner import JobRunner, set_job_runner
from formai.services.job_store import InMemoryJobStore, set_job_store


@pytest_asyncio.fixture
async def mock_db() -> AsyncGenerator[Any, None]:
    """mongomock-motor database installed as the shared client."""
    mock_client = AsyncMongoMockClient()
    mock_database = mock_client[mongo.DATABASE_NAME]

    mongo.set_client(mock_client)

    yield mock_database

    mongo.set_client(None)


@pytest.fixture
def job_store() -> InMemoryJobStore:
    """Provide a fresh in-memory job store."""
    store = InMemoryJobStore()
    set_job_store(store)
    yield store
    set_job_store(None)


@pytest.fixture
def config_store() -> InMemoryGenerationConfigStore:
    """Provide a fresh in-memory generation config store."""
    store = InMemoryGenerationConfigStore()
    set_generation_config_store(store)
    yield store
    set_generation_config_store(None)


class FakeLLMClient:
    """Scripted stand-in for LLMClient.

    Each entry in ``script`` is either response text or an exception to
    raise. Requests are recorded for assertions.
    """

    def __init__(self, script: list[Any], completion_tokens: int | list[int] = 100):
        self.script = list(script)
        self.completion_tokens = completion_tokens
        self.requests: list[LLMRequest] = []
        self.providers: list[str | None] = []

    async def generate(
        self,
        request: LLMRequest,
        provider: str | None = None,
        correlation_id: str | None = None,
    ) -> LLMResponse:
        index = len(self.requests)
        self.requests.append(request)
        self.providers.append(provider)
        item = self.script[index] if index < len(self.script) else self.script[-1]
        if isinstance(item, Exception):
            raise item

        if isinstance(self.completion_tokens, list):
            tokens = self.completion_tokens[min(index, len(self.completion_tokens) - 1)]
        else:
            tokens = self.completion_tokens

        return LLMResponse(
            text=item,
            finish_reason="stop",
            usage=Usage(prompt_tokens=50, completion_tokens=tokens, total_tokens=50 + tokens),
            model=request.model or "test-model",
            provider=provider or "openai",
            latency_ms=10,
        )

    def get_profile(self, provider, model):
        return resolve_profile(provider or "openai", model or "gpt-4o")

    def get_provider(self, name=None):
        from formai.llm.client import LLMClient

        return LLMClient(
            openai_api_key="test-openai",
            anthropic_api_key="test-anthropic",
            gemini_api_key="test-gemini",
        ).get_provider(name)


@pytest.fixture
def fake_llm_client():
    """Factory for scripted LLM clients."""
    return FakeLLMClient


@pytest.fixture
def sample_config() -> GenerationConfig:
    """A template-mode generation config."""
    return GenerationConfig(
        target_id="cfg-1",
        name="Feedback summary",
        provider="openai",
        model="gpt-4o",
        system_prompt="You are a helpful assistant.",
        prompt_template="Summarize feedback from {name}: {feedback}",
        completion=CompletionSettings(),
    )


@pytest_asyncio.fixture
async def runner(job_store: InMemoryJobStore) -> AsyncGenerator[JobRunner, None]:
    """A background-mode runner bound to the in-memory store.

    Wake-ups are pushed far out so tests drive ticks explicitly.
    """
    runner = JobRunner(
        store=job_store,
        background_enabled=True,
        default_delay=300,
        rearm_delay=300,
    )
    set_job_runner(runner)
    yield runner
    await runner.stop()
    set_job_runner(None)


@pytest_asyncio.fixture
async def client(runner: JobRunner) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app in-process."""
    from formai.api.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
