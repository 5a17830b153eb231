import copy

import pytest
from unittest.mock import AsyncMock, MagicMock

from llm_relay.providers.base import CompletionResult, TokenUsage
from llm_relay.providers.registry import ProviderRegistry
from llm_relay.routing.router import LLMRouter


PROVIDER_TABLE = {
    "models": {
        "General-Purpose": [
            {
                "id": "primary",
                "name": "Primary",
                "apiEndpoint": "https://primary.test/v1/chat/completions",
                "keyEnvVariable": "PRIMARY_API_KEY",
                "apiFormat": "openai_chat",
                "model": "primary-large",
                "timeoutMs": 2000,
                "costs": {"promptTokenRate": 0.001, "completionTokenRate": 0.002},
                "rateLimit": {"requestsPerMinute": 60},
            },
            {
                "id": "secondary",
                "name": "Secondary",
                "apiEndpoint": "https://secondary.test/v1/messages",
                "keyEnvVariable": "SECONDARY_API_KEY",
                "authScheme": "x-api-key",
                "apiFormat": "anthropic",
                "model": "secondary-chat",
                "costs": {"promptTokenRate": 0.003, "completionTokenRate": 0.015, "currency": "EUR"},
            },
        ],
        "Open Source": [
            {
                "id": "tertiary",
                "name": "Tertiary",
                "urlEnvVariable": "TERTIARY_URL",
                "keyEnvVariable": "TERTIARY_API_KEY",
                "apiFormat": "prompt",
            },
            {
                "id": "retired",
                "name": "Retired",
                "apiEndpoint": "https://retired.test/generate",
                "keyEnvVariable": "RETIRED_API_KEY",
                "enabled": False,
            },
        ],
    }
}


@pytest.fixture
def provider_table():
    return copy.deepcopy(PROVIDER_TABLE)


@pytest.fixture
def registry(provider_table):
    return ProviderRegistry.from_dict(provider_table)


@pytest.fixture
def api_keys(monkeypatch):
    monkeypatch.setenv("PRIMARY_API_KEY", "pk-test")
    monkeypatch.setenv("SECONDARY_API_KEY", "sk-test")
    monkeypatch.setenv("TERTIARY_API_KEY", "tk-test")
    monkeypatch.setenv("TERTIARY_URL", "http://localhost:9999/generate")


def make_completion(provider, text="ok", prompt_tokens=10, completion_tokens=5):
    return CompletionResult(
        text=text,
        usage=TokenUsage(prompt_tokens, completion_tokens),
        provider=provider,
        model=f"{provider}-model",
        latency_ms=12.0,
    )


@pytest.fixture
def adapter():
    adapter = MagicMock()
    adapter.complete = AsyncMock()
    return adapter


@pytest.fixture
def make_router(registry, adapter):
    """Router over the test table with no backoff delay."""
    def factory(**overrides):
        kwargs = dict(
            max_retries=2,
            backoff_initial=0,
            backoff_max=0,
            backoff_jitter=0,
            default_chain=["primary", "secondary"],
        )
        kwargs.update(overrides)
        return LLMRouter(registry, adapter, **kwargs)
    return factory


@pytest.fixture
def completion():
    return make_completion
