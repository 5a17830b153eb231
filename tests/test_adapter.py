"""Tests for ProviderAdapter. The HTTP client is mocked; no network access."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from llm_relay.exceptions import (
    AuthFailedError,
    InvalidRequestError,
    MissingAPIKeyError,
    MissingEndpointError,
    NetworkFailureError,
    ProviderResponseError,
    ProviderTimeoutError,
    RateLimitedError,
)
from llm_relay.providers.adapter import ProviderAdapter, build_body, error_for_status
from llm_relay.providers.base import ApiFormat, ModelParameters


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    if payload is None:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload
    response.text = text
    return response


def _mock_client(response=None, side_effect=None):
    client = MagicMock()
    client.post = AsyncMock(return_value=response, side_effect=side_effect)
    instance = MagicMock()
    instance.__aenter__ = AsyncMock(return_value=client)
    instance.__aexit__ = AsyncMock(return_value=False)
    return instance, client


OPENAI_OK = {
    "model": "primary-large-0613",
    "choices": [{"message": {"role": "assistant", "content": "Hello!"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 9, "completion_tokens": 3},
}

ANTHROPIC_OK = {
    "content": [{"type": "text", "text": "Hi "}, {"type": "text", "text": "there"}],
    "stop_reason": "end_turn",
    "usage": {"input_tokens": 12, "output_tokens": 4},
}


@pytest.fixture
def adapter():
    return ProviderAdapter(default_timeout=5.0)


# --- Success ---

async def test_openai_chat_success(adapter, registry, api_keys):
    instance, client = _mock_client(_response(200, OPENAI_OK))
    with patch("httpx.AsyncClient", return_value=instance) as client_cls:
        result = await adapter.complete(registry.get("primary"), "Say hello")

    assert result.text == "Hello!"
    assert result.usage.prompt_tokens == 9
    assert result.usage.completion_tokens == 3
    assert result.usage.total_tokens == 12
    assert result.provider == "primary"
    assert result.model == "primary-large-0613"
    assert result.metadata["finish_reason"] == "stop"

    client_cls.assert_called_once_with(timeout=2.0)
    url = client.post.call_args.args[0]
    headers = client.post.call_args.kwargs["headers"]
    body = client.post.call_args.kwargs["json"]
    assert url == "https://primary.test/v1/chat/completions"
    assert headers["Authorization"] == "Bearer pk-test"
    assert body["messages"] == [{"role": "user", "content": "Say hello"}]
    assert body["model"] == "primary-large"


async def test_anthropic_success_headers_and_defaults(adapter, registry, api_keys):
    instance, client = _mock_client(_response(200, ANTHROPIC_OK))
    with patch("httpx.AsyncClient", return_value=instance):
        result = await adapter.complete(registry.get("secondary"), "Hi")

    assert result.text == "Hi there"
    assert result.usage.total_tokens == 16
    headers = client.post.call_args.kwargs["headers"]
    body = client.post.call_args.kwargs["json"]
    assert headers["x-api-key"] == "sk-test"
    assert headers["anthropic-version"] == "2023-06-01"
    assert body["max_tokens"] == 1024


async def test_parameters_override_defaults(adapter, registry, api_keys):
    instance, client = _mock_client(_response(200, OPENAI_OK))
    params = ModelParameters(max_tokens=64, temperature=0.2, model="primary-mini")
    with patch("httpx.AsyncClient", return_value=instance):
        await adapter.complete(registry.get("primary"), "Hi", params=params)

    body = client.post.call_args.kwargs["json"]
    assert body["max_tokens"] == 64
    assert body["temperature"] == 0.2
    assert body["model"] == "primary-mini"


async def test_prompt_format_uses_environment_url(adapter, registry, api_keys):
    instance, client = _mock_client(_response(200, [{"generated_text": "a reply"}]))
    with patch("httpx.AsyncClient", return_value=instance):
        result = await adapter.complete(registry.get("tertiary"), "one two three four")

    assert client.post.call_args.args[0] == "http://localhost:9999/generate"
    assert client.post.call_args.kwargs["json"] == {"prompt": "one two three four"}
    assert result.text == "a reply"
    # No usage reported: estimated from word counts
    assert result.metadata["usage_estimated"] is True
    assert result.usage.prompt_tokens == 5
    assert result.usage.completion_tokens == 2


async def test_explicit_timeout_wins(adapter, registry, api_keys):
    instance, _ = _mock_client(_response(200, OPENAI_OK))
    with patch("httpx.AsyncClient", return_value=instance) as client_cls:
        await adapter.complete(registry.get("primary"), "Hi", timeout=0.5)
    client_cls.assert_called_once_with(timeout=0.5)


async def test_default_timeout_when_provider_has_none(adapter, registry, api_keys):
    instance, _ = _mock_client(_response(200, ANTHROPIC_OK))
    with patch("httpx.AsyncClient", return_value=instance) as client_cls:
        await adapter.complete(registry.get("secondary"), "Hi")
    client_cls.assert_called_once_with(timeout=5.0)


# --- Configuration ---

async def test_missing_key_makes_no_call(adapter, registry, monkeypatch):
    monkeypatch.delenv("PRIMARY_API_KEY", raising=False)
    with patch("httpx.AsyncClient") as client_cls:
        with pytest.raises(MissingAPIKeyError):
            await adapter.complete(registry.get("primary"), "Hi")
    client_cls.assert_not_called()


async def test_missing_endpoint_makes_no_call(adapter, registry, monkeypatch):
    monkeypatch.setenv("TERTIARY_API_KEY", "tk-test")
    monkeypatch.delenv("TERTIARY_URL", raising=False)
    with patch("httpx.AsyncClient") as client_cls:
        with pytest.raises(MissingEndpointError):
            await adapter.complete(registry.get("tertiary"), "Hi")
    client_cls.assert_not_called()


# --- Error normalization ---

@pytest.mark.parametrize(
    "status,error_cls,retryable",
    [
        (429, RateLimitedError, True),
        (401, AuthFailedError, False),
        (403, AuthFailedError, False),
        (400, InvalidRequestError, False),
        (422, InvalidRequestError, False),
        (500, ProviderResponseError, False),
        (503, ProviderResponseError, False),
    ],
)
async def test_status_codes_are_normalized(adapter, registry, api_keys, status, error_cls, retryable):
    payload = {"error": {"message": "vendor says no"}}
    instance, _ = _mock_client(_response(status, payload))
    with patch("httpx.AsyncClient", return_value=instance):
        with pytest.raises(error_cls) as exc_info:
            await adapter.complete(registry.get("primary"), "Hi")

    err = exc_info.value
    assert err.status_code == status
    assert err.payload == payload
    assert err.retryable is retryable
    assert "vendor says no" in err.message


async def test_http_timeout_is_normalized(adapter, registry, api_keys):
    instance, _ = _mock_client(side_effect=httpx.ReadTimeout("read timed out"))
    with patch("httpx.AsyncClient", return_value=instance):
        with pytest.raises(ProviderTimeoutError) as exc_info:
            await adapter.complete(registry.get("primary"), "Hi")
    assert exc_info.value.status_code is None
    assert exc_info.value.retryable


async def test_slow_call_hits_timeout(adapter, registry, api_keys):
    async def slow_post(*args, **kwargs):
        await asyncio.sleep(5)

    instance, _ = _mock_client(side_effect=slow_post)
    with patch("httpx.AsyncClient", return_value=instance):
        with pytest.raises(ProviderTimeoutError):
            await adapter.complete(registry.get("primary"), "Hi", timeout=0.05)


async def test_network_failure_is_normalized(adapter, registry, api_keys):
    instance, _ = _mock_client(side_effect=httpx.ConnectError("connection refused"))
    with patch("httpx.AsyncClient", return_value=instance):
        with pytest.raises(NetworkFailureError):
            await adapter.complete(registry.get("primary"), "Hi")


async def test_unparseable_success_body(adapter, registry, api_keys):
    instance, _ = _mock_client(_response(200, {"unexpected": True}))
    with patch("httpx.AsyncClient", return_value=instance):
        with pytest.raises(ProviderResponseError) as exc_info:
            await adapter.complete(registry.get("primary"), "Hi")
    assert exc_info.value.http_status == 502


async def test_non_json_error_body_is_kept_as_text(adapter, registry, api_keys):
    instance, _ = _mock_client(_response(502, None, text="Bad Gateway"))
    with patch("httpx.AsyncClient", return_value=instance):
        with pytest.raises(ProviderResponseError) as exc_info:
            await adapter.call_raw(registry.get("primary"), "Hi")
    assert exc_info.value.payload == "Bad Gateway"


async def test_adapter_never_retries(adapter, registry, api_keys):
    instance, client = _mock_client(_response(429, {"error": "slow down"}))
    with patch("httpx.AsyncClient", return_value=instance):
        with pytest.raises(RateLimitedError):
            await adapter.complete(registry.get("primary"), "Hi")
    assert client.post.await_count == 1


async def test_stats(adapter, registry, api_keys):
    ok, _ = _mock_client(_response(200, OPENAI_OK))
    denied, _ = _mock_client(_response(401, {"error": "bad key"}))
    with patch("httpx.AsyncClient", side_effect=[ok, denied]):
        await adapter.complete(registry.get("primary"), "Hi")
        with pytest.raises(AuthFailedError):
            await adapter.complete(registry.get("primary"), "Hi")

    stats = adapter.get_stats()["primary"]
    assert stats["calls"] == 2
    assert stats["successes"] == 1
    assert stats["failures"] == 1
    assert stats["errors"] == {"AUTH_FAILED": 1}


# --- Body shapes ---

def test_gemini_body_has_generation_config():
    body = build_body(ApiFormat.GEMINI, "Hi", ModelParameters(max_tokens=10, top_p=0.9), "gemini-pro")
    assert body == {
        "contents": [{"parts": [{"text": "Hi"}]}],
        "generationConfig": {"maxOutputTokens": 10, "topP": 0.9},
    }


def test_image_body():
    body = build_body(ApiFormat.IMAGE, "a red fox", ModelParameters(), "dall-e-3")
    assert body["prompt"] == "a red fox"
    assert body["model"] == "dall-e-3"
    assert body["n"] == 1


def test_error_for_status_keeps_payload():
    err = error_for_status("primary", 404, {"error": "no such model"})
    assert isinstance(err, InvalidRequestError)
    assert err.http_status == 404
    assert err.payload == {"error": "no such model"}
