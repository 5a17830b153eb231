"""Tests for the LLM Relay FastAPI application (llm_relay/api/app.py).

Uses httpx AsyncClient over ASGITransport. Outbound vendor calls are mocked
by patching httpx.AsyncClient inside each test, after the test client exists.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from httpx import ASGITransport, AsyncClient
import httpx

from llm_relay import container as container_module
from llm_relay.config.settings import Settings
from llm_relay.container import RelayContainer, set_container


OPENAI_OK = {
    "id": "chatcmpl-1",
    "model": "primary-large",
    "choices": [{"message": {"role": "assistant", "content": "Hello!"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 9, "completion_tokens": 3},
}

ANTHROPIC_OK = {
    "content": [{"type": "text", "text": "Hi there"}],
    "stop_reason": "end_turn",
    "usage": {"input_tokens": 12, "output_tokens": 4},
}


def _vendor(status_code=200, payload=None, side_effect=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.text = ""
    client = MagicMock()
    client.post = AsyncMock(return_value=response, side_effect=side_effect)
    instance = MagicMock()
    instance.__aenter__ = AsyncMock(return_value=client)
    instance.__aexit__ = AsyncMock(return_value=False)
    return instance


@pytest.fixture(autouse=True)
def _reset_container():
    """Reset DI container between tests."""
    container_module._container = None
    yield
    container_module._container = None


@pytest.fixture
def relay(registry, api_keys):
    settings = Settings(
        environment="test",
        router_backoff_initial=0,
        router_backoff_max=0,
        router_backoff_jitter=0,
        default_fallback_chain=["primary", "secondary"],
    )
    container = RelayContainer(settings)
    container._registry = registry
    return set_container(container)


@pytest.fixture
def app(relay):
    from llm_relay.api.app import app as real_app
    return real_app


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# --- Provider relay: input validation ---

@pytest.mark.parametrize("body", [{}, {"prompt": ""}, {"prompt": 123}, {"prompt": ["a"]}, {"text": "hi"}])
async def test_relay_rejects_bad_prompt(client, body):
    with patch("httpx.AsyncClient") as client_cls:
        resp = await client.post("/api/llm/primary", json=body)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Prompt is required and must be a string"
    client_cls.assert_not_called()


async def test_relay_rejects_non_json_body(client):
    with patch("httpx.AsyncClient") as client_cls:
        resp = await client.post("/api/llm/primary", content=b"not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    client_cls.assert_not_called()


async def test_relay_validates_prompt_before_provider_lookup(client):
    resp = await client.post("/api/llm/ghost", json={})
    assert resp.status_code == 400


# --- Provider relay: configuration ---

async def test_relay_unknown_provider(client):
    with patch("httpx.AsyncClient") as client_cls:
        resp = await client.post("/api/llm/ghost", json={"prompt": "hi"})
    assert resp.status_code == 500
    assert resp.json()["error"] == "API configuration not found"
    client_cls.assert_not_called()


async def test_relay_missing_api_key(client, monkeypatch):
    monkeypatch.delenv("PRIMARY_API_KEY")
    with patch("httpx.AsyncClient") as client_cls:
        resp = await client.post("/api/llm/primary", json={"prompt": "hi"})
    assert resp.status_code == 500
    assert resp.json()["error"] == "API key not configured"
    assert "pk-test" not in resp.text
    client_cls.assert_not_called()


# --- Provider relay: vendor outcomes ---

async def test_relay_returns_vendor_json(client):
    with patch("httpx.AsyncClient", return_value=_vendor(200, OPENAI_OK)):
        resp = await client.post("/api/llm/primary", json={"prompt": "Say hello"})
    assert resp.status_code == 200
    assert resp.json() == OPENAI_OK
    assert resp.headers["X-Request-ID"]


@pytest.mark.parametrize("status", [401, 404, 429, 503])
async def test_relay_passes_vendor_status_through(client, status):
    payload = {"error": {"message": "vendor says no"}}
    with patch("httpx.AsyncClient", return_value=_vendor(status, payload)):
        resp = await client.post("/api/llm/primary", json={"prompt": "hi"})
    assert resp.status_code == status
    assert resp.json() == {"error": payload}


async def test_relay_timeout_is_500(client):
    with patch("httpx.AsyncClient", return_value=_vendor(side_effect=httpx.ReadTimeout("timed out"))):
        resp = await client.post("/api/llm/primary", json={"prompt": "hi"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Primary API call failed"}


async def test_relay_network_failure_is_500(client):
    with patch("httpx.AsyncClient", return_value=_vendor(side_effect=httpx.ConnectError("refused"))):
        resp = await client.post("/api/llm/secondary", json={"prompt": "hi"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Secondary API call failed"}


async def test_relay_non_json_success_body_is_502(client):
    vendor = _vendor(200)
    vendor.__aenter__.return_value.post.return_value.json.side_effect = ValueError("not json")
    vendor.__aenter__.return_value.post.return_value.text = "<html>gateway</html>"
    with patch("httpx.AsyncClient", return_value=vendor):
        resp = await client.post("/api/llm/primary", json={"prompt": "hi"})
    assert resp.status_code == 502
    assert resp.json() == {"error": "Primary returned an invalid response"}


async def test_relay_makes_exactly_one_call(client):
    vendor = _vendor(429, {"error": "slow down"})
    with patch("httpx.AsyncClient", return_value=vendor):
        await client.post("/api/llm/primary", json={"prompt": "hi"})
    assert vendor.__aenter__.return_value.post.await_count == 1


async def test_relay_other_methods_not_allowed(client):
    resp = await client.get("/api/llm/primary")
    assert resp.status_code == 405
    assert "error" in resp.json()


# --- Routing ---

async def test_route_success(client):
    with patch("httpx.AsyncClient", return_value=_vendor(200, OPENAI_OK)):
        resp = await client.post("/api/route", json={"id": "req-1", "prompt": "Say something", "user_id": "alice"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["request_id"] == "req-1"
    assert data["llm_used"] == "primary"
    assert data["fallbacks_used"] == []
    assert data["result"]["text"] == "Hello!"
    assert data["token_usage"] == {"prompt": 9, "completion": 3, "total": 12}
    costs = data["costs"]
    assert costs["total_cost"] == pytest.approx(costs["prompt_cost"] + costs["completion_cost"])


async def test_route_falls_back(client):
    vendors = [_vendor(401, {"error": "bad key"}), _vendor(200, ANTHROPIC_OK)]
    with patch("httpx.AsyncClient", side_effect=vendors):
        resp = await client.post("/api/route", json={"prompt": "Say something"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["llm_used"] == "secondary"
    assert data["fallbacks_used"] == ["primary"]
    assert data["costs"]["currency"] == "EUR"


async def test_route_all_failed(client):
    vendors = [_vendor(500, {"error": "down"}), _vendor(500, {"error": "down"})]
    with patch("httpx.AsyncClient", side_effect=vendors):
        resp = await client.post("/api/route", json={"id": "req-2", "prompt": "Say something"})
    assert resp.status_code == 502
    data = resp.json()
    assert data["code"] == "ALL_PROVIDERS_FAILED"
    assert data["fallbacks_used"] == ["primary", "secondary"]
    assert data["error"]


async def test_route_is_idempotent(client):
    vendor = _vendor(200, OPENAI_OK)
    with patch("httpx.AsyncClient", return_value=vendor):
        first = await client.post("/api/route", json={"id": "same", "prompt": "Say something"})
        second = await client.post("/api/route", json={"id": "same", "prompt": "Say something"})
    assert first.json() == second.json()
    assert vendor.__aenter__.return_value.post.await_count == 1


@pytest.mark.parametrize("body", [{}, {"prompt": ""}, {"prompt": 123}, {"prompt": "hi", "priority": "urgent"}])
async def test_route_rejects_invalid_body(client, body):
    with patch("httpx.AsyncClient") as client_cls:
        resp = await client.post("/api/route", json=body)
    assert resp.status_code == 400
    assert "error" in resp.json()
    client_cls.assert_not_called()


async def test_route_with_forced_provider_and_scope(client):
    body = {
        "prompt": "Say something",
        "force_llm": "secondary",
        "scope": {"id": "s1", "type": "chat", "llm_preferences": {"fallback": ["primary"]}},
        "parameters": {"max_tokens": 64},
    }
    vendor = _vendor(200, ANTHROPIC_OK)
    with patch("httpx.AsyncClient", return_value=vendor):
        resp = await client.post("/api/route", json=body)
    assert resp.status_code == 200
    assert resp.json()["llm_used"] == "secondary"
    sent = vendor.__aenter__.return_value.post.call_args.kwargs["json"]
    assert sent["max_tokens"] == 64


async def test_route_lookup_and_history(client):
    with patch("httpx.AsyncClient", return_value=_vendor(200, OPENAI_OK)):
        await client.post("/api/route", json={"id": "h1", "prompt": "Say something", "user_id": "alice"})

    resp = await client.get("/api/route/h1")
    assert resp.status_code == 200
    assert resp.json()["llm_used"] == "primary"

    assert (await client.get("/api/route/missing")).status_code == 404

    history = (await client.get("/api/route/history", params={"user_id": "alice"})).json()["history"]
    assert [h["request_id"] for h in history] == ["h1"]
    assert (await client.get("/api/route/history", params={"user_id": "bob"})).json()["history"] == []


async def test_active_and_cancel(client):
    assert (await client.get("/api/route/active")).json() == {"requests": []}
    resp = await client.delete("/api/route/not-running")
    assert resp.status_code == 404


# --- Introspection ---

async def test_list_providers(client):
    resp = await client.get("/api/providers")
    assert resp.status_code == 200
    data = resp.json()
    assert data["categories"] == ["General-Purpose", "Open Source"]
    configured = {p["id"]: p["configured"] for p in data["providers"]}
    assert configured["primary"] is True
    assert configured["retired"] is False

    by_category = (await client.get("/api/providers", params={"category": "Open Source"})).json()
    assert [p["id"] for p in by_category["providers"]] == ["tertiary", "retired"]


async def test_usage_and_events(client):
    with patch("httpx.AsyncClient", return_value=_vendor(200, OPENAI_OK)):
        await client.post("/api/route", json={"prompt": "Say something", "user_id": "alice"})

    usage = (await client.get("/api/usage")).json()
    assert usage["dashboard"]["providers"]["primary"]["tokens"] == 12
    assert usage["stats"][0]["user_id"] == "alice"

    events = (await client.get("/api/events", params={"event_type": "routing_succeeded"})).json()
    assert len(events["events"]) == 1
    assert events["summary"]["routing_started"] == 1


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["providers"] == 4
    assert data["enabled_providers"] == 3
    assert data["open_circuits"] == []
    assert data["rate_limits"] == {}
