"""
Provider Adapter - one outbound HTTP call per invocation.

A single adapter replaces per-vendor handlers: the provider entry says how to
authenticate (``authScheme``) and which body shape to speak (``apiFormat``).
Vendor responses are normalized to CompletionResult and vendor failures to
ProviderCallError subclasses. The adapter never retries; that is the router's
job.
"""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from llm_relay.exceptions import (
    AuthFailedError,
    InvalidRequestError,
    NetworkFailureError,
    ProviderCallError,
    ProviderResponseError,
    ProviderTimeoutError,
    RateLimitedError,
)
from llm_relay.logging_utils import track_performance
from llm_relay.providers.base import (
    ApiFormat,
    AuthScheme,
    CompletionResult,
    ModelParameters,
    TokenUsage,
    estimate_tokens,
)
from llm_relay.providers.registry import ProviderConfig

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_DEFAULT_MAX_TOKENS = 1024

_INVALID_REQUEST_STATUSES = frozenset({400, 404, 413, 422})
_AUTH_STATUSES = frozenset({401, 403})


# ============================================================================
# Request building
# ============================================================================

def build_headers(config: ProviderConfig, api_key: str) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if config.auth_scheme == AuthScheme.BEARER:
        headers["Authorization"] = f"Bearer {api_key}"
    elif config.auth_scheme == AuthScheme.API_KEY:
        headers["api-key"] = api_key
    elif config.auth_scheme == AuthScheme.X_API_KEY:
        headers["x-api-key"] = api_key
    elif config.auth_scheme == AuthScheme.X_GOOG_API_KEY:
        headers["x-goog-api-key"] = api_key
    if config.api_format == ApiFormat.ANTHROPIC:
        headers["anthropic-version"] = ANTHROPIC_VERSION
    return headers


def build_body(
    api_format: ApiFormat, prompt: str, params: ModelParameters, model: Optional[str]
) -> Dict[str, Any]:
    sampling = params.to_dict()

    if api_format == ApiFormat.OPENAI_CHAT:
        body: Dict[str, Any] = {"messages": [{"role": "user", "content": prompt}], **sampling}
    elif api_format == ApiFormat.ANTHROPIC:
        sampling.setdefault("max_tokens", ANTHROPIC_DEFAULT_MAX_TOKENS)
        body = {"messages": [{"role": "user", "content": prompt}], **sampling}
    elif api_format == ApiFormat.GEMINI:
        generation_config = {}
        if params.max_tokens is not None:
            generation_config["maxOutputTokens"] = params.max_tokens
        if params.temperature is not None:
            generation_config["temperature"] = params.temperature
        if params.top_p is not None:
            generation_config["topP"] = params.top_p
        # Gemini puts the model in the URL
        return {"contents": [{"parts": [{"text": prompt}]}], "generationConfig": generation_config}
    elif api_format == ApiFormat.COHERE:
        body = {"message": prompt}
        if params.max_tokens is not None:
            body["max_tokens"] = params.max_tokens
        if params.temperature is not None:
            body["temperature"] = params.temperature
        if params.top_p is not None:
            body["p"] = params.top_p
    elif api_format == ApiFormat.IMAGE:
        body = {"prompt": prompt, "n": 1, "size": "1024x1024", "response_format": "url"}
    else:
        body = {"prompt": prompt, **sampling}

    if model:
        body["model"] = model
    return body


# ============================================================================
# Response parsing
# ============================================================================

def _usage_pair(usage: Any, prompt_key: str, completion_key: str) -> Optional[Tuple[int, int]]:
    if not isinstance(usage, dict):
        return None
    if prompt_key not in usage and completion_key not in usage:
        return None
    return int(usage.get(prompt_key) or 0), int(usage.get(completion_key) or 0)


def _parse_openai_chat(data: Dict[str, Any]) -> Tuple[str, Optional[Tuple[int, int]], Dict[str, Any]]:
    choice = data["choices"][0]
    text = choice["message"]["content"] or ""
    usage = _usage_pair(data.get("usage"), "prompt_tokens", "completion_tokens")
    return text, usage, {"finish_reason": choice.get("finish_reason")}


def _parse_anthropic(data: Dict[str, Any]) -> Tuple[str, Optional[Tuple[int, int]], Dict[str, Any]]:
    blocks = data["content"]
    text = "".join(b.get("text", "") for b in blocks if b.get("type", "text") == "text")
    usage = _usage_pair(data.get("usage"), "input_tokens", "output_tokens")
    return text, usage, {"finish_reason": data.get("stop_reason")}


def _parse_gemini(data: Dict[str, Any]) -> Tuple[str, Optional[Tuple[int, int]], Dict[str, Any]]:
    candidate = data["candidates"][0]
    text = "".join(p.get("text", "") for p in candidate["content"]["parts"])
    usage = _usage_pair(data.get("usageMetadata"), "promptTokenCount", "candidatesTokenCount")
    return text, usage, {"finish_reason": candidate.get("finishReason")}


def _parse_cohere(data: Dict[str, Any]) -> Tuple[str, Optional[Tuple[int, int]], Dict[str, Any]]:
    text = data["text"]
    meta = data.get("meta") or {}
    usage = _usage_pair(meta.get("billed_units"), "input_tokens", "output_tokens")
    if usage is None:
        usage = _usage_pair(meta.get("tokens"), "input_tokens", "output_tokens")
    return text, usage, {"finish_reason": data.get("finish_reason")}


def _parse_image(data: Dict[str, Any]) -> Tuple[str, Optional[Tuple[int, int]], Dict[str, Any]]:
    images = [item.get("url") or item.get("b64_json") for item in data["data"]]
    if not images:
        raise KeyError("data")
    # Image endpoints bill per image, not per token
    return images[0], (0, 0), {"images": images}


def _parse_prompt(data: Any) -> Tuple[str, Optional[Tuple[int, int]], Dict[str, Any]]:
    """Generic completion shapes: OpenAI completions, HF inference, Aleph Alpha and plain text."""
    if isinstance(data, list):
        first = data[0]
        if isinstance(first, dict) and "generated_text" in first:
            return first["generated_text"], None, {}
        raise KeyError("generated_text")

    usage = _usage_pair(data.get("usage"), "prompt_tokens", "completion_tokens")
    if usage is None:
        usage = _usage_pair(data.get("usage"), "input_tokens", "output_tokens")

    if data.get("choices"):
        choice = data["choices"][0]
        if isinstance(choice.get("message"), dict):
            text = choice["message"].get("content") or ""
        else:
            text = choice["text"]
        return text, usage, {"finish_reason": choice.get("finish_reason")}
    if data.get("completions"):
        completion = data["completions"][0]
        return completion["completion"], usage, {"finish_reason": completion.get("finish_reason")}
    for key in ("text", "output", "generated_text", "completion", "response"):
        if isinstance(data.get(key), str):
            return data[key], usage, {}
    raise KeyError("text")


_PARSERS: Dict[ApiFormat, Callable[[Any], Tuple[str, Optional[Tuple[int, int]], Dict[str, Any]]]] = {
    ApiFormat.OPENAI_CHAT: _parse_openai_chat,
    ApiFormat.ANTHROPIC: _parse_anthropic,
    ApiFormat.GEMINI: _parse_gemini,
    ApiFormat.COHERE: _parse_cohere,
    ApiFormat.IMAGE: _parse_image,
    ApiFormat.PROMPT: _parse_prompt,
}


def _error_message(payload: Any) -> str:
    if isinstance(payload, dict):
        error = payload.get("error", payload.get("message"))
        if isinstance(error, dict):
            return str(error.get("message") or error)
        if error:
            return str(error)
    if isinstance(payload, str) and payload:
        return payload[:200]
    return "no error detail"


def error_for_status(provider_id: str, status_code: int, payload: Any) -> ProviderCallError:
    """Map a vendor non-2xx status to the normalized error type."""
    message = f"{provider_id} returned {status_code}: {_error_message(payload)}"
    kwargs = {"provider": provider_id, "status_code": status_code, "payload": payload}
    if status_code == 429:
        return RateLimitedError(message, **kwargs)
    if status_code in _AUTH_STATUSES:
        return AuthFailedError(message, **kwargs)
    if status_code in _INVALID_REQUEST_STATUSES:
        return InvalidRequestError(message, **kwargs)
    return ProviderResponseError(message, **kwargs)


# ============================================================================
# Adapter
# ============================================================================

class ProviderAdapter:
    """Normalizing HTTP client for every configured provider."""

    def __init__(self, default_timeout: float = 8.0):
        self.default_timeout = default_timeout
        self._stats: Dict[str, Dict[str, Any]] = defaultdict(
            lambda: {"calls": 0, "responses": 0, "successes": 0, "failures": 0, "errors": defaultdict(int), "total_latency_ms": 0.0}
        )

    @track_performance(operation="provider_call")
    async def complete(
        self,
        config: ProviderConfig,
        prompt: str,
        params: Optional[ModelParameters] = None,
        timeout: Optional[float] = None,
    ) -> CompletionResult:
        """
        Make exactly one call to `config`'s endpoint.

        Args:
            config: Provider entry from the registry
            prompt: User prompt
            params: Overrides merged over the provider's defaultParams
            timeout: Seconds; falls back to the provider's timeoutMs, then the adapter default

        Returns:
            Normalized completion

        Raises:
            ConfigurationMissingError: key or endpoint missing (no I/O performed)
            ProviderCallError: any normalized vendor or transport failure
        """
        raw = await self.call_raw(config, prompt, params=params, timeout=timeout)
        return self.normalize(config, prompt, raw, params=params)

    async def call_raw(
        self,
        config: ProviderConfig,
        prompt: str,
        params: Optional[ModelParameters] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[Any, float]:
        """
        The outbound half of `complete`: returns the vendor's decoded 2xx body
        and the call latency in milliseconds, or raises a normalized error.
        """
        endpoint = config.resolve_endpoint()
        api_key = config.resolve_api_key()

        effective_timeout = timeout or config.timeout or self.default_timeout
        merged = config.default_params.merged_with(params)
        body = build_body(config.api_format, prompt, merged, merged.model or config.model)
        headers = build_headers(config, api_key)

        stats = self._stats[config.id]
        stats["calls"] += 1
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._post(endpoint, headers, body, effective_timeout),
                timeout=effective_timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            self._record_failure(config.id, ProviderTimeoutError.code.value)
            raise ProviderTimeoutError(
                f"{config.id} timed out after {effective_timeout:.1f}s",
                provider=config.id,
            ) from e
        except httpx.TransportError as e:
            self._record_failure(config.id, NetworkFailureError.code.value)
            raise NetworkFailureError(
                f"{config.id} request failed: {e}", provider=config.id
            ) from e
        latency_ms = (time.perf_counter() - start) * 1000
        stats["responses"] += 1
        stats["total_latency_ms"] += latency_ms

        payload = self._decode(response)
        status_code = response.status_code
        if not 200 <= status_code < 300:
            error = error_for_status(config.id, status_code, payload)
            self._record_failure(config.id, error.code.value)
            logger.warning(
                "Provider %s failed with %s (%s)", config.id, status_code, error.code.value,
                extra={"provider": config.id, "status_code": status_code, "latency_ms": round(latency_ms, 2)},
            )
            raise error

        stats["successes"] += 1
        logger.info(
            "Provider %s answered in %.0fms", config.id, latency_ms,
            extra={"provider": config.id, "status_code": status_code, "latency_ms": round(latency_ms, 2)},
        )
        return payload, latency_ms

    def normalize(
        self,
        config: ProviderConfig,
        prompt: str,
        raw: Tuple[Any, float],
        params: Optional[ModelParameters] = None,
    ) -> CompletionResult:
        """Turn a decoded 2xx body into a CompletionResult."""
        payload, latency_ms = raw
        parser = _PARSERS[config.api_format]
        try:
            text, usage_pair, metadata = parser(payload)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            self._record_failure(config.id, ProviderResponseError.code.value, success_counted=True)
            raise ProviderResponseError(
                f"{config.id} returned an unrecognized response body",
                provider=config.id,
                payload=payload,
                http_status=502,
            ) from e

        metadata = {k: v for k, v in metadata.items() if v is not None}
        if usage_pair is None:
            usage = TokenUsage(estimate_tokens(prompt), estimate_tokens(text))
            metadata["usage_estimated"] = True
        else:
            usage = TokenUsage(*usage_pair)

        model = (params.model if params and params.model else None) or config.model
        if isinstance(payload, dict) and isinstance(payload.get("model"), str):
            model = payload["model"]

        return CompletionResult(
            text=text,
            usage=usage,
            provider=config.id,
            model=model,
            latency_ms=round(latency_ms, 2),
            metadata=metadata,
            raw=payload,
        )

    async def _post(
        self, url: str, headers: Dict[str, str], body: Dict[str, Any], timeout: float
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, headers=headers, json=body)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    def _record_failure(self, provider_id: str, code: str, success_counted: bool = False) -> None:
        stats = self._stats[provider_id]
        if success_counted:
            stats["successes"] -= 1
        stats["failures"] += 1
        stats["errors"][code] += 1

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-provider call counters."""
        result = {}
        for provider_id, stats in self._stats.items():
            responses = stats["responses"]
            result[provider_id] = {
                "calls": stats["calls"],
                "successes": stats["successes"],
                "failures": stats["failures"],
                "errors": dict(stats["errors"]),
                "avg_latency_ms": round(stats["total_latency_ms"] / responses, 2) if responses else 0.0,
            }
        return result
