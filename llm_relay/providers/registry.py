"""
Provider Registry - immutable provider table loaded once at startup.

The table is a JSON document shaped as ``{"models": {category: [entry, ...]}}``.
Entries are validated and frozen on load; nothing mutates them afterwards.
API keys and self-hosted endpoints are never stored here, only the names of
the environment variables that hold them.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from llm_relay.exceptions import (
    InvalidConfigurationError,
    MissingAPIKeyError,
    MissingEndpointError,
    ProviderNotFoundError,
)
from llm_relay.providers.base import ApiFormat, AuthScheme, ModelParameters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CostSettings:
    """Per-token prices"""
    prompt_token_rate: float = 0.0
    completion_token_rate: float = 0.0
    currency: str = "USD"


@dataclass(frozen=True)
class RateLimit:
    requests_per_minute: Optional[int] = None
    tokens_per_minute: Optional[int] = None


@dataclass(frozen=True)
class ProviderConfig:
    """One provider entry from the static table"""
    id: str
    name: str
    category: str
    key_env_variable: str
    api_endpoint: Optional[str] = None
    url_env_variable: Optional[str] = None
    auth_scheme: AuthScheme = AuthScheme.BEARER
    api_format: ApiFormat = ApiFormat.PROMPT
    model: Optional[str] = None
    default_params: ModelParameters = field(default_factory=ModelParameters)
    timeout_ms: Optional[int] = None
    costs: CostSettings = field(default_factory=CostSettings)
    rate_limit: RateLimit = field(default_factory=RateLimit)
    context_window: Optional[int] = None
    enabled: bool = True
    capabilities: Tuple[str, ...] = ()

    @property
    def timeout(self) -> Optional[float]:
        """Default per-call timeout in seconds."""
        if self.timeout_ms is None:
            return None
        return self.timeout_ms / 1000.0

    def resolve_api_key(self) -> str:
        """Read the API key from the environment."""
        key = os.environ.get(self.key_env_variable)
        if not key:
            raise MissingAPIKeyError(self.id, self.key_env_variable)
        return key

    def resolve_endpoint(self) -> str:
        """Environment URL wins over the static endpoint when both exist."""
        if self.url_env_variable:
            url = os.environ.get(self.url_env_variable)
            if url:
                return url
        if self.api_endpoint:
            return self.api_endpoint
        raise MissingEndpointError(self.id, self.url_env_variable)

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the entry (no secrets are ever held here)."""
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "api_endpoint": self.api_endpoint,
            "key_env_variable": self.key_env_variable,
            "url_env_variable": self.url_env_variable,
            "auth_scheme": self.auth_scheme.value,
            "api_format": self.api_format.value,
            "model": self.model,
            "default_params": self.default_params.to_dict(),
            "timeout_ms": self.timeout_ms,
            "costs": {
                "prompt_token_rate": self.costs.prompt_token_rate,
                "completion_token_rate": self.costs.completion_token_rate,
                "currency": self.costs.currency,
            },
            "rate_limit": {
                "requests_per_minute": self.rate_limit.requests_per_minute,
                "tokens_per_minute": self.rate_limit.tokens_per_minute,
            },
            "context_window": self.context_window,
            "enabled": self.enabled,
            "capabilities": list(self.capabilities),
        }


def _parse_entry(category: str, entry: Dict[str, Any], default_currency: str) -> ProviderConfig:
    provider_id = entry.get("id") or entry.get("name")
    if not provider_id:
        raise InvalidConfigurationError(f"Provider entry in '{category}' has no id or name")
    provider_id = str(provider_id)

    if not entry.get("keyEnvVariable"):
        raise InvalidConfigurationError(
            f"Provider '{provider_id}' has no keyEnvVariable",
            details={"provider": provider_id},
        )
    if not entry.get("apiEndpoint") and not entry.get("urlEnvVariable"):
        raise InvalidConfigurationError(
            f"Provider '{provider_id}' needs apiEndpoint or urlEnvVariable",
            details={"provider": provider_id},
        )

    try:
        auth_scheme = AuthScheme(entry.get("authScheme", AuthScheme.BEARER.value))
        api_format = ApiFormat(entry.get("apiFormat", ApiFormat.PROMPT.value))
    except ValueError as e:
        raise InvalidConfigurationError(
            f"Provider '{provider_id}': {e}", details={"provider": provider_id}
        ) from e

    costs = entry.get("costs") or {}
    rate_limit = entry.get("rateLimit") or {}
    return ProviderConfig(
        id=provider_id,
        name=entry.get("name", provider_id),
        category=category,
        key_env_variable=entry["keyEnvVariable"],
        api_endpoint=entry.get("apiEndpoint"),
        url_env_variable=entry.get("urlEnvVariable"),
        auth_scheme=auth_scheme,
        api_format=api_format,
        model=entry.get("model"),
        default_params=ModelParameters.from_dict(entry.get("defaultParams")),
        timeout_ms=entry.get("timeoutMs"),
        costs=CostSettings(
            prompt_token_rate=float(costs.get("promptTokenRate", 0.0)),
            completion_token_rate=float(costs.get("completionTokenRate", 0.0)),
            currency=costs.get("currency", default_currency),
        ),
        rate_limit=RateLimit(
            requests_per_minute=rate_limit.get("requestsPerMinute"),
            tokens_per_minute=rate_limit.get("tokensPerMinute"),
        ),
        context_window=entry.get("contextWindow"),
        enabled=bool(entry.get("enabled", True)),
        capabilities=tuple(entry.get("capabilities", ())),
    )


class ProviderRegistry:
    """Read-only lookup over the provider table."""

    def __init__(self, providers: Mapping[str, ProviderConfig]):
        self._providers: Mapping[str, ProviderConfig] = MappingProxyType(dict(providers))

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_currency: str = "USD") -> "ProviderRegistry":
        models = data.get("models")
        if not isinstance(models, dict):
            raise InvalidConfigurationError("Provider table must contain a 'models' mapping")

        providers: Dict[str, ProviderConfig] = {}
        for category, entries in models.items():
            if not isinstance(entries, list):
                raise InvalidConfigurationError(f"Category '{category}' must be a list")
            for entry in entries:
                config = _parse_entry(category, entry, default_currency)
                if config.id in providers:
                    raise InvalidConfigurationError(
                        f"Duplicate provider id '{config.id}'",
                        details={"provider": config.id},
                    )
                providers[config.id] = config

        logger.info("Loaded %d providers across %d categories", len(providers), len(models))
        return cls(providers)

    @classmethod
    def from_file(cls, path: Union[str, Path], default_currency: str = "USD") -> "ProviderRegistry":
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise InvalidConfigurationError(f"Provider table not found: {path}") from e
        except json.JSONDecodeError as e:
            raise InvalidConfigurationError(f"Provider table is not valid JSON: {e}") from e
        return cls.from_dict(data, default_currency=default_currency)

    def get(self, provider_id: str) -> ProviderConfig:
        """Return the entry or raise ProviderNotFoundError."""
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ProviderNotFoundError(provider_id) from None

    def find(self, provider_id: str) -> Optional[ProviderConfig]:
        return self._providers.get(provider_id)

    def ids(self) -> List[str]:
        return list(self._providers)

    def categories(self) -> List[str]:
        seen: Dict[str, None] = {}
        for config in self._providers.values():
            seen.setdefault(config.category, None)
        return list(seen)

    def by_category(self, category: str) -> List[ProviderConfig]:
        return [c for c in self._providers.values() if c.category == category]

    def enabled(self) -> List[ProviderConfig]:
        return [c for c in self._providers.values() if c.enabled]

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __iter__(self) -> Iterator[ProviderConfig]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)
