"""Provider registry, adapter and throttling."""

from llm_relay.providers.adapter import ProviderAdapter
from llm_relay.providers.base import ApiFormat, AuthScheme, CompletionResult, ModelParameters, TokenUsage
from llm_relay.providers.registry import CostSettings, ProviderConfig, ProviderRegistry, RateLimit
from llm_relay.providers.throttle import ProviderThrottle, TokenBucket

__all__ = [
    "ApiFormat",
    "AuthScheme",
    "CompletionResult",
    "CostSettings",
    "ModelParameters",
    "ProviderAdapter",
    "ProviderConfig",
    "ProviderRegistry",
    "ProviderThrottle",
    "RateLimit",
    "TokenBucket",
    "TokenUsage",
]
