"""
Normalized provider call types.

Every vendor response is reduced to a CompletionResult regardless of its
wire format, so the router never sees vendor-specific JSON.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class AuthScheme(str, Enum):
    """How the API key is presented to the vendor"""
    BEARER = "bearer"
    API_KEY = "api-key"
    X_API_KEY = "x-api-key"
    X_GOOG_API_KEY = "x-goog-api-key"


class ApiFormat(str, Enum):
    """Request/response body shapes the adapter knows how to speak"""
    PROMPT = "prompt"
    OPENAI_CHAT = "openai_chat"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    COHERE = "cohere"
    IMAGE = "image"


@dataclass(frozen=True)
class ModelParameters:
    """Sampling parameters sent with every call"""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    model: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ModelParameters":
        data = data or {}
        return cls(
            max_tokens=data.get("max_tokens"),
            temperature=data.get("temperature"),
            top_p=data.get("top_p"),
            model=data.get("model"),
        )

    def merged_with(self, overrides: Optional["ModelParameters"]) -> "ModelParameters":
        """Return a copy where every non-None field of `overrides` wins."""
        if overrides is None:
            return ModelParameters(self.max_tokens, self.temperature, self.top_p, self.model)
        return ModelParameters(
            max_tokens=overrides.max_tokens if overrides.max_tokens is not None else self.max_tokens,
            temperature=overrides.temperature if overrides.temperature is not None else self.temperature,
            top_p=overrides.top_p if overrides.top_p is not None else self.top_p,
            model=overrides.model if overrides.model is not None else self.model,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("max_tokens", self.max_tokens),
                ("temperature", self.temperature),
                ("top_p", self.top_p),
            )
            if value is not None
        }


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one call. `total_tokens` is always derived."""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class CompletionResult:
    """Standardized provider response"""
    text: str
    usage: TokenUsage
    provider: str
    model: Optional[str] = None
    latency_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Any = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (raw vendor body excluded)"""
        return {
            "text": self.text,
            "usage": self.usage.to_dict(),
            "provider": self.provider,
            "model": self.model,
            "latency_ms": self.latency_ms,
            "metadata": self.metadata,
        }


def estimate_tokens(text: str) -> int:
    """Rough token count used when a vendor reports no usage."""
    if not text:
        return 0
    return max(1, int(len(text.split()) * 1.3))
