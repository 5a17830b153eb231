"""
Routing data model.

Requests, responses, the per-request state machine and the typed router
error that `LLMRouter.route` returns instead of raising.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union

from llm_relay.exceptions import InvalidInputError
from llm_relay.providers.base import CompletionResult, ModelParameters, TokenUsage
from llm_relay.providers.registry import CostSettings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class RequestState(str, Enum):
    """Lifecycle of one routing request"""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[RequestState] = frozenset(
    {RequestState.SUCCEEDED, RequestState.FAILED, RequestState.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[RequestState, FrozenSet[RequestState]] = {
    RequestState.PENDING: frozenset({RequestState.IN_FLIGHT, RequestState.FAILED, RequestState.CANCELLED}),
    RequestState.IN_FLIGHT: frozenset(
        {RequestState.SUCCEEDED, RequestState.RETRYING, RequestState.FAILED, RequestState.CANCELLED}
    ),
    RequestState.RETRYING: frozenset({RequestState.IN_FLIGHT, RequestState.FAILED, RequestState.CANCELLED}),
    RequestState.SUCCEEDED: frozenset(),
    RequestState.FAILED: frozenset(),
    RequestState.CANCELLED: frozenset(),
}


class ScopeType(str, Enum):
    CHAT = "chat"
    TEMPLATE = "template"
    ESSAY = "essay"
    CUSTOM = "custom"


class PromptCategory(str, Enum):
    CONVERSATION = "conversation"
    CODING = "coding"
    MULTILINGUAL = "multilingual"
    ANALYSIS = "analysis"
    CREATIVE = "creative"
    TRANSLATION = "translation"
    TECHNICAL = "technical"
    ACADEMIC = "academic"
    CUSTOM = "custom"


# ============================================================================
# Scope & analysis
# ============================================================================

@dataclass
class LLMPreferences:
    preferred: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)
    fallback: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["LLMPreferences"]:
        if not data:
            return None
        return cls(
            preferred=list(data.get("preferred") or []),
            excluded=list(data.get("excluded") or []),
            fallback=list(data.get("fallback") or []),
        )

    def to_dict(self) -> Dict[str, List[str]]:
        return {"preferred": self.preferred, "excluded": self.excluded, "fallback": self.fallback}


@dataclass
class Scope:
    """Context that biases provider selection"""
    id: str
    name: str = ""
    type: ScopeType = ScopeType.CHAT
    topic: Optional[str] = None
    personality: Optional[str] = None
    llm_preferences: Optional[LLMPreferences] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Scope"]:
        if not data:
            return None
        try:
            scope_type = ScopeType(data.get("type", ScopeType.CHAT.value))
        except ValueError as e:
            raise InvalidInputError(f"Unknown scope type: {data.get('type')}") from e
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            type=scope_type,
            topic=data.get("topic"),
            personality=data.get("personality"),
            llm_preferences=LLMPreferences.from_dict(data.get("llm_preferences") or data.get("llmPreferences")),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "topic": self.topic,
            "personality": self.personality,
            "llm_preferences": self.llm_preferences.to_dict() if self.llm_preferences else None,
            "metadata": self.metadata,
        }


@dataclass
class PromptFeatures:
    complexity: float = 0.5
    creativity: float = 0.5
    technical_level: float = 0.5
    language_count: int = 1
    expected_length: int = 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "complexity": self.complexity,
            "creativity": self.creativity,
            "technical_level": self.technical_level,
            "language_count": self.language_count,
            "expected_length": self.expected_length,
        }


@dataclass
class PromptAnalysis:
    """Result of classifying a prompt"""
    primary_category: str = PromptCategory.CONVERSATION.value
    secondary_categories: List[str] = field(default_factory=list)
    confidence: float = 0.5
    suggested_llms: List[str] = field(default_factory=list)
    requires_specialization: bool = False
    features: PromptFeatures = field(default_factory=PromptFeatures)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PromptAnalysis"]:
        if not data:
            return None
        features = data.get("features") or {}
        return cls(
            primary_category=data.get("primary_category", PromptCategory.CONVERSATION.value),
            secondary_categories=list(data.get("secondary_categories") or []),
            confidence=float(data.get("confidence", 0.5)),
            suggested_llms=list(data.get("suggested_llms") or []),
            requires_specialization=bool(data.get("requires_specialization", False)),
            features=PromptFeatures(
                complexity=features.get("complexity", 0.5),
                creativity=features.get("creativity", 0.5),
                technical_level=features.get("technical_level", 0.5),
                language_count=features.get("language_count", 1),
                expected_length=features.get("expected_length", 100),
            ),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary_category": self.primary_category,
            "secondary_categories": self.secondary_categories,
            "confidence": self.confidence,
            "suggested_llms": self.suggested_llms,
            "requires_specialization": self.requires_specialization,
            "features": self.features.to_dict(),
            "metadata": self.metadata,
        }


# ============================================================================
# Request
# ============================================================================

@dataclass
class RoutingRequest:
    """
    One prompt to route.

    `timeout` is per attempt, in seconds. `max_retries` is per provider;
    None means the configured default.
    """
    id: str
    prompt: str
    scope: Optional[Scope] = None
    analysis: Optional[PromptAnalysis] = None
    force_llm: Optional[str] = None
    max_retries: Optional[int] = None
    timeout: Optional[float] = None
    priority: Priority = Priority.NORMAL
    user_id: str = "anonymous"
    parameters: Optional[ModelParameters] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.prompt or not isinstance(self.prompt, str):
            raise InvalidInputError("Prompt is required and must be a string")
        if self.max_retries is not None and self.max_retries < 0:
            raise InvalidInputError("max_retries must be >= 0")
        if self.timeout is not None and self.timeout <= 0:
            raise InvalidInputError("timeout must be > 0")


# ============================================================================
# Accounting
# ============================================================================

@dataclass
class Timing:
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def finish(self) -> "Timing":
        if self.completed_at is None:
            self.completed_at = utcnow()
        return self

    @property
    def total_duration_ms(self) -> float:
        end = self.completed_at or utcnow()
        return round((end - self.started_at).total_seconds() * 1000, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_duration_ms": self.total_duration_ms,
        }


@dataclass(frozen=True)
class Costs:
    """Cost of one routed call. `total_cost` is always derived."""
    prompt_cost: float = 0.0
    completion_cost: float = 0.0
    currency: str = "USD"

    @property
    def total_cost(self) -> float:
        return self.prompt_cost + self.completion_cost

    @classmethod
    def compute(cls, usage: TokenUsage, rates: CostSettings) -> "Costs":
        return cls(
            prompt_cost=usage.prompt_tokens * rates.prompt_token_rate,
            completion_cost=usage.completion_tokens * rates.completion_token_rate,
            currency=rates.currency,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt_cost": self.prompt_cost,
            "completion_cost": self.completion_cost,
            "total_cost": self.total_cost,
            "currency": self.currency,
        }


@dataclass
class AttemptRecord:
    """One adapter call made on behalf of a request"""
    provider: str
    attempt: int
    started_at: datetime = field(default_factory=utcnow)
    duration_ms: float = 0.0
    outcome: str = "pending"
    error: Optional[str] = None
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "outcome": self.outcome,
            "error": self.error,
            "status_code": self.status_code,
        }


@dataclass
class StateTransition:
    state: RequestState
    at: datetime = field(default_factory=utcnow)
    provider: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state.value, "at": self.at.isoformat(), "provider": self.provider}


# ============================================================================
# Outcomes
# ============================================================================

def _token_usage_dict(usage: TokenUsage) -> Dict[str, int]:
    return {"prompt": usage.prompt_tokens, "completion": usage.completion_tokens, "total": usage.total_tokens}


@dataclass
class RoutingResponse:
    request_id: str
    result: CompletionResult
    llm_used: str
    fallbacks_used: List[str]
    timing: Timing
    token_usage: TokenUsage
    costs: Costs
    metadata: Dict[str, Any] = field(default_factory=dict)

    is_error = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "result": self.result.to_dict(),
            "llm_used": self.llm_used,
            "fallbacks_used": list(self.fallbacks_used),
            "timing": self.timing.to_dict(),
            "token_usage": _token_usage_dict(self.token_usage),
            "costs": self.costs.to_dict(),
            "metadata": self.metadata,
        }


class RouterErrorCode(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    NO_PROVIDER_AVAILABLE = "NO_PROVIDER_AVAILABLE"
    ALL_PROVIDERS_FAILED = "ALL_PROVIDERS_FAILED"
    CANCELLED = "CANCELLED"

    @property
    def http_status(self) -> int:
        return _ROUTER_ERROR_STATUS[self]


_ROUTER_ERROR_STATUS = {
    RouterErrorCode.INVALID_INPUT: 400,
    RouterErrorCode.NO_PROVIDER_AVAILABLE: 503,
    RouterErrorCode.ALL_PROVIDERS_FAILED: 502,
    RouterErrorCode.CANCELLED: 409,
}


@dataclass
class RouterError:
    """Terminal routing failure. Returned by `route`, never raised."""
    code: RouterErrorCode
    message: str
    request_id: str
    llm_id: Optional[str] = None
    retryable: bool = False
    context: Dict[str, Any] = field(default_factory=dict)
    fallbacks_used: List[str] = field(default_factory=list)
    timing: Timing = field(default_factory=Timing)
    costs: Costs = field(default_factory=Costs)
    attempts: List[AttemptRecord] = field(default_factory=list)

    is_error = True

    @property
    def http_status(self) -> int:
        return self.code.http_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code.value,
            "request_id": self.request_id,
            "llm_id": self.llm_id,
            "retryable": self.retryable,
            "context": self.context,
            "fallbacks_used": list(self.fallbacks_used),
            "timing": self.timing.to_dict(),
            "costs": self.costs.to_dict(),
            "attempts": [a.to_dict() for a in self.attempts],
        }


RoutingOutcome = Union[RoutingResponse, RouterError]


@dataclass
class HistoryRecord:
    """Flat summary of a terminal outcome, filterable by field equality"""
    request_id: str
    user_id: str
    priority: str
    status: str
    llm_used: Optional[str]
    fallbacks_used: List[str]
    error_code: Optional[str]
    total_duration_ms: float
    total_tokens: int
    total_cost: float
    currency: str
    completed_at: str

    FILTERABLE = ("request_id", "user_id", "priority", "status", "llm_used", "error_code", "currency")

    @classmethod
    def from_outcome(cls, request: RoutingRequest, outcome: RoutingOutcome) -> "HistoryRecord":
        timing = outcome.timing.finish()
        if isinstance(outcome, RoutingResponse):
            return cls(
                request_id=outcome.request_id,
                user_id=request.user_id,
                priority=request.priority.value,
                status=RequestState.SUCCEEDED.value,
                llm_used=outcome.llm_used,
                fallbacks_used=list(outcome.fallbacks_used),
                error_code=None,
                total_duration_ms=timing.total_duration_ms,
                total_tokens=outcome.token_usage.total_tokens,
                total_cost=outcome.costs.total_cost,
                currency=outcome.costs.currency,
                completed_at=timing.completed_at.isoformat(),
            )
        status = RequestState.CANCELLED if outcome.code == RouterErrorCode.CANCELLED else RequestState.FAILED
        return cls(
            request_id=outcome.request_id,
            user_id=request.user_id,
            priority=request.priority.value,
            status=status.value,
            llm_used=outcome.llm_id,
            fallbacks_used=list(outcome.fallbacks_used),
            error_code=outcome.code.value,
            total_duration_ms=timing.total_duration_ms,
            total_tokens=0,
            total_cost=outcome.costs.total_cost,
            currency=outcome.costs.currency,
            completed_at=timing.completed_at.isoformat(),
        )

    def matches(self, criteria: Dict[str, Any]) -> bool:
        return all(getattr(self, key) == value for key, value in criteria.items())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "user_id": self.user_id,
            "priority": self.priority,
            "status": self.status,
            "llm_used": self.llm_used,
            "fallbacks_used": list(self.fallbacks_used),
            "error_code": self.error_code,
            "total_duration_ms": self.total_duration_ms,
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "currency": self.currency,
            "completed_at": self.completed_at,
        }
