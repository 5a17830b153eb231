"""
Unified error system for LLM Relay.

Every failure the relay can produce is expressed here:
- RelayException base with rich ErrorContext
- Input and configuration errors (400 / 500)
- Provider call errors carrying a normalized AdapterErrorCode
- Router state machine errors
- Circuit breaker used to skip failing providers
"""

import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums & Constants
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    VALIDATION = "validation"           # Bad caller input
    CONFIGURATION = "configuration"     # Missing provider entry, key or endpoint
    AUTHENTICATION = "authentication"   # Vendor rejected our credentials
    LLM_SERVICE = "llm_service"         # Vendor returned an error
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    ROUTING = "routing"
    INTERNAL = "internal"


class AdapterErrorCode(str, Enum):
    """Normalized provider failure codes."""
    RATE_LIMITED = "RATE_LIMITED"
    AUTH_FAILED = "AUTH_FAILED"
    TIMEOUT = "TIMEOUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    NETWORK_FAILURE = "NETWORK_FAILURE"


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Failing, rejecting requests
    HALF_OPEN = "half_open"    # Testing recovery


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    user_message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    is_recoverable: bool = True
    http_status: int = 500

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (excludes stack trace)."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "http_status": self.http_status,
        }

    def to_api_response(self) -> Dict[str, Any]:
        """Convert to the `{error: ...}` body returned over HTTP."""
        return {
            "error": self.user_message or self.message,
            "error_id": self.error_id,
            "category": self.category.value,
            "details": self.details,
        }


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""
    failure_threshold: int = 5        # Failures before opening
    recovery_timeout_sec: int = 60    # Time to wait before trying recovery
    success_threshold: int = 2        # Successes in half-open before closing


@dataclass
class CircuitBreakerMetrics:
    """Circuit breaker metrics."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    last_failure_time: Optional[datetime] = None


# ============================================================================
# Exception Hierarchy
# ============================================================================

class RelayException(Exception):
    """Base exception for all relay errors with rich context."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
        http_status: int = 500,
        user_message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable
        self.http_status = http_status
        self.user_message = user_message or message

        if context:
            self.context = context
        else:
            self.context = ErrorContext(
                severity=severity,
                category=category,
                message=message,
                user_message=self.user_message,
                details=self.details,
                stack_trace=traceback.format_exc(),
                is_recoverable=is_recoverable,
                http_status=http_status,
            )

        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.context.error_id}] {self.category.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return self.context.to_dict()

    def to_api_response(self) -> Dict[str, Any]:
        return self.context.to_api_response()


# ============================================================================
# Validation Errors
# ============================================================================

class InvalidInputError(RelayException):
    """Caller input is malformed (missing or non-string prompt, bad body)."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 400)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationMissingError(RelayException):
    """Something the relay needs to make a call is not configured."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        kwargs.setdefault("severity", ErrorSeverity.ERROR)
        kwargs.setdefault("http_status", 500)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class ProviderNotFoundError(ConfigurationMissingError):
    """No registry entry for the requested provider id."""
    def __init__(self, provider_id: str, **kwargs):
        self.provider_id = provider_id
        kwargs.setdefault("details", {"provider": provider_id})
        kwargs.setdefault("user_message", "API configuration not found")
        super().__init__(f"Provider '{provider_id}' is not configured", **kwargs)


class MissingAPIKeyError(ConfigurationMissingError):
    """The provider's key environment variable is unset or empty."""
    def __init__(self, provider_id: str, env_var: str, **kwargs):
        self.provider_id = provider_id
        self.env_var = env_var
        kwargs.setdefault("details", {"provider": provider_id, "env_var": env_var})
        kwargs.setdefault("user_message", "API key not configured")
        super().__init__(f"Environment variable {env_var} is not set for '{provider_id}'", **kwargs)


class MissingEndpointError(ConfigurationMissingError):
    """The provider has no static endpoint and its URL variable is unset."""
    def __init__(self, provider_id: str, env_var: Optional[str] = None, **kwargs):
        self.provider_id = provider_id
        self.env_var = env_var
        kwargs.setdefault("details", {"provider": provider_id, "env_var": env_var})
        kwargs.setdefault("user_message", "API endpoint not configured")
        super().__init__(f"No endpoint configured for '{provider_id}'", **kwargs)


class InvalidConfigurationError(RelayException):
    """The provider table or classification rules failed validation at load time."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("http_status", 500)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Provider Call Errors
# ============================================================================

class ProviderCallError(RelayException):
    """
    A single adapter call failed.

    `code` is the normalized failure kind and `retryable` tells the router
    whether the same provider may be tried again. `status_code` is the
    vendor's HTTP status when one was received and `payload` its body.
    """

    code: AdapterErrorCode = AdapterErrorCode.PROVIDER_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        payload: Any = None,
        **kwargs,
    ):
        self.provider = provider
        self.status_code = status_code
        self.payload = payload
        details = kwargs.pop("details", None) or {}
        details.setdefault("code", self.code.value)
        if provider:
            details.setdefault("provider", provider)
        if status_code is not None:
            details.setdefault("status_code", status_code)
        kwargs.setdefault("category", ErrorCategory.LLM_SERVICE)
        kwargs.setdefault("http_status", status_code or 502)
        kwargs.setdefault("is_recoverable", self.retryable)
        super().__init__(message, details=details, **kwargs)


class RateLimitedError(ProviderCallError):
    """Vendor answered 429, or the local per-provider bucket is empty."""
    code = AdapterErrorCode.RATE_LIMITED
    retryable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.RATE_LIMIT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        if kwargs.get("status_code") is None:
            kwargs.setdefault("http_status", 429)
        super().__init__(message, **kwargs)


class AuthFailedError(ProviderCallError):
    """Vendor rejected the API key (401/403)."""
    code = AdapterErrorCode.AUTH_FAILED

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.AUTHENTICATION)
        super().__init__(message, **kwargs)


class InvalidRequestError(ProviderCallError):
    """Vendor rejected the request body (400/404/413/422)."""
    code = AdapterErrorCode.INVALID_REQUEST

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class ProviderResponseError(ProviderCallError):
    """Any other vendor failure, including unparseable success bodies."""
    code = AdapterErrorCode.PROVIDER_ERROR


class ProviderTimeoutError(ProviderCallError):
    """The call did not finish within its timeout."""
    code = AdapterErrorCode.TIMEOUT
    retryable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        kwargs.setdefault("http_status", 500)
        super().__init__(message, **kwargs)


class NetworkFailureError(ProviderCallError):
    """Connection could not be established or was dropped."""
    code = AdapterErrorCode.NETWORK_FAILURE
    retryable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        kwargs.setdefault("http_status", 500)
        super().__init__(message, **kwargs)


# ============================================================================
# Routing Errors
# ============================================================================

class InvalidStateTransition(RelayException):
    """A request attempted a state change its state machine does not allow."""
    def __init__(self, request_id: str, current: str, target: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.ROUTING)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("is_recoverable", False)
        kwargs.setdefault("details", {"request_id": request_id, "from": current, "to": target})
        super().__init__(f"Request {request_id}: illegal transition {current} -> {target}", **kwargs)


# ============================================================================
# Circuit Breaker
# ============================================================================

class CircuitBreaker:
    """Circuit breaker pattern implementation."""

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitBreakerState.CLOSED
        self.metrics = CircuitBreakerMetrics()
        self.last_state_change = datetime.now(timezone.utc)

    def record_success(self) -> None:
        """Record successful request."""
        self.metrics.successful_requests += 1
        self.metrics.total_requests += 1

        if self.state == CircuitBreakerState.HALF_OPEN:
            if self.metrics.successful_requests >= self.config.success_threshold:
                self._close()
        elif self.state == CircuitBreakerState.CLOSED:
            self.metrics.failed_requests = 0

    def record_failure(self) -> None:
        """Record failed request."""
        self.metrics.failed_requests += 1
        self.metrics.total_requests += 1
        self.metrics.last_failure_time = datetime.now(timezone.utc)

        if self.state == CircuitBreakerState.HALF_OPEN:
            self._open()
        elif self.state == CircuitBreakerState.CLOSED:
            if self.metrics.failed_requests >= self.config.failure_threshold:
                self._open()

    def record_rejection(self) -> None:
        """Record rejected request."""
        self.metrics.rejected_requests += 1
        self.metrics.total_requests += 1

    def can_execute(self) -> bool:
        """Check if request can be executed."""
        if self.state == CircuitBreakerState.CLOSED:
            return True

        if self.state == CircuitBreakerState.OPEN:
            time_since_open = datetime.now(timezone.utc) - self.last_state_change
            if time_since_open.total_seconds() > self.config.recovery_timeout_sec:
                self._half_open()
                return True
            return False

        return True

    def _open(self) -> None:
        self.state = CircuitBreakerState.OPEN
        self.last_state_change = datetime.now(timezone.utc)
        self.metrics.failed_requests = 0
        logger.warning("Circuit breaker '%s' opened", self.name)

    def _close(self) -> None:
        self.state = CircuitBreakerState.CLOSED
        self.last_state_change = datetime.now(timezone.utc)
        self.metrics = CircuitBreakerMetrics()
        logger.info("Circuit breaker '%s' closed", self.name)

    def _half_open(self) -> None:
        self.state = CircuitBreakerState.HALF_OPEN
        self.last_state_change = datetime.now(timezone.utc)
        self.metrics.successful_requests = 0
        logger.info("Circuit breaker '%s' half-open (testing recovery)", self.name)

    def get_status(self) -> Dict[str, Any]:
        """Get circuit breaker status."""
        return {
            "name": self.name,
            "state": self.state.value,
            "metrics": {
                "total_requests": self.metrics.total_requests,
                "successful_requests": self.metrics.successful_requests,
                "failed_requests": self.metrics.failed_requests,
                "rejected_requests": self.metrics.rejected_requests,
            },
        }


__all__: List[str] = [
    "ErrorSeverity",
    "ErrorCategory",
    "AdapterErrorCode",
    "CircuitBreakerState",
    "ErrorContext",
    "CircuitBreakerConfig",
    "CircuitBreakerMetrics",
    "RelayException",
    "InvalidInputError",
    "ConfigurationMissingError",
    "ProviderNotFoundError",
    "MissingAPIKeyError",
    "MissingEndpointError",
    "InvalidConfigurationError",
    "ProviderCallError",
    "RateLimitedError",
    "AuthFailedError",
    "InvalidRequestError",
    "ProviderResponseError",
    "ProviderTimeoutError",
    "NetworkFailureError",
    "InvalidStateTransition",
    "CircuitBreaker",
]
