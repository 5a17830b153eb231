"""
Per-provider request throttling.
Token bucket algorithm sized from each provider's requestsPerMinute.
"""

import logging
import time
from typing import Dict, Optional

from llm_relay.exceptions import RateLimitedError
from llm_relay.providers.registry import ProviderConfig

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Token bucket algorithm for rate limiting

    Attributes:
        capacity: Maximum tokens in bucket
        refill_rate: Tokens added per second
        tokens: Current token count
        last_refill: Last refill timestamp
    """

    def __init__(self, capacity: int, refill_rate: float):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.last_refill = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: int = 1) -> bool:
        """
        Try to consume tokens from bucket

        Returns:
            True if tokens consumed, False if insufficient tokens
        """
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def get_wait_time(self, tokens: int = 1) -> float:
        """Seconds until `tokens` are available."""
        self._refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.refill_rate


class ProviderThrottle:
    """Lazily creates one bucket per provider that declares a request limit."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._buckets: Dict[str, TokenBucket] = {}

    def _bucket_for(self, config: ProviderConfig) -> Optional[TokenBucket]:
        rpm = config.rate_limit.requests_per_minute
        if not rpm:
            return None
        bucket = self._buckets.get(config.id)
        if bucket is None:
            bucket = TokenBucket(capacity=rpm, refill_rate=rpm / 60.0)
            self._buckets[config.id] = bucket
        return bucket

    def acquire(self, config: ProviderConfig) -> None:
        """Take one request slot or raise RateLimitedError without touching the network."""
        if not self.enabled:
            return
        bucket = self._bucket_for(config)
        if bucket is None or bucket.consume():
            return

        wait = bucket.get_wait_time()
        logger.warning(
            "Local rate limit reached for %s, retry in %.2fs", config.id, wait,
            extra={"provider": config.id, "retry_after": round(wait, 2)},
        )
        raise RateLimitedError(
            f"Local rate limit reached for {config.id}",
            provider=config.id,
            details={"retry_after": round(wait, 2), "local": True},
        )

    def get_status(self) -> Dict[str, Dict[str, float]]:
        return {
            provider_id: {
                "capacity": bucket.capacity,
                "available": round(bucket.tokens, 2),
            }
            for provider_id, bucket in self._buckets.items()
        }
