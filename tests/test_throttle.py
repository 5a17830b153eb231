import pytest

from llm_relay.exceptions import RateLimitedError
from llm_relay.providers.throttle import ProviderThrottle, TokenBucket


def test_token_bucket_consumes_until_empty():
    bucket = TokenBucket(capacity=2, refill_rate=0.001)
    assert bucket.consume()
    assert bucket.consume()
    assert not bucket.consume()
    assert bucket.get_wait_time() > 0


def test_throttle_raises_local_rate_limit(registry):
    throttle = ProviderThrottle()
    primary = registry.get("primary")
    for _ in range(60):
        throttle.acquire(primary)

    with pytest.raises(RateLimitedError) as exc_info:
        throttle.acquire(primary)
    err = exc_info.value
    assert err.retryable
    assert err.status_code is None
    assert err.details["local"] is True
    assert err.details["retry_after"] > 0


def test_providers_without_limit_are_not_throttled(registry):
    throttle = ProviderThrottle()
    secondary = registry.get("secondary")
    for _ in range(500):
        throttle.acquire(secondary)
    assert "secondary" not in throttle.get_status()


def test_disabled_throttle_never_limits(registry):
    throttle = ProviderThrottle(enabled=False)
    primary = registry.get("primary")
    for _ in range(100):
        throttle.acquire(primary)
    assert throttle.get_status() == {}
