import time

import pytest

from app.breaker import CircuitBreaker, CircuitBreakerOpen
from conftest import FakeRedis


@pytest.mark.asyncio
async def test_breaker_opens_after_threshold():
    breaker = CircuitBreaker(FakeRedis(), "google-calendar", failure_threshold=2)

    await breaker.record_failure()
    await breaker.allow_request()
    await breaker.record_failure()

    assert await breaker.state() == "OPEN"
    with pytest.raises(CircuitBreakerOpen):
        await breaker.allow_request()


@pytest.mark.asyncio
async def test_breaker_half_opens_after_timeout():
    redis = FakeRedis()
    breaker = CircuitBreaker(redis, "google-calendar", failure_threshold=1, reset_timeout_seconds=30)
    await breaker.open()
    redis.data["cb:google-calendar:opened_at"] = str(time.time() - 31)

    await breaker.allow_request()
    assert await breaker.state() == "HALF_OPEN"

    # a failed probe opens it again
    await breaker.record_failure()
    assert await breaker.state() == "OPEN"


@pytest.mark.asyncio
async def test_success_closes_breaker():
    redis = FakeRedis()
    breaker = CircuitBreaker(redis, "google-calendar", failure_threshold=3)
    await breaker.record_failure()

    await breaker.record_success()

    assert await breaker.state() == "CLOSED"
    assert "cb:google-calendar:failures" not in redis.data
