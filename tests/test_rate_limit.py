"""Tests for the per-IP auth rate limiter."""

import pytest

from erpcore.service.audit import AuditLog, RequestMeta
from erpcore.service.errors import RateLimitError
from erpcore.service.rate_limit import AuthRateLimiter, InMemoryRateCounter, RedisRateCounter
from erpcore.storage.memory import MemoryStore


class _FakeWindowCache:
    """Stands in for the Redis cache's fixed-window helpers."""

    def __init__(self):
        self.counts = {}

    async def hit_window(self, key, window):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key], window


@pytest.mark.asyncio
async def test_counter_counts_within_window():
    counter = InMemoryRateCounter()
    assert (await counter.hit("login:1.2.3.4", 60))[0] == 1
    count, seconds_left = await counter.hit("login:1.2.3.4", 60)
    assert count == 2
    assert 1 <= seconds_left <= 60


@pytest.mark.asyncio
async def test_counter_window_expiry(monkeypatch):
    import erpcore.service.rate_limit as rate_limit

    now = [1000.0]
    monkeypatch.setattr(rate_limit.time, "monotonic", lambda: now[0])
    counter = InMemoryRateCounter()
    await counter.hit("k", 10)
    await counter.hit("k", 10)
    now[0] += 11
    assert (await counter.hit("k", 10))[0] == 1


@pytest.mark.asyncio
async def test_sixth_attempt_is_rejected_and_audited():
    store = MemoryStore()
    limiter = AuthRateLimiter(
        InMemoryRateCounter(), max_attempts=5, window_seconds=900, audit=AuditLog(store)
    )
    meta = RequestMeta(ip_address="10.0.0.7", path="/v1/auth/login", method="POST")

    for _ in range(5):
        await limiter.check("login", "10.0.0.7", meta=meta)
    with pytest.raises(RateLimitError) as excinfo:
        await limiter.check("login", "10.0.0.7", meta=meta)

    assert excinfo.value.status_code == 429
    assert 0 < excinfo.value.retry_after <= 900
    assert excinfo.value.detail == {"retry_after": excinfo.value.retry_after}
    (event,) = store.security_events
    assert event.event == "AUTH_RATE_LIMIT_EXCEEDED"
    assert event.ip_address == "10.0.0.7"
    assert event.detail == {"scope": "login", "attempts": 6}


@pytest.mark.asyncio
async def test_keys_are_per_scope_and_ip():
    limiter = AuthRateLimiter(InMemoryRateCounter(), max_attempts=1)
    await limiter.check("login", "10.0.0.1")
    await limiter.check("login", "10.0.0.2")
    await limiter.check("register", "10.0.0.1")
    with pytest.raises(RateLimitError):
        await limiter.check("login", "10.0.0.1")


@pytest.mark.asyncio
async def test_missing_ip_shares_one_bucket():
    limiter = AuthRateLimiter(InMemoryRateCounter(), max_attempts=1)
    await limiter.check("login", None)
    with pytest.raises(RateLimitError):
        await limiter.check("login", "")


@pytest.mark.asyncio
async def test_redis_counter_delegates_to_cache():
    cache = _FakeWindowCache()
    limiter = AuthRateLimiter(RedisRateCounter(cache), max_attempts=2, window_seconds=30)

    await limiter.check("refresh", "10.0.0.3")
    await limiter.check("refresh", "10.0.0.3")
    with pytest.raises(RateLimitError) as excinfo:
        await limiter.check("refresh", "10.0.0.3")

    assert cache.counts == {"refresh:10.0.0.3": 3}
    assert excinfo.value.retry_after == 30
