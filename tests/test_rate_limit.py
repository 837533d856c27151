"""
Unit tests for admission control.

Tests the fixed window per requester against the in-memory, SQLite and Redis
stores.
"""

import threading
from unittest.mock import MagicMock

import pytest

from variation_guard.core.rate_limit import InMemoryRateWindowStore, RateDecision, RateLimiter
from variation_guard.storage.rate_store import RedisRateWindowStore, SqliteRateWindowStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture(params=["memory", "sqlite"])
def store(request, db_path):
    if request.param == "memory":
        return InMemoryRateWindowStore()
    return SqliteRateWindowStore(db_path)


class TestRateLimiter:
    """Test window semantics on every local store."""

    def test_twenty_admitted_then_denied(self, store):
        clock = FakeClock()
        limiter = RateLimiter(store, max_requests=20, window_seconds=3600, clock=clock)

        decisions = [limiter.admit("cust_1") for _ in range(20)]
        assert all(d.allowed for d in decisions)
        assert decisions[0].remaining == 19
        assert decisions[-1].remaining == 0

        denied = limiter.admit("cust_1")
        assert denied.allowed is False
        assert denied.retry_after(clock()) == pytest.approx(3600)

    def test_window_resets_after_expiry(self, store):
        clock = FakeClock()
        limiter = RateLimiter(store, max_requests=2, window_seconds=60, clock=clock)
        limiter.admit("cust_1")
        limiter.admit("cust_1")
        assert limiter.admit("cust_1").allowed is False

        clock.now += 60
        decision = limiter.admit("cust_1")
        assert decision.allowed is True
        assert decision.count == 1
        assert decision.reset_at == clock.now + 60

    def test_window_does_not_slide(self, store):
        clock = FakeClock()
        limiter = RateLimiter(store, max_requests=2, window_seconds=60, clock=clock)
        first = limiter.admit("cust_1")
        clock.now += 30
        second = limiter.admit("cust_1")
        assert second.reset_at == first.reset_at

    def test_requesters_are_independent(self, store):
        limiter = RateLimiter(store, max_requests=1, window_seconds=60, clock=FakeClock())
        assert limiter.admit("cust_1").allowed is True
        assert limiter.admit("cust_1").allowed is False
        assert limiter.admit("cust_2").allowed is True

    def test_reset_clears_window(self, store):
        limiter = RateLimiter(store, max_requests=1, window_seconds=60, clock=FakeClock())
        limiter.admit("cust_1")
        limiter.reset("cust_1")
        assert limiter.admit("cust_1").allowed is True

    def test_concurrent_admissions_respect_limit(self, store):
        limiter = RateLimiter(store, max_requests=5, window_seconds=3600, clock=FakeClock())
        barrier = threading.Barrier(20)
        allowed = []
        lock = threading.Lock()

        def admit():
            barrier.wait()
            decision = limiter.admit("cust_1")
            with lock:
                allowed.append(decision.allowed)

        threads = [threading.Thread(target=admit) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert allowed.count(True) == 5
        assert allowed.count(False) == 15

    @pytest.mark.parametrize("kwargs", [{"max_requests": 0}, {"window_seconds": 0}])
    def test_invalid_limits_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RateLimiter(InMemoryRateWindowStore(), **kwargs)


class TestInMemoryStore:
    """Test in-memory housekeeping."""

    def test_purge_expired(self):
        store = InMemoryRateWindowStore()
        store.hit("a", 5, 10, now=0.0)
        store.hit("b", 5, 100, now=0.0)
        assert store.purge_expired(now=50.0) == 1
        assert store.hit("b", 5, 100, now=50.0).count == 2

    def test_hit_sweeps_expired_windows(self):
        store = InMemoryRateWindowStore()
        store.hit("a", 5, 10, now=0.0)
        store.hit("b", 5, 10, now=5.0)
        assert "a" in store._windows

        store.hit("c", 5, 10, now=50.0)

        assert sorted(store._windows) == ["c"]


class TestRedisStore:
    """Test the Redis store against a mocked pipeline."""

    def _store(self, count, ttl_ms):
        client = MagicMock()
        client.pipeline.return_value.execute.return_value = [True, count, ttl_ms]
        return RedisRateWindowStore(client), client

    def test_first_hit_opens_window(self):
        store, client = self._store(count=1, ttl_ms=3600000)
        decision = store.hit("rate_limit:variations:cust_1", 20, 3600, now=100.0)

        assert decision == RateDecision(allowed=True, count=1, limit=20, reset_at=3700.0)
        pipe = client.pipeline.return_value
        client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("rate_limit:variations:cust_1", 0, ex=3600, nx=True)
        pipe.incr.assert_called_once_with("rate_limit:variations:cust_1")

    def test_over_limit_denied(self):
        store, _ = self._store(count=21, ttl_ms=1500000)
        decision = store.hit("k", 20, 3600, now=0.0)
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after(0.0) == pytest.approx(1500.0)

    def test_missing_expiry_is_pinned(self):
        store, client = self._store(count=3, ttl_ms=-1)
        decision = store.hit("k", 20, 60, now=0.0)
        client.expire.assert_called_once_with("k", 60)
        assert decision.reset_at == 60.0

    def test_reset_deletes_key(self):
        store, client = self._store(count=1, ttl_ms=1000)
        store.reset("k")
        client.delete.assert_called_once_with("k")
