"""Tests for rate limiting and circuit breaking."""

import asyncio

import pytest

from offramp_solver.utils.rate_limiter import CircuitBreaker, KeyedRateLimiter, TokenBucket


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_token_bucket_refills_over_time():
    clock = _Clock()
    bucket = TokenBucket(rate=1.0, burst_size=2, clock=clock)

    assert bucket.try_acquire()
    assert bucket.try_acquire()
    assert not bucket.try_acquire()
    assert bucket.retry_after() == pytest.approx(1.0)

    clock.now += 1.5
    assert bucket.try_acquire()
    assert not bucket.try_acquire()


def test_keys_have_separate_buckets():
    limiter = KeyedRateLimiter(per_minute=1, clock=_Clock())

    assert limiter.try_acquire("solver-a")
    assert not limiter.try_acquire("solver-a")
    assert limiter.try_acquire("solver-b")
    assert limiter.retry_after("solver-a") == pytest.approx(60.0)
    assert limiter.get_stats()["throttled_requests"] == 1


def test_bucket_map_is_bounded():
    """Test many distinct callers cannot grow the bucket map without limit."""
    limiter = KeyedRateLimiter(per_minute=10, clock=_Clock(), max_keys=1000)

    for n in range(50_000):
        limiter.try_acquire(f"10.0.{n // 256}.{n % 256}")

    assert limiter.get_stats()["keys"] == 1000


def test_recently_used_key_keeps_its_state():
    """Test eviction drops the least recently used key first."""
    limiter = KeyedRateLimiter(per_minute=1, clock=_Clock(), max_keys=2)

    assert limiter.try_acquire("busy")
    assert limiter.try_acquire("idle")
    assert not limiter.try_acquire("busy")
    assert limiter.try_acquire("new")

    assert not limiter.try_acquire("busy")
    assert limiter.try_acquire("idle")


def test_limiter_rejects_bad_config():
    with pytest.raises(ValueError):
        KeyedRateLimiter(per_minute=0)
    with pytest.raises(ValueError):
        KeyedRateLimiter(per_minute=10, max_keys=0)


def test_circuit_breaker_opens_and_resets():
    clock = _Clock()
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=30.0, clock=clock)

    breaker.record_failure()
    assert not breaker.is_open
    breaker.record_failure()
    assert breaker.is_open

    clock.now += 30.0
    assert not breaker.is_open
    breaker.record_success()
    assert not breaker.is_open


def test_token_bucket_acquire_waits_for_refill():
    bucket = TokenBucket(rate=100.0, burst_size=1, clock=_Clock())

    assert asyncio.run(bucket.acquire()) == 0.0
    assert asyncio.run(bucket.acquire()) == pytest.approx(0.01)
