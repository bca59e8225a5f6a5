"""Rate limiting and circuit breaking.

`TokenBucket` paces outbound calls (the Qonto API). `KeyedRateLimiter`
gives each API caller its own bucket (the attestation service limits per
solver). `CircuitBreaker` lets HTTP clients fail fast while a downstream
service is known to be down.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterStats:
    """Statistics for rate limiter."""

    total_requests: int = 0
    throttled_requests: int = 0
    last_request_time: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "throttled_requests": self.throttled_requests,
            "throttle_rate": self.throttled_requests / self.total_requests
            if self.total_requests > 0
            else 0,
        }


class TokenBucket:
    """Token bucket refilled continuously at `rate` tokens per second."""

    def __init__(self, rate: float, burst_size: int, clock=time.monotonic, name: str = "default"):
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        self.rate = rate
        self.burst_size = burst_size
        self.name = name
        self._clock = clock
        self.tokens = float(burst_size)
        self.last_update = clock()
        self._lock = asyncio.Lock()

    def _refill_tokens(self) -> None:
        now = self._clock()
        elapsed = now - self.last_update
        self.last_update = now
        self.tokens = min(self.burst_size, self.tokens + elapsed * self.rate)

    async def acquire(self, tokens: int = 1) -> float:
        """Take tokens, sleeping until they refill. Returns seconds waited."""
        async with self._lock:
            self._refill_tokens()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return 0.0

            wait_time = (tokens - self.tokens) / self.rate
            logger.debug(f"Rate limiter '{self.name}' throttling: waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)
            self._refill_tokens()
            self.tokens -= tokens
            return wait_time

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take tokens if available, never waiting."""
        self._refill_tokens()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def retry_after(self, tokens: int = 1) -> float:
        """Seconds until `tokens` would be available."""
        self._refill_tokens()
        missing = tokens - self.tokens
        return max(0.0, missing / self.rate)


class KeyedRateLimiter:
    """One token bucket per key (solver address, API key, client IP).

    Args:
        per_minute: Sustained requests per minute for each key.
        burst_size: Bucket size; defaults to `per_minute`.
        name: Name for logging.
        max_keys: Buckets kept at once; the least recently used key is
            dropped first.
    """

    def __init__(
        self,
        per_minute: int,
        burst_size: Optional[int] = None,
        name: str = "default",
        clock=time.monotonic,
        max_keys: int = 10_000,
    ):
        if per_minute <= 0:
            raise ValueError(f"per_minute must be positive, got {per_minute}")
        if max_keys <= 0:
            raise ValueError(f"max_keys must be positive, got {max_keys}")
        self.rate = per_minute / 60.0
        self.burst_size = burst_size or per_minute
        self.name = name
        self._clock = clock
        self.max_keys = max_keys
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()
        self.stats = RateLimiterStats()

    def _bucket(self, key: str) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            self._buckets.move_to_end(key)
            return bucket
        bucket = TokenBucket(self.rate, self.burst_size, clock=self._clock, name=self.name)
        self._buckets[key] = bucket
        while len(self._buckets) > self.max_keys:
            self._buckets.popitem(last=False)
        return bucket

    def try_acquire(self, key: str, tokens: int = 1) -> bool:
        """Try to acquire tokens for `key` without waiting."""
        self.stats.total_requests += 1
        self.stats.last_request_time = time.time()
        if self._bucket(key).try_acquire(tokens):
            return True
        self.stats.throttled_requests += 1
        logger.debug(f"Rate limiter '{self.name}' throttled key", extra={"key": key})
        return False

    def retry_after(self, key: str) -> float:
        return self._bucket(key).retry_after()

    def get_stats(self) -> dict:
        """Get rate limiter statistics."""
        return {**self.stats.to_dict(), "keys": len(self._buckets)}

    def reset(self) -> None:
        """Reset all buckets."""
        self._buckets.clear()
        self.stats = RateLimiterStats()


class CircuitBreaker:
    """Circuit breaker for API calls.

    Prevents hammering a downstream service by temporarily stopping
    requests when consecutive failures pile up.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        name: str = "default",
        clock=time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening
            reset_timeout: Seconds to wait before attempting reset
            name: Name for logging
        """
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock

        self._failures = 0
        self._last_failure_time: Optional[float] = None
        self._is_open = False

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (blocking requests)."""
        if not self._is_open:
            return False

        if self._last_failure_time is not None:
            elapsed = self._clock() - self._last_failure_time
            if elapsed >= self.reset_timeout:
                logger.info(f"Circuit breaker '{self.name}' attempting reset")
                return False  # Allow a test request

        return True

    def record_success(self) -> None:
        """Record a successful request."""
        if self._is_open:
            logger.info(f"Circuit breaker '{self.name}' closed after success")
        self._failures = 0
        self._is_open = False

    def record_failure(self) -> None:
        """Record a failed request."""
        self._failures += 1
        self._last_failure_time = self._clock()

        if self._failures >= self.failure_threshold:
            if not self._is_open:
                logger.warning(
                    f"Circuit breaker '{self.name}' opened after {self._failures} failures"
                )
            self._is_open = True

    def reset(self) -> None:
        """Reset the circuit breaker."""
        self._failures = 0
        self._is_open = False
        self._last_failure_time = None
