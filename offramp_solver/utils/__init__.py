"""Utilities - logging setup and rate limiting."""

from offramp_solver.utils.logging import bind_log_fields, setup_logging
from offramp_solver.utils.rate_limiter import CircuitBreaker, KeyedRateLimiter, TokenBucket

__all__ = [
    "setup_logging",
    "bind_log_fields",
    "KeyedRateLimiter",
    "TokenBucket",
    "CircuitBreaker",
]
