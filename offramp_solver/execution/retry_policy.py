"""Retry/backoff decision for failed fulfillments.

Pure and deterministic: no clock, no I/O. The ledger applies the decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Union

BASE_DELAY = timedelta(seconds=60)
MAX_RETRIES = 5


@dataclass(frozen=True)
class RetryAt:
    """Retry after `delay`."""

    delay: timedelta


@dataclass(frozen=True)
class GiveUp:
    """Retry budget exhausted."""

    retries: int


Decision = Union[RetryAt, GiveUp]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base * 2**retry_count, until max_retries."""

    base_delay: timedelta = BASE_DELAY
    max_retries: int = MAX_RETRIES

    def decide(self, retry_count: int) -> Decision:
        if retry_count < 0:
            raise ValueError(f"retry_count must be >= 0, got {retry_count}")
        if retry_count >= self.max_retries:
            return GiveUp(retries=retry_count)
        return RetryAt(delay=self.base_delay * (2**retry_count))

    def schedule(self) -> list[timedelta]:
        """Full delay sequence, for display and tests."""
        return [self.base_delay * (2**n) for n in range(self.max_retries)]


DEFAULT_POLICY = RetryPolicy()


def decide(retry_count: int) -> Decision:
    """Decide with the default policy (60s base, 5 retries)."""
    return DEFAULT_POLICY.decide(retry_count)
