"""Tests for retry/backoff decisions."""

from datetime import timedelta

import pytest

from offramp_solver.execution.retry_policy import GiveUp, RetryAt, RetryPolicy, decide


def test_first_retry_after_one_minute():
    """Test the base delay is 60 seconds."""
    assert decide(0) == RetryAt(delay=timedelta(seconds=60))


def test_delay_doubles_each_retry():
    """Test exponential growth up to the last allowed retry."""
    assert decide(1).delay == timedelta(seconds=120)
    assert decide(2).delay == timedelta(seconds=240)
    assert decide(4).delay == timedelta(seconds=960)


def test_gives_up_after_max_retries():
    """Test the sixth failure is final."""
    decision = decide(5)
    assert isinstance(decision, GiveUp)
    assert decision.retries == 5
    assert isinstance(decide(9), GiveUp)


def test_negative_retry_count_rejected():
    with pytest.raises(ValueError):
        decide(-1)


def test_custom_policy_schedule():
    """Test a custom policy and its full schedule."""
    policy = RetryPolicy(base_delay=timedelta(seconds=10), max_retries=3)
    assert policy.schedule() == [timedelta(seconds=10), timedelta(seconds=20), timedelta(seconds=40)]
    assert isinstance(policy.decide(3), GiveUp)
