from __future__ import annotations

import pytest

from browserops.retry import RetryDecision, RetryPolicy, build_retry_policy


def test_decide_follows_backoff_table():
    policy = RetryPolicy()
    assert policy.decide(0, 3) == RetryDecision(retry=True, delay_ms=2000)
    assert policy.decide(1, 3) == RetryDecision(retry=True, delay_ms=4000)
    assert policy.decide(2, 3) == RetryDecision(retry=True, delay_ms=8000)


def test_decide_stops_once_attempts_reach_max_retries():
    policy = RetryPolicy()
    assert policy.decide(3, 3) == RetryDecision(retry=False)
    assert policy.decide(7, 3).retry is False
    assert policy.decide(0, 0).retry is False


def test_delay_is_capped_at_last_entry():
    policy = RetryPolicy()
    assert policy.decide(5, 10).delay_ms == 8000
    assert policy.delay_for(-1) == 2000


def test_build_retry_policy_uses_given_delays():
    policy = build_retry_policy([100, 200])
    assert policy.delays_ms == (100, 200)
    assert policy.decide(4, 9).delay_ms == 200


def test_empty_delay_table_is_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(delays_ms=())
