from __future__ import annotations

import random

import allure
import pytest

from granary.orchestrator.retry import RetryPolicy, compute_backoff

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Retry Policy"),
]


def test_backoff_doubles_and_caps() -> None:
    delays = [compute_backoff(attempt, base_seconds=2.0, max_seconds=20.0) for attempt in range(5)]

    assert delays == [2.0, 4.0, 8.0, 16.0, 20.0]


def test_backoff_adds_jitter_within_cap() -> None:
    assert compute_backoff(0, base_seconds=1.0, max_seconds=10.0, jitter=0.5) == 1.5
    assert compute_backoff(3, base_seconds=1.0, max_seconds=8.5, jitter=0.9) == 8.5
    assert compute_backoff(0, base_seconds=1.0, max_seconds=10.0, jitter=-3.0) == 1.0

    with pytest.raises(ValueError):
        compute_backoff(-1, base_seconds=1.0, max_seconds=1.0)


def test_policy_bounds_attempts_and_jitter() -> None:
    policy = RetryPolicy(max_attempts=3, base_seconds=1.0, max_seconds=60.0, jitter_seconds=0.25)
    rng = random.Random(7)

    assert policy.should_retry(1)
    assert policy.should_retry(2)
    assert not policy.should_retry(3)
    for attempts_made, base in ((1, 1.0), (2, 2.0), (3, 4.0)):
        delay = policy.delay_after(attempts_made, rng=rng)
        assert base <= delay <= base + 0.25


def test_policy_without_jitter_is_deterministic() -> None:
    policy = RetryPolicy(base_seconds=0.1, max_seconds=1.0, jitter_seconds=0.0)

    assert policy.delay_after(1, rng=random.Random(1)) == pytest.approx(0.1)
    assert policy.delay_after(5, rng=random.Random(2)) == pytest.approx(1.0)
