"""Tests for reasoning/retry.py -- back-off schedule and retry decisions."""

import random

import pytest

from errors import PermanentFailure, RateLimited, RemoteTimeout, TransientFailure
from reasoning.retry import RetryPolicy, RetryState


class TestCalculateBackoff:
    def test_doubles_until_cap(self) -> None:
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=4.0, jitter=0.0)

        delays = [policy.calculate_backoff(i) for i in range(5)]

        assert delays == [1.0, 2.0, 4.0, 4.0, 4.0]

    def test_jitter_stays_within_bounds(self) -> None:
        policy = RetryPolicy(
            base_delay_seconds=1.0, max_delay_seconds=4.0, jitter=0.25, rng=random.Random(7)
        )

        for _ in range(50):
            delay = policy.calculate_backoff(1)
            assert 1.5 <= delay <= 2.5


class TestSchedule:
    def test_retryable_failure_is_scheduled(self) -> None:
        policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.5, jitter=0.0)
        state = RetryState()

        assert policy.schedule(state, TransientFailure("503"), remaining_seconds=10) is True
        assert state.attempt == 1
        assert state.next_delay == pytest.approx(0.5)

    def test_permanent_failure_is_never_retried(self) -> None:
        policy = RetryPolicy(max_attempts=3, jitter=0.0)
        state = RetryState()

        assert policy.schedule(state, PermanentFailure("401"), remaining_seconds=10) is False
        assert state.attempt == 1
        assert isinstance(state.last_error, PermanentFailure)

    def test_attempt_cap_counts_the_first_try(self) -> None:
        policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.01, jitter=0.0)
        state = RetryState()

        results = [
            policy.schedule(state, RemoteTimeout("slow"), remaining_seconds=10) for _ in range(3)
        ]

        assert results == [True, True, False]

    def test_delay_past_deadline_stops_retrying(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay_seconds=2.0, jitter=0.0)
        state = RetryState()

        assert policy.schedule(state, TransientFailure("503"), remaining_seconds=1.5) is False
        assert state.next_delay == 0.0

    def test_rate_limited_waits_at_least_retry_after(self) -> None:
        policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.1, jitter=0.0)
        state = RetryState()

        scheduled = policy.schedule(
            state, RateLimited("429", retry_after=3.0), remaining_seconds=10
        )

        assert scheduled is True
        assert state.next_delay == pytest.approx(3.0)
