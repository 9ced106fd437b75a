"""Deadline-driven retry state machine for remote reasoning calls.

back-off delay for retry *i* (0-indexed)::

    min(cap, base × 2^i) × (1 + uniform(−jitter, jitter))

A retry is scheduled only when the failure is retryable, the attempt cap is
not reached and the delay still fits before the caller's deadline.
"""

import random
from dataclasses import dataclass

from errors import RateLimited, RemoteFailure


@dataclass
class RetryState:
    """Progress of one logical call through its attempts.

    Attributes:
        attempt: Attempts made so far.
        next_delay: Back-off to wait before the next attempt.
        last_error: Failure of the most recent attempt.
    """

    attempt: int = 0
    next_delay: float = 0.0
    last_error: RemoteFailure | None = None


class RetryPolicy:
    """Exponential back-off with jitter, bounded by attempts and deadline."""

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 4.0,
        jitter: float = 0.25,
        rng: random.Random | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter = jitter
        self._rng = rng or random.Random()

    def calculate_backoff(self, retry_index: int) -> float:
        """Return the delay in seconds before retry *retry_index* (0-indexed)."""
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** retry_index))
        jitter_factor = 1.0 + self._rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay * jitter_factor)

    def schedule(
        self,
        state: RetryState,
        error: RemoteFailure,
        remaining_seconds: float,
    ) -> bool:
        """Record a failed attempt and decide whether another one is allowed.

        On ``True``, ``state.next_delay`` holds the back-off to wait first.

        Args:
            state: The call's retry state; mutated in place.
            error: Failure of the attempt that just ended.
            remaining_seconds: Time left until the caller's deadline.
        """
        state.attempt += 1
        state.last_error = error
        state.next_delay = 0.0

        if not error.retryable or state.attempt >= self.max_attempts:
            return False

        delay = self.calculate_backoff(state.attempt - 1)
        if isinstance(error, RateLimited) and error.retry_after:
            delay = max(delay, error.retry_after)

        if delay >= remaining_seconds:
            return False

        state.next_delay = delay
        return True
