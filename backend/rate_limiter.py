"""Sliding-window rate limiter for remote reasoning calls.

This module keeps the escalation backend under the remote provider's quotas.
It implements a sliding window for both requests-per-minute (RPM) and
tokens-per-minute (TPM) limits.

Usage:
    >>> from rate_limiter import RateLimiter
    >>> limiter = RateLimiter(max_calls_per_minute=30, max_tokens_per_minute=100_000)
    >>> await limiter.acquire(estimated_tokens=1500, max_wait_seconds=10.0)
    >>> # ... make the remote call ...
    >>> await limiter.record_usage(tokens_used=1234)
"""

import asyncio
import time
from collections import deque
from collections.abc import Callable

import structlog

from errors import RateLimited

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = 60.0


class RateLimiter:
    """Sliding-window limiter shared by every call of one reasoning client.

    Enforces two independent limits:
    - Requests per minute (RPM): Maximum number of calls within a 60s window.
    - Tokens per minute (TPM): Maximum estimated/actual tokens within a 60s window.

    When a limit would be exceeded, ``acquire()`` waits until enough capacity
    is available or the caller's wait allowance runs out, in which case it
    raises ``RateLimited`` carrying a ``retry_after`` hint.

    Attributes:
        max_calls_per_minute: Maximum calls allowed per 60-second window.
        max_tokens_per_minute: Maximum tokens allowed per 60-second window.
    """

    def __init__(
        self,
        max_calls_per_minute: int = 30,
        max_tokens_per_minute: int = 100_000,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            max_calls_per_minute: Maximum calls per minute (RPM).
            max_tokens_per_minute: Maximum tokens per minute (TPM).
            clock: Monotonic clock override, for tests.
        """
        self.max_calls_per_minute = max_calls_per_minute
        self.max_tokens_per_minute = max_tokens_per_minute
        self._clock = clock or time.monotonic

        # Sliding window tracking: deque of (timestamp, token_count)
        self._call_log: deque[tuple[float, int]] = deque()
        self._lock = asyncio.Lock()

        logger.info(
            "rate_limiter_initialized",
            max_rpm=max_calls_per_minute,
            max_tpm=max_tokens_per_minute,
        )

    def _prune_old_entries(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        while self._call_log and self._call_log[0][0] < cutoff:
            self._call_log.popleft()

    def _current_rpm(self) -> int:
        return len(self._call_log)

    def _current_tpm(self) -> int:
        return sum(tokens for _, tokens in self._call_log)

    async def acquire(
        self,
        estimated_tokens: int = 1000,
        max_wait_seconds: float = 30.0,
    ) -> None:
        """Wait until the window admits a new call, then reserve a slot.

        Args:
            estimated_tokens: Estimated tokens for the upcoming call, used for
                TPM budgeting before the actual usage is known. A single call
                larger than the whole TPM allowance is clamped to it so it can
                still be admitted into an empty window.
            max_wait_seconds: Maximum time to wait for capacity.

        Raises:
            RateLimited: If capacity is not available within ``max_wait_seconds``.
        """
        estimated_tokens = min(estimated_tokens, self.max_tokens_per_minute)
        deadline = self._clock() + max(0.0, max_wait_seconds)

        while True:
            async with self._lock:
                now = self._clock()
                self._prune_old_entries(now)

                rpm_ok = self._current_rpm() < self.max_calls_per_minute
                tpm_ok = (
                    self._current_tpm() + estimated_tokens
                    <= self.max_tokens_per_minute
                )

                if rpm_ok and tpm_ok:
                    self._call_log.append((now, estimated_tokens))
                    logger.debug(
                        "rate_limiter_acquired",
                        current_rpm=self._current_rpm(),
                        current_tpm=self._current_tpm(),
                        estimated_tokens=estimated_tokens,
                    )
                    return

                wait_needed = self._calculate_wait(now)
                if now + wait_needed > deadline:
                    logger.warning(
                        "rate_limiter_wait_exceeded",
                        max_wait_seconds=max_wait_seconds,
                        retry_after=round(wait_needed, 2),
                    )
                    raise RateLimited(
                        f"Rate limit window full; capacity frees in {wait_needed:.1f}s",
                        retry_after=wait_needed,
                    )

            logger.info(
                "rate_limiter_waiting",
                wait_seconds=round(wait_needed, 2),
                current_rpm=self._current_rpm(),
                current_tpm=self._current_tpm(),
            )
            await asyncio.sleep(wait_needed)

    def _calculate_wait(self, now: float) -> float:
        """Seconds until the oldest entry leaves the window (at least 0.1s)."""
        if not self._call_log:
            return 0.1

        oldest_timestamp = self._call_log[0][0]
        wait = (oldest_timestamp + WINDOW_SECONDS) - now
        return max(wait, 0.1)

    async def record_usage(self, tokens_used: int) -> None:
        """Replace the newest reservation's estimate with the actual usage.

        Args:
            tokens_used: The actual number of tokens consumed by the call.
        """
        async with self._lock:
            if not self._call_log:
                return
            timestamp, _estimated = self._call_log[-1]
            self._call_log[-1] = (timestamp, tokens_used)

        logger.debug(
            "rate_limiter_usage_recorded",
            tokens_used=tokens_used,
            current_tpm=self._current_tpm(),
        )

    def get_status(self) -> dict[str, int]:
        """Return current rate limiter status for health reporting."""
        self._prune_old_entries(self._clock())
        return {
            "current_rpm": self._current_rpm(),
            "current_tpm": self._current_tpm(),
            "max_rpm": self.max_calls_per_minute,
            "max_tpm": self.max_tokens_per_minute,
        }
