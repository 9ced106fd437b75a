"""Tests for rate_limiter.py -- sliding-window RPM/TPM limiting."""

from unittest.mock import patch

import pytest

from errors import RateLimited
from rate_limiter import RateLimiter
from tests.conftest import FakeClock

# =========================================================================
# Admission
# =========================================================================


class TestAcquire:
    async def test_admits_calls_under_the_limit(self, clock: FakeClock) -> None:
        limiter = RateLimiter(max_calls_per_minute=3, max_tokens_per_minute=10_000, clock=clock)

        for _ in range(3):
            await limiter.acquire(estimated_tokens=100, max_wait_seconds=0)

        status = limiter.get_status()
        assert status["current_rpm"] == 3
        assert status["current_tpm"] == 300

    async def test_full_window_raises_with_retry_after(self, clock: FakeClock) -> None:
        limiter = RateLimiter(max_calls_per_minute=1, max_tokens_per_minute=10_000, clock=clock)
        await limiter.acquire(estimated_tokens=100, max_wait_seconds=0)
        clock.advance(20)

        with pytest.raises(RateLimited) as exc_info:
            await limiter.acquire(estimated_tokens=100, max_wait_seconds=5)

        assert exc_info.value.retry_after == pytest.approx(40.0)
        assert exc_info.value.retryable is True

    async def test_token_limit_is_enforced(self, clock: FakeClock) -> None:
        limiter = RateLimiter(max_calls_per_minute=100, max_tokens_per_minute=1000, clock=clock)
        await limiter.acquire(estimated_tokens=800, max_wait_seconds=0)

        with pytest.raises(RateLimited):
            await limiter.acquire(estimated_tokens=300, max_wait_seconds=0)

    async def test_oversized_request_is_clamped_into_empty_window(self, clock: FakeClock) -> None:
        limiter = RateLimiter(max_calls_per_minute=10, max_tokens_per_minute=1000, clock=clock)

        await limiter.acquire(estimated_tokens=50_000, max_wait_seconds=0)

        assert limiter.get_status()["current_tpm"] == 1000

    async def test_window_slides_after_sixty_seconds(self, clock: FakeClock) -> None:
        limiter = RateLimiter(max_calls_per_minute=1, max_tokens_per_minute=10_000, clock=clock)
        await limiter.acquire(estimated_tokens=100, max_wait_seconds=0)

        clock.advance(60.5)
        await limiter.acquire(estimated_tokens=100, max_wait_seconds=0)

        assert limiter.get_status()["current_rpm"] == 1

    async def test_waits_for_capacity_within_allowance(self, clock: FakeClock) -> None:
        limiter = RateLimiter(max_calls_per_minute=2, max_tokens_per_minute=10_000, clock=clock)
        await limiter.acquire(estimated_tokens=100, max_wait_seconds=0)
        await limiter.acquire(estimated_tokens=100, max_wait_seconds=0)
        clock.advance(30)

        async def fake_sleep(seconds: float) -> None:
            clock.advance(seconds)

        with patch("rate_limiter.asyncio.sleep", side_effect=fake_sleep) as sleep:
            await limiter.acquire(estimated_tokens=100, max_wait_seconds=60)

        assert sleep.await_count >= 1
        assert clock.now >= 1060.0
        assert limiter.get_status()["current_rpm"] == 1


# =========================================================================
# Usage Accounting
# =========================================================================


class TestRecordUsage:
    async def test_actual_usage_replaces_estimate(self, clock: FakeClock) -> None:
        limiter = RateLimiter(max_calls_per_minute=10, max_tokens_per_minute=10_000, clock=clock)
        await limiter.acquire(estimated_tokens=2000, max_wait_seconds=0)

        await limiter.record_usage(350)

        assert limiter.get_status()["current_tpm"] == 350

    async def test_record_usage_on_empty_window_is_noop(self, clock: FakeClock) -> None:
        limiter = RateLimiter(clock=clock)

        await limiter.record_usage(100)

        assert limiter.get_status()["current_tpm"] == 0

    def test_status_reports_limits(self, clock: FakeClock) -> None:
        limiter = RateLimiter(max_calls_per_minute=7, max_tokens_per_minute=700, clock=clock)

        status = limiter.get_status()

        assert status == {"current_rpm": 0, "current_tpm": 0, "max_rpm": 7, "max_tpm": 700}
