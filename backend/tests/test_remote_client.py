"""Tests for reasoning/client.py -- failure classification, retry, breaking.

The network layer is replaced by ``ScriptedReasoningClient``; everything
else (rate limiter, breaker, retry policy, statistics) runs for real.
"""

import time
from collections.abc import Callable
from typing import Any

import pytest
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from errors import (
    CircuitOpen,
    PermanentFailure,
    RateLimited,
    RemoteTimeout,
    TransientFailure,
)
from events.bus import EventBus
from events.types import EventType
from rate_limiter import RateLimiter
from reasoning.circuit_breaker import BreakerRegistry, BreakerState
from reasoning.client import ReasoningRequest, classify_exception
from reasoning.scripted import ScriptedReasoningClient, ScriptedReply
from tests.conftest import FakeClock, events_of, make_test_settings

BACKEND = "mock/reasoner"

ClientFactory = Callable[..., ScriptedReasoningClient]


def _request(**overrides: Any) -> ReasoningRequest:
    fields: dict[str, Any] = {
        "backend": BACKEND,
        "prompt": "Why does the order get charged twice?",
        "caller_id": "caller_1",
    }
    fields.update(overrides)
    return ReasoningRequest(**fields)


def _litellm_error(cls: type[Exception]) -> Exception:
    return cls(message="boom", llm_provider="mock", model=BACKEND)


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"status {status_code}")
        self.status_code = status_code


# =========================================================================
# Classification
# =========================================================================


class TestClassifyException:
    @pytest.mark.parametrize(
        ("error_cls", "expected"),
        [
            (ServiceUnavailableError, TransientFailure),
            (APIConnectionError, TransientFailure),
            (RateLimitError, RateLimited),
            (AuthenticationError, PermanentFailure),
            (BadRequestError, PermanentFailure),
            (Timeout, RemoteTimeout),
        ],
    )
    def test_litellm_exceptions(self, error_cls: type[Exception], expected: type) -> None:
        failure = classify_exception(_litellm_error(error_cls), BACKEND)

        assert type(failure) is expected
        assert failure.backend == BACKEND
        assert isinstance(failure.cause, error_cls)

    def test_builtin_timeout_is_remote_timeout(self) -> None:
        assert isinstance(classify_exception(TimeoutError(), BACKEND), RemoteTimeout)

    @pytest.mark.parametrize(
        ("status_code", "expected"),
        [(429, RateLimited), (503, TransientFailure), (408, TransientFailure), (400, PermanentFailure)],
    )
    def test_status_code_fallback(self, status_code: int, expected: type) -> None:
        assert type(classify_exception(_StatusError(status_code), BACKEND)) is expected

    def test_unknown_exception_is_permanent(self) -> None:
        failure = classify_exception(ValueError("bad"), BACKEND)

        assert type(failure) is PermanentFailure
        assert failure.retryable is False

    def test_remote_failure_passes_through_with_backend(self) -> None:
        original = TransientFailure("503")

        failure = classify_exception(original, BACKEND)

        assert failure is original
        assert failure.backend == BACKEND


# =========================================================================
# Invoke
# =========================================================================


class TestInvoke:
    async def test_parses_json_reply(self, make_client: ClientFactory) -> None:
        client = make_client(['Here you go: {"answer": 42}'])

        response = await client.invoke(_request())

        assert response.payload == {"answer": 42}
        assert response.metrics.attempts == 1
        assert response.metrics.backend == BACKEND
        stats = client.stats.get_stats()[BACKEND]
        assert stats.calls == 1
        assert stats.failures == 0

    async def test_plain_text_reply_has_no_payload(self, make_client: ClientFactory) -> None:
        client = make_client(["no structure here"])

        response = await client.invoke(_request())

        assert response.payload is None
        assert response.content == "no structure here"

    async def test_transient_failure_is_retried(self, make_client: ClientFactory) -> None:
        client = make_client([_litellm_error(ServiceUnavailableError), {"ok": True}])

        response = await client.invoke(_request())

        assert response.payload == {"ok": True}
        assert response.metrics.attempts == 2
        assert len(client.call_history) == 2
        assert client.stats.get_stats()[BACKEND].failures == 1

    async def test_permanent_failure_is_not_retried(self, make_client: ClientFactory) -> None:
        client = make_client([_litellm_error(AuthenticationError), {"ok": True}])

        with pytest.raises(PermanentFailure) as exc_info:
            await client.invoke(_request())

        assert isinstance(exc_info.value.cause, AuthenticationError)
        assert len(client.call_history) == 1

    async def test_retries_stop_at_attempt_cap(self, make_client: ClientFactory) -> None:
        client = make_client([TransientFailure("503")] * 5)

        with pytest.raises(TransientFailure):
            await client.invoke(_request())

        assert len(client.call_history) == 3

    async def test_slow_reply_times_out(self, make_client: ClientFactory) -> None:
        config = make_test_settings(remote_request_timeout_seconds=0.05, retry_max_attempts=1)
        client = make_client([ScriptedReply(content="late", delay=1.0)], config=config)

        with pytest.raises(RemoteTimeout):
            await client.invoke(_request())

    async def test_passed_deadline_makes_no_call(self, make_client: ClientFactory) -> None:
        client = make_client([{"ok": True}])

        with pytest.raises(RemoteTimeout):
            await client.invoke(_request(), deadline=time.monotonic() - 1)

        assert client.call_history == []

    async def test_rate_limit_rejection_is_typed(self, make_client: ClientFactory) -> None:
        limiter = RateLimiter(max_calls_per_minute=1, max_tokens_per_minute=10_000_000)
        client = make_client([{"ok": True}, {"ok": True}], rate_limiter=limiter)
        await client.invoke(_request())

        with pytest.raises(RateLimited) as exc_info:
            await client.invoke(_request(), max_wait_seconds=0)

        assert exc_info.value.backend == BACKEND
        assert exc_info.value.retry_after is not None
        assert len(client.call_history) == 1
        assert client.breakers.get(BACKEND).get_state() == BreakerState.CLOSED

    async def test_emits_call_event_for_session(
        self, make_client: ClientFactory, event_bus: EventBus
    ) -> None:
        client = make_client([{"ok": True}])

        await client.invoke(_request(session_id="sess_aabbccddeeff", purpose="turn"))

        events = events_of(event_bus, "sess_aabbccddeeff", EventType.REMOTE_CALL_COMPLETE)
        assert len(events) == 1
        assert events[0].data["caller_id"] == "caller_1"
        assert events[0].data["attempts"] == 1

    async def test_no_event_without_session(
        self, make_client: ClientFactory, event_bus: EventBus
    ) -> None:
        client = make_client([{"ok": True}])

        await client.invoke(_request())

        assert event_bus.get_event_history("caller_1") == []


# =========================================================================
# Circuit Breaking
# =========================================================================


class TestCircuitBreaking:
    async def test_open_breaker_fails_fast_without_network_call(
        self, make_client: ClientFactory
    ) -> None:
        client = make_client(
            [TransientFailure("503")] * 3 + [{"ok": True}],
            config=make_test_settings(retry_max_attempts=1, circuit_failure_threshold=3),
        )
        for _ in range(3):
            with pytest.raises(TransientFailure):
                await client.invoke(_request())

        with pytest.raises(CircuitOpen) as exc_info:
            await client.invoke(_request())

        assert exc_info.value.retryable is False
        assert len(client.call_history) == 3
        assert client.stats.get_stats()[BACKEND].fast_failures == 1

    async def test_permanent_failures_do_not_open_breaker(self, make_client: ClientFactory) -> None:
        client = make_client([_litellm_error(BadRequestError)] * 5)

        for _ in range(5):
            with pytest.raises(PermanentFailure):
                await client.invoke(_request())

        assert client.breakers.get(BACKEND).get_state() == BreakerState.CLOSED

    async def test_probe_after_cooldown_closes_breaker(
        self, make_client: ClientFactory, clock: FakeClock
    ) -> None:
        breakers = BreakerRegistry(failure_threshold=1, cooldown_seconds=10, clock=clock)
        client = make_client(
            [TransientFailure("503"), {"ok": True}],
            breakers=breakers,
            config=make_test_settings(retry_max_attempts=1),
        )
        with pytest.raises(TransientFailure):
            await client.invoke(_request())
        with pytest.raises(CircuitOpen):
            await client.invoke(_request())

        clock.advance(10)
        response = await client.invoke(_request())

        assert response.payload == {"ok": True}
        assert breakers.get(BACKEND).get_state() == BreakerState.CLOSED

    async def test_health_snapshot_reports_breakers_and_limiter(
        self, make_client: ClientFactory
    ) -> None:
        client = make_client([{"ok": True}])
        await client.invoke(_request())

        snapshot = client.health_snapshot()

        assert snapshot["backends"][BACKEND]["calls"] == 1
        assert snapshot["circuit_breakers"][BACKEND]["state"] == "closed"
        assert snapshot["rate_limiter"]["current_rpm"] == 1
