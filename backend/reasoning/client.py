"""Remote reasoning client: the single point of contact to the reasoning service.

This module provides:
- ReasoningRequest / ReasoningResponse: the bounded request and parsed reply
- classify_exception: maps LiteLLM exceptions onto the RemoteFailure taxonomy
- RemoteReasoningClient: rate limiting, deadline-bounded retry with back-off,
  per-backend circuit breaking and call statistics around ``litellm.acompletion``

Every outcome of ``invoke`` is either a ``ReasoningResponse`` or one of
``RateLimited``, ``TransientFailure``, ``RemoteTimeout`` or
``PermanentFailure`` (``CircuitOpen`` included).
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import acompletion
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import Settings, settings
from errors import (
    CircuitOpen,
    PermanentFailure,
    RateLimited,
    RemoteFailure,
    RemoteTimeout,
    TransientFailure,
)
from events.bus import EventBus
from events.types import EscalationEvent, EventType
from metrics import CallStatsCollector
from rate_limiter import RateLimiter
from reasoning.circuit_breaker import BreakerRegistry, CircuitBreaker
from reasoning.retry import RetryPolicy, RetryState
from reasoning.utils import clip_text, count_tokens_estimate, extract_json_from_response

logger = structlog.get_logger()

# Floor for the token estimate of a request, response tokens included.
_MIN_TOKEN_ESTIMATE = 500


@dataclass
class ReasoningRequest:
    """A bounded, structured prompt addressed to one logical backend.

    Attributes:
        backend: Logical backend (LiteLLM model identifier).
        prompt: The new requester message for this call.
        system_prompt: Optional system instructions.
        transcript: Prior chat messages (``role``/``content``), already windowed.
        max_tokens: Response token limit (defaults to configuration).
        temperature: Sampling temperature.
        purpose: What the call is for (turn, summary, score, generate); used
            for logging and by the scripted client.
        caller_id: Who is calling (session id or hypothesis id); used for
            logging and response routing in the scripted client.
        session_id: Event stream (conversation or tournament id) that
            receives the REMOTE_CALL_COMPLETE event, if any.
    """

    backend: str
    prompt: str
    system_prompt: str = ""
    transcript: list[dict[str, str]] = field(default_factory=list)
    max_tokens: int | None = None
    temperature: float = 0.3
    purpose: str = "turn"
    caller_id: str | None = None
    session_id: str | None = None

    def to_messages(self, max_prompt_chars: int | None = None) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend(self.transcript)
        prompt = clip_text(self.prompt, max_prompt_chars) if max_prompt_chars else self.prompt
        messages.append({"role": "user", "content": prompt})
        return messages

    def estimated_tokens(self) -> int:
        text_tokens = sum(
            count_tokens_estimate(m["content"]) for m in self.to_messages()
        )
        return max(text_tokens + (self.max_tokens or 0), _MIN_TOKEN_ESTIMATE)


@dataclass
class RawCompletion:
    """Provider-neutral result of a single network attempt."""

    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: str = "stop"


@dataclass
class ReasoningMetrics:
    """Token and latency metrics of one ``invoke`` (all attempts)."""

    backend: str
    input_tokens: int
    output_tokens: int
    latency_ms: int
    attempts: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ReasoningResponse:
    """Parsed reply of the remote service.

    Attributes:
        content: Raw text of the reply.
        payload: JSON object found in the reply, if any.
        metrics: Tokens, latency and attempt count.
    """

    content: str
    payload: dict[str, Any] | None
    metrics: ReasoningMetrics


def _retry_after_from(exc: BaseException) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def classify_exception(exc: BaseException, backend: str) -> RemoteFailure:
    """Map an exception raised by the provider call onto the failure taxonomy.

    Order matters: LiteLLM's ``Timeout`` derives from the connection error
    hierarchy, so it is checked first.
    """
    if isinstance(exc, RemoteFailure):
        if exc.backend is None:
            exc.backend = backend
        return exc
    message = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, (Timeout, TimeoutError)):
        return RemoteTimeout(message, backend=backend, cause=exc)
    if isinstance(exc, RateLimitError):
        return RateLimited(
            message, retry_after=_retry_after_from(exc), backend=backend, cause=exc
        )
    if isinstance(exc, (ServiceUnavailableError, APIConnectionError, InternalServerError)):
        return TransientFailure(message, backend=backend, cause=exc)
    if isinstance(exc, (AuthenticationError, BadRequestError, NotFoundError)):
        return PermanentFailure(message, backend=backend, cause=exc)

    status_code = getattr(exc, "status_code", None)
    if status_code == 429:
        return RateLimited(message, backend=backend, cause=exc)
    if isinstance(status_code, int) and (status_code >= 500 or status_code == 408):
        return TransientFailure(message, backend=backend, cause=exc)
    return PermanentFailure(message, backend=backend, cause=exc)


class RemoteReasoningClient:
    """Wrapper around LiteLLM with rate limiting, retry, circuit breaking and stats.

    Flow of ``invoke``:
    1. Check the backend's circuit breaker (open: fail fast, no network call)
    2. Acquire a rate limit slot, waiting no longer than the caller allows
    3. Make the request with a per-call timeout clipped to the deadline
    4. On a retryable failure, back off and go to 1 while the deadline allows
    5. Record statistics and emit a REMOTE_CALL_COMPLETE event

    Attributes:
        rate_limiter: Sliding-window limiter shared by all calls of this client.
        breakers: One circuit breaker per backend.
        retry_policy: Back-off and attempt cap.
        stats: Per-backend call statistics.
        event_bus: Optional bus for REMOTE_CALL_COMPLETE events.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        breakers: BreakerRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        stats: CallStatsCollector | None = None,
        event_bus: EventBus | None = None,
        config: Settings | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or settings
        self._clock = clock or time.monotonic
        self.rate_limiter = rate_limiter or RateLimiter(
            max_calls_per_minute=self.config.rate_limit_rpm,
            max_tokens_per_minute=self.config.rate_limit_tpm,
        )
        self.breakers = breakers or BreakerRegistry(
            failure_threshold=self.config.circuit_failure_threshold,
            cooldown_seconds=self.config.circuit_cooldown_seconds,
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.config.retry_max_attempts,
            base_delay_seconds=self.config.retry_base_delay_seconds,
            max_delay_seconds=self.config.retry_max_delay_seconds,
            jitter=self.config.retry_jitter,
        )
        self.stats = stats or CallStatsCollector()
        self.event_bus = event_bus

    async def invoke(
        self,
        request: ReasoningRequest,
        deadline: float | None = None,
        max_wait_seconds: float | None = None,
    ) -> ReasoningResponse:
        """Send a request, retrying transient failures until the deadline.

        Args:
            request: The request to send.
            deadline: Absolute monotonic time after which no attempt or
                back-off may run. Defaults to one request timeout per attempt.
            max_wait_seconds: How long one attempt may wait for the rate
                limiter (defaults to configuration, always clipped to the deadline).

        Returns:
            The parsed response.

        Raises:
            RemoteFailure: The typed failure of the last attempt.
        """
        if deadline is None:
            deadline = self._clock() + (
                self.config.remote_request_timeout_seconds * self.retry_policy.max_attempts
            )
        backend = request.backend
        breaker = self.breakers.get(backend)
        state = RetryState()
        started = self._clock()

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                failure = state.last_error or RemoteTimeout(
                    "Deadline passed before the call could be attempted", backend=backend
                )
                raise failure

            if not breaker.allow_request():
                self.stats.record_fast_failure(backend)
                logger.warning(
                    "remote_call_circuit_open",
                    backend=backend,
                    purpose=request.purpose,
                    caller_id=request.caller_id,
                )
                raise CircuitOpen(f"Circuit open for backend {backend}", backend=backend)

            try:
                completion = await self._attempt(request, deadline, max_wait_seconds)
            except RemoteFailure as failure:
                self._record_breaker_outcome(breaker, failure)
                if not self.retry_policy.schedule(state, failure, deadline - self._clock()):
                    logger.error(
                        "remote_call_failed",
                        backend=backend,
                        purpose=request.purpose,
                        caller_id=request.caller_id,
                        attempts=state.attempt,
                        error_type=failure.code,
                        error=failure.message,
                    )
                    raise
                logger.warning(
                    "remote_call_retry",
                    backend=backend,
                    purpose=request.purpose,
                    caller_id=request.caller_id,
                    attempt=state.attempt,
                    max_attempts=self.retry_policy.max_attempts,
                    error_type=failure.code,
                    retry_delay=round(state.next_delay, 3),
                )
                await self._async_sleep(state.next_delay)
                continue
            except asyncio.CancelledError:
                breaker.release_probe()
                raise

            breaker.record_success()
            attempts = state.attempt + 1
            latency_ms = int((self._clock() - started) * 1000)
            response = ReasoningResponse(
                content=completion.content,
                payload=extract_json_from_response(completion.content),
                metrics=ReasoningMetrics(
                    backend=backend,
                    input_tokens=completion.prompt_tokens,
                    output_tokens=completion.completion_tokens,
                    latency_ms=latency_ms,
                    attempts=attempts,
                ),
            )
            logger.info(
                "remote_call_complete",
                backend=backend,
                purpose=request.purpose,
                caller_id=request.caller_id,
                input_tokens=completion.prompt_tokens,
                output_tokens=completion.completion_tokens,
                latency_ms=latency_ms,
                attempt=attempts,
            )
            await self._emit_call_event(request, response)
            return response

    async def _attempt(
        self,
        request: ReasoningRequest,
        deadline: float,
        max_wait_seconds: float | None,
    ) -> RawCompletion:
        """One rate-limited network attempt, converted to the taxonomy."""
        backend = request.backend
        wait_allowance = (
            max_wait_seconds
            if max_wait_seconds is not None
            else self.config.rate_limit_max_wait_seconds
        )
        wait_allowance = min(wait_allowance, max(0.0, deadline - self._clock()))
        try:
            await self.rate_limiter.acquire(
                estimated_tokens=request.estimated_tokens(),
                max_wait_seconds=wait_allowance,
            )
        except RateLimited as exc:
            exc.backend = backend
            raise

        timeout = min(
            self.config.remote_request_timeout_seconds,
            deadline - self._clock(),
        )
        if timeout <= 0:
            raise RemoteTimeout("Deadline passed while waiting for rate limit", backend=backend)

        attempt_started = self._clock()
        try:
            completion = await asyncio.wait_for(self._make_request(request), timeout=timeout)
        except TimeoutError as exc:
            failure: RemoteFailure = RemoteTimeout(
                f"No reply within {timeout:.1f}s", backend=backend, cause=exc
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = classify_exception(exc, backend)
        else:
            latency_ms = int((self._clock() - attempt_started) * 1000)
            self.stats.record_call(
                backend,
                latency_ms=latency_ms,
                success=True,
                prompt_tokens=completion.prompt_tokens,
                completion_tokens=completion.completion_tokens,
            )
            await self.rate_limiter.record_usage(
                completion.prompt_tokens + completion.completion_tokens
                or request.estimated_tokens()
            )
            return completion

        latency_ms = int((self._clock() - attempt_started) * 1000)
        self.stats.record_call(
            backend, latency_ms=latency_ms, success=False, error=failure.code
        )
        raise failure

    @staticmethod
    def _record_breaker_outcome(breaker: CircuitBreaker, failure: RemoteFailure) -> None:
        # Only failures that say the backend is unhealthy move the breaker.
        if isinstance(failure, (TransientFailure, RemoteTimeout)):
            breaker.record_failure()
        else:
            breaker.release_probe()

    async def _make_request(self, request: ReasoningRequest) -> RawCompletion:
        """Make the actual LiteLLM request.

        Extracted so scripted clients and tests can replace the network layer.
        """
        response = await acompletion(
            model=request.backend,
            messages=request.to_messages(self.config.max_prompt_chars),
            temperature=request.temperature,
            max_tokens=request.max_tokens or self.config.remote_max_tokens,
            timeout=self.config.remote_request_timeout_seconds,
        )
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return RawCompletion(
            content=choice.message.content or "",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            finish_reason=choice.finish_reason or "unknown",
        )

    async def _emit_call_event(
        self,
        request: ReasoningRequest,
        response: ReasoningResponse,
    ) -> None:
        if self.event_bus is None or request.session_id is None:
            return
        await self.event_bus.publish(
            EscalationEvent(
                type=EventType.REMOTE_CALL_COMPLETE,
                session_id=request.session_id,
                data={
                    "caller_id": request.caller_id,
                    "backend": response.metrics.backend,
                    "purpose": request.purpose,
                    "input_tokens": response.metrics.input_tokens,
                    "output_tokens": response.metrics.output_tokens,
                    "latency_ms": response.metrics.latency_ms,
                    "attempts": response.metrics.attempts,
                },
            )
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Back-off sleep, extracted for easier testing/mocking."""
        await asyncio.sleep(seconds)

    def health_snapshot(self) -> dict[str, Any]:
        """Read-only view of call statistics, breakers and the rate limiter."""
        return {
            "backends": {
                name: stats.to_dict() for name, stats in self.stats.get_stats().items()
            },
            "circuit_breakers": self.breakers.snapshot(),
            "rate_limiter": self.rate_limiter.get_status(),
        }
