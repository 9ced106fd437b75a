"""Per-backend circuit breaker: CLOSED -> OPEN -> HALF_OPEN -> CLOSED.

Each logical backend (remote model) gets its own breaker. A run of
consecutive failures opens it; while open, calls are rejected without a
network attempt. Once the cooldown has elapsed a single probe call is let
through: success closes the breaker, failure reopens it and restarts the
cooldown.
"""

import threading
import time
from collections.abc import Callable
from enum import StrEnum

import structlog

logger = structlog.get_logger(__name__)


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure guard for one logical backend.

    Attributes:
        backend: Backend (model) name the breaker guards.
        failure_threshold: Consecutive failures that open the breaker.
        cooldown_seconds: Time an open breaker waits before allowing a probe.
    """

    def __init__(
        self,
        backend: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.backend = backend
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock or time.monotonic

        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._lock = threading.Lock()

    def allow_request(self) -> bool:
        """Decide whether a call may go to the network right now.

        In HALF_OPEN exactly one caller gets ``True`` until that probe
        reports back through ``record_success``, ``record_failure`` or
        ``release_probe``.
        """
        with self._lock:
            self._maybe_transition_to_half_open()
            if self._state == BreakerState.CLOSED:
                return True
            if self._state == BreakerState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                logger.info("circuit_breaker_probe_allowed", backend=self.backend)
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state != BreakerState.CLOSED:
                logger.info("circuit_breaker_closed", backend=self.backend)
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._probe_in_flight = False

    def record_failure(self) -> None:
        """Count a failure; open (or reopen) the breaker when warranted."""
        with self._lock:
            self._consecutive_failures += 1
            if self._state == BreakerState.HALF_OPEN:
                self._open()
                logger.warning("circuit_breaker_probe_failed", backend=self.backend)
            elif (
                self._state == BreakerState.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            ):
                self._open()
                logger.warning(
                    "circuit_breaker_opened",
                    backend=self.backend,
                    consecutive_failures=self._consecutive_failures,
                )

    def release_probe(self) -> None:
        """Free the half-open probe slot without judging the backend.

        Used when the probe ended in an outcome that says nothing about the
        backend's health (rate limiter rejection, bad request, cancellation).
        """
        with self._lock:
            self._probe_in_flight = False

    def get_state(self) -> BreakerState:
        with self._lock:
            self._maybe_transition_to_half_open()
            return self._state

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            self._maybe_transition_to_half_open()
            return {
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "probe_in_flight": self._probe_in_flight,
            }

    def _open(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False

    def _maybe_transition_to_half_open(self) -> None:
        # Caller holds self._lock.
        if self._state != BreakerState.OPEN:
            return
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            self._state = BreakerState.HALF_OPEN
            self._probe_in_flight = False
            logger.info("circuit_breaker_half_open", backend=self.backend)


class BreakerRegistry:
    """Lazily creates one CircuitBreaker per backend name."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, backend: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(backend)
            if breaker is None:
                breaker = CircuitBreaker(
                    backend,
                    failure_threshold=self.failure_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self._clock,
                )
                self._breakers[backend] = breaker
            return breaker

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.backend: breaker.snapshot() for breaker in breakers}
