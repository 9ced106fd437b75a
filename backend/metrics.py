"""In-memory call statistics for remote reasoning backends.

This module provides the CallStatsCollector class that accumulates call
counts, failures and latency per logical backend. The statistics are
observation-only: health reporting reads them, nothing gates on them.

Usage:
    >>> from metrics import CallStatsCollector
    >>> collector = CallStatsCollector()
    >>> collector.record_call("gemini/gemini-2.5-pro", latency_ms=820, success=True)
    >>> collector.get_stats()["gemini/gemini-2.5-pro"].average_latency_ms
    820.0
"""

import threading
import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class BackendCallStats:
    """Accumulated statistics for one logical backend.

    Attributes:
        calls: Remote call attempts that reached the network layer.
        failures: Attempts that ended in an error.
        fast_failures: Calls rejected by the circuit breaker without a network call.
        total_latency_ms: Sum of attempt latencies.
        prompt_tokens: Total input tokens reported by the provider.
        completion_tokens: Total output tokens reported by the provider.
        last_error: Type name of the most recent failure.
        last_call_at: Unix timestamp of the most recent attempt.
    """

    calls: int = 0
    failures: int = 0
    fast_failures: int = 0
    total_latency_ms: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    last_error: str | None = None
    last_call_at: float | None = None

    @property
    def average_latency_ms(self) -> float:
        """Mean latency over all attempts, 0.0 before the first one."""
        if self.calls == 0:
            return 0.0
        return self.total_latency_ms / self.calls

    def to_dict(self) -> dict[str, object]:
        return {
            "calls": self.calls,
            "failures": self.failures,
            "fast_failures": self.fast_failures,
            "average_latency_ms": round(self.average_latency_ms, 1),
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "last_error": self.last_error,
            "last_call_at": self.last_call_at,
        }


class CallStatsCollector:
    """Thread-safe collector of per-backend call statistics.

    Attributes:
        _backends: Mapping from backend name to its statistics.
    """

    def __init__(self) -> None:
        self._backends: dict[str, BackendCallStats] = {}
        self._lock = threading.Lock()
        self._started_at = time.time()
        logger.info("call_stats_collector_initialized")

    def _entry(self, backend: str) -> BackendCallStats:
        stats = self._backends.get(backend)
        if stats is None:
            stats = self._backends[backend] = BackendCallStats()
        return stats

    def record_call(
        self,
        backend: str,
        latency_ms: int,
        success: bool,
        error: str | None = None,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
    ) -> None:
        """Record one remote call attempt.

        Args:
            backend: Logical backend the attempt was addressed to.
            latency_ms: Wall time of the attempt.
            success: Whether the attempt returned a response.
            error: Error type name for failed attempts.
            prompt_tokens: Input tokens reported for successful attempts.
            completion_tokens: Output tokens reported for successful attempts.
        """
        with self._lock:
            stats = self._entry(backend)
            stats.calls += 1
            stats.total_latency_ms += max(0, latency_ms)
            stats.last_call_at = time.time()
            stats.prompt_tokens += prompt_tokens
            stats.completion_tokens += completion_tokens
            if not success:
                stats.failures += 1
                stats.last_error = error

        logger.debug(
            "call_stats_recorded",
            backend=backend,
            latency_ms=latency_ms,
            success=success,
        )

    def record_fast_failure(self, backend: str) -> None:
        """Record a call rejected by an open circuit breaker."""
        with self._lock:
            self._entry(backend).fast_failures += 1

    def get_stats(self) -> dict[str, BackendCallStats]:
        """Return a snapshot copy of the statistics for every backend."""
        with self._lock:
            return {
                name: BackendCallStats(**vars(stats))
                for name, stats in self._backends.items()
            }

    def uptime_seconds(self) -> float:
        return time.time() - self._started_at
