"""In-memory session table with per-session mutual exclusion and TTL eviction.

The store is an explicit instance created at application startup and
drained at shutdown; nothing here is a module-level singleton.

Locking:
    - ``_table_lock`` guards the id -> entry mapping. It is held only for
      dictionary operations, never across a caller's ``fn`` or a remote call.
    - Each entry has its own ``asyncio.Lock``; ``with_session`` holds it for
      the duration of ``fn`` so at most one operation runs per session.

Usage:
    >>> store = ConversationStore(ttl_seconds=1800)
    >>> session_id = await store.create(session)
    >>> turns = await store.with_session(session_id, lambda s: do_turn(s))
    >>> await store.evict_expired()
"""

import asyncio
import time
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import structlog

from conversation.models import Session
from errors import SessionNotFound
from events.bus import EventBus
from events.types import EscalationEvent, EventType
from models.schemas import SessionState

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class _Entry:
    session: Session
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ConversationStore:
    """Keyed table of live sessions.

    Attributes:
        ttl_seconds: Idle time after which a session is evicted.
        event_bus: Optional bus receiving SESSION_EXPIRED events. An evicted
            session's event history is dropped from it.
        history_retention_seconds: How long the sweep loop keeps the
            history of closed streams (finalized sessions, finished
            tournaments) on the bus. None keeps it until eviction.
    """

    def __init__(
        self,
        ttl_seconds: float = 1800.0,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] | None = None,
        history_retention_seconds: float | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.history_retention_seconds = history_retention_seconds
        self.event_bus = event_bus
        self._clock = clock or time.time
        self._entries: dict[str, _Entry] = {}
        self._table_lock = asyncio.Lock()
        self._sweep_task: asyncio.Task[None] | None = None
        logger.info("conversation_store_initialized", ttl_seconds=ttl_seconds)

    @staticmethod
    def generate_session_id() -> str:
        """Return a new session id in the format ``sess_{12 hex chars}``."""
        return f"sess_{uuid.uuid4().hex[:12]}"

    async def create(self, session: Session) -> str:
        """Register a new session and return its id.

        Raises:
            ValueError: If the id is already registered.
        """
        async with self._table_lock:
            if session.id in self._entries:
                raise ValueError(f"Session id already registered: {session.id}")
            session.last_activity_at = self._clock()
            self._entries[session.id] = _Entry(session=session)
            total = len(self._entries)
        logger.info("session_registered", session_id=session.id, session_count=total)
        return session.id

    async def with_session(
        self,
        session_id: str,
        fn: Callable[[Session], Awaitable[T]],
    ) -> T:
        """Run ``fn`` with exclusive access to a session.

        The per-session lock is released on every exit path, including
        exceptions and cancellation. A session evicted while the caller was
        waiting for its lock is reported as not found, never recreated.

        Raises:
            SessionNotFound: If the id is unknown or was evicted.
        """
        async with self._table_lock:
            entry = self._entries.get(session_id)
        if entry is None:
            raise SessionNotFound(session_id)

        async with entry.lock:
            if self._entries.get(session_id) is not entry:
                raise SessionNotFound(session_id)
            entry.session.last_activity_at = self._clock()
            try:
                return await fn(entry.session)
            finally:
                entry.session.last_activity_at = self._clock()

    def peek(self, session_id: str) -> Session | None:
        """Lock-free read access for status snapshots; never mutate the result."""
        entry = self._entries.get(session_id)
        return entry.session if entry is not None else None

    async def evict_expired(self, now: float | None = None) -> list[str]:
        """Evict sessions idle for longer than the TTL.

        Sessions with an operation in flight (their lock is held) are
        skipped. Evicted sessions move to EXPIRED, their slot is freed and
        their event history is dropped after the final events are published.

        Returns:
            The evicted session ids.
        """
        now = self._clock() if now is None else now
        evicted: list[Session] = []

        async with self._table_lock:
            for session_id, entry in list(self._entries.items()):
                if entry.lock.locked():
                    continue
                if now - entry.session.last_activity_at <= self.ttl_seconds:
                    continue
                del self._entries[session_id]
                if entry.session.state != SessionState.EXPIRED:
                    entry.session.transition(SessionState.EXPIRED)
                evicted.append(entry.session)

        for session in evicted:
            logger.info(
                "session_evicted",
                session_id=session.id,
                idle_seconds=round(now - session.last_activity_at, 1),
            )
            if self.event_bus is not None:
                await self.event_bus.publish(
                    EscalationEvent(
                        type=EventType.SESSION_EXPIRED,
                        session_id=session.id,
                        data={"turns": len(session.turns)},
                    )
                )
                await self.event_bus.close_session(session.id)
                self.event_bus.clear_event_history(session.id)

        return [session.id for session in evicted]

    def count_by_state(self) -> dict[str, int]:
        """Session counts keyed by state value, plus ``total``."""
        counts = Counter(entry.session.state.value for entry in list(self._entries.values()))
        result = {state.value: counts.get(state.value, 0) for state in SessionState}
        result["total"] = sum(counts.values())
        return result

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def start_sweep_loop(self, interval_seconds: float = 300.0) -> asyncio.Task[None]:
        """Start a background task that evicts expired sessions periodically.

        Each pass also prunes closed event streams past the history retention.

        The task runs until cancelled (see ``drain``).
        """

        async def _loop() -> None:
            logger.info("session_sweep_loop_started", interval_seconds=interval_seconds)
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await self.evict_expired()
                    if self.event_bus is not None and self.history_retention_seconds is not None:
                        self.event_bus.prune_closed_streams(self.history_retention_seconds)
                except asyncio.CancelledError:
                    logger.info("session_sweep_loop_stopped")
                    raise
                except Exception as e:
                    logger.error("session_sweep_loop_error", error=str(e))

        self._sweep_task = asyncio.create_task(_loop(), name="session_sweep")
        return self._sweep_task

    async def drain(self, timeout_seconds: float = 10.0) -> None:
        """Stop the sweep loop, wait for in-flight operations and clear the table.

        Operations still running after ``timeout_seconds`` are abandoned
        with a warning.
        """
        task, self._sweep_task = self._sweep_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        async with self._table_lock:
            entries = list(self._entries.items())

        logger.info("conversation_store_draining", session_count=len(entries))
        for session_id, entry in entries:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=timeout_seconds)
            except TimeoutError:
                logger.warning("session_drain_timeout", session_id=session_id)
                continue
            entry.lock.release()
            if self.event_bus is not None:
                await self.event_bus.close_session(session_id)

        async with self._table_lock:
            self._entries.clear()
        logger.info("conversation_store_drained")
