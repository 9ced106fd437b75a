"""Async event bus for conversation and tournament events.

This module provides an EventBus class that fans escalation events out to
subscribers (e.g. an HTTP client polling a session's history) and keeps a
bounded per-session history for replay.

The event bus is thread-safe and supports:
- Multiple subscribers per session
- Async event delivery via asyncio.Queue
- History replay for late subscribers
- Session close, which terminates current and later subscribers
- Pruning of closed streams once their retention period has passed
"""

import asyncio
import threading
import time
from collections import defaultdict
from collections.abc import Callable

import structlog

from events.types import EscalationEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for escalation events.

    Subscriptions are keyed by session id (conversation session id or
    tournament id). A new subscriber first receives the session's history,
    then live events.

    Thread Safety:
        The subscription registry and history are guarded by a
        threading.Lock; queue delivery happens outside the lock.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("sess_abc123def456")
        >>> await bus.publish(EscalationEvent(
        ...     type=EventType.TURN_APPENDED,
        ...     session_id="sess_abc123def456",
        ...     data={"index": 2, "role": "requester"},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("sess_abc123def456", queue)
    """

    # Maximum number of events to retain per session for replay.
    MAX_HISTORY_PER_SESSION = 2000

    def __init__(
        self,
        delivery_timeout_seconds: float = 5.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[EscalationEvent]]] = defaultdict(list)
        self._event_history: dict[str, list[EscalationEvent]] = defaultdict(list)
        # Closed stream id -> clock reading at close.
        self._closed_at: dict[str, float] = {}
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._delivery_timeout_seconds = delivery_timeout_seconds
        logger.info("event_bus_initialized")

    def subscribe(self, session_id: str) -> asyncio.Queue[EscalationEvent]:
        """Subscribe to events for a session.

        The returned queue is pre-filled with the session's history so a
        subscriber never misses events published before it connected. If
        the session's stream is already closed, the replay is followed by
        the SESSION_CLOSED sentinel and the queue is not registered.

        Args:
            session_id: The session to subscribe to

        Returns:
            An asyncio.Queue receiving EscalationEvent objects
        """
        queue: asyncio.Queue[EscalationEvent] = asyncio.Queue()

        with self._lock:
            closed = session_id in self._closed_at
            if not closed:
                self._subscribers[session_id].append(queue)
            subscriber_count = len(self._subscribers.get(session_id, []))
            replay = list(self._event_history.get(session_id, []))

        for event in replay:
            queue.put_nowait(event)
        if closed:
            queue.put_nowait(self._closed_sentinel(session_id))

        logger.info(
            "subscriber_added",
            session_id=session_id,
            subscriber_count=subscriber_count,
            replayed_events=len(replay),
            closed=closed,
        )
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[EscalationEvent]) -> None:
        """Remove a subscriber queue; unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(session_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", session_id=session_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[session_id]
            remaining = len(queues)

        logger.info("subscriber_removed", session_id=session_id, subscriber_count=remaining)

    async def publish(self, event: EscalationEvent) -> None:
        """Record an event in history and deliver it to all subscribers.

        Delivery to a stalled subscriber gives up after the delivery timeout;
        publishing never raises into the caller.

        Args:
            event: The EscalationEvent to publish
        """
        with self._lock:
            if event.type != EventType.SESSION_CLOSED:
                history = self._event_history[event.session_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_SESSION:
                    del history[: len(history) - self.MAX_HISTORY_PER_SESSION]
            subscribers = list(self._subscribers.get(event.session_id, []))

        for queue in subscribers:
            try:
                await asyncio.wait_for(
                    queue.put(event), timeout=self._delivery_timeout_seconds
                )
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    session_id=event.session_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            session_id=event.session_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            hypothesis_id=event.hypothesis_id,
        )

    def get_event_history(self, session_id: str) -> list[EscalationEvent]:
        """Return all stored events for a session in chronological order."""
        with self._lock:
            return list(self._event_history.get(session_id, []))

    async def close_session(self, session_id: str) -> None:
        """Signal every subscriber of a session with a SESSION_CLOSED sentinel.

        History is kept so a finished session can still be inspected, and
        later subscribers get the replay followed by the sentinel. Use
        ``clear_event_history`` or ``prune_closed_streams`` to free it.
        """
        with self._lock:
            queues = self._subscribers.pop(session_id, [])
            self._closed_at.setdefault(session_id, self._clock())

        for queue in queues:
            await queue.put(self._closed_sentinel(session_id))

        if queues:
            logger.info(
                "session_stream_closed",
                session_id=session_id,
                subscribers_removed=len(queues),
            )

    @staticmethod
    def _closed_sentinel(session_id: str) -> EscalationEvent:
        return EscalationEvent(
            type=EventType.SESSION_CLOSED,
            session_id=session_id,
            data={"reason": "session_closed"},
        )

    def is_closed(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._closed_at

    def get_subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def clear_event_history(self, session_id: str) -> None:
        """Drop the stored history of a session and forget that it was closed."""
        with self._lock:
            self._event_history.pop(session_id, None)
            self._closed_at.pop(session_id, None)

    def prune_closed_streams(
        self, retention_seconds: float, now: float | None = None
    ) -> list[str]:
        """Drop the history of streams closed more than ``retention_seconds`` ago.

        Returns:
            The pruned session ids.
        """
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                session_id
                for session_id, closed_at in self._closed_at.items()
                if now - closed_at > retention_seconds
            ]
            for session_id in expired:
                self._event_history.pop(session_id, None)
                del self._closed_at[session_id]

        if expired:
            logger.info("closed_streams_pruned", count=len(expired))
        return expired
