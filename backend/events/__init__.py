"""Event system for conversation and tournament observability.

Key Components:
    - EventType: Enum of all event types in the system
    - EscalationEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation with per-session history

Usage:
    >>> from events import EventBus, EscalationEvent, EventType
    >>> bus = EventBus()
    >>> queue = bus.subscribe("sess_abc123def456")
    >>> await bus.publish(EscalationEvent(
    ...     type=EventType.SESSION_STARTED,
    ...     session_id="sess_abc123def456",
    ...     data={"analysis_type": "execution_trace"},
    ... ))
"""

from events.bus import EventBus
from events.types import EscalationEvent, EventType

__all__ = [
    "EventType",
    "EscalationEvent",
    "EventBus",
]
