"""Event type definitions for the escalation event stream.

Every conversation and tournament state change produces an event. Events are
observation-only: publishing never influences the outcome of a turn or round.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types emitted by the escalation backend.

    Events are categorized by:
    - Conversation lifecycle: start, turns, finalization and failure
    - Tournament lifecycle: rounds, lane scores, eliminations and outcome
    - Observability: individual remote calls
    """

    # Conversation lifecycle
    SESSION_STARTED = "session_started"
    TURN_APPENDED = "turn_appended"
    TURN_FAILED = "turn_failed"
    SESSION_FINALIZED = "session_finalized"
    SESSION_FAILED = "session_failed"
    SESSION_EXPIRED = "session_expired"
    SESSION_CLOSED = "session_closed"

    # Tournament lifecycle
    TOURNAMENT_STARTED = "tournament_started"
    HYPOTHESES_GENERATED = "hypotheses_generated"
    ROUND_STARTED = "round_started"
    LANE_SCORED = "lane_scored"
    LANE_CANCELLED = "lane_cancelled"
    HYPOTHESIS_ELIMINATED = "hypothesis_eliminated"
    TOURNAMENT_COMPLETE = "tournament_complete"

    # Observability
    REMOTE_CALL_COMPLETE = "remote_call_complete"


class EscalationEvent(BaseModel):
    """An event emitted by a conversation or tournament.

    Attributes:
        type: The category of event.
        timestamp: Unix timestamp when the event occurred.
        session_id: Conversation session id or tournament id the event belongs to.
        hypothesis_id: Hypothesis the event concerns, for lane events.
        data: Event-specific payload.

    Payload schemas by event type:

    TURN_APPENDED:
        - index: int - Turn index
        - role: str - "requester" or "analyzer"

    TURN_FAILED:
        - error: str - Error code
        - retryable: bool - Whether the caller may retry

    LANE_SCORED:
        - round: int - Round number
        - score: float - Score in [0, 1], or -1.0 for a lane error

    HYPOTHESIS_ELIMINATED:
        - round: int - Round in which the hypothesis was eliminated
        - reason: str - Why it was eliminated

    TOURNAMENT_COMPLETE:
        - winner: str | None - Winning hypothesis id
        - stop_reason: str - converged, max_rounds or budget_exhausted
        - budget_limited: bool - Whether the winner is provisional
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    session_id: str
    hypothesis_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "turn_appended",
                    "timestamp": 1699876543.123,
                    "session_id": "sess_abc123def456",
                    "hypothesis_id": None,
                    "data": {"index": 3, "role": "analyzer"},
                }
            ]
        }
    }
