"""Domain model of an escalation conversation.

A ``Session`` is owned by the ``ConversationStore``; it is only mutated by
code running inside ``ConversationStore.with_session`` for its id.
"""

import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from models.schemas import AnalysisType, SessionState, SummaryFormat
from reasoning.prompts import AnalysisProfile


class TurnRole(StrEnum):
    REQUESTER = "requester"
    ANALYZER = "analyzer"


# Allowed lifecycle moves. EXPIRED is reachable from every live state
# because eviction can hit any idle session.
_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CREATED: frozenset(
        {SessionState.ACTIVE, SessionState.FAILED, SessionState.EXPIRED}
    ),
    SessionState.ACTIVE: frozenset(
        {
            SessionState.AWAITING_REMOTE,
            SessionState.FINALIZING,
            SessionState.FAILED,
            SessionState.EXPIRED,
        }
    ),
    SessionState.AWAITING_REMOTE: frozenset(
        {SessionState.ACTIVE, SessionState.FAILED}
    ),
    SessionState.FINALIZING: frozenset(
        {SessionState.COMPLETED, SessionState.FAILED, SessionState.EXPIRED}
    ),
    SessionState.COMPLETED: frozenset({SessionState.EXPIRED}),
    SessionState.FAILED: frozenset({SessionState.EXPIRED}),
    SessionState.EXPIRED: frozenset(),
}


class InvalidTransition(RuntimeError):
    """A lifecycle move not allowed by the state machine (a programming error)."""


@dataclass(frozen=True)
class Turn:
    """One immutable entry of a session transcript.

    Attributes:
        index: 0-based position; gapless and strictly increasing.
        role: Who produced the turn.
        payload: Structured content (read-only view).
        timestamp: Unix time the turn was appended.
    """

    index: int
    role: TurnRole
    payload: Mapping[str, Any]
    timestamp: float

    def as_message(self) -> dict[str, str]:
        """Render the turn as a chat message for the remote transcript."""
        role = "user" if self.role == TurnRole.REQUESTER else "assistant"
        content = self.payload.get("message") or self.payload.get("response") or ""
        if not isinstance(content, str):
            content = str(content)
        return {"role": role, "content": content}


@dataclass
class SessionBudget:
    """Depleting allowance of wall time and follow-up turns."""

    seconds_remaining: float
    turns_remaining: int

    @property
    def exhausted(self) -> bool:
        return self.seconds_remaining <= 0 or self.turns_remaining <= 0

    def charge(self, seconds: float, turns: int = 0) -> None:
        """Consume budget; values never go below zero or increase."""
        self.seconds_remaining = max(0.0, self.seconds_remaining - max(0.0, seconds))
        self.turns_remaining = max(0, self.turns_remaining - max(0, turns))

    def copy(self) -> "SessionBudget":
        return replace(self)


@dataclass
class Session:
    """One stateful multi-turn investigation.

    Attributes:
        id: Opaque session id (``sess_<12 hex>``).
        analysis_type: Immutable analysis type.
        profile: Backend and prompts resolved at creation.
        context: Initial analysis context from the requester.
        budget: Remaining time and turn allowance.
        state: Lifecycle state.
        turns: Append-only transcript.
        findings: Finding id -> payload, merged on every analyzer turn.
        confidence: Last confidence reported by the analyzer.
        pending_questions: Questions from the last analyzer turn.
        summary: Stored closing summary once COMPLETED.
        failure_reason: Why the session FAILED, if it did.
        created_at: Unix creation time.
        last_activity_at: Unix time of the last operation; drives TTL eviction.
    """

    id: str
    analysis_type: AnalysisType
    profile: AnalysisProfile
    context: dict[str, Any]
    budget: SessionBudget
    state: SessionState = SessionState.CREATED
    turns: list[Turn] = field(default_factory=list)
    findings: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    pending_questions: list[str] = field(default_factory=list)
    summary: "ConversationSummary | None" = None
    failure_reason: str | None = None
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.id}: {self.state} -> {new_state}")
        self.state = new_state

    def fail(self, reason: str) -> None:
        self.transition(SessionState.FAILED)
        self.failure_reason = reason

    def append_turn(self, role: TurnRole, payload: dict[str, Any]) -> Turn:
        """Append the next turn; indices stay gapless."""
        turn = Turn(
            index=len(self.turns),
            role=role,
            payload=MappingProxyType(dict(payload)),
            timestamp=time.time(),
        )
        self.turns.append(turn)
        return turn

    def merge_findings(self, analyzer_index: int, new_findings: list[Any]) -> list[dict[str, Any]]:
        """Merge analyzer findings by id and return them normalized.

        Findings without an id get ``t<turn>_<n>``; a finding reusing an id
        refines the stored one (shallow merge).
        """
        merged: list[dict[str, Any]] = []
        for position, raw in enumerate(new_findings):
            finding = dict(raw) if isinstance(raw, dict) else {"description": str(raw)}
            finding_id = str(finding.get("id") or f"t{analyzer_index}_{position}")
            finding["id"] = finding_id
            previous = self.findings.get(finding_id)
            if isinstance(previous, dict):
                finding = {**previous, **finding}
            self.findings[finding_id] = finding
            merged.append(finding)
        return merged

    def transcript_messages(self) -> list[dict[str, str]]:
        return [turn.as_message() for turn in self.turns]


@dataclass
class TurnResult:
    """Outcome of a successful exchange."""

    session_id: str
    turn_index: int
    response: str
    new_findings: list[dict[str, Any]]
    questions: list[str]
    confidence: float
    ready_to_finalize: bool
    state: SessionState
    budget_remaining: SessionBudget


@dataclass(frozen=True)
class ConversationSummary:
    """Closing summary; stored once and returned unchanged afterwards."""

    session_id: str
    summary_format: SummaryFormat
    summary: str
    root_causes: tuple[str, ...]
    key_findings: tuple[str, ...]
    recommendations: tuple[str, ...]
    confidence: float
    turns_taken: int
    findings: Mapping[str, Any]


@dataclass(frozen=True)
class ConversationStatus:
    """Read-only snapshot of a session."""

    session_id: str
    analysis_type: AnalysisType
    state: SessionState
    turns_taken: int
    budget_remaining: SessionBudget
    findings_count: int
    confidence: float
    created_at: float
    last_activity_at: float


@dataclass
class StartResult:
    """Outcome of ``ConversationManager.start``.

    ``opening`` is None when the opening exchange hit a retryable failure;
    the session then stays ACTIVE with only the requester's opening turn and
    ``opening_error`` holds the failure.
    """

    session_id: str
    state: SessionState
    opening: TurnResult | None
    opening_error: Exception | None
    budget_remaining: SessionBudget
