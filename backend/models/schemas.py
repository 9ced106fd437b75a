"""Pydantic schemas for the escalation service's requests and results.

This module defines the typed, validated input the core consumes and the
payloads it produces. All models use Pydantic v2. Semantic checks that have
their own error type (budgets, tournament settings) are left to the core so
they surface as ``InvalidBudget`` / ``InvalidInput`` rather than schema errors.
"""

import time
from enum import StrEnum
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field


class AnalysisType(StrEnum):
    """Kinds of escalated analysis; fixed for a session's lifetime."""

    EXECUTION_TRACE = "execution_trace"
    CROSS_SYSTEM = "cross_system"
    PERFORMANCE = "performance"
    HYPOTHESIS_TEST = "hypothesis_test"


class SummaryFormat(StrEnum):
    """Shape of the closing summary of a conversation."""

    DETAILED = "detailed"
    CONCISE = "concise"
    ACTIONABLE = "actionable"


class SessionState(StrEnum):
    """Conversation lifecycle state."""

    CREATED = "created"
    ACTIVE = "active"
    AWAITING_REMOTE = "awaiting_remote"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


class CodeScope(BaseModel):
    """Where in the codebase the problem lives."""

    files: list[str] = Field(default_factory=list, examples=[["src/orders/service.py"]])
    entry_points: list[str] = Field(
        default_factory=list,
        description="Functions or handlers where execution starts",
        examples=[["OrderService.place_order"]],
    )
    service_names: list[str] = Field(default_factory=list, examples=[["orders", "billing"]])


class AnalysisContext(BaseModel):
    """What the requesting agent already knows about the problem."""

    question: str = Field(
        default="",
        max_length=10000,
        description="The question the requesting agent could not answer",
    )
    attempted_approaches: list[str] = Field(default_factory=list)
    partial_findings: list[dict[str, Any]] = Field(default_factory=list)
    stuck_points: list[str] = Field(default_factory=list)
    stuck_description: str | None = Field(default=None, max_length=10000)
    code_scope: CodeScope = Field(default_factory=CodeScope)


class BudgetRequest(BaseModel):
    """Requested conversation budget; omitted fields use configured defaults."""

    seconds: float | None = Field(default=None, description="Wall-clock allowance")
    turns: int | None = Field(default=None, description="Follow-up turn allowance")


class StartConversationRequest(BaseModel):
    """Request body for opening an escalation conversation."""

    analysis_type: AnalysisType = Field(examples=["execution_trace"])
    context: AnalysisContext = Field(default_factory=AnalysisContext)
    budget: BudgetRequest | None = None


class ContinueConversationRequest(BaseModel):
    """Request body for one follow-up turn."""

    message: str = Field(
        min_length=1,
        max_length=20000,
        examples=["The worker logs show the retry fired twice. Why?"],
    )
    include_code_snippets: bool = Field(
        default=False,
        description="Ask the analyzer to quote relevant code",
    )


class FinalizeConversationRequest(BaseModel):
    """Request body for closing a conversation."""

    summary_format: SummaryFormat = SummaryFormat.DETAILED


class HypothesisInput(BaseModel):
    """One candidate explanation submitted to a tournament."""

    id: str | None = Field(default=None, max_length=100)
    description: str = Field(min_length=1, max_length=5000)
    supporting_evidence: dict[str, str] = Field(default_factory=dict)


class TournamentRequest(BaseModel):
    """Request body for a hypothesis tournament.

    With no hypotheses, candidates are generated from the issue and evidence.
    Unset tuning fields fall back to configuration.
    """

    issue: str = Field(min_length=1, max_length=20000)
    analysis_type: AnalysisType = AnalysisType.HYPOTHESIS_TEST
    hypotheses: list[HypothesisInput] = Field(default_factory=list)
    shared_evidence: dict[str, Any] = Field(default_factory=dict)
    max_hypotheses: int | None = None
    max_rounds: int | None = None
    parallelism: int | None = None
    eliminations_per_round: int | None = None
    elimination_fraction: float | None = None
    round_timeout_seconds: float | None = None
    budget_seconds: float | None = None
    max_remote_calls: int | None = None


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


class BudgetView(BaseModel):
    seconds_remaining: float
    turns_remaining: int


class TurnView(BaseModel):
    index: int
    role: str
    payload: dict[str, Any]
    timestamp: float


class TurnResponse(BaseModel):
    """Analyzer reply to one turn."""

    session_id: str
    turn_index: int = Field(description="Index of the analyzer turn")
    response: str
    new_findings: list[dict[str, Any]] = Field(default_factory=list)
    questions: list[str] = Field(default_factory=list)
    confidence: float = 0.0
    ready_to_finalize: bool = False
    state: SessionState
    budget_remaining: BudgetView


class ErrorDetail(BaseModel):
    """A typed failure returned instead of raising across the service boundary."""

    code: str = Field(examples=["budget_exhausted"])
    message: str
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class StartConversationResponse(BaseModel):
    session_id: str
    analysis_type: AnalysisType
    state: SessionState
    opening: TurnResponse | None = None
    opening_error: ErrorDetail | None = Field(
        default=None,
        description="Retryable failure of the opening exchange; continue the session to retry",
    )
    budget_remaining: BudgetView


class ConversationSummaryResponse(BaseModel):
    session_id: str
    summary_format: SummaryFormat
    summary: str
    root_causes: list[str] = Field(default_factory=list)
    key_findings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    confidence: float = 0.0
    turns_taken: int
    findings: dict[str, Any] = Field(default_factory=dict)


class ConversationStatusResponse(BaseModel):
    session_id: str
    analysis_type: AnalysisType
    state: SessionState
    turns_taken: int
    budget_remaining: BudgetView
    findings_count: int
    confidence: float
    created_at: float
    last_activity_at: float


class HypothesisView(BaseModel):
    id: str
    description: str
    score: float | None
    status: str
    rationale: str = ""
    notes: list[str] = Field(default_factory=list)
    rounds_survived: int = 0


class EliminationView(BaseModel):
    hypothesis_id: str
    round: int
    reason: str
    score: float | None


class TournamentResponse(BaseModel):
    tournament_id: str
    winner: HypothesisView | None
    ranking: list[HypothesisView]
    eliminated: list[EliminationView]
    rounds_completed: int
    stop_reason: Literal["converged", "max_rounds", "budget_exhausted"]
    budget_limited: bool
    remote_calls_used: int
    elapsed_seconds: float


class HealthResponse(BaseModel):
    """Aggregate health of the reasoning backends and session table."""

    status: Literal["healthy", "degraded"]
    timestamp: float = Field(default_factory=time.time)
    version: str = "0.1.0"
    sessions: dict[str, int] = Field(default_factory=dict)
    backends: dict[str, dict[str, Any]] = Field(default_factory=dict)
    circuit_breakers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    rate_limiter: dict[str, int] = Field(default_factory=dict)


DataT = TypeVar("DataT")


class OperationResult(BaseModel, Generic[DataT]):
    """Either a success payload or a typed error, never both."""

    ok: bool
    data: DataT | None = None
    error: ErrorDetail | None = None

    @classmethod
    def success(cls, data: DataT) -> "OperationResult[DataT]":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: ErrorDetail) -> "OperationResult[DataT]":
        return cls(ok=False, error=error)
