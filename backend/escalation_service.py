"""Service boundary of the escalation backend.

``EscalationService`` is the produced interface: every operation takes a
typed request and returns an ``OperationResult`` carrying either a success
payload or an ``ErrorDetail``. No exception crosses this boundary; the HTTP
layer only maps results to status codes.

Usage:
    >>> service = EscalationService(manager, scheduler, event_bus)
    >>> result = await service.start_conversation(StartConversationRequest(
    ...     analysis_type="execution_trace",
    ...     context=AnalysisContext(question="Why is the order charged twice?"),
    ... ))
    >>> if result.ok:
    ...     session_id = result.data.session_id
"""

import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from config import Settings, settings
from conversation.manager import ConversationManager
from conversation.models import (
    ConversationStatus,
    ConversationSummary,
    SessionBudget,
    TurnResult,
)
from errors import EscalationError
from events.bus import EventBus
from events.types import EscalationEvent
from models.schemas import (
    BudgetView,
    ContinueConversationRequest,
    ConversationStatusResponse,
    ConversationSummaryResponse,
    EliminationView,
    ErrorDetail,
    FinalizeConversationRequest,
    HealthResponse,
    HypothesisView,
    OperationResult,
    StartConversationRequest,
    StartConversationResponse,
    TournamentRequest,
    TournamentResponse,
    TurnResponse,
)
from reasoning.circuit_breaker import BreakerState
from tournament.models import Hypothesis, TournamentConfig, TournamentOutcome
from tournament.scheduler import TournamentScheduler

logger = structlog.get_logger()

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Conversions
# -----------------------------------------------------------------------------


def error_detail(exc: BaseException) -> ErrorDetail:
    """Describe an exception as a typed error payload."""
    if isinstance(exc, EscalationError):
        return ErrorDetail(
            code=exc.code,
            message=exc.message,
            retryable=exc.retryable,
            details=exc.details(),
        )
    return ErrorDetail(code="internal_error", message=f"{type(exc).__name__}: {exc}")


def _budget_view(budget: SessionBudget) -> BudgetView:
    return BudgetView(
        seconds_remaining=round(budget.seconds_remaining, 3),
        turns_remaining=budget.turns_remaining,
    )


def _turn_response(result: TurnResult) -> TurnResponse:
    return TurnResponse(
        session_id=result.session_id,
        turn_index=result.turn_index,
        response=result.response,
        new_findings=result.new_findings,
        questions=result.questions,
        confidence=result.confidence,
        ready_to_finalize=result.ready_to_finalize,
        state=result.state,
        budget_remaining=_budget_view(result.budget_remaining),
    )


def _summary_response(summary: ConversationSummary) -> ConversationSummaryResponse:
    return ConversationSummaryResponse(
        session_id=summary.session_id,
        summary_format=summary.summary_format,
        summary=summary.summary,
        root_causes=list(summary.root_causes),
        key_findings=list(summary.key_findings),
        recommendations=list(summary.recommendations),
        confidence=summary.confidence,
        turns_taken=summary.turns_taken,
        findings=dict(summary.findings),
    )


def _status_response(snapshot: ConversationStatus) -> ConversationStatusResponse:
    return ConversationStatusResponse(
        session_id=snapshot.session_id,
        analysis_type=snapshot.analysis_type,
        state=snapshot.state,
        turns_taken=snapshot.turns_taken,
        budget_remaining=_budget_view(snapshot.budget_remaining),
        findings_count=snapshot.findings_count,
        confidence=snapshot.confidence,
        created_at=snapshot.created_at,
        last_activity_at=snapshot.last_activity_at,
    )


def _hypothesis_view(hypothesis: Hypothesis) -> HypothesisView:
    return HypothesisView(
        id=hypothesis.id,
        description=hypothesis.description,
        score=hypothesis.score,
        status=hypothesis.status.value,
        rationale=hypothesis.rationale,
        notes=list(hypothesis.notes),
        rounds_survived=hypothesis.rounds_survived,
    )


def _tournament_response(outcome: TournamentOutcome) -> TournamentResponse:
    return TournamentResponse(
        tournament_id=outcome.tournament_id,
        winner=_hypothesis_view(outcome.winner) if outcome.winner else None,
        ranking=[_hypothesis_view(h) for h in outcome.ranking],
        eliminated=[
            EliminationView(
                hypothesis_id=record.hypothesis_id,
                round=record.round,
                reason=record.reason,
                score=record.score,
            )
            for record in outcome.eliminated
        ],
        rounds_completed=outcome.rounds_completed,
        stop_reason=outcome.stop_reason,
        budget_limited=outcome.budget_limited,
        remote_calls_used=outcome.remote_calls_used,
        elapsed_seconds=outcome.elapsed_seconds,
    )


# -----------------------------------------------------------------------------
# Service
# -----------------------------------------------------------------------------


class EscalationService:
    """Facade over the conversation engine and the tournament scheduler.

    Attributes:
        manager: Conversation lifecycle driver (owns the store reference).
        scheduler: Tournament runner.
        event_bus: Event bus shared by both, used for history reads.
    """

    def __init__(
        self,
        manager: ConversationManager,
        scheduler: TournamentScheduler,
        event_bus: EventBus | None = None,
        config: Settings | None = None,
    ) -> None:
        self.manager = manager
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.config = config or settings

    async def _guard(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        **log_context: Any,
    ) -> OperationResult[T]:
        try:
            data = await call()
        except EscalationError as exc:
            logger.warning(
                f"{operation}_rejected",
                error_type=exc.code,
                error=exc.message,
                retryable=exc.retryable,
                **log_context,
            )
            return OperationResult.failure(error_detail(exc))
        except Exception as exc:
            logger.exception(f"{operation}_failed", error=str(exc), **log_context)
            return OperationResult.failure(error_detail(exc))
        return OperationResult.success(data)

    async def start_conversation(
        self, request: StartConversationRequest
    ) -> OperationResult[StartConversationResponse]:
        async def _call() -> StartConversationResponse:
            result = await self.manager.start(request.analysis_type, request.context, request.budget)
            return StartConversationResponse(
                session_id=result.session_id,
                analysis_type=request.analysis_type,
                state=result.state,
                opening=_turn_response(result.opening) if result.opening else None,
                opening_error=(
                    error_detail(result.opening_error) if result.opening_error else None
                ),
                budget_remaining=_budget_view(result.budget_remaining),
            )

        return await self._guard(
            "start_conversation", _call, analysis_type=request.analysis_type.value
        )

    async def continue_conversation(
        self,
        session_id: str,
        request: ContinueConversationRequest,
    ) -> OperationResult[TurnResponse]:
        async def _call() -> TurnResponse:
            result = await self.manager.continue_session(
                session_id,
                request.message,
                include_code_snippets=request.include_code_snippets,
            )
            return _turn_response(result)

        return await self._guard("continue_conversation", _call, session_id=session_id)

    async def finalize_conversation(
        self,
        session_id: str,
        request: FinalizeConversationRequest | None = None,
    ) -> OperationResult[ConversationSummaryResponse]:
        request = request or FinalizeConversationRequest()

        async def _call() -> ConversationSummaryResponse:
            summary = await self.manager.finalize(session_id, request.summary_format)
            return _summary_response(summary)

        return await self._guard("finalize_conversation", _call, session_id=session_id)

    async def get_conversation_status(
        self, session_id: str
    ) -> OperationResult[ConversationStatusResponse]:
        async def _call() -> ConversationStatusResponse:
            return _status_response(self.manager.status(session_id))

        return await self._guard("get_conversation_status", _call, session_id=session_id)

    async def run_hypothesis_tournament(
        self, request: TournamentRequest
    ) -> OperationResult[TournamentResponse]:
        async def _call() -> TournamentResponse:
            outcome = await self.scheduler.run(
                request.issue,
                request.hypotheses,
                shared_evidence=request.shared_evidence,
                analysis_type=request.analysis_type,
                tournament_config=TournamentConfig.from_request(request, self.config),
            )
            return _tournament_response(outcome)

        return await self._guard(
            "run_hypothesis_tournament", _call, hypotheses=len(request.hypotheses)
        )

    def get_events(self, stream_id: str) -> list[EscalationEvent]:
        """Stored events of a conversation or tournament, oldest first."""
        if self.event_bus is None:
            return []
        return self.event_bus.get_event_history(stream_id)

    def health_report(self) -> HealthResponse:
        """Aggregate call statistics, breaker states and session counts."""
        snapshot = self.manager.client.health_snapshot()
        breakers = snapshot["circuit_breakers"]
        degraded = any(
            info.get("state") != BreakerState.CLOSED.value for info in breakers.values()
        )
        return HealthResponse(
            status="degraded" if degraded else "healthy",
            timestamp=time.time(),
            sessions=self.manager.store.count_by_state(),
            backends=snapshot["backends"],
            circuit_breakers=breakers,
            rate_limiter=snapshot["rate_limiter"],
        )
