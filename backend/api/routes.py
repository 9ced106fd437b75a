"""HTTP API routes for the escalation backend.

This module maps the ``EscalationService`` operations onto HTTP endpoints.
The service returns typed results; routes only translate failures into
status codes. Live event streaming is handled via WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, TypeVar

import structlog
from fastapi import APIRouter, Body, HTTPException, Path, status

from events.types import EscalationEvent
from models.schemas import (
    ContinueConversationRequest,
    ConversationStatusResponse,
    ConversationSummaryResponse,
    ErrorDetail,
    FinalizeConversationRequest,
    HealthResponse,
    OperationResult,
    StartConversationRequest,
    StartConversationResponse,
    TournamentRequest,
    TournamentResponse,
    TurnResponse,
)

if TYPE_CHECKING:
    from escalation_service import EscalationService

logger = structlog.get_logger(__name__)

router = APIRouter()

T = TypeVar("T")

# Error code -> HTTP status. Codes not listed map to 500.
_ERROR_STATUS: dict[str, int] = {
    "invalid_input": status.HTTP_400_BAD_REQUEST,
    "invalid_budget": status.HTTP_400_BAD_REQUEST,
    "session_not_found": status.HTTP_404_NOT_FOUND,
    "session_not_active": status.HTTP_409_CONFLICT,
    "session_failed": status.HTTP_409_CONFLICT,
    "budget_exhausted": status.HTTP_409_CONFLICT,
    "rate_limited": status.HTTP_503_SERVICE_UNAVAILABLE,
    "transient_failure": status.HTTP_503_SERVICE_UNAVAILABLE,
    "remote_timeout": status.HTTP_503_SERVICE_UNAVAILABLE,
    "permanent_failure": status.HTTP_502_BAD_GATEWAY,
    "circuit_open": status.HTTP_502_BAD_GATEWAY,
}


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def status_for_error(error: ErrorDetail) -> int:
    """HTTP status code for a typed service error."""
    return _ERROR_STATUS.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def _unwrap(result: OperationResult[T]) -> T:
    """Return the success payload or raise the matching HTTPException."""
    if result.ok and result.data is not None:
        return result.data
    error = result.error or ErrorDetail(code="internal_error", message="Empty result")
    raise HTTPException(
        status_code=status_for_error(error),
        detail=error.model_dump(),
    )


# Escalation service dependency (set during application startup)
_escalation_service: EscalationService | None = None


def set_escalation_service(service: EscalationService) -> None:
    """Set the escalation service instance for the routes.

    This should be called during application startup to inject the service
    dependency.

    Args:
        service: The EscalationService instance to use for all routes.
    """
    global _escalation_service
    _escalation_service = service
    logger.info("escalation_service_configured")


def get_escalation_service() -> EscalationService:
    """Get the escalation service instance.

    Returns:
        The configured EscalationService instance.

    Raises:
        RuntimeError: If the service has not been configured.
    """
    if _escalation_service is None:
        logger.error("escalation_service_not_configured")
        raise RuntimeError(
            "EscalationService not configured. Call set_escalation_service() during startup."
        )
    return _escalation_service


# -----------------------------------------------------------------------------
# Conversations
# -----------------------------------------------------------------------------


@router.post(
    "/api/conversations",
    response_model=StartConversationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start an escalation conversation",
    description=(
        "Open a conversation with the remote analyzer and run the opening exchange. "
        "A retryable failure of the opening exchange is reported in opening_error; "
        "the session stays usable."
    ),
)
async def start_conversation(request: StartConversationRequest) -> StartConversationResponse:
    service = get_escalation_service()
    response = _unwrap(await service.start_conversation(request))
    logger.info(
        "conversation_created",
        session_id=response.session_id,
        analysis_type=request.analysis_type.value,
        state=response.state.value,
    )
    return response


@router.post(
    "/api/conversations/{session_id}/turns",
    response_model=TurnResponse,
    summary="Continue a conversation",
    description="Send one follow-up message and return the analyzer's reply.",
)
async def continue_conversation(
    session_id: Annotated[str, Path(description="The session ID")],
    request: ContinueConversationRequest,
) -> TurnResponse:
    service = get_escalation_service()
    return _unwrap(await service.continue_conversation(session_id, request))


@router.post(
    "/api/conversations/{session_id}/finalize",
    response_model=ConversationSummaryResponse,
    summary="Finalize a conversation",
    description=(
        "Produce the closing summary. Finalizing a completed conversation returns "
        "the stored summary."
    ),
)
async def finalize_conversation(
    session_id: Annotated[str, Path(description="The session ID")],
    request: Annotated[FinalizeConversationRequest | None, Body()] = None,
) -> ConversationSummaryResponse:
    service = get_escalation_service()
    return _unwrap(await service.finalize_conversation(session_id, request))


@router.get(
    "/api/conversations/{session_id}",
    response_model=ConversationStatusResponse,
    summary="Get conversation status",
    description="Best-effort snapshot; never waits for an in-flight turn.",
)
async def get_conversation_status(
    session_id: Annotated[str, Path(description="The session ID")],
) -> ConversationStatusResponse:
    service = get_escalation_service()
    return _unwrap(await service.get_conversation_status(session_id))


@router.get(
    "/api/conversations/{session_id}/events",
    response_model=list[EscalationEvent],
    summary="Get conversation events",
    description="Stored lifecycle events of a conversation, oldest first.",
)
async def get_conversation_events(
    session_id: Annotated[str, Path(description="The session ID")],
) -> list[EscalationEvent]:
    service = get_escalation_service()
    return service.get_events(session_id)


# -----------------------------------------------------------------------------
# Tournaments
# -----------------------------------------------------------------------------


@router.post(
    "/api/tournaments",
    response_model=TournamentResponse,
    summary="Run a hypothesis tournament",
    description=(
        "Score competing hypotheses concurrently and eliminate them round by round. "
        "Without hypotheses, candidates are generated from the issue."
    ),
)
async def run_tournament(request: TournamentRequest) -> TournamentResponse:
    service = get_escalation_service()
    response = _unwrap(await service.run_hypothesis_tournament(request))
    logger.info(
        "tournament_finished",
        tournament_id=response.tournament_id,
        winner=response.winner.id if response.winner else None,
        stop_reason=response.stop_reason,
    )
    return response


@router.get(
    "/api/tournaments/{tournament_id}/events",
    response_model=list[EscalationEvent],
    summary="Get tournament events",
    description="Stored round, lane and elimination events of a tournament.",
)
async def get_tournament_events(
    tournament_id: Annotated[str, Path(description="The tournament ID")],
) -> list[EscalationEvent]:
    service = get_escalation_service()
    return service.get_events(tournament_id)


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Remote backend call statistics, circuit breakers and session counts.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Reports ``degraded`` while any circuit breaker is not closed or before
    the service is configured.
    """
    try:
        return get_escalation_service().health_report()
    except RuntimeError:
        # Service not configured yet (e.g., during startup)
        return HealthResponse(status="degraded", timestamp=time.time())
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))
        return HealthResponse(status="degraded", timestamp=time.time())
