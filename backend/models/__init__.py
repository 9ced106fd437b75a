"""Models module for Pydantic schemas.

This module exposes the request/result models of the escalation service.
"""

from models.schemas import (
    AnalysisContext,
    AnalysisType,
    BudgetRequest,
    CodeScope,
    ContinueConversationRequest,
    ConversationStatusResponse,
    ConversationSummaryResponse,
    ErrorDetail,
    FinalizeConversationRequest,
    HealthResponse,
    HypothesisInput,
    OperationResult,
    SessionState,
    StartConversationRequest,
    StartConversationResponse,
    SummaryFormat,
    TournamentRequest,
    TournamentResponse,
    TurnResponse,
)

__all__ = [
    "AnalysisContext",
    "AnalysisType",
    "BudgetRequest",
    "CodeScope",
    "ContinueConversationRequest",
    "ConversationStatusResponse",
    "ConversationSummaryResponse",
    "ErrorDetail",
    "FinalizeConversationRequest",
    "HealthResponse",
    "HypothesisInput",
    "OperationResult",
    "SessionState",
    "StartConversationRequest",
    "StartConversationResponse",
    "SummaryFormat",
    "TournamentRequest",
    "TournamentResponse",
    "TurnResponse",
]
