"""Tests for models/schemas.py -- Pydantic request/response models.

Validates model construction, validation rules and enum values. Semantic
budget checks are not schema errors; see test_conversation_manager.py.
"""

import pytest
from pydantic import ValidationError

from models.schemas import (
    AnalysisType,
    BudgetRequest,
    ContinueConversationRequest,
    ErrorDetail,
    FinalizeConversationRequest,
    HealthResponse,
    HypothesisInput,
    OperationResult,
    StartConversationRequest,
    SummaryFormat,
    TournamentRequest,
)

# =========================================================================
# Enums
# =========================================================================


class TestEnums:
    def test_analysis_type_values(self) -> None:
        assert {t.value for t in AnalysisType} == {
            "execution_trace",
            "cross_system",
            "performance",
            "hypothesis_test",
        }

    def test_summary_format_default(self) -> None:
        assert FinalizeConversationRequest().summary_format == SummaryFormat.DETAILED


# =========================================================================
# Requests
# =========================================================================


class TestStartConversationRequest:
    def test_minimal(self) -> None:
        request = StartConversationRequest(analysis_type="performance")

        assert request.analysis_type == AnalysisType.PERFORMANCE
        assert request.context.question == ""
        assert request.context.code_scope.files == []
        assert request.budget is None

    def test_invalid_analysis_type(self) -> None:
        with pytest.raises(ValidationError):
            StartConversationRequest(analysis_type="guesswork")

    def test_non_positive_budget_is_accepted_by_schema(self) -> None:
        request = StartConversationRequest(
            analysis_type="performance", budget=BudgetRequest(seconds=0, turns=-1)
        )
        assert request.budget is not None
        assert request.budget.turns == -1


class TestContinueConversationRequest:
    def test_empty_message_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ContinueConversationRequest(message="")

    def test_snippets_default_off(self) -> None:
        assert ContinueConversationRequest(message="why?").include_code_snippets is False


class TestTournamentRequest:
    def test_defaults(self) -> None:
        request = TournamentRequest(issue="Latency spike")

        assert request.analysis_type == AnalysisType.HYPOTHESIS_TEST
        assert request.hypotheses == []
        assert request.parallelism is None

    def test_empty_hypothesis_description_rejected(self) -> None:
        with pytest.raises(ValidationError):
            HypothesisInput(description="")


# =========================================================================
# Results
# =========================================================================


class TestOperationResult:
    def test_success(self) -> None:
        result = OperationResult[int].success(3)
        assert result.ok is True
        assert result.data == 3
        assert result.error is None

    def test_failure(self) -> None:
        result = OperationResult[int].failure(ErrorDetail(code="invalid_input", message="bad"))
        assert result.ok is False
        assert result.data is None
        assert result.error is not None
        assert result.error.details == {}


class TestHealthResponse:
    def test_defaults(self) -> None:
        health = HealthResponse(status="healthy")
        assert health.version == "0.1.0"
        assert health.sessions == {}

    def test_unknown_status_rejected(self) -> None:
        with pytest.raises(ValidationError):
            HealthResponse(status="sleepy")
