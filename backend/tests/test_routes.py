"""Tests for api/routes.py -- HTTP endpoint handlers.

Uses FastAPI TestClient (backed by httpx) over a real EscalationService
wired to a scripted reasoning client. No remote calls are made.
"""

from collections.abc import Callable, Generator
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import router, set_escalation_service, status_for_error
from errors import TransientFailure
from escalation_service import EscalationService
from models.schemas import ErrorDetail
from tests.conftest import score_reply, turn_reply

ServiceFactory = Callable[..., EscalationService]

START_BODY: dict[str, Any] = {
    "analysis_type": "execution_trace",
    "context": {
        "question": "Why is the order charged twice?",
        "attempted_approaches": ["read the payment handler"],
        "code_scope": {"files": ["src/orders/service.py"]},
    },
}


def _app_client(service: EscalationService) -> Generator[TestClient, None, None]:
    app = FastAPI()
    app.include_router(router)
    set_escalation_service(service)
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def client(make_service: ServiceFactory) -> Generator[TestClient, None, None]:
    """TestClient over a service using the default mock replies."""
    yield from _app_client(make_service())


def _start(client: TestClient, **body: Any) -> str:
    resp = client.post("/api/conversations", json={**START_BODY, **body})
    assert resp.status_code == 201
    return resp.json()["session_id"]


# =========================================================================
# Health Check
# =========================================================================


class TestHealthCheck:
    """GET /health."""

    def test_health_returns_200(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["version"] == "0.1.0"
        assert data["sessions"]["total"] == 0

    def test_health_degraded_without_service(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("api.routes._escalation_service", None)

        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"


# =========================================================================
# Conversations
# =========================================================================


class TestStartConversation:
    """POST /api/conversations."""

    def test_start_success(self, client: TestClient) -> None:
        resp = client.post("/api/conversations", json=START_BODY)

        assert resp.status_code == 201
        data = resp.json()
        assert data["session_id"].startswith("sess_")
        assert data["state"] == "active"
        assert data["opening"]["turn_index"] == 1
        assert data["opening_error"] is None

    def test_invalid_budget_is_400(self, client: TestClient) -> None:
        resp = client.post(
            "/api/conversations", json={**START_BODY, "budget": {"seconds": -5}}
        )

        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "invalid_budget"

    def test_unknown_analysis_type_is_422(self, client: TestClient) -> None:
        resp = client.post(
            "/api/conversations", json={**START_BODY, "analysis_type": "astrology"}
        )
        assert resp.status_code == 422

    def test_missing_analysis_type_is_422(self, client: TestClient) -> None:
        resp = client.post("/api/conversations", json={"context": {}})
        assert resp.status_code == 422


class TestContinueConversation:
    """POST /api/conversations/{session_id}/turns."""

    def test_turn_success(self, client: TestClient) -> None:
        session_id = _start(client)

        resp = client.post(
            f"/api/conversations/{session_id}/turns",
            json={"message": "Where is the retry configured?"},
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["session_id"] == session_id
        assert data["turn_index"] == 3
        assert data["budget_remaining"]["turns_remaining"] == 9

    def test_unknown_session_is_404(self, client: TestClient) -> None:
        resp = client.post(
            "/api/conversations/sess_000000000000/turns", json={"message": "hello"}
        )

        assert resp.status_code == 404
        detail = resp.json()["detail"]
        assert detail["code"] == "session_not_found"
        assert detail["retryable"] is False

    def test_empty_message_is_422(self, client: TestClient) -> None:
        session_id = _start(client)

        resp = client.post(f"/api/conversations/{session_id}/turns", json={"message": ""})

        assert resp.status_code == 422

    def test_exhausted_budget_is_409(self, client: TestClient) -> None:
        session_id = _start(client, budget={"turns": 1})
        first = client.post(
            f"/api/conversations/{session_id}/turns", json={"message": "one"}
        )

        resp = client.post(f"/api/conversations/{session_id}/turns", json={"message": "two"})

        assert first.status_code == 200
        assert first.json()["state"] == "finalizing"
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "budget_exhausted"

    def test_transient_failure_is_503(self, make_service: ServiceFactory) -> None:
        failures = [TransientFailure("upstream 503") for _ in range(3)]
        service = make_service({"turn": [turn_reply(), *failures]})
        for client in _app_client(service):
            session_id = _start(client)

            resp = client.post(
                f"/api/conversations/{session_id}/turns", json={"message": "again"}
            )

            assert resp.status_code == 503
            assert resp.json()["detail"]["retryable"] is True


class TestFinalizeConversation:
    """POST /api/conversations/{session_id}/finalize."""

    def test_finalize_with_format(self, client: TestClient) -> None:
        session_id = _start(client)

        resp = client.post(
            f"/api/conversations/{session_id}/finalize",
            json={"summary_format": "actionable"},
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["summary_format"] == "actionable"
        assert data["recommendations"]
        assert data["turns_taken"] == 4

    def test_finalize_without_body_uses_default_format(self, client: TestClient) -> None:
        session_id = _start(client)

        resp = client.post(f"/api/conversations/{session_id}/finalize")

        assert resp.status_code == 200
        assert resp.json()["summary_format"] == "detailed"

    def test_turn_after_finalize_is_409(self, client: TestClient) -> None:
        session_id = _start(client)
        client.post(f"/api/conversations/{session_id}/finalize")

        resp = client.post(f"/api/conversations/{session_id}/turns", json={"message": "more"})

        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "session_not_active"


class TestConversationStatus:
    """GET /api/conversations/{session_id} and its events."""

    def test_status(self, client: TestClient) -> None:
        session_id = _start(client)

        resp = client.get(f"/api/conversations/{session_id}")

        assert resp.status_code == 200
        data = resp.json()
        assert data["analysis_type"] == "execution_trace"
        assert data["state"] == "active"
        assert data["turns_taken"] == 2

    def test_status_unknown_is_404(self, client: TestClient) -> None:
        assert client.get("/api/conversations/sess_000000000000").status_code == 404

    def test_events(self, client: TestClient) -> None:
        session_id = _start(client)

        resp = client.get(f"/api/conversations/{session_id}/events")

        assert resp.status_code == 200
        types = [event["type"] for event in resp.json()]
        assert types[0] == "session_started"
        assert "turn_appended" in types


# =========================================================================
# Tournaments
# =========================================================================


class TestTournament:
    """POST /api/tournaments."""

    def test_tournament_success(self, make_service: ServiceFactory) -> None:
        scores = {"cache": 0.3, "race": 0.8}
        service = make_service(responder=lambda request: score_reply(scores[request.caller_id]))
        for client in _app_client(service):
            resp = client.post(
                "/api/tournaments",
                json={
                    "issue": "Inventory counts drift under load.",
                    "hypotheses": [
                        {"id": "cache", "description": "Stale cache reads"},
                        {"id": "race", "description": "Concurrent decrements race"},
                    ],
                },
            )

            assert resp.status_code == 200
            data = resp.json()
            assert data["winner"]["id"] == "race"
            assert data["stop_reason"] == "converged"

            events = client.get(f"/api/tournaments/{data['tournament_id']}/events").json()
            assert events[0]["type"] == "tournament_started"
            assert events[-1]["type"] == "tournament_complete"

    def test_invalid_tuning_is_400(self, client: TestClient) -> None:
        resp = client.post(
            "/api/tournaments",
            json={
                "issue": "Inventory counts drift under load.",
                "hypotheses": [{"description": "Stale cache reads"}],
                "parallelism": 0,
            },
        )

        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "invalid_input"

    def test_empty_issue_is_422(self, client: TestClient) -> None:
        resp = client.post("/api/tournaments", json={"issue": ""})
        assert resp.status_code == 422


# =========================================================================
# Status Mapping
# =========================================================================


class TestStatusForError:
    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            ("invalid_input", 400),
            ("invalid_budget", 400),
            ("session_not_found", 404),
            ("session_not_active", 409),
            ("session_failed", 409),
            ("budget_exhausted", 409),
            ("rate_limited", 503),
            ("transient_failure", 503),
            ("remote_timeout", 503),
            ("permanent_failure", 502),
            ("circuit_open", 502),
            ("internal_error", 500),
        ],
    )
    def test_mapping(self, code: str, expected: int) -> None:
        assert status_for_error(ErrorDetail(code=code, message="x")) == expected
