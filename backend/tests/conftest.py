"""Shared test fixtures for backend tests.

Provides settings overrides, a fresh EventBus and scripted reasoning
clients so tests never touch a real remote reasoning service. Retry
delays are shrunk to milliseconds and jitter is disabled.
"""

import sys
from collections.abc import Callable
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from conversation.manager import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from config import Settings  # noqa: E402
from conversation.manager import ConversationManager  # noqa: E402
from conversation.store import ConversationStore  # noqa: E402
from escalation_service import EscalationService  # noqa: E402
from events.bus import EventBus  # noqa: E402
from events.types import EscalationEvent, EventType  # noqa: E402
from reasoning.scripted import ScriptedReasoningClient, mock_responder  # noqa: E402
from tournament.scheduler import TournamentScheduler  # noqa: E402

_TEST_SETTINGS: dict[str, Any] = {
    "use_mock_reasoning": True,
    "reasoning_model": "mock/reasoner",
    "remote_request_timeout_seconds": 5.0,
    "rate_limit_rpm": 10_000,
    "rate_limit_tpm": 100_000_000,
    "rate_limit_max_wait_seconds": 1.0,
    "retry_max_attempts": 3,
    "retry_base_delay_seconds": 0.01,
    "retry_max_delay_seconds": 0.02,
    "retry_jitter": 0.0,
    "circuit_failure_threshold": 10,
    "circuit_cooldown_seconds": 30.0,
    "session_default_budget_seconds": 60.0,
    "session_default_budget_turns": 10,
    "session_max_turns": 50,
    "tournament_round_timeout_seconds": 10.0,
    "tournament_budget_seconds": 30.0,
    "log_level": "WARNING",
}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_test_settings(**overrides: Any) -> Settings:
    """Build Settings with test defaults, ignoring any local .env file."""
    return Settings(_env_file=None, **{**_TEST_SETTINGS, **overrides})


@pytest.fixture()
def test_settings() -> Settings:
    """Settings with fast retries and generous rate limits."""
    return make_test_settings()


# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    return EventBus()


def event_types(event_bus: EventBus, stream_id: str) -> list[EventType]:
    """Types of the stored events of a stream, oldest first."""
    return [event.type for event in event_bus.get_event_history(stream_id)]


def events_of(
    event_bus: EventBus, stream_id: str, event_type: EventType
) -> list[EscalationEvent]:
    return [e for e in event_bus.get_event_history(stream_id) if e.type == event_type]


# ---------------------------------------------------------------------------
# Reply Factories
# ---------------------------------------------------------------------------


def turn_reply(
    response: str = "Analysis of the path.",
    findings: list[dict[str, Any]] | None = None,
    questions: list[str] | None = None,
    confidence: float = 0.5,
) -> dict[str, Any]:
    """An analyzer turn reply as the remote service would send it."""
    return {
        "response": response,
        "new_findings": findings or [],
        "questions": ["What else?"] if questions is None else questions,
        "confidence": confidence,
    }


def score_reply(score: float, rationale: str = "assessed") -> dict[str, Any]:
    """A hypothesis score reply."""
    return {"score": score, "rationale": rationale, "missing_evidence": []}


def summary_reply(summary: str = "Root cause found.", confidence: float = 0.85) -> dict[str, Any]:
    return {
        "summary": summary,
        "root_causes": ["double dispatch"],
        "key_findings": ["retry fired twice"],
        "recommendations": ["make the handler idempotent"],
        "confidence": confidence,
    }


# ---------------------------------------------------------------------------
# Scripted Clients and Components
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_client(
    test_settings: Settings, event_bus: EventBus
) -> Callable[..., ScriptedReasoningClient]:
    """Factory for scripted clients sharing the test settings and event bus."""

    def _factory(
        script: dict[str, list[Any]] | list[Any] | None = None,
        responder: Any = mock_responder,
        **kwargs: Any,
    ) -> ScriptedReasoningClient:
        kwargs.setdefault("event_bus", event_bus)
        kwargs.setdefault("config", test_settings)
        return ScriptedReasoningClient(script=script, responder=responder, **kwargs)

    return _factory


@pytest.fixture()
def make_manager(
    test_settings: Settings,
    event_bus: EventBus,
    make_client: Callable[..., ScriptedReasoningClient],
) -> Callable[..., ConversationManager]:
    """Factory for a ConversationManager over a fresh store and scripted client.

    Keyword arguments other than ``script`` and ``responder`` are applied as
    settings overrides.
    """

    def _factory(
        script: dict[str, list[Any]] | list[Any] | None = None,
        responder: Any = mock_responder,
        **overrides: Any,
    ) -> ConversationManager:
        config = make_test_settings(**overrides) if overrides else test_settings
        client = make_client(script, responder, config=config)
        store = ConversationStore(ttl_seconds=600, event_bus=event_bus)
        return ConversationManager(store, client, event_bus=event_bus, config=config)

    return _factory


@pytest.fixture()
def make_scheduler(
    test_settings: Settings,
    event_bus: EventBus,
    make_client: Callable[..., ScriptedReasoningClient],
) -> Callable[..., TournamentScheduler]:
    """Factory for a TournamentScheduler over a scripted client."""

    def _factory(
        script: dict[str, list[Any]] | list[Any] | None = None,
        responder: Any = mock_responder,
        client: ScriptedReasoningClient | None = None,
    ) -> TournamentScheduler:
        client = client or make_client(script, responder)
        return TournamentScheduler(client, event_bus=event_bus, config=test_settings)

    return _factory


class FakeClock:
    """Manually advanced clock for rate limiter, breaker and store tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_service(
    event_bus: EventBus,
    make_manager: Callable[..., ConversationManager],
) -> Callable[..., EscalationService]:
    """Factory for an EscalationService whose manager and scheduler share one client."""

    def _factory(
        script: dict[str, list[Any]] | list[Any] | None = None,
        responder: Any = mock_responder,
        **overrides: Any,
    ) -> EscalationService:
        manager = make_manager(script, responder, **overrides)
        scheduler = TournamentScheduler(
            manager.client, event_bus=event_bus, config=manager.config
        )
        return EscalationService(manager, scheduler, event_bus=event_bus, config=manager.config)

    return _factory
