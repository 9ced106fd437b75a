"""Remote reasoning access: client, resilience primitives and prompts.

Key Components:
    - RemoteReasoningClient: rate-limited, retried, circuit-broken LiteLLM calls
    - ScriptedReasoningClient: same pipeline with a scripted network layer
    - CircuitBreaker / BreakerRegistry: per-backend fail-fast guard
    - RetryPolicy / RetryState: deadline-driven back-off state machine
    - AnalysisProfile: per-analysis-type backend and system prompt
"""

from config import Settings, settings
from events.bus import EventBus
from reasoning.circuit_breaker import BreakerRegistry, BreakerState, CircuitBreaker
from reasoning.client import (
    ReasoningRequest,
    ReasoningResponse,
    RemoteReasoningClient,
    classify_exception,
)
from reasoning.prompts import AnalysisProfile, resolve_profile
from reasoning.retry import RetryPolicy, RetryState
from reasoning.scripted import ScriptedReasoningClient, ScriptedReply, mock_responder


def create_reasoning_client(
    event_bus: EventBus | None = None,
    config: Settings | None = None,
) -> RemoteReasoningClient:
    """Build the reasoning client for the configured mode.

    Returns a ``ScriptedReasoningClient`` answering with ``mock_responder``
    when ``use_mock_reasoning`` is set, otherwise the LiteLLM-backed client.
    """
    config = config or settings
    if config.use_mock_reasoning:
        return ScriptedReasoningClient(
            responder=mock_responder, event_bus=event_bus, config=config
        )
    return RemoteReasoningClient(event_bus=event_bus, config=config)


__all__ = [
    "AnalysisProfile",
    "BreakerRegistry",
    "BreakerState",
    "CircuitBreaker",
    "ReasoningRequest",
    "ReasoningResponse",
    "RemoteReasoningClient",
    "RetryPolicy",
    "RetryState",
    "ScriptedReasoningClient",
    "ScriptedReply",
    "classify_exception",
    "create_reasoning_client",
    "mock_responder",
    "resolve_profile",
]
