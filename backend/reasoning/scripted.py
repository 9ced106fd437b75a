"""Scripted reasoning client for local runs and tests.

``ScriptedReasoningClient`` keeps the full ``RemoteReasoningClient``
pipeline (rate limiter, breaker, retry, statistics) and only replaces the
network layer. Replies are routed by ``caller_id`` so concurrently running
lanes get their own scripts regardless of interleaving, then by ``purpose``,
then by ``"default"``. When a route is exhausted the optional responder
callable answers.

``mock_responder`` produces plausible JSON for every purpose and backs the
``USE_MOCK_REASONING`` mode.
"""

import asyncio
import hashlib
import json
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from reasoning.client import RawCompletion, ReasoningRequest, RemoteReasoningClient

logger = structlog.get_logger()


@dataclass
class ScriptedReply:
    """One scripted network attempt.

    Attributes:
        content: Reply text; dicts are serialized to JSON.
        delay: Seconds to wait before answering (to exercise timeouts).
        error: Exception to raise instead of answering.
    """

    content: str | dict[str, Any] = ""
    delay: float = 0.0
    error: BaseException | None = None


ScriptItem = str | dict[str, Any] | BaseException | ScriptedReply
Responder = Callable[[ReasoningRequest], ScriptItem]


class ScriptedReasoningClient(RemoteReasoningClient):
    """Reasoning client whose network layer replays a script.

    Usage:
        >>> client = ScriptedReasoningClient(script={
        ...     "h1": [{"score": 0.9, "rationale": "fits"}],
        ...     "default": [ServiceUnavailableError(...), "plain text"],
        ... })
        >>> response = await client.invoke(request)
    """

    def __init__(
        self,
        script: dict[str, list[ScriptItem]] | list[ScriptItem] | None = None,
        responder: Responder | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if isinstance(script, list):
            script = {"default": script}
        self._script: dict[str, list[ScriptItem]] = {
            key: list(items) for key, items in (script or {}).items()
        }
        self._indexes: dict[str, int] = defaultdict(int)
        self.responder = responder
        self.call_history: list[ReasoningRequest] = []

    def _route(self, request: ReasoningRequest) -> str | None:
        for key in (request.caller_id, request.purpose, "default"):
            if key is None or key not in self._script:
                continue
            if self._indexes[key] < len(self._script[key]):
                return key
        return None

    def _next_item(self, request: ReasoningRequest) -> ScriptItem:
        key = self._route(request)
        if key is None:
            if self.responder is None:
                raise IndexError(
                    f"No scripted reply left for caller={request.caller_id} purpose={request.purpose}"
                )
            return self.responder(request)
        index = self._indexes[key]
        self._indexes[key] = index + 1
        return self._script[key][index]

    async def _make_request(self, request: ReasoningRequest) -> RawCompletion:
        self.call_history.append(request)
        item = self._next_item(request)

        if isinstance(item, ScriptedReply):
            if item.delay:
                await asyncio.sleep(item.delay)
            if item.error is not None:
                raise item.error
            item = item.content
        if isinstance(item, BaseException):
            raise item

        content = item if isinstance(item, str) else json.dumps(item)
        logger.debug(
            "scripted_reasoning_call",
            caller_id=request.caller_id,
            purpose=request.purpose,
            content_preview=content[:50],
        )
        return RawCompletion(
            content=content,
            prompt_tokens=max(1, len(request.prompt) // 4),
            completion_tokens=max(1, len(content) // 4),
        )

    def calls_for(self, caller_id: str) -> list[ReasoningRequest]:
        return [r for r in self.call_history if r.caller_id == caller_id]


def _stable_fraction(text: str) -> float:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") / 0xFFFFFFFF


def mock_responder(request: ReasoningRequest) -> dict[str, Any]:
    """Deterministic, plausible replies for every request purpose."""
    if request.purpose == "score":
        score = round(0.2 + 0.7 * _stable_fraction(request.prompt), 3)
        return {
            "score": score,
            "rationale": "Mock assessment derived from the hypothesis text.",
            "missing_evidence": [],
        }

    if request.purpose == "generate":
        return {
            "hypotheses": [
                {"description": "A race between concurrent writers corrupts shared state.",
                 "supporting_evidence": {}},
                {"description": "A stale cache entry is served after invalidation.",
                 "supporting_evidence": {}},
                {"description": "An unhandled error path leaves the operation half-applied.",
                 "supporting_evidence": {}},
            ]
        }

    if request.purpose == "summary":
        return {
            "summary": "Mock summary of the investigation.",
            "root_causes": ["Mock root cause"],
            "key_findings": ["Mock finding"],
            "recommendations": ["Add a regression test covering the failing path."],
            "confidence": 0.8,
        }

    exchanges = sum(1 for m in request.transcript if m.get("role") == "assistant")
    confidence = min(0.95, 0.4 + 0.15 * exchanges)
    return {
        "response": "Mock analysis of the requested execution path.",
        "new_findings": [
            {
                "id": f"finding_{exchanges + 1}",
                "description": "Mock finding from the remote analyzer.",
                "evidence": [],
                "severity": "medium",
            }
        ],
        "questions": [] if confidence >= 0.9 else ["Which inputs trigger the failure?"],
        "confidence": confidence,
    }
