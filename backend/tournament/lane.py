"""HypothesisLane: one cancellable scoring attempt for a single hypothesis.

A lane asks the remote analyzer to score its hypothesis against the shared
evidence, re-asking once if the reply cannot be parsed. Outcomes:

- scored: ``score`` and ``rationale`` written back, status SCORED
- lane error (remote failure after retries, unparseable reply, bug):
  ``WORST_SCORE`` and a note, status SCORED; the scheduler eliminates it
  like any low score
- cancelled or out of budget: status back to PENDING with a note; never
  left RUNNING
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog

from errors import RemoteFailure
from reasoning.client import ReasoningRequest, ReasoningResponse, RemoteReasoningClient
from reasoning.prompts import SCORE_REPAIR_PROMPT, SCORE_SYSTEM_PROMPT, build_score_prompt
from reasoning.utils import coerce_confidence, coerce_str_list
from tournament.models import WORST_SCORE, Hypothesis, HypothesisStatus, TournamentBudget

logger = structlog.get_logger()


class _BudgetSpent(Exception):
    pass


class _UnparseableScore(Exception):
    pass


@dataclass
class LaneResult:
    """What a lane reports back to the scheduler."""

    hypothesis_id: str
    status: HypothesisStatus
    score: float | None
    rationale: str = ""
    missing_evidence: list[str] | None = None
    error: str | None = None
    remote_calls: int = 0

    @property
    def lane_error(self) -> bool:
        return self.error is not None


class HypothesisLane:
    """Single-use scoring unit for one hypothesis in one round.

    Usage:
        >>> lane = HypothesisLane(hypothesis, client, issue, evidence, budget,
        ...                       backend="gemini/gemini-2.5-pro", round_index=0)
        >>> result = await lane.run()
    """

    def __init__(
        self,
        hypothesis: Hypothesis,
        client: RemoteReasoningClient,
        issue: str,
        shared_evidence: dict[str, Any],
        budget: TournamentBudget,
        backend: str,
        round_index: int = 0,
        tournament_id: str | None = None,
    ) -> None:
        self.hypothesis = hypothesis
        self.client = client
        self.issue = issue
        self.shared_evidence = shared_evidence
        self.budget = budget
        self.backend = backend
        self.round_index = round_index
        self.tournament_id = tournament_id
        self.started = False
        self._remote_calls = 0

    async def run(self) -> LaneResult:
        """Score the hypothesis; cancellation propagates after cleanup.

        Raises:
            RuntimeError: If the lane was already run.
            asyncio.CancelledError: If cancelled; the hypothesis is PENDING.
        """
        if self.started:
            raise RuntimeError(f"Lane for {self.hypothesis.id} already ran")
        self.started = True
        hypothesis = self.hypothesis
        hypothesis.status = HypothesisStatus.RUNNING

        try:
            score, rationale, missing = await self._score()
        except asyncio.CancelledError:
            hypothesis.status = HypothesisStatus.PENDING
            hypothesis.notes.append(f"round {self.round_index}: cancelled before a score was produced")
            logger.info("lane_cancelled", hypothesis_id=hypothesis.id, round=self.round_index)
            raise
        except _BudgetSpent:
            hypothesis.status = HypothesisStatus.PENDING
            hypothesis.notes.append(f"round {self.round_index}: tournament budget exhausted")
            logger.info("lane_budget_exhausted", hypothesis_id=hypothesis.id, round=self.round_index)
            return LaneResult(
                hypothesis_id=hypothesis.id,
                status=HypothesisStatus.PENDING,
                score=hypothesis.score,
                remote_calls=self._remote_calls,
            )
        except (RemoteFailure, _UnparseableScore) as exc:
            return self._lane_error(str(exc))
        except Exception as exc:
            logger.exception("lane_unexpected_error", hypothesis_id=hypothesis.id)
            return self._lane_error(f"{type(exc).__name__}: {exc}")

        hypothesis.score = score
        hypothesis.rationale = rationale
        hypothesis.status = HypothesisStatus.SCORED
        logger.info(
            "lane_scored",
            hypothesis_id=hypothesis.id,
            round=self.round_index,
            score=score,
            remote_calls=self._remote_calls,
        )
        return LaneResult(
            hypothesis_id=hypothesis.id,
            status=HypothesisStatus.SCORED,
            score=score,
            rationale=rationale,
            missing_evidence=missing,
            remote_calls=self._remote_calls,
        )

    def _lane_error(self, message: str) -> LaneResult:
        hypothesis = self.hypothesis
        hypothesis.score = WORST_SCORE
        hypothesis.status = HypothesisStatus.SCORED
        hypothesis.notes.append(f"round {self.round_index}: lane error: {message}")
        logger.warning(
            "lane_error",
            hypothesis_id=hypothesis.id,
            round=self.round_index,
            error=message,
        )
        return LaneResult(
            hypothesis_id=hypothesis.id,
            status=HypothesisStatus.SCORED,
            score=WORST_SCORE,
            error=message,
            remote_calls=self._remote_calls,
        )

    async def _score(self) -> tuple[float, str, list[str]]:
        hypothesis = self.hypothesis
        prompt = build_score_prompt(
            self.issue,
            hypothesis.description,
            hypothesis.supporting_evidence,
            self.shared_evidence,
            previous_rationale=hypothesis.rationale,
        )
        response = await self._call(prompt, transcript=[])
        parsed = self._parse(response)
        if parsed is not None:
            return parsed

        logger.debug("lane_score_unparseable", hypothesis_id=hypothesis.id, attempt=1)
        transcript = [
            {"role": "user", "content": prompt},
            {"role": "assistant", "content": response.content},
        ]
        response = await self._call(SCORE_REPAIR_PROMPT, transcript=transcript)
        parsed = self._parse(response)
        if parsed is None:
            raise _UnparseableScore("Score reply could not be parsed after one re-ask")
        return parsed

    async def _call(self, prompt: str, transcript: list[dict[str, str]]) -> ReasoningResponse:
        if not self.budget.reserve_call():
            raise _BudgetSpent()
        self._remote_calls += 1
        request = ReasoningRequest(
            backend=self.backend,
            prompt=prompt,
            system_prompt=SCORE_SYSTEM_PROMPT,
            transcript=transcript,
            temperature=0.0,
            purpose="score",
            caller_id=self.hypothesis.id,
            session_id=self.tournament_id,
        )
        return await self.client.invoke(request, deadline=self.budget.deadline)

    @staticmethod
    def _parse(response: ReasoningResponse) -> tuple[float, str, list[str]] | None:
        payload = response.payload
        if not payload or "score" not in payload:
            return None
        try:
            float(payload["score"])
        except (TypeError, ValueError):
            return None
        score = coerce_confidence(payload["score"], default=WORST_SCORE)
        rationale = payload.get("rationale")
        return (
            score,
            rationale if isinstance(rationale, str) else "",
            coerce_str_list(payload.get("missing_evidence")),
        )
