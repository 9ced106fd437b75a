"""Hypothesis tournament as a LangGraph state machine.

Graph structure:
    START -> generate -> run_round -> eliminate -> run_round ... -> finalize -> END

- generate: asks the analyzer for candidates when none were submitted
- run_round: scores every active hypothesis on a bounded lane pool; each
  lane gets the round timeout from the moment it holds a worker slot, and the
  round barrier is clipped to the remaining budget. A lane still queued at
  the barrier sits out that round's elimination
- eliminate: ranks the active set and drops the configured quota
- finalize: picks the winner and the stop reason

The loop stops when one hypothesis is left, ``max_rounds`` rounds ran, or
the tournament budget is spent. A round cut short by the budget is not
eliminated; the best-scored survivor becomes a provisional winner. The
event stream is closed when ``run`` returns or raises.

Events emitted:
- TOURNAMENT_STARTED, HYPOTHESES_GENERATED
- ROUND_STARTED, LANE_SCORED, LANE_CANCELLED, HYPOTHESIS_ELIMINATED
- TOURNAMENT_COMPLETE
"""

import asyncio
import math
import uuid
from collections.abc import Sequence
from typing import Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from config import Settings, settings
from errors import InvalidInput, PermanentFailure
from events.bus import EventBus
from events.types import EscalationEvent, EventType
from models.schemas import AnalysisType, HypothesisInput
from reasoning.client import ReasoningRequest, RemoteReasoningClient
from reasoning.prompts import GENERATE_SYSTEM_PROMPT, build_generate_prompt, resolve_profile
from tournament.lane import HypothesisLane, LaneResult
from tournament.models import (
    WORST_SCORE,
    EliminationRecord,
    Hypothesis,
    HypothesisStatus,
    StopReason,
    TournamentBudget,
    TournamentConfig,
    TournamentOutcome,
)

logger = structlog.get_logger()


# -----------------------------------------------------------------------------
# State Schema
# -----------------------------------------------------------------------------


class TournamentState(TypedDict):
    """State flowing through the tournament graph.

    Attributes:
        tournament_id: Id of the run; also the event stream id
        issue: The problem the hypotheses try to explain
        shared_evidence: Evidence every lane sees
        backend: Remote model used for scoring and generation
        config: Tuning of this run
        budget: Shared time and remote-call allowance
        hypotheses: All hypotheses by id, in submission order
        active: Ids still in contention, in submission order
        eliminated: Ordered elimination log
        round: Rounds completed so far
        round_complete: Whether the last round ran to its barrier without
            hitting the budget
        deferred: Active ids whose lane never got a worker slot before the
            round barrier; left out of that round's elimination
        stop_reason: Set by finalize
        winner_id: Set by finalize
        budget_limited: Whether the winner is provisional
    """

    tournament_id: str
    issue: str
    shared_evidence: dict[str, Any]
    backend: str
    config: TournamentConfig
    budget: TournamentBudget
    hypotheses: dict[str, Hypothesis]
    active: list[str]
    eliminated: list[EliminationRecord]
    round: int
    round_complete: bool
    deferred: list[str]
    stop_reason: StopReason | None
    winner_id: str | None
    budget_limited: bool


def build_hypotheses(inputs: Sequence[HypothesisInput | dict[str, Any]]) -> dict[str, Hypothesis]:
    """Turn submitted candidates into hypothesis records.

    Missing ids become ``h<position>``.

    Raises:
        InvalidInput: On duplicate ids or an empty description.
    """
    hypotheses: dict[str, Hypothesis] = {}
    for position, raw in enumerate(inputs):
        item = raw if isinstance(raw, HypothesisInput) else HypothesisInput.model_validate(raw)
        hypothesis_id = item.id or f"h{position + 1}"
        if hypothesis_id in hypotheses:
            raise InvalidInput(f"Duplicate hypothesis id: {hypothesis_id}")
        if not item.description.strip():
            raise InvalidInput(f"Hypothesis {hypothesis_id} has an empty description")
        hypotheses[hypothesis_id] = Hypothesis(
            id=hypothesis_id,
            description=item.description,
            supporting_evidence=dict(item.supporting_evidence),
            order=position,
        )
    return hypotheses


class TournamentScheduler:
    """Runs hypothesis tournaments against the remote analyzer.

    Usage:
        >>> scheduler = TournamentScheduler(client, event_bus)
        >>> outcome = await scheduler.run(issue, hypotheses, shared_evidence)
    """

    def __init__(
        self,
        client: RemoteReasoningClient,
        event_bus: EventBus | None = None,
        config: Settings | None = None,
    ) -> None:
        self.client = client
        self.event_bus = event_bus
        self.config = config or settings
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(TournamentState)

        graph.add_node("generate", self._generate)
        graph.add_node("run_round", self._run_round)
        graph.add_node("eliminate", self._eliminate)
        graph.add_node("finalize", self._finalize)

        graph.add_edge(START, "generate")
        graph.add_conditional_edges(
            "generate",
            self._route_next_round,
            {"run_round": "run_round", "finalize": "finalize"},
        )
        # A round interrupted by the budget goes straight to finalize.
        graph.add_conditional_edges(
            "run_round",
            self._route_after_round,
            {"eliminate": "eliminate", "finalize": "finalize"},
        )
        graph.add_conditional_edges(
            "eliminate",
            self._route_next_round,
            {"run_round": "run_round", "finalize": "finalize"},
        )
        graph.add_edge("finalize", END)

        return graph.compile()

    # -------------------------------------------------------------------------
    # Entry Point
    # -------------------------------------------------------------------------

    async def run(
        self,
        issue: str,
        hypotheses: Sequence[HypothesisInput | dict[str, Any]] = (),
        shared_evidence: dict[str, Any] | None = None,
        analysis_type: AnalysisType = AnalysisType.HYPOTHESIS_TEST,
        tournament_config: TournamentConfig | None = None,
    ) -> TournamentOutcome:
        """Run a tournament to completion.

        Args:
            issue: The problem statement.
            hypotheses: Candidates; generated from the issue when empty.
            shared_evidence: Evidence every lane sees.
            analysis_type: Selects the remote backend.
            tournament_config: Tuning (defaults from settings).

        Raises:
            InvalidInput / InvalidBudget: Unusable input or tuning.
            RemoteFailure: Candidate generation failed.
        """
        tournament_config = tournament_config or TournamentConfig.from_settings(self.config)
        tournament_config.validate()
        if not issue.strip():
            raise InvalidInput("Tournament issue must not be empty")
        records = build_hypotheses(hypotheses)

        tournament_id = f"tour_{uuid.uuid4().hex[:12]}"
        budget = TournamentBudget(
            seconds=tournament_config.budget_seconds,
            max_remote_calls=tournament_config.max_remote_calls,
        )
        initial_state = TournamentState(
            tournament_id=tournament_id,
            issue=issue,
            shared_evidence=dict(shared_evidence or {}),
            backend=resolve_profile(analysis_type, self.config).backend,
            config=tournament_config,
            budget=budget,
            hypotheses=records,
            active=list(records),
            eliminated=[],
            round=0,
            round_complete=True,
            deferred=[],
            stop_reason=None,
            winner_id=None,
            budget_limited=False,
        )

        logger.info(
            "tournament_started",
            tournament_id=tournament_id,
            hypotheses=len(records),
            max_rounds=tournament_config.max_rounds,
            parallelism=tournament_config.parallelism,
            budget_seconds=tournament_config.budget_seconds,
        )
        await self._publish(
            EventType.TOURNAMENT_STARTED,
            tournament_id,
            hypotheses=list(records),
            max_rounds=tournament_config.max_rounds,
            parallelism=tournament_config.parallelism,
        )

        try:
            final_state = await self._compiled_graph.ainvoke(
                initial_state,
                config={"recursion_limit": tournament_config.max_rounds * 2 + 10},
            )
        finally:
            # Stream subscribers stop once the tournament is over, however it ended.
            if self.event_bus is not None:
                await self.event_bus.close_session(tournament_id)
        return self._outcome(final_state)

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def _generate(self, state: TournamentState) -> dict[str, Any]:
        """Ask the analyzer for candidates when none were submitted."""
        if state["hypotheses"]:
            return {}

        budget = state["budget"]
        tournament_config = state["config"]
        if not budget.reserve_call():
            raise PermanentFailure("Tournament budget exhausted before generating hypotheses")

        request = ReasoningRequest(
            backend=state["backend"],
            prompt=build_generate_prompt(
                state["issue"], state["shared_evidence"], tournament_config.max_hypotheses
            ),
            system_prompt=GENERATE_SYSTEM_PROMPT,
            temperature=0.7,
            purpose="generate",
            caller_id=state["tournament_id"],
            session_id=state["tournament_id"],
        )
        response = await self.client.invoke(request, deadline=budget.deadline)

        candidates = (response.payload or {}).get("hypotheses")
        usable = [
            item for item in candidates or []
            if isinstance(item, dict) and str(item.get("description") or "").strip()
        ][: tournament_config.max_hypotheses]
        if not usable:
            raise PermanentFailure(
                "Hypothesis generation returned no usable candidates",
                backend=state["backend"],
            )

        hypotheses = build_hypotheses(
            [
                {
                    "description": str(item["description"]),
                    "supporting_evidence": {
                        str(key): str(value)
                        for key, value in (item.get("supporting_evidence") or {}).items()
                    }
                    if isinstance(item.get("supporting_evidence"), dict)
                    else {},
                }
                for item in usable
            ]
        )
        logger.info(
            "hypotheses_generated",
            tournament_id=state["tournament_id"],
            count=len(hypotheses),
        )
        await self._publish(
            EventType.HYPOTHESES_GENERATED,
            state["tournament_id"],
            hypotheses={h.id: h.description for h in hypotheses.values()},
        )
        return {"hypotheses": hypotheses, "active": list(hypotheses)}

    async def _run_round(self, state: TournamentState) -> dict[str, Any]:
        """Score every active hypothesis and wait at the round barrier."""
        tournament_id = state["tournament_id"]
        round_index = state["round"]
        budget = state["budget"]
        tournament_config = state["config"]
        hypotheses = state["hypotheses"]
        active = state["active"]

        await self._publish(
            EventType.ROUND_STARTED,
            tournament_id,
            round=round_index,
            active=list(active),
        )
        if budget.exhausted:
            return {"round_complete": False, "deferred": []}

        semaphore = asyncio.Semaphore(tournament_config.parallelism)
        lanes = {
            hypothesis_id: HypothesisLane(
                hypothesis=hypotheses[hypothesis_id],
                client=self.client,
                issue=state["issue"],
                shared_evidence=state["shared_evidence"],
                budget=budget,
                backend=state["backend"],
                round_index=round_index,
                tournament_id=tournament_id,
            )
            for hypothesis_id in active
        }

        lane_timeout = tournament_config.round_timeout_seconds
        timed_out: set[str] = set()

        async def _run_lane(lane: HypothesisLane) -> LaneResult:
            # The round timeout runs from the moment a lane gets a worker slot.
            async with semaphore:
                try:
                    return await asyncio.wait_for(lane.run(), timeout=lane_timeout)
                except TimeoutError:
                    hypothesis = lane.hypothesis
                    hypothesis.score = WORST_SCORE
                    hypothesis.notes.append(f"round {round_index}: round timeout")
                    timed_out.add(hypothesis.id)
                    logger.warning(
                        "lane_round_timeout",
                        tournament_id=tournament_id,
                        hypothesis_id=hypothesis.id,
                        round=round_index,
                        timeout_seconds=lane_timeout,
                    )
                    return LaneResult(
                        hypothesis_id=hypothesis.id,
                        status=HypothesisStatus.PENDING,
                        score=WORST_SCORE,
                        error="round timeout",
                    )

        tasks = {
            asyncio.create_task(
                _run_lane(lane), name=f"{tournament_id}_r{round_index}_{hypothesis_id}"
            ): hypothesis_id
            for hypothesis_id, lane in lanes.items()
        }
        batches = math.ceil(len(lanes) / tournament_config.parallelism)
        barrier = min(lane_timeout * batches, budget.remaining_seconds())

        try:
            done, pending = await asyncio.wait(tasks, timeout=barrier)
        except asyncio.CancelledError:
            await self._cancel_lanes(tasks)
            raise

        if pending:
            await self._cancel_lanes(pending)

        budget_hit = budget.exhausted
        complete = True
        deferred: list[str] = []
        for task in done:
            result = task.result()
            if result.hypothesis_id in timed_out:
                await self._publish(
                    EventType.LANE_CANCELLED,
                    tournament_id,
                    hypothesis_id=result.hypothesis_id,
                    round=round_index,
                    reason="round_timeout",
                )
                continue
            if result.status == HypothesisStatus.PENDING:
                complete = False
                continue
            await self._publish(
                EventType.LANE_SCORED,
                tournament_id,
                hypothesis_id=result.hypothesis_id,
                round=round_index,
                score=result.score,
                lane_error=result.lane_error,
            )

        for task in pending:
            hypothesis = hypotheses[tasks[task]]
            hypothesis.status = HypothesisStatus.PENDING
            started = lanes[hypothesis.id].started
            if not started:
                hypothesis.notes.append(f"round {round_index}: cancelled before the lane started")
            if budget_hit:
                complete = False
                reason = "budget_exhausted"
            elif not started:
                # Never evaluated this round: keep any earlier score and sit out the ranking.
                deferred.append(hypothesis.id)
                reason = "not_started"
            else:
                # A lane that overran the round barrier counts as a lane error.
                hypothesis.score = WORST_SCORE
                hypothesis.notes.append(f"round {round_index}: round timeout")
                reason = "round_timeout"
            await self._publish(
                EventType.LANE_CANCELLED,
                tournament_id,
                hypothesis_id=hypothesis.id,
                round=round_index,
                reason=reason,
            )

        logger.info(
            "round_complete" if complete else "round_interrupted",
            tournament_id=tournament_id,
            round=round_index,
            scored=len(done),
            cancelled=len(pending),
            remote_calls_used=budget.calls_used,
            seconds_remaining=round(budget.remaining_seconds(), 2),
        )
        return {"round_complete": complete, "hypotheses": hypotheses, "deferred": deferred}

    async def _eliminate(self, state: TournamentState) -> dict[str, Any]:
        """Drop the lowest-ranked hypotheses of the round."""
        tournament_id = state["tournament_id"]
        round_index = state["round"]
        hypotheses = state["hypotheses"]
        deferred = set(state["deferred"])
        ranking = sorted(
            (hypotheses[hid] for hid in state["active"] if hid not in deferred),
            key=Hypothesis.rank_key,
        )
        quota = state["config"].quota(len(ranking))
        losers = ranking[len(ranking) - quota:] if quota else []

        records: list[EliminationRecord] = []
        for hypothesis in reversed(losers):
            hypothesis.status = HypothesisStatus.ELIMINATED
            reason = "lane_error" if hypothesis.score == WORST_SCORE else "lowest_score"
            record = EliminationRecord(
                hypothesis_id=hypothesis.id,
                round=round_index,
                reason=reason,
                score=hypothesis.score,
            )
            records.append(record)
            logger.info(
                "hypothesis_eliminated",
                tournament_id=tournament_id,
                hypothesis_id=hypothesis.id,
                round=round_index,
                score=hypothesis.score,
                reason=reason,
            )
            await self._publish(
                EventType.HYPOTHESIS_ELIMINATED,
                tournament_id,
                hypothesis_id=hypothesis.id,
                round=round_index,
                reason=reason,
                score=hypothesis.score,
            )

        loser_ids = {hypothesis.id for hypothesis in losers}
        survivors = [hid for hid in state["active"] if hid not in loser_ids]
        for hypothesis_id in survivors:
            hypotheses[hypothesis_id].rounds_survived += 1

        return {
            "active": survivors,
            "eliminated": [*state["eliminated"], *records],
            "round": round_index + 1,
        }

    async def _finalize(self, state: TournamentState) -> dict[str, Any]:
        """Pick the winner and record why the tournament stopped."""
        hypotheses = state["hypotheses"]
        active = state["active"]
        ranking = sorted((hypotheses[hid] for hid in active), key=Hypothesis.rank_key)

        stop_reason: StopReason
        if len(active) <= 1:
            stop_reason = "converged"
        elif not state["round_complete"] or state["budget"].exhausted:
            stop_reason = "budget_exhausted"
        else:
            stop_reason = "max_rounds"
        budget_limited = stop_reason == "budget_exhausted" and len(active) > 1

        winner = ranking[0] if ranking else None
        if winner is not None:
            winner.status = HypothesisStatus.WINNER

        logger.info(
            "tournament_complete",
            tournament_id=state["tournament_id"],
            winner=winner.id if winner else None,
            stop_reason=stop_reason,
            budget_limited=budget_limited,
            rounds=state["round"],
            remote_calls_used=state["budget"].calls_used,
        )
        await self._publish(
            EventType.TOURNAMENT_COMPLETE,
            state["tournament_id"],
            winner=winner.id if winner else None,
            stop_reason=stop_reason,
            budget_limited=budget_limited,
        )
        return {
            "stop_reason": stop_reason,
            "winner_id": winner.id if winner else None,
            "budget_limited": budget_limited,
        }

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def _route_next_round(self, state: TournamentState) -> Literal["run_round", "finalize"]:
        if len(state["active"]) <= 1:
            return "finalize"
        if state["round"] >= state["config"].max_rounds:
            return "finalize"
        if state["budget"].exhausted:
            return "finalize"
        return "run_round"

    def _route_after_round(self, state: TournamentState) -> Literal["eliminate", "finalize"]:
        return "eliminate" if state["round_complete"] else "finalize"

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    async def _cancel_lanes(tasks: Any) -> None:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _outcome(self, state: TournamentState) -> TournamentOutcome:
        hypotheses = state["hypotheses"]
        survivors = sorted((hypotheses[hid] for hid in state["active"]), key=Hypothesis.rank_key)
        fallen = [hypotheses[record.hypothesis_id] for record in reversed(state["eliminated"])]
        winner_id = state["winner_id"]
        return TournamentOutcome(
            tournament_id=state["tournament_id"],
            winner=hypotheses[winner_id] if winner_id else None,
            ranking=[*survivors, *fallen],
            eliminated=list(state["eliminated"]),
            rounds_completed=state["round"],
            stop_reason=state["stop_reason"] or "converged",
            budget_limited=state["budget_limited"],
            remote_calls_used=state["budget"].calls_used,
            elapsed_seconds=round(state["budget"].elapsed_seconds(), 3),
        )

    async def _publish(
        self,
        event_type: EventType,
        tournament_id: str,
        hypothesis_id: str | None = None,
        **data: Any,
    ) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            EscalationEvent(
                type=event_type,
                session_id=tournament_id,
                hypothesis_id=hypothesis_id,
                data=data,
            )
        )
