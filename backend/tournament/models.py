"""Domain model of a hypothesis tournament.

A ``Hypothesis`` is owned by its ``HypothesisLane`` while RUNNING and by the
``TournamentScheduler`` otherwise. ``TournamentBudget`` is shared by every
lane of one tournament; all lanes run on one event loop, so it needs no lock.
"""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal

from config import Settings
from errors import InvalidBudget, InvalidInput
from models.schemas import TournamentRequest

# Score assigned to a lane that errored or timed out; below every real score.
WORST_SCORE = -1.0

StopReason = Literal["converged", "max_rounds", "budget_exhausted"]


class HypothesisStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SCORED = "scored"
    ELIMINATED = "eliminated"
    WINNER = "winner"


@dataclass
class Hypothesis:
    """One candidate explanation under test.

    Attributes:
        id: Unique id within the tournament.
        description: The explanation being tested.
        supporting_evidence: Evidence id -> content offered for it.
        order: Submission position; breaks score ties (earlier ranks higher).
        score: Latest score in [0, 1], ``WORST_SCORE`` after a lane error,
            None until first scored.
        status: Lifecycle status.
        rationale: Latest rationale from the analyzer.
        notes: Lane notes (cancellations, errors).
        rounds_survived: Rounds this hypothesis came through un-eliminated.
    """

    id: str
    description: str
    supporting_evidence: dict[str, str] = field(default_factory=dict)
    order: int = 0
    score: float | None = None
    status: HypothesisStatus = HypothesisStatus.PENDING
    rationale: str = ""
    notes: list[str] = field(default_factory=list)
    rounds_survived: int = 0

    @property
    def rank_score(self) -> float:
        return WORST_SCORE if self.score is None else self.score

    def rank_key(self) -> tuple[float, int]:
        """Sort key: higher score first, then earlier submission.

        A tie goes to the hypothesis submitted (or generated) first, whatever
        its id. Generated ids are ``h<n>`` in submission order, so for them
        this matches id order; caller-supplied ids are never compared.
        """
        return (-self.rank_score, self.order)


@dataclass(frozen=True)
class EliminationRecord:
    hypothesis_id: str
    round: int
    reason: str
    score: float | None


@dataclass
class TournamentConfig:
    """Tuning of one tournament run.

    Attributes:
        max_hypotheses: Candidates requested when none are submitted.
        max_rounds: Round limit.
        parallelism: Lanes running at once.
        eliminations_per_round: Hypotheses eliminated per round.
        elimination_fraction: If set, eliminate this fraction of the active
            set per round instead (rounded down, at least one).
        round_timeout_seconds: Round barrier timeout.
        budget_seconds: Wall-clock budget of the whole tournament.
        max_remote_calls: Ceiling on remote calls across all lanes.
    """

    max_hypotheses: int = 5
    max_rounds: int = 3
    parallelism: int = 3
    eliminations_per_round: int = 1
    elimination_fraction: float | None = None
    round_timeout_seconds: float = 120.0
    budget_seconds: float = 300.0
    max_remote_calls: int = 60

    @classmethod
    def from_settings(cls, config: Settings) -> "TournamentConfig":
        return cls(
            max_hypotheses=config.tournament_max_hypotheses,
            max_rounds=config.tournament_max_rounds,
            parallelism=config.tournament_parallelism,
            eliminations_per_round=config.tournament_eliminations_per_round,
            elimination_fraction=config.tournament_elimination_fraction,
            round_timeout_seconds=config.tournament_round_timeout_seconds,
            budget_seconds=config.tournament_budget_seconds,
            max_remote_calls=config.tournament_max_remote_calls,
        )

    @classmethod
    def from_request(cls, request: TournamentRequest, config: Settings) -> "TournamentConfig":
        """Configuration defaults overridden by the request's tuning fields."""
        tournament_config = cls.from_settings(config)
        for name in (
            "max_hypotheses",
            "max_rounds",
            "parallelism",
            "eliminations_per_round",
            "elimination_fraction",
            "round_timeout_seconds",
            "budget_seconds",
            "max_remote_calls",
        ):
            value = getattr(request, name)
            if value is not None:
                setattr(tournament_config, name, value)
        return tournament_config

    def validate(self) -> None:
        """Raise ``InvalidInput`` / ``InvalidBudget`` for unusable settings."""
        for name in ("max_hypotheses", "max_rounds", "parallelism", "eliminations_per_round"):
            if getattr(self, name) < 1:
                raise InvalidInput(f"{name} must be at least 1")
        if self.elimination_fraction is not None and not 0.0 < self.elimination_fraction < 1.0:
            raise InvalidInput("elimination_fraction must be between 0 and 1 (exclusive)")
        if not self.round_timeout_seconds > 0:
            raise InvalidInput("round_timeout_seconds must be positive")
        if not self.budget_seconds > 0:
            raise InvalidBudget(f"Tournament budget must be positive, got {self.budget_seconds}s")
        if self.max_remote_calls < 1:
            raise InvalidBudget("max_remote_calls must be at least 1")

    def quota(self, active_count: int) -> int:
        """Eliminations for a round with ``active_count`` contenders.

        At least one, never the sole survivor.
        """
        if active_count <= 1:
            return 0
        if self.elimination_fraction is not None:
            wanted = math.floor(active_count * self.elimination_fraction)
        else:
            wanted = self.eliminations_per_round
        return min(max(1, wanted), active_count - 1)


class TournamentBudget:
    """Shared time and remote-call allowance of one tournament."""

    def __init__(
        self,
        seconds: float,
        max_remote_calls: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._clock = clock or time.monotonic
        self.started_at = self._clock()
        self.deadline = self.started_at + seconds
        self.max_remote_calls = max_remote_calls
        self.calls_used = 0

    def remaining_seconds(self) -> float:
        return max(0.0, self.deadline - self._clock())

    def elapsed_seconds(self) -> float:
        return self._clock() - self.started_at

    @property
    def exhausted(self) -> bool:
        return self.remaining_seconds() <= 0 or self.calls_used >= self.max_remote_calls

    def reserve_call(self) -> bool:
        """Claim one remote call; False once the time or call budget is spent."""
        if self.exhausted:
            return False
        self.calls_used += 1
        return True


@dataclass
class TournamentOutcome:
    """Result of a tournament.

    ``ranking`` lists survivors by score, then eliminated hypotheses from the
    last eliminated to the first.
    """

    tournament_id: str
    winner: Hypothesis | None
    ranking: list[Hypothesis]
    eliminated: list[EliminationRecord]
    rounds_completed: int
    stop_reason: StopReason
    budget_limited: bool
    remote_calls_used: int
    elapsed_seconds: float
