"""Hypothesis tournament: concurrent scoring lanes with round-based elimination.

Key Components:
    - TournamentScheduler: LangGraph loop of rounds, barrier and elimination
    - HypothesisLane: one cancellable scoring attempt for one hypothesis
    - TournamentConfig / TournamentBudget: tuning and the shared allowance
"""

from tournament.lane import HypothesisLane, LaneResult
from tournament.models import (
    WORST_SCORE,
    EliminationRecord,
    Hypothesis,
    HypothesisStatus,
    TournamentBudget,
    TournamentConfig,
    TournamentOutcome,
)
from tournament.scheduler import TournamentScheduler, build_hypotheses

__all__ = [
    "WORST_SCORE",
    "EliminationRecord",
    "Hypothesis",
    "HypothesisLane",
    "HypothesisStatus",
    "LaneResult",
    "TournamentBudget",
    "TournamentConfig",
    "TournamentOutcome",
    "TournamentScheduler",
    "build_hypotheses",
]
