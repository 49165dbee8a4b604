"""Scheduling module — pair selection, provisional scores and phase control."""

from peereval.scheduling.phase import PhaseController
from peereval.scheduling.scheduler import (
    CompletionStats,
    PairCoverageStats,
    PairScheduler,
    ReviewerStats,
)
from peereval.scheduling.scores import ScoreTracker

__all__ = [
    "CompletionStats",
    "PairCoverageStats",
    "PairScheduler",
    "PhaseController",
    "ReviewerStats",
    "ScoreTracker",
]
