"""peereval — adaptive pairwise-comparison scheduling for peer assessment.

Reviewers judge pairs of responses to a question. The scheduler decides
which pair each reviewer sees next (coverage first, then close matches),
tracks provisional strengths and per-reviewer quotas, and the quality
monitor flags side bias and hurried judging. Final ranking is computed
elsewhere from the recorded decisions.
"""

from peereval.errors import (
    ConflictError,
    InvalidDecisionError,
    NotFoundError,
    SchedulerError,
)
from peereval.models.comparison import Decision, Outcome, Pair, Phase, ResponseItem
from peereval.policy.resolver import PolicyResolver
from peereval.service import ComparisonService, ServiceResult

__all__ = [
    "ComparisonService",
    "ConflictError",
    "Decision",
    "InvalidDecisionError",
    "NotFoundError",
    "Outcome",
    "Pair",
    "Phase",
    "PolicyResolver",
    "ResponseItem",
    "SchedulerError",
    "ServiceResult",
]
