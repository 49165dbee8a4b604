"""Comparison data models — response items, decisions and per-question state.

One question session holds:
- ResponseItem: the immutable answers being compared.
- ResponseState: provisional strength and coverage for each item.
- ReviewerState: quota and recency for each reviewer.
- Decision: one pairwise judgment, the unit replayed on recovery.

Pair keys are unordered: pair_key(a, b) == pair_key(b, a).
"""

from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from peereval.errors import InvalidDecisionError


PairKey = tuple[str, str]


class Outcome(str, enum.Enum):
    """Reviewer verdict on a presented pair (A shown left, B shown right)."""
    LEFT = "left"
    RIGHT = "right"
    NEUTRAL = "neutral"

    @classmethod
    def parse(cls, value: Outcome | str) -> Outcome:
        if isinstance(value, Outcome):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidDecisionError(f"Unknown outcome: {value!r}") from None


class Phase(str, enum.Enum):
    """Pairing strategy for a question session.

    BALANCE → ADAPTIVE, never back.
    """
    BALANCE = "balance"
    ADAPTIVE = "adaptive"


def pair_key(item_a_id: str, item_b_id: str) -> PairKey:
    """Order-independent key for an unordered pair of items."""
    if item_a_id <= item_b_id:
        return (item_a_id, item_b_id)
    return (item_b_id, item_a_id)


@dataclass(frozen=True)
class ResponseItem:
    """A submitted answer. Immutable for the session."""
    item_id: str
    owner_code: str
    text: str
    question_id: str


@dataclass(frozen=True)
class Pair:
    """A pair offered to a reviewer, in presentation order."""
    item_a_id: str
    item_b_id: str
    priority: float = 0.0

    @property
    def key(self) -> PairKey:
        return pair_key(self.item_a_id, self.item_b_id)


@dataclass(frozen=True)
class Decision:
    """One pairwise judgment. Append-only."""
    reviewer_id: str
    item_a_id: str
    item_b_id: str
    outcome: Outcome
    latency_ms: int = 0
    timestamp_utc: Optional[datetime] = None

    @property
    def key(self) -> PairKey:
        return pair_key(self.item_a_id, self.item_b_id)


@dataclass
class ResponseState:
    """Provisional state of one response item.

    need never goes below zero; temp_score starts at 0.0.
    """
    item_id: str
    need: float
    temp_score: float = 0.0
    total_comparisons: int = 0
    wins: int = 0
    losses: int = 0


@dataclass
class ReviewerState:
    """Quota and recency for one reviewer on one question.

    remaining_quota only ever decreases within a session.
    """
    reviewer_id: str
    remaining_quota: int
    target_quota: int
    recent_window: int = 10
    total_comparisons: int = 0
    recent_items: deque = field(init=False)

    def __post_init__(self) -> None:
        self.recent_items = deque(maxlen=self.recent_window)

    @property
    def completed(self) -> int:
        return self.target_quota - self.remaining_quota

    def remember(self, *item_ids: str) -> None:
        self.recent_items.extend(item_ids)

    def recency_count(self, item_a_id: str, item_b_id: str) -> int:
        """How many of the recently seen slots hold A or B."""
        return sum(1 for i in self.recent_items if i == item_a_id or i == item_b_id)
