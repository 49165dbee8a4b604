"""Reviewer quality models — per-reviewer counters and per-decision signals.

Quality is tracked per reviewer per question. The counters are raw
material for the aggregation layer, which decides how much to trust a
reviewer's judgments. This package only surfaces them and carries the
trust fields (final_weight, low_agreement_flag) the aggregation layer
writes back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


MIRROR_CONSECUTIVE_BIAS = "consecutive_bias"


@dataclass(frozen=True)
class ReviewerQualityState:
    """Snapshot of one reviewer's quality counters on one question.

    Produced by the quality reducer; never mutated in place.
    """
    reviewer_id: str
    total_comparisons: int = 0
    consecutive_left: int = 0
    consecutive_right: int = 0
    max_consecutive_left: int = 0
    max_consecutive_right: int = 0
    short_decision_count: int = 0
    consecutive_short: int = 0
    short_decision_streaks: int = 0  # popups shown
    popup_cooldown_remaining: int = 0
    last_popup_utc: Optional[datetime] = None
    consistency_checks: int = 0
    inconsistency_count: int = 0
    inconsistency_rate: float = 0.0
    agreement_rate: float = 0.0
    final_weight: float = 1.0
    low_agreement_flag: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviewer_id": self.reviewer_id,
            "total_comparisons": self.total_comparisons,
            "consecutive_left": self.consecutive_left,
            "consecutive_right": self.consecutive_right,
            "max_consecutive_left": self.max_consecutive_left,
            "max_consecutive_right": self.max_consecutive_right,
            "short_decision_count": self.short_decision_count,
            "consecutive_short": self.consecutive_short,
            "short_decision_streaks": self.short_decision_streaks,
            "popup_cooldown_remaining": self.popup_cooldown_remaining,
            "last_popup_utc": (
                self.last_popup_utc.strftime("%Y-%m-%dT%H:%M:%SZ")
                if self.last_popup_utc
                else None
            ),
            "consistency_checks": self.consistency_checks,
            "inconsistency_count": self.inconsistency_count,
            "inconsistency_rate": self.inconsistency_rate,
            "agreement_rate": self.agreement_rate,
            "final_weight": self.final_weight,
            "low_agreement_flag": self.low_agreement_flag,
        }


@dataclass(frozen=True)
class QualitySignal:
    """Signals emitted for a single decision.

    A decision may raise neither, either, or both signals. Acting on them
    (reshowing a mirrored pair, showing a slow-down popup) is the caller's job.
    """
    should_mirror: bool = False
    mirror_type: Optional[str] = None
    should_show_popup: bool = False
    is_short_response: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_mirror": self.should_mirror,
            "mirror_type": self.mirror_type,
            "should_show_popup": self.should_show_popup,
            "is_short_response": self.is_short_response,
        }
