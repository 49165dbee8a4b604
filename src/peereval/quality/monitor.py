"""Quality monitor — flags biased and hurried reviewing from the decision stream.

The core is a pure reducer:

    apply_decision(state, outcome, latency_ms, thresholds) -> (state', signal)

Feeding the same decisions in the same order always yields the same
counters, so quality state rebuilds from the decision log exactly like
the scheduler does. QualityMonitor wraps the reducer with a per-reviewer
table for one question session.

Checks, both evaluated on every decision:
- Consecutive-side bias: N picks in a row for the same side (default 5)
  asks for a mirrored reshow of a pair.
- Hurried decisions: a run of short decisions (default 3 under 3000 ms)
  asks for a slow-down popup, then suppresses further popups for a
  cooldown measured in comparisons (default 10).

Trust fields (final_weight, low_agreement_flag, agreement_rate) are
written by the aggregation layer; this module only stores them next to
the raw counters that layer needs.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable, Optional

from peereval.errors import NotFoundError
from peereval.models.comparison import Outcome
from peereval.models.quality import (
    MIRROR_CONSECUTIVE_BIAS,
    QualitySignal,
    ReviewerQualityState,
)
from peereval.policy.resolver import QualityThresholds

logger = logging.getLogger(__name__)


def apply_decision(
    state: ReviewerQualityState,
    outcome: Outcome | str,
    latency_ms: int,
    thresholds: QualityThresholds,
    now: Optional[datetime] = None,
) -> tuple[ReviewerQualityState, QualitySignal]:
    """Fold one decision into a reviewer's quality state.

    Popup eligibility uses the cooldown as it stood before this
    decision; a decision that shows the popup restarts the cooldown,
    any other decision counts it down by one.
    """
    outcome = Outcome.parse(outcome)

    left, right = state.consecutive_left, state.consecutive_right
    if outcome == Outcome.LEFT:
        left, right = left + 1, 0
    elif outcome == Outcome.RIGHT:
        left, right = 0, right + 1
    else:
        left, right = 0, 0

    bias = thresholds.consecutive_bias_threshold
    should_mirror = left >= bias or right >= bias

    is_short = latency_ms < thresholds.short_response_threshold_ms
    consecutive_short = state.consecutive_short + 1 if is_short else 0
    cooldown = state.popup_cooldown_remaining
    streaks = state.short_decision_streaks
    last_popup = state.last_popup_utc

    show_popup = (
        is_short
        and consecutive_short >= thresholds.short_streak_length
        and cooldown == 0
    )
    if show_popup:
        consecutive_short = 0
        cooldown = thresholds.popup_cooldown_comparisons
        streaks += 1
        last_popup = now or datetime.now(timezone.utc)
    else:
        cooldown = max(0, cooldown - 1)

    new_state = replace(
        state,
        total_comparisons=state.total_comparisons + 1,
        consecutive_left=left,
        consecutive_right=right,
        max_consecutive_left=max(state.max_consecutive_left, left),
        max_consecutive_right=max(state.max_consecutive_right, right),
        short_decision_count=state.short_decision_count + (1 if is_short else 0),
        consecutive_short=consecutive_short,
        short_decision_streaks=streaks,
        popup_cooldown_remaining=cooldown,
        last_popup_utc=last_popup,
    )
    signal = QualitySignal(
        should_mirror=should_mirror,
        mirror_type=MIRROR_CONSECUTIVE_BIAS if should_mirror else None,
        should_show_popup=show_popup,
        is_short_response=is_short,
    )
    return new_state, signal


def apply_consistency_check(
    state: ReviewerQualityState,
    consistent: bool,
) -> ReviewerQualityState:
    """Fold the result of a mirrored or repeated pair into the counters."""
    checks = state.consistency_checks + 1
    inconsistent = state.inconsistency_count + (0 if consistent else 1)
    return replace(
        state,
        consistency_checks=checks,
        inconsistency_count=inconsistent,
        inconsistency_rate=inconsistent / checks,
    )


def validate_trust(
    final_weight: Optional[float] = None,
    agreement_rate: Optional[float] = None,
) -> None:
    if final_weight is not None and final_weight < 0.0:
        raise ValueError(f"final_weight must be non-negative, got {final_weight}")
    if agreement_rate is not None and not (0.0 <= agreement_rate <= 1.0):
        raise ValueError(f"agreement_rate must be in [0, 1], got {agreement_rate}")


class QualityMonitor:
    """Per-reviewer quality tracking for one question session.

    Usage:
        monitor = QualityMonitor(resolver.quality_thresholds(), ["s1", "s2"])
        signal = monitor.process_decision("s1", "left", latency_ms=1800)
        if signal.should_show_popup:
            ...

    Thread-safety: not thread-safe; share the session lock with the scheduler.
    """

    def __init__(
        self,
        thresholds: QualityThresholds,
        reviewer_ids: Iterable[str] = (),
    ) -> None:
        self._thresholds = thresholds
        self._states: dict[str, ReviewerQualityState] = {}
        for rid in reviewer_ids:
            self.register(rid)

    @property
    def thresholds(self) -> QualityThresholds:
        return self._thresholds

    @thresholds.setter
    def thresholds(self, value: QualityThresholds) -> None:
        """Replace thresholds; counters are kept and judged by the new values."""
        self._thresholds = value

    def register(self, reviewer_id: str) -> ReviewerQualityState:
        """Start tracking a reviewer. Re-registering keeps existing counters."""
        canonical = reviewer_id.strip()
        if not canonical:
            raise ValueError("Cannot register reviewer with blank ID")
        if canonical not in self._states:
            self._states[canonical] = ReviewerQualityState(reviewer_id=canonical)
        return self._states[canonical]

    def state(self, reviewer_id: str) -> ReviewerQualityState:
        canonical = reviewer_id.strip()
        state = self._states.get(canonical)
        if state is None:
            raise NotFoundError(f"Reviewer not found: {reviewer_id}")
        return state

    def states(self) -> dict[str, ReviewerQualityState]:
        return dict(self._states)

    def process_decision(
        self,
        reviewer_id: str,
        outcome: Outcome | str,
        latency_ms: int,
        now: Optional[datetime] = None,
    ) -> QualitySignal:
        state = self.state(reviewer_id)
        new_state, signal = apply_decision(
            state, outcome, latency_ms, self._thresholds, now=now,
        )
        self._states[state.reviewer_id] = new_state

        if signal.should_mirror:
            logger.warning(
                "Reviewer %s: consecutive-side bias (left run %d, right run %d)",
                state.reviewer_id, new_state.consecutive_left, new_state.consecutive_right,
            )
        if signal.should_show_popup:
            logger.warning(
                "Reviewer %s: %d short decisions in a row, popup #%d",
                state.reviewer_id, self._thresholds.short_streak_length,
                new_state.short_decision_streaks,
            )
        return signal

    def record_consistency_check(
        self,
        reviewer_id: str,
        consistent: bool,
    ) -> ReviewerQualityState:
        state = self.state(reviewer_id)
        new_state = apply_consistency_check(state, consistent)
        self._states[state.reviewer_id] = new_state
        return new_state

    def set_trust(
        self,
        reviewer_id: str,
        final_weight: Optional[float] = None,
        low_agreement_flag: Optional[bool] = None,
        agreement_rate: Optional[float] = None,
    ) -> ReviewerQualityState:
        """Store trust values computed by the aggregation layer.

        Raises ValueError if final_weight is negative or agreement_rate
        is outside [0, 1].
        """
        state = self.state(reviewer_id)
        validate_trust(final_weight, agreement_rate)

        new_state = replace(
            state,
            final_weight=state.final_weight if final_weight is None else final_weight,
            low_agreement_flag=(
                state.low_agreement_flag if low_agreement_flag is None else low_agreement_flag
            ),
            agreement_rate=state.agreement_rate if agreement_rate is None else agreement_rate,
        )
        self._states[state.reviewer_id] = new_state
        return new_state
