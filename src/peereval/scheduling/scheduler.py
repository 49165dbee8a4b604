"""Pair scheduler — picks the next pair of responses for each reviewer.

One scheduler instance owns all state for a single question session:
- ResponseState per item (need, provisional score, win/loss counters)
- ReviewerState per reviewer (quota, recently seen items)
- CompletedPairSet per reviewer (unordered pairs already judged)
- Per-pair comparison counts across reviewers (coverage reporting)

Pair selection:
1. Enumerate every unordered pair the reviewer has not judged. The
   reviewer's own response is not excluded; callers filter upstream.
2. Score each pair by the current phase's priority.
3. Draw uniformly among the top candidates with the session's seeded PRNG.

This is O(n^2) in the number of responses per call, which is fine for
classes of tens to low hundreds of answers.

Recording a decision is all-or-nothing: preconditions are checked
before anything changes, then every counter is updated together.
Replaying a decision history runs the exact same transition, so a
rebuilt scheduler is identical to one that saw the decisions live.

Thread-safety: this class is not thread-safe. Callers serialise access
per question session (see peereval.session.registry).
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Iterable, Optional

from peereval.errors import ConflictError, InvalidDecisionError, NotFoundError, SchedulerError
from peereval.models.comparison import (
    Decision,
    Outcome,
    Pair,
    PairKey,
    Phase,
    ResponseItem,
    ResponseState,
    ReviewerState,
    pair_key,
)
from peereval.policy.resolver import PolicyResolver
from peereval.scheduling.phase import PhaseController
from peereval.scheduling.scores import ScoreTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PairCoverageStats:
    """How well the pair space is covered across all reviewers."""
    completed_pairs: int
    total_pairs: int
    pair_coverage_pct: int
    avg_comparisons_per_pair: float
    min_comparisons_per_pair: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed_pairs": self.completed_pairs,
            "total_pairs": self.total_pairs,
            "pair_coverage_pct": self.pair_coverage_pct,
            "avg_comparisons_per_pair": self.avg_comparisons_per_pair,
            "min_comparisons_per_pair": self.min_comparisons_per_pair,
        }


@dataclass(frozen=True)
class CompletionStats:
    """Session-wide progress."""
    total_completed: int
    target: int
    progress_pct: int
    phase: Phase
    completed_reviewers: int
    total_reviewers: int
    avg_comparisons_per_response: float
    is_complete: bool
    coverage: PairCoverageStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_completed": self.total_completed,
            "target": self.target,
            "progress_pct": self.progress_pct,
            "phase": self.phase.value,
            "completed_reviewers": self.completed_reviewers,
            "total_reviewers": self.total_reviewers,
            "avg_comparisons_per_response": self.avg_comparisons_per_response,
            "is_complete": self.is_complete,
            "coverage": self.coverage.to_dict(),
        }


@dataclass(frozen=True)
class ReviewerStats:
    """Progress of a single reviewer."""
    reviewer_id: str
    completed: int
    remaining: int
    target: int
    progress_pct: int
    estimated_seconds_remaining: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviewer_id": self.reviewer_id,
            "completed": self.completed,
            "remaining": self.remaining,
            "target": self.target,
            "progress_pct": self.progress_pct,
            "estimated_seconds_remaining": self.estimated_seconds_remaining,
        }


def _percent(part: float, whole: float) -> int:
    """Half-up rounded percentage; 0 when the whole is empty."""
    if whole <= 0:
        return 0
    return int(math.floor(part * 100.0 / whole + 0.5))


class PairScheduler:
    """Adaptive pairwise-comparison scheduler for one question session.

    Usage:
        scheduler = PairScheduler(responses, ["s1", "s2"], 10, resolver, seed="abc")
        pair = scheduler.next_pair("s1")
        if pair is not None:
            scheduler.record_decision("s1", pair.item_a_id, pair.item_b_id, Outcome.LEFT)
    """

    def __init__(
        self,
        responses: list[ResponseItem],
        reviewer_ids: list[str],
        per_reviewer_quota: int,
        resolver: PolicyResolver,
        history: Optional[Iterable[Decision]] = None,
        seed: Optional[str] = None,
    ) -> None:
        if per_reviewer_quota < 0:
            raise ValueError(f"Quota must be non-negative, got {per_reviewer_quota}")

        self._items: dict[str, ResponseItem] = {}
        for item in responses:
            if item.item_id in self._items:
                raise ValueError(f"Duplicate response item ID: {item.item_id}")
            self._items[item.item_id] = item
        self._order = list(self._items)

        window = resolver.recent_window()
        self._reviewers: dict[str, ReviewerState] = {}
        self._completed: dict[str, set[PairKey]] = {}
        for rid in reviewer_ids:
            canonical = rid.strip()
            if not canonical:
                raise ValueError("Cannot register reviewer with blank ID")
            if canonical in self._reviewers:
                raise ValueError(f"Duplicate reviewer ID: {canonical}")
            self._reviewers[canonical] = ReviewerState(
                reviewer_id=canonical,
                remaining_quota=per_reviewer_quota,
                target_quota=per_reviewer_quota,
                recent_window=window,
            )
            self._completed[canonical] = set()

        self._per_reviewer_quota = per_reviewer_quota
        self._total_target = len(self._reviewers) * per_reviewer_quota
        self._top_k = resolver.top_candidates()
        self._weights = resolver.priority_weights()
        self._min_per_pair = resolver.min_comparisons_per_pair()
        self._seconds_per_comparison = resolver.seconds_per_comparison()

        initial_need = (
            (2 * self._total_target) / len(self._order) if self._order else 0.0
        )
        self._states: dict[str, ResponseState] = {
            item_id: ResponseState(item_id=item_id, need=initial_need)
            for item_id in self._order
        }

        self._pair_counts: dict[PairKey, int] = {}
        self._total_completed = 0
        self._total_pairs = len(self._order) * (len(self._order) - 1) // 2

        self._scores = ScoreTracker(
            adjustment=resolver.score_adjustment(),
            neutral_pull=resolver.neutral_pull(),
        )
        self._phase = PhaseController(self._total_target, resolver.phase_threshold_ratio())

        self._rng = random.Random()
        if seed is not None:
            self._rng.seed(seed)
        else:
            self._rng.seed()

        logger.info(
            "Scheduler initialised: %d items, %d reviewers, quota %d, target %d, "
            "phase threshold %d",
            len(self._order), len(self._reviewers), per_reviewer_quota,
            self._total_target, self._phase.threshold,
        )

        if history is not None:
            self.replay(history)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def phase(self) -> Phase:
        return self._phase.phase

    @property
    def phase_threshold(self) -> int:
        return self._phase.threshold

    @property
    def total_target(self) -> int:
        return self._total_target

    @property
    def total_completed(self) -> int:
        return self._total_completed

    @property
    def per_reviewer_quota(self) -> int:
        return self._per_reviewer_quota

    @property
    def reviewer_ids(self) -> list[str]:
        return list(self._reviewers)

    @property
    def item_ids(self) -> list[str]:
        return list(self._order)

    @property
    def responses(self) -> list[ResponseItem]:
        return [self._items[item_id] for item_id in self._order]

    def reviewer_state(self, reviewer_id: str) -> ReviewerState:
        """Live reviewer state. Callers must not mutate it."""
        return self._require_reviewer(reviewer_id)

    def item_state(self, item_id: str) -> ResponseState:
        """Copy of one item's provisional state."""
        state = self._states.get(item_id)
        if state is None:
            raise NotFoundError(f"Response item not found: {item_id}")
        return replace(state)

    def item_states(self) -> dict[str, ResponseState]:
        """Copies of every item's provisional state, in response order."""
        return {item_id: replace(self._states[item_id]) for item_id in self._order}

    def completed_pairs(self, reviewer_id: str) -> frozenset[PairKey]:
        reviewer = self._require_reviewer(reviewer_id)
        return frozenset(self._completed[reviewer.reviewer_id])

    def pair_count(self, item_a_id: str, item_b_id: str) -> int:
        """How many reviewers have judged this pair so far."""
        return self._pair_counts.get(pair_key(item_a_id, item_b_id), 0)

    # ------------------------------------------------------------------
    # Pair selection
    # ------------------------------------------------------------------

    def has_candidates(self, reviewer_id: str) -> bool:
        """True while the reviewer has at least one unjudged pair left."""
        reviewer = self._require_reviewer(reviewer_id)
        return len(self._completed[reviewer.reviewer_id]) < self._total_pairs

    def can_continue(self, reviewer_id: str) -> bool:
        reviewer = self._require_reviewer(reviewer_id)
        return reviewer.remaining_quota > 0 and self.has_candidates(reviewer_id)

    def candidates(self, reviewer_id: str) -> list[Pair]:
        """Every pair the reviewer has not judged, highest priority first.

        The sort is stable, so ties keep response order.
        """
        reviewer = self._require_reviewer(reviewer_id)
        done = self._completed[reviewer.reviewer_id]
        pairs: list[Pair] = []
        for i, a in enumerate(self._order):
            for b in self._order[i + 1:]:
                if pair_key(a, b) in done:
                    continue
                pairs.append(Pair(a, b, self.priority(a, b, reviewer)))
        pairs.sort(key=lambda p: p.priority, reverse=True)
        return pairs

    def priority(self, item_a_id: str, item_b_id: str, reviewer: ReviewerState) -> float:
        """Phase-dependent priority of a pair for a reviewer, floored at 0.

        balance:  need(A) + need(B)
        adaptive: base - gap_w * |score gap| + need_w * (need(A) + need(B))
                  - recency_w * (A/B occurrences in the recent buffer)
        """
        a = self._states[item_a_id]
        b = self._states[item_b_id]
        need = a.need + b.need

        if self._phase.phase == Phase.BALANCE:
            return max(0.0, need)

        w = self._weights
        gap = abs(a.temp_score - b.temp_score)
        recency = reviewer.recency_count(item_a_id, item_b_id)
        value = (
            w.adaptive_base
            - w.score_gap_weight * gap
            + w.need_weight * need
            - w.recency_penalty * recency
        )
        return max(0.0, value)

    def next_pair(self, reviewer_id: str) -> Optional[Pair]:
        """Choose the next pair for a reviewer.

        Returns None when the reviewer's quota is used up or every pair
        has already been judged by them. That is the normal end of a
        reviewer's work, not an error.
        """
        reviewer = self._require_reviewer(reviewer_id)
        if reviewer.remaining_quota <= 0:
            return None

        pairs = self.candidates(reviewer.reviewer_id)
        if not pairs:
            return None

        top = pairs[: max(1, self._top_k)]
        chosen = self._rng.choice(top)
        logger.debug(
            "Reviewer %s: drew %s vs %s (priority %.2f) from %d of %d candidates [%s]",
            reviewer.reviewer_id, chosen.item_a_id, chosen.item_b_id,
            chosen.priority, len(top), len(pairs), self._phase.phase.value,
        )
        return chosen

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def check_decision(
        self,
        reviewer_id: str,
        item_a_id: str,
        item_b_id: str,
    ) -> ReviewerState:
        """Validate a decision without mutating anything.

        Raises:
            NotFoundError: unknown reviewer or item.
            InvalidDecisionError: an item paired with itself.
            ConflictError: pair already judged by this reviewer, or the
                reviewer has no quota left.
        """
        reviewer = self._require_reviewer(reviewer_id)
        for item_id in (item_a_id, item_b_id):
            if item_id not in self._states:
                raise NotFoundError(f"Response item not found: {item_id}")
        if item_a_id == item_b_id:
            raise InvalidDecisionError(f"Cannot compare item {item_a_id} with itself")
        if pair_key(item_a_id, item_b_id) in self._completed[reviewer.reviewer_id]:
            raise ConflictError(
                f"Reviewer {reviewer.reviewer_id} already judged pair "
                f"{item_a_id}/{item_b_id}"
            )
        if reviewer.remaining_quota <= 0:
            raise ConflictError(f"Reviewer {reviewer.reviewer_id} has no quota remaining")
        return reviewer

    def record_decision(
        self,
        reviewer_id: str,
        item_a_id: str,
        item_b_id: str,
        outcome: Outcome | str,
        latency_ms: int = 0,
        timestamp_utc: Optional[datetime] = None,
    ) -> Decision:
        """Record a judgment and update every affected counter.

        Returns the Decision as recorded. Raises (see check_decision)
        with no state changed if the decision is rejected.
        """
        parsed = Outcome.parse(outcome)
        reviewer = self.check_decision(reviewer_id, item_a_id, item_b_id)
        decision = Decision(
            reviewer_id=reviewer.reviewer_id,
            item_a_id=item_a_id,
            item_b_id=item_b_id,
            outcome=parsed,
            latency_ms=latency_ms,
            timestamp_utc=timestamp_utc,
        )
        self._apply(reviewer, decision)
        return decision

    def replay(self, history: Iterable[Decision]) -> int:
        """Apply past decisions in order. Returns how many were applied.

        Decisions that would be rejected live (items outside this
        response set, unknown reviewers, repeated pairs, exhausted
        quota) are skipped rather than aborting the rebuild.
        """
        applied = 0
        skipped = 0
        for decision in history:
            try:
                reviewer = self.check_decision(
                    decision.reviewer_id, decision.item_a_id, decision.item_b_id,
                )
            except SchedulerError as e:
                skipped += 1
                logger.warning("Skipping decision on replay: %s", e)
                continue
            self._apply(reviewer, decision)
            applied += 1
        logger.info(
            "Replayed %d decisions (%d skipped); phase %s",
            applied, skipped, self._phase.phase.value,
        )
        return applied

    def _apply(self, reviewer: ReviewerState, decision: Decision) -> None:
        """The single state transition shared by live recording and replay."""
        key = decision.key
        self._completed[reviewer.reviewer_id].add(key)
        self._pair_counts[key] = self._pair_counts.get(key, 0) + 1
        self._total_completed += 1

        reviewer.remaining_quota -= 1
        reviewer.total_comparisons += 1
        reviewer.remember(decision.item_a_id, decision.item_b_id)

        state_a = self._states[decision.item_a_id]
        state_b = self._states[decision.item_b_id]
        for state in (state_a, state_b):
            state.need = max(0.0, state.need - 1)
            state.total_comparisons += 1

        self._scores.update(state_a, state_b, decision.outcome)
        self._phase.check(self._total_completed)

        logger.debug(
            "Reviewer %s judged %s vs %s: %s (remaining %d)",
            reviewer.reviewer_id, decision.item_a_id, decision.item_b_id,
            decision.outcome.value, reviewer.remaining_quota,
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def pair_coverage_stats(self) -> PairCoverageStats:
        covered = sum(
            1 for count in self._pair_counts.values() if count >= self._min_per_pair
        )
        total_judgments = sum(self._pair_counts.values())
        avg = total_judgments / self._total_pairs if self._total_pairs else 0.0
        return PairCoverageStats(
            completed_pairs=covered,
            total_pairs=self._total_pairs,
            pair_coverage_pct=_percent(covered, self._total_pairs),
            avg_comparisons_per_pair=round(avg, 1),
            min_comparisons_per_pair=self._min_per_pair,
        )

    def completion_stats(self) -> CompletionStats:
        total_reviewers = len(self._reviewers)
        completed_reviewers = sum(
            1 for rid in self._reviewers if not self.can_continue(rid)
        )
        avg_per_response = (
            (self._total_completed * 2) / len(self._order) if self._order else 0.0
        )
        return CompletionStats(
            total_completed=self._total_completed,
            target=self._total_target,
            progress_pct=_percent(self._total_completed, self._total_target),
            phase=self._phase.phase,
            completed_reviewers=completed_reviewers,
            total_reviewers=total_reviewers,
            avg_comparisons_per_response=round(avg_per_response, 1),
            is_complete=completed_reviewers == total_reviewers,
            coverage=self.pair_coverage_stats(),
        )

    def reviewer_stats(self, reviewer_id: str) -> ReviewerStats:
        reviewer = self._require_reviewer(reviewer_id)
        return ReviewerStats(
            reviewer_id=reviewer.reviewer_id,
            completed=reviewer.completed,
            remaining=reviewer.remaining_quota,
            target=reviewer.target_quota,
            progress_pct=_percent(reviewer.completed, reviewer.target_quota),
            estimated_seconds_remaining=(
                reviewer.remaining_quota * self._seconds_per_comparison
            ),
        )

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _require_reviewer(self, reviewer_id: str) -> ReviewerState:
        reviewer = self._reviewers.get(reviewer_id.strip())
        if reviewer is None:
            raise NotFoundError(f"Reviewer not found: {reviewer_id}")
        return reviewer
