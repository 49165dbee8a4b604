"""Session coordinator — quotas, question-scoped sessions and reviewer progress.

Responsibilities:
- Compute the per-reviewer quota from response and reviewer counts.
- Keep at most one open session per (project_id, question_id).
- Recompute the stored quota when the roster changes, but only while
  the session has no recorded decisions.
- Track each reviewer's NOT_STARTED → IN_PROGRESS → COMPLETED progress.

Pure bookkeeping. Persistence and audit events are the service's job.
"""

from __future__ import annotations

import logging
import math
import secrets
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from peereval.errors import ConflictError, NotFoundError
from peereval.models.session import (
    ReviewerProgress,
    SessionConfig,
    SessionRecord,
)
from peereval.policy.resolver import PolicyResolver
from peereval.scheduling.scheduler import PairScheduler

logger = logging.getLogger(__name__)


class SessionCoordinator:
    """Owns session records and the quota rule.

    Usage:
        coordinator = SessionCoordinator(resolver)
        quota = coordinator.compute_quota(response_count=24, reviewer_count=24)
        record, created = coordinator.open_session("proj-1", "q1", 24, 24)
        ...
        coordinator.close_session("proj-1", "q1")
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        sessions: Optional[Iterable[SessionRecord]] = None,
    ) -> None:
        self._resolver = resolver
        self._sessions: dict[str, SessionRecord] = {}
        for record in sessions or ():
            self._sessions[record.session_id] = record

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    def compute_quota(self, response_count: int, reviewer_count: int) -> int:
        """Per-reviewer comparison quota.

        Every response should appear in target_per_response comparisons;
        each comparison covers two responses, and the work is split
        evenly across reviewers. A reviewer never needs more than the
        number of distinct pairs, so the quota is capped there, and the
        result is clamped to [MIN_PER_STUDENT, MAX_PER_STUDENT].
        Deterministic in its inputs.
        """
        if response_count < 0 or reviewer_count < 0:
            raise ValueError(
                f"Counts must be non-negative, got responses={response_count}, "
                f"reviewers={reviewer_count}"
            )
        low, high = self._resolver.quota_bounds()
        if reviewer_count == 0 or response_count < 2:
            return low

        total = math.ceil(response_count * self._resolver.target_per_response() / 2)
        per_reviewer = math.ceil(total / reviewer_count)
        distinct_pairs = response_count * (response_count - 1) // 2
        return max(low, min(high, per_reviewer, distinct_pairs))

    def default_config(self, quota: int) -> SessionConfig:
        defaults = self._resolver.session_defaults()
        thresholds = self._resolver.quality_thresholds()
        return SessionConfig(
            target_per_response=self._resolver.target_per_response(),
            reviewer_target_per_person=quota,
            pairing_strategy=defaults["pairing_strategy"],
            k_elo=defaults["k_elo"],
            allow_tie=defaults["allow_tie"],
            short_response_threshold_ms=thresholds.short_response_threshold_ms,
            consecutive_bias_threshold=thresholds.consecutive_bias_threshold,
            mirror_reshow_gap=defaults["mirror_reshow_gap"],
            duplicate_reeval_gap=defaults["duplicate_reeval_gap"],
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def find_open(self, project_id: str, question_id: str) -> Optional[SessionRecord]:
        key = (project_id, question_id)
        for record in self._sessions.values():
            if record.key == key and record.is_open:
                return record
        return None

    def get_open(self, project_id: str, question_id: str) -> SessionRecord:
        record = self.find_open(project_id, question_id)
        if record is None:
            raise NotFoundError(
                f"No open session for project {project_id}, question {question_id}"
            )
        return record

    def open_session(
        self,
        project_id: str,
        question_id: str,
        response_count: int,
        reviewer_count: int,
        seed: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[SessionRecord, bool]:
        """Return the open session for the question, creating one if none is open.

        The boolean is True when a new session was created.
        """
        existing = self.find_open(project_id, question_id)
        if existing is not None:
            return existing, False

        quota = self.compute_quota(response_count, reviewer_count)
        record = SessionRecord(
            session_id=str(uuid.uuid4()),
            project_id=project_id,
            question_id=question_id,
            random_seed=seed if seed is not None else secrets.token_hex(8),
            app_version=self._resolver.app_version(),
            config=self.default_config(quota),
            response_count=response_count,
            reviewer_count=reviewer_count,
            started_utc=now or datetime.now(timezone.utc),
        )
        self._sessions[record.session_id] = record
        logger.info(
            "Opened session %s for %s/%s: %d responses, %d reviewers, quota %d",
            record.session_id, project_id, question_id,
            response_count, reviewer_count, quota,
        )
        return record, True

    def close_session(
        self,
        project_id: str,
        question_id: str,
        now: Optional[datetime] = None,
    ) -> SessionRecord:
        record = self.get_open(project_id, question_id)
        record.closed_utc = now or datetime.now(timezone.utc)
        logger.info("Closed session %s for %s/%s", record.session_id, project_id, question_id)
        return record

    def forget(self, session_id: str) -> None:
        """Drop a session record entirely (used to undo a failed open)."""
        self._sessions.pop(session_id, None)

    def refresh_quota(
        self,
        project_id: str,
        question_id: str,
        response_count: int,
        reviewer_count: int,
        has_decisions: bool,
    ) -> bool:
        """Recompute the quota after a roster change.

        Returns True if the stored quota changed. Once decisions exist
        the stored quota is left alone so recorded progress stays valid.
        """
        record = self.get_open(project_id, question_id)
        if has_decisions:
            logger.info(
                "Session %s has decisions; keeping quota %d",
                record.session_id, record.quota,
            )
            return False

        quota = self.compute_quota(response_count, reviewer_count)
        changed = quota != record.quota
        record.config = replace(record.config, reviewer_target_per_person=quota)
        record.response_count = response_count
        record.reviewer_count = reviewer_count
        if changed:
            logger.info("Session %s quota updated to %d", record.session_id, quota)
        return changed

    def update_config(
        self,
        project_id: str,
        question_id: str,
        has_decisions: bool,
        **changes: Any,
    ) -> SessionRecord:
        """Change session tunables.

        Raises ConflictError when changing the quota of a session that
        already has decisions, ValueError for unknown fields or
        out-of-range values. An explicit quota is not held to the
        MIN/MAX_PER_STUDENT bounds, only to being a non-negative int.
        """
        record = self.get_open(project_id, question_id)
        known = set(record.config.to_dict())
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown session config fields: {sorted(unknown)}")
        if has_decisions and "reviewer_target_per_person" in changes:
            raise ConflictError(
                f"Session {record.session_id} has decisions; quota cannot change"
            )
        _validate_config_changes(changes)
        record.config = replace(record.config, **changes)
        return record

    def all_sessions(self) -> list[SessionRecord]:
        return list(self._sessions.values())

    def open_sessions(self) -> list[SessionRecord]:
        return [r for r in self._sessions.values() if r.is_open]


_INT_MINIMUMS: dict[str, int] = {
    "reviewer_target_per_person": 0,
    "target_per_response": 1,
    "short_response_threshold_ms": 1,
    "consecutive_bias_threshold": 1,
    "mirror_reshow_gap": 0,
    "duplicate_reeval_gap": 0,
}


def _validate_config_changes(changes: dict[str, Any]) -> None:
    for name, minimum in _INT_MINIMUMS.items():
        if name not in changes:
            continue
        value = changes[name]
        if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
            raise ValueError(f"{name} must be an integer >= {minimum}, got {value!r}")
    if "k_elo" in changes:
        k_elo = changes["k_elo"]
        if isinstance(k_elo, bool) or not isinstance(k_elo, (int, float)) or k_elo <= 0:
            raise ValueError(f"k_elo must be a positive number, got {k_elo!r}")
    if "allow_tie" in changes and not isinstance(changes["allow_tie"], bool):
        raise ValueError(f"allow_tie must be a boolean, got {changes['allow_tie']!r}")
    if "pairing_strategy" in changes:
        strategy = changes["pairing_strategy"]
        if not isinstance(strategy, str) or not strategy.strip():
            raise ValueError("pairing_strategy must be a non-empty string")


class ReviewerProgressTracker:
    """NOT_STARTED → IN_PROGRESS → COMPLETED for each reviewer on a question.

    COMPLETED is entered as soon as the reviewer has no quota left or no
    unjudged pair remains, and is never left.
    """

    _TRANSITIONS: dict[ReviewerProgress, frozenset[ReviewerProgress]] = {
        ReviewerProgress.NOT_STARTED: frozenset(
            {ReviewerProgress.IN_PROGRESS, ReviewerProgress.COMPLETED}
        ),
        ReviewerProgress.IN_PROGRESS: frozenset({ReviewerProgress.COMPLETED}),
        ReviewerProgress.COMPLETED: frozenset(),
    }

    def __init__(self, reviewer_ids: Iterable[str]) -> None:
        self._status: dict[str, ReviewerProgress] = {
            rid.strip(): ReviewerProgress.NOT_STARTED for rid in reviewer_ids
        }

    def status(self, reviewer_id: str) -> ReviewerProgress:
        status = self._status.get(reviewer_id.strip())
        if status is None:
            raise NotFoundError(f"Reviewer not found: {reviewer_id}")
        return status

    def statuses(self) -> dict[str, ReviewerProgress]:
        return dict(self._status)

    def sync(
        self,
        reviewer_id: str,
        scheduler: PairScheduler,
        started: bool = False,
    ) -> ReviewerProgress:
        """Bring a reviewer's status in line with the scheduler.

        started marks that a pair has been served to the reviewer.
        """
        current = self.status(reviewer_id)
        if current == ReviewerProgress.COMPLETED:
            return current

        if not scheduler.can_continue(reviewer_id):
            target = ReviewerProgress.COMPLETED
        elif started or scheduler.reviewer_state(reviewer_id).total_comparisons > 0:
            target = ReviewerProgress.IN_PROGRESS
        else:
            target = current

        if target != current:
            self._transition(reviewer_id.strip(), current, target)
        return target

    def sync_all(self, scheduler: PairScheduler) -> dict[str, ReviewerProgress]:
        for rid in list(self._status):
            self.sync(rid, scheduler)
        return self.statuses()

    def _transition(
        self,
        reviewer_id: str,
        current: ReviewerProgress,
        target: ReviewerProgress,
    ) -> None:
        if target not in self._TRANSITIONS[current]:
            raise ValueError(
                f"Illegal reviewer transition {current.value} → {target.value}"
            )
        self._status[reviewer_id] = target
        logger.debug("Reviewer %s: %s → %s", reviewer_id, current.value, target.value)
