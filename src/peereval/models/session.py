"""Session models — question-scoped comparison sessions and reviewer progress.

A session is scoped to (project_id, question_id). At most one session per
key is open at a time; a closed session is kept for the record and a new
one may be opened afterwards.

Reviewer progress on a question:
    NOT_STARTED → IN_PROGRESS → COMPLETED
    NOT_STARTED → COMPLETED    (nothing to compare, or zero quota)
COMPLETED is terminal for that question.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


SessionKey = tuple[str, str]


class ReviewerProgress(str, enum.Enum):
    """Lifecycle of one reviewer on one question."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class SessionConfig:
    """Tunables fixed for the lifetime of a session."""
    target_per_response: int
    reviewer_target_per_person: int
    pairing_strategy: str
    k_elo: float
    allow_tie: bool
    short_response_threshold_ms: int
    consecutive_bias_threshold: int
    mirror_reshow_gap: int
    duplicate_reeval_gap: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_per_response": self.target_per_response,
            "reviewer_target_per_person": self.reviewer_target_per_person,
            "pairing_strategy": self.pairing_strategy,
            "k_elo": self.k_elo,
            "allow_tie": self.allow_tie,
            "short_response_threshold_ms": self.short_response_threshold_ms,
            "consecutive_bias_threshold": self.consecutive_bias_threshold,
            "mirror_reshow_gap": self.mirror_reshow_gap,
            "duplicate_reeval_gap": self.duplicate_reeval_gap,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionConfig:
        return cls(
            target_per_response=data["target_per_response"],
            reviewer_target_per_person=data["reviewer_target_per_person"],
            pairing_strategy=data["pairing_strategy"],
            k_elo=data["k_elo"],
            allow_tie=data["allow_tie"],
            short_response_threshold_ms=data["short_response_threshold_ms"],
            consecutive_bias_threshold=data["consecutive_bias_threshold"],
            mirror_reshow_gap=data["mirror_reshow_gap"],
            duplicate_reeval_gap=data["duplicate_reeval_gap"],
        )


@dataclass
class SessionRecord:
    """Metadata for one question session.

    response_count and reviewer_count are the inputs the quota was
    computed from; they let the coordinator detect a changed roster.
    """
    session_id: str
    project_id: str
    question_id: str
    random_seed: str
    app_version: str
    config: SessionConfig
    response_count: int
    reviewer_count: int
    started_utc: datetime
    closed_utc: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> SessionKey:
        return (self.project_id, self.question_id)

    @property
    def is_open(self) -> bool:
        return self.closed_utc is None

    @property
    def quota(self) -> int:
        return self.config.reviewer_target_per_person
