"""Append-only event log — the canonical record of every comparison session.

Every recorded decision, session open/close, quota change and trust
update is appended as an immutable event. The log is:
1. The durable history a question session is rebuilt from by replay.
2. The audit trail for reviewing how a ranking came about.

In-memory scheduler and quality state are caches of this log. A
decision only reaches the scheduler after its event is appended.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from peereval.models.comparison import Decision, Outcome
from peereval.models.session import SessionConfig, SessionRecord

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
# Decision times round-trip at microsecond precision.
_DECISION_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class EventKind(str, enum.Enum):
    """Classification of session events."""
    SESSION_OPENED = "session_opened"
    SESSION_CLOSED = "session_closed"
    QUOTA_UPDATED = "quota_updated"
    CONFIG_UPDATED = "config_updated"
    DECISION_RECORDED = "decision_recorded"
    TRUST_UPDATED = "trust_updated"
    CONSISTENCY_CHECKED = "consistency_checked"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the session log.

    The event_hash is computed at creation time over the canonical JSON
    form and re-verified when the log is loaded from disk.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str  # SHA-256 of canonical JSON

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime(_TS_FORMAT)
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(event_id, event_kind.value, ts_str, actor_id, payload),
        )

    def belongs_to(
        self,
        project_id: str,
        question_id: str,
        session_id: Optional[str] = None,
    ) -> bool:
        """True if the event is about this question (and session, if given)."""
        if session_id is not None and self.payload.get("session_id") != session_id:
            return False
        return (
            self.payload.get("project_id") == project_id
            and self.payload.get("question_id") == question_id
        )


def decision_payload(
    project_id: str,
    question_id: str,
    decision: Decision,
    session_id: Optional[str] = None,
) -> dict[str, Any]:
    """Serialise a decision into an event payload."""
    return {
        "project_id": project_id,
        "question_id": question_id,
        "session_id": session_id,
        "reviewer_id": decision.reviewer_id,
        "item_a_id": decision.item_a_id,
        "item_b_id": decision.item_b_id,
        "outcome": decision.outcome.value,
        "latency_ms": decision.latency_ms,
        "decided_utc": (
            decision.timestamp_utc.strftime(_DECISION_TS_FORMAT)
            if decision.timestamp_utc
            else None
        ),
    }


def decision_from_payload(payload: dict[str, Any]) -> Decision:
    decided = None
    if payload.get("decided_utc"):
        decided = datetime.strptime(payload["decided_utc"], _DECISION_TS_FORMAT).replace(
            tzinfo=timezone.utc
        )
    return Decision(
        reviewer_id=payload["reviewer_id"],
        item_a_id=payload["item_a_id"],
        item_b_id=payload["item_b_id"],
        outcome=Outcome(payload["outcome"]),
        latency_ms=payload.get("latency_ms", 0),
        timestamp_utc=decided,
    )


class EventLog:
    """Append-only event log with optional file persistence.

    Events can only be appended, never modified or deleted.
    The log can be persisted to a JSONL file (one JSON object per line)
    and loaded back for recovery.

    Thread-safety: not thread-safe. The service serialises appends.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        The file write happens first; if it fails the in-memory log is
        left untouched and the OSError propagates.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")

        if self._storage_path:
            self._append_to_file(event)

        self._events.append(event)
        self._event_ids.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def question_events(
        self,
        project_id: str,
        question_id: str,
        session_id: Optional[str] = None,
    ) -> list[EventRecord]:
        """Return every event of one question, in append order.

        With session_id, only events written by that session.
        """
        return [
            e for e in self._events if e.belongs_to(project_id, question_id, session_id)
        ]

    def decision_history(
        self,
        project_id: str,
        question_id: str,
        session_id: Optional[str] = None,
    ) -> list[Decision]:
        """Return the decisions of one question, in append order."""
        return [
            decision_from_payload(e.payload)
            for e in self.question_events(project_id, question_id, session_id)
            if e.event_kind == EventKind.DECISION_RECORDED
        ]

    def has_decisions(
        self,
        project_id: str,
        question_id: str,
        session_id: Optional[str] = None,
    ) -> bool:
        return any(
            e.event_kind == EventKind.DECISION_RECORDED
            and e.belongs_to(project_id, question_id, session_id)
            for e in self._events
        )

    def session_records(self, app_version: str) -> list[SessionRecord]:
        """Rebuild session records from the lifecycle events, in append order.

        Opens, closes, quota refreshes and config changes are applied in
        the order they were logged. Sessions whose open event carries no
        app_version get the one passed in.
        """
        records: dict[str, SessionRecord] = {}
        for event in self._events:
            payload = event.payload
            if event.event_kind == EventKind.SESSION_OPENED:
                records[payload["session_id"]] = SessionRecord(
                    session_id=payload["session_id"],
                    project_id=payload["project_id"],
                    question_id=payload["question_id"],
                    random_seed=payload["random_seed"],
                    app_version=payload.get("app_version", app_version),
                    config=SessionConfig.from_dict(payload["config"]),
                    response_count=payload["response_count"],
                    reviewer_count=payload["reviewer_count"],
                    started_utc=_parse_event_ts(event.timestamp_utc),
                )
                continue

            record = records.get(payload.get("session_id"))
            if record is None:
                continue
            if event.event_kind == EventKind.SESSION_CLOSED:
                record.closed_utc = _parse_event_ts(event.timestamp_utc)
            elif event.event_kind == EventKind.QUOTA_UPDATED:
                record.config = replace(
                    record.config, reviewer_target_per_person=payload["quota"],
                )
                record.response_count = payload["response_count"]
                record.reviewer_count = payload["reviewer_count"]
            elif event.event_kind == EventKind.CONFIG_UPDATED:
                record.config = replace(record.config, **payload["changes"])
        return list(records.values())

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: EventRecord) -> None:
        """Append a single event to the JSONL file."""
        record = {
            "event_id": event.event_id,
            "event_kind": event.event_kind.value,
            "timestamp_utc": event.timestamp_utc,
            "actor_id": event.actor_id,
            "payload": event.payload,
            "event_hash": event.event_hash,
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs (replay protection on recovery).
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)

                event_id = data["event_id"]
                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=data["event_id"],
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event.event_id)
        logger.info("Loaded %d events from %s", len(self._events), path)


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


def _parse_event_ts(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)
