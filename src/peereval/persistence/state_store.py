"""State store — JSON-based persistence for session metadata.

Stores and recovers the session records (seed, config, quota inputs,
open/closed timestamps). Scheduler and quality state are not stored
here: they are rebuilt by replaying the event log.

This is a simple file-based store suitable for single-node deployment.
Production deployments would replace this with a database backend
while keeping the same interface.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from peereval.models.session import SessionConfig, SessionRecord

_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class StateStore:
    """JSON file-based state persistence.

    Usage:
        store = StateStore(Path("data/peereval_state.json"))
        store.save_sessions(coordinator.all_sessions())

        # On recovery:
        sessions = store.load_sessions()
    """

    def __init__(self, storage_path: Path) -> None:
        self._path = storage_path
        self._state: dict[str, Any] = {}
        if storage_path.exists():
            self._load()

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            self._state = json.load(f)

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as f:
            json.dump(self._state, f, indent=2, sort_keys=True, ensure_ascii=False)

    # ------------------------------------------------------------------
    # Session persistence
    # ------------------------------------------------------------------

    def save_sessions(self, sessions: list[SessionRecord]) -> None:
        """Serialize session records to state."""
        entries = {}
        for record in sessions:
            entries[record.session_id] = {
                "session_id": record.session_id,
                "project_id": record.project_id,
                "question_id": record.question_id,
                "random_seed": record.random_seed,
                "app_version": record.app_version,
                "config": record.config.to_dict(),
                "response_count": record.response_count,
                "reviewer_count": record.reviewer_count,
                "started_utc": _format_ts(record.started_utc),
                "closed_utc": _format_ts(record.closed_utc),
                "metadata": record.metadata,
            }
        self._state["sessions"] = entries
        self._save()

    def load_sessions(self) -> list[SessionRecord]:
        """Deserialize session records from state."""
        sessions = []
        for data in self._state.get("sessions", {}).values():
            sessions.append(SessionRecord(
                session_id=data["session_id"],
                project_id=data["project_id"],
                question_id=data["question_id"],
                random_seed=data["random_seed"],
                app_version=data["app_version"],
                config=SessionConfig.from_dict(data["config"]),
                response_count=data["response_count"],
                reviewer_count=data["reviewer_count"],
                started_utc=_parse_ts(data["started_utc"]),
                closed_utc=_parse_ts(data.get("closed_utc")),
                metadata=data.get("metadata", {}),
            ))
        return sessions


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(_TS_FORMAT) if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)
