"""Persistence layer — event log and state storage."""

from peereval.persistence.event_log import EventLog, EventRecord, EventKind
from peereval.persistence.state_store import StateStore

__all__ = ["EventLog", "EventRecord", "EventKind", "StateStore"]
