"""Session module — quotas, session lifecycle and the live session registry."""

from peereval.session.coordinator import ReviewerProgressTracker, SessionCoordinator
from peereval.session.registry import SessionRegistry, SessionRuntime

__all__ = [
    "ReviewerProgressTracker",
    "SessionCoordinator",
    "SessionRegistry",
    "SessionRuntime",
]
