"""Scheduler errors.

All errors subclass ValueError so callers that handle the engine's
validation failures generically (as the service layer does) keep working.
"""

from __future__ import annotations


class SchedulerError(ValueError):
    """Base class for rejected scheduler operations. No state was mutated."""


class NotFoundError(SchedulerError):
    """An unknown reviewer, item or session was referenced."""


class ConflictError(SchedulerError):
    """The operation collides with recorded state.

    Raised when a reviewer re-submits a pair they already judged, when a
    reviewer's quota is exhausted, or when a second session would be
    opened for a question that already has one.
    """


class InvalidDecisionError(SchedulerError):
    """A decision is malformed (self-pair, unknown outcome)."""
