"""Phase controller — balance → adaptive transition for one question session."""

from __future__ import annotations

import logging
import math

from peereval.models.comparison import Phase

logger = logging.getLogger(__name__)


class PhaseController:
    """Tracks the pairing phase against a completed-comparison threshold.

    The threshold is floor(ratio * total_target). Once the cumulative
    number of completed pairs reaches it the phase is ADAPTIVE for the
    rest of the session; there is no way back to BALANCE.
    """

    def __init__(self, total_target: int, threshold_ratio: float) -> None:
        self._threshold = math.floor(threshold_ratio * total_target)
        self._phase = Phase.BALANCE

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def threshold(self) -> int:
        return self._threshold

    def check(self, total_completed: int) -> Phase:
        """Re-evaluate after a recorded decision and return the phase."""
        if self._phase == Phase.BALANCE and total_completed >= self._threshold:
            self._phase = Phase.ADAPTIVE
            logger.info(
                "Phase switched to adaptive at %d completed comparisons (threshold %d)",
                total_completed, self._threshold,
            )
        return self._phase
