"""Score tracker — provisional Elo-like strength from pairwise outcomes.

Fixed-step updates, not a rating model: a win moves both items by the
same adjustment, a neutral verdict pulls both toward their mutual
average. The final ranking is computed downstream; these scores only
steer pairing in the adaptive phase.
"""

from __future__ import annotations

from peereval.models.comparison import Outcome, ResponseState


class ScoreTracker:
    """Applies outcome updates to a pair of ResponseStates.

    Usage:
        tracker = ScoreTracker(adjustment=0.1, neutral_pull=0.05)
        tracker.update(state_a, state_b, Outcome.LEFT)
    """

    def __init__(self, adjustment: float = 0.1, neutral_pull: float = 0.05) -> None:
        self._adjustment = adjustment
        self._neutral_pull = neutral_pull

    def update(
        self,
        state_a: ResponseState,
        state_b: ResponseState,
        outcome: Outcome,
    ) -> None:
        if outcome == Outcome.LEFT:
            state_a.temp_score += self._adjustment
            state_b.temp_score -= self._adjustment
            state_a.wins += 1
            state_b.losses += 1
        elif outcome == Outcome.RIGHT:
            state_b.temp_score += self._adjustment
            state_a.temp_score -= self._adjustment
            state_b.wins += 1
            state_a.losses += 1
        else:
            shift = (state_a.temp_score - state_b.temp_score) * self._neutral_pull
            state_a.temp_score -= shift
            state_b.temp_score += shift
