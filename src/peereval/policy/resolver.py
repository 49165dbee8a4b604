"""Policy resolver — loads scheduler_params.json and session_policy.json
and exposes every tunable as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any


DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[3] / "config"


@dataclass(frozen=True)
class PriorityWeights:
    """Adaptive-phase pair priority coefficients."""
    adaptive_base: float
    score_gap_weight: float
    need_weight: float
    recency_penalty: float


@dataclass(frozen=True)
class QualityThresholds:
    """Resolved reviewer quality thresholds."""
    short_response_threshold_ms: int
    consecutive_bias_threshold: int
    short_streak_length: int
    popup_cooldown_comparisons: int


class PolicyResolver:
    """Loads and resolves scheduler and session policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        low, high = resolver.quota_bounds()
        thresholds = resolver.quality_thresholds()
    """

    def __init__(self, params: dict[str, Any], policy: dict[str, Any]) -> None:
        self._params = params
        self._policy = policy
        self._validate_versions()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        params = _load_json(config_dir / "scheduler_params.json")
        policy = _load_json(config_dir / "session_policy.json")
        return cls(params, policy)

    @classmethod
    def default(cls) -> PolicyResolver:
        """Load the config directory shipped at the repository root."""
        return cls.from_config_dir(DEFAULT_CONFIG_DIR)

    def _validate_versions(self) -> None:
        if "version" not in self._params:
            raise ValueError("scheduler_params.json missing version")
        if "version" not in self._policy:
            raise ValueError("session_policy.json missing version")

    # ------------------------------------------------------------------
    # Provisional scoring
    # ------------------------------------------------------------------

    def score_adjustment(self) -> float:
        """Return the temp-score step applied to a winner and a loser."""
        return self._params["scoring"]["adjustment_factor"]

    def neutral_pull(self) -> float:
        """Return the fraction of the score gap closed by a neutral verdict."""
        return self._params["scoring"]["neutral_pull"]

    # ------------------------------------------------------------------
    # Phase and selection
    # ------------------------------------------------------------------

    def phase_threshold_ratio(self) -> float:
        """Return the share of target comparisons that flips to adaptive."""
        return self._params["phase"]["threshold_ratio"]

    def top_candidates(self) -> int:
        """Return how many top-priority pairs a random draw chooses among."""
        return self._params["selection"]["top_candidates"]

    def recent_window(self) -> int:
        """Return the length of a reviewer's recently-seen item buffer."""
        return self._params["selection"]["recent_window"]

    def priority_weights(self) -> PriorityWeights:
        p = self._params["priority"]
        return PriorityWeights(
            adaptive_base=p["adaptive_base"],
            score_gap_weight=p["score_gap_weight"],
            need_weight=p["need_weight"],
            recency_penalty=p["recency_penalty"],
        )

    def min_comparisons_per_pair(self) -> int:
        """Return the per-pair comparison count that counts as covered."""
        return self._params["coverage"]["min_comparisons_per_pair"]

    # ------------------------------------------------------------------
    # Quotas
    # ------------------------------------------------------------------

    def quota_bounds(self) -> tuple[int, int]:
        """Return (MIN_PER_STUDENT, MAX_PER_STUDENT)."""
        q = self._policy["quota"]
        low, high = q["MIN_PER_STUDENT"], q["MAX_PER_STUDENT"]
        if low > high:
            raise ValueError(
                f"Quota bounds inverted: MIN_PER_STUDENT={low} > MAX_PER_STUDENT={high}"
            )
        return low, high

    def target_per_response(self) -> int:
        """Return how many comparisons each response should appear in."""
        return self._policy["quota"]["target_per_response"]

    def seconds_per_comparison(self) -> int:
        """Return the assumed average time a reviewer spends per comparison."""
        return self._policy["progress"]["seconds_per_comparison"]

    # ------------------------------------------------------------------
    # Sessions and quality
    # ------------------------------------------------------------------

    def app_version(self) -> str:
        return self._policy["app_version"]

    def session_defaults(self) -> dict[str, Any]:
        """Return the default session tunables (strategy, k_elo, gaps)."""
        return dict(self._policy["session_defaults"])

    def quality_thresholds(self) -> QualityThresholds:
        q = self._policy["quality"]
        return QualityThresholds(
            short_response_threshold_ms=q["short_response_threshold_ms"],
            consecutive_bias_threshold=q["consecutive_bias_threshold"],
            short_streak_length=q["short_streak_length"],
            popup_cooldown_comparisons=q["popup_cooldown_comparisons"],
        )


def _load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file or raise with clear path."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
