"""Policy module — typed access to scheduler and session configuration."""

from peereval.policy.resolver import PolicyResolver, PriorityWeights, QualityThresholds

__all__ = ["PolicyResolver", "PriorityWeights", "QualityThresholds"]
