"""Quality module — reviewer bias and speed monitoring."""

from peereval.quality.monitor import (
    QualityMonitor,
    apply_consistency_check,
    apply_decision,
    validate_trust,
)

__all__ = ["QualityMonitor", "apply_consistency_check", "apply_decision", "validate_trust"]
