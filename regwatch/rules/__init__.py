"""Rule lifecycle: state machine, confidence, predicates and conflicts."""

from regwatch.rules.confidence import ConfidenceEnvelope, aggregate_confidence
from regwatch.rules.predicates import evaluate, validate_applies_when
from regwatch.rules.state import (
    TRANSITIONS,
    RuleStateMachine,
    apply_transition,
    can_auto_approve,
)

__all__ = [
    "TRANSITIONS",
    "ConfidenceEnvelope",
    "RuleStateMachine",
    "aggregate_confidence",
    "apply_transition",
    "can_auto_approve",
    "evaluate",
    "validate_applies_when",
]
