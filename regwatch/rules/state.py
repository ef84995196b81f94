"""Rule review state machine.

Transitions are checked against ``TRANSITIONS``; anything else raises
``InvalidTransitionError``. ``DRAFT -> APPROVED`` is additionally gated: only
T2/T3 rules at or above the auto-approve threshold may skip human review.

``apply_transition`` mutates a session-bound rule and returns the audit event;
callers record it after their session commits. ``RuleStateMachine`` wraps
that for the human actions on ``PENDING_REVIEW`` rules; given a queue, a
human approval also requests the release.
"""

from regwatch.core.events import AuditLogger, RuleStatusChangedEvent
from regwatch.core.queue import WorkQueue
from regwatch.exceptions import InvalidTransitionError, RecordNotFoundError
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import RegulatoryRule, RiskTier, RuleStatus, WorkKind
from regwatch.storage.session import session_scope
from regwatch.utils.config import get_settings
from regwatch.utils.datetime import utc_now
from regwatch.utils.logging import get_logger, log_rule_transition

logger = get_logger(__name__)

TRANSITIONS: dict[RuleStatus, frozenset[RuleStatus]] = {
    RuleStatus.DRAFT: frozenset(
        {RuleStatus.PENDING_REVIEW, RuleStatus.REJECTED, RuleStatus.APPROVED}
    ),
    RuleStatus.PENDING_REVIEW: frozenset({RuleStatus.APPROVED, RuleStatus.REJECTED}),
    RuleStatus.APPROVED: frozenset({RuleStatus.DEPRECATED}),
    RuleStatus.REJECTED: frozenset(),
    RuleStatus.DEPRECATED: frozenset(),
}

AUTO_APPROVE_TIERS = frozenset({RiskTier.T2, RiskTier.T3})
AUTO_APPROVE_ACTOR = "AUTO_APPROVE_SYSTEM"


def can_auto_approve(rule: RegulatoryRule, threshold: float) -> bool:
    """T0/T1 are always human-gated, whatever the confidence."""
    return rule.risk_tier in AUTO_APPROVE_TIERS and rule.confidence >= threshold


def apply_transition(
    rule: RegulatoryRule,
    to_status: RuleStatus,
    actor: str,
    reason: str | None = None,
    auto_approve_threshold: float | None = None,
) -> RuleStatusChangedEvent:
    """Move ``rule`` to ``to_status``.

    Raises:
        InvalidTransitionError: the move is not in the table, or is a
            DRAFT -> APPROVED that fails the auto-approve gate
    """
    from_status = rule.status
    if to_status not in TRANSITIONS[from_status]:
        raise InvalidTransitionError(
            f"Rule {rule.id} cannot move from {from_status.value} to {to_status.value}",
            rule_id=rule.id,
            current_state=from_status.value,
            attempted_state=to_status.value,
        )

    if from_status == RuleStatus.DRAFT and to_status == RuleStatus.APPROVED:
        threshold = (
            auto_approve_threshold
            if auto_approve_threshold is not None
            else get_settings().review.auto_approve_threshold
        )
        if not can_auto_approve(rule, threshold):
            raise InvalidTransitionError(
                f"Rule {rule.id} ({rule.risk_tier.value}, confidence {rule.confidence:.2f}) "
                "requires human review",
                rule_id=rule.id,
                current_state=from_status.value,
                attempted_state=to_status.value,
            )

    rule.status = to_status
    if to_status == RuleStatus.APPROVED:
        rule.approved_by = actor
        rule.approved_at = utc_now()
    if to_status == RuleStatus.DEPRECATED:
        rule.is_active = False

    log_rule_transition(logger, rule.id, from_status.value, to_status.value, actor)
    return RuleStatusChangedEvent(
        rule_id=rule.id,
        from_status=from_status.value,
        to_status=to_status.value,
        actor=actor,
        reason=reason,
    )


class RuleStateMachine:
    """Standalone transitions, one committed session each."""

    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditLogger | None = None,
        queue: WorkQueue | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.audit = audit or AuditLogger()
        self.queue = queue

    def transition(
        self,
        rule_id: int,
        to_status: RuleStatus,
        actor: str,
        reason: str | None = None,
    ) -> RegulatoryRule:
        with session_scope(self._session_factory) as db:
            rule = db.get(RegulatoryRule, rule_id)
            if rule is None:
                raise RecordNotFoundError(
                    f"Rule {rule_id} not found", entity_type="RegulatoryRule", entity_id=rule_id
                )
            event = apply_transition(rule, to_status, actor, reason)
        self.audit.record(event)
        return rule

    def approve_pending(self, rule_id: int, approved_by: str) -> RegulatoryRule:
        self._require_pending(rule_id)
        rule = self.transition(rule_id, RuleStatus.APPROVED, approved_by, "human approval")
        if self.queue is not None:
            self.queue.enqueue(WorkKind.RELEASE, {"rule_ids": [rule_id]}, f"release:{rule_id}")
        return rule

    def reject_pending(self, rule_id: int, reason: str, actor: str = "human") -> RegulatoryRule:
        self._require_pending(rule_id)
        return self.transition(rule_id, RuleStatus.REJECTED, actor, reason)

    def _require_pending(self, rule_id: int) -> None:
        with session_scope(self._session_factory) as db:
            rule = db.get(RegulatoryRule, rule_id)
            if rule is None:
                raise RecordNotFoundError(
                    f"Rule {rule_id} not found", entity_type="RegulatoryRule", entity_id=rule_id
                )
            if rule.status != RuleStatus.PENDING_REVIEW:
                raise InvalidTransitionError(
                    f"Rule {rule_id} is {rule.status.value}, not PENDING_REVIEW",
                    rule_id=rule_id,
                    current_state=rule.status.value,
                    attempted_state="human review",
                )
