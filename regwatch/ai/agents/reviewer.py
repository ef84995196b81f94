"""Reviewer: LLM review of DRAFT rules followed by the approval gate.

The LLM verdict is only advice. ``Approve`` becomes APPROVED solely for
T2/T3 rules at or above the auto-approve threshold; everything else that the
LLM would approve lands in PENDING_REVIEW with the verdict kept in
``reviewer_notes``.
"""

from dataclasses import dataclass

from sqlalchemy import select

from regwatch.ai.agents.prompts import AgentType
from regwatch.ai.agents.runner import AgentRunner
from regwatch.ai.agents.schemas import ReviewerInput, ReviewerOutput, ReviewResult
from regwatch.ai.agents.summaries import BatchSummary, pointer_summary, rule_payload
from regwatch.core.events import AuditLogger, BaseEvent, ConflictCreatedEvent
from regwatch.core.queue import WorkQueue
from regwatch.rules.confidence import clamp
from regwatch.rules.conflicts import active_rule, open_conflict
from regwatch.rules.state import AUTO_APPROVE_ACTOR, apply_transition, can_auto_approve
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import (
    ConflictType,
    RegulatoryRule,
    RuleStatus,
    WorkKind,
)
from regwatch.storage.session import session_scope
from regwatch.utils.config import get_settings
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)

REVIEWER_ACTOR = "REVIEWER"


@dataclass(frozen=True)
class Approve:
    confidence: float
    notes: str | None = None


@dataclass(frozen=True)
class Reject:
    confidence: float
    reason: str


@dataclass(frozen=True)
class EscalateHuman:
    confidence: float
    reason: str


@dataclass(frozen=True)
class EscalateArbiter:
    confidence: float
    reason: str


ReviewDecision = Approve | Reject | EscalateHuman | EscalateArbiter


def _issues_text(result: ReviewResult) -> str:
    return "; ".join(f"[{i.severity}] {i.description}" for i in result.issues_found)


DECISION_PARSERS = {
    "APPROVE": lambda r, c: Approve(c, r.reviewer_notes),
    "REJECT": lambda r, c: Reject(c, r.reviewer_notes or _issues_text(r) or "rejected by reviewer"),
    "ESCALATE_HUMAN": lambda r, c: EscalateHuman(
        c, r.human_review_reason or r.reviewer_notes or "reviewer requested human review"
    ),
    "ESCALATE_ARBITER": lambda r, c: EscalateArbiter(
        c, r.reviewer_notes or _issues_text(r) or "reviewer requested arbitration"
    ),
}


def parse_decision(result: ReviewResult) -> ReviewDecision:
    """Turn the raw reviewer verdict into a typed decision with clamped confidence."""
    return DECISION_PARSERS[result.decision](result, clamp(result.computed_confidence))


@dataclass
class ReviewOutcome:
    rule_id: int
    success: bool
    status: RuleStatus | None = None
    decision: ReviewDecision | None = None
    conflict_id: int | None = None
    agent_run_id: int | None = None
    error: str | None = None


class Reviewer:
    """Runs REVIEWER on DRAFT rules and applies the approval gate."""

    def __init__(
        self,
        runner: AgentRunner,
        session_factory: SessionFactory,
        queue: WorkQueue | None = None,
        audit: AuditLogger | None = None,
        auto_approve_threshold: float | None = None,
    ) -> None:
        self.runner = runner
        self._session_factory = session_factory
        self.queue = queue
        self.audit = audit or AuditLogger()
        self.auto_approve_threshold = (
            get_settings().review.auto_approve_threshold
            if auto_approve_threshold is None
            else auto_approve_threshold
        )

    async def review(self, rule_id: int) -> ReviewOutcome:
        with session_scope(self._session_factory) as db:
            rule = db.get(RegulatoryRule, rule_id)
            if rule is None:
                return ReviewOutcome(rule_id, False, error=f"Rule {rule_id} not found")
            if rule.status != RuleStatus.DRAFT:
                return ReviewOutcome(
                    rule_id, False, status=rule.status, error=f"Rule {rule_id} is {rule.status.value}, not DRAFT"
                )
            review_input = ReviewerInput(
                rule=rule_payload(rule),
                source_pointers=[pointer_summary(p) for p in rule.source_pointers],
            )

        run = await self.runner.run(
            AgentType.REVIEWER, review_input, ReviewerInput, ReviewerOutput, rule_id=rule_id
        )
        if not run.ok:
            logger.warning("review_failed_rule_kept_draft", rule_id=rule_id, error=str(run.error))
            return ReviewOutcome(
                rule_id, False, status=RuleStatus.DRAFT, agent_run_id=run.run_id, error=str(run.error)
            )

        decision = parse_decision(run.output.review_result)
        outcome = self._apply(rule_id, decision)
        outcome.agent_run_id = run.run_id
        return outcome

    def _apply(self, rule_id: int, decision: ReviewDecision) -> ReviewOutcome:
        events: list[BaseEvent] = []
        conflict_id = None

        with session_scope(self._session_factory) as db:
            rule = db.get(RegulatoryRule, rule_id)
            rule.confidence = decision.confidence

            match decision:
                case Approve(notes=notes) if can_auto_approve(rule, self.auto_approve_threshold):
                    rule.reviewer_notes = notes
                    events.append(
                        apply_transition(
                            rule,
                            RuleStatus.APPROVED,
                            AUTO_APPROVE_ACTOR,
                            "auto-approved",
                            auto_approve_threshold=self.auto_approve_threshold,
                        )
                    )
                case Approve(confidence=confidence, notes=notes):
                    rule.reviewer_notes = (
                        f"Reviewer decision: APPROVE (confidence {confidence:.2f}); "
                        f"{rule.risk_tier.value} requires human approval"
                        + (f"\n{notes}" if notes else "")
                    )
                    events.append(
                        apply_transition(
                            rule, RuleStatus.PENDING_REVIEW, REVIEWER_ACTOR, "human approval required"
                        )
                    )
                case Reject(reason=reason):
                    rule.reviewer_notes = reason
                    events.append(apply_transition(rule, RuleStatus.REJECTED, REVIEWER_ACTOR, reason))
                case EscalateHuman(reason=reason):
                    rule.reviewer_notes = reason
                    events.append(
                        apply_transition(rule, RuleStatus.PENDING_REVIEW, REVIEWER_ACTOR, reason)
                    )
                case EscalateArbiter(reason=reason):
                    rule.reviewer_notes = reason
                    events.append(
                        apply_transition(rule, RuleStatus.PENDING_REVIEW, REVIEWER_ACTOR, reason)
                    )
                    existing = active_rule(db, rule.concept_slug, exclude_id=rule.id)
                    if existing is not None:
                        conflict = open_conflict(
                            db,
                            ConflictType.VALUE_MISMATCH,
                            reason,
                            item_a_id=existing.id,
                            item_b_id=rule.id,
                            detected_by=REVIEWER_ACTOR,
                        )
                        conflict_id = conflict.id
                        events.append(
                            ConflictCreatedEvent(
                                conflict_id=conflict_id,
                                conflict_type=ConflictType.VALUE_MISMATCH.value,
                                detected_by=REVIEWER_ACTOR,
                            )
                        )
            status = rule.status

        for event in events:
            self.audit.record(event)

        if self.queue is not None:
            if conflict_id is not None:
                self.queue.enqueue(
                    WorkKind.ARBITRATE, {"conflict_id": conflict_id}, f"arbitrate:{conflict_id}"
                )
            if status == RuleStatus.APPROVED:
                self.queue.enqueue(WorkKind.RELEASE, {"rule_ids": [rule_id]}, f"release:{rule_id}")

        logger.info(
            "rule_reviewed",
            rule_id=rule_id,
            decision=type(decision).__name__,
            status=status.value,
            confidence=decision.confidence,
        )
        return ReviewOutcome(rule_id, True, status=status, decision=decision, conflict_id=conflict_id)

    async def run_reviewer_batch(self, limit: int = 20) -> BatchSummary:
        """Review DRAFT rules, oldest first. One failing rule never stops the batch."""
        with session_scope(self._session_factory) as db:
            rule_ids = db.scalars(
                select(RegulatoryRule.id)
                .where(RegulatoryRule.status == RuleStatus.DRAFT)
                .order_by(RegulatoryRule.created_at, RegulatoryRule.id)
                .limit(limit)
            ).all()

        summary = BatchSummary()
        for rule_id in rule_ids:
            summary.processed += 1
            outcome = await self.review(rule_id)
            if outcome.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
                summary.errors.append(f"rule {rule_id}: {outcome.error}")

        logger.info(
            "reviewer_batch_completed",
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
        )
        return summary
