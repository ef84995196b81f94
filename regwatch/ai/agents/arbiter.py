"""Arbiter: resolves OPEN conflicts between rules.

Source conflicts (raised by the composer before any rule exists) go straight
to a human. Rule conflicts are arbitrated by the LLM, then overridden by the
escalation criteria; when the LLM is unavailable the deterministic
tiebreakers decide (authority rank, lex posterior, lower id).
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import select

from regwatch.ai.agents.prompts import AgentType
from regwatch.ai.agents.runner import AgentRunner
from regwatch.ai.agents.schemas import Arbitration, ArbiterInput, ArbiterOutput
from regwatch.ai.agents.summaries import BatchSummary, rule_summary
from regwatch.core.events import AuditLogger, BaseEvent, ConflictResolvedEvent
from regwatch.rules.conflicts import AUTHORITY_RANK
from regwatch.rules.state import apply_transition
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import (
    ConflictStatus,
    ConflictType,
    RegulatoryConflict,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
    SourcePointer,
)
from regwatch.storage.session import session_scope
from regwatch.utils.config import get_settings
from regwatch.utils.datetime import ensure_aware, utc_now
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)

ARBITER_ACTOR = "ARBITER"


class ArbitrationDecision(str, Enum):
    RULE_A_PREVAILS = "RULE_A_PREVAILS"
    RULE_B_PREVAILS = "RULE_B_PREVAILS"
    MERGE_RULES = "MERGE_RULES"
    ESCALATE_TO_HUMAN = "ESCALATE_TO_HUMAN"


@dataclass
class ArbitrationOutcome:
    conflict_id: int
    success: bool
    decision: ArbitrationDecision | None = None
    escalation_reason: str | None = None
    agent_run_id: int | None = None
    error: str | None = None

    @property
    def escalated(self) -> bool:
        return self.decision == ArbitrationDecision.ESCALATE_TO_HUMAN


def decision_for(arbitration: Arbitration, rule_a_id: int, rule_b_id: int) -> ArbitrationDecision:
    if arbitration.requires_human_review:
        return ArbitrationDecision.ESCALATE_TO_HUMAN
    winner = (arbitration.resolution.winning_item_id or "").strip().lower()
    if winner == str(rule_a_id):
        return ArbitrationDecision.RULE_A_PREVAILS
    if winner == str(rule_b_id):
        return ArbitrationDecision.RULE_B_PREVAILS
    if winner == "merge":
        return ArbitrationDecision.MERGE_RULES
    return ArbitrationDecision.ESCALATE_TO_HUMAN


def escalation_reason(
    rule_a: RegulatoryRule,
    rule_b: RegulatoryRule,
    arbitration: Arbitration,
    min_confidence: float = 0.8,
    min_rule_confidence: float = 0.85,
) -> str | None:
    """First escalation criterion that applies, or None when the LLM verdict may stand."""
    strategy = arbitration.resolution.resolution_strategy
    if arbitration.confidence < min_confidence:
        return "low_confidence"
    if rule_a.risk_tier == RiskTier.T0 and rule_b.risk_tier == RiskTier.T0:
        return "both_t0"
    if strategy == "hierarchy" and rule_a.authority_level == rule_b.authority_level:
        return "equal_authority"
    if strategy == "temporal" and ensure_aware(rule_a.effective_from) == ensure_aware(rule_b.effective_from):
        return "same_effective_date"
    if rule_a.confidence < min_rule_confidence or rule_b.confidence < min_rule_confidence:
        return "low_rule_confidence"
    return None


def _newer(a: datetime | None, b: datetime | None) -> int:
    """1 if ``a`` is newer, -1 if ``b`` is, 0 when undecidable."""
    a, b = ensure_aware(a), ensure_aware(b)
    if a is None or b is None or a == b:
        return 0
    return 1 if a > b else -1


def deterministic_winner(rule_a: RegulatoryRule, rule_b: RegulatoryRule) -> tuple[RegulatoryRule, str]:
    rank_a, rank_b = AUTHORITY_RANK[rule_a.authority_level], AUTHORITY_RANK[rule_b.authority_level]
    if rank_a != rank_b:
        winner = rule_a if rank_a < rank_b else rule_b
        return winner, f"source hierarchy: {winner.authority_level.value} prevails"

    newer = _newer(rule_a.effective_from, rule_b.effective_from)
    if newer:
        winner = rule_a if newer > 0 else rule_b
        return winner, f"lex posterior: rule {winner.id} is effective later"

    winner = rule_a if rule_a.id < rule_b.id else rule_b
    return winner, "same authority and effective date, lower id prevails"


def get_pending_conflicts(session_factory: SessionFactory, limit: int = 10) -> list[int]:
    """OPEN conflict ids, oldest first."""
    with session_scope(session_factory) as db:
        return list(
            db.scalars(
                select(RegulatoryConflict.id)
                .where(RegulatoryConflict.status == ConflictStatus.OPEN)
                .order_by(RegulatoryConflict.created_at, RegulatoryConflict.id)
                .limit(limit)
            ).all()
        )


def _retire_loser(loser: RegulatoryRule, winner_id: int, conflict_id: int) -> BaseEvent | None:
    reason = f"lost arbitration of conflict {conflict_id} to rule {winner_id}"
    if loser.status == RuleStatus.APPROVED:
        return apply_transition(loser, RuleStatus.DEPRECATED, ARBITER_ACTOR, reason)
    if loser.status in (RuleStatus.DRAFT, RuleStatus.PENDING_REVIEW):
        return apply_transition(loser, RuleStatus.REJECTED, ARBITER_ACTOR, reason)
    return None


class Arbiter:
    def __init__(
        self,
        runner: AgentRunner,
        session_factory: SessionFactory,
        audit: AuditLogger | None = None,
    ) -> None:
        review = get_settings().review
        self.runner = runner
        self._session_factory = session_factory
        self.audit = audit or AuditLogger()
        self.min_confidence = review.arbiter_min_confidence
        self.min_rule_confidence = review.arbiter_min_rule_confidence

    async def arbitrate(self, conflict_id: int) -> ArbitrationOutcome:
        with session_scope(self._session_factory) as db:
            conflict = db.get(RegulatoryConflict, conflict_id)
            if conflict is None:
                return ArbitrationOutcome(conflict_id, False, error=f"Conflict {conflict_id} not found")
            if conflict.status != ConflictStatus.OPEN:
                return ArbitrationOutcome(
                    conflict_id, False, error=f"Conflict {conflict_id} is {conflict.status.value}"
                )
            if conflict.conflict_type == ConflictType.SOURCE_CONFLICT:
                outcome = self._source_conflict(db, conflict)
                conflict_status = conflict.status
            else:
                rule_a, rule_b = conflict.item_a, conflict.item_b
                if rule_a is None or rule_b is None:
                    return ArbitrationOutcome(
                        conflict_id, False, error=f"Conflict {conflict_id} does not reference two rules"
                    )
                arbiter_input = ArbiterInput(
                    conflict_id=conflict.id,
                    conflict_type=conflict.conflict_type.value,
                    description=conflict.description,
                    rule_a=rule_summary(rule_a),
                    rule_b=rule_summary(rule_b),
                )
                outcome = None

        if outcome is not None:
            self.audit.record(
                ConflictResolvedEvent(
                    conflict_id=conflict_id,
                    resolution=conflict_status.value,
                    escalated=outcome.escalated,
                )
            )
            return outcome

        run = await self.runner.run(
            AgentType.ARBITER, arbiter_input, ArbiterInput, ArbiterOutput, temperature=0.1
        )
        if run.ok:
            return self._apply_arbitration(conflict_id, run.output.arbitration, run.run_id)

        logger.warning("arbiter_fallback_to_tiebreakers", conflict_id=conflict_id, error=str(run.error))
        outcome = self._apply_tiebreakers(conflict_id)
        outcome.agent_run_id = run.run_id
        return outcome

    def _source_conflict(self, db, conflict: RegulatoryConflict) -> ArbitrationOutcome:
        pointer_ids = (conflict.meta or {}).get("pointer_ids") or []
        pointers = (
            db.scalars(select(SourcePointer).where(SourcePointer.id.in_(pointer_ids))).all()
            if pointer_ids
            else []
        )

        if len(pointers) < 2:
            conflict.status = ConflictStatus.RESOLVED
            conflict.resolved_at = utc_now()
            conflict.resolution = {
                "strategy": "auto_resolved",
                "rationale_en": "Insufficient pointers for conflict",
            }
            logger.info("source_conflict_auto_resolved", conflict_id=conflict.id)
            return ArbitrationOutcome(conflict.id, True)

        conflict.status = ConflictStatus.ESCALATED
        conflict.requires_human_review = True
        conflict.human_review_reason = (
            "Conflicting values in source data require human review to determine the correct value"
        )
        conflict.resolution = {
            "strategy": "human_review_required",
            "pointers": [
                {"id": p.id, "domain": p.domain, "value": p.extracted_value, "confidence": p.confidence}
                for p in pointers
            ],
        }
        logger.info("source_conflict_escalated", conflict_id=conflict.id, pointers=len(pointers))
        return ArbitrationOutcome(
            conflict.id,
            True,
            ArbitrationDecision.ESCALATE_TO_HUMAN,
            escalation_reason="source_data_conflict",
        )

    def _apply_arbitration(self, conflict_id: int, arbitration: Arbitration, run_id: int) -> ArbitrationOutcome:
        events: list[BaseEvent] = []
        with session_scope(self._session_factory) as db:
            conflict = db.get(RegulatoryConflict, conflict_id)
            rule_a, rule_b = conflict.item_a, conflict.item_b

            decision = decision_for(arbitration, rule_a.id, rule_b.id)
            reason = escalation_reason(
                rule_a, rule_b, arbitration, self.min_confidence, self.min_rule_confidence
            )
            if reason is not None:
                decision = ArbitrationDecision.ESCALATE_TO_HUMAN
            elif decision == ArbitrationDecision.ESCALATE_TO_HUMAN:
                reason = arbitration.human_review_reason or "arbiter could not pick a winner"

            conflict.confidence = arbitration.confidence
            conflict.resolution = {
                "decision": decision.value,
                "winning_item_id": arbitration.resolution.winning_item_id,
                "strategy": arbitration.resolution.resolution_strategy,
                "rationale_hr": arbitration.resolution.rationale_hr,
                "rationale_en": arbitration.resolution.rationale_en,
            }

            if decision == ArbitrationDecision.ESCALATE_TO_HUMAN:
                conflict.status = ConflictStatus.ESCALATED
                conflict.requires_human_review = True
                conflict.human_review_reason = arbitration.human_review_reason or reason
            else:
                conflict.status = ConflictStatus.RESOLVED
                conflict.resolved_at = utc_now()
                if decision == ArbitrationDecision.RULE_A_PREVAILS:
                    event = _retire_loser(rule_b, rule_a.id, conflict_id)
                elif decision == ArbitrationDecision.RULE_B_PREVAILS:
                    event = _retire_loser(rule_a, rule_b.id, conflict_id)
                else:
                    event = None
                if event is not None:
                    events.append(event)

        for event in events:
            self.audit.record(event)
        return self._finish(conflict_id, decision, reason, run_id)

    def _apply_tiebreakers(self, conflict_id: int) -> ArbitrationOutcome:
        events: list[BaseEvent] = []
        with session_scope(self._session_factory) as db:
            conflict = db.get(RegulatoryConflict, conflict_id)
            rule_a, rule_b = conflict.item_a, conflict.item_b

            if rule_a.risk_tier == RiskTier.T0 and rule_b.risk_tier == RiskTier.T0:
                decision, reason = ArbitrationDecision.ESCALATE_TO_HUMAN, "both_t0"
                conflict.status = ConflictStatus.ESCALATED
                conflict.requires_human_review = True
                conflict.human_review_reason = "Both rules are T0; arbiter unavailable"
                conflict.resolution = {"decision": decision.value, "strategy": "deterministic"}
            else:
                winner, rationale = deterministic_winner(rule_a, rule_b)
                loser = rule_b if winner is rule_a else rule_a
                decision = (
                    ArbitrationDecision.RULE_A_PREVAILS
                    if winner is rule_a
                    else ArbitrationDecision.RULE_B_PREVAILS
                )
                reason = None
                conflict.status = ConflictStatus.RESOLVED
                conflict.resolved_at = utc_now()
                conflict.resolution = {
                    "decision": decision.value,
                    "winning_item_id": str(winner.id),
                    "strategy": "deterministic",
                    "rationale_en": rationale,
                }
                event = _retire_loser(loser, winner.id, conflict_id)
                if event is not None:
                    events.append(event)

        for event in events:
            self.audit.record(event)
        return self._finish(conflict_id, decision, reason, None)

    def _finish(
        self,
        conflict_id: int,
        decision: ArbitrationDecision,
        reason: str | None,
        run_id: int | None,
    ) -> ArbitrationOutcome:
        escalated = decision == ArbitrationDecision.ESCALATE_TO_HUMAN
        self.audit.record(
            ConflictResolvedEvent(conflict_id=conflict_id, resolution=decision.value, escalated=escalated)
        )
        logger.info(
            "conflict_arbitrated",
            conflict_id=conflict_id,
            decision=decision.value,
            escalation_reason=reason,
        )
        return ArbitrationOutcome(
            conflict_id,
            True,
            decision,
            escalation_reason=reason if escalated else None,
            agent_run_id=run_id,
        )

    async def run_arbiter_batch(self, limit: int = 10) -> BatchSummary:
        summary = BatchSummary()
        for conflict_id in get_pending_conflicts(self._session_factory, limit):
            summary.processed += 1
            outcome = await self.arbitrate(conflict_id)
            if outcome.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
                summary.errors.append(f"conflict {conflict_id}: {outcome.error}")

        logger.info(
            "arbiter_batch_completed",
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
        )
        return summary
