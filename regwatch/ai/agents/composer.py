"""Composer: groups validated source pointers by concept and drafts rules."""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from regwatch.ai.agents.prompts import AgentType
from regwatch.ai.agents.runner import AgentRunner
from regwatch.ai.agents.schemas import ComposerInput, ComposerOutput, DraftRule
from regwatch.ai.agents.summaries import pointer_summary
from regwatch.core.events import (
    AuditLogger,
    BaseEvent,
    ConflictCreatedEvent,
    RuleCreatedEvent,
)
from regwatch.core.queue import WorkQueue
from regwatch.rules.confidence import aggregate_confidence
from regwatch.rules.conflicts import (
    AUTHORITY_RANK,
    authority_for_hierarchy,
    detect_structural_conflicts,
    open_conflict,
)
from regwatch.rules.predicates import validate_applies_when
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import (
    AuthorityLevel,
    ConflictType,
    Evidence,
    RegulatoryRule,
    RegulatorySource,
    RiskTier,
    RuleStatus,
    SourcePointer,
    WorkKind,
)
from regwatch.storage.session import session_scope
from regwatch.utils.config import get_settings
from regwatch.utils.logging import get_logger
from regwatch.validation.deterministic import PERCENTAGE_TYPES

logger = get_logger(__name__)

TIER_ORDER = (RiskTier.T0, RiskTier.T1, RiskTier.T2, RiskTier.T3)
RATE_TYPES = PERCENTAGE_TYPES | {"interest_rate"}


def minimum_tier(domain: str, value_type: str) -> RiskTier | None:
    """Optional floor for a concept: deadlines are T0, tax rates T1.

    Applied only when ``ReviewConfig.enforce_tier_floors`` is on; by default
    the tier proposed by the composer stands.
    """
    if domain == "rokovi":
        return RiskTier.T0
    if domain in ("pdv", "porez_dohodak") and value_type in RATE_TYPES:
        return RiskTier.T1
    return None


def stricter_tier(proposed: RiskTier, floor: RiskTier | None) -> RiskTier:
    if floor is None:
        return proposed
    return min(proposed, floor, key=TIER_ORDER.index)


def _as_datetime(value: date | None) -> datetime | None:
    if value is None:
        return None
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


@dataclass
class ComposeResult:
    rule_ids: list[int] = field(default_factory=list)
    conflict_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class Composer:
    """Runs COMPOSER per concept group and persists DRAFT rules."""

    def __init__(
        self,
        runner: AgentRunner,
        session_factory: SessionFactory,
        queue: WorkQueue | None = None,
        audit: AuditLogger | None = None,
        enforce_tier_floors: bool | None = None,
    ) -> None:
        self.runner = runner
        self._session_factory = session_factory
        self.queue = queue
        self.audit = audit or AuditLogger()
        if enforce_tier_floors is None:
            enforce_tier_floors = get_settings().review.enforce_tier_floors
        self.enforce_tier_floors = enforce_tier_floors

    async def compose(self, pointer_ids: list[int]) -> ComposeResult:
        result = ComposeResult()

        with session_scope(self._session_factory) as db:
            pointers = db.scalars(
                select(SourcePointer).where(SourcePointer.id.in_(pointer_ids)).order_by(SourcePointer.id)
            ).all()
            groups: dict[str, list] = defaultdict(list)
            for pointer in pointers:
                groups[pointer.domain].append(pointer_summary(pointer))

        if not groups:
            result.errors.append(f"No source pointers found for ids {pointer_ids}")
            return result

        for concept, summaries in groups.items():
            run = await self.runner.run(
                AgentType.COMPOSER,
                ComposerInput(concept=concept, source_pointers=summaries),
                ComposerInput,
                ComposerOutput,
                temperature=0.1,
            )
            group_ids = [s.id for s in summaries]
            if not run.ok:
                result.errors.append(f"{concept}: {run.error}")
                continue

            output = run.output
            if output.conflicts_detected is not None:
                result.conflict_ids.append(
                    self._source_conflict(concept, group_ids, output.conflicts_detected.description)
                )
                continue
            if output.draft_rule is None:
                result.errors.append(f"{concept}: composer returned no draft rule")
                continue

            rule_id, conflict_ids = self._create_rule(output.draft_rule, concept, group_ids)
            result.rule_ids.append(rule_id)
            result.conflict_ids.extend(conflict_ids)

        return result

    def _source_conflict(self, concept: str, pointer_ids: list[int], description: str) -> int:
        with session_scope(self._session_factory) as db:
            conflict = open_conflict(
                db,
                ConflictType.SOURCE_CONFLICT,
                description,
                detected_by="COMPOSER",
                pointer_ids=pointer_ids,
                concept=concept,
            )
            conflict_id = conflict.id

        self.audit.record(
            ConflictCreatedEvent(
                conflict_id=conflict_id,
                conflict_type=ConflictType.SOURCE_CONFLICT.value,
                detected_by="COMPOSER",
            )
        )
        logger.warning("composer_source_conflict", concept=concept, conflict_id=conflict_id)
        return conflict_id

    def _authority(self, db: Session, pointers: list[SourcePointer]) -> AuthorityLevel:
        evidence_ids = {p.evidence_id for p in pointers}
        hierarchies = db.scalars(
            select(RegulatorySource.hierarchy)
            .join(Evidence, Evidence.source_id == RegulatorySource.id)
            .where(Evidence.id.in_(evidence_ids))
        ).all()
        if not hierarchies:
            return AuthorityLevel.GUIDANCE
        return min((authority_for_hierarchy(h) for h in hierarchies), key=AUTHORITY_RANK.get)

    def _create_rule(
        self, draft: DraftRule, concept: str, pointer_ids: list[int]
    ) -> tuple[int, list[int]]:
        events: list[BaseEvent] = []
        applies_when, predicate_note = validate_applies_when(draft.applies_when)

        with session_scope(self._session_factory) as db:
            # Link the pointers we were given, never ids echoed back by the LLM
            pointers = list(
                db.scalars(select(SourcePointer).where(SourcePointer.id.in_(pointer_ids))).all()
            )
            authority = self._authority(db, pointers)
            envelope = aggregate_confidence(
                [p.confidence for p in pointers],
                draft.confidence,
                independent_sources=len({p.evidence_id for p in pointers}),
                authoritative=authority == AuthorityLevel.LAW,
            )
            tier = draft.risk_tier
            if self.enforce_tier_floors:
                tier = stricter_tier(tier, minimum_tier(concept, draft.value_type))

            notes = [n for n in (draft.composer_notes, predicate_note) if n]
            notes.append(f"confidence reasons: {', '.join(envelope.reasons)}")
            if tier != draft.risk_tier:
                notes.append(f"risk tier raised from {draft.risk_tier.value} to {tier.value}")

            rule = RegulatoryRule(
                concept_slug=draft.concept_slug,
                title_hr=draft.title_hr,
                title_en=draft.title_en,
                risk_tier=tier,
                authority_level=authority,
                applies_when=applies_when,
                value=draft.value,
                value_type=draft.value_type,
                explanation_hr=draft.explanation_hr,
                explanation_en=draft.explanation_en,
                effective_from=_as_datetime(draft.effective_from),
                effective_until=_as_datetime(draft.effective_until),
                confidence=envelope.score,
                status=RuleStatus.DRAFT,
                composer_notes="\n".join(notes),
                source_pointers=pointers,
            )
            db.add(rule)
            db.flush()
            rule_id = rule.id

            conflict_ids = []
            for seed in detect_structural_conflicts(db, rule):
                conflict = open_conflict(
                    db,
                    seed.conflict_type,
                    seed.reason,
                    item_a_id=seed.existing_rule_id,
                    item_b_id=seed.new_rule_id,
                )
                conflict_ids.append(conflict.id)
                events.append(
                    ConflictCreatedEvent(
                        conflict_id=conflict.id,
                        conflict_type=seed.conflict_type.value,
                        detected_by="STRUCTURAL",
                    )
                )

        self.audit.record(
            RuleCreatedEvent(
                rule_id=rule_id,
                concept_slug=draft.concept_slug,
                risk_tier=tier.value,
                confidence=envelope.score,
            )
        )
        for event in events:
            self.audit.record(event)

        if self.queue is not None:
            self.queue.enqueue(WorkKind.REVIEW, {"rule_id": rule_id}, f"review:{rule_id}")

        logger.info(
            "rule_drafted",
            rule_id=rule_id,
            concept_slug=draft.concept_slug,
            risk_tier=tier.value,
            confidence=envelope.score,
            conflicts=len(conflict_ids),
        )
        return rule_id, conflict_ids
