"""Structural (non-LLM) conflict detection between rules of one concept."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from regwatch.storage.database.models import (
    AuthorityLevel,
    ConflictStatus,
    ConflictType,
    RegulatoryConflict,
    RegulatoryRule,
    RuleStatus,
)
from regwatch.utils.datetime import ensure_aware

# Lower rank prevails
AUTHORITY_RANK = {
    AuthorityLevel.LAW: 1,
    AuthorityLevel.GUIDANCE: 2,
    AuthorityLevel.PROCEDURE: 3,
    AuthorityLevel.PRACTICE: 4,
}

COMPARABLE_STATUSES = (RuleStatus.APPROVED, RuleStatus.PENDING_REVIEW)


@dataclass(frozen=True)
class ConflictSeed:
    conflict_type: ConflictType
    existing_rule_id: int
    new_rule_id: int
    reason: str


def authority_for_hierarchy(hierarchy: int | None) -> AuthorityLevel:
    """Map a source's numeric hierarchy (1 = law) to an authority level."""
    if hierarchy is None:
        return AuthorityLevel.GUIDANCE
    for level, rank in AUTHORITY_RANK.items():
        if hierarchy <= rank:
            return level
    return AuthorityLevel.PRACTICE


def dates_overlap(
    a_from: datetime | None,
    a_until: datetime | None,
    b_from: datetime | None,
    b_until: datetime | None,
) -> bool:
    """Open-ended bounds extend to infinity."""
    a_from, a_until, b_from, b_until = (ensure_aware(d) for d in (a_from, a_until, b_from, b_until))
    if a_until is not None and b_from is not None and a_until <= b_from:
        return False
    if b_until is not None and a_from is not None and b_until <= a_from:
        return False
    return True


def detect_structural_conflicts(db: Session, rule: RegulatoryRule) -> list[ConflictSeed]:
    existing_rules = db.scalars(
        select(RegulatoryRule)
        .where(RegulatoryRule.concept_slug == rule.concept_slug)
        .where(RegulatoryRule.id != rule.id)
        .where(RegulatoryRule.status.in_(COMPARABLE_STATUSES))
    ).all()

    seeds: list[ConflictSeed] = []
    for existing in existing_rules:
        if existing.value != rule.value and dates_overlap(
            existing.effective_from, existing.effective_until, rule.effective_from, rule.effective_until
        ):
            seeds.append(
                ConflictSeed(
                    ConflictType.VALUE_MISMATCH,
                    existing.id,
                    rule.id,
                    f'Same concept "{rule.concept_slug}" with different values: '
                    f'"{existing.value}" vs "{rule.value}" during an overlapping period',
                )
            )
        if AUTHORITY_RANK[rule.authority_level] < AUTHORITY_RANK[existing.authority_level]:
            seeds.append(
                ConflictSeed(
                    ConflictType.AUTHORITY_SUPERSEDE,
                    existing.id,
                    rule.id,
                    f"New rule from higher authority ({rule.authority_level.value}) may supersede "
                    f"existing ({existing.authority_level.value})",
                )
            )
    return seeds


def open_conflict(
    db: Session,
    conflict_type: ConflictType,
    description: str,
    item_a_id: int | None = None,
    item_b_id: int | None = None,
    detected_by: str = "STRUCTURAL",
    **meta,
) -> RegulatoryConflict:
    conflict = RegulatoryConflict(
        conflict_type=conflict_type,
        status=ConflictStatus.OPEN,
        item_a_id=item_a_id,
        item_b_id=item_b_id,
        description=description,
        meta={"detected_by": detected_by, **meta},
    )
    db.add(conflict)
    db.flush()
    return conflict


def has_open_conflict(db: Session, rule_id: int) -> bool:
    return (
        db.scalar(
            select(RegulatoryConflict.id)
            .where(RegulatoryConflict.status == ConflictStatus.OPEN)
            .where(
                (RegulatoryConflict.item_a_id == rule_id) | (RegulatoryConflict.item_b_id == rule_id)
            )
            .limit(1)
        )
        is not None
    )


def active_rule(
    db: Session,
    concept_slug: str,
    as_of: datetime | None = None,
    exclude_id: int | None = None,
) -> RegulatoryRule | None:
    """Published rule currently in effect for a concept, newest first."""
    stmt = (
        select(RegulatoryRule)
        .where(RegulatoryRule.concept_slug == concept_slug)
        .where(RegulatoryRule.is_active.is_(True))
        .where(RegulatoryRule.status == RuleStatus.APPROVED)
    )
    if exclude_id is not None:
        stmt = stmt.where(RegulatoryRule.id != exclude_id)
    candidates = db.scalars(stmt.order_by(RegulatoryRule.effective_from.desc(), RegulatoryRule.id.desc())).all()
    if as_of is None:
        return candidates[0] if candidates else None

    as_of = ensure_aware(as_of)
    for rule in candidates:
        starts, ends = ensure_aware(rule.effective_from), ensure_aware(rule.effective_until)
        if (starts is None or starts <= as_of) and (ends is None or as_of < ends):
            return rule
    return None
