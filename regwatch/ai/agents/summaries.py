"""Shared helpers for the rule agents: ORM rows to agent inputs, batch tallies."""

from dataclasses import dataclass, field

from regwatch.ai.agents.schemas import PointerSummary, RuleSummary
from regwatch.storage.database.models import RegulatoryRule, SourcePointer


def pointer_summary(pointer: SourcePointer) -> PointerSummary:
    return PointerSummary(
        id=pointer.id,
        evidence_id=pointer.evidence_id,
        domain=pointer.domain,
        value_type=pointer.value_type,
        extracted_value=pointer.extracted_value,
        exact_quote=pointer.exact_quote,
        article_number=pointer.article_number,
        law_reference=pointer.law_reference,
        confidence=pointer.confidence,
    )


def rule_payload(rule: RegulatoryRule) -> dict:
    return {
        "id": rule.id,
        "concept_slug": rule.concept_slug,
        "title_hr": rule.title_hr,
        "title_en": rule.title_en,
        "risk_tier": rule.risk_tier.value,
        "authority_level": rule.authority_level.value,
        "applies_when": rule.applies_when,
        "value": rule.value,
        "value_type": rule.value_type,
        "explanation_hr": rule.explanation_hr,
        "effective_from": rule.effective_from.date().isoformat() if rule.effective_from else None,
        "effective_until": rule.effective_until.date().isoformat() if rule.effective_until else None,
        "confidence": rule.confidence,
    }


def rule_summary(rule: RegulatoryRule) -> RuleSummary:
    return RuleSummary(
        id=rule.id,
        concept_slug=rule.concept_slug,
        value=rule.value,
        value_type=rule.value_type,
        risk_tier=rule.risk_tier,
        authority_level=rule.authority_level.value,
        effective_from=rule.effective_from.date().isoformat() if rule.effective_from else None,
        confidence=rule.confidence,
        quotes=[p.exact_quote for p in rule.source_pointers],
    )


@dataclass
class BatchSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
