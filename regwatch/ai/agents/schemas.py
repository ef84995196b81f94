"""Structured input/output models for the regulatory agents.

The runner validates every agent input before the LLM call and every output
after it; nothing downstream ever sees unvalidated LLM JSON.
"""

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from regwatch.storage.database.models import ReferenceCategory, RiskTier


def _stringify(value: Any) -> Any:
    """LLMs return numbers for values we store as text."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return str(value)
    return value


# Extractor


class ExtractorInput(BaseModel):
    evidence_id: int
    content: str = Field(..., min_length=1)
    content_type: str = Field(default="html")
    source_url: str


class ExtractedClaim(BaseModel):
    """
    One atomic regulatory value with its verbatim citation.

    Range and quote checks happen deterministically after the run, per claim,
    so one bad claim never invalidates the whole output.
    """

    domain: str
    value_type: str
    extracted_value: str
    display_value: str | None = None
    exact_quote: str
    context_before: str | None = None
    context_after: str | None = None
    selector: str | None = None
    article_number: str | None = None
    paragraph_number: str | None = None
    law_reference: str | None = None
    effective_from: str | None = None
    confidence: float = 0.8
    extraction_notes: str | None = None

    _coerce = field_validator("extracted_value", "article_number", "paragraph_number", mode="before")(
        _stringify
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "domain": "pdv",
                "value_type": "percentage",
                "extracted_value": "25",
                "display_value": "25%",
                "exact_quote": "Stopa PDV-a iznosi 25%.",
                "article_number": "38",
                "law_reference": "Zakon o PDV-u (NN 73/13)",
                "confidence": 0.95,
            }
        }
    )


class ExtractorOutput(BaseModel):
    extractions: list[ExtractedClaim] = Field(default_factory=list)
    extraction_metadata: dict[str, Any] = Field(default_factory=dict)


# Composer


class PointerSummary(BaseModel):
    id: int
    evidence_id: int
    domain: str
    value_type: str
    extracted_value: str
    exact_quote: str
    article_number: str | None = None
    law_reference: str | None = None
    confidence: float


class ComposerInput(BaseModel):
    concept: str
    source_pointers: list[PointerSummary] = Field(..., min_length=1)


class DraftRule(BaseModel):
    concept_slug: str = Field(..., min_length=1, max_length=200)
    title_hr: str = Field(..., min_length=1)
    title_en: str | None = None
    risk_tier: RiskTier
    applies_when: dict[str, Any] | str = Field(default_factory=lambda: {"op": "true"})
    value: str
    value_type: str
    explanation_hr: str | None = None
    explanation_en: str | None = None
    effective_from: date | None = None
    effective_until: date | None = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    composer_notes: str | None = None

    _coerce = field_validator("value", mode="before")(_stringify)


class ComposerConflict(BaseModel):
    description: str
    pointer_ids: list[int] = Field(default_factory=list)


class ComposerOutput(BaseModel):
    draft_rule: DraftRule | None = None
    conflicts_detected: ComposerConflict | None = None


# Reviewer


class ReviewerInput(BaseModel):
    rule: dict[str, Any]
    source_pointers: list[PointerSummary]


class ReviewIssue(BaseModel):
    severity: Literal["critical", "major", "minor"] = "minor"
    description: str
    recommendation: str | None = None


class ReviewResult(BaseModel):
    decision: Literal["APPROVE", "REJECT", "ESCALATE_HUMAN", "ESCALATE_ARBITER"]
    validation_checks: dict[str, bool] = Field(default_factory=dict)
    computed_confidence: float
    issues_found: list[ReviewIssue] = Field(default_factory=list)
    human_review_reason: str | None = None
    reviewer_notes: str | None = None


class ReviewerOutput(BaseModel):
    review_result: ReviewResult


# Arbiter


class RuleSummary(BaseModel):
    id: int
    concept_slug: str
    value: str
    value_type: str
    risk_tier: RiskTier
    authority_level: str
    effective_from: str | None = None
    confidence: float
    quotes: list[str] = Field(default_factory=list)


class ArbiterInput(BaseModel):
    conflict_id: int
    conflict_type: str
    description: str
    rule_a: RuleSummary
    rule_b: RuleSummary


class ArbitrationResolution(BaseModel):
    winning_item_id: str | None = None
    resolution_strategy: Literal["hierarchy", "temporal", "specificity", "conservative"]
    rationale_hr: str | None = None
    rationale_en: str | None = None

    _coerce = field_validator("winning_item_id", mode="before")(_stringify)


class Arbitration(BaseModel):
    resolution: ArbitrationResolution
    confidence: float
    requires_human_review: bool = False
    human_review_reason: str | None = None


class ArbiterOutput(BaseModel):
    arbitration: Arbitration


# Reference extractor


class ReferenceExtractorInput(BaseModel):
    evidence_id: int
    content: str = Field(..., min_length=1)
    source_url: str


class ExtractedReferenceEntry(BaseModel):
    key: str
    value: str
    metadata: dict[str, Any] | None = None

    _coerce = field_validator("key", "value", mode="before")(_stringify)


class ExtractedReferenceTable(BaseModel):
    category: ReferenceCategory
    name: str = Field(..., min_length=1)
    jurisdiction: str = "HR"
    key_column: str = "key"
    value_column: str = "value"
    entries: list[ExtractedReferenceEntry] = Field(default_factory=list)

    @field_validator("category", mode="before")
    @classmethod
    def unknown_category_is_other(cls, v: Any) -> Any:
        if isinstance(v, str) and v.upper() not in ReferenceCategory.__members__:
            return ReferenceCategory.OTHER
        return v.upper() if isinstance(v, str) else v


class ReferenceExtractorOutput(BaseModel):
    tables: list[ExtractedReferenceTable] = Field(default_factory=list)
    extraction_notes: str | None = None
