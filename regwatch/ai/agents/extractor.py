"""Extraction agent: evidence text -> validated source pointers.

The LLM proposes claims; every claim is then checked deterministically
(domain, ranges, quote provenance, no inference). Valid claims become
``SourcePointer`` rows, invalid ones go to the ``ExtractionRejected``
dead-letter table. A bad claim never sinks its siblings.
"""

from dataclasses import dataclass, field

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from regwatch.ai.agents.prompts import AgentType
from regwatch.ai.agents.runner import AgentRunner
from regwatch.ai.agents.schemas import ExtractedClaim, ExtractorInput, ExtractorOutput
from regwatch.core.events import AuditLogger, ExtractionRejectedEvent
from regwatch.core.queue import WorkQueue
from regwatch.evidence.store import EvidenceStore
from regwatch.evidence.text import truncate
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import (
    DiscoveredItem,
    DiscoveredItemStatus,
    Evidence,
    ExtractionRejected,
    RejectionType,
    SourcePointer,
    WorkKind,
)
from regwatch.storage.session import session_scope
from regwatch.utils.config import get_settings
from regwatch.utils.datetime import utc_now
from regwatch.utils.logging import get_logger
from regwatch.validation.deterministic import NUMERIC_TYPES, validate_claim_fields
from regwatch.validation.quote_match import QuoteMatch, find_quote_in_evidence, value_in_quote

logger = get_logger(__name__)

# Fields a complete regulatory extraction is expected to fill
EXPECTED_FIELDS = ("value", "exact_quote", "article_number", "law_reference", "effective_date")


@dataclass
class ClaimVerdict:
    valid: bool
    rejection_type: RejectionType | None = None
    errors: list[str] = field(default_factory=list)
    match: QuoteMatch | None = None


@dataclass
class ExtractionResult:
    success: bool
    evidence_id: int
    source_pointer_ids: list[int] = field(default_factory=list)
    rejected_count: int = 0
    coverage_score: float | None = None
    agent_run_id: int | None = None
    error: str | None = None


@dataclass
class ReprocessResult:
    examined: int = 0
    resolved: int = 0
    still_rejected: int = 0


def validate_claim(claim: ExtractedClaim, content: str) -> ClaimVerdict:
    """Run every deterministic check on one claim, stopping at the first failure."""
    check = validate_claim_fields(
        claim.domain, claim.value_type, claim.extracted_value, claim.exact_quote, claim.confidence
    )
    if not check.valid:
        return ClaimVerdict(False, check.rejection_type, check.errors)

    match = find_quote_in_evidence(content, claim.exact_quote)
    if not match.found:
        return ClaimVerdict(
            False,
            RejectionType.NO_QUOTE_MATCH,
            [f"Quote not found in evidence: {claim.exact_quote[:80]!r}"],
        )

    if claim.value_type in NUMERIC_TYPES or claim.value_type == "date":
        if not value_in_quote(claim.extracted_value, claim.value_type, claim.exact_quote):
            return ClaimVerdict(
                False,
                RejectionType.VALIDATION_FAILED,
                [f"Value {claim.extracted_value!r} not in quote (inferred value)"],
            )

    return ClaimVerdict(True, match=match)


def filled_fields(claim: ExtractedClaim) -> set[str]:
    filled = {"value"} if claim.extracted_value else set()
    if claim.exact_quote:
        filled.add("exact_quote")
    if claim.article_number:
        filled.add("article_number")
    if claim.law_reference:
        filled.add("law_reference")
    if claim.effective_from or claim.value_type == "date":
        filled.add("effective_date")
    return filled


def coverage(claims: list[ExtractedClaim]) -> tuple[float, list[str]]:
    """Fraction of expected fields filled across the union of valid claims."""
    filled: set[str] = set()
    for claim in claims:
        filled |= filled_fields(claim)
    missing = [name for name in EXPECTED_FIELDS if name not in filled]
    score = (len(EXPECTED_FIELDS) - len(missing)) / len(EXPECTED_FIELDS)
    return round(score, 4), missing


def _mark_items_processed(db: Session, evidence_id: int) -> int:
    """Close the discovery lifecycle for items whose fetch produced this evidence."""
    items = db.scalars(
        select(DiscoveredItem).where(
            DiscoveredItem.evidence_id == evidence_id,
            DiscoveredItem.status == DiscoveredItemStatus.FETCHED,
        )
    ).all()
    now = utc_now()
    for item in items:
        item.status = DiscoveredItemStatus.PROCESSED
        item.processed_at = now
    return len(items)


def _pointer(claim: ExtractedClaim, evidence_id: int, match: QuoteMatch, run_id: int | None) -> SourcePointer:
    return SourcePointer(
        evidence_id=evidence_id,
        domain=claim.domain,
        value_type=claim.value_type,
        extracted_value=claim.extracted_value,
        display_value=claim.display_value,
        exact_quote=claim.exact_quote,
        context_before=claim.context_before,
        context_after=claim.context_after,
        selector=claim.selector,
        article_number=claim.article_number,
        paragraph_number=claim.paragraph_number,
        law_reference=claim.law_reference,
        confidence=claim.confidence,
        extraction_notes=claim.extraction_notes,
        match_type=match.match_type,
        start_offset=match.start,
        end_offset=match.end,
        agent_run_id=run_id,
    )


class ExtractionAgent:
    """Runs the EXTRACTOR agent on one evidence and files the results."""

    def __init__(
        self,
        runner: AgentRunner,
        store: EvidenceStore,
        session_factory: SessionFactory,
        queue: WorkQueue | None = None,
        audit: AuditLogger | None = None,
        max_content_chars: int | None = None,
        min_coverage: float | None = None,
    ) -> None:
        settings = get_settings()
        self.runner = runner
        self.store = store
        self._session_factory = session_factory
        self.queue = queue
        self.audit = audit or AuditLogger()
        self.max_content_chars = max_content_chars or settings.agents.max_content_chars
        self.min_coverage = settings.review.min_coverage if min_coverage is None else min_coverage

    def _content_for(self, evidence: Evidence) -> str | None:
        text = self.store.get_extractable_text(evidence)
        if not text:
            return None
        return truncate(text, self.max_content_chars)

    async def extract(self, evidence: Evidence | int) -> ExtractionResult:
        if isinstance(evidence, int):
            evidence = self.store.get(evidence)

        content = self._content_for(evidence)
        if content is None:
            logger.info("extraction_skipped_no_text", evidence_id=evidence.id)
            return ExtractionResult(
                success=False, evidence_id=evidence.id, error="No extractable text"
            )

        result = await self.runner.run(
            AgentType.EXTRACTOR,
            {
                "evidence_id": evidence.id,
                "content": content,
                "content_type": evidence.content_type,
                "source_url": evidence.url,
            },
            ExtractorInput,
            ExtractorOutput,
            evidence_id=evidence.id,
        )
        if not result.ok:
            return ExtractionResult(
                success=False,
                evidence_id=evidence.id,
                agent_run_id=result.run_id,
                error=str(result.error),
            )

        pointer_ids: list[int] = []
        valid_claims: list[ExtractedClaim] = []
        events: list[ExtractionRejectedEvent] = []

        with session_scope(self._session_factory) as db:
            for claim in result.output.extractions:
                verdict = validate_claim(claim, content)
                if not verdict.valid:
                    rejected = ExtractionRejected(
                        evidence_id=evidence.id,
                        rejection_type=verdict.rejection_type,
                        raw_output=claim.model_dump(mode="json"),
                        error_details="; ".join(verdict.errors),
                        attempt_count=1,
                        last_attempt_at=utc_now(),
                    )
                    db.add(rejected)
                    db.flush()
                    events.append(
                        ExtractionRejectedEvent(
                            rejection_id=rejected.id,
                            evidence_id=evidence.id,
                            rejection_type=verdict.rejection_type.value,
                        )
                    )
                    continue

                pointer = _pointer(claim, evidence.id, verdict.match, result.run_id)
                db.add(pointer)
                db.flush()
                pointer_ids.append(pointer.id)
                valid_claims.append(claim)

            score, missing = coverage(valid_claims)
            row = db.get(Evidence, evidence.id)
            row.coverage_score = score
            row.coverage_missing = missing
            processed_items = _mark_items_processed(db, evidence.id)

        for event in events:
            self.audit.record(event)

        if score < self.min_coverage:
            logger.warning(
                "extraction_incomplete",
                evidence_id=evidence.id,
                coverage_score=score,
                missing=missing,
            )

        if pointer_ids and self.queue is not None:
            self.queue.enqueue(
                WorkKind.COMPOSE,
                {"evidence_id": evidence.id, "pointer_ids": pointer_ids},
                f"compose:{evidence.id}",
            )

        logger.info(
            "extraction_completed",
            evidence_id=evidence.id,
            pointers=len(pointer_ids),
            rejected=len(events),
            coverage_score=score,
            items_processed=processed_items,
        )
        return ExtractionResult(
            success=True,
            evidence_id=evidence.id,
            source_pointer_ids=pointer_ids,
            rejected_count=len(events),
            coverage_score=score,
            agent_run_id=result.run_id,
        )

    def reprocess_rejected(self, limit: int = 50) -> ReprocessResult:
        """Re-validate unresolved dead-letter rows against the current evidence text.

        Rows that now pass become source pointers; the rest get their attempt
        counter bumped.
        """
        with session_scope(self._session_factory) as db:
            rows = db.scalars(
                select(ExtractionRejected)
                .where(ExtractionRejected.resolved_at.is_(None))
                .order_by(ExtractionRejected.last_attempt_at, ExtractionRejected.id)
                .limit(limit)
            ).all()
            pending = [(row.id, row.evidence_id, dict(row.raw_output)) for row in rows]

        summary = ReprocessResult()
        contents: dict[int, str | None] = {}

        for rejection_id, evidence_id, raw in pending:
            summary.examined += 1
            if evidence_id not in contents:
                contents[evidence_id] = self._content_for(self.store.get(evidence_id))
            content = contents[evidence_id]

            try:
                claim = ExtractedClaim.model_validate(raw)
            except SchemaValidationError as e:
                verdict = ClaimVerdict(False, RejectionType.VALIDATION_FAILED, [str(e)])
            else:
                verdict = (
                    validate_claim(claim, content)
                    if content
                    else ClaimVerdict(False, RejectionType.NO_QUOTE_MATCH, ["No extractable text"])
                )

            with session_scope(self._session_factory) as db:
                row = db.get(ExtractionRejected, rejection_id)
                row.last_attempt_at = utc_now()
                if verdict.valid:
                    pointer = _pointer(claim, evidence_id, verdict.match, None)
                    db.add(pointer)
                    db.flush()
                    row.resolved_at = utc_now()
                    row.resolved_pointer_id = pointer.id
                    pointer_id = pointer.id
                else:
                    row.attempt_count += 1
                    row.rejection_type = verdict.rejection_type
                    row.error_details = "; ".join(verdict.errors)

            if verdict.valid:
                summary.resolved += 1
                if self.queue is not None:
                    self.queue.enqueue(
                        WorkKind.COMPOSE,
                        {"evidence_id": evidence_id, "pointer_ids": [pointer_id]},
                        f"compose:{evidence_id}:pointer:{pointer_id}",
                    )
            else:
                summary.still_rejected += 1

        logger.info(
            "rejected_extractions_reprocessed",
            examined=summary.examined,
            resolved=summary.resolved,
            still_rejected=summary.still_rejected,
        )
        return summary
