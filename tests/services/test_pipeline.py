"""Tests for the regulatory pipeline: inline processing and queue draining."""

import io

import pytest
from pypdf import PdfWriter

from regwatch.evidence.ocr import OcrResult, OcrWorker
from regwatch.rules.state import RuleStateMachine
from regwatch.services.pipeline import RegulatoryPipeline
from regwatch.storage.database.models import RegulatoryRule, RiskTier, RuleStatus, WorkKind
from regwatch.storage.session import session_scope

EXTRACTOR = "You are a regulatory data extractor"
COMPOSER = "You compose regulatory rules"
REVIEWER = "You are the quality gate"
REFERENCES = "You extract lookup tables"

ACCOMMODATION_CLAIM = {
    "domain": "obrasci",
    "value_type": "text",
    "extracted_value": "usluge smještaja",
    "exact_quote": "13% za usluge smještaja",
    "article_number": "38",
    "law_reference": "Zakon o PDV-u",
    "confidence": 0.95,
}

ACCOMMODATION_RULE = {
    "draft_rule": {
        "concept_slug": "snizena-stopa-smjestaj",
        "title_hr": "Snižena stopa za smještaj",
        "risk_tier": "T3",
        "value": "usluge smještaja",
        "value_type": "text",
        "confidence": 0.95,
    }
}

VAT_CLAIM = {
    "domain": "pdv",
    "value_type": "vat_rate",
    "extracted_value": "25",
    "exact_quote": "25%",
    "confidence": 0.97,
}


def vat_rule(risk_tier: str = "T3", confidence: float = 0.97) -> dict:
    return {
        "draft_rule": {
            "concept_slug": "pdv-standardna-stopa",
            "title_hr": "Standardna stopa PDV-a",
            "risk_tier": risk_tier,
            "value": "25",
            "value_type": "vat_rate",
            "confidence": confidence,
        }
    }


class UnreachableOcr:
    async def extract(self, raw: bytes) -> OcrResult:
        raise ConnectionError("OCR service unreachable")


def blank_pdf() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=595, height=842)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def approve(confidence: float = 0.97) -> dict:
    return {"review_result": {"decision": "APPROVE", "computed_confidence": confidence}}


@pytest.fixture
def pipeline_for(make_runner, store, session_factory, queue, audit):
    def _make(script: dict, **kwargs):
        runner, provider = make_runner(script, max_retries=0)
        return RegulatoryPipeline(runner, store, session_factory, queue, audit, **kwargs), provider

    return _make


class TestProcessEvidence:
    @pytest.mark.asyncio
    async def test_low_risk_vat_rate_is_released(self, pipeline_for, session_factory, pdv_evidence):
        pipeline, _ = pipeline_for(
            {
                EXTRACTOR: [{"extractions": [VAT_CLAIM]}],
                COMPOSER: [vat_rule()],
                REVIEWER: [approve(0.97)],
            }
        )

        result = await pipeline.process_evidence(pdv_evidence.id)

        assert result.errors == []
        assert len(result.source_pointer_ids) == 1
        assert result.approved_rule_ids == result.rule_ids
        assert result.release_version == "0.0.1"
        with session_scope(session_factory) as db:
            rule = db.get(RegulatoryRule, result.rule_ids[0])
            assert rule.status == RuleStatus.APPROVED
            assert rule.risk_tier.value == "T3"
            assert rule.is_active is True

    @pytest.mark.asyncio
    async def test_critical_rate_waits_for_a_human(self, pipeline_for, session_factory, pdv_evidence):
        pipeline, _ = pipeline_for(
            {
                EXTRACTOR: [{"extractions": [VAT_CLAIM]}],
                COMPOSER: [vat_rule(risk_tier="T1", confidence=0.99)],
                REVIEWER: [approve(0.99)],
            }
        )

        result = await pipeline.process_evidence(pdv_evidence.id)

        assert result.pending_rule_ids == result.rule_ids
        assert result.release_version is None
        with session_scope(session_factory) as db:
            rule = db.get(RegulatoryRule, result.rule_ids[0])
            assert rule.risk_tier.value == "T1"
            assert rule.status == RuleStatus.PENDING_REVIEW

    @pytest.mark.asyncio
    async def test_extraction_failure_stops_the_chain(self, pipeline_for, pdv_evidence):
        pipeline, provider = pipeline_for({EXTRACTOR: ["garbage"]})

        result = await pipeline.process_evidence(pdv_evidence.id)

        assert result.errors[0].startswith("extraction:")
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_all_claims_rejected(self, pipeline_for, pdv_evidence):
        pipeline, provider = pipeline_for(
            {EXTRACTOR: [{"extractions": [{**VAT_CLAIM, "extracted_value": "45"}]}]}
        )

        result = await pipeline.process_evidence(pdv_evidence.id)

        assert result.rejected_count == 1
        assert result.rule_ids == []
        assert result.errors == []
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_reference_extraction_is_optional(self, pipeline_for, pdv_evidence):
        pipeline, _ = pipeline_for(
            {
                EXTRACTOR: [{"extractions": []}],
                REFERENCES: ["garbage"],
            },
            extract_references=True,
        )

        result = await pipeline.process_evidence(pdv_evidence.id)

        assert result.errors[0].startswith("reference extraction:")


class TestDrain:
    @pytest.mark.asyncio
    async def test_chains_stages_through_the_queue(self, pipeline_for, queue, pdv_evidence):
        pipeline, _ = pipeline_for(
            {
                EXTRACTOR: [{"extractions": [ACCOMMODATION_CLAIM]}],
                COMPOSER: [ACCOMMODATION_RULE],
                REVIEWER: [approve()],
            }
        )
        queue.enqueue(WorkKind.EXTRACTION, {"evidence_id": pdv_evidence.id}, f"extraction:{pdv_evidence.id}")

        summary = await pipeline.drain()

        assert (summary.processed, summary.succeeded, summary.failed) == (4, 4, 0)
        kinds = [w.kind for w in queue.items if w.kind != WorkKind.EMBEDDING]
        assert kinds == [WorkKind.EXTRACTION, WorkKind.COMPOSE, WorkKind.REVIEW, WorkKind.RELEASE]
        assert queue.dequeue([WorkKind.RELEASE]) == []

    @pytest.mark.asyncio
    async def test_malformed_item_is_retried_then_failed(self, pipeline_for, queue):
        pipeline, _ = pipeline_for({})
        queue.enqueue(WorkKind.REVIEW, {}, "review:broken")

        summary = await pipeline.drain()

        assert summary.processed == queue.max_attempts
        assert summary.succeeded == 0
        assert "missing 'rule_id'" in summary.errors[0]
        assert queue.dequeue([WorkKind.REVIEW]) == []

    @pytest.mark.asyncio
    async def test_respects_limit(self, pipeline_for, queue):
        pipeline, _ = pipeline_for({})
        for n in range(5):
            queue.enqueue(WorkKind.RELEASE, {"rule_ids": [1000 + n]}, f"release:{1000 + n}")

        summary = await pipeline.drain(limit=3)

        assert summary.processed == 3
        assert summary.failed == 3

    @pytest.mark.asyncio
    async def test_embedding_handler_is_opt_in(self, pipeline_for, queue, store):
        store.capture("https://hzzo.hr/obavijest", b"<p>Obavijest</p>", "text/html")
        pipeline, _ = pipeline_for({})

        summary = await pipeline.drain()

        assert summary.processed == 0
        assert WorkKind.EMBEDDING not in pipeline.handlers

    @pytest.mark.asyncio
    async def test_unexpected_crash_does_not_block_later_items(
        self, pipeline_for, queue, store, session_factory, make_rule
    ):
        store.capture("https://fina.hr/rokovi.pdf", blank_pdf(), "application/pdf")
        rule_id = make_rule(status=RuleStatus.APPROVED)
        queue.enqueue(WorkKind.RELEASE, {"rule_ids": [rule_id]}, f"release:{rule_id}")
        pipeline, _ = pipeline_for({}, ocr_worker=OcrWorker(store, UnreachableOcr()))

        summary = await pipeline.drain()

        assert summary.succeeded == 1
        assert summary.failed == queue.max_attempts
        assert summary.errors[0].endswith("ConnectionError: OCR service unreachable")
        with session_scope(session_factory) as db:
            assert db.get(RegulatoryRule, rule_id).is_active is True

    @pytest.mark.asyncio
    async def test_human_approval_is_released_on_drain(
        self, pipeline_for, queue, session_factory, audit, make_rule
    ):
        rule_id = make_rule(risk_tier=RiskTier.T1, status=RuleStatus.PENDING_REVIEW)
        RuleStateMachine(session_factory, audit, queue=queue).approve_pending(rule_id, "ana.horvat")
        pipeline, _ = pipeline_for({})

        summary = await pipeline.drain()

        assert (summary.processed, summary.succeeded) == (1, 1)
        with session_scope(session_factory) as db:
            rule = db.get(RegulatoryRule, rule_id)
            assert rule.is_active is True
            assert rule.approved_by == "ana.horvat"
