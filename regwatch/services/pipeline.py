"""Regulatory pipeline: wires the agents and consumes queued work by kind.

Each handler runs one stage and enqueues the follow-up stage itself, so a
rule moves extraction -> compose -> review -> (arbitrate) -> release one work
item at a time. ``process_evidence`` runs the same chain inline.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from regwatch.ai.agents.arbiter import Arbiter
from regwatch.ai.agents.composer import Composer
from regwatch.ai.agents.extractor import ExtractionAgent
from regwatch.ai.agents.reference_extractor import ReferenceExtractor
from regwatch.ai.agents.releaser import Releaser
from regwatch.ai.agents.reviewer import Reviewer
from regwatch.ai.agents.runner import AgentRunner
from regwatch.ai.agents.summaries import BatchSummary
from regwatch.core.events import AuditLogger
from regwatch.core.queue import QueuedWork, WorkQueue
from regwatch.evidence.embedding_queue import EmbeddingQueue
from regwatch.evidence.ocr import OcrWorker
from regwatch.evidence.store import EvidenceStore
from regwatch.exceptions import RegwatchError
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import RuleStatus, WorkKind
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[QueuedWork], Awaitable[str | None]]


@dataclass
class PipelineResult:
    """Everything one evidence produced on its way through the chain."""

    evidence_id: int
    source_pointer_ids: list[int] = field(default_factory=list)
    rejected_count: int = 0
    rule_ids: list[int] = field(default_factory=list)
    conflict_ids: list[int] = field(default_factory=list)
    approved_rule_ids: list[int] = field(default_factory=list)
    pending_rule_ids: list[int] = field(default_factory=list)
    release_version: str | None = None
    errors: list[str] = field(default_factory=list)


class RegulatoryPipeline:
    def __init__(
        self,
        runner: AgentRunner,
        store: EvidenceStore,
        session_factory: SessionFactory,
        queue: WorkQueue,
        audit: AuditLogger | None = None,
        ocr_worker: OcrWorker | None = None,
        embedding_queue: EmbeddingQueue | None = None,
        extract_references: bool = False,
    ) -> None:
        self.queue = queue
        self.audit = audit or AuditLogger()
        self.extract_references = extract_references

        # Stages do not enqueue on their own; the handlers below chain them
        self.extractor = ExtractionAgent(runner, store, session_factory, audit=self.audit)
        self.reference_extractor = ReferenceExtractor(runner, store, session_factory)
        self.composer = Composer(runner, session_factory, audit=self.audit)
        self.reviewer = Reviewer(runner, session_factory, audit=self.audit)
        self.arbiter = Arbiter(runner, session_factory, audit=self.audit)
        self.releaser = Releaser(session_factory, audit=self.audit)
        self.ocr_worker = ocr_worker
        self.embedding_queue = embedding_queue

        self.handlers: dict[WorkKind, Handler] = {
            WorkKind.EXTRACTION: self._handle_extraction,
            WorkKind.COMPOSE: self._handle_compose,
            WorkKind.REVIEW: self._handle_review,
            WorkKind.ARBITRATE: self._handle_arbitrate,
            WorkKind.RELEASE: self._handle_release,
        }
        if ocr_worker is not None:
            self.handlers[WorkKind.OCR] = self._handle_ocr
        if embedding_queue is not None:
            self.handlers[WorkKind.EMBEDDING] = self._handle_embedding

    # Work handlers: return an error message, or None on success

    async def _handle_extraction(self, work: QueuedWork) -> str | None:
        evidence_id = int(work.payload["evidence_id"])
        result = await self.extractor.extract(evidence_id)
        if not result.success:
            return result.error
        if self.extract_references:
            refs = await self.reference_extractor.extract(evidence_id)
            if not refs.success:
                logger.warning("reference_extraction_failed", evidence_id=evidence_id, error=refs.error)
        if result.source_pointer_ids:
            self.queue.enqueue(
                WorkKind.COMPOSE,
                {"evidence_id": evidence_id, "pointer_ids": result.source_pointer_ids},
                f"compose:{evidence_id}",
            )
        return None

    async def _handle_compose(self, work: QueuedWork) -> str | None:
        result = await self.composer.compose([int(i) for i in work.payload["pointer_ids"]])
        for rule_id in result.rule_ids:
            self.queue.enqueue(WorkKind.REVIEW, {"rule_id": rule_id}, f"review:{rule_id}")
        for conflict_id in result.conflict_ids:
            self.queue.enqueue(WorkKind.ARBITRATE, {"conflict_id": conflict_id}, f"arbitrate:{conflict_id}")
        return "; ".join(result.errors) or None

    async def _handle_review(self, work: QueuedWork) -> str | None:
        rule_id = int(work.payload["rule_id"])
        outcome = await self.reviewer.review(rule_id)
        if not outcome.success:
            return outcome.error
        if outcome.conflict_id is not None:
            self.queue.enqueue(
                WorkKind.ARBITRATE, {"conflict_id": outcome.conflict_id}, f"arbitrate:{outcome.conflict_id}"
            )
        if outcome.status == RuleStatus.APPROVED:
            self.queue.enqueue(WorkKind.RELEASE, {"rule_ids": [rule_id]}, f"release:{rule_id}")
        return None

    async def _handle_arbitrate(self, work: QueuedWork) -> str | None:
        outcome = await self.arbiter.arbitrate(int(work.payload["conflict_id"]))
        return None if outcome.success else outcome.error

    async def _handle_release(self, work: QueuedWork) -> str | None:
        result = self.releaser.release([int(i) for i in work.payload["rule_ids"]])
        return None if result.success else result.error

    async def _handle_ocr(self, work: QueuedWork) -> str | None:
        await self.ocr_worker.process(work)
        return None

    async def _handle_embedding(self, work: QueuedWork) -> str | None:
        await self.embedding_queue.process(int(work.payload["evidence_id"]))
        return None

    async def drain(self, limit: int = 50) -> BatchSummary:
        """Process up to ``limit`` queued items, including follow-ups enqueued on the way.

        A failing item is marked failed and the drain moves on, whatever it raised.
        """
        summary = BatchSummary()
        kinds = list(self.handlers)

        while summary.processed < limit:
            batch = self.queue.dequeue(kinds, limit=min(10, limit - summary.processed))
            if not batch:
                break
            for work in batch:
                summary.processed += 1
                try:
                    error = await self.handlers[work.kind](work)
                except RegwatchError as e:
                    error = e.message
                except KeyError as e:
                    error = f"malformed payload, missing {e}"
                except Exception as e:
                    logger.error(
                        "work_item_crashed",
                        kind=work.kind.value,
                        key=work.idempotency_key,
                        error=str(e),
                        exc_info=True,
                    )
                    error = f"{type(e).__name__}: {e}"

                if error is None:
                    self.queue.mark_done(work.id)
                    summary.succeeded += 1
                else:
                    self.queue.mark_failed(work.id, error)
                    summary.failed += 1
                    summary.errors.append(f"{work.kind.value} {work.idempotency_key}: {error}")

        logger.info(
            "pipeline_drained",
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
        )
        return summary

    async def process_evidence(self, evidence_id: int) -> PipelineResult:
        """Run extraction through release for one evidence, inline."""
        result = PipelineResult(evidence_id=evidence_id)

        extraction = await self.extractor.extract(evidence_id)
        result.source_pointer_ids = extraction.source_pointer_ids
        result.rejected_count = extraction.rejected_count
        if not extraction.success:
            result.errors.append(f"extraction: {extraction.error}")
            return result
        if self.extract_references:
            refs = await self.reference_extractor.extract(evidence_id)
            if not refs.success:
                result.errors.append(f"reference extraction: {refs.error}")
        if not extraction.source_pointer_ids:
            return result

        composed = await self.composer.compose(extraction.source_pointer_ids)
        result.rule_ids = composed.rule_ids
        result.conflict_ids = list(composed.conflict_ids)
        result.errors.extend(f"compose: {e}" for e in composed.errors)

        for rule_id in composed.rule_ids:
            outcome = await self.reviewer.review(rule_id)
            if not outcome.success:
                result.errors.append(f"review {rule_id}: {outcome.error}")
                continue
            if outcome.conflict_id is not None:
                result.conflict_ids.append(outcome.conflict_id)
            if outcome.status == RuleStatus.APPROVED:
                result.approved_rule_ids.append(rule_id)
            elif outcome.status == RuleStatus.PENDING_REVIEW:
                result.pending_rule_ids.append(rule_id)

        for conflict_id in result.conflict_ids:
            arbitration = await self.arbiter.arbitrate(conflict_id)
            if not arbitration.success:
                result.errors.append(f"arbitrate {conflict_id}: {arbitration.error}")

        if result.approved_rule_ids:
            release = self.releaser.release(result.approved_rule_ids)
            if release.success:
                result.release_version = release.version
            else:
                result.errors.append(f"release: {release.error}")

        logger.info(
            "evidence_processed",
            evidence_id=evidence_id,
            pointers=len(result.source_pointer_ids),
            rules=len(result.rule_ids),
            approved=len(result.approved_rule_ids),
            conflicts=len(result.conflict_ids),
            release_version=result.release_version,
            errors=len(result.errors),
        )
        return result
