"""OCR collaborator for scanned PDFs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from regwatch.core.queue import QueuedWork
from regwatch.evidence.store import EvidenceStore, raw_bytes_of
from regwatch.exceptions import ValidationError
from regwatch.storage.database.models import ContentClass, WorkKind
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OcrResult:
    text: str
    page_count: int
    engine: str = "ocr"


class OcrClient(Protocol):
    async def extract(self, raw: bytes) -> OcrResult:
        ...


class OcrWorker:
    """Consumes ``OCR`` work items and attaches the recognized text."""

    def __init__(self, store: EvidenceStore, client: OcrClient) -> None:
        self.store = store
        self.client = client

    async def process(self, work: QueuedWork) -> int:
        """OCR the evidence named in the work item. Returns the artifact id.

        Raises:
            ValidationError: the work item is not OCR work or targets a non-scanned evidence
        """
        if work.kind != WorkKind.OCR:
            raise ValidationError(
                f"OcrWorker cannot process {work.kind.value} work",
                field="kind",
                value=work.kind.value,
            )

        evidence = self.store.get(int(work.payload["evidence_id"]))
        if evidence.content_class != ContentClass.PDF_SCANNED:
            raise ValidationError(
                f"Evidence {evidence.id} is {evidence.content_class.value}, not a scanned PDF",
                field="content_class",
                value=evidence.content_class.value,
            )

        result = await self.client.extract(raw_bytes_of(evidence))
        artifact = self.store.attach_ocr_result(
            evidence.id, result.text, result.page_count, engine=result.engine
        )

        self.store.queue.enqueue(
            WorkKind.EXTRACTION, {"evidence_id": evidence.id}, f"extraction:{evidence.id}"
        )
        logger.info("ocr_completed", evidence_id=evidence.id, pages=result.page_count)
        return artifact.id
