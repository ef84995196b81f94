"""Evidence Store: immutable, content-addressed captures.

``capture`` is idempotent on ``(url, content_hash)``: the same bytes fetched
again return the existing row untouched, and a unique-constraint race between
two workers is resolved by re-reading the winner.
"""

from __future__ import annotations

import base64
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from regwatch.core.events import AuditLogger, EvidenceCapturedEvent
from regwatch.core.queue import WorkQueue
from regwatch.evidence.classifier import (
    TEXT_CLASSES,
    classify_content,
    content_type_label,
    extract_pdf_text,
)
from regwatch.evidence.text import html_to_text, normalize_html_for_hash, sha256_hex
from regwatch.exceptions import RecordNotFoundError
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import (
    ArtifactKind,
    ContentClass,
    Evidence,
    EvidenceArtifact,
    WorkKind,
)
from regwatch.storage.session import session_scope
from regwatch.utils.datetime import utc_now
from regwatch.utils.logging import get_logger, log_evidence_captured

logger = get_logger(__name__)

CONVERSION_CLASSES = frozenset(
    {ContentClass.DOC, ContentClass.DOCX, ContentClass.XLS, ContentClass.XLSX}
)
# Classes whose text arrives later, through OCR or an office converter
AWAITING_TEXT_CLASSES = CONVERSION_CLASSES | {ContentClass.PDF_SCANNED}


@dataclass
class CaptureResult:
    evidence: Evidence
    created: bool

    @property
    def evidence_id(self) -> int:
        return self.evidence.id

    @property
    def ready_for_extraction(self) -> bool:
        return self.evidence.content_class not in AWAITING_TEXT_CLASSES


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def stored_content(raw: bytes, content_class: ContentClass) -> str:
    """Text classes are stored decoded, everything else base64 encoded."""
    if content_class in TEXT_CLASSES or content_class == ContentClass.UNKNOWN:
        return _decode(raw)
    return base64.b64encode(raw).decode("ascii")


def raw_bytes_of(evidence: Evidence) -> bytes:
    """Inverse of ``stored_content``."""
    if evidence.content_class in TEXT_CLASSES or evidence.content_class == ContentClass.UNKNOWN:
        return evidence.raw_content.encode("utf-8")
    return base64.b64decode(evidence.raw_content)


def content_hash_for(content: str, content_class: ContentClass) -> str:
    if content_class == ContentClass.HTML:
        return sha256_hex(normalize_html_for_hash(content))
    return sha256_hex(content)


class EvidenceStore:
    """Capture, route and read evidence."""

    def __init__(
        self,
        session_factory: SessionFactory,
        queue: WorkQueue,
        audit: AuditLogger | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.queue = queue
        self.audit = audit or AuditLogger()
        self._routes: dict[ContentClass, Callable[[Evidence, bytes], None]] = {
            ContentClass.PDF_SCANNED: self._route_ocr,
            ContentClass.PDF_TEXT: self._route_pdf_text,
            ContentClass.HTML: self._route_html,
            ContentClass.DOC: self._route_conversion,
            ContentClass.DOCX: self._route_conversion,
            ContentClass.XLS: self._route_conversion,
            ContentClass.XLSX: self._route_conversion,
        }

    def _find(self, url: str, content_hash: str) -> Evidence | None:
        with session_scope(self._session_factory) as db:
            return db.scalars(
                select(Evidence).where(
                    Evidence.url == url, Evidence.content_hash == content_hash
                )
            ).first()

    def capture(
        self,
        url: str,
        raw: bytes,
        content_type: str | None = None,
        source_id: int | None = None,
    ) -> CaptureResult:
        """Store fetched bytes as Evidence unless the same capture exists."""
        content_class = classify_content(raw, content_type, url)
        content = stored_content(raw, content_class)
        content_hash = content_hash_for(content, content_class)

        existing = self._find(url, content_hash)
        if existing is not None:
            logger.debug("evidence_exists", evidence_id=existing.id, url=url)
            return CaptureResult(evidence=existing, created=False)

        db = self._session_factory()
        try:
            has_changed = (
                db.scalar(select(Evidence.id).where(Evidence.url == url).limit(1)) is not None
            )
            evidence = Evidence(
                url=url,
                content_hash=content_hash,
                raw_content=content,
                content_type=content_type_label(content_class),
                content_class=content_class,
                source_id=source_id,
                fetched_at=utc_now(),
                has_changed=has_changed,
            )
            db.add(evidence)
            db.commit()
        except IntegrityError:
            # Concurrent capture of the same content won the insert
            db.rollback()
            winner = self._find(url, content_hash)
            if winner is None:
                raise
            logger.info("evidence_capture_race", evidence_id=winner.id, url=url)
            return CaptureResult(evidence=winner, created=False)
        finally:
            db.close()

        route = self._routes.get(content_class)
        if route is not None:
            route(evidence, raw)

        self.queue.enqueue(
            WorkKind.EMBEDDING, {"evidence_id": evidence.id}, f"embedding:{evidence.id}"
        )

        log_evidence_captured(logger, evidence.id, url, content_class.value, True)
        self.audit.record(
            EvidenceCapturedEvent(
                evidence_id=evidence.id,
                url=url,
                content_class=content_class.value,
                created=True,
            )
        )
        return CaptureResult(evidence=evidence, created=True)

    # Routing by content class

    def _route_ocr(self, evidence: Evidence, raw: bytes) -> None:
        self.queue.enqueue(WorkKind.OCR, {"evidence_id": evidence.id}, f"ocr:{evidence.id}")

    def _route_pdf_text(self, evidence: Evidence, raw: bytes) -> None:
        pdf = extract_pdf_text(raw)
        self._add_artifact(evidence, ArtifactKind.PDF_TEXT, pdf.text, pdf.page_map, primary=True)

    def _route_html(self, evidence: Evidence, raw: bytes) -> None:
        text = html_to_text(evidence.raw_content)
        self._add_artifact(evidence, ArtifactKind.HTML_CLEANED, text, None, primary=True)

    def _route_conversion(self, evidence: Evidence, raw: bytes) -> None:
        # No office converter yet; the evidence stays listed by awaiting_conversion()
        logger.info(
            "evidence_awaiting_conversion",
            evidence_id=evidence.id,
            content_class=evidence.content_class.value,
        )

    def _add_artifact(
        self,
        evidence: Evidence,
        kind: ArtifactKind,
        content: str,
        page_map: list[dict[str, int]] | None,
        primary: bool,
    ) -> EvidenceArtifact:
        with session_scope(self._session_factory) as db:
            artifact = EvidenceArtifact(
                evidence_id=evidence.id,
                kind=kind,
                content=content,
                content_hash=sha256_hex(content),
                page_map=page_map,
            )
            db.add(artifact)
            db.flush()
            if primary:
                row = db.get(Evidence, evidence.id)
                row.primary_text_artifact_id = artifact.id
                evidence.primary_text_artifact_id = artifact.id
            return artifact

    # Reads

    def get(self, evidence_id: int) -> Evidence:
        with session_scope(self._session_factory) as db:
            evidence = db.get(Evidence, evidence_id)
            if evidence is None:
                raise RecordNotFoundError(
                    f"Evidence {evidence_id} not found",
                    entity_type="Evidence",
                    entity_id=evidence_id,
                )
            return evidence

    def awaiting_conversion(self, limit: int = 100) -> list[Evidence]:
        """Office documents that have no text artifact yet."""
        with session_scope(self._session_factory) as db:
            return list(
                db.scalars(
                    select(Evidence)
                    .where(
                        Evidence.content_class.in_(CONVERSION_CLASSES),
                        Evidence.primary_text_artifact_id.is_(None),
                    )
                    .order_by(Evidence.id)
                    .limit(limit)
                )
            )

    def get_extractable_text(self, evidence: Evidence) -> str | None:
        """Primary text artifact, or the raw content for text classes.

        Returns None for binaries still waiting on OCR or conversion.
        """
        if evidence.primary_text_artifact_id is not None:
            with session_scope(self._session_factory) as db:
                artifact = db.get(EvidenceArtifact, evidence.primary_text_artifact_id)
                if artifact is not None:
                    return artifact.content

        if evidence.content_class in TEXT_CLASSES or evidence.content_class == ContentClass.UNKNOWN:
            return evidence.raw_content
        return None

    def attach_ocr_result(self, evidence_id: int, text: str, page_count: int, engine: str = "ocr") -> EvidenceArtifact:
        """Store OCR output as the primary text of a scanned PDF."""
        evidence = self.get(evidence_id)
        artifact = self._add_artifact(evidence, ArtifactKind.OCR_TEXT, text, None, primary=True)

        with session_scope(self._session_factory) as db:
            row = db.get(Evidence, evidence_id)
            row.ocr_metadata = {
                "engine": engine,
                "page_count": page_count,
                "chars": len(text),
                "processed_at": utc_now().isoformat(),
            }

        logger.info("ocr_result_attached", evidence_id=evidence_id, pages=page_count, chars=len(text))
        return artifact
