"""Reference table extraction (IBANs, CN codes, tax offices, rates)."""

from dataclasses import dataclass

from sqlalchemy import select

from regwatch.ai.agents.prompts import AgentType
from regwatch.ai.agents.runner import AgentRunner
from regwatch.ai.agents.schemas import (
    ExtractedReferenceTable,
    ReferenceExtractorInput,
    ReferenceExtractorOutput,
)
from regwatch.evidence.store import EvidenceStore
from regwatch.evidence.text import truncate
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import Evidence, ReferenceEntry, ReferenceTable
from regwatch.storage.session import session_scope
from regwatch.utils.config import get_settings
from regwatch.utils.datetime import utc_now
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ReferenceExtractionResult:
    success: bool
    evidence_id: int
    tables_created: int = 0
    tables_updated: int = 0
    entries_created: int = 0
    entries_updated: int = 0
    agent_run_id: int | None = None
    error: str | None = None


class ReferenceExtractor:
    """Runs REFERENCE_EXTRACTOR and upserts the tables it finds."""

    def __init__(
        self,
        runner: AgentRunner,
        store: EvidenceStore,
        session_factory: SessionFactory,
        max_content_chars: int | None = None,
    ) -> None:
        self.runner = runner
        self.store = store
        self._session_factory = session_factory
        self.max_content_chars = max_content_chars or get_settings().agents.max_content_chars

    async def extract(self, evidence: Evidence | int) -> ReferenceExtractionResult:
        if isinstance(evidence, int):
            evidence = self.store.get(evidence)

        text = self.store.get_extractable_text(evidence)
        if not text:
            return ReferenceExtractionResult(
                success=False, evidence_id=evidence.id, error="No extractable text"
            )

        result = await self.runner.run(
            AgentType.REFERENCE_EXTRACTOR,
            {
                "evidence_id": evidence.id,
                "content": truncate(text, self.max_content_chars),
                "source_url": evidence.url,
            },
            ReferenceExtractorInput,
            ReferenceExtractorOutput,
            evidence_id=evidence.id,
        )
        if not result.ok:
            return ReferenceExtractionResult(
                success=False,
                evidence_id=evidence.id,
                agent_run_id=result.run_id,
                error=str(result.error),
            )

        outcome = ReferenceExtractionResult(
            success=True, evidence_id=evidence.id, agent_run_id=result.run_id
        )
        with session_scope(self._session_factory) as db:
            for extracted in result.output.tables:
                self._upsert_table(db, extracted, evidence, outcome)

        logger.info(
            "reference_tables_extracted",
            evidence_id=evidence.id,
            tables_created=outcome.tables_created,
            tables_updated=outcome.tables_updated,
            entries_created=outcome.entries_created,
            entries_updated=outcome.entries_updated,
        )
        return outcome

    def _upsert_table(
        self,
        db,
        extracted: ExtractedReferenceTable,
        evidence: Evidence,
        outcome: ReferenceExtractionResult,
    ) -> None:
        table = db.scalar(
            select(ReferenceTable)
            .where(ReferenceTable.category == extracted.category)
            .where(ReferenceTable.name == extracted.name)
            .where(ReferenceTable.jurisdiction == extracted.jurisdiction)
        )
        if table is None:
            table = ReferenceTable(
                category=extracted.category,
                name=extracted.name,
                jurisdiction=extracted.jurisdiction,
                key_column=extracted.key_column,
                value_column=extracted.value_column,
                evidence_id=evidence.id,
                source_url=evidence.url,
            )
            db.add(table)
            db.flush()
            outcome.tables_created += 1
        else:
            changed = (
                table.key_column != extracted.key_column
                or table.value_column != extracted.value_column
                or table.evidence_id != evidence.id
            )
            table.key_column = extracted.key_column
            table.value_column = extracted.value_column
            table.evidence_id = evidence.id
            table.source_url = evidence.url
            if changed:
                outcome.tables_updated += 1
        table.last_updated = utc_now()

        existing = {
            entry.key: entry
            for entry in db.scalars(
                select(ReferenceEntry).where(ReferenceEntry.table_id == table.id)
            ).all()
        }
        for item in extracted.entries:
            entry = existing.get(item.key)
            if entry is None:
                entry = ReferenceEntry(table_id=table.id, key=item.key, value=item.value, meta=item.metadata)
                db.add(entry)
                existing[item.key] = entry
                outcome.entries_created += 1
            elif entry.value != item.value or (entry.meta or None) != (item.metadata or None):
                entry.value = item.value
                entry.meta = item.metadata
                outcome.entries_updated += 1
        db.flush()
