"""SQLAlchemy models for regwatch."""

from __future__ import annotations

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ...utils.datetime import utc_now
from .base import Base


# Enums for discovery, evidence and rule states
class ListingStrategy(str, PyEnum):
    """How an endpoint turns a page into candidate URLs."""

    SITEMAP_XML = "SITEMAP_XML"
    SITEMAP_INDEX = "SITEMAP_INDEX"
    RSS_FEED = "RSS_FEED"
    HTML_LIST = "HTML_LIST"
    PAGINATION = "PAGINATION"
    CRAWL = "CRAWL"


class EndpointPriority(str, PyEnum):
    """Endpoint scan priority."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ScrapeFrequency(str, PyEnum):
    """How often an endpoint listing is rescanned."""

    EVERY_RUN = "EVERY_RUN"
    DAILY = "DAILY"
    TWICE_WEEKLY = "TWICE_WEEKLY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class FreshnessRisk(str, PyEnum):
    """Per-item classification driving the base rescan interval."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class DiscoveredItemStatus(str, PyEnum):
    """Discovered item lifecycle."""

    PENDING = "PENDING"
    FETCHED = "FETCHED"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class BaselineStatus(str, PyEnum):
    """Structural baseline approval state."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    SUPERSEDED = "SUPERSEDED"


class ContentClass(str, PyEnum):
    """Binary classification of captured content."""

    HTML = "HTML"
    PDF_TEXT = "PDF_TEXT"
    PDF_SCANNED = "PDF_SCANNED"
    XML = "XML"
    JSON = "JSON"
    DOC = "DOC"
    DOCX = "DOCX"
    XLS = "XLS"
    XLSX = "XLSX"
    TEXT = "TEXT"
    UNKNOWN = "UNKNOWN"


class ArtifactKind(str, PyEnum):
    """Derived text representations of an Evidence."""

    PDF_TEXT = "PDF_TEXT"
    OCR_TEXT = "OCR_TEXT"
    HTML_CLEANED = "HTML_CLEANED"
    TABLE_JSON = "TABLE_JSON"


class RejectionType(str, PyEnum):
    """Dead-letter reason for a rejected extraction."""

    OUT_OF_RANGE = "OUT_OF_RANGE"
    INVALID_CURRENCY = "INVALID_CURRENCY"
    INVALID_DATE = "INVALID_DATE"
    NO_QUOTE_MATCH = "NO_QUOTE_MATCH"
    VALIDATION_FAILED = "VALIDATION_FAILED"


class RiskTier(str, PyEnum):
    """Stakes classification of a regulatory concept (T0 highest)."""

    T0 = "T0"
    T1 = "T1"
    T2 = "T2"
    T3 = "T3"


class AuthorityLevel(str, PyEnum):
    """Source hierarchy of a rule (LAW prevails)."""

    LAW = "LAW"
    GUIDANCE = "GUIDANCE"
    PROCEDURE = "PROCEDURE"
    PRACTICE = "PRACTICE"


class RuleStatus(str, PyEnum):
    """Regulatory rule review state."""

    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DEPRECATED = "DEPRECATED"


class ConflictType(str, PyEnum):
    """Kinds of regulatory conflict."""

    SOURCE_CONFLICT = "SOURCE_CONFLICT"
    VALUE_MISMATCH = "VALUE_MISMATCH"
    DATE_OVERLAP = "DATE_OVERLAP"
    AUTHORITY_SUPERSEDE = "AUTHORITY_SUPERSEDE"


class ConflictStatus(str, PyEnum):
    """Conflict backlog state."""

    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"


class AgentRunStatus(str, PyEnum):
    """Agent run status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ReferenceCategory(str, PyEnum):
    """Reference table categories."""

    IBAN = "IBAN"
    CN_CODE = "CN_CODE"
    TAX_OFFICE = "TAX_OFFICE"
    INTEREST_RATE = "INTEREST_RATE"
    EXCHANGE_RATE = "EXCHANGE_RATE"
    OTHER = "OTHER"


class WorkKind(str, PyEnum):
    """Kinds of queued work."""

    OCR = "OCR"
    EXTRACTION = "EXTRACTION"
    EMBEDDING = "EMBEDDING"
    SELECTOR_ADAPTATION = "SELECTOR_ADAPTATION"
    COMPOSE = "COMPOSE"
    REVIEW = "REVIEW"
    ARBITRATE = "ARBITRATE"
    RELEASE = "RELEASE"


class WorkStatus(str, PyEnum):
    """Queued work status."""

    QUEUED = "QUEUED"
    DONE = "DONE"
    FAILED = "FAILED"


# Association table: rules <-> source pointers
rule_source_pointers = Table(
    "rule_source_pointers",
    Base.metadata,
    Column("rule_id", ForeignKey("regulatory_rules.id"), primary_key=True),
    Column("source_pointer_id", ForeignKey("source_pointers.id"), primary_key=True),
)


# Models
class RegulatorySource(Base):
    """A trusted origin of regulatory content."""

    __tablename__ = "regulatory_sources"

    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    domain: Mapped[str] = mapped_column(String(200), unique=True, nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    hierarchy: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    jurisdiction: Mapped[str] = mapped_column(String(10), nullable=False, default="HR")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Freshness metadata (mutable)
    fetch_interval_hours: Mapped[int] = mapped_column(Integer, default=24)
    last_fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_content_hash: Mapped[str | None] = mapped_column(String(64))

    evidence: Mapped[list[Evidence]] = relationship(back_populates="source")

    def __repr__(self) -> str:
        return f"<RegulatorySource(id={self.id}, domain='{self.domain}')>"


class DiscoveryEndpoint(Base):
    """A configured entry point on a source."""

    __tablename__ = "discovery_endpoints"
    __table_args__ = (UniqueConstraint("domain", "path"),)

    domain: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    endpoint_type: Mapped[str] = mapped_column(String(50), default="NEWS")

    listing_strategy: Mapped[ListingStrategy] = mapped_column(
        Enum(ListingStrategy), nullable=False, default=ListingStrategy.HTML_LIST
    )
    priority: Mapped[EndpointPriority] = mapped_column(
        Enum(EndpointPriority), nullable=False, default=EndpointPriority.MEDIUM
    )
    scrape_frequency: Mapped[ScrapeFrequency] = mapped_column(
        Enum(ScrapeFrequency), nullable=False, default=ScrapeFrequency.DAILY
    )
    url_pattern: Mapped[str | None] = mapped_column(String(500))
    pagination_pattern: Mapped[str | None] = mapped_column(String(500))

    # Scan state
    last_scraped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_content_hash: Mapped[str | None] = mapped_column(String(64))
    consecutive_errors: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Strategy options: selectors, type filters, date ranges, crawl bounds
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    items: Mapped[list[DiscoveredItem]] = relationship(
        back_populates="endpoint", cascade="all, delete-orphan"
    )
    baselines: Mapped[list[StructuralBaseline]] = relationship(
        back_populates="endpoint", cascade="all, delete-orphan"
    )

    @property
    def full_url(self) -> str:
        if self.path.startswith("http"):
            return self.path
        return f"https://{self.domain}{self.path}"

    def __repr__(self) -> str:
        return f"<DiscoveryEndpoint(id={self.id}, url='{self.full_url}', strategy='{self.listing_strategy.value}')>"


class DiscoveredItem(Base):
    """One candidate URL found on an endpoint."""

    __tablename__ = "discovered_items"
    __table_args__ = (UniqueConstraint("endpoint_id", "url"),)

    endpoint_id: Mapped[int] = mapped_column(ForeignKey("discovery_endpoints.id"), nullable=False)
    endpoint: Mapped[DiscoveryEndpoint] = relationship(back_populates="items")

    url: Mapped[str] = mapped_column(String(1000), nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String(500))
    publication_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    content_hash: Mapped[str | None] = mapped_column(String(64))

    # Adaptive scheduling
    change_frequency: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    scan_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    freshness_risk: Mapped[FreshnessRisk] = mapped_column(
        Enum(FreshnessRisk), nullable=False, default=FreshnessRisk.MEDIUM
    )
    next_scan_due: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    last_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    status: Mapped[DiscoveredItemStatus] = mapped_column(
        Enum(DiscoveredItemStatus), nullable=False, default=DiscoveredItemStatus.PENDING
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    evidence_id: Mapped[int | None] = mapped_column(ForeignKey("evidence.id"))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<DiscoveredItem(id={self.id}, url='{self.url}', status='{self.status.value}')>"


class StructuralBaseline(Base):
    """Approved (or pending) structural fingerprint of an endpoint page."""

    __tablename__ = "structural_baselines"

    endpoint_id: Mapped[int] = mapped_column(ForeignKey("discovery_endpoints.id"), nullable=False)
    endpoint: Mapped[DiscoveryEndpoint] = relationship(back_populates="baselines")

    fingerprint: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[BaselineStatus] = mapped_column(
        Enum(BaselineStatus), nullable=False, default=BaselineStatus.PENDING
    )
    updated_by: Mapped[str] = mapped_column(String(100), nullable=False, default="initial")
    approved_by: Mapped[str | None] = mapped_column(String(100))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Evidence(Base):
    """Immutable, content-addressed capture of one fetch."""

    __tablename__ = "evidence"
    __table_args__ = (UniqueConstraint("url", "content_hash"),)

    source_id: Mapped[int | None] = mapped_column(ForeignKey("regulatory_sources.id"))
    source: Mapped[RegulatorySource | None] = relationship(back_populates="evidence")

    url: Mapped[str] = mapped_column(String(1000), nullable=False, index=True)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    raw_content: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(20), nullable=False, default="html")
    content_class: Mapped[ContentClass] = mapped_column(
        Enum(ContentClass), nullable=False, default=ContentClass.HTML
    )
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    has_changed: Mapped[bool] = mapped_column(Boolean, default=False)

    ocr_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    primary_text_artifact_id: Mapped[int | None] = mapped_column(Integer)

    # Semantic dedup
    embedding: Mapped[list[float] | None] = mapped_column(JSON)
    embedding_status: Mapped[str] = mapped_column(String(20), default="PENDING")
    duplicate_of_ids: Mapped[list[int] | None] = mapped_column(JSON)

    # Extraction coverage
    coverage_score: Mapped[float | None] = mapped_column(Float)
    coverage_missing: Mapped[list[str] | None] = mapped_column(JSON)

    artifacts: Mapped[list[EvidenceArtifact]] = relationship(
        back_populates="evidence", cascade="all, delete-orphan"
    )
    source_pointers: Mapped[list[SourcePointer]] = relationship(back_populates="evidence")

    def __repr__(self) -> str:
        return f"<Evidence(id={self.id}, url='{self.url}', hash='{self.content_hash[:12]}')>"


class EvidenceArtifact(Base):
    """Derived text (PDF text layer, OCR output, cleaned HTML) of an Evidence."""

    __tablename__ = "evidence_artifacts"

    evidence_id: Mapped[int] = mapped_column(ForeignKey("evidence.id"), nullable=False)
    evidence: Mapped[Evidence] = relationship(back_populates="artifacts")

    kind: Mapped[ArtifactKind] = mapped_column(Enum(ArtifactKind), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    page_map: Mapped[list[dict[str, int]] | None] = mapped_column(JSON)


class SourcePointer(Base):
    """A validated atomic claim with an exact source quote."""

    __tablename__ = "source_pointers"

    evidence_id: Mapped[int] = mapped_column(ForeignKey("evidence.id"), nullable=False)
    evidence: Mapped[Evidence] = relationship(back_populates="source_pointers")

    domain: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    value_type: Mapped[str] = mapped_column(String(30), nullable=False)
    extracted_value: Mapped[str] = mapped_column(String(500), nullable=False)
    display_value: Mapped[str | None] = mapped_column(String(500))
    exact_quote: Mapped[str] = mapped_column(Text, nullable=False)
    context_before: Mapped[str | None] = mapped_column(Text)
    context_after: Mapped[str | None] = mapped_column(Text)
    selector: Mapped[str | None] = mapped_column(String(500))

    # Structural reference
    article_number: Mapped[str | None] = mapped_column(String(50))
    paragraph_number: Mapped[str | None] = mapped_column(String(50))
    law_reference: Mapped[str | None] = mapped_column(String(500))

    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    extraction_notes: Mapped[str | None] = mapped_column(Text)

    # Quote location inside the evidence text
    match_type: Mapped[str | None] = mapped_column(String(20))
    start_offset: Mapped[int | None] = mapped_column(Integer)
    end_offset: Mapped[int | None] = mapped_column(Integer)
    agent_run_id: Mapped[int | None] = mapped_column(Integer)

    rules: Mapped[list[RegulatoryRule]] = relationship(
        secondary=rule_source_pointers, back_populates="source_pointers"
    )


class ExtractionRejected(Base):
    """Dead-letter record for a claim that failed deterministic validation."""

    __tablename__ = "extraction_rejected"

    evidence_id: Mapped[int] = mapped_column(ForeignKey("evidence.id"), nullable=False)
    rejection_type: Mapped[RejectionType] = mapped_column(Enum(RejectionType), nullable=False)
    raw_output: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    error_details: Mapped[str] = mapped_column(Text, nullable=False)

    # Reprocessing
    attempt_count: Mapped[int] = mapped_column(Integer, default=1)
    last_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_pointer_id: Mapped[int | None] = mapped_column(Integer)


class RegulatoryRule(Base):
    """Composed, reviewable regulatory rule."""

    __tablename__ = "regulatory_rules"

    concept_slug: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    title_hr: Mapped[str] = mapped_column(String(500), nullable=False)
    title_en: Mapped[str | None] = mapped_column(String(500))
    risk_tier: Mapped[RiskTier] = mapped_column(Enum(RiskTier), nullable=False)
    authority_level: Mapped[AuthorityLevel] = mapped_column(
        Enum(AuthorityLevel), nullable=False, default=AuthorityLevel.GUIDANCE
    )
    applies_when: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    value: Mapped[str] = mapped_column(String(500), nullable=False)
    value_type: Mapped[str] = mapped_column(String(30), nullable=False)
    explanation_hr: Mapped[str | None] = mapped_column(Text)
    explanation_en: Mapped[str | None] = mapped_column(Text)

    effective_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    effective_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    supersedes_id: Mapped[int | None] = mapped_column(ForeignKey("regulatory_rules.id"))

    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[RuleStatus] = mapped_column(
        Enum(RuleStatus), nullable=False, default=RuleStatus.DRAFT, index=True
    )
    composer_notes: Mapped[str | None] = mapped_column(Text)
    reviewer_notes: Mapped[str | None] = mapped_column(Text)
    approved_by: Mapped[str | None] = mapped_column(String(100))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Release
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    source_pointers: Mapped[list[SourcePointer]] = relationship(
        secondary=rule_source_pointers, back_populates="rules"
    )

    def __repr__(self) -> str:
        return f"<RegulatoryRule(id={self.id}, concept='{self.concept_slug}', tier='{self.risk_tier.value}', status='{self.status.value}')>"


class RegulatoryConflict(Base):
    """Disagreement between sources or rules awaiting arbitration."""

    __tablename__ = "regulatory_conflicts"

    conflict_type: Mapped[ConflictType] = mapped_column(Enum(ConflictType), nullable=False)
    status: Mapped[ConflictStatus] = mapped_column(
        Enum(ConflictStatus), nullable=False, default=ConflictStatus.OPEN, index=True
    )
    item_a_id: Mapped[int | None] = mapped_column(ForeignKey("regulatory_rules.id"))
    item_b_id: Mapped[int | None] = mapped_column(ForeignKey("regulatory_rules.id"))
    description: Mapped[str] = mapped_column(Text, nullable=False)

    resolution: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    confidence: Mapped[float | None] = mapped_column(Float)
    requires_human_review: Mapped[bool] = mapped_column(Boolean, default=False)
    human_review_reason: Mapped[str | None] = mapped_column(Text)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    item_a: Mapped[RegulatoryRule | None] = relationship(foreign_keys=[item_a_id])
    item_b: Mapped[RegulatoryRule | None] = relationship(foreign_keys=[item_b_id])


class AgentRun(Base):
    """Audit record of one agent runner invocation. Never deleted."""

    __tablename__ = "agent_runs"

    agent_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[AgentRunStatus] = mapped_column(
        Enum(AgentRunStatus), nullable=False, default=AgentRunStatus.RUNNING
    )
    input: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    raw_output: Mapped[str | None] = mapped_column(Text)
    error: Mapped[str | None] = mapped_column(Text)
    error_kind: Mapped[str | None] = mapped_column(String(30))

    duration_ms: Mapped[int | None] = mapped_column(Integer)
    tokens_used: Mapped[int | None] = mapped_column(Integer)
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    confidence: Mapped[float | None] = mapped_column(Float)

    evidence_id: Mapped[int | None] = mapped_column(Integer, index=True)
    rule_id: Mapped[int | None] = mapped_column(Integer, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ReferenceTable(Base):
    """Lookup data extracted from evidence (bank codes, tax offices...)."""

    __tablename__ = "reference_tables"
    __table_args__ = (UniqueConstraint("category", "name", "jurisdiction"),)

    category: Mapped[ReferenceCategory] = mapped_column(Enum(ReferenceCategory), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    jurisdiction: Mapped[str] = mapped_column(String(10), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    key_column: Mapped[str] = mapped_column(String(100), nullable=False, default="key")
    value_column: Mapped[str] = mapped_column(String(100), nullable=False, default="value")
    evidence_id: Mapped[int | None] = mapped_column(ForeignKey("evidence.id"))
    source_url: Mapped[str | None] = mapped_column(String(1000))
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    entries: Mapped[list[ReferenceEntry]] = relationship(
        back_populates="table", cascade="all, delete-orphan"
    )


class ReferenceEntry(Base):
    """One key/value row in a reference table."""

    __tablename__ = "reference_entries"
    __table_args__ = (UniqueConstraint("table_id", "key"),)

    table_id: Mapped[int] = mapped_column(ForeignKey("reference_tables.id"), nullable=False)
    table: Mapped[ReferenceTable] = relationship(back_populates="entries")

    key: Mapped[str] = mapped_column(String(200), nullable=False)
    value: Mapped[str] = mapped_column(String(1000), nullable=False)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON)


class RuleRelease(Base):
    """A versioned publication of approved rules."""

    __tablename__ = "rule_releases"

    version: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    released_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    rule_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    changelog: Mapped[str | None] = mapped_column(Text)
    approved_by: Mapped[list[str] | None] = mapped_column(JSON)


class WorkItem(Base):
    """Persistent queue entry, unique by idempotency key."""

    __tablename__ = "work_items"

    kind: Mapped[WorkKind] = mapped_column(Enum(WorkKind), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(300), unique=True, nullable=False)
    status: Mapped[WorkStatus] = mapped_column(
        Enum(WorkStatus), nullable=False, default=WorkStatus.QUEUED, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class AuditEvent(Base):
    """Audit trail: captures, drift detections and rule transitions."""

    __tablename__ = "audit_events"

    event_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        return f"<AuditEvent(id={self.id}, action='{self.action}', entity={self.entity_type}:{self.entity_id})>"
