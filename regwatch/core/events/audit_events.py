"""Audit events for regulatory traceability.

Every event here is persisted by the audit listener. ``AUDIT_MAPPING`` tells
the listener which action name, entity type and entity id field to use.
"""

from __future__ import annotations

from dataclasses import dataclass

from .base import BaseEvent


@dataclass(frozen=True)
class EvidenceCapturedEvent(BaseEvent):
    """Fetched content was stored (or reused) as Evidence."""

    evidence_id: int
    url: str
    content_class: str
    created: bool


@dataclass(frozen=True)
class DriftDetectedEvent(BaseEvent):
    """An endpoint's page structure drifted past the alert threshold."""

    endpoint_id: int
    drift_percent: float
    threshold: float
    new_item_count: int
    adaptation_enqueued: bool


@dataclass(frozen=True)
class BaselineApprovedEvent(BaseEvent):
    """A human approved a structural baseline."""

    baseline_id: int
    endpoint_id: int
    approved_by: str


@dataclass(frozen=True)
class SentinelAnomalyEvent(BaseEvent):
    """Discovery produced a suspicious result (zero items, duplicates)."""

    endpoint_id: int
    anomaly: str
    detail: str


@dataclass(frozen=True)
class ExtractionRejectedEvent(BaseEvent):
    """A claim failed deterministic validation and went to the dead-letter table."""

    rejection_id: int
    evidence_id: int
    rejection_type: str


@dataclass(frozen=True)
class RuleCreatedEvent(BaseEvent):
    """Composer drafted a new rule."""

    rule_id: int
    concept_slug: str
    risk_tier: str
    confidence: float


@dataclass(frozen=True)
class RuleStatusChangedEvent(BaseEvent):
    """A rule moved through the review state machine."""

    rule_id: int
    from_status: str
    to_status: str
    actor: str
    reason: str | None = None


@dataclass(frozen=True)
class RulePublishedEvent(BaseEvent):
    """A rule became the active version for its concept."""

    rule_id: int
    release_version: str
    superseded_rule_id: int | None = None


@dataclass(frozen=True)
class ConflictCreatedEvent(BaseEvent):
    """A conflict entered the arbitration backlog."""

    conflict_id: int
    conflict_type: str
    detected_by: str


@dataclass(frozen=True)
class ConflictResolvedEvent(BaseEvent):
    """The arbiter resolved or escalated a conflict."""

    conflict_id: int
    resolution: str
    escalated: bool


# event class -> (action, entity_type, entity id attribute)
AUDIT_MAPPING: dict[type[BaseEvent], tuple[str, str, str]] = {
    EvidenceCapturedEvent: ("evidence_captured", "evidence", "evidence_id"),
    DriftDetectedEvent: ("drift_detected", "endpoint", "endpoint_id"),
    BaselineApprovedEvent: ("baseline_approved", "baseline", "baseline_id"),
    SentinelAnomalyEvent: ("sentinel_anomaly", "endpoint", "endpoint_id"),
    ExtractionRejectedEvent: ("extraction_rejected", "extraction_rejected", "rejection_id"),
    RuleCreatedEvent: ("rule_created", "rule", "rule_id"),
    RuleStatusChangedEvent: ("rule_status_changed", "rule", "rule_id"),
    RulePublishedEvent: ("rule_published", "rule", "rule_id"),
    ConflictCreatedEvent: ("conflict_created", "conflict", "conflict_id"),
    ConflictResolvedEvent: ("conflict_resolved", "conflict", "conflict_id"),
}
