"""Domain event system carrying the regulatory audit trail.

Example:
    >>> from regwatch.core.events import AuditLogger, EvidenceCapturedEvent
    >>> audit = AuditLogger()
    >>> audit.record(EvidenceCapturedEvent(evidence_id=1, url="https://...",
    ...                                    content_class="HTML", created=True))
"""

from __future__ import annotations

__all__ = [
    # Base
    "BaseEvent",
    "GlobalEventBus",
    "get_global_event_bus",
    # Audit events
    "BaselineApprovedEvent",
    "ConflictCreatedEvent",
    "ConflictResolvedEvent",
    "DriftDetectedEvent",
    "EvidenceCapturedEvent",
    "ExtractionRejectedEvent",
    "RuleCreatedEvent",
    "RulePublishedEvent",
    "RuleStatusChangedEvent",
    "SentinelAnomalyEvent",
    # Listeners
    "AuditLogger",
    "AuditPersistenceListener",
    "audit_log_listener",
    "register_audit_listeners",
]

from .audit_events import (
    BaselineApprovedEvent,
    ConflictCreatedEvent,
    ConflictResolvedEvent,
    DriftDetectedEvent,
    EvidenceCapturedEvent,
    ExtractionRejectedEvent,
    RuleCreatedEvent,
    RulePublishedEvent,
    RuleStatusChangedEvent,
    SentinelAnomalyEvent,
)
from .base import BaseEvent, GlobalEventBus, get_global_event_bus
from .listeners import AuditLogger, audit_log_listener, register_audit_listeners
from .persistence import AuditPersistenceListener
