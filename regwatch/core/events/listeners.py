"""Default event listeners and the component-facing audit sink."""

from __future__ import annotations

from dataclasses import asdict

import structlog

from ...storage.database.base import SessionFactory
from .base import BaseEvent, GlobalEventBus, get_global_event_bus
from .persistence import AuditPersistenceListener

logger = structlog.get_logger("event_listeners")


def audit_log_listener(event: BaseEvent) -> None:
    """Write all events to the structured log."""
    event_data = asdict(event)
    event_data["event_id"] = str(event_data["event_id"])
    event_data["occurred_at"] = event_data["occurred_at"].isoformat()

    logger.info(
        "domain_event",
        event_type=event.__class__.__name__,
        **event_data,
    )


def register_audit_listeners(
    event_bus: GlobalEventBus | None = None,
    session_factory: SessionFactory | None = None,
) -> AuditPersistenceListener:
    """Register structured logging and database persistence on the bus.

    Returns:
        The persistence listener that was registered
    """
    event_bus = event_bus or get_global_event_bus()

    if not event_bus.is_subscribed(BaseEvent, audit_log_listener):
        event_bus.subscribe(BaseEvent, audit_log_listener, priority=-90)

    listener = AuditPersistenceListener(session_factory)
    event_bus.subscribe(BaseEvent, listener.handle_event, priority=-100)

    logger.info("audit_listeners_registered")
    return listener


class AuditLogger:
    """Audit sink injected into every component.

    Components describe what happened with a domain event; the bus fans it
    out to the structured log and the ``audit_events`` table.
    """

    def __init__(self, event_bus: GlobalEventBus | None = None) -> None:
        self.event_bus = event_bus or get_global_event_bus()

    def record(self, event: BaseEvent) -> None:
        self.event_bus.publish(event)
