"""Audit persistence listener.

Writes every audit event to the ``audit_events`` table: operation name,
entity type, entity id and the remaining event fields as metadata.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any

from ...storage.database.base import SessionFactory, get_session
from ...storage.database.models import AuditEvent
from ...utils.logging import get_logger
from .audit_events import AUDIT_MAPPING
from .base import BaseEvent

logger = get_logger(__name__)


class AuditPersistenceListener:
    """Listens to domain events and persists them to the database.

    Runs with low priority (-100) so that it never delays other handlers.
    Persistence failures are logged and do not propagate into the bus.
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory or get_session
        self._enabled = True

    def handle_event(self, event: BaseEvent) -> None:
        """Persist an event to the database."""
        if not self._enabled:
            return

        try:
            action, entity_type, entity_id = self._extract_entity_info(event)
            event_data = self._prepare_json_data(asdict(event))

            db = self._session_factory()
            try:
                db.add(
                    AuditEvent(
                        event_id=str(event.event_id),
                        action=action,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        meta=event_data,
                        occurred_at=event.occurred_at,
                    )
                )
                db.commit()

                logger.debug(
                    "audit_event_persisted",
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                )
            finally:
                db.close()

        except Exception as e:
            logger.error(
                "audit_event_persist_failed",
                event_type=event.__class__.__name__,
                error=str(e),
                exc_info=True,
            )

    def disable(self) -> None:
        self._enabled = False

    def enable(self) -> None:
        self._enabled = True

    def _extract_entity_info(self, event: BaseEvent) -> tuple[str, str, str]:
        """Resolve (action, entity_type, entity_id) for an event."""
        mapping = AUDIT_MAPPING.get(type(event))
        if mapping is None:
            return type(event).__name__, "unknown", "-"

        action, entity_type, id_field = mapping
        return action, entity_type, str(getattr(event, id_field))

    def _prepare_json_data(self, data: dict[str, Any]) -> dict[str, Any]:
        """Convert datetimes, UUIDs and enums to JSON-friendly values."""
        result: dict[str, Any] = {}
        for key, value in data.items():
            if key in ("event_id", "occurred_at"):
                continue
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Enum):
                result[key] = value.value
            elif isinstance(value, dict):
                result[key] = self._prepare_json_data(value)
            else:
                result[key] = value
        return result
