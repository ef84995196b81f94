"""Work queue collaborator.

``enqueue(kind, payload, idempotency_key)`` is the only contract the pipeline
relies on. Enqueueing the same idempotency key twice is a no-op, which is how
"exactly once per cycle" signals (selector adaptation) and per-evidence jobs
stay deduplicated even under concurrent producers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import WorkItem, WorkKind, WorkStatus
from regwatch.storage.session import session_scope
from regwatch.utils.datetime import utc_now
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class QueuedWork:
    """A unit of work handed to a consumer."""

    id: int
    kind: WorkKind
    payload: dict[str, Any]
    idempotency_key: str
    attempts: int = 0


class WorkQueue(Protocol):
    """Queue/worker collaborator."""

    def enqueue(self, kind: WorkKind, payload: dict[str, Any], idempotency_key: str) -> bool:
        """Queue work. Returns False if the key was already queued."""
        ...

    def dequeue(self, kinds: list[WorkKind] | None = None, limit: int = 10) -> list[QueuedWork]:
        ...

    def mark_done(self, work_id: int) -> None:
        ...

    def mark_failed(self, work_id: int, error: str) -> None:
        ...


class DatabaseWorkQueue:
    """Work queue backed by the ``work_items`` table."""

    def __init__(self, session_factory: SessionFactory, max_attempts: int = 3) -> None:
        self._session_factory = session_factory
        self.max_attempts = max_attempts

    def enqueue(self, kind: WorkKind, payload: dict[str, Any], idempotency_key: str) -> bool:
        db = self._session_factory()
        try:
            existing = db.scalar(
                select(WorkItem.id).where(WorkItem.idempotency_key == idempotency_key)
            )
            if existing is not None:
                logger.debug("work_already_queued", kind=kind.value, key=idempotency_key)
                return False

            db.add(WorkItem(kind=kind, payload=payload, idempotency_key=idempotency_key))
            db.commit()
        except IntegrityError:
            # Another producer inserted the same key between our check and insert
            db.rollback()
            logger.debug("work_enqueue_race", kind=kind.value, key=idempotency_key)
            return False
        finally:
            db.close()

        logger.info("work_enqueued", kind=kind.value, key=idempotency_key)
        return True

    def dequeue(self, kinds: list[WorkKind] | None = None, limit: int = 10) -> list[QueuedWork]:
        with session_scope(self._session_factory) as db:
            stmt = select(WorkItem).where(WorkItem.status == WorkStatus.QUEUED)
            if kinds:
                stmt = stmt.where(WorkItem.kind.in_(kinds))
            rows = db.scalars(stmt.order_by(WorkItem.id).limit(limit)).all()
            return [
                QueuedWork(
                    id=row.id,
                    kind=row.kind,
                    payload=dict(row.payload),
                    idempotency_key=row.idempotency_key,
                    attempts=row.attempts,
                )
                for row in rows
            ]

    def mark_done(self, work_id: int) -> None:
        with session_scope(self._session_factory) as db:
            row = db.get(WorkItem, work_id)
            if row is None:
                return
            row.status = WorkStatus.DONE
            row.attempts += 1
            row.processed_at = utc_now()

    def mark_failed(self, work_id: int, error: str) -> None:
        """Record a failed attempt; the item stays queued until attempts run out."""
        with session_scope(self._session_factory) as db:
            row = db.get(WorkItem, work_id)
            if row is None:
                return
            row.attempts += 1
            row.last_error = error[:2000]
            if row.attempts >= self.max_attempts:
                row.status = WorkStatus.FAILED
                row.processed_at = utc_now()
            logger.warning(
                "work_failed",
                work_id=work_id,
                kind=row.kind.value,
                attempts=row.attempts,
                error=error,
            )

    def count(self, kind: WorkKind | None = None, status: WorkStatus | None = None) -> int:
        with session_scope(self._session_factory) as db:
            stmt = select(WorkItem)
            if kind is not None:
                stmt = stmt.where(WorkItem.kind == kind)
            if status is not None:
                stmt = stmt.where(WorkItem.status == status)
            return len(db.scalars(stmt).all())


@dataclass
class InMemoryWorkQueue:
    """Process-local queue with the same idempotency semantics."""

    max_attempts: int = 3
    items: list[QueuedWork] = field(default_factory=list)
    _keys: set[str] = field(default_factory=set)
    _done: set[int] = field(default_factory=set)
    _failed: dict[int, str] = field(default_factory=dict)

    def enqueue(self, kind: WorkKind, payload: dict[str, Any], idempotency_key: str) -> bool:
        if idempotency_key in self._keys:
            return False
        self._keys.add(idempotency_key)
        self.items.append(
            QueuedWork(
                id=len(self.items) + 1,
                kind=kind,
                payload=dict(payload),
                idempotency_key=idempotency_key,
            )
        )
        return True

    def dequeue(self, kinds: list[WorkKind] | None = None, limit: int = 10) -> list[QueuedWork]:
        pending = [
            item
            for item in self.items
            if item.id not in self._done
            and item.id not in self._failed
            and (not kinds or item.kind in kinds)
        ]
        return pending[:limit]

    def mark_done(self, work_id: int) -> None:
        self._done.add(work_id)

    def mark_failed(self, work_id: int, error: str) -> None:
        for item in self.items:
            if item.id == work_id:
                item.attempts += 1
                if item.attempts >= self.max_attempts:
                    self._failed[work_id] = error

    def of_kind(self, kind: WorkKind) -> list[QueuedWork]:
        return [item for item in self.items if item.kind == kind]
