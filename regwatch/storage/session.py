"""Unified database session management with context manager pattern.

Usage:
    with session_scope(session_factory) as db:
        item = db.get(DiscoveredItem, item_id)
        item.status = DiscoveredItemStatus.FETCHED
    # committed on success, rolled back on error, always closed
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from regwatch.storage.database.base import SessionFactory, get_session
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)


@contextmanager
def session_scope(factory: SessionFactory | None = None) -> Generator[Session, None, None]:
    """Context manager for database sessions with commit/rollback.

    Args:
        factory: Session factory; defaults to the global one from ``init_db``

    Yields:
        Session: SQLAlchemy session
    """
    db = factory() if factory is not None else get_session()
    try:
        yield db
        db.commit()
    except Exception as e:
        logger.error(
            "db_session_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        db.rollback()
        raise
    finally:
        db.close()
