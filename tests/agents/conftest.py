"""Fixtures shared by the agent tests."""

from collections.abc import Callable

import pytest

from regwatch.rules.conflicts import open_conflict
from regwatch.storage.database.models import ConflictType, SourcePointer
from regwatch.storage.session import session_scope


@pytest.fixture
def make_pointer(session_factory) -> Callable[..., int]:
    def _make(
        evidence_id: int,
        domain: str = "pdv",
        value_type: str = "percentage",
        value: str = "25",
        quote: str = "Stopa PDV-a iznosi 25%",
        confidence: float = 0.95,
    ) -> int:
        with session_scope(session_factory) as db:
            pointer = SourcePointer(
                evidence_id=evidence_id,
                domain=domain,
                value_type=value_type,
                extracted_value=value,
                exact_quote=quote,
                article_number="38",
                law_reference="Zakon o PDV-u",
                confidence=confidence,
            )
            db.add(pointer)
            db.flush()
            return pointer.id

    return _make


@pytest.fixture
def make_conflict(session_factory) -> Callable[..., int]:
    def _make(
        item_a_id: int | None = None,
        item_b_id: int | None = None,
        conflict_type: ConflictType = ConflictType.VALUE_MISMATCH,
        **meta,
    ) -> int:
        with session_scope(session_factory) as db:
            return open_conflict(db, conflict_type, "25 vs 13", item_a_id, item_b_id, **meta).id

    return _make
