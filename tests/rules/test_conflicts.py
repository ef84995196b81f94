"""Tests for structural conflict detection and active-rule lookup."""

from datetime import UTC, datetime

import pytest

from regwatch.rules.conflicts import (
    active_rule,
    authority_for_hierarchy,
    dates_overlap,
    detect_structural_conflicts,
    has_open_conflict,
    open_conflict,
)
from regwatch.storage.database.models import (
    AuthorityLevel,
    ConflictType,
    RegulatoryRule,
    RuleStatus,
)
from regwatch.storage.session import session_scope


def at(year: int, month: int = 1, day: int = 1) -> datetime:
    return datetime(year, month, day, tzinfo=UTC)


class TestHelpers:
    @pytest.mark.parametrize(
        "hierarchy,level",
        [
            (1, AuthorityLevel.LAW),
            (2, AuthorityLevel.GUIDANCE),
            (3, AuthorityLevel.PROCEDURE),
            (4, AuthorityLevel.PRACTICE),
            (9, AuthorityLevel.PRACTICE),
            (None, AuthorityLevel.GUIDANCE),
        ],
    )
    def test_authority_for_hierarchy(self, hierarchy, level):
        assert authority_for_hierarchy(hierarchy) == level

    def test_dates_overlap(self):
        assert dates_overlap(at(2013), None, at(2020), None)
        assert dates_overlap(None, None, None, None)
        assert not dates_overlap(at(2013), at(2020), at(2020), None)
        assert not dates_overlap(at(2021), None, at(2013), at(2021))

    def test_naive_datetimes_are_treated_as_utc(self):
        assert not dates_overlap(datetime(2013, 1, 1), datetime(2020, 1, 1), at(2020), None)


class TestDetectStructuralConflicts:
    def test_value_mismatch_with_approved_rule(self, session_factory, make_rule):
        existing = make_rule(value="25", status=RuleStatus.APPROVED, is_active=True)
        new = make_rule(value="13")

        with session_scope(session_factory) as db:
            seeds = detect_structural_conflicts(db, db.get(RegulatoryRule, new))

        assert [(s.conflict_type, s.existing_rule_id, s.new_rule_id) for s in seeds] == [
            (ConflictType.VALUE_MISMATCH, existing, new)
        ]

    def test_higher_authority_may_supersede(self, session_factory, make_rule):
        existing = make_rule(status=RuleStatus.PENDING_REVIEW, authority_level=AuthorityLevel.GUIDANCE)
        new = make_rule(authority_level=AuthorityLevel.LAW)

        with session_scope(session_factory) as db:
            seeds = detect_structural_conflicts(db, db.get(RegulatoryRule, new))

        assert [s.conflict_type for s in seeds] == [ConflictType.AUTHORITY_SUPERSEDE]
        assert seeds[0].existing_rule_id == existing

    def test_ignores_drafts_and_other_concepts(self, session_factory, make_rule):
        make_rule(value="25", status=RuleStatus.DRAFT)
        make_rule(concept_slug="pdv-snizena-stopa", value="13", status=RuleStatus.APPROVED)
        new = make_rule(value="13")

        with session_scope(session_factory) as db:
            assert detect_structural_conflicts(db, db.get(RegulatoryRule, new)) == []

    def test_disjoint_periods_do_not_conflict(self, session_factory, make_rule):
        existing = make_rule(value="23", status=RuleStatus.APPROVED, effective_from=at(2012, 3, 1))
        new = make_rule(value="25", effective_from=at(2013, 7, 1))
        with session_scope(session_factory) as db:
            db.get(RegulatoryRule, existing).effective_until = at(2013, 7, 1)

        with session_scope(session_factory) as db:
            assert detect_structural_conflicts(db, db.get(RegulatoryRule, new)) == []


class TestOpenConflicts:
    def test_open_conflict_and_lookup(self, session_factory, make_rule):
        a = make_rule(value="25", status=RuleStatus.APPROVED)
        b = make_rule(value="13")
        c = make_rule(concept_slug="rokovi-joppd", value="15")

        with session_scope(session_factory) as db:
            conflict = open_conflict(db, ConflictType.VALUE_MISMATCH, "25 vs 13", a, b, source="test")
            assert conflict.meta == {"detected_by": "STRUCTURAL", "source": "test"}

        with session_scope(session_factory) as db:
            assert has_open_conflict(db, a)
            assert has_open_conflict(db, b)
            assert not has_open_conflict(db, c)


class TestActiveRule:
    def test_newest_in_effect(self, session_factory, make_rule):
        old = make_rule(value="23", status=RuleStatus.APPROVED, is_active=True, effective_from=at(2012, 3, 1))
        new = make_rule(value="25", status=RuleStatus.APPROVED, is_active=True, effective_from=at(2013, 7, 1))
        make_rule(value="26", status=RuleStatus.APPROVED, is_active=False, effective_from=at(2024))
        with session_scope(session_factory) as db:
            db.get(RegulatoryRule, old).effective_until = at(2013, 7, 1)

        with session_scope(session_factory) as db:
            assert active_rule(db, "pdv-standardna-stopa").id == new
            assert active_rule(db, "pdv-standardna-stopa", as_of=at(2012, 6, 1)).id == old
            assert active_rule(db, "pdv-standardna-stopa", as_of=at(2011)) is None
            assert active_rule(db, "pdv-standardna-stopa", exclude_id=new).id == old
            assert active_rule(db, "nepostojeci") is None
