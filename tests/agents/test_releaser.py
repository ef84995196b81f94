"""Tests for rule publication."""

from datetime import UTC, datetime

import pytest

from regwatch.ai.agents.releaser import Releaser, bump_version, content_hash
from regwatch.core.events import RulePublishedEvent
from regwatch.rules.conflicts import open_conflict
from regwatch.rules.state import RuleStateMachine
from regwatch.storage.database.models import (
    ConflictType,
    RegulatoryRule,
    RiskTier,
    RuleRelease,
    RuleStatus,
)
from regwatch.storage.session import session_scope

OLDER = datetime(2012, 3, 1, tzinfo=UTC)
NEWER = datetime(2013, 7, 1, tzinfo=UTC)


def load_rule(session_factory, rule_id: int) -> RegulatoryRule:
    with session_scope(session_factory) as db:
        return db.get(RegulatoryRule, rule_id)


class TestVersioning:
    @pytest.mark.parametrize(
        "previous,tiers,expected",
        [
            (None, {RiskTier.T3}, "0.0.1"),
            ("1.2.3", {RiskTier.T2, RiskTier.T3}, "1.2.4"),
            ("1.2.3", {RiskTier.T1, RiskTier.T3}, "1.3.0"),
            ("1.2.3", {RiskTier.T0, RiskTier.T1}, "2.0.0"),
        ],
    )
    def test_bump_version(self, previous, tiers, expected):
        assert bump_version(previous, tiers) == expected

    def test_content_hash_ignores_input_order(self):
        a, b = {"id": 1, "value": "25"}, {"id": 2, "value": "13"}

        assert content_hash([a, b]) == content_hash([b, a])
        assert content_hash([a]) != content_hash([{"id": 1, "value": "26"}])


class TestRelease:
    def test_publishes_approved_rule(self, session_factory, audit, recorded_events, make_rule):
        rule_id = make_rule(status=RuleStatus.APPROVED)

        result = Releaser(session_factory, audit).release([rule_id], approved_by=["ana.horvat"])

        assert result.success
        assert result.version == "0.0.1"
        assert result.published_rule_ids == [rule_id]
        rule = load_rule(session_factory, rule_id)
        assert rule.is_active is True
        assert rule.published_at is not None
        with session_scope(session_factory) as db:
            release = db.get(RuleRelease, result.release_id)
            assert release.rule_ids == [rule_id]
            assert release.approved_by == ["ana.horvat"]
            assert len(release.content_hash) == 64
            assert "pdv-standardna-stopa: 25" in release.changelog
        assert isinstance(recorded_events[-1], RulePublishedEvent)

    def test_supersedes_active_rule(self, session_factory, audit, recorded_events, make_rule):
        releaser = Releaser(session_factory, audit)
        old = make_rule(value="23", status=RuleStatus.APPROVED, effective_from=OLDER)
        releaser.release([old])
        new = make_rule(value="25", status=RuleStatus.APPROVED, effective_from=NEWER)

        result = releaser.release([new])

        assert result.version == "0.0.2"
        assert result.superseded_rule_ids == [old]
        previous = load_rule(session_factory, old)
        assert previous.status == RuleStatus.DEPRECATED
        assert previous.is_active is False
        assert previous.effective_until.replace(tzinfo=UTC) == NEWER
        assert load_rule(session_factory, new).supersedes_id == old
        assert recorded_events[-1].superseded_rule_id == old
        assert releaser.get_active_rule("pdv-standardna-stopa").id == new

    def test_batch_supersedes_in_effective_order(self, session_factory, make_rule):
        newer = make_rule(value="25", status=RuleStatus.APPROVED, effective_from=NEWER)
        older = make_rule(value="23", status=RuleStatus.APPROVED, effective_from=OLDER)

        result = Releaser(session_factory).release([newer, older])

        assert result.superseded_rule_ids == [older]
        assert load_rule(session_factory, newer).is_active is True

    def test_critical_rule_bumps_major(self, session_factory, make_rule):
        releaser = Releaser(session_factory)
        releaser.release([make_rule(concept_slug="a", status=RuleStatus.APPROVED)])

        result = releaser.release([make_rule(concept_slug="b", risk_tier=RiskTier.T0, status=RuleStatus.APPROVED)])

        assert result.version == "1.0.0"

    def test_ineligible_rules_are_skipped(self, session_factory, make_rule):
        draft = make_rule(concept_slug="a")
        published = make_rule(concept_slug="b", status=RuleStatus.APPROVED, is_active=True)
        blocked = make_rule(concept_slug="c", status=RuleStatus.APPROVED)
        ok = make_rule(concept_slug="d", status=RuleStatus.APPROVED)
        with session_scope(session_factory) as db:
            open_conflict(db, ConflictType.VALUE_MISMATCH, "open", blocked, draft)

        result = Releaser(session_factory).release([draft, published, blocked, ok, 404])

        assert result.published_rule_ids == [ok]
        assert result.skipped == {
            404: "not found",
            draft: "status DRAFT, not APPROVED",
            published: "already published",
            blocked: "blocked by open conflict",
        }

    def test_nothing_eligible(self, session_factory, make_rule):
        result = Releaser(session_factory).release([make_rule()])

        assert result.success is False
        assert result.error == "No eligible rules to release"
        with session_scope(session_factory) as db:
            assert db.query(RuleRelease).count() == 0


class TestReleaseBatch:
    def test_human_approved_rule_is_published(self, session_factory, audit, make_rule):
        rule_id = make_rule(risk_tier=RiskTier.T1, status=RuleStatus.PENDING_REVIEW)
        RuleStateMachine(session_factory, audit).approve_pending(rule_id, "ana.horvat")

        result = Releaser(session_factory, audit).run_release_batch()

        assert result.success is True
        assert result.published_rule_ids == [rule_id]
        assert result.version == "0.1.0"
        rule = load_rule(session_factory, rule_id)
        assert rule.is_active is True
        assert rule.published_at is not None

    def test_skips_published_and_unapproved_rules(self, session_factory, make_rule):
        make_rule(concept_slug="a", status=RuleStatus.APPROVED, is_active=True)
        make_rule(concept_slug="b", status=RuleStatus.PENDING_REVIEW)

        result = Releaser(session_factory).run_release_batch()

        assert result.success is False
        assert result.error == "No eligible rules to release"

    def test_second_batch_finds_nothing(self, session_factory, make_rule):
        make_rule(status=RuleStatus.APPROVED)
        releaser = Releaser(session_factory)

        assert releaser.run_release_batch().success is True
        assert releaser.run_release_batch().success is False
