"""Tests for the reviewer and the approval gate."""

import pytest

from regwatch.ai.agents.reviewer import (
    Approve,
    EscalateArbiter,
    EscalateHuman,
    Reject,
    Reviewer,
    parse_decision,
)
from regwatch.ai.agents.schemas import ReviewResult
from regwatch.core.events import RuleStatusChangedEvent
from regwatch.storage.database.models import (
    ConflictType,
    RegulatoryConflict,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
    WorkKind,
)
from regwatch.storage.session import session_scope


def verdict(decision: str, confidence: float, **fields) -> dict:
    return {"review_result": {"decision": decision, "computed_confidence": confidence, **fields}}


def load_rule(session_factory, rule_id: int) -> RegulatoryRule:
    with session_scope(session_factory) as db:
        return db.get(RegulatoryRule, rule_id)


class TestParseDecision:
    def test_confidence_is_clamped(self):
        decision = parse_decision(ReviewResult(decision="APPROVE", computed_confidence=1.7))

        assert decision == Approve(1.0, None)

    def test_reject_reason_from_issues(self):
        decision = parse_decision(
            ReviewResult(
                decision="REJECT",
                computed_confidence=0.4,
                issues_found=[{"severity": "critical", "description": "value not in quote"}],
            )
        )

        assert decision == Reject(0.4, "[critical] value not in quote")

    def test_escalations(self):
        human = parse_decision(
            ReviewResult(decision="ESCALATE_HUMAN", computed_confidence=0.8, human_review_reason="ambiguous")
        )
        arbiter = parse_decision(ReviewResult(decision="ESCALATE_ARBITER", computed_confidence=0.8))

        assert human == EscalateHuman(0.8, "ambiguous")
        assert arbiter == EscalateArbiter(0.8, "reviewer requested arbitration")


class TestReview:
    @pytest.mark.asyncio
    async def test_low_tier_high_confidence_auto_approves(
        self, make_runner, session_factory, queue, audit, recorded_events, make_rule
    ):
        rule_id = make_rule(risk_tier=RiskTier.T3)
        runner, provider = make_runner([verdict("APPROVE", 0.97, reviewer_notes="ok")])

        outcome = await Reviewer(runner, session_factory, queue=queue, audit=audit).review(rule_id)

        assert outcome.success
        assert outcome.status == RuleStatus.APPROVED
        assert provider.calls[0]["input"]["rule"]["id"] == rule_id
        rule = load_rule(session_factory, rule_id)
        assert rule.approved_by == "AUTO_APPROVE_SYSTEM"
        assert rule.confidence == 0.97
        assert [w.idempotency_key for w in queue.of_kind(WorkKind.RELEASE)] == [f"release:{rule_id}"]
        assert isinstance(recorded_events[-1], RuleStatusChangedEvent)

    @pytest.mark.asyncio
    async def test_critical_tier_goes_to_human(self, make_runner, session_factory, queue, make_rule):
        rule_id = make_rule(risk_tier=RiskTier.T0)
        runner, _ = make_runner([verdict("APPROVE", 0.99)])

        outcome = await Reviewer(runner, session_factory, queue=queue).review(rule_id)

        assert outcome.status == RuleStatus.PENDING_REVIEW
        rule = load_rule(session_factory, rule_id)
        assert "T0 requires human approval" in rule.reviewer_notes
        assert rule.approved_by is None
        assert queue.of_kind(WorkKind.RELEASE) == []

    @pytest.mark.asyncio
    async def test_below_threshold_goes_to_human(self, make_runner, session_factory, make_rule):
        rule_id = make_rule(risk_tier=RiskTier.T2)
        runner, _ = make_runner([verdict("APPROVE", 0.9)])

        outcome = await Reviewer(runner, session_factory, auto_approve_threshold=0.95).review(rule_id)

        assert outcome.status == RuleStatus.PENDING_REVIEW

    @pytest.mark.asyncio
    async def test_reject(self, make_runner, session_factory, make_rule):
        rule_id = make_rule()
        runner, _ = make_runner(
            [verdict("REJECT", 0.3, issues_found=[{"severity": "major", "description": "wrong article"}])]
        )

        outcome = await Reviewer(runner, session_factory).review(rule_id)

        assert outcome.status == RuleStatus.REJECTED
        assert load_rule(session_factory, rule_id).reviewer_notes == "[major] wrong article"

    @pytest.mark.asyncio
    async def test_escalate_to_arbiter_opens_conflict(self, make_runner, session_factory, queue, make_rule):
        published = make_rule(value="23", status=RuleStatus.APPROVED, is_active=True)
        rule_id = make_rule(value="25")
        runner, _ = make_runner([verdict("ESCALATE_ARBITER", 0.8, reviewer_notes="differs from published")])

        outcome = await Reviewer(runner, session_factory, queue=queue).review(rule_id)

        assert outcome.status == RuleStatus.PENDING_REVIEW
        with session_scope(session_factory) as db:
            conflict = db.get(RegulatoryConflict, outcome.conflict_id)
            assert conflict.conflict_type == ConflictType.VALUE_MISMATCH
            assert (conflict.item_a_id, conflict.item_b_id) == (published, rule_id)
            assert conflict.meta["detected_by"] == "REVIEWER"
        assert queue.of_kind(WorkKind.ARBITRATE)[0].payload == {"conflict_id": outcome.conflict_id}

    @pytest.mark.asyncio
    async def test_escalate_to_arbiter_without_published_rule(self, make_runner, session_factory, make_rule):
        rule_id = make_rule()
        runner, _ = make_runner([verdict("ESCALATE_ARBITER", 0.8)])

        outcome = await Reviewer(runner, session_factory).review(rule_id)

        assert outcome.status == RuleStatus.PENDING_REVIEW
        assert outcome.conflict_id is None

    @pytest.mark.asyncio
    async def test_only_drafts_are_reviewed(self, make_runner, session_factory, make_rule):
        rule_id = make_rule(status=RuleStatus.PENDING_REVIEW)
        runner, provider = make_runner([])

        outcome = await Reviewer(runner, session_factory).review(rule_id)

        assert outcome.success is False
        assert "not DRAFT" in outcome.error
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_missing_rule(self, make_runner, session_factory):
        runner, _ = make_runner([])

        outcome = await Reviewer(runner, session_factory).review(404)

        assert outcome.success is False

    @pytest.mark.asyncio
    async def test_agent_failure_keeps_draft(self, make_runner, session_factory, make_rule):
        rule_id = make_rule()
        runner, _ = make_runner(["garbage"], max_retries=0)

        outcome = await Reviewer(runner, session_factory).review(rule_id)

        assert outcome.success is False
        assert outcome.agent_run_id is not None
        assert load_rule(session_factory, rule_id).status == RuleStatus.DRAFT


class TestReviewerBatch:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, make_runner, session_factory, make_rule):
        first = make_rule(concept_slug="a")
        second = make_rule(concept_slug="b")
        make_rule(concept_slug="c", status=RuleStatus.APPROVED)
        runner, _ = make_runner(["garbage", verdict("REJECT", 0.2)], max_retries=0)

        summary = await Reviewer(runner, session_factory).run_reviewer_batch()

        assert (summary.processed, summary.succeeded, summary.failed) == (2, 1, 1)
        assert summary.errors[0].startswith(f"rule {first}:")
        assert load_rule(session_factory, second).status == RuleStatus.REJECTED
