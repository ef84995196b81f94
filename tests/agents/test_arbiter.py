"""Tests for conflict arbitration."""

from datetime import UTC, datetime

import pytest

from regwatch.ai.agents.arbiter import (
    Arbiter,
    ArbitrationDecision,
    decision_for,
    deterministic_winner,
    get_pending_conflicts,
)
from regwatch.ai.agents.schemas import Arbitration
from regwatch.core.events import ConflictResolvedEvent
from regwatch.storage.database.models import (
    AuthorityLevel,
    ConflictStatus,
    ConflictType,
    RegulatoryConflict,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
)
from regwatch.storage.session import session_scope

OLDER = datetime(2012, 3, 1, tzinfo=UTC)
NEWER = datetime(2013, 7, 1, tzinfo=UTC)


def arbitration(winner, strategy: str = "temporal", confidence: float = 0.9, **fields) -> dict:
    return {
        "arbitration": {
            "resolution": {"winning_item_id": winner, "resolution_strategy": strategy},
            "confidence": confidence,
            **fields,
        }
    }


def load(session_factory, model, pk):
    with session_scope(session_factory) as db:
        return db.get(model, pk)


class TestPureHelpers:
    def test_decision_for(self):
        def parsed(winner, **fields):
            return Arbitration.model_validate(arbitration(winner, **fields)["arbitration"])

        assert decision_for(parsed(3), 3, 4) == ArbitrationDecision.RULE_A_PREVAILS
        assert decision_for(parsed("4"), 3, 4) == ArbitrationDecision.RULE_B_PREVAILS
        assert decision_for(parsed(" MERGE "), 3, 4) == ArbitrationDecision.MERGE_RULES
        assert decision_for(parsed("99"), 3, 4) == ArbitrationDecision.ESCALATE_TO_HUMAN
        assert decision_for(parsed(3, requires_human_review=True), 3, 4) == ArbitrationDecision.ESCALATE_TO_HUMAN

    def test_deterministic_winner(self):
        law = RegulatoryRule(id=1, authority_level=AuthorityLevel.LAW, effective_from=OLDER)
        guidance = RegulatoryRule(id=2, authority_level=AuthorityLevel.GUIDANCE, effective_from=NEWER)
        newer_law = RegulatoryRule(id=3, authority_level=AuthorityLevel.LAW, effective_from=NEWER)
        twin = RegulatoryRule(id=4, authority_level=AuthorityLevel.LAW, effective_from=NEWER)

        assert deterministic_winner(guidance, law)[0] is law
        assert deterministic_winner(law, newer_law)[0] is newer_law
        winner, rationale = deterministic_winner(twin, newer_law)
        assert winner is newer_law
        assert "lower id" in rationale


class TestArbitrate:
    @pytest.mark.asyncio
    async def test_llm_winner_retires_loser(
        self, make_runner, session_factory, audit, recorded_events, make_rule, make_conflict
    ):
        a = make_rule(value="23", status=RuleStatus.APPROVED, is_active=True, effective_from=OLDER)
        b = make_rule(value="25", status=RuleStatus.PENDING_REVIEW, effective_from=NEWER)
        conflict_id = make_conflict(a, b)
        runner, provider = make_runner([arbitration(b)])

        outcome = await Arbiter(runner, session_factory, audit=audit).arbitrate(conflict_id)

        assert outcome.decision == ArbitrationDecision.RULE_B_PREVAILS
        assert provider.calls[0]["input"]["rule_a"]["id"] == a
        assert load(session_factory, RegulatoryRule, a).status == RuleStatus.DEPRECATED
        assert load(session_factory, RegulatoryRule, b).status == RuleStatus.PENDING_REVIEW
        conflict = load(session_factory, RegulatoryConflict, conflict_id)
        assert conflict.status == ConflictStatus.RESOLVED
        assert conflict.resolution["strategy"] == "temporal"
        assert isinstance(recorded_events[-1], ConflictResolvedEvent)
        assert recorded_events[-1].escalated is False

    @pytest.mark.asyncio
    async def test_draft_loser_is_rejected(self, make_runner, session_factory, make_rule, make_conflict):
        a = make_rule(value="25", status=RuleStatus.APPROVED, effective_from=NEWER)
        b = make_rule(value="13", effective_from=OLDER)
        runner, _ = make_runner([arbitration(a)])

        await Arbiter(runner, session_factory).arbitrate(make_conflict(a, b))

        assert load(session_factory, RegulatoryRule, b).status == RuleStatus.REJECTED

    @pytest.mark.asyncio
    async def test_merge_retires_nothing(self, make_runner, session_factory, make_rule, make_conflict):
        a = make_rule(value="25", status=RuleStatus.APPROVED, effective_from=OLDER)
        b = make_rule(value="25,0", effective_from=NEWER)
        runner, _ = make_runner([arbitration("merge", strategy="specificity")])

        outcome = await Arbiter(runner, session_factory).arbitrate(make_conflict(a, b))

        assert outcome.decision == ArbitrationDecision.MERGE_RULES
        assert load(session_factory, RegulatoryRule, a).status == RuleStatus.APPROVED
        assert load(session_factory, RegulatoryRule, b).status == RuleStatus.DRAFT

    @pytest.mark.parametrize(
        "rule_a,rule_b,reply,reason",
        [
            ({}, {}, arbitration("B", confidence=0.5), "low_confidence"),
            ({"risk_tier": RiskTier.T0}, {"risk_tier": RiskTier.T0}, arbitration("B"), "both_t0"),
            ({}, {}, arbitration("B", strategy="hierarchy"), "equal_authority"),
            ({"effective_from": NEWER}, {}, arbitration("B"), "same_effective_date"),
            ({"confidence": 0.6}, {}, arbitration("B", strategy="conservative"), "low_rule_confidence"),
        ],
    )
    @pytest.mark.asyncio
    async def test_escalation_criteria_override_llm(
        self, make_runner, session_factory, make_rule, make_conflict, rule_a, rule_b, reply, reason
    ):
        a = make_rule(value="23", status=RuleStatus.APPROVED, **{"effective_from": OLDER, **rule_a})
        b = make_rule(value="25", **{"effective_from": NEWER, **rule_b})
        reply["arbitration"]["resolution"]["winning_item_id"] = b
        conflict_id = make_conflict(a, b)
        runner, _ = make_runner([reply])

        outcome = await Arbiter(runner, session_factory).arbitrate(conflict_id)

        assert outcome.escalated
        assert outcome.escalation_reason == reason
        conflict = load(session_factory, RegulatoryConflict, conflict_id)
        assert conflict.status == ConflictStatus.ESCALATED
        assert conflict.requires_human_review is True
        assert load(session_factory, RegulatoryRule, a).status == RuleStatus.APPROVED

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_tiebreakers(
        self, make_runner, session_factory, make_rule, make_conflict
    ):
        guidance = make_rule(value="23", status=RuleStatus.PENDING_REVIEW, authority_level=AuthorityLevel.GUIDANCE)
        law = make_rule(value="25", status=RuleStatus.APPROVED)
        conflict_id = make_conflict(guidance, law)
        runner, _ = make_runner(["garbage"], max_retries=0)

        outcome = await Arbiter(runner, session_factory).arbitrate(conflict_id)

        assert outcome.decision == ArbitrationDecision.RULE_B_PREVAILS
        assert outcome.agent_run_id is not None
        assert load(session_factory, RegulatoryRule, guidance).status == RuleStatus.REJECTED
        conflict = load(session_factory, RegulatoryConflict, conflict_id)
        assert conflict.resolution["strategy"] == "deterministic"
        assert conflict.resolution["winning_item_id"] == str(law)

    @pytest.mark.asyncio
    async def test_llm_failure_with_two_t0_rules_escalates(
        self, make_runner, session_factory, make_rule, make_conflict
    ):
        a = make_rule(value="15", risk_tier=RiskTier.T0, status=RuleStatus.APPROVED)
        b = make_rule(value="20", risk_tier=RiskTier.T0)
        conflict_id = make_conflict(a, b)
        runner, _ = make_runner(["garbage"], max_retries=0)

        outcome = await Arbiter(runner, session_factory).arbitrate(conflict_id)

        assert outcome.escalation_reason == "both_t0"
        assert load(session_factory, RegulatoryRule, a).status == RuleStatus.APPROVED


class TestSourceConflicts:
    @pytest.mark.asyncio
    async def test_escalated_without_llm(self, make_runner, session_factory, pdv_evidence, make_pointer, make_conflict):
        ids = [make_pointer(pdv_evidence.id), make_pointer(pdv_evidence.id, value="13")]
        conflict_id = make_conflict(conflict_type=ConflictType.SOURCE_CONFLICT, pointer_ids=ids)
        runner, provider = make_runner([])

        outcome = await Arbiter(runner, session_factory).arbitrate(conflict_id)

        assert outcome.escalation_reason == "source_data_conflict"
        assert provider.calls == []
        conflict = load(session_factory, RegulatoryConflict, conflict_id)
        assert conflict.status == ConflictStatus.ESCALATED
        assert [p["value"] for p in conflict.resolution["pointers"]] == ["25", "13"]

    @pytest.mark.asyncio
    async def test_single_pointer_auto_resolves(
        self, make_runner, session_factory, pdv_evidence, make_pointer, make_conflict
    ):
        conflict_id = make_conflict(
            conflict_type=ConflictType.SOURCE_CONFLICT, pointer_ids=[make_pointer(pdv_evidence.id)]
        )
        runner, _ = make_runner([])

        outcome = await Arbiter(runner, session_factory).arbitrate(conflict_id)

        assert outcome.success
        assert outcome.decision is None
        assert load(session_factory, RegulatoryConflict, conflict_id).status == ConflictStatus.RESOLVED


class TestArbiterBatch:
    @pytest.mark.asyncio
    async def test_batch_and_guards(self, make_runner, session_factory, make_rule, make_conflict):
        a = make_rule(value="23", status=RuleStatus.APPROVED, effective_from=OLDER)
        b = make_rule(value="25", effective_from=NEWER)
        first = make_conflict(a, b)
        dangling = make_conflict(a, None)
        runner, _ = make_runner([arbitration(b)])
        arbiter = Arbiter(runner, session_factory)

        assert get_pending_conflicts(session_factory) == [first, dangling]
        summary = await arbiter.run_arbiter_batch()

        assert (summary.processed, summary.succeeded, summary.failed) == (2, 1, 1)
        assert get_pending_conflicts(session_factory) == [dangling]
        assert (await arbiter.arbitrate(first)).error.endswith("is RESOLVED")
        assert (await arbiter.arbitrate(404)).success is False
