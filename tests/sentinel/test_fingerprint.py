"""Tests for structural fingerprints, drift scoring and baseline governance."""

import pytest

from regwatch.core.events import DriftDetectedEvent
from regwatch.exceptions import RecordNotFoundError
from regwatch.sentinel.fingerprint import (
    DriftMonitor,
    StructuralFingerprint,
    approve_baseline,
    check_drift,
    create_initial_baseline,
    fingerprint,
    get_approved_baseline,
    propose_baseline_update,
)
from regwatch.storage.database.models import BaselineStatus, StructuralBaseline, WorkKind
from regwatch.storage.session import session_scope

SELECTOR = "li.news-item a"

LISTING_HTML = """
<html><body><ul>
<li class="news-item"><a href="/vijesti/1">Izmjene Zakona o PDV-u</a></li>
<li class="news-item"><a href="/vijesti/2">Novi obrazac JOPPD</a></li>
<li class="news-item"><a href="/vijesti/3">Rokovi za predaju prijave</a></li>
</ul></body></html>
"""

REDESIGNED_HTML = """
<html><body><section>
<div class="card"><span>Izmjene Zakona o PDV-u</span></div>
<div class="card"><span>Novi obrazac JOPPD</span></div>
<div class="card"><span>Rokovi za predaju prijave</span></div>
<div class="card"><span>Obavijest</span></div>
</section></body></html>
"""


def make_fp(selector_yield: int) -> StructuralFingerprint:
    return StructuralFingerprint(
        tag_counts={"div": 10, "a": 5},
        selector_yields={SELECTOR: selector_yield},
        content_ratio=0.5,
        total_elements=40,
    )


class TestFingerprint:
    def test_counts_structure(self):
        fp = fingerprint(LISTING_HTML, [SELECTOR])

        assert fp.tag_counts["li"] == 3
        assert fp.tag_counts["a"] == 3
        assert fp.selector_yields == {SELECTOR: 3}
        assert 0 < fp.content_ratio <= 1

    def test_invalid_selector_yields_zero(self):
        fp = fingerprint(LISTING_HTML, ["li[["])

        assert fp.selector_yields == {"li[[": 0}

    def test_empty_content(self):
        fp = fingerprint("", [SELECTOR])

        assert fp.total_elements == 0
        assert fp.content_ratio == 0.0

    def test_dict_roundtrip_keeps_values(self):
        fp = fingerprint(LISTING_HTML, [SELECTOR])
        restored = StructuralFingerprint.from_dict(fp.to_dict())

        assert restored.selector_yields == fp.selector_yields
        assert restored.captured_at == fp.captured_at


class TestCheckDrift:
    def test_identical_is_zero(self):
        result = check_drift(make_fp(5), make_fp(5))

        assert result.drift_percent == 0.0
        assert result.should_alert is False

    def test_dead_selector_scores_forty_percent(self):
        result = check_drift(make_fp(0), make_fp(5), threshold=15)

        assert result.drift_percent == 40.0
        assert result.components["selectors"] == 100.0
        assert result.should_alert is True

    def test_threshold_is_exclusive(self):
        result = check_drift(make_fp(0), make_fp(5), threshold=40)

        assert result.should_alert is False


class TestBaselineGovernance:
    def test_initial_baseline_is_pending(self, session_factory, make_endpoint):
        endpoint = make_endpoint()
        create_initial_baseline(session_factory, endpoint.id, make_fp(3))

        assert get_approved_baseline(session_factory, endpoint.id) is None

    def test_approval_supersedes_previous(self, session_factory, make_endpoint, audit, recorded_events):
        endpoint = make_endpoint()
        first = create_initial_baseline(session_factory, endpoint.id, make_fp(3))
        approve_baseline(session_factory, first.id, "analyst")
        second = propose_baseline_update(session_factory, endpoint.id, make_fp(4), "adapter")

        # Approved baseline stays in force until the proposal is reviewed
        assert get_approved_baseline(session_factory, endpoint.id).id == first.id

        approve_baseline(session_factory, second.id, "analyst", audit=audit)

        with session_scope(session_factory) as db:
            assert db.get(StructuralBaseline, first.id).status == BaselineStatus.SUPERSEDED
            assert db.get(StructuralBaseline, second.id).status == BaselineStatus.APPROVED
        assert [type(e).__name__ for e in recorded_events] == ["BaselineApprovedEvent"]

    def test_approve_unknown_baseline(self, session_factory):
        with pytest.raises(RecordNotFoundError):
            approve_baseline(session_factory, 999, "analyst")


class TestDriftMonitor:
    @pytest.fixture
    def monitored(self, session_factory, make_endpoint):
        endpoint = make_endpoint(meta={"selectors": [SELECTOR]})
        baseline = create_initial_baseline(
            session_factory, endpoint.id, fingerprint(LISTING_HTML, [SELECTOR])
        )
        approve_baseline(session_factory, baseline.id, "analyst")
        return endpoint

    def test_first_run_creates_pending_baseline(self, session_factory, make_endpoint, queue, audit):
        endpoint = make_endpoint()
        monitor = DriftMonitor(session_factory, queue, audit, threshold=15)

        result = monitor.evaluate(endpoint, LISTING_HTML, new_item_count=0, cycle_id="c1")

        assert result.baseline_pending is True
        assert result.should_alert is False
        assert queue.items == []

    def test_drift_without_new_items_enqueues_one_adaptation(
        self, session_factory, monitored, queue, audit, recorded_events
    ):
        monitor = DriftMonitor(session_factory, queue, audit, threshold=15)

        first = monitor.evaluate(monitored, REDESIGNED_HTML, new_item_count=0, cycle_id="c1")
        monitor.evaluate(monitored, REDESIGNED_HTML, new_item_count=0, cycle_id="c1")

        assert first.should_alert is True
        tasks = queue.of_kind(WorkKind.SELECTOR_ADAPTATION)
        assert len(tasks) == 1
        assert tasks[0].idempotency_key == DriftMonitor.adaptation_key(monitored.id, "c1")
        drift_events = [e for e in recorded_events if isinstance(e, DriftDetectedEvent)]
        assert [e.adaptation_enqueued for e in drift_events] == [True, False]

    def test_drift_with_new_items_does_not_enqueue(self, session_factory, monitored, queue, audit):
        monitor = DriftMonitor(session_factory, queue, audit, threshold=15)

        result = monitor.evaluate(monitored, REDESIGNED_HTML, new_item_count=2, cycle_id="c1")

        assert result.should_alert is True
        assert queue.of_kind(WorkKind.SELECTOR_ADAPTATION) == []

    def test_stable_page_is_quiet(self, session_factory, monitored, queue, audit):
        monitor = DriftMonitor(session_factory, queue, audit, threshold=15)

        result = monitor.evaluate(monitored, LISTING_HTML, new_item_count=0, cycle_id="c1")

        assert result.drift_percent == 0.0
        assert queue.items == []
