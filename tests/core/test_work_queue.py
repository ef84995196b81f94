"""Tests for the work queue implementations."""

import pytest

from regwatch.core.queue import DatabaseWorkQueue, InMemoryWorkQueue
from regwatch.storage.database.models import WorkKind, WorkStatus


@pytest.fixture(params=["memory", "database"])
def any_queue(request, session_factory):
    if request.param == "memory":
        return InMemoryWorkQueue(max_attempts=2)
    return DatabaseWorkQueue(session_factory, max_attempts=2)


class TestQueueContract:
    def test_enqueue_is_idempotent_by_key(self, any_queue):
        assert any_queue.enqueue(WorkKind.OCR, {"evidence_id": 1}, "ocr:1") is True
        assert any_queue.enqueue(WorkKind.OCR, {"evidence_id": 1}, "ocr:1") is False

        assert [w.idempotency_key for w in any_queue.dequeue()] == ["ocr:1"]

    def test_dequeue_filters_by_kind_in_order(self, any_queue):
        any_queue.enqueue(WorkKind.EMBEDDING, {"evidence_id": 1}, "embedding:1")
        any_queue.enqueue(WorkKind.EXTRACTION, {"evidence_id": 1}, "extraction:1")
        any_queue.enqueue(WorkKind.EXTRACTION, {"evidence_id": 2}, "extraction:2")

        work = any_queue.dequeue([WorkKind.EXTRACTION])

        assert [w.payload["evidence_id"] for w in work] == [1, 2]
        assert len(any_queue.dequeue(limit=1)) == 1

    def test_done_items_leave_the_queue(self, any_queue):
        any_queue.enqueue(WorkKind.REVIEW, {"rule_id": 1}, "review:1")
        [work] = any_queue.dequeue()

        any_queue.mark_done(work.id)

        assert any_queue.dequeue() == []

    def test_failed_items_retry_until_attempts_run_out(self, any_queue):
        any_queue.enqueue(WorkKind.REVIEW, {"rule_id": 1}, "review:1")
        [work] = any_queue.dequeue()

        any_queue.mark_failed(work.id, "provider down")
        [retry] = any_queue.dequeue()
        assert retry.attempts == 1

        any_queue.mark_failed(retry.id, "provider down")
        assert any_queue.dequeue() == []


class TestDatabaseWorkQueue:
    def test_count_and_error_recording(self, session_factory):
        queue = DatabaseWorkQueue(session_factory, max_attempts=1)
        queue.enqueue(WorkKind.ARBITRATE, {"conflict_id": 1}, "arbitrate:1")
        queue.enqueue(WorkKind.ARBITRATE, {"conflict_id": 2}, "arbitrate:2")
        first, second = queue.dequeue()

        queue.mark_done(first.id)
        queue.mark_failed(second.id, "x" * 5000)

        assert queue.count(WorkKind.ARBITRATE) == 2
        assert queue.count(status=WorkStatus.DONE) == 1
        assert queue.count(status=WorkStatus.FAILED) == 1

    def test_unknown_ids_are_ignored(self, session_factory):
        queue = DatabaseWorkQueue(session_factory)

        queue.mark_done(404)
        queue.mark_failed(404, "gone")

        assert queue.count() == 0
