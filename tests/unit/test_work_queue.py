"""
Tests for the SQL-backed work queue.
"""
from datetime import timedelta

import pytest

from tradeguard.domain.models import WorkItemStatus, WorkItemType
from tradeguard.execution.work_queue import SqlWorkQueue

PAYLOAD = {"params": {"symbol": "AAPL", "side": "buy", "type": "market", "time_in_force": "day", "notional": "1000"}}


def _enqueue(queue, key="key-1", max_attempts=3):
    return queue.enqueue(WorkItemType.ORDER_SUBMIT, "AAPL", key, PAYLOAD, max_attempts)


class TestEnqueue:
    def test_new_item_is_pending_and_due_now(self, queue, clock):
        item = _enqueue(queue)
        assert item.status == WorkItemStatus.PENDING
        assert item.attempts == 0
        assert item.next_run_at == clock.now()
        assert item.payload == PAYLOAD

    def test_same_key_returns_existing_item(self, queue):
        first = _enqueue(queue)
        second = _enqueue(queue)
        assert second.id == first.id
        assert queue.metrics["enqueued"] == 1
        assert queue.metrics["deduplicated"] == 1


class TestClaim:
    def test_claim_counts_attempt_and_hands_out_once(self, queue):
        item = _enqueue(queue)
        claimed = queue.claim_next()
        assert claimed.id == item.id
        assert claimed.status == WorkItemStatus.IN_PROGRESS
        assert claimed.attempts == 1
        assert queue.claim_next() is None

    def test_empty_queue(self, queue):
        assert queue.claim_next() is None


class TestFailure:
    def test_retryable_failure_is_rescheduled_with_backoff(self, queue, clock):
        item = _enqueue(queue)
        queue.claim_next()
        failed = queue.mark_failed(item.id, "503 service unavailable", retryable=True)

        assert failed.status == WorkItemStatus.PENDING
        assert failed.last_error == "503 service unavailable"
        assert failed.next_run_at == clock.now() + timedelta(milliseconds=1000)
        assert queue.claim_next() is None

        clock.advance(1.0)
        assert queue.claim_next().attempts == 2

    def test_permanent_failure_dead_letters(self, queue):
        item = _enqueue(queue)
        queue.claim_next()
        failed = queue.mark_failed(item.id, "invalid symbol", retryable=False)
        assert failed.status == WorkItemStatus.DEAD_LETTER
        assert queue.metrics["dead_lettered"] == 1

    def test_exhausted_attempts_dead_letter(self, queue, clock):
        item = _enqueue(queue, max_attempts=2)
        queue.claim_next()
        queue.mark_failed(item.id, "timeout")
        clock.advance(10)
        queue.claim_next()
        failed = queue.mark_failed(item.id, "timeout")
        assert failed.status == WorkItemStatus.DEAD_LETTER
        assert failed.attempts == 2
        assert [d.id for d in queue.dead_letters()] == [item.id]

    def test_retry_dead_letter_resets_attempts(self, queue):
        item = _enqueue(queue)
        queue.claim_next()
        queue.mark_failed(item.id, "rejected", retryable=False)

        requeued = queue.retry_dead_letter(item.id)
        assert requeued.status == WorkItemStatus.PENDING
        assert requeued.attempts == 0
        assert queue.retry_dead_letter(item.id) is None


class TestInvalidate:
    def test_invalidate_frees_key(self, queue):
        first = _enqueue(queue)
        queue.claim_next()
        queue.mark_succeeded(first.id, {"order_id": "o-1", "status": "canceled"})

        queue.invalidate(first.id, "Order canceled by broker")
        old = queue.get_by_id(first.id)
        assert old.status == WorkItemStatus.CANCELLED
        assert old.idempotency_key == "key-1"

        fresh = _enqueue(queue)
        assert fresh.id != first.id
        assert fresh.status == WorkItemStatus.PENDING

    def test_invalidate_unknown_item_is_noop(self, queue):
        queue.invalidate("missing", "whatever")
        assert queue.metrics["invalidated"] == 0


class TestRetryDelay:
    @pytest.mark.parametrize(
        "attempt,expected",
        [(1, 1000), (2, 5000), (3, 15000), (7, 15000)],
    )
    def test_submit_schedule(self, queue, attempt, expected):
        assert queue.retry_delay_ms(WorkItemType.ORDER_SUBMIT, attempt) == expected

    def test_jitter_is_bounded_by_fraction(self, db, clock):
        q = SqlWorkQueue(db, clock=clock, rng=lambda: 1.0)
        assert q.retry_delay_ms(WorkItemType.ORDER_CANCEL, 2) == 3600


def test_counts_by_status(queue):
    _enqueue(queue, "a")
    _enqueue(queue, "b")
    claimed = queue.claim_next()
    queue.mark_succeeded(claimed.id, {"order_id": "o-1", "status": "filled"})
    assert queue.counts_by_status() == {"SUCCEEDED": 1, "PENDING": 1}
