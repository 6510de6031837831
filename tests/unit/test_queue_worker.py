"""
Tests for the work queue worker and broker error classification.
"""
from decimal import Decimal

import pytest

from tradeguard.domain.models import WorkItemStatus, WorkItemType
from tradeguard.exceptions import BrokerAPIError
from tradeguard.execution.queue_worker import classify_error

PARAMS = {"symbol": "AAPL", "side": "buy", "type": "market", "time_in_force": "day", "notional": "1500"}


def _submit_item(queue, key="submit-1", params=None):
    return queue.enqueue(WorkItemType.ORDER_SUBMIT, "AAPL", key, {"params": params or PARAMS})


class TestClassifyError:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Request timeout after 30s", "transient"),
            ("network unreachable", "transient"),
            ("rate limit exceeded", "transient"),
            ("502 Bad Gateway", "transient"),
            ("service temporarily unavailable", "transient"),
            ("invalid symbol ZZZZ", "permanent"),
            ("insufficient buying power", "permanent"),
            ("asset AAPL is not tradable", "permanent"),
            ("order rejected (timeout)", "permanent"),
            ("HTTP 403 forbidden", "permanent"),
            ("something odd happened", "unknown"),
        ],
    )
    def test_classification(self, message, expected):
        assert classify_error(Exception(message)) == expected


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_places_order_with_work_item_client_id(self, queue, worker, broker):
        item = _submit_item(queue)
        await worker.drain()

        done = queue.get_by_id(item.id)
        assert done.status == WorkItemStatus.SUCCEEDED
        assert done.result["status"] == "filled"
        assert broker.submitted_count == 1
        assert broker.submitted[0]["client_order_id"] == item.id
        assert done.broker_order_id == done.result["order_id"]

    @pytest.mark.asyncio
    async def test_existing_open_order_is_adopted(self, queue, worker, broker):
        broker.auto_fill = False
        item = _submit_item(queue)
        existing = await broker.submit_order({**PARAMS, "client_order_id": item.id})

        await worker.drain()

        done = queue.get_by_id(item.id)
        assert done.status == WorkItemStatus.SUCCEEDED
        assert done.result == {"order_id": existing.id, "status": "accepted", "deduplicated": True}
        assert broker.submitted_count == 1

    @pytest.mark.asyncio
    async def test_untradable_symbol_dead_letters(self, queue, worker, broker):
        broker.untradable.add("AAPL")
        item = _submit_item(queue)
        await worker.drain()

        done = queue.get_by_id(item.id)
        assert done.status == WorkItemStatus.DEAD_LETTER
        assert done.last_error == "Symbol AAPL is not tradable"
        assert broker.submitted_count == 0

    @pytest.mark.asyncio
    async def test_transient_error_is_rescheduled(self, queue, worker, broker, clock):
        broker.fail_next("submit_order", BrokerAPIError("503 service unavailable", 503))
        item = _submit_item(queue)
        await worker.drain()

        pending = queue.get_by_id(item.id)
        assert pending.status == WorkItemStatus.PENDING
        assert pending.attempts == 1

        clock.advance(1.0)
        await worker.drain()
        assert queue.get_by_id(item.id).status == WorkItemStatus.SUCCEEDED
        assert broker.submitted_count == 1

    @pytest.mark.asyncio
    async def test_unclassified_error_dead_letters(self, queue, worker, broker):
        broker.fail_next("submit_order", BrokerAPIError("something odd happened"))
        item = _submit_item(queue)
        await worker.drain()
        assert queue.get_by_id(item.id).status == WorkItemStatus.DEAD_LETTER


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_item_cancels_order(self, queue, worker, broker):
        broker.auto_fill = False
        order = await broker.submit_order(PARAMS)
        item = queue.enqueue(WorkItemType.ORDER_CANCEL, "AAPL", "cancel-1", {"order_id": order.id})

        await worker.drain()

        assert queue.get_by_id(item.id).status == WorkItemStatus.SUCCEEDED
        assert broker.orders[order.id].status == "canceled"

    @pytest.mark.asyncio
    async def test_cancel_without_order_id_dead_letters(self, queue, worker):
        item = queue.enqueue(WorkItemType.ORDER_CANCEL, "AAPL", "cancel-2", {})
        await worker.drain()
        assert queue.get_by_id(item.id).status == WorkItemStatus.DEAD_LETTER


@pytest.mark.asyncio
async def test_drain_runs_every_due_item(queue, worker, broker):
    broker.set_price("MSFT", Decimal("400"))
    _submit_item(queue, "a")
    _submit_item(queue, "b", {**PARAMS, "symbol": "MSFT"})
    assert await worker.drain() == 2
    assert await worker.drain() == 0
