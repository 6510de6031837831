"""
Tests for the rejection retry engine and its shared circuit breaker.
"""
import re
from decimal import Decimal

import pytest

from tradeguard.domain.models import BrokerOrder, MarketSession
from tradeguard.exceptions import ValidationError
from tradeguard.execution.order_retry import OrderRetryEngine, RetryStatus
from tradeguard.execution.rejection_handlers import (
    BrokerFixEnvironment,
    RejectionCategory,
    RejectionHandler,
)
from tradeguard.utils.circuit_breaker import RetryCircuitBreaker

EXTENDED_HOURS_REASON = "market orders not allowed during extended hours"


def _rejected(order_id="order-1", symbol="AAPL"):
    return BrokerOrder(
        id=order_id,
        symbol=symbol,
        side="buy",
        status="rejected",
        order_type="market",
        qty=Decimal("10"),
        extended_hours=True,
    )


@pytest.fixture
def make_engine(broker, clock):
    def _make(threshold=10, **kwargs):
        breaker = RetryCircuitBreaker(threshold=threshold, clock=clock)
        env = BrokerFixEnvironment(broker, clock, session_fn=lambda symbol: MarketSession.AFTER_HOURS)
        return OrderRetryEngine(broker, env, breaker, clock=clock, **kwargs)

    return _make


@pytest.mark.asyncio
async def test_extended_hours_rejection_resubmitted_as_limit(make_engine, broker, clock):
    engine = make_engine()
    result = await engine.on_rejection(_rejected(), EXTENDED_HOURS_REASON)

    assert result.success
    assert result.final_status == RetryStatus.RETRIED_SUCCESSFULLY
    assert len(result.attempts) == 1
    assert clock.sleeps == [2.0]

    sent = broker.submitted[0]
    assert sent["type"] == "limit"
    assert sent["limit_price"] == "150.75"
    assert sent["extended_hours"] is True
    assert sent["client_order_id"].startswith("retry-order-1-1-")
    assert broker.orders[result.new_order_id].status == "filled"


@pytest.mark.asyncio
async def test_reason_inferred_from_order_when_missing(make_engine, broker):
    engine = make_engine()
    result = await engine.on_rejection(_rejected())
    assert result.success
    assert result.attempts[0].reason == EXTENDED_HOURS_REASON


@pytest.mark.asyncio
async def test_failed_resubmissions_stop_at_retry_cap(make_engine, broker, clock):
    engine = make_engine()
    for _ in range(3):
        broker.reject_next(EXTENDED_HOURS_REASON)

    result = await engine.on_rejection(_rejected(), EXTENDED_HOURS_REASON)

    assert not result.success
    assert result.final_status == RetryStatus.MAX_RETRIES_EXCEEDED
    assert [a.attempt_number for a in result.attempts] == [1, 2, 3]
    assert clock.sleeps == [2.0, 4.0, 8.0]
    assert engine.breaker.state.failures == 3


@pytest.mark.asyncio
async def test_order_already_at_cap_is_not_retried(make_engine, broker):
    engine = make_engine(max_retries=1)
    broker.reject_next(EXTENDED_HOURS_REASON)
    await engine.on_rejection(_rejected(), EXTENDED_HOURS_REASON)

    result = await engine.on_rejection(_rejected(), EXTENDED_HOURS_REASON)
    assert result.final_status == RetryStatus.MAX_RETRIES_EXCEEDED
    assert broker.submitted_count == 0


@pytest.mark.asyncio
async def test_open_breaker_blocks_retries_for_every_symbol(make_engine, broker):
    engine = make_engine(threshold=1)
    broker.reject_next(EXTENDED_HOURS_REASON)

    first = await engine.on_rejection(_rejected("order-1", "AAPL"), EXTENDED_HOURS_REASON)
    assert first.final_status == RetryStatus.PERMANENT_FAILURE
    assert await engine.breaker.is_open()

    broker.set_price("MSFT", Decimal("400"))
    second = await engine.on_rejection(_rejected("order-2", "MSFT"), EXTENDED_HOURS_REASON)
    assert second.final_status == RetryStatus.PERMANENT_FAILURE
    assert second.error == "Circuit breaker is open - too many failures recently"


@pytest.mark.asyncio
async def test_unmatched_reason_has_no_fix(make_engine, broker):
    engine = make_engine()
    result = await engine.on_rejection(_rejected(), "asset went on holiday")
    assert result.final_status == RetryStatus.NO_FIX_AVAILABLE
    assert broker.submitted_count == 0


@pytest.mark.asyncio
async def test_handler_without_fix(make_engine, broker):
    engine = make_engine()
    result = await engine.on_rejection(_rejected(), "symbol not found")
    assert result.final_status == RetryStatus.NO_FIX_AVAILABLE
    assert result.error.startswith("Handler could not generate fix")


@pytest.mark.asyncio
async def test_fix_error_counts_against_breaker(make_engine):
    async def broken(order, reason, env):
        raise ValidationError("cannot price")

    engine = make_engine()
    engine.register_handler(
        RejectionHandler(re.compile("custom", re.I), RejectionCategory.UNKNOWN, "Custom", broken), first=True
    )

    result = await engine.on_rejection(_rejected(), "custom rejection")
    assert result.final_status == RetryStatus.PERMANENT_FAILURE
    assert result.attempts[0].error == "Fix function error: cannot price"
    assert engine.breaker.state.failures == 1


class TestTradeUpdates:
    @pytest.mark.asyncio
    async def test_fill_events_are_ignored(self, make_engine):
        engine = make_engine()
        filled = BrokerOrder(id="o-2", symbol="AAPL", side="buy", status="filled")
        assert engine.handle_trade_update("fill", filled) is None

    @pytest.mark.asyncio
    async def test_rejection_event_runs_in_background(self, make_engine, broker):
        engine = make_engine()
        task = engine.handle_trade_update("rejected", _rejected(), EXTENDED_HOURS_REASON)
        result = await task
        await engine.wait_for_background()

        assert result.success
        assert broker.submitted_count == 1


def test_registry_introspection(make_engine):
    engine = make_engine()
    assert len(engine.registered_handlers()) == 18
    assert engine.test_rejection_reason("wash trade")["category"] == "regulatory"
    assert engine.test_rejection_reason("nothing here") == {"matched": False}


@pytest.mark.asyncio
async def test_retry_stats(make_engine, broker):
    engine = make_engine()
    await engine.on_rejection(_rejected(), EXTENDED_HOURS_REASON)

    stats = engine.get_retry_stats()
    assert stats["total_retries"] == 1
    assert stats["successful_retries"] == 1
    assert stats["circuit_breaker"]["is_open"] is False

    engine.clear_retry_history()
    assert engine.get_retry_stats()["total_retries"] == 0
