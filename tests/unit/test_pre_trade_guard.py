"""
Tests for market session detection and pre-trade checks.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tradeguard.domain.models import MarketSession, OrderSide
from tradeguard.exceptions import BrokerAPIError
from tradeguard.paper.paper_broker import PaperBroker
from tradeguard.risk.pre_trade_guard import PreTradeGuard, market_session_at
from tradeguard.utils.clock import VirtualClock


def _utc(day, hour, minute=0):
    return datetime(2026, 1, day, hour, minute, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "moment,expected",
    [
        (_utc(5, 15), MarketSession.REGULAR),        # Mon 10:00 ET
        (_utc(5, 14, 30), MarketSession.REGULAR),    # Mon 09:30 ET
        (_utc(5, 13), MarketSession.PRE_MARKET),     # Mon 08:00 ET
        (_utc(5, 22), MarketSession.AFTER_HOURS),    # Mon 17:00 ET
        (_utc(6, 2), MarketSession.CLOSED),          # Mon 21:00 ET
        (_utc(10, 15), MarketSession.CLOSED),        # Saturday
    ],
)
def test_market_session_at(moment, expected):
    assert market_session_at(moment) == expected


def _guard_at(moment):
    clock = VirtualClock(start=moment)
    broker = PaperBroker(clock=clock)
    broker.set_price("AAPL", Decimal("150.00"))
    broker.set_price("BTC/USD", Decimal("60000"))
    return PreTradeGuard(broker, clock=clock), broker


class TestCheck:
    @pytest.mark.asyncio
    async def test_regular_session_trades_normally(self):
        guard, _ = _guard_at(_utc(5, 15))
        result = await guard.check("AAPL", OrderSide.BUY, Decimal("1000"))
        assert result.can_trade
        assert not result.use_limit_order
        assert result.available_buying_power == Decimal("100000")

    @pytest.mark.asyncio
    async def test_after_hours_requires_extended_limit(self):
        guard, _ = _guard_at(_utc(5, 22))
        result = await guard.check("AAPL", OrderSide.BUY, Decimal("1000"))
        assert result.can_trade
        assert result.session == MarketSession.AFTER_HOURS
        assert result.use_extended_hours and result.use_limit_order
        assert result.limit_price == Decimal("150.75")

    @pytest.mark.asyncio
    async def test_extended_session_without_price_blocks(self):
        guard, _ = _guard_at(_utc(5, 13))
        result = await guard.check("MSFT", OrderSide.BUY, Decimal("1000"))
        assert not result.can_trade
        assert result.reason == "Cannot get current price for MSFT during pre_market"

    @pytest.mark.asyncio
    async def test_closed_market_blocks(self):
        guard, _ = _guard_at(_utc(10, 15))
        result = await guard.check("AAPL", OrderSide.BUY, Decimal("1000"))
        assert not result.can_trade
        assert result.reason == "Market is closed"

    @pytest.mark.asyncio
    async def test_crypto_trades_when_market_closed(self):
        guard, _ = _guard_at(_utc(10, 15))
        result = await guard.check("BTC/USD", OrderSide.BUY, Decimal("1000"))
        assert result.can_trade
        assert result.session == MarketSession.REGULAR

    @pytest.mark.asyncio
    async def test_insufficient_buying_power(self):
        guard, _ = _guard_at(_utc(5, 15))
        result = await guard.check("AAPL", OrderSide.BUY, Decimal("250000"))
        assert not result.can_trade
        assert result.reason.startswith("Insufficient buying power")

    @pytest.mark.asyncio
    async def test_sells_skip_buying_power(self):
        guard, _ = _guard_at(_utc(5, 15))
        result = await guard.check("AAPL", OrderSide.SELL, Decimal("250000"))
        assert result.can_trade

    @pytest.mark.asyncio
    async def test_broker_failure_blocks_without_raising(self):
        guard, broker = _guard_at(_utc(5, 15))
        broker.fail_next("get_account", BrokerAPIError("timeout"))
        result = await guard.check("AAPL", OrderSide.BUY, Decimal("1000"))
        assert not result.can_trade
        assert result.reason == "Pre-trade check failed: timeout"


class TestTradable:
    @pytest.mark.asyncio
    async def test_untradable_stock(self):
        guard, broker = _guard_at(_utc(5, 15))
        broker.untradable.add("AAPL")
        assert await guard.is_symbol_tradable("AAPL") == (False, "Stock AAPL is not tradable")

    @pytest.mark.asyncio
    async def test_untradable_crypto(self):
        guard, broker = _guard_at(_utc(5, 15))
        broker.untradable.add("BTC/USD")
        assert await guard.is_symbol_tradable("BTC/USD") == (False, "Crypto BTC/USD is not tradable")

    @pytest.mark.asyncio
    async def test_lookup_failure(self):
        guard, broker = _guard_at(_utc(5, 15))
        broker.fail_next("is_tradable", BrokerAPIError("network down"))
        ok, reason = await guard.is_symbol_tradable("AAPL")
        assert not ok
        assert reason == "Symbol validation failed: network down"

    @pytest.mark.asyncio
    async def test_tradable(self):
        guard, _ = _guard_at(_utc(5, 15))
        assert await guard.is_symbol_tradable("AAPL") == (True, None)
