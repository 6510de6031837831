"""
Tests for trade persistence.
"""
from decimal import Decimal

import pytest

from tradeguard.domain.models import OrderSide, TradeRecord
from tradeguard.exceptions import MissingOperatorIdentityError


def _trade(order_id="order-1", operator_id="op-1", pnl=None, side=OrderSide.BUY, symbol="AAPL"):
    return TradeRecord(
        symbol=symbol,
        side=side,
        qty=Decimal("10"),
        price=Decimal("150.00"),
        order_id=order_id,
        operator_id=operator_id,
        pnl=pnl,
        notes="test",
    )


def test_record_trade(recorder):
    trade_id = recorder.record_trade(_trade())
    assert trade_id
    assert recorder.trade_count("AAPL") == 1


def test_same_order_recorded_once(recorder):
    first = recorder.record_trade(_trade())
    second = recorder.record_trade(_trade())
    assert first == second
    assert recorder.trade_count() == 1


@pytest.mark.parametrize("operator_id", ["", None])
def test_operator_is_required(recorder, operator_id):
    with pytest.raises(MissingOperatorIdentityError):
        recorder.record_trade(_trade(operator_id=operator_id))
    assert recorder.trade_count() == 0


def test_realized_pnl(recorder):
    recorder.record_trade(_trade("o-1"))
    recorder.record_trade(_trade("o-2", side=OrderSide.SELL, pnl=Decimal("100.00")))
    recorder.record_trade(_trade("o-3", side=OrderSide.SELL, pnl=Decimal("-25.50")))
    recorder.record_trade(_trade("o-4", side=OrderSide.SELL, pnl=Decimal("10.00"), symbol="MSFT"))

    assert recorder.realized_pnl("AAPL") == Decimal("74.50")
    assert recorder.realized_pnl() == Decimal("84.50")
    assert recorder.realized_pnl("TSLA") == Decimal("0")
