"""
Tests for Decimal money helpers.
"""
from decimal import Decimal

from tradeguard.utils.money import (
    calculate_pnl,
    ceil_shares,
    partial_quantity,
    percent_change,
    price_with_buffer,
    to_decimal,
    whole_shares,
)


def test_round_trip_pnl_is_exact():
    assert calculate_pnl(Decimal("150"), Decimal("160"), Decimal("10")) == Decimal("100.00")


def test_short_pnl_inverts_sign():
    assert calculate_pnl(Decimal("150"), Decimal("160"), Decimal("10"), is_long=False) == Decimal("-100")


def test_float_input_goes_through_str():
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal("") is None
    assert to_decimal(None, Decimal("0")) == Decimal("0")


def test_buffered_limit_prices():
    assert price_with_buffer(Decimal("150.00"), Decimal("0.005"), is_buy=True) == Decimal("150.75")
    assert price_with_buffer(Decimal("150.00"), Decimal("0.005"), is_buy=False) == Decimal("149.25")


def test_share_rounding():
    assert whole_shares(Decimal("1000"), Decimal("150")) == 6
    assert whole_shares(Decimal("100"), Decimal("0")) == 0
    assert ceil_shares(Decimal("5"), Decimal("2")) == 3


def test_partial_quantity_and_percent_change():
    assert partial_quantity(Decimal("10"), Decimal("25")) == Decimal("2.5")
    assert percent_change(Decimal("100"), Decimal("110")) == Decimal("10")
    assert percent_change(Decimal("0"), Decimal("110")) == Decimal("0")
