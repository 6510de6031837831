"""
Decimal money and percentage helpers.

Every price, quantity, P&L and percentage comparison in the engine goes
through these helpers so binary float error never reaches an allocation or
P&L decision.
"""
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, ROUND_CEILING
from typing import Any, Optional

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """
    Convert broker/json values to Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary
    expansion. None/empty values return ``default``.
    """
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_price(price: Decimal, places: Decimal = CENT) -> Decimal:
    """Round a price to cents, half-up."""
    return price.quantize(places, rounding=ROUND_HALF_UP)


def price_with_buffer(price: Decimal, buffer: Decimal, is_buy: bool) -> Decimal:
    """
    Limit price nudged through the market.

    Buys pay up (price * (1 + buffer)), sells give up (price * (1 - buffer)).
    """
    factor = ONE + buffer if is_buy else ONE - buffer
    return round_price(price * factor)


def whole_shares(value: Decimal, price: Decimal) -> int:
    """Number of whole shares ``value`` dollars buys at ``price`` (floored)."""
    if price <= ZERO:
        return 0
    return int((value / price).to_integral_value(rounding=ROUND_DOWN))


def ceil_shares(value: Decimal, price: Decimal) -> int:
    """Smallest whole share count worth at least ``value`` dollars."""
    if price <= ZERO:
        return 0
    return int((value / price).to_integral_value(rounding=ROUND_CEILING))


def floor_quantity(qty: Decimal) -> int:
    return int(qty.to_integral_value(rounding=ROUND_DOWN))


def partial_quantity(qty: Decimal, percent: Decimal) -> Decimal:
    """Quantity for closing ``percent`` of a position."""
    return qty * percent / HUNDRED


def percent_of(value: Decimal, percent: Decimal) -> Decimal:
    return value * percent / HUNDRED


def percent_change(base: Decimal, current: Decimal) -> Decimal:
    """(current - base) / base * 100; zero when base is zero."""
    if base == ZERO:
        return ZERO
    return (current - base) / base * HUNDRED


def calculate_pnl(entry_price: Decimal, exit_price: Decimal, qty: Decimal, is_long: bool = True) -> Decimal:
    """
    Realized P&L for a round trip.

    Long: (exit - entry) * qty. Short: (entry - exit) * qty.
    """
    if is_long:
        return (exit_price - entry_price) * qty
    return (entry_price - exit_price) * qty
