"""
Rejection handler registry.

An ordered list of (pattern, category, fix) records. The first handler whose
pattern matches the rejection text wins. A fix maps the failed broker order
plus the rejection text to a corrected OrderIntent, or None when the
rejection needs an operator (invalid symbol, regulatory blocks, position
limits).

Fix functions only touch the outside world through a FixEnvironment (live
price, buying power, live position, market session, sleep).
"""
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from tradeguard.domain.models import (
    BrokerOrder,
    BrokerPosition,
    MarketSession,
    OrderClass,
    OrderIntent,
    OrderSide,
    OrderType,
    TimeInForce,
)
from tradeguard.exceptions import OperationalError
from tradeguard.monitoring.logger import get_logger
from tradeguard.risk.pre_trade_guard import PreTradeGuard
from tradeguard.utils.money import ZERO, ceil_shares, floor_quantity, price_with_buffer, whole_shares

logger = get_logger(__name__)

LIMIT_BUFFER = Decimal("0.005")
WIDE_LIMIT_BUFFER = Decimal("0.01")
MIN_ORDER_NOTIONAL = Decimal("5")
FALLBACK_NOTIONAL = Decimal("10")
BUYING_POWER_USAGE = Decimal("0.95")
DEFAULT_WASH_TRADE_DELAY_SECONDS = 30.0


class RejectionCategory(str, Enum):
    MARKET_HOURS = "market_hours"
    PRICE_VALIDATION = "price_validation"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    POSITION_LIMITS = "position_limits"
    FRACTIONAL_SHARES = "fractional_shares"
    ORDER_TYPE = "order_type"
    SYMBOL_INVALID = "symbol_invalid"
    REGULATORY = "regulatory"
    UNKNOWN = "unknown"


class FixConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class FixedOrder:
    """Corrected order produced by a handler."""
    intent: OrderIntent
    explanation: str
    confidence: FixConfidence


class FixEnvironment(Protocol):
    """Live context a fix may consult."""

    wash_trade_delay_seconds: float

    async def current_price(self, symbol: str) -> Optional[Decimal]: ...

    async def buying_power(self) -> Decimal: ...

    async def position(self, symbol: str) -> Optional[BrokerPosition]: ...

    def market_session(self, symbol: str) -> MarketSession: ...

    async def sleep(self, seconds: float) -> None: ...


FixFunction = Callable[[BrokerOrder, str, FixEnvironment], Awaitable[Optional[FixedOrder]]]


@dataclass
class RejectionHandler:
    pattern: re.Pattern
    category: RejectionCategory
    description: str
    fix: FixFunction

    def matches(self, reason: str) -> bool:
        return bool(self.pattern.search(reason))

    def describe(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern.pattern,
            "category": self.category.value,
            "description": self.description,
        }


class BrokerFixEnvironment:
    """FixEnvironment backed by the broker client and a per-symbol session function."""

    def __init__(
        self,
        broker,
        clock,
        session_fn: Optional[Callable[[str], MarketSession]] = None,
        wash_trade_delay_seconds: float = DEFAULT_WASH_TRADE_DELAY_SECONDS,
    ):
        self.broker = broker
        self.clock = clock
        self._session_fn = session_fn or PreTradeGuard(broker, clock=clock).current_session
        self.wash_trade_delay_seconds = wash_trade_delay_seconds

    async def current_price(self, symbol: str) -> Optional[Decimal]:
        try:
            snapshot = await self.broker.get_price_snapshot(symbol)
        except OperationalError as e:
            logger.error("Failed to get price", symbol=symbol, error=str(e))
            return None
        return snapshot.best_price()

    async def buying_power(self) -> Decimal:
        account = await self.broker.get_account()
        return account.buying_power

    async def position(self, symbol: str) -> Optional[BrokerPosition]:
        return await self.broker.get_position(symbol)

    def market_session(self, symbol: str) -> MarketSession:
        return self._session_fn(symbol)

    async def sleep(self, seconds: float) -> None:
        await self.clock.sleep(seconds)


# ========== INTENT HELPERS ==========

def _tif(value: Optional[str]) -> TimeInForce:
    try:
        return TimeInForce(value or "day")
    except ValueError:
        return TimeInForce.DAY


def _order_type(value: Optional[str]) -> OrderType:
    try:
        return OrderType(value or "market")
    except ValueError:
        return OrderType.MARKET


def _size(order: BrokerOrder) -> Dict[str, Decimal]:
    if order.qty is not None and order.qty > ZERO:
        return {"qty": order.qty}
    if order.notional is not None and order.notional > ZERO:
        return {"notional": order.notional}
    return {}


def _intent(order: BrokerOrder, **overrides) -> OrderIntent:
    """
    Build an intent from a failed order, keeping its type, time-in-force,
    limit price and session flag unless overridden.
    """
    fields: Dict[str, Any] = {
        "symbol": order.symbol,
        "side": OrderSide(order.side),
        "order_type": _order_type(order.order_type),
        "time_in_force": _tif(order.time_in_force),
        "limit_price": order.limit_price,
        "stop_price": order.stop_price,
        "extended_hours": order.extended_hours,
    }
    fields.update(overrides)
    if "qty" not in fields and "notional" not in fields:
        fields.update(_size(order))

    order_type = fields["order_type"]
    if order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and fields.get("limit_price") is None:
        fields["order_type"] = OrderType.MARKET
        order_type = OrderType.MARKET
    if order_type not in (OrderType.LIMIT, OrderType.STOP_LIMIT):
        fields["limit_price"] = None
    if order_type not in (OrderType.STOP, OrderType.STOP_LIMIT):
        fields["stop_price"] = None
    return OrderIntent(**fields)


async def _limit_conversion(
    order: BrokerOrder,
    env: FixEnvironment,
    buffer: Decimal,
) -> Optional[tuple]:
    """
    (size, limit_price) for converting ``order`` to a buffered limit order.

    Notional orders become whole-share quantities: limit orders cannot be
    sized by dollars.
    """
    price = await env.current_price(order.symbol)
    if not price:
        return None
    limit_price = price_with_buffer(price, buffer, order.side == OrderSide.BUY.value)
    size = _size(order)
    if "notional" in size:
        shares = whole_shares(size["notional"], price)
        if shares < 1:
            logger.warning(
                "Notional too small for whole shares",
                symbol=order.symbol,
                notional=str(size["notional"]),
                price=str(price),
            )
            return None
        size = {"qty": Decimal(shares)}
    if not size:
        return None
    return size, limit_price


# ========== FIXES ==========

async def fix_extended_hours_market(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    conversion = await _limit_conversion(order, env, LIMIT_BUFFER)
    if conversion is None:
        return None
    size, limit_price = conversion
    return FixedOrder(
        intent=_intent(
            order,
            **size,
            order_type=OrderType.LIMIT,
            time_in_force=TimeInForce.DAY,
            limit_price=limit_price,
            extended_hours=True,
            order_class=None,
        ),
        explanation=f"Converted market order to limit order at ${limit_price} for extended hours trading",
        confidence=FixConfidence.HIGH,
    )


async def fix_day_order_market_closed(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    conversion = await _limit_conversion(order, env, LIMIT_BUFFER)
    if conversion is None:
        return None
    size, limit_price = conversion
    return FixedOrder(
        intent=_intent(
            order,
            **size,
            order_type=OrderType.LIMIT,
            time_in_force=TimeInForce.GTC,
            limit_price=limit_price,
            extended_hours=False,
        ),
        explanation=f"Converted to GTC limit order at ${limit_price} to execute when market opens",
        confidence=FixConfidence.HIGH,
    )


async def fix_price_out_of_range(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    conversion = await _limit_conversion(order, env, LIMIT_BUFFER)
    if conversion is None:
        return None
    size, limit_price = conversion
    return FixedOrder(
        intent=_intent(order, **size, order_type=OrderType.LIMIT, limit_price=limit_price),
        explanation=f"Adjusted limit price to ${limit_price} (0.5% from market) to meet broker requirements",
        confidence=FixConfidence.HIGH,
    )


async def fix_notional_below_minimum(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    price = await env.current_price(order.symbol)
    if not price:
        return None
    required_qty = ceil_shares(MIN_ORDER_NOTIONAL, price)
    return FixedOrder(
        intent=_intent(order, qty=Decimal(required_qty)),
        explanation=f"Increased quantity to {required_qty} shares to meet minimum order value (${MIN_ORDER_NOTIONAL})",
        confidence=FixConfidence.MEDIUM,
    )


async def fix_insufficient_funds(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    buying_power = await env.buying_power()
    price = await env.current_price(order.symbol)
    if not price or buying_power <= ZERO:
        return None
    affordable_qty = whole_shares(buying_power * BUYING_POWER_USAGE, price)
    if affordable_qty < 1:
        return None
    return FixedOrder(
        intent=_intent(order, qty=Decimal(affordable_qty)),
        explanation=(
            f"Reduced quantity to {affordable_qty} shares to fit within buying power (${buying_power:.2f})"
        ),
        confidence=FixConfidence.HIGH,
    )


async def fix_fractional_shares(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    if order.qty is None:
        return None
    shares = floor_quantity(order.qty)
    if shares < 1:
        return None
    return FixedOrder(
        intent=_intent(order, qty=Decimal(shares)),
        explanation=f"Rounded down to {shares} whole shares (fractional not supported for this symbol)",
        confidence=FixConfidence.HIGH,
    )


async def fix_time_in_force(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    if not _size(order):
        return None
    return FixedOrder(
        intent=_intent(order, time_in_force=TimeInForce.DAY),
        explanation="Changed time-in-force to 'day' (most compatible option)",
        confidence=FixConfidence.HIGH,
    )


async def fix_market_order_not_allowed(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    conversion = await _limit_conversion(order, env, WIDE_LIMIT_BUFFER)
    if conversion is None:
        return None
    size, limit_price = conversion
    return FixedOrder(
        intent=_intent(
            order,
            **size,
            order_type=OrderType.LIMIT,
            time_in_force=TimeInForce.DAY,
            limit_price=limit_price,
        ),
        explanation=f"Converted to limit order at ${limit_price} (1% buffer from market)",
        confidence=FixConfidence.HIGH,
    )


async def fix_bracket_unsupported(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    if not _size(order):
        return None
    return FixedOrder(
        intent=_intent(order, order_class=OrderClass.SIMPLE, take_profit_price=None, stop_loss_price=None),
        explanation="Converted to simple order (bracket orders not supported for this symbol/session)",
        confidence=FixConfidence.MEDIUM,
    )


def _operator_required(message: str) -> FixFunction:
    async def fix(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
        logger.warning(message, symbol=order.symbol, order_id=order.id, reason=reason)
        return None

    return fix


async def fix_wash_trade(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    if not _size(order):
        return None
    delay = env.wash_trade_delay_seconds
    logger.warning("Wash trade rule, delaying retry", symbol=order.symbol, delay_seconds=delay)
    await env.sleep(delay)
    return FixedOrder(
        intent=_intent(order),
        explanation=f"Delayed retry by {delay:g} seconds to avoid wash trade rule",
        confidence=FixConfidence.LOW,
    )


async def fix_order_canceled(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    """Resubmit a broker-canceled order in the shape the current session accepts."""
    session = env.market_session(order.symbol)
    size = _size(order)

    if session == MarketSession.REGULAR and size:
        label = ", ".join(f"{k}={v}" for k, v in size.items())
        return FixedOrder(
            intent=_intent(
                order,
                **size,
                order_type=OrderType.MARKET,
                time_in_force=TimeInForce.DAY,
                extended_hours=False,
            ),
            explanation=f"Retrying as MARKET order during regular hours ({label})",
            confidence=FixConfidence.HIGH,
        )

    if not size:
        logger.warning("Order has no qty or notional, cannot retry", symbol=order.symbol, order_id=order.id)
        return None

    conversion = await _limit_conversion(order, env, WIDE_LIMIT_BUFFER)
    if conversion is None:
        return None
    limit_size, limit_price = conversion
    extended = session.is_extended
    return FixedOrder(
        intent=_intent(
            order,
            **limit_size,
            order_type=OrderType.LIMIT,
            time_in_force=TimeInForce.DAY,
            limit_price=limit_price,
            extended_hours=extended,
        ),
        explanation=(
            f"Converted to limit order at ${limit_price} (extended_hours={extended}, qty={limit_size['qty']})"
        ),
        confidence=FixConfidence.MEDIUM,
    )


async def fix_missing_qty_or_notional(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    size = _size(order)
    if size:
        key, value = next(iter(size.items()))
        return FixedOrder(
            intent=_intent(order, **size),
            explanation=f"Retried with explicit {key}={value}",
            confidence=FixConfidence.HIGH,
        )

    if order.side == OrderSide.SELL.value:
        try:
            position = await env.position(order.symbol)
        except OperationalError as e:
            logger.warning("Failed to get position", symbol=order.symbol, error=str(e))
            position = None
        if position is not None:
            available = floor_quantity(position.qty_available or position.qty)
            if available >= 1:
                return FixedOrder(
                    intent=_intent(order, qty=Decimal(available)),
                    explanation=f"Sell order: Using available position qty={available}",
                    confidence=FixConfidence.MEDIUM,
                )

    price = await env.current_price(order.symbol)
    if price:
        return FixedOrder(
            intent=_intent(order, notional=FALLBACK_NOTIONAL, order_type=OrderType.MARKET),
            explanation=f"Using minimum notional=${FALLBACK_NOTIONAL} as fallback",
            confidence=FixConfidence.LOW,
        )
    return None


async def fix_insufficient_qty_available(order: BrokerOrder, reason: str, env: FixEnvironment) -> Optional[FixedOrder]:
    try:
        position = await env.position(order.symbol)
    except OperationalError as e:
        logger.error("Failed to get position", symbol=order.symbol, error=str(e))
        return None
    if position is None:
        logger.warning("No position found, cannot retry sell", symbol=order.symbol)
        return None

    available = position.qty_available if position.qty_available is not None else position.qty
    shares = floor_quantity(available)
    if shares < 1:
        logger.warning("No whole shares available", symbol=order.symbol, available=str(available))
        return None
    return FixedOrder(
        intent=_intent(order, qty=Decimal(shares)),
        explanation=f"Reduced quantity to {shares} shares (actual available from position)",
        confidence=FixConfidence.HIGH,
    )


# ========== REGISTRY ==========

def _handler(pattern: str, category: RejectionCategory, description: str, fix: FixFunction) -> RejectionHandler:
    return RejectionHandler(re.compile(pattern, re.IGNORECASE), category, description, fix)


def default_handlers() -> List[RejectionHandler]:
    """The built-in handlers, in match priority order."""
    return [
        _handler(
            r"market.*(?:closed|extended|hours)",
            RejectionCategory.MARKET_HOURS,
            "Market order rejected during extended hours",
            fix_extended_hours_market,
        ),
        _handler(
            r"day.*(?:trading|closed)",
            RejectionCategory.MARKET_HOURS,
            "Day order attempted when market closed",
            fix_day_order_market_closed,
        ),
        _handler(
            r"price.*(?:aggressive|outside|collar|range)",
            RejectionCategory.PRICE_VALIDATION,
            "Limit price too aggressive or outside allowed range",
            fix_price_out_of_range,
        ),
        _handler(
            r"notional.*(?:below|minimum|threshold)",
            RejectionCategory.PRICE_VALIDATION,
            "Order value too small",
            fix_notional_below_minimum,
        ),
        _handler(
            r"insufficient.*(?:buying|funds|balance|capital)",
            RejectionCategory.INSUFFICIENT_FUNDS,
            "Not enough buying power",
            fix_insufficient_funds,
        ),
        _handler(
            r"(?:max|maximum).*positions",
            RejectionCategory.POSITION_LIMITS,
            "Maximum position count exceeded",
            _operator_required("Max positions limit, manual intervention required"),
        ),
        _handler(
            r"fractional.*(?:not.*supported|shares)",
            RejectionCategory.FRACTIONAL_SHARES,
            "Fractional shares not supported",
            fix_fractional_shares,
        ),
        _handler(
            r"(?:gtc|time.*force).*(?:not.*supported|invalid)",
            RejectionCategory.ORDER_TYPE,
            "Time-in-force not supported",
            fix_time_in_force,
        ),
        _handler(
            r"market.*order.*(?:not.*allowed|invalid)",
            RejectionCategory.ORDER_TYPE,
            "Market orders not allowed",
            fix_market_order_not_allowed,
        ),
        _handler(
            r"bracket.*(?:not.*supported|invalid)",
            RejectionCategory.ORDER_TYPE,
            "Bracket orders not supported",
            fix_bracket_unsupported,
        ),
        _handler(
            r"symbol.*(?:not.*found|invalid|unknown)",
            RejectionCategory.SYMBOL_INVALID,
            "Invalid or unknown symbol",
            _operator_required("Invalid symbol, cannot retry"),
        ),
        _handler(
            r"pattern.*day.*trad(?:er|ing)",
            RejectionCategory.REGULATORY,
            "Pattern day trader restriction",
            _operator_required("PDT restriction, manual intervention required"),
        ),
        _handler(
            r"account.*(?:blocked|suspended|restricted)",
            RejectionCategory.REGULATORY,
            "Account restricted",
            _operator_required("Account restricted, manual intervention required"),
        ),
        _handler(
            r"short.*(?:not.*available|restricted|locate)",
            RejectionCategory.POSITION_LIMITS,
            "Short selling not available",
            _operator_required("Short sale not available, cannot retry"),
        ),
        _handler(
            r"wash.*trade",
            RejectionCategory.REGULATORY,
            "Potential wash trade detected",
            fix_wash_trade,
        ),
        _handler(
            r"order.*cancel",
            RejectionCategory.MARKET_HOURS,
            "Order canceled by broker (usually session-related)",
            fix_order_canceled,
        ),
        _handler(
            r"qty.*(?:or|and).*notional.*required",
            RejectionCategory.ORDER_TYPE,
            "Order missing qty or notional parameter",
            fix_missing_qty_or_notional,
        ),
        _handler(
            r"insufficient.*qty.*available",
            RejectionCategory.POSITION_LIMITS,
            "Requested quantity exceeds available shares",
            fix_insufficient_qty_available,
        ),
    ]


def find_handler(handlers: List[RejectionHandler], reason: str) -> Optional[RejectionHandler]:
    """First handler whose pattern matches ``reason``."""
    for handler in handlers:
        if handler.matches(reason):
            return handler
    return None


def extract_rejection_reason(order: BrokerOrder) -> str:
    """
    Infer rejection text when the broker event carries none.

    Extended-hours market and bracket orders are the usual culprits.
    """
    if order.status == "rejected" or order.failed_at is not None:
        reasons = []
        if order.extended_hours and order.order_type == OrderType.MARKET.value:
            reasons.append("market orders not allowed during extended hours")
        if order.order_class == OrderClass.BRACKET.value and order.extended_hours:
            reasons.append("bracket orders not supported during extended hours")
        if not reasons:
            reasons.append("order rejected by broker")
        return "; ".join(reasons)

    if order.status == "canceled" or order.canceled_at is not None:
        return "order canceled"

    return "unknown rejection reason"
