"""
Domain models for the execution engine.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; all money is Decimal.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from tradeguard.exceptions import InvariantError, ValidationError
from tradeguard.utils.money import ZERO, percent_change, to_decimal


class OrderSide(str, Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order type."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"
    TRAILING_STOP = "trailing_stop"


class TimeInForce(str, Enum):
    DAY = "day"
    GTC = "gtc"
    IOC = "ioc"
    FOK = "fok"
    OPG = "opg"
    CLS = "cls"


class OrderClass(str, Enum):
    SIMPLE = "simple"
    BRACKET = "bracket"
    OCO = "oco"
    OTO = "oto"


# Broker order statuses are kept as plain strings: brokers add states over
# time and an unknown status must not break order parsing.
SUBMIT_SUCCESS_STATUSES = frozenset({
    "filled", "accepted", "new", "pending_new", "partially_filled", "queued",
})
TERMINAL_FAILURE_STATUSES = frozenset({"canceled", "rejected", "expired", "suspended"})
OPEN_ORDER_STATUSES = frozenset({
    "new", "accepted", "pending_new", "partially_filled", "queued",
    "accepted_for_bidding", "pending_replace", "held",
})


class WorkItemType(str, Enum):
    ORDER_SUBMIT = "ORDER_SUBMIT"
    ORDER_CANCEL = "ORDER_CANCEL"


class WorkItemStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    CANCELLED = "CANCELLED"
    DEAD_LETTER = "DEAD_LETTER"


class ExecutionAction(str, Enum):
    """Outcome label of an open/close/reinforce call."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"
    SKIP = "skip"


class MarketSession(str, Enum):
    PRE_MARKET = "pre_market"
    REGULAR = "regular"
    AFTER_HOURS = "after_hours"
    CLOSED = "closed"

    @property
    def is_extended(self) -> bool:
        return self in (MarketSession.PRE_MARKET, MarketSession.AFTER_HOURS)


def is_crypto_symbol(symbol: str) -> bool:
    """Crypto pairs are quoted as BASE/QUOTE (e.g. BTC/USD) and trade around the clock."""
    return "/" in symbol


# ========== ORDERS ==========

@dataclass
class OrderIntent:
    """
    A desired broker order before submission.

    Exactly one of ``qty`` / ``notional`` must be set.
    """
    symbol: str
    side: OrderSide
    qty: Optional[Decimal] = None
    notional: Optional[Decimal] = None
    order_type: OrderType = OrderType.MARKET
    time_in_force: TimeInForce = TimeInForce.DAY
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    order_class: Optional[OrderClass] = None
    take_profit_price: Optional[Decimal] = None
    stop_loss_price: Optional[Decimal] = None
    extended_hours: bool = False
    client_order_id: Optional[str] = None

    # Routing metadata, never sent to the broker
    strategy_id: Optional[str] = None
    signal_hash: Optional[str] = None
    idempotency_key: Optional[str] = None
    trace_id: Optional[str] = None
    decision_id: Optional[str] = None
    max_attempts: int = 3

    def __post_init__(self):
        self.side = OrderSide(self.side)
        self.order_type = OrderType(self.order_type)
        self.time_in_force = TimeInForce(self.time_in_force)
        if self.order_class is not None:
            self.order_class = OrderClass(self.order_class)

        if (self.qty is None) == (self.notional is None):
            raise ValidationError(f"{self.symbol}: exactly one of qty or notional is required")
        amount = self.qty if self.qty is not None else self.notional
        if amount <= ZERO:
            raise ValidationError(f"{self.symbol}: order size must be positive, got {amount}")
        if self.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and self.limit_price is None:
            raise ValidationError(f"{self.symbol}: {self.order_type.value} order requires limit_price")
        if self.order_type in (OrderType.STOP, OrderType.STOP_LIMIT) and self.stop_price is None:
            raise ValidationError(f"{self.symbol}: {self.order_type.value} order requires stop_price")

    @property
    def is_buy(self) -> bool:
        return self.side == OrderSide.BUY

    def to_params(self) -> Dict[str, Any]:
        """
        Canonical broker parameter set.

        Only one of qty/notional, no unset fields, Decimals as strings.
        """
        params: Dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.order_type.value,
            "time_in_force": self.time_in_force.value,
        }
        if self.qty is not None:
            params["qty"] = str(self.qty)
        else:
            params["notional"] = str(self.notional)
        if self.limit_price is not None:
            params["limit_price"] = str(self.limit_price)
        if self.stop_price is not None:
            params["stop_price"] = str(self.stop_price)
        if self.order_class is not None:
            params["order_class"] = self.order_class.value
        if self.take_profit_price is not None:
            params["take_profit"] = {"limit_price": str(self.take_profit_price)}
        if self.stop_loss_price is not None:
            params["stop_loss"] = {"stop_price": str(self.stop_loss_price)}
        if self.extended_hours:
            params["extended_hours"] = True
        if self.client_order_id:
            params["client_order_id"] = self.client_order_id
        return params

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "OrderIntent":
        """Inverse of to_params()."""
        take_profit = params.get("take_profit") or {}
        stop_loss = params.get("stop_loss") or {}
        return cls(
            symbol=params["symbol"],
            side=OrderSide(params["side"]),
            qty=to_decimal(params.get("qty")),
            notional=to_decimal(params.get("notional")),
            order_type=OrderType(params.get("type", "market")),
            time_in_force=TimeInForce(params.get("time_in_force", "day")),
            limit_price=to_decimal(params.get("limit_price")),
            stop_price=to_decimal(params.get("stop_price")),
            order_class=params.get("order_class"),
            take_profit_price=to_decimal(take_profit.get("limit_price")),
            stop_loss_price=to_decimal(stop_loss.get("stop_price")),
            extended_hours=bool(params.get("extended_hours", False)),
            client_order_id=params.get("client_order_id"),
        )


@dataclass
class BrokerOrder:
    """Order as reported by the broker."""
    id: str
    symbol: str
    side: str
    status: str
    order_type: str = "market"
    time_in_force: str = "day"
    client_order_id: Optional[str] = None
    qty: Optional[Decimal] = None
    notional: Optional[Decimal] = None
    filled_qty: Decimal = ZERO
    filled_avg_price: Optional[Decimal] = None
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    order_class: Optional[str] = None
    extended_hours: bool = False
    submitted_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ORDER_STATUSES

    @property
    def is_terminal_failure(self) -> bool:
        return self.status in TERMINAL_FAILURE_STATUSES

    @property
    def is_filled(self) -> bool:
        return self.status == "filled"


@dataclass
class BrokerPosition:
    """Position as reported by the broker."""
    symbol: str
    qty: Decimal
    qty_available: Decimal
    avg_entry_price: Decimal
    current_price: Decimal
    market_value: Decimal = ZERO
    unrealized_pl: Decimal = ZERO
    unrealized_plpc: Decimal = ZERO
    side: str = "long"


@dataclass
class Account:
    portfolio_value: Decimal
    buying_power: Decimal
    cash: Decimal = ZERO
    equity: Decimal = ZERO


@dataclass
class PriceSnapshot:
    """Latest market data for a symbol. Any field may be missing."""
    symbol: str
    latest_trade_price: Optional[Decimal] = None
    latest_quote_ask: Optional[Decimal] = None
    latest_quote_bid: Optional[Decimal] = None
    daily_close: Optional[Decimal] = None
    prev_daily_close: Optional[Decimal] = None

    def best_price(self) -> Optional[Decimal]:
        """Latest trade, else quote ask, else daily close."""
        for price in (self.latest_trade_price, self.latest_quote_ask, self.daily_close):
            if price is not None and price > ZERO:
                return price
        return None

    def risk_price(self) -> Optional[Decimal]:
        """Latest trade, else daily close, else previous daily close."""
        for price in (self.latest_trade_price, self.daily_close, self.prev_daily_close):
            if price is not None and price > ZERO:
                return price
        return None


# ========== POSITIONS ==========

@dataclass
class Position:
    """
    A tracked open position.

    Created on a confirmed open fill, mutated by price ticks, rule
    adjustments and partial closes, deleted on full close.
    """
    symbol: str
    qty: Decimal
    entry_price: Decimal
    current_price: Decimal
    available_qty: Optional[Decimal] = None
    unrealized_pnl: Decimal = ZERO
    unrealized_pnl_percent: Decimal = ZERO
    stop_loss_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None
    trailing_stop_percent: Optional[Decimal] = None
    max_holding_hours: Optional[float] = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    strategy_id: Optional[str] = None
    trade_id: Optional[str] = None

    def __post_init__(self):
        if self.available_qty is None:
            self.available_qty = self.qty
        if self.opened_at.tzinfo is None:
            raise ValueError("Position opened_at must be timezone-aware (UTC)")
        self.check_invariant()
        self._recompute_pnl()

    def check_invariant(self) -> None:
        if self.qty < ZERO:
            raise InvariantError(f"{self.symbol}: negative position quantity {self.qty}")
        if self.available_qty > self.qty:
            raise InvariantError(
                f"{self.symbol}: available quantity {self.available_qty} exceeds quantity {self.qty}"
            )

    def _recompute_pnl(self) -> None:
        self.unrealized_pnl = (self.current_price - self.entry_price) * self.qty
        self.unrealized_pnl_percent = percent_change(self.entry_price, self.current_price)

    def update_price(self, price: Decimal) -> None:
        self.current_price = price
        self._recompute_pnl()

    def reduce(self, qty: Decimal) -> None:
        """Shrink after a partial close."""
        self.qty -= qty
        self.available_qty = min(self.available_qty, self.qty)
        self.check_invariant()
        self._recompute_pnl()

    def sync_quantity(self, qty: Decimal, available_qty: Decimal) -> None:
        self.qty = qty
        self.available_qty = min(available_qty, qty)
        self.check_invariant()
        self._recompute_pnl()

    @property
    def market_value(self) -> Decimal:
        return self.current_price * self.qty

    def holding_hours(self, now: datetime) -> float:
        return (now - self.opened_at).total_seconds() / 3600.0


# ========== DECISIONS & RESULTS ==========

@dataclass
class Decision:
    """Opaque trading decision from the strategy layer."""
    action: str
    confidence: float = 0.0
    reasoning: str = ""
    risk_level: str = "medium"
    suggested_fraction: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    target_price: Optional[Decimal] = None
    trailing_stop_percent: Optional[Decimal] = None
    decision_id: Optional[str] = None
    strategy_id: Optional[str] = None


@dataclass
class ExecutionResult:
    """Structured outcome of open/close/reinforce."""
    success: bool
    action: ExecutionAction
    reason: str
    symbol: str
    order_id: Optional[str] = None
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    error: Optional[str] = None


@dataclass
class TakeProfitSignal:
    should_close: bool
    close_percent: Decimal
    reason: str


@dataclass
class TrailingStopUpdate:
    new_stop_loss: Decimal
    reason: str


@dataclass
class HoldingPeriodCheck:
    exceeded: bool
    holding_hours: float
    max_hours: float


# ========== WORK QUEUE ==========

@dataclass
class WorkItem:
    """Persisted unit of at-least-once work."""
    id: str
    type: WorkItemType
    status: WorkItemStatus
    symbol: Optional[str]
    idempotency_key: str
    payload: Dict[str, Any]
    attempts: int = 0
    max_attempts: int = 3
    result: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    broker_order_id: Optional[str] = None
    next_run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (WorkItemStatus.SUCCEEDED, WorkItemStatus.CANCELLED, WorkItemStatus.DEAD_LETTER)


@dataclass
class TradeRecord:
    """A filled trade ready for persistence."""
    symbol: str
    side: OrderSide
    qty: Decimal
    price: Decimal
    order_id: Optional[str]
    operator_id: str
    strategy_id: Optional[str] = None
    pnl: Optional[Decimal] = None
    notes: str = ""
    decision_id: Optional[str] = None
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
