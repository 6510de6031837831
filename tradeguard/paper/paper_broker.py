"""
Paper broker: an in-memory BrokerClient.

Simulates order acceptance and fills against prices set by the caller, keeps
positions and cash, and lets dry runs and tests script broker behaviour:
rejections, injected call failures, untradable symbols, held (unfilled)
orders and out-of-band status changes.
"""
import uuid
from collections import defaultdict, deque
from dataclasses import replace
from decimal import ROUND_DOWN, Decimal
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from tradeguard.domain.models import Account, BrokerOrder, BrokerPosition, PriceSnapshot
from tradeguard.exceptions import BrokerAPIError, OrderNotFoundError, TradeGuardError
from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.clock import SystemClock
from tradeguard.utils.money import ZERO, to_decimal

logger = get_logger(__name__)

QTY_PLACES = Decimal("0.000000001")


class PaperBroker:
    """Simulated broker with immediate market fills at the last set price."""

    def __init__(self, clock=None, cash: Decimal = Decimal("100000"), auto_fill: bool = True):
        self.clock = clock or SystemClock()
        self.cash = cash
        self.auto_fill = auto_fill
        self.buying_power_override: Optional[Decimal] = None

        self.prices: Dict[str, PriceSnapshot] = {}
        self.orders: Dict[str, BrokerOrder] = {}
        self.positions: Dict[str, BrokerPosition] = {}
        self.submitted: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.untradable: Set[str] = set()
        self._rejections: Deque[Tuple[str, int]] = deque()
        self._failures: Dict[str, Deque[TradeGuardError]] = defaultdict(deque)

    # ========== SCRIPTING ==========

    def set_price(
        self,
        symbol: str,
        price: Decimal,
        ask: Optional[Decimal] = None,
        bid: Optional[Decimal] = None,
    ) -> None:
        self.prices[symbol] = PriceSnapshot(
            symbol=symbol,
            latest_trade_price=price,
            latest_quote_ask=ask if ask is not None else price,
            latest_quote_bid=bid if bid is not None else price,
            daily_close=price,
            prev_daily_close=price,
        )
        position = self.positions.get(symbol)
        if position is not None:
            position.current_price = price
            position.market_value = price * position.qty
            position.unrealized_pl = (price - position.avg_entry_price) * position.qty

    def set_snapshot(self, snapshot: PriceSnapshot) -> None:
        self.prices[snapshot.symbol] = snapshot

    def set_position(
        self,
        symbol: str,
        qty: Decimal,
        avg_entry_price: Decimal,
        current_price: Optional[Decimal] = None,
        qty_available: Optional[Decimal] = None,
    ) -> BrokerPosition:
        price = current_price if current_price is not None else avg_entry_price
        position = BrokerPosition(
            symbol=symbol,
            qty=qty,
            qty_available=qty_available if qty_available is not None else qty,
            avg_entry_price=avg_entry_price,
            current_price=price,
            market_value=price * qty,
            unrealized_pl=(price - avg_entry_price) * qty,
        )
        self.positions[symbol] = position
        if symbol not in self.prices:
            self.set_price(symbol, price)
        return position

    def reject_next(self, message: str, status_code: int = 422) -> None:
        """Make the next submit_order() raise BrokerAPIError with ``message``."""
        self._rejections.append((message, status_code))

    def fail_next(self, method: str, error: TradeGuardError) -> None:
        """Make the next call to ``method`` raise ``error``."""
        self._failures[method].append(error)

    def set_order_status(self, order_id: str, status: str) -> BrokerOrder:
        order = self.orders[order_id]
        order.status = status
        if status == "canceled":
            order.canceled_at = self.clock.now()
        elif status in ("rejected", "expired", "suspended"):
            order.failed_at = self.clock.now()
        return order

    def fill_order(self, order_id: str, price: Optional[Decimal] = None) -> BrokerOrder:
        order = self.orders[order_id]
        fill_price = price if price is not None else self._last_price(order.symbol)
        if fill_price is None:
            raise BrokerAPIError(f"No price to fill {order.symbol}", 422)
        self._fill(order, fill_price)
        return order

    @property
    def submitted_count(self) -> int:
        return len(self.submitted)

    def orders_for(self, symbol: str) -> List[BrokerOrder]:
        return [o for o in self.orders.values() if o.symbol == symbol]

    # ========== INTERNALS ==========

    def _maybe_fail(self, method: str) -> None:
        queued = self._failures.get(method)
        if queued:
            raise queued.popleft()

    def _last_price(self, symbol: str) -> Optional[Decimal]:
        snapshot = self.prices.get(symbol)
        return snapshot.latest_trade_price if snapshot else None

    def _marketable(self, order: BrokerOrder, price: Decimal) -> bool:
        if order.order_type == "market":
            return True
        if order.order_type == "limit" and order.limit_price is not None:
            return price <= order.limit_price if order.side == "buy" else price >= order.limit_price
        return False

    def _fill(self, order: BrokerOrder, price: Decimal) -> None:
        qty = order.qty if order.qty is not None else (order.notional / price).quantize(QTY_PLACES, rounding=ROUND_DOWN)
        order.qty = qty
        order.status = "filled"
        order.filled_qty = qty
        order.filled_avg_price = price
        order.filled_at = self.clock.now()

        position = self.positions.get(order.symbol)
        if order.side == "buy":
            self.cash -= qty * price
            if position is None:
                self.set_position(order.symbol, qty, price, current_price=price)
            else:
                total = position.qty + qty
                position.avg_entry_price = (position.avg_entry_price * position.qty + price * qty) / total
                position.qty = total
                position.qty_available += qty
                position.current_price = price
                position.market_value = price * total
        else:
            self.cash += qty * price
            if position is not None:
                position.qty -= qty
                position.qty_available = min(position.qty_available, position.qty)
                position.market_value = position.current_price * position.qty
                if position.qty <= ZERO:
                    del self.positions[order.symbol]

        logger.debug(
            "Paper order filled",
            order_id=order.id,
            symbol=order.symbol,
            side=order.side,
            qty=str(qty),
            price=str(price),
        )

    def _new_order(self, params: Dict[str, Any]) -> BrokerOrder:
        now = self.clock.now()
        return BrokerOrder(
            id=str(uuid.uuid4()),
            symbol=params["symbol"],
            side=params["side"],
            status="accepted",
            order_type=params.get("type", "market"),
            time_in_force=params.get("time_in_force", "day"),
            client_order_id=params.get("client_order_id") or str(uuid.uuid4()),
            qty=to_decimal(params.get("qty")),
            notional=to_decimal(params.get("notional")),
            limit_price=to_decimal(params.get("limit_price")),
            stop_price=to_decimal(params.get("stop_price")),
            order_class=params.get("order_class"),
            extended_hours=bool(params.get("extended_hours", False)),
            submitted_at=now,
            created_at=now,
        )

    # ========== BrokerClient ==========

    async def submit_order(self, params: Dict[str, Any]) -> BrokerOrder:
        self._maybe_fail("submit_order")
        symbol = params["symbol"]
        if self._rejections:
            message, status_code = self._rejections.popleft()
            logger.info("Paper order rejected", symbol=symbol, reason=message)
            raise BrokerAPIError(message, status_code)
        if symbol in self.untradable:
            raise BrokerAPIError(f"asset {symbol} is not active", 422)

        if params.get("side") == "sell" and params.get("qty") is not None:
            qty = to_decimal(params["qty"])
            position = self.positions.get(symbol)
            available = position.qty_available if position else ZERO
            if qty > available:
                raise BrokerAPIError(
                    f"insufficient qty available for order (requested: {qty}, available: {available})", 403
                )

        order = self._new_order(params)
        self.submitted.append(dict(params))
        self.orders[order.id] = order

        price = self._last_price(symbol)
        if self.auto_fill and price is not None and self._marketable(order, price):
            self._fill(order, price)
        return replace(order)

    async def get_order(self, order_id: str) -> BrokerOrder:
        self._maybe_fail("get_order")
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return replace(order)

    async def cancel_order(self, order_id: str) -> None:
        self._maybe_fail("cancel_order")
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if not order.is_open:
            raise BrokerAPIError(f"order is already {order.status}", 422)
        self.set_order_status(order_id, "canceled")
        self.cancelled.append(order_id)

    async def list_open_orders(self, symbol: Optional[str] = None) -> List[BrokerOrder]:
        self._maybe_fail("list_open_orders")
        return [
            replace(o) for o in self.orders.values() if o.is_open and (symbol is None or o.symbol == symbol)
        ]

    async def get_positions(self) -> List[BrokerPosition]:
        self._maybe_fail("get_positions")
        return [replace(p) for p in self.positions.values()]

    async def get_position(self, symbol: str) -> Optional[BrokerPosition]:
        self._maybe_fail("get_position")
        position = self.positions.get(symbol)
        return replace(position) if position is not None else None

    async def close_position(self, symbol: str) -> BrokerOrder:
        self._maybe_fail("close_position")
        position = self.positions.get(symbol)
        if position is None:
            raise BrokerAPIError(f"position not found: {symbol}", 404)
        order = self._new_order({"symbol": symbol, "side": "sell", "type": "market", "qty": str(position.qty)})
        self.submitted.append({"symbol": symbol, "side": "sell", "type": "market", "qty": str(position.qty)})
        self.orders[order.id] = order
        price = self._last_price(symbol) or position.current_price
        if self.auto_fill:
            self._fill(order, price)
        return replace(order)

    async def get_account(self) -> Account:
        self._maybe_fail("get_account")
        equity = self.cash + sum((p.current_price * p.qty for p in self.positions.values()), ZERO)
        buying_power = self.buying_power_override if self.buying_power_override is not None else self.cash
        return Account(portfolio_value=equity, buying_power=buying_power, cash=self.cash, equity=equity)

    async def get_price_snapshot(self, symbol: str) -> PriceSnapshot:
        self._maybe_fail("get_price_snapshot")
        return self.prices.get(symbol) or PriceSnapshot(symbol=symbol)

    async def is_tradable(self, symbol: str) -> bool:
        self._maybe_fail("is_tradable")
        return symbol not in self.untradable
