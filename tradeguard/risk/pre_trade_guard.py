"""
Pre-trade validation guard.

Checks run before an open is submitted:
- buying power covers the order (buys only)
- market session: regular hours trade normally, pre-market / after-hours
  require an extended-hours limit order, closed blocks the trade
- crypto pairs trade around the clock
"""
from dataclasses import dataclass
from datetime import datetime, time
from decimal import Decimal
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo

from tradeguard.domain.models import MarketSession, OrderSide, is_crypto_symbol
from tradeguard.domain.protocols import BrokerClient
from tradeguard.exceptions import DataError, OperationalError
from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.clock import SystemClock
from tradeguard.utils.money import ZERO, price_with_buffer

logger = get_logger(__name__)

US_EASTERN = ZoneInfo("America/New_York")

PRE_MARKET_OPEN = time(4, 0)
REGULAR_OPEN = time(9, 30)
REGULAR_CLOSE = time(16, 0)
AFTER_HOURS_CLOSE = time(20, 0)


def market_session_at(now: datetime) -> MarketSession:
    """US equities session for an aware datetime. Weekends are closed; holidays are not modelled."""
    local = now.astimezone(US_EASTERN)
    if local.weekday() >= 5:
        return MarketSession.CLOSED
    t = local.time()
    if PRE_MARKET_OPEN <= t < REGULAR_OPEN:
        return MarketSession.PRE_MARKET
    if REGULAR_OPEN <= t < REGULAR_CLOSE:
        return MarketSession.REGULAR
    if REGULAR_CLOSE <= t < AFTER_HOURS_CLOSE:
        return MarketSession.AFTER_HOURS
    return MarketSession.CLOSED


@dataclass
class PreTradeResult:
    can_trade: bool
    session: MarketSession
    available_buying_power: Decimal = ZERO
    required_buying_power: Decimal = ZERO
    use_extended_hours: bool = False
    use_limit_order: bool = False
    limit_price: Optional[Decimal] = None
    reason: Optional[str] = None


class PreTradeGuard:
    """Validates session and account conditions before an order is queued."""

    def __init__(
        self,
        broker: BrokerClient,
        clock=None,
        limit_buffer: Decimal = Decimal("0.005"),
        session_fn: Optional[Callable[[datetime], MarketSession]] = None,
    ):
        self.broker = broker
        self.clock = clock or SystemClock()
        self.limit_buffer = limit_buffer
        self._session_fn = session_fn or market_session_at

    def current_session(self, symbol: Optional[str] = None) -> MarketSession:
        if symbol is not None and is_crypto_symbol(symbol):
            return MarketSession.REGULAR
        return self._session_fn(self.clock.now())

    async def check(self, symbol: str, side: OrderSide, order_value: Decimal) -> PreTradeResult:
        """
        Validate a prospective order.

        Returns:
            PreTradeResult; broker failures become can_trade=False, never raise
        """
        side = OrderSide(side)
        crypto = is_crypto_symbol(symbol)
        session = self.current_session(symbol)
        result = PreTradeResult(can_trade=False, session=session, required_buying_power=order_value)

        try:
            account = await self.broker.get_account()
            result.available_buying_power = account.buying_power

            if side == OrderSide.BUY and order_value > account.buying_power:
                result.reason = (
                    f"Insufficient buying power (${account.buying_power:.2f} available < "
                    f"${order_value:.2f} required)"
                )
                return result

            if crypto:
                result.can_trade = True
                logger.info("Crypto market 24/7 - trading enabled", symbol=symbol)
                return result

            if session == MarketSession.REGULAR:
                result.can_trade = True
                return result

            if session.is_extended:
                result.use_extended_hours = True
                result.use_limit_order = True
                snapshot = await self.broker.get_price_snapshot(symbol)
                price = snapshot.latest_trade_price or snapshot.best_price()
                if not price:
                    result.reason = f"Cannot get current price for {symbol} during {session.value}"
                    return result
                result.limit_price = price_with_buffer(price, self.limit_buffer, side == OrderSide.BUY)
                result.can_trade = True
                logger.info(
                    "Extended hours trading enabled",
                    symbol=symbol,
                    session=session.value,
                    limit_price=str(result.limit_price),
                )
                return result

            result.reason = "Market is closed"
            logger.info("Market closed", symbol=symbol)
            return result
        except (OperationalError, DataError) as e:
            logger.warning("Pre-trade check failed", symbol=symbol, error=str(e))
            result.can_trade = False
            result.reason = f"Pre-trade check failed: {e}"
            return result

    async def is_symbol_tradable(self, symbol: str) -> Tuple[bool, Optional[str]]:
        try:
            tradable = await self.broker.is_tradable(symbol)
        except (OperationalError, DataError) as e:
            return False, f"Symbol validation failed: {e}"
        if not tradable:
            kind = "Crypto" if is_crypto_symbol(symbol) else "Stock"
            return False, f"{kind} {symbol} is not tradable"
        return True, None
