"""
Pre-trade risk limits and loss protection.

Buys are checked against the kill switch, the open-position count, a live
price and the per-trade size limit. Sells pass check_risk_limits(); whether a
sell may realize a loss is a position-aware decision made by
check_sell_loss_protection() and the position manager.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from tradeguard.config.config import RiskConfig
from tradeguard.domain.models import OrderSide
from tradeguard.domain.protocols import BrokerClient
from tradeguard.exceptions import DataError, InvariantError, OperationalError
from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.money import HUNDRED, ZERO

logger = get_logger(__name__)

LOSS_AUTHORIZING_NOTES = ("stop-loss", "emergency", "stop loss")


@dataclass
class RiskCheckResult:
    allowed: bool
    reason: Optional[str] = None


def calculate_loss_percentage(entry_price: Decimal, current_price: Decimal) -> Optional[Decimal]:
    """Loss from entry as a positive percent (0 when in profit); None on bad inputs."""
    if entry_price is None or current_price is None or entry_price <= ZERO or current_price <= ZERO:
        return None
    if current_price >= entry_price:
        return ZERO
    return (entry_price - current_price) / entry_price * HUNDRED


def notes_authorize_loss(notes: Optional[str]) -> bool:
    lowered = (notes or "").lower()
    return any(marker in lowered for marker in LOSS_AUTHORIZING_NOTES)


def loss_hold_reason(loss_percent: Decimal) -> str:
    return f"Position at {loss_percent:.2f}% loss - holding until stop-loss triggers or price recovers"


class RiskValidator:
    """Risk limits consulted before an order is queued."""

    def __init__(self, broker: BrokerClient, config: Optional[RiskConfig] = None, kill_switch=None):
        self.broker = broker
        self.config = config or RiskConfig()
        self.kill_switch = kill_switch

    def _kill_switch_active(self, kill_switch_active: bool) -> bool:
        if kill_switch_active:
            return True
        return self.kill_switch is not None and self.kill_switch.is_active()

    async def check_risk_limits(
        self,
        side: OrderSide,
        symbol: str,
        trade_value: Decimal,
        kill_switch_active: bool = False,
    ) -> RiskCheckResult:
        """
        Validate a trade against portfolio risk limits.

        ``trade_value`` is dollars; values at or above the notional ceiling
        (or non-positive) are treated as a share count and priced.
        """
        if self._kill_switch_active(kill_switch_active):
            return RiskCheckResult(False, "Kill switch is active - trading halted")

        if OrderSide(side) != OrderSide.BUY:
            return RiskCheckResult(True)

        try:
            positions = await self.broker.get_positions()
            max_positions = self.config.max_positions_count
            if len(positions) >= max_positions:
                return RiskCheckResult(False, f"Maximum positions limit reached ({max_positions})")

            snapshot = await self.broker.get_price_snapshot(symbol)
            price = snapshot.risk_price()
            if price is None:
                logger.warning("Risk check: invalid price", symbol=symbol)
                return RiskCheckResult(False, f"Cannot verify trade value - no valid price data for {symbol}")

            if ZERO < trade_value < self.config.notional_value_ceiling:
                effective_value = trade_value
            else:
                effective_value = trade_value * price

            account = await self.broker.get_account()
            max_percent = self.config.max_position_size_percent
            max_trade_value = account.buying_power * max_percent / HUNDRED
            if effective_value > max_trade_value:
                return RiskCheckResult(
                    False,
                    f"Trade exceeds max position size ({max_percent:.0f}% = ${max_trade_value:.2f})",
                )
        except InvariantError:
            raise
        except (OperationalError, DataError, ArithmeticError) as e:
            logger.error("Risk check error", symbol=symbol, error=str(e), error_type=type(e).__name__)
            return RiskCheckResult(False, "Could not verify risk limits")

        return RiskCheckResult(True)

    def check_loss_protection(
        self,
        side: OrderSide,
        entry_price: Decimal,
        current_price: Decimal,
        notes: Optional[str] = None,
        is_stop_loss_triggered: bool = False,
        is_emergency_stop: bool = False,
    ) -> RiskCheckResult:
        """Loss gate for a known position. Buys always pass."""
        if OrderSide(side) != OrderSide.SELL:
            return RiskCheckResult(True)
        if current_price >= entry_price:
            return RiskCheckResult(True)
        if is_stop_loss_triggered or is_emergency_stop or notes_authorize_loss(notes):
            return RiskCheckResult(True)
        loss = calculate_loss_percentage(entry_price, current_price) or ZERO
        return RiskCheckResult(False, loss_hold_reason(loss))

    async def check_sell_loss_protection(
        self,
        symbol: str,
        notes: Optional[str] = None,
        is_stop_loss_triggered: bool = False,
        is_emergency_stop: bool = False,
    ) -> RiskCheckResult:
        """Block a sell that would realize a loss unless stop-loss or emergency authorized."""
        try:
            position = await self.broker.get_position(symbol)
        except OperationalError as e:
            logger.debug("Could not load position for loss protection", symbol=symbol, error=str(e))
            return RiskCheckResult(True)
        if position is None:
            return RiskCheckResult(True)

        result = self.check_loss_protection(
            OrderSide.SELL,
            position.avg_entry_price,
            position.current_price,
            notes,
            is_stop_loss_triggered,
            is_emergency_stop,
        )
        if not result.allowed:
            logger.warning(
                "LOSS_PROTECTION: position at loss",
                symbol=symbol,
                entry_price=str(position.avg_entry_price),
                current_price=str(position.current_price),
                reason=result.reason,
            )
        return result
