"""
Advanced exit rules: graduated take-profit, trailing stop, max holding period.

Rule state is registered per symbol when a position opens and removed when it
closes. Tiers fire at most once each; the trailing stop only ever ratchets
up.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from tradeguard.config.config import ExitRulesConfig
from tradeguard.domain.models import HoldingPeriodCheck, Position, TakeProfitSignal, TrailingStopUpdate
from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.clock import SystemClock
from tradeguard.utils.money import HUNDRED, ONE

logger = get_logger(__name__)


@dataclass
class TakeProfitTier:
    profit_percent: Decimal
    close_percent: Decimal
    executed: bool = False
    executed_at: Optional[datetime] = None


@dataclass
class PositionRules:
    symbol: str
    entry_price: Decimal
    tiers: List[TakeProfitTier]
    high_water_mark: Decimal
    max_holding_hours: float
    opened_at: datetime
    created_at: Optional[datetime] = None


class AdvancedRuleEvaluator:
    """Default RuleEvaluator driven by ExitRulesConfig."""

    def __init__(self, config: Optional[ExitRulesConfig] = None, clock=None):
        self.config = config or ExitRulesConfig()
        self.clock = clock or SystemClock()
        self._rules: Dict[str, PositionRules] = {}

    def register_position(self, symbol: str, entry_price: Decimal, opened_at: Optional[datetime] = None) -> PositionRules:
        now = self.clock.now()
        rules = PositionRules(
            symbol=symbol,
            entry_price=entry_price,
            tiers=[
                TakeProfitTier(profit_percent=level, close_percent=self.config.take_profit_close_pct)
                for level in self.config.take_profit_tiers_pct
            ],
            high_water_mark=entry_price,
            max_holding_hours=self.config.max_holding_hours,
            opened_at=opened_at or now,
            created_at=now,
        )
        self._rules[symbol] = rules
        logger.info(
            "Registered profit rules",
            symbol=symbol,
            entry_price=str(entry_price),
            take_profit_levels=len(rules.tiers),
        )
        return rules

    def get_rules(self, symbol: str) -> Optional[PositionRules]:
        return self._rules.get(symbol)

    def remove_rules(self, symbol: str) -> None:
        self._rules.pop(symbol, None)

    def check_partial_take_profits(self, position: Position) -> Optional[TakeProfitSignal]:
        rules = self._rules.get(position.symbol)
        if rules is None:
            return None

        profit = position.unrealized_pnl_percent
        for tier in rules.tiers:
            if not tier.executed and profit >= tier.profit_percent:
                tier.executed = True
                tier.executed_at = self.clock.now()
                logger.info(
                    "Partial take-profit triggered",
                    symbol=position.symbol,
                    profit_level=str(tier.profit_percent),
                    close_percent=str(tier.close_percent),
                    current_profit=f"{profit:.2f}",
                )
                return TakeProfitSignal(
                    should_close=True,
                    close_percent=tier.close_percent,
                    reason=f"Partial take-profit at {tier.profit_percent}% gain",
                )
        return None

    def update_trailing_stop(self, position: Position) -> Optional[TrailingStopUpdate]:
        """
        New (higher) stop price, or None.

        Below the activation gain nothing happens. Between activation and the
        break-even trigger the stop trails the high-water mark; above the
        trigger it is at least entry plus the break-even buffer.
        """
        rules = self._rules.get(position.symbol)
        if rules is None or not self.config.trailing_enabled:
            return None

        profit = position.unrealized_pnl_percent
        if profit < self.config.trailing_activation_pct:
            return None

        if position.current_price > rules.high_water_mark:
            rules.high_water_mark = position.current_price

        trail = self.config.trail_percent
        trailing_stop = rules.high_water_mark * (ONE - trail / HUNDRED)
        trigger = self.config.break_even_trigger_pct

        if profit >= trigger:
            break_even_stop = rules.entry_price * (ONE + self.config.break_even_buffer_pct / HUNDRED)
            new_stop = max(break_even_stop, trailing_stop)
            if profit >= trigger * Decimal("1.5"):
                reason = f"Trailing stop at {trail}% below high water mark (${rules.high_water_mark:.2f})"
            else:
                reason = f"Moved stop to breakeven + {self.config.break_even_buffer_pct}%"
        else:
            new_stop = trailing_stop
            reason = f"Initial trailing stop at {trail}% below current price"

        if position.stop_loss_price is None or new_stop > position.stop_loss_price:
            logger.info(
                "Trailing stop update",
                symbol=position.symbol,
                old_stop=str(position.stop_loss_price) if position.stop_loss_price is not None else None,
                new_stop=f"{new_stop:.2f}",
                reason=reason,
            )
            return TrailingStopUpdate(new_stop_loss=new_stop, reason=reason)
        return None

    def check_holding_period(self, position: Position) -> Optional[HoldingPeriodCheck]:
        rules = self._rules.get(position.symbol)
        if rules is None:
            return None
        max_hours = position.max_holding_hours or rules.max_holding_hours
        holding_hours = position.holding_hours(self.clock.now())
        return HoldingPeriodCheck(exceeded=holding_hours > max_hours, holding_hours=holding_hours, max_hours=max_hours)

    def get_state_info(self) -> Dict:
        return {
            symbol: {
                "entry_price": str(r.entry_price),
                "high_water_mark": str(r.high_water_mark),
                "tiers_executed": [str(t.profit_percent) for t in r.tiers if t.executed],
            }
            for symbol, r in self._rules.items()
        }
