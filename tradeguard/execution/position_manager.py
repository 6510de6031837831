"""
Position risk state machine.

Owns the tracked positions and drives every open, close and partial close
through the order submission coordinator.

Exit rules are evaluated once per tick in strict priority, first match wins:

    1. stop-loss        current <= stop          -> full close (stop-loss authorized)
    2. emergency stop   pnl% <= emergency level  -> full close (emergency authorized)
    3. tiered take-profit (rule evaluator)       -> partial close
    4. trailing stop      (rule evaluator)       -> raise stop, no close
    5. holding period     (rule evaluator)       -> full close
    6. legacy take-profit current >= target      -> 100% above +15%, 50% above +10%

A close that would realize a loss is held unless it is stop-loss or
emergency authorized. Mutations of one symbol are serialized by a
per-symbol asyncio.Lock; ticks for different symbols run concurrently.
"""
import asyncio
from collections import defaultdict
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Optional, Set, Tuple

from tradeguard.config.config import OrderExecutionConfig, RiskConfig
from tradeguard.domain.models import (
    BrokerPosition,
    Decision,
    ExecutionAction,
    ExecutionResult,
    OrderClass,
    OrderIntent,
    OrderSide,
    OrderType,
    Position,
    TimeInForce,
    TradeRecord,
    is_crypto_symbol,
)
from tradeguard.domain.protocols import (
    AllowAllSectors,
    BrokerClient,
    LearningRecorder,
    NoopLearningRecorder,
    RuleEvaluator,
    SectorExposureChecker,
    TradeStore,
)
from tradeguard.exceptions import (
    DataError,
    InvariantError,
    MissingOperatorIdentityError,
    OperationalError,
    StaleDuplicateOrderError,
)
from tradeguard.execution.order_coordinator import OrderSubmissionCoordinator, QueuedOrderResult
from tradeguard.execution.order_monitor import FillResult, OrderMonitor
from tradeguard.monitoring.logger import get_logger
from tradeguard.risk.pre_trade_guard import PreTradeGuard, PreTradeResult
from tradeguard.risk.risk_validator import RiskValidator
from tradeguard.utils.clock import SystemClock
from tradeguard.utils.money import (
    HUNDRED,
    ONE,
    ZERO,
    calculate_pnl,
    partial_quantity,
    percent_of,
    round_price,
    whole_shares,
)

logger = get_logger(__name__)

QTY_PLACES = Decimal("0.000001")
LEGACY_PARTIAL_CLOSE_PERCENT = Decimal("50")


def _skip(symbol: str, reason: str) -> ExecutionResult:
    return ExecutionResult(success=False, action=ExecutionAction.SKIP, reason=reason, symbol=symbol)


class PositionManager:
    """
    Opens, closes and watches positions.

    ``operator_id`` is recorded on every persisted trade; a manager without
    one raises MissingOperatorIdentityError from open/close. Every other
    failure comes back as an ExecutionResult.
    """

    def __init__(
        self,
        broker: BrokerClient,
        coordinator: OrderSubmissionCoordinator,
        monitor: OrderMonitor,
        risk_validator: RiskValidator,
        pre_trade_guard: PreTradeGuard,
        rule_evaluator: RuleEvaluator,
        trade_store: TradeStore,
        *,
        operator_id: Optional[str],
        config: Optional[RiskConfig] = None,
        execution_config: Optional[OrderExecutionConfig] = None,
        sector_checker: Optional[SectorExposureChecker] = None,
        learning: Optional[LearningRecorder] = None,
        clock=None,
        strategy_id: Optional[str] = None,
    ):
        self.broker = broker
        self.coordinator = coordinator
        self.monitor = monitor
        self.risk_validator = risk_validator
        self.pre_trade_guard = pre_trade_guard
        self.rule_evaluator = rule_evaluator
        self.trade_store = trade_store
        self.operator_id = operator_id
        self.config = config or RiskConfig()
        self.execution_config = execution_config or OrderExecutionConfig()
        self.sector_checker = sector_checker or AllowAllSectors()
        self.learning = learning or NoopLearningRecorder()
        self.clock = clock or SystemClock()
        self.strategy_id = strategy_id

        self.positions: Dict[str, Position] = {}
        self.daily_pnl = ZERO
        self.daily_trade_count = 0
        self.portfolio_value = ZERO
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._processed_order_ids: Set[str] = set()

    # ========== HELPERS ==========

    def _lock(self, symbol: str) -> asyncio.Lock:
        return self._locks[symbol]

    def _require_operator(self, symbol: str) -> str:
        if not self.operator_id:
            raise MissingOperatorIdentityError(f"Cannot trade {symbol}: operator id not configured")
        return self.operator_id

    def get_position(self, symbol: str) -> Optional[Position]:
        return self.positions.get(symbol)

    def calculate_total_exposure(self) -> Decimal:
        return sum((p.market_value for p in self.positions.values()), ZERO)

    async def _submit(self, intent: OrderIntent) -> QueuedOrderResult:
        """Submit through the coordinator; a stale cached duplicate is resubmitted once."""
        try:
            return await self.coordinator.submit(intent)
        except StaleDuplicateOrderError as e:
            logger.warning(
                "Stale duplicate order, resubmitting",
                symbol=intent.symbol,
                stale_order_id=e.order_id,
                broker_status=e.broker_status,
                trace_id=intent.trace_id,
            )
            return await self.coordinator.submit(intent)

    async def _cancel_open_orders(self, symbol: str, trace_id: Optional[str]) -> int:
        """Best-effort cancel of everything open for ``symbol`` before a close."""
        try:
            open_orders = await self.broker.list_open_orders(symbol)
        except OperationalError as e:
            logger.warning("Could not list open orders before close", symbol=symbol, error=str(e))
            return 0

        for order in open_orders:
            await self.coordinator.cancel(order.id, symbol, trace_id=trace_id, strategy_id=self.strategy_id)
        if open_orders:
            logger.info("Cancelled open orders before close", symbol=symbol, count=len(open_orders))
            await self.clock.sleep(self.execution_config.cancel_settle_seconds)
        return len(open_orders)

    async def _current_price(self, symbol: str) -> Optional[Decimal]:
        snapshot = await self.broker.get_price_snapshot(symbol)
        return snapshot.best_price()

    def _record(self, trade: TradeRecord) -> str:
        return self.trade_store.record_trade(trade)

    # ========== OPEN ==========

    async def open_position(self, symbol: str, decision: Decision, trace_id: Optional[str] = None) -> ExecutionResult:
        """
        Size, validate, submit and await a buy for ``symbol``.

        Raises:
            MissingOperatorIdentityError: no operator configured
        """
        self._require_operator(symbol)
        async with self._lock(symbol):
            return await self._open_unlocked(symbol, decision, trace_id)

    async def reinforce_position(self, symbol: str, decision: Decision, trace_id: Optional[str] = None) -> ExecutionResult:
        """Add to ``symbol`` at half the suggested size."""
        self._require_operator(symbol)
        fraction = (decision.suggested_fraction or self.config.default_position_fraction) / 2
        logger.info("Reinforcing position", symbol=symbol, fraction=str(fraction))
        async with self._lock(symbol):
            return await self._open_unlocked(symbol, decision, trace_id, fraction=fraction)

    async def _open_unlocked(
        self,
        symbol: str,
        decision: Decision,
        trace_id: Optional[str],
        fraction: Optional[Decimal] = None,
    ) -> ExecutionResult:
        try:
            account = await self.broker.get_account()
            self.portfolio_value = account.portfolio_value

            fraction = fraction or decision.suggested_fraction or self.config.default_position_fraction
            size_percent = min(fraction * HUNDRED, self.config.max_position_size_percent)
            position_value = round_price(percent_of(account.portfolio_value, size_percent))
            if position_value <= ZERO:
                return _skip(symbol, "Position value too small")

            exposure_after = self.calculate_total_exposure() + position_value
            max_exposure = percent_of(account.portfolio_value, self.config.max_total_exposure_percent)
            if exposure_after > max_exposure:
                exposure_pct = exposure_after / account.portfolio_value * HUNDRED
                return _skip(
                    symbol,
                    f"Would exceed max exposure ({exposure_pct:.1f}% > {self.config.max_total_exposure_percent}%)",
                )

            risk = await self.risk_validator.check_risk_limits(OrderSide.BUY, symbol, position_value)
            if not risk.allowed:
                logger.warning("Open blocked by risk limits", symbol=symbol, reason=risk.reason)
                return _skip(symbol, risk.reason or "Risk limits exceeded")

            sector_ok, sector_reason = await self.sector_checker.check(symbol, position_value)
            if not sector_ok:
                logger.warning("Open blocked by sector exposure", symbol=symbol, reason=sector_reason)
                return _skip(symbol, sector_reason)

            tradable, tradable_reason = await self.pre_trade_guard.is_symbol_tradable(symbol)
            if not tradable:
                return _skip(symbol, tradable_reason or f"{symbol} is not tradable")

            pre_trade = await self.pre_trade_guard.check(symbol, OrderSide.BUY, position_value)
            if not pre_trade.can_trade:
                logger.info("Open blocked by pre-trade guard", symbol=symbol, reason=pre_trade.reason)
                return _skip(symbol, pre_trade.reason or "Pre-trade check failed")

            intent = await self._build_open_intent(symbol, decision, position_value, pre_trade, trace_id)
            if intent is None:
                return _skip(symbol, "Position value too small for whole share order")

            queued = await self._submit(intent)
            if not queued.order_id:
                return self._failed(symbol, ExecutionAction.BUY, "Order failed - no response from broker")

            if queued.order_id in self._processed_order_ids:
                logger.info("Open already executed for order", symbol=symbol, order_id=queued.order_id)
                position = self.positions.get(symbol)
                return ExecutionResult(
                    success=True,
                    action=ExecutionAction.BUY,
                    reason="Order already executed (duplicate intent)",
                    symbol=symbol,
                    order_id=queued.order_id,
                    quantity=position.qty if position else None,
                    price=position.entry_price if position else None,
                )

            fill = await self.monitor.wait_for_fill(queued.order_id)
            filled = await self._resolve_fill(symbol, fill)
            if isinstance(filled, ExecutionResult):
                return filled
            fill_price, fill_qty = filled

            return self._on_open_fill(symbol, decision, queued.order_id, fill_price, fill_qty)
        except InvariantError:
            raise
        except (OperationalError, DataError) as e:
            logger.error("Open failed", symbol=symbol, error=str(e), error_type=type(e).__name__, trace_id=trace_id)
            return self._failed(symbol, ExecutionAction.BUY, f"Order failed: {e}", error=str(e))

    async def _build_open_intent(
        self,
        symbol: str,
        decision: Decision,
        position_value: Decimal,
        pre_trade: PreTradeResult,
        trace_id: Optional[str],
    ) -> Optional[OrderIntent]:
        common = dict(
            symbol=symbol,
            side=OrderSide.BUY,
            strategy_id=decision.strategy_id or self.strategy_id,
            trace_id=trace_id,
            decision_id=decision.decision_id,
        )
        crypto = is_crypto_symbol(symbol)

        if pre_trade.use_limit_order and pre_trade.limit_price:
            shares = whole_shares(position_value, pre_trade.limit_price)
            if shares < 1:
                logger.warning(
                    "Position value too small for whole share order",
                    symbol=symbol,
                    position_value=str(position_value),
                    limit_price=str(pre_trade.limit_price),
                )
                return None
            return OrderIntent(
                qty=Decimal(shares),
                order_type=OrderType.LIMIT,
                limit_price=pre_trade.limit_price,
                time_in_force=TimeInForce.DAY,
                extended_hours=pre_trade.use_extended_hours,
                **common,
            )

        if decision.target_price and decision.stop_loss and not crypto:
            price = await self._current_price(symbol)
            if price:
                qty = (position_value / price).quantize(QTY_PLACES, rounding=ROUND_DOWN)
                if qty > ZERO:
                    return OrderIntent(
                        qty=qty,
                        order_class=OrderClass.BRACKET,
                        take_profit_price=round_price(decision.target_price),
                        stop_loss_price=round_price(decision.stop_loss),
                        **common,
                    )

        return OrderIntent(
            notional=round_price(position_value),
            time_in_force=TimeInForce.GTC if crypto else TimeInForce.DAY,
            **common,
        )

    async def _resolve_fill(self, symbol: str, fill: FillResult):
        """(price, qty) for a usable fill, or the failure result to return."""
        if fill.order is None:
            return self._failed(symbol, ExecutionAction.BUY, "Order failed - no response from broker")
        if fill.timed_out and not fill.has_fill_data:
            logger.warning("Fill wait timed out, leaving order to reconciliation", symbol=symbol, order_id=fill.order.id)
            return self._failed(symbol, ExecutionAction.BUY, "Order fill timed out - position sync triggered")
        if fill.has_fill_data:
            return fill.fill_price, fill.filled_qty
        if fill.is_fully_filled:
            price = await self._current_price(symbol)
            qty = fill.order.qty or ZERO
            if price and qty > ZERO:
                logger.warning("Fill price missing, using current price", symbol=symbol, price=str(price))
                return price, qty
        return self._failed(symbol, ExecutionAction.BUY, "Order rejected or no fill data")

    def _on_open_fill(
        self,
        symbol: str,
        decision: Decision,
        order_id: str,
        fill_price: Decimal,
        fill_qty: Decimal,
    ) -> ExecutionResult:
        now = self.clock.now()
        strategy_id = decision.strategy_id or self.strategy_id
        trade_id = self._record(
            TradeRecord(
                symbol=symbol,
                side=OrderSide.BUY,
                qty=fill_qty,
                price=fill_price,
                order_id=order_id,
                operator_id=self._require_operator(symbol),
                strategy_id=strategy_id,
                notes=decision.reasoning,
                decision_id=decision.decision_id,
                executed_at=now,
            )
        )
        self.learning.record_entry(decision.decision_id, symbol, fill_price, fill_qty)
        self.daily_trade_count += 1
        self._processed_order_ids.add(order_id)

        existing = self.positions.get(symbol)
        if existing is not None:
            total_qty = existing.qty + fill_qty
            existing.entry_price = (existing.entry_price * existing.qty + fill_price * fill_qty) / total_qty
            existing.sync_quantity(total_qty, existing.available_qty + fill_qty)
            existing.update_price(fill_price)
            logger.info(
                "Position reinforced",
                symbol=symbol,
                qty=str(total_qty),
                avg_entry=f"{existing.entry_price:.4f}",
                order_id=order_id,
            )
        else:
            self.positions[symbol] = Position(
                symbol=symbol,
                qty=fill_qty,
                entry_price=fill_price,
                current_price=fill_price,
                stop_loss_price=decision.stop_loss,
                take_profit_price=decision.target_price,
                trailing_stop_percent=decision.trailing_stop_percent,
                opened_at=now,
                strategy_id=strategy_id,
                trade_id=trade_id,
            )
            self.rule_evaluator.register_position(symbol, fill_price, now)
            logger.info(
                "Position opened",
                symbol=symbol,
                qty=str(fill_qty),
                entry_price=str(fill_price),
                stop_loss=str(decision.stop_loss) if decision.stop_loss else None,
                take_profit=str(decision.target_price) if decision.target_price else None,
                order_id=order_id,
            )

        return ExecutionResult(
            success=True,
            action=ExecutionAction.BUY,
            reason=f"Bought {fill_qty} {symbol} @ ${fill_price:.2f}",
            symbol=symbol,
            order_id=order_id,
            quantity=fill_qty,
            price=fill_price,
        )

    @staticmethod
    def _failed(symbol: str, action: ExecutionAction, reason: str, error: Optional[str] = None) -> ExecutionResult:
        return ExecutionResult(success=False, action=action, reason=reason, symbol=symbol, error=error or reason)

    # ========== CLOSE ==========

    async def close_position(
        self,
        symbol: str,
        decision: Decision,
        position: Optional[Position] = None,
        partial_percent: Decimal = HUNDRED,
        is_stop_loss_triggered: bool = False,
        is_emergency_stop: bool = False,
        trace_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Sell ``partial_percent`` of the position (100 = full close).

        Returns a HOLD result without touching the broker when the sell
        would realize a loss and neither authorization flag is set.
        """
        async with self._lock(symbol):
            return await self._close_unlocked(
                symbol,
                decision,
                position,
                partial_percent,
                is_stop_loss_triggered=is_stop_loss_triggered,
                is_emergency_stop=is_emergency_stop,
                trace_id=trace_id,
            )

    async def _close_unlocked(
        self,
        symbol: str,
        decision: Decision,
        position: Optional[Position],
        partial_percent: Decimal = HUNDRED,
        is_stop_loss_triggered: bool = False,
        is_emergency_stop: bool = False,
        trace_id: Optional[str] = None,
    ) -> ExecutionResult:
        position = position or self.positions.get(symbol)
        if position is None:
            return _skip(symbol, f"No open position for {symbol}")

        gate = self.risk_validator.check_loss_protection(
            OrderSide.SELL,
            position.entry_price,
            position.current_price,
            is_stop_loss_triggered=is_stop_loss_triggered,
            is_emergency_stop=is_emergency_stop,
        )
        if not gate.allowed:
            logger.warning(
                "LOSS_PROTECTION: close held",
                symbol=symbol,
                entry_price=str(position.entry_price),
                current_price=str(position.current_price),
                reason=gate.reason,
            )
            return ExecutionResult(success=False, action=ExecutionAction.HOLD, reason=gate.reason, symbol=symbol)

        operator_id = self._require_operator(symbol)
        full_close = partial_percent >= HUNDRED

        try:
            await self._cancel_open_orders(symbol, trace_id)

            if full_close:
                order = await self.broker.close_position(symbol)
                order_id = order.id
                requested_qty = position.qty
            else:
                tradable, tradable_reason = await self.pre_trade_guard.is_symbol_tradable(symbol)
                if not tradable:
                    return _skip(symbol, tradable_reason or f"{symbol} is not tradable")
                requested_qty = partial_quantity(position.qty, partial_percent).quantize(QTY_PLACES, rounding=ROUND_DOWN)
                if requested_qty <= ZERO:
                    return _skip(symbol, "Partial close quantity too small")
                queued = await self._submit(
                    OrderIntent(
                        symbol=symbol,
                        side=OrderSide.SELL,
                        qty=requested_qty,
                        time_in_force=TimeInForce.GTC if is_crypto_symbol(symbol) else TimeInForce.DAY,
                        strategy_id=position.strategy_id or self.strategy_id,
                        signal_hash=f"close-{partial_percent}-{requested_qty}",
                        trace_id=trace_id,
                        decision_id=decision.decision_id,
                    )
                )
                order_id = queued.order_id

            if not order_id:
                return self._failed(symbol, ExecutionAction.SELL, "Order failed - no response from broker")

            fill = await self.monitor.wait_for_fill(order_id)
            if fill.timed_out and not fill.has_fill_data:
                logger.warning("Close fill wait timed out, leaving order to reconciliation", symbol=symbol, order_id=order_id)
                return self._failed(symbol, ExecutionAction.SELL, "Order fill timed out - position sync triggered")
            if fill.has_fill_data:
                exit_price, filled_qty = fill.fill_price, fill.filled_qty
            elif fill.is_fully_filled:
                exit_price, filled_qty = position.current_price, requested_qty
            else:
                return self._failed(symbol, ExecutionAction.SELL, "Order rejected or no fill data")

            pnl = calculate_pnl(position.entry_price, exit_price, filled_qty)
            self._record(
                TradeRecord(
                    symbol=symbol,
                    side=OrderSide.SELL,
                    qty=filled_qty,
                    price=exit_price,
                    order_id=order_id,
                    operator_id=operator_id,
                    strategy_id=position.strategy_id or self.strategy_id,
                    pnl=pnl,
                    notes=decision.reasoning,
                    decision_id=decision.decision_id,
                    executed_at=self.clock.now(),
                )
            )
            self.learning.record_exit(symbol, exit_price, pnl, decision.reasoning)
            self.daily_pnl += pnl
            self.daily_trade_count += 1

            if full_close or filled_qty >= position.qty:
                self.positions.pop(symbol, None)
                self.rule_evaluator.remove_rules(symbol)
                logger.info(
                    "Position closed",
                    symbol=symbol,
                    qty=str(filled_qty),
                    exit_price=str(exit_price),
                    pnl=f"{pnl:.2f}",
                    reason=decision.reasoning,
                )
            else:
                position.reduce(filled_qty)
                logger.info(
                    "Position partially closed",
                    symbol=symbol,
                    closed_qty=str(filled_qty),
                    remaining_qty=str(position.qty),
                    percent=str(partial_percent),
                    pnl=f"{pnl:.2f}",
                )

            label = "Closed" if full_close else f"Closed {partial_percent}% of"
            return ExecutionResult(
                success=True,
                action=ExecutionAction.SELL,
                reason=f"{label} {symbol}: {decision.reasoning}",
                symbol=symbol,
                order_id=order_id,
                quantity=filled_qty,
                price=exit_price,
                pnl=pnl,
            )
        except InvariantError:
            raise
        except (OperationalError, DataError) as e:
            logger.error("Close failed", symbol=symbol, error=str(e), error_type=type(e).__name__, trace_id=trace_id)
            return self._failed(symbol, ExecutionAction.SELL, f"Close failed: {e}", error=str(e))

    # ========== RULES ==========

    async def check_position_rules(self, symbol: str, position: Optional[Position] = None) -> Optional[ExecutionResult]:
        """Evaluate exit rules for one symbol. Returns the close result if a rule fired a close."""
        async with self._lock(symbol):
            position = position or self.positions.get(symbol)
            if position is None:
                return None
            return await self._check_rules_unlocked(symbol, position)

    async def on_price_tick(self, symbol: str, price: Decimal) -> Optional[ExecutionResult]:
        """Apply a price tick and evaluate rules atomically for ``symbol``."""
        async with self._lock(symbol):
            position = self.positions.get(symbol)
            if position is None:
                return None
            position.update_price(price)
            return await self._check_rules_unlocked(symbol, position)

    async def _check_rules_unlocked(self, symbol: str, position: Position) -> Optional[ExecutionResult]:
        strategy_id = position.strategy_id

        def exit_decision(reasoning: str) -> Decision:
            return Decision(action="sell", reasoning=reasoning, strategy_id=strategy_id)

        current = position.current_price
        pnl_percent = position.unrealized_pnl_percent

        if position.stop_loss_price is not None and current <= position.stop_loss_price:
            logger.warning(
                "Stop-loss triggered",
                symbol=symbol,
                current_price=str(current),
                stop_loss=str(position.stop_loss_price),
            )
            self.rule_evaluator.remove_rules(symbol)
            return await self._close_unlocked(
                symbol,
                exit_decision(f"stop-loss triggered at ${current:.2f} (stop ${position.stop_loss_price:.2f})"),
                position,
                HUNDRED,
                is_stop_loss_triggered=True,
            )

        if pnl_percent <= self.config.emergency_stop_percent:
            logger.error("Emergency stop triggered", symbol=symbol, pnl_percent=f"{pnl_percent:.2f}")
            self.rule_evaluator.remove_rules(symbol)
            return await self._close_unlocked(
                symbol,
                exit_decision(f"emergency stop at {pnl_percent:.2f}% loss"),
                position,
                HUNDRED,
                is_emergency_stop=True,
            )

        take_profit = self.rule_evaluator.check_partial_take_profits(position)
        if take_profit is not None and take_profit.should_close:
            return await self._close_unlocked(symbol, exit_decision(take_profit.reason), position, take_profit.close_percent)

        trailing = self.rule_evaluator.update_trailing_stop(position)
        if trailing is not None:
            position.stop_loss_price = trailing.new_stop_loss
            logger.info(
                "Trailing stop raised",
                symbol=symbol,
                new_stop=f"{trailing.new_stop_loss:.2f}",
                reason=trailing.reason,
            )

        holding = self.rule_evaluator.check_holding_period(position)
        if holding is not None and holding.exceeded:
            logger.info(
                "Max holding period exceeded",
                symbol=symbol,
                holding_hours=f"{holding.holding_hours:.1f}",
                max_hours=holding.max_hours,
            )
            self.rule_evaluator.remove_rules(symbol)
            return await self._close_unlocked(
                symbol,
                exit_decision(f"max holding period exceeded ({holding.holding_hours:.1f}h > {holding.max_hours}h)"),
                position,
                HUNDRED,
            )

        # Legacy single-target take-profit, kept alongside the tiered rules
        if position.take_profit_price is not None and current >= position.take_profit_price:
            if pnl_percent > self.config.legacy_full_take_profit_percent:
                return await self._close_unlocked(
                    symbol, exit_decision(f"take-profit at {pnl_percent:.2f}% gain"), position, HUNDRED
                )
            if pnl_percent > self.config.legacy_partial_take_profit_percent:
                return await self._close_unlocked(
                    symbol,
                    exit_decision(f"partial take-profit at {pnl_percent:.2f}% gain"),
                    position,
                    LEGACY_PARTIAL_CLOSE_PERCENT,
                )
        return None

    # ========== ADJUSTMENTS ==========

    async def adjust_stop_loss_take_profit(
        self,
        symbol: str,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
        trailing_stop_percent: Optional[Decimal] = None,
    ) -> Tuple[bool, str]:
        """Validate every requested change against the current price, then apply them together."""
        async with self._lock(symbol):
            position = self.positions.get(symbol)
            if position is None:
                return False, f"No open position for {symbol}"

            current = position.current_price
            if stop_loss is not None and stop_loss >= current:
                return False, f"Stop-loss ${stop_loss:.2f} must be below current price ${current:.2f}"
            if take_profit is not None and take_profit <= current:
                return False, f"Take-profit ${take_profit:.2f} must be above current price ${current:.2f}"
            if trailing_stop_percent is not None and not (ZERO < trailing_stop_percent < HUNDRED):
                return False, "Trailing stop percent must be between 0 and 100"

            if stop_loss is not None:
                position.stop_loss_price = stop_loss
            if take_profit is not None:
                position.take_profit_price = take_profit
            if trailing_stop_percent is not None:
                position.trailing_stop_percent = trailing_stop_percent

            logger.info(
                "Position risk levels adjusted",
                symbol=symbol,
                stop_loss=str(position.stop_loss_price) if position.stop_loss_price is not None else None,
                take_profit=str(position.take_profit_price) if position.take_profit_price is not None else None,
                trailing_stop_percent=str(position.trailing_stop_percent)
                if position.trailing_stop_percent is not None
                else None,
            )
            return True, "Updated"

    async def apply_trailing_stop_to_all_positions(self, trail_percent: Optional[Decimal] = None) -> int:
        """Set a trailing stop on every position; an existing higher stop is kept. Returns how many changed."""
        trail_percent = trail_percent or self.config.default_trailing_stop_percent
        updated = 0
        for symbol in list(self.positions):
            async with self._lock(symbol):
                position = self.positions.get(symbol)
                if position is None:
                    continue
                position.trailing_stop_percent = trail_percent
                stop = round_price(position.current_price * (ONE - trail_percent / HUNDRED))
                if position.stop_loss_price is None or stop > position.stop_loss_price:
                    position.stop_loss_price = stop
                    updated += 1
        logger.info("Trailing stop applied to positions", trail_percent=str(trail_percent), updated=updated)
        return updated

    # ========== RECONCILIATION HOOKS ==========

    async def adopt_position(self, broker_position: BrokerPosition) -> Optional[Position]:
        """
        Start tracking a position the broker holds but this manager does not know.

        Returns None when the symbol became tracked while waiting for its lock
        (an open that finished mid-reconcile); that position is left untouched.
        """
        symbol = broker_position.symbol
        async with self._lock(symbol):
            if symbol in self.positions:
                return None
            now = self.clock.now()
            position = Position(
                symbol=symbol,
                qty=broker_position.qty,
                available_qty=min(broker_position.qty_available, broker_position.qty),
                entry_price=broker_position.avg_entry_price,
                current_price=broker_position.current_price,
                opened_at=now,
                strategy_id=self.strategy_id,
            )
            self.positions[symbol] = position
            self.rule_evaluator.register_position(symbol, broker_position.avg_entry_price, now)
            return position

    async def sync_position(self, broker_position: BrokerPosition) -> bool:
        """Align a tracked position with the broker. Returns True if the quantity changed."""
        symbol = broker_position.symbol
        async with self._lock(symbol):
            position = self.positions.get(symbol)
            if position is None:
                return False
            changed = position.qty != broker_position.qty
            position.sync_quantity(broker_position.qty, broker_position.qty_available)
            position.update_price(broker_position.current_price)
            return changed

    async def remove_position(self, symbol: str) -> Optional[Position]:
        async with self._lock(symbol):
            self.rule_evaluator.remove_rules(symbol)
            return self.positions.pop(symbol, None)

    # ========== REPORTING ==========

    def reset_daily_counters(self) -> None:
        logger.info("Daily counters reset", daily_pnl=f"{self.daily_pnl:.2f}", trades=self.daily_trade_count)
        self.daily_pnl = ZERO
        self.daily_trade_count = 0

    def get_portfolio_snapshot(self) -> Dict[str, Any]:
        exposure = self.calculate_total_exposure()
        return {
            "positions_count": len(self.positions),
            "total_exposure": exposure,
            "exposure_percent": exposure / self.portfolio_value * HUNDRED if self.portfolio_value > ZERO else ZERO,
            "unrealized_pnl": sum((p.unrealized_pnl for p in self.positions.values()), ZERO),
            "daily_pnl": self.daily_pnl,
            "daily_trade_count": self.daily_trade_count,
            "portfolio_value": self.portfolio_value,
            "positions": [
                {
                    "symbol": p.symbol,
                    "qty": p.qty,
                    "entry_price": p.entry_price,
                    "current_price": p.current_price,
                    "unrealized_pnl": p.unrealized_pnl,
                    "unrealized_pnl_percent": p.unrealized_pnl_percent,
                    "stop_loss_price": p.stop_loss_price,
                    "take_profit_price": p.take_profit_price,
                }
                for p in self.positions.values()
            ],
        }
