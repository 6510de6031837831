"""
Engine wiring.

Builds every component from Config around a broker and a database, and runs
the background loops:
- work queue worker (executes queued submits/cancels)
- position reconciler (broker is the source of truth)
- stale order sweep

Price ticks and broker trade-update events are fed in through on_tick() and
on_trade_update().
"""
import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional

from tradeguard.config.config import Config
from tradeguard.domain.models import BrokerOrder, ExecutionResult, WorkItemType
from tradeguard.domain.protocols import BrokerClient
from tradeguard.exceptions import OperationalError
from tradeguard.execution.order_coordinator import OrderSubmissionCoordinator
from tradeguard.execution.order_monitor import OrderMonitor
from tradeguard.execution.order_retry import OrderRetryEngine
from tradeguard.execution.position_manager import PositionManager
from tradeguard.execution.queue_worker import WorkQueueWorker
from tradeguard.execution.rejection_handlers import BrokerFixEnvironment
from tradeguard.execution.trade_recorder import TradeRecorder
from tradeguard.execution.work_queue import SqlWorkQueue
from tradeguard.monitoring.logger import bind_trace, clear_trace, get_logger
from tradeguard.reconciliation.reconciler import PositionReconciler
from tradeguard.risk.exit_rules import AdvancedRuleEvaluator
from tradeguard.risk.pre_trade_guard import PreTradeGuard
from tradeguard.risk.risk_validator import RiskValidator
from tradeguard.storage.db import Database
from tradeguard.utils.circuit_breaker import RetryCircuitBreaker
from tradeguard.utils.clock import SystemClock
from tradeguard.utils.kill_switch import KillSwitch, default_state_path

logger = get_logger(__name__)


def build_broker(config: Config, clock=None) -> BrokerClient:
    """Broker client selected by ``config.broker.name``."""
    if config.broker.name == "alpaca":
        from tradeguard.data.alpaca_client import AlpacaClient

        return AlpacaClient.from_config(config.broker)

    from tradeguard.paper.paper_broker import PaperBroker

    return PaperBroker(clock=clock)


class TradingEngine:
    """Owns the component graph and its background tasks."""

    def __init__(
        self,
        config: Config,
        broker: BrokerClient,
        database: Database,
        clock,
        queue: SqlWorkQueue,
        worker: WorkQueueWorker,
        coordinator: OrderSubmissionCoordinator,
        monitor: OrderMonitor,
        retry_engine: OrderRetryEngine,
        kill_switch: KillSwitch,
        position_manager: PositionManager,
        reconciler: PositionReconciler,
        inline_worker: bool = False,
    ):
        self.config = config
        self.broker = broker
        self.database = database
        self.clock = clock
        self.queue = queue
        self.worker = worker
        self.coordinator = coordinator
        self.monitor = monitor
        self.retry_engine = retry_engine
        self.kill_switch = kill_switch
        self.position_manager = position_manager
        self.reconciler = reconciler
        self.inline_worker = inline_worker
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @classmethod
    def from_config(
        cls,
        config: Config,
        broker: BrokerClient,
        database: Database,
        clock=None,
        inline_worker: bool = False,
        kill_switch: Optional[KillSwitch] = None,
    ) -> "TradingEngine":
        """
        Wire the engine.

        With ``inline_worker`` the coordinator drains the queue itself before
        each poll and start() launches no worker loop (single-process mode,
        used by dry runs and tests).
        """
        clock = clock or SystemClock()
        database.create_all()

        oq = config.order_queue
        queue = SqlWorkQueue(
            database,
            clock=clock,
            retry_delays_ms={
                WorkItemType.ORDER_SUBMIT: oq.submit_retry_delays_ms,
                WorkItemType.ORDER_CANCEL: oq.cancel_retry_delays_ms,
            },
            jitter_fraction=oq.retry_jitter_fraction,
        )
        worker = WorkQueueWorker(queue, broker, clock=clock, idle_seconds=oq.worker_idle_seconds)
        coordinator = OrderSubmissionCoordinator(
            queue,
            broker,
            clock=clock,
            worker=worker if inline_worker else None,
            max_attempts=oq.max_attempts,
            poll_interval_seconds=oq.poll_interval_seconds,
            poll_timeout_seconds=oq.poll_timeout_seconds,
            cancel_timeout_seconds=oq.cancel_timeout_seconds,
            submit_bucket_ms=oq.submit_bucket_seconds * 1000,
            cancel_bucket_ms=oq.cancel_bucket_seconds * 1000,
            default_strategy_id=oq.default_strategy_id,
        )

        ex = config.execution
        monitor = OrderMonitor(
            broker,
            clock=clock,
            poll_interval_seconds=ex.fill_poll_interval_seconds,
            fill_timeout_seconds=ex.fill_timeout_seconds,
        )

        pre_trade_guard = PreTradeGuard(broker, clock=clock, limit_buffer=ex.limit_price_buffer_pct)

        rc = config.order_retry
        breaker = RetryCircuitBreaker(
            threshold=rc.circuit_breaker_threshold,
            window_ms=rc.circuit_breaker_window_ms,
            reset_ms=rc.circuit_breaker_reset_ms,
            clock=clock,
        )
        retry_engine = OrderRetryEngine(
            broker,
            BrokerFixEnvironment(
                broker,
                clock,
                session_fn=pre_trade_guard.current_session,
                wash_trade_delay_seconds=rc.wash_trade_delay_ms / 1000,
            ),
            breaker,
            clock=clock,
            max_retries=rc.max_retries_per_order,
            backoff_base_ms=rc.backoff_base_ms,
        )

        if kill_switch is None:
            state_path = config.kill_switch_state_path or default_state_path()
            kill_switch = KillSwitch(broker=broker, state_path=state_path)

        position_manager = PositionManager(
            broker,
            coordinator,
            monitor,
            RiskValidator(broker, config.risk, kill_switch=kill_switch),
            pre_trade_guard,
            AdvancedRuleEvaluator(config.exit_rules, clock=clock),
            TradeRecorder(database),
            operator_id=config.operator_id,
            config=config.risk,
            execution_config=ex,
            clock=clock,
            strategy_id=oq.default_strategy_id,
        )
        reconciler = PositionReconciler(
            broker, position_manager, clock=clock, interval_seconds=config.reconciliation.interval_seconds
        )

        logger.info(
            "Trading engine wired",
            environment=config.environment,
            broker=config.broker.name,
            inline_worker=inline_worker,
            operator_id_set=bool(config.operator_id),
        )
        return cls(
            config,
            broker,
            database,
            clock,
            queue,
            worker,
            coordinator,
            monitor,
            retry_engine,
            kill_switch,
            position_manager,
            reconciler,
            inline_worker=inline_worker,
        )

    # ========== LIFECYCLE ==========

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if not self.inline_worker:
            self._tasks.append(asyncio.create_task(self.worker.run(), name="work-queue-worker"))
        if self.config.reconciliation.enabled:
            self._tasks.append(asyncio.create_task(self.reconciler.run_periodic(), name="position-reconciler"))
        self._tasks.append(asyncio.create_task(self._stale_order_loop(), name="stale-order-sweep"))
        logger.info("Trading engine started", background_tasks=len(self._tasks))

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.worker.stop()
        self.reconciler.stop()
        for task in self._tasks:
            task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, result in zip(self._tasks, results):
            if isinstance(result, Exception):
                logger.error("Background task failed", task=task.get_name(), error=str(result))
        self._tasks.clear()
        await self.retry_engine.wait_for_background()
        logger.info("Trading engine stopped")

    async def _stale_order_loop(self) -> None:
        max_age = self.config.execution.stale_order_max_age_seconds
        while self._running:
            await self.clock.sleep(max_age)
            try:
                await self.monitor.cancel_stale_orders(self.coordinator, max_age)
            except OperationalError as e:
                logger.warning("Stale order sweep failed", error=str(e))

    # ========== EVENTS ==========

    async def on_tick(self, symbol: str, price: Decimal) -> Optional[ExecutionResult]:
        """Apply a price tick to ``symbol`` and evaluate its exit rules."""
        bind_trace(f"tick-{symbol}-{self.clock.now_ms()}", symbol=symbol)
        try:
            return await self.position_manager.on_price_tick(symbol, price)
        finally:
            clear_trace()

    def on_trade_update(self, event: str, order: BrokerOrder, reason: Optional[str] = None) -> Optional[asyncio.Task]:
        """Route a broker trade-update event (rejected/canceled) to the retry engine."""
        return self.retry_engine.handle_trade_update(event, order, reason)

    def get_health(self) -> Dict[str, Any]:
        snapshot = self.position_manager.get_portfolio_snapshot()
        return {
            "running": self._running,
            "kill_switch": self.kill_switch.get_status(),
            "work_queue": self.queue.counts_by_status(),
            "retry": self.retry_engine.get_retry_stats(),
            "positions": snapshot["positions_count"],
            "daily_pnl": str(snapshot["daily_pnl"]),
            "last_reconciliation": {
                "synced": self.reconciler.last_result.synced,
                "added": self.reconciler.last_result.added,
                "removed": self.reconciler.last_result.removed,
                "errors": self.reconciler.last_result.errors,
            },
        }
