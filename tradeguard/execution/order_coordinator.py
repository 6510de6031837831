"""
Order Submission Coordinator.

Idempotent submit/cancel on top of the work queue:

    intent ──► canonical params ──► enqueue (dedup by key) ──► poll ──► result
                                         │
                                         └─ already SUCCEEDED? verify live broker
                                            status; dead order ⇒ invalidate and
                                            raise StaleDuplicateOrderError

Submission keys bucket on 5 minutes, cancellation keys on 1 minute (and the
target order id). A submit that outlives the poll deadline raises
SubmissionTimeoutError: the order may still exist, reconcile before retrying.
A cancel never raises on timeout; the reconciler is the backstop.
"""
from dataclasses import dataclass
from typing import Optional

from tradeguard.domain.models import (
    SUBMIT_SUCCESS_STATUSES,
    TERMINAL_FAILURE_STATUSES,
    OrderIntent,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)
from tradeguard.domain.protocols import BrokerClient, WorkQueue
from tradeguard.exceptions import (
    BrokerAPIError,
    OrderNotFoundError,
    OrderSubmissionError,
    StaleDuplicateOrderError,
    SubmissionTimeoutError,
    ValidationError,
)
from tradeguard.execution.idempotency import (
    CANCEL_BUCKET_MS,
    SUBMIT_BUCKET_MS,
    cancel_key,
    submit_key,
)
from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.clock import SystemClock

logger = get_logger(__name__)

BENIGN_CANCEL_ERRORS = ("already", "cancel", "not found")


@dataclass
class QueuedOrderResult:
    order_id: str
    status: str
    work_item_id: str


def _is_not_found(error: Exception) -> bool:
    if isinstance(error, OrderNotFoundError):
        return True
    if isinstance(error, BrokerAPIError) and error.status_code == 404:
        return True
    return "not found" in str(error).lower()


class OrderSubmissionCoordinator:
    """
    Submits and cancels orders through the work queue.

    When ``worker`` is given the coordinator drives it inline before each
    poll (single-process mode); otherwise a background WorkQueueWorker is
    expected to be running.
    """

    def __init__(
        self,
        queue: WorkQueue,
        broker: BrokerClient,
        clock=None,
        worker=None,
        *,
        max_attempts: int = 3,
        poll_interval_seconds: float = 2.0,
        poll_timeout_seconds: float = 60.0,
        cancel_timeout_seconds: Optional[float] = None,
        submit_bucket_ms: int = SUBMIT_BUCKET_MS,
        cancel_bucket_ms: int = CANCEL_BUCKET_MS,
        default_strategy_id: str = "autonomous",
    ):
        self.queue = queue
        self.broker = broker
        self.clock = clock or SystemClock()
        self.worker = worker
        self.max_attempts = max_attempts
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self.cancel_timeout_seconds = cancel_timeout_seconds or poll_timeout_seconds
        self.submit_bucket_ms = submit_bucket_ms
        self.cancel_bucket_ms = cancel_bucket_ms
        self.default_strategy_id = default_strategy_id
        self.metrics = {
            "submits": 0,
            "cached_duplicates": 0,
            "stale_duplicates": 0,
            "submit_timeouts": 0,
            "submit_failures": 0,
            "cancels": 0,
            "cancel_timeouts": 0,
        }

    # ========== SUBMIT ==========

    async def submit(self, intent: OrderIntent) -> QueuedOrderResult:
        """
        Submit an order idempotently and wait until the queue has placed it.

        Raises:
            StaleDuplicateOrderError: cached order is dead at the broker; resubmit
            OrderSubmissionError: work item dead-lettered
            SubmissionTimeoutError: no terminal state before the poll deadline
        """
        strategy_id = intent.strategy_id or self.default_strategy_id
        idempotency_key = intent.idempotency_key or submit_key(
            strategy_id,
            intent.symbol,
            intent.side.value,
            self.clock.now_ms(),
            intent.signal_hash,
            self.submit_bucket_ms,
        )
        params = intent.to_params()
        # The worker sets client_order_id to the work item id
        params.pop("client_order_id", None)

        logger.info(
            "Queuing ORDER_SUBMIT",
            symbol=intent.symbol,
            side=intent.side.value,
            trace_id=intent.trace_id,
            idempotency_key=idempotency_key,
        )
        self.metrics["submits"] += 1

        item = self.queue.enqueue(
            WorkItemType.ORDER_SUBMIT,
            intent.symbol,
            idempotency_key,
            {
                "params": params,
                "trace_id": intent.trace_id,
                "strategy_id": strategy_id,
                "decision_id": intent.decision_id,
            },
            self.max_attempts,
        )

        if item.status == WorkItemStatus.SUCCEEDED and item.result:
            return await self._verify_cached(item, intent.trace_id)

        return await self._poll_submit(item.id, intent.symbol, intent.trace_id)

    async def _verify_cached(self, item: WorkItem, trace_id: Optional[str]) -> QueuedOrderResult:
        """Re-check a cached duplicate against live broker state before trusting it."""
        result = item.result or {}
        order_id = result.get("order_id") or item.broker_order_id
        cached_status = result.get("status") or "filled"

        if order_id:
            try:
                live = await self.broker.get_order(order_id)
            except (OrderNotFoundError, BrokerAPIError) as e:
                if not _is_not_found(e):
                    logger.warning(
                        "Could not verify duplicate order status",
                        symbol=item.symbol,
                        order_id=order_id,
                        trace_id=trace_id,
                        error=str(e),
                    )
                    return QueuedOrderResult(order_id, cached_status, item.id)
                self._invalidate_stale(item, order_id, "not_found", trace_id)
                raise StaleDuplicateOrderError(order_id, "not_found", item.id) from e

            live_status = (live.status or "unknown").lower()
            if live_status in TERMINAL_FAILURE_STATUSES:
                self._invalidate_stale(item, order_id, live_status, trace_id)
                raise StaleDuplicateOrderError(order_id, live_status, item.id)

            logger.info(
                "Order already succeeded (duplicate)",
                symbol=item.symbol,
                order_id=order_id,
                live_status=live_status,
                trace_id=trace_id,
            )

        self.metrics["cached_duplicates"] += 1
        return QueuedOrderResult(order_id or "", cached_status, item.id)

    def _invalidate_stale(self, item: WorkItem, order_id: str, status: str, trace_id: Optional[str]) -> None:
        self.metrics["stale_duplicates"] += 1
        logger.warning(
            "Duplicate order is dead at broker, invalidating work item",
            symbol=item.symbol,
            order_id=order_id,
            broker_status=status,
            work_item_id=item.id,
            trace_id=trace_id,
        )
        self.queue.invalidate(item.id, f"Order {status} by broker")

    async def _poll_submit(self, item_id: str, symbol: str, trace_id: Optional[str]) -> QueuedOrderResult:
        deadline = self.clock.monotonic() + self.poll_timeout_seconds
        while self.clock.monotonic() < deadline:
            if self.worker is not None:
                await self.worker.drain()

            item = self.queue.get_by_id(item_id)
            if item is None:
                raise ValidationError(f"Work item {item_id} not found during polling")

            if item.status == WorkItemStatus.SUCCEEDED:
                result = item.result or {}
                order_id = result.get("order_id") or item.broker_order_id
                status = (result.get("status") or "accepted").lower()
                if status in SUBMIT_SUCCESS_STATUSES or order_id:
                    logger.info(
                        "ORDER_SUBMIT succeeded",
                        symbol=symbol,
                        order_id=order_id,
                        order_status=status,
                        work_item_id=item_id,
                        trace_id=trace_id,
                    )
                    return QueuedOrderResult(order_id or "", status, item_id)

            if item.broker_order_id and not item.result:
                return QueuedOrderResult(item.broker_order_id, "accepted", item_id)

            if item.status == WorkItemStatus.DEAD_LETTER:
                self.metrics["submit_failures"] += 1
                logger.error(
                    "ORDER_SUBMIT failed permanently",
                    symbol=symbol,
                    work_item_id=item_id,
                    attempts=item.attempts,
                    error=item.last_error,
                    trace_id=trace_id,
                )
                raise OrderSubmissionError(item_id, item.last_error)

            if item.status == WorkItemStatus.CANCELLED:
                self.metrics["submit_failures"] += 1
                raise OrderSubmissionError(item_id, item.last_error or "work item cancelled")

            logger.debug("Polling work item", work_item_id=item_id, status=item.status.value, attempts=item.attempts)
            await self.clock.sleep(self.poll_interval_seconds)

        self.metrics["submit_timeouts"] += 1
        logger.error(
            "ORDER_SUBMIT timed out, reconcile before resubmitting",
            symbol=symbol,
            work_item_id=item_id,
            timeout_seconds=self.poll_timeout_seconds,
            trace_id=trace_id,
        )
        raise SubmissionTimeoutError(item_id, self.poll_timeout_seconds)

    # ========== CANCEL ==========

    async def cancel(self, order_id: str, symbol: str, trace_id: Optional[str] = None, strategy_id: Optional[str] = None) -> None:
        """
        Cancel an order idempotently. Never raises on timeout or benign failure.
        """
        idempotency_key = cancel_key(
            strategy_id or self.default_strategy_id,
            symbol,
            order_id,
            self.clock.now_ms(),
            self.cancel_bucket_ms,
        )
        logger.info("Queuing ORDER_CANCEL", symbol=symbol, order_id=order_id, trace_id=trace_id)
        self.metrics["cancels"] += 1

        item = self.queue.enqueue(
            WorkItemType.ORDER_CANCEL,
            symbol,
            idempotency_key,
            {"order_id": order_id, "trace_id": trace_id},
            self.max_attempts,
        )
        if item.status == WorkItemStatus.SUCCEEDED:
            logger.info("Order cancellation already succeeded (duplicate)", symbol=symbol, order_id=order_id)
            return

        deadline = self.clock.monotonic() + self.cancel_timeout_seconds
        while self.clock.monotonic() < deadline:
            if self.worker is not None:
                await self.worker.drain()

            current = self.queue.get_by_id(item.id)
            if current is None:
                raise ValidationError(f"Cancel work item {item.id} not found during polling")

            if current.status in (WorkItemStatus.SUCCEEDED, WorkItemStatus.CANCELLED):
                logger.info("ORDER_CANCEL completed", symbol=symbol, order_id=order_id, status=current.status.value)
                return

            if current.status == WorkItemStatus.DEAD_LETTER:
                error_lower = (current.last_error or "").lower()
                if any(marker in error_lower for marker in BENIGN_CANCEL_ERRORS):
                    logger.info(
                        "ORDER_CANCEL completed (order already cancelled or not found)",
                        symbol=symbol,
                        order_id=order_id,
                    )
                    return
                logger.warning(
                    "ORDER_CANCEL failed",
                    symbol=symbol,
                    order_id=order_id,
                    error=current.last_error,
                    trace_id=trace_id,
                )
                return

            await self.clock.sleep(self.poll_interval_seconds)

        self.metrics["cancel_timeouts"] += 1
        logger.warning("Order cancellation timed out", symbol=symbol, order_id=order_id, trace_id=trace_id)
