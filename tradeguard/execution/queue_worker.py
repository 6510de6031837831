"""
Work queue worker: executes queued broker operations.

ORDER_SUBMIT uses the work item id as the broker client_order_id and
adopts an existing open order with that id instead of placing a second one.
Failures are classified from the error text: permanent errors dead-letter
immediately, transient ones are rescheduled by the queue.
"""
import re
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from tradeguard.domain.models import WorkItem, WorkItemType
from tradeguard.domain.protocols import BrokerClient
from tradeguard.exceptions import InvariantError
from tradeguard.execution.work_queue import SqlWorkQueue
from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.clock import SystemClock

logger = get_logger(__name__)

TRANSIENT_ERROR_PATTERNS = [
    re.compile(r"timeout", re.I),
    re.compile(r"network", re.I),
    re.compile(r"ECONNREFUSED", re.I),
    re.compile(r"ETIMEDOUT", re.I),
    re.compile(r"rate.?limit", re.I),
    re.compile(r"429"),
    re.compile(r"5\d\d"),
    re.compile(r"temporary", re.I),
    re.compile(r"unavailable", re.I),
]

PERMANENT_ERROR_PATTERNS = [
    re.compile(r"invalid.*symbol", re.I),
    re.compile(r"insufficient.*buying", re.I),
    re.compile(r"account.*blocked", re.I),
    re.compile(r"not.*tradable", re.I),
    re.compile(r"market.*closed", re.I),
    re.compile(r"invalid.*quantity", re.I),
    re.compile(r"rejected", re.I),
    re.compile(r"4[0-3]\d"),
]


def classify_error(error) -> str:
    """
    Classify a broker error as ``permanent``, ``transient`` or ``unknown``.

    Permanent patterns win, so a 40x-43x status in the text (429 included)
    dead-letters even though "429" alone reads as transient.
    """
    text = str(error)
    if any(p.search(text) for p in PERMANENT_ERROR_PATTERNS):
        return "permanent"
    if any(p.search(text) for p in TRANSIENT_ERROR_PATTERNS):
        return "transient"
    return "unknown"


class WorkQueueWorker:
    """Claims due work items and runs them against the broker."""

    def __init__(self, queue: SqlWorkQueue, broker: BrokerClient, clock=None, idle_seconds: float = 1.0):
        self.queue = queue
        self.broker = broker
        self.clock = clock or SystemClock()
        self.idle_seconds = idle_seconds
        self._running = False
        self._processing = False

    async def process_next(self) -> Optional[WorkItem]:
        """Claim and run one item. Returns the claimed item, or None if the queue was idle."""
        if self._processing:
            return None
        self._processing = True
        try:
            item = self.queue.claim_next()
            if item is not None:
                await self.process_item(item)
            return item
        finally:
            self._processing = False

    async def drain(self, max_items: int = 100) -> int:
        """Run due items until the queue is idle. Returns how many ran."""
        count = 0
        while count < max_items:
            if await self.process_next() is None:
                break
            count += 1
        return count

    async def process_item(self, item: WorkItem) -> None:
        try:
            if item.type == WorkItemType.ORDER_SUBMIT:
                await self._process_order_submit(item)
            elif item.type == WorkItemType.ORDER_CANCEL:
                await self._process_order_cancel(item)
            else:
                self.queue.mark_failed(item.id, f"Unknown type: {item.type}", retryable=False)
        except InvariantError:
            raise
        except Exception as e:
            # Broker client failures of any kind are recorded on the item
            error_class = classify_error(e)
            logger.error(
                "Work item failed",
                work_item_id=item.id,
                type=item.type.value,
                symbol=item.symbol,
                attempt=item.attempts,
                error_class=error_class,
                error=str(e),
            )
            self.queue.mark_failed(item.id, str(e), retryable=error_class == "transient")

    async def _process_order_submit(self, item: WorkItem) -> None:
        params = dict(item.payload["params"])
        symbol = params["symbol"]

        if not await self.broker.is_tradable(symbol):
            self.queue.mark_failed(item.id, f"Symbol {symbol} is not tradable", retryable=False)
            return

        client_order_id = item.id
        for existing in await self.broker.list_open_orders(symbol):
            if existing.client_order_id == client_order_id:
                logger.info(
                    "Order already exists for client_order_id",
                    work_item_id=item.id,
                    symbol=symbol,
                    client_order_id=client_order_id,
                    order_id=existing.id,
                )
                self.queue.mark_succeeded(
                    item.id, {"order_id": existing.id, "status": existing.status, "deduplicated": True}
                )
                return

        params["client_order_id"] = client_order_id
        order = await self.broker.submit_order(params)
        logger.info(
            "Queued order submitted",
            work_item_id=item.id,
            symbol=symbol,
            side=params.get("side"),
            order_id=order.id,
            status=order.status,
        )
        self.queue.mark_succeeded(item.id, {"order_id": order.id, "status": order.status})

    async def _process_order_cancel(self, item: WorkItem) -> None:
        order_id = item.payload.get("order_id")
        if not order_id:
            self.queue.mark_failed(item.id, "Missing order_id in payload", retryable=False)
            return
        await self.broker.cancel_order(order_id)
        logger.info("Queued cancel executed", work_item_id=item.id, symbol=item.symbol, order_id=order_id)
        self.queue.mark_succeeded(item.id, {"order_id": order_id, "canceled_order_id": order_id})

    async def run(self) -> None:
        """Worker loop until stop()."""
        self._running = True
        logger.info("Work queue worker started", idle_seconds=self.idle_seconds)
        while self._running:
            try:
                item = await self.process_next()
            except SQLAlchemyError as e:
                logger.error("Worker cycle error", error=str(e))
                item = None
            if item is None:
                await self.clock.sleep(self.idle_seconds)
        logger.info("Work queue worker stopped")

    def stop(self) -> None:
        self._running = False
