"""
Order monitoring: fill waiting and stale order cleanup.

wait_for_fill() polls the broker until the order reaches a terminal state or
the timeout passes, then does one final fetch so a fill that landed during
the last interval is not missed. cancel_stale_orders() cancels open orders
older than a threshold through the coordinator.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from tradeguard.domain.models import BrokerOrder
from tradeguard.domain.protocols import BrokerClient
from tradeguard.exceptions import OperationalError
from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.clock import SystemClock
from tradeguard.utils.money import ZERO

logger = get_logger(__name__)

TERMINAL_ORDER_STATUSES = frozenset({"filled", "canceled", "expired", "rejected", "suspended", "done_for_day"})


@dataclass
class FillResult:
    """Outcome of waiting on an order."""
    order: Optional[BrokerOrder]
    timed_out: bool
    has_fill_data: bool
    is_fully_filled: bool

    @property
    def fill_price(self):
        if self.order is None or not self.has_fill_data:
            return None
        return self.order.filled_avg_price

    @property
    def filled_qty(self):
        return self.order.filled_qty if self.order is not None else ZERO


def _has_fill_data(order: BrokerOrder) -> bool:
    return order.filled_avg_price is not None and order.filled_avg_price > ZERO and order.filled_qty > ZERO


class OrderMonitor:
    """
    Watches submitted orders.

    Responsibilities:
    - Wait for fills with a bounded poll
    - Cancel open orders that have outlived their timeout
    """

    def __init__(
        self,
        broker: BrokerClient,
        clock=None,
        poll_interval_seconds: float = 0.5,
        fill_timeout_seconds: float = 30.0,
    ):
        self.broker = broker
        self.clock = clock or SystemClock()
        self.poll_interval_seconds = poll_interval_seconds
        self.fill_timeout_seconds = fill_timeout_seconds

    async def wait_for_fill(self, order_id: str, timeout_seconds: Optional[float] = None) -> FillResult:
        """
        Wait for ``order_id`` to fill.

        Broker errors during polling are logged and polling continues; a
        timeout is reported in the result, never raised.
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.fill_timeout_seconds
        deadline = self.clock.monotonic() + timeout
        last: Optional[BrokerOrder] = None

        while self.clock.monotonic() < deadline:
            try:
                last = await self.broker.get_order(order_id)
            except OperationalError as e:
                logger.warning("Fill poll failed", order_id=order_id, error=str(e))
            else:
                if last.status in TERMINAL_ORDER_STATUSES:
                    return self._result(last, timed_out=False)
                if last.status == "partially_filled":
                    logger.debug("Order partially filled", order_id=order_id, filled_qty=str(last.filled_qty))
            await self.clock.sleep(self.poll_interval_seconds)

        try:
            last = await self.broker.get_order(order_id)
        except OperationalError as e:
            logger.warning("Final fill check failed", order_id=order_id, error=str(e))

        logger.warning(
            "Order fill wait timed out",
            order_id=order_id,
            timeout_seconds=timeout,
            status=last.status if last else None,
        )
        return self._result(last, timed_out=True)

    @staticmethod
    def _result(order: Optional[BrokerOrder], timed_out: bool) -> FillResult:
        if order is None:
            return FillResult(order=None, timed_out=timed_out, has_fill_data=False, is_fully_filled=False)
        return FillResult(
            order=order,
            timed_out=timed_out,
            has_fill_data=_has_fill_data(order),
            is_fully_filled=order.is_filled,
        )

    async def cancel_stale_orders(self, coordinator, max_age_seconds: int = 300) -> List[str]:
        """
        Cancel open orders older than ``max_age_seconds``.

        Returns the ids that were sent for cancellation.
        """
        cutoff = self.clock.now() - timedelta(seconds=max_age_seconds)
        cancelled: List[str] = []
        for order in await self.broker.list_open_orders():
            created = order.submitted_at or order.created_at
            if created is None or created > cutoff:
                continue
            logger.info(
                "Cancelling stale order",
                order_id=order.id,
                symbol=order.symbol,
                age_seconds=int((self.clock.now() - created).total_seconds()),
            )
            await coordinator.cancel(order.id, order.symbol, trace_id=f"stale-{order.id}")
            cancelled.append(order.id)
        return cancelled
