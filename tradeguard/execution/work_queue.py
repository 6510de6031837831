"""
Persisted, key-deduplicated work queue for broker operations.

Semantics:
- enqueue() returns the existing item when the idempotency key is known
- claim_next() hands out due PENDING items one at a time and counts attempts
- mark_failed() reschedules with per-type backoff, or dead-letters when the
  error is permanent or attempts are exhausted
- invalidate() cancels an item and frees its key for a fresh enqueue
"""
import random
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from tradeguard.domain.models import WorkItem, WorkItemStatus, WorkItemType
from tradeguard.monitoring.logger import get_logger
from tradeguard.storage import repository
from tradeguard.storage.db import Database
from tradeguard.utils.clock import SystemClock

logger = get_logger(__name__)

DEFAULT_RETRY_DELAYS_MS: Dict[WorkItemType, List[int]] = {
    WorkItemType.ORDER_SUBMIT: [1000, 5000, 15000],
    WorkItemType.ORDER_CANCEL: [1000, 3000, 10000],
}


class SqlWorkQueue:
    """SQLAlchemy-backed WorkQueue."""

    def __init__(
        self,
        db: Database,
        clock=None,
        retry_delays_ms: Optional[Dict[WorkItemType, Sequence[int]]] = None,
        jitter_fraction: float = 0.2,
        rng: Optional[Callable[[], float]] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.retry_delays_ms = dict(DEFAULT_RETRY_DELAYS_MS)
        if retry_delays_ms:
            self.retry_delays_ms.update({k: list(v) for k, v in retry_delays_ms.items()})
        self.jitter_fraction = jitter_fraction
        self._rng = rng or random.random
        self.metrics = {
            "enqueued": 0,
            "deduplicated": 0,
            "succeeded": 0,
            "retried": 0,
            "dead_lettered": 0,
            "invalidated": 0,
        }

    def enqueue(
        self,
        item_type: WorkItemType,
        symbol: Optional[str],
        idempotency_key: str,
        payload: Dict[str, Any],
        max_attempts: int = 3,
    ) -> WorkItem:
        item, created = repository.insert_work_item(
            self.db, item_type, symbol, idempotency_key, payload, max_attempts, self.clock.now()
        )
        if created:
            self.metrics["enqueued"] += 1
            logger.info(
                "Work item enqueued",
                work_item_id=item.id,
                type=item_type.value,
                symbol=symbol,
                idempotency_key=idempotency_key,
            )
        else:
            self.metrics["deduplicated"] += 1
            logger.info(
                "Work item deduplicated",
                work_item_id=item.id,
                status=item.status.value,
                symbol=symbol,
                idempotency_key=idempotency_key,
            )
        return item

    def get_by_id(self, item_id: str) -> Optional[WorkItem]:
        return repository.get_work_item(self.db, item_id)

    def invalidate(self, item_id: str, reason: str) -> None:
        item = repository.release_work_item_key(self.db, item_id, reason, self.clock.now())
        if item is None:
            logger.warning("Invalidate requested for unknown work item", work_item_id=item_id)
            return
        self.metrics["invalidated"] += 1
        logger.warning("Work item invalidated", work_item_id=item_id, symbol=item.symbol, reason=reason)

    def claim_next(self) -> Optional[WorkItem]:
        return repository.claim_next_work_item(self.db, self.clock.now())

    def mark_succeeded(self, item_id: str, result: Dict[str, Any]) -> Optional[WorkItem]:
        item = repository.update_work_item(
            self.db,
            item_id,
            self.clock.now(),
            status=WorkItemStatus.SUCCEEDED,
            result=result,
            broker_order_id=result.get("order_id"),
            last_error=None,
        )
        self.metrics["succeeded"] += 1
        return item

    def mark_failed(self, item_id: str, error: str, retryable: bool = True) -> Optional[WorkItem]:
        """Reschedule with backoff, or dead-letter when permanent or out of attempts."""
        item = self.get_by_id(item_id)
        if item is None:
            return None

        if not retryable or item.attempts >= item.max_attempts:
            return self.mark_dead_letter(item_id, error)

        delay_ms = self.retry_delay_ms(item.type, item.attempts)
        next_run = self.clock.now() + timedelta(milliseconds=delay_ms)
        self.metrics["retried"] += 1
        logger.warning(
            "Work item failed, retry scheduled",
            work_item_id=item_id,
            symbol=item.symbol,
            attempt=item.attempts,
            max_attempts=item.max_attempts,
            delay_ms=delay_ms,
            error=error,
        )
        return repository.update_work_item(
            self.db,
            item_id,
            self.clock.now(),
            status=WorkItemStatus.PENDING,
            last_error=error,
            next_run_at=next_run,
        )

    def mark_dead_letter(self, item_id: str, error: str) -> Optional[WorkItem]:
        item = repository.update_work_item(
            self.db, item_id, self.clock.now(), status=WorkItemStatus.DEAD_LETTER, last_error=error
        )
        if item is not None:
            self.metrics["dead_lettered"] += 1
            logger.error(
                "Work item dead-lettered",
                work_item_id=item_id,
                symbol=item.symbol,
                attempts=item.attempts,
                error=error,
            )
        return item

    def retry_dead_letter(self, item_id: str) -> Optional[WorkItem]:
        """Operator action: put a dead-lettered item back in the queue with fresh attempts."""
        item = self.get_by_id(item_id)
        if item is None or item.status != WorkItemStatus.DEAD_LETTER:
            return None
        logger.info("Dead-letter item requeued", work_item_id=item_id, symbol=item.symbol)
        return repository.update_work_item(
            self.db,
            item_id,
            self.clock.now(),
            status=WorkItemStatus.PENDING,
            attempts=0,
            next_run_at=self.clock.now(),
        )

    def retry_delay_ms(self, item_type: WorkItemType, attempt: int) -> int:
        delays = self.retry_delays_ms.get(item_type) or [1000]
        base = delays[min(max(attempt, 1), len(delays)) - 1]
        jitter = base * self.jitter_fraction * self._rng()
        return int(base + jitter)

    def counts_by_status(self) -> Dict[str, int]:
        return repository.count_work_items_by_status(self.db)

    def dead_letters(self, limit: int = 100) -> List[WorkItem]:
        return repository.list_work_items(self.db, WorkItemStatus.DEAD_LETTER, limit)
