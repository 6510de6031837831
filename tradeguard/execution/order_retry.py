"""
Rejection Diagnostic & Retry Engine.

Turns broker rejections and cancellations into corrected resubmissions:

    rejection ─► reason text ─► retry cap? ─► breaker open? ─► handler match
              ─► fix(order, reason, env) ─► backoff ─► fresh client_order_id
              ─► submit directly to broker (bypasses the idempotent queue)

A failed resubmission counts against the shared circuit breaker and, while
attempts remain, recurses with the broker's new error text so a different
handler can take over. Retry history and breaker state are owned objects
injected at construction; nothing here is module-global.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from tradeguard.domain.models import BrokerOrder
from tradeguard.domain.protocols import BrokerClient
from tradeguard.exceptions import InvariantError, TradeGuardError
from tradeguard.execution.rejection_handlers import (
    FixEnvironment,
    FixedOrder,
    RejectionHandler,
    default_handlers,
    extract_rejection_reason,
    find_handler,
)
from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.circuit_breaker import RetryCircuitBreaker
from tradeguard.utils.clock import SystemClock

logger = get_logger(__name__)

RETRYABLE_UPDATE_STATUSES = frozenset({"rejected", "canceled"})


class RetryStatus(str, Enum):
    RETRIED_SUCCESSFULLY = "retried_successfully"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    PERMANENT_FAILURE = "permanent_failure"
    NO_FIX_AVAILABLE = "no_fix_available"


@dataclass
class RetryAttempt:
    attempt_number: int
    timestamp: datetime
    reason: str
    fix: str
    success: bool
    error: Optional[str] = None
    new_order_id: Optional[str] = None


@dataclass
class RetryResult:
    success: bool
    original_order_id: str
    final_status: RetryStatus
    attempts: List[RetryAttempt]
    new_order_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RetryHistory:
    """Per-order attempt log."""
    attempts_by_order: Dict[str, List[RetryAttempt]] = field(default_factory=dict)

    def for_order(self, order_id: str) -> List[RetryAttempt]:
        return self.attempts_by_order.setdefault(order_id, [])

    def clear(self, order_id: Optional[str] = None) -> None:
        if order_id is None:
            self.attempts_by_order.clear()
        else:
            self.attempts_by_order.pop(order_id, None)


class OrderRetryEngine:
    """Diagnoses failed orders and resubmits corrected ones."""

    def __init__(
        self,
        broker: BrokerClient,
        environment: FixEnvironment,
        breaker: RetryCircuitBreaker,
        clock=None,
        handlers: Optional[List[RejectionHandler]] = None,
        history: Optional[RetryHistory] = None,
        max_retries: int = 3,
        backoff_base_ms: int = 2000,
    ):
        self.broker = broker
        self.environment = environment
        self.breaker = breaker
        self.clock = clock or SystemClock()
        self.handlers = handlers if handlers is not None else default_handlers()
        self.history = history or RetryHistory()
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self._background: Set[asyncio.Task] = set()
        logger.info("Order retry engine initialized", handlers=len(self.handlers), max_retries=max_retries)

    def backoff_ms(self, attempt_number: int) -> int:
        return self.backoff_base_ms * 2 ** (attempt_number - 1)

    async def on_rejection(self, order: BrokerOrder, reason: Optional[str] = None) -> RetryResult:
        """
        Diagnose a rejected/canceled order and attempt a corrected resubmission.

        Args:
            order: The failed order as reported by the broker
            reason: Explicit rejection text, if the broker gave one

        Returns:
            RetryResult; never raises for broker or fix failures
        """
        order_id = order.id
        rejection_reason = reason or extract_rejection_reason(order)
        attempts = self.history.for_order(order_id)

        logger.warning(
            "Order failed at broker",
            order_id=order_id,
            symbol=order.symbol,
            status=order.status,
            reason=rejection_reason,
            order_type=order.order_type,
            time_in_force=order.time_in_force,
        )

        if len(attempts) >= self.max_retries:
            logger.error("Max retries exceeded", order_id=order_id, symbol=order.symbol, max_retries=self.max_retries)
            return RetryResult(
                success=False,
                original_order_id=order_id,
                final_status=RetryStatus.MAX_RETRIES_EXCEEDED,
                attempts=attempts,
                error=f"Exceeded maximum retry attempts ({self.max_retries})",
            )

        if await self.breaker.is_open():
            logger.error("Retry circuit breaker is OPEN, rejecting retry", order_id=order_id, symbol=order.symbol)
            return RetryResult(
                success=False,
                original_order_id=order_id,
                final_status=RetryStatus.PERMANENT_FAILURE,
                attempts=attempts,
                error="Circuit breaker is open - too many failures recently",
            )

        handler = find_handler(self.handlers, rejection_reason)
        if handler is None:
            logger.warning("No handler for rejection reason", order_id=order_id, symbol=order.symbol, reason=rejection_reason)
            return RetryResult(
                success=False,
                original_order_id=order_id,
                final_status=RetryStatus.NO_FIX_AVAILABLE,
                attempts=attempts,
                error=f"No automated fix available for: {rejection_reason}",
            )

        logger.info(
            "Rejection handler matched",
            order_id=order_id,
            symbol=order.symbol,
            handler=handler.description,
            category=handler.category.value,
        )

        try:
            fixed = await handler.fix(order, rejection_reason, self.environment)
        except InvariantError:
            raise
        except (TradeGuardError, ArithmeticError, ValueError) as e:
            logger.error("Fix function failed", order_id=order_id, symbol=order.symbol, error=str(e))
            await self.breaker.record_failure(str(e))
            attempts.append(
                RetryAttempt(
                    attempt_number=len(attempts) + 1,
                    timestamp=self.clock.now(),
                    reason=rejection_reason,
                    fix=handler.description,
                    success=False,
                    error=f"Fix function error: {e}",
                )
            )
            return RetryResult(
                success=False,
                original_order_id=order_id,
                final_status=RetryStatus.PERMANENT_FAILURE,
                attempts=attempts,
                error=str(e),
            )

        if fixed is None:
            logger.warning("Handler could not generate fix", order_id=order_id, symbol=order.symbol, handler=handler.description)
            return RetryResult(
                success=False,
                original_order_id=order_id,
                final_status=RetryStatus.NO_FIX_AVAILABLE,
                attempts=attempts,
                error=f"Handler could not generate fix: {handler.description}",
            )

        return await self._resubmit(order, rejection_reason, fixed, attempts)

    async def _resubmit(
        self,
        order: BrokerOrder,
        rejection_reason: str,
        fixed: FixedOrder,
        attempts: List[RetryAttempt],
    ) -> RetryResult:
        attempt_number = len(attempts) + 1
        backoff_ms = self.backoff_ms(attempt_number)
        logger.info(
            "Waiting before retry",
            order_id=order.id,
            symbol=order.symbol,
            backoff_ms=backoff_ms,
            attempt=attempt_number,
            max_retries=self.max_retries,
        )
        await self.clock.sleep(backoff_ms / 1000.0)

        fixed.intent.client_order_id = f"retry-{order.id}-{attempt_number}-{self.clock.now_ms()}"
        logger.info(
            "Retrying order with fix",
            order_id=order.id,
            symbol=order.symbol,
            fix=fixed.explanation,
            confidence=fixed.confidence.value,
            client_order_id=fixed.intent.client_order_id,
        )

        try:
            new_order = await self.broker.submit_order(fixed.intent.to_params())
        except InvariantError:
            raise
        except TradeGuardError as e:
            error_msg = str(e)
            logger.error("Retry failed", order_id=order.id, symbol=order.symbol, attempt=attempt_number, error=error_msg)
            await self.breaker.record_failure(error_msg)
            attempts.append(
                RetryAttempt(
                    attempt_number=attempt_number,
                    timestamp=self.clock.now(),
                    reason=rejection_reason,
                    fix=fixed.explanation,
                    success=False,
                    error=error_msg,
                )
            )
            if len(attempts) < self.max_retries:
                logger.info(
                    "Retry failed, will attempt again",
                    order_id=order.id,
                    attempts=len(attempts),
                    max_retries=self.max_retries,
                )
                return await self.on_rejection(order, error_msg)

            return RetryResult(
                success=False,
                original_order_id=order.id,
                final_status=RetryStatus.MAX_RETRIES_EXCEEDED,
                attempts=attempts,
                error=error_msg,
            )

        attempts.append(
            RetryAttempt(
                attempt_number=attempt_number,
                timestamp=self.clock.now(),
                reason=rejection_reason,
                fix=fixed.explanation,
                success=True,
                new_order_id=new_order.id,
            )
        )
        logger.info(
            "Retry successful",
            order_id=order.id,
            new_order_id=new_order.id,
            symbol=order.symbol,
            status=new_order.status,
            fix=fixed.explanation,
        )
        return RetryResult(
            success=True,
            original_order_id=order.id,
            final_status=RetryStatus.RETRIED_SUCCESSFULLY,
            attempts=attempts,
            new_order_id=new_order.id,
        )

    # ========== STREAM HOOK ==========

    def handle_trade_update(self, event: str, order: BrokerOrder, reason: Optional[str] = None) -> Optional[asyncio.Task]:
        """
        Route a trade-update stream event into the retry engine.

        Only rejected/canceled events are handled; the retry runs as a
        background task so the stream is never blocked.
        """
        if event not in RETRYABLE_UPDATE_STATUSES and order.status not in RETRYABLE_UPDATE_STATUSES:
            return None

        task = asyncio.create_task(self.on_rejection(order, reason))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Unhandled error in rejection handler", error=str(error), error_type=type(error).__name__)

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ========== REGISTRY & OBSERVABILITY ==========

    def register_handler(self, handler: RejectionHandler, first: bool = False) -> None:
        """Add a custom handler; appended (lowest priority) unless ``first``."""
        if first:
            self.handlers.insert(0, handler)
        else:
            self.handlers.append(handler)
        logger.info("Registered custom handler", description=handler.description, category=handler.category.value)

    def registered_handlers(self) -> List[Dict[str, Any]]:
        return [h.describe() for h in self.handlers]

    def test_rejection_reason(self, reason: str) -> Dict[str, Any]:
        handler = find_handler(self.handlers, reason)
        if handler is None:
            return {"matched": False}
        return {"matched": True, **handler.describe()}

    def get_retry_stats(self) -> Dict[str, Any]:
        total = successful = failed = 0
        for attempts in self.history.attempts_by_order.values():
            total += len(attempts)
            successful += sum(1 for a in attempts if a.success)
            failed += sum(1 for a in attempts if not a.success)
        return {
            "total_retries": total,
            "successful_retries": successful,
            "failed_retries": failed,
            "active_retries": len(self.history.attempts_by_order),
            "circuit_breaker": self.breaker.get_state_info(),
        }

    def clear_retry_history(self, order_id: Optional[str] = None) -> None:
        self.history.clear(order_id)

    async def reset_circuit_breaker(self) -> None:
        await self.breaker.reset(reason="manual")
