"""
Custom exception hierarchy for the execution engine.

Hierarchy:

    TradeGuardError (base)
    ├── OperationalError          : transient/retryable (broker, network, timeouts)
    │   ├── BrokerAPIError        : broker returned an error response
    │   │   └── RateLimitError
    │   ├── OrderNotFoundError    : broker has no record of the order
    │   ├── SubmissionTimeoutError: queue poll deadline passed, outcome unknown
    │   └── StaleDuplicateOrderError: cached order is dead at the broker
    ├── DataError                 : bad input or permanent rejection for this call
    │   ├── ValidationError
    │   └── OrderSubmissionError  : work item dead-lettered
    └── InvariantError            : safety violation, fatal to the call
        └── MissingOperatorIdentityError

Rules:
    - OperationalError: catch, log, retry or reconcile later
    - DataError: catch, log, return a structured result
    - InvariantError: never swallowed; propagates to the caller
"""
from typing import Optional


class TradeGuardError(Exception):
    """Base exception for all engine errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradeGuardError):
    """Transient/retryable error: broker API, network, timeouts.

    Treatment: catch, log, retry with backoff or leave to reconciliation.
    """
    retryable = True


class BrokerAPIError(OperationalError):
    """Broker returned an error response.

    The message carries the broker's own text so rejection diagnosis can
    pattern-match it.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(BrokerAPIError):
    """Raised when the broker rate limit is exceeded."""
    pass


class OrderNotFoundError(OperationalError):
    """Broker has no record of the requested order."""

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class SubmissionTimeoutError(OperationalError):
    """Queued order did not reach a terminal state before the poll deadline.

    Treatment: reconcile against the broker, do NOT assume the order failed.
    """

    def __init__(self, work_item_id: str, timeout_seconds: float):
        super().__init__(
            f"Order submission timed out after {timeout_seconds:g}s (work item {work_item_id}); "
            "reconcile with broker before resubmitting"
        )
        self.work_item_id = work_item_id
        self.timeout_seconds = timeout_seconds


class StaleDuplicateOrderError(OperationalError):
    """Cached duplicate points at an order the broker has since killed.

    Treatment: resubmit; the work item has been invalidated so the same
    idempotency key now produces a fresh order.
    """

    def __init__(self, order_id: str, broker_status: str, work_item_id: str):
        super().__init__(
            f"Cached order {order_id} is {broker_status} at broker; "
            f"work item {work_item_id} invalidated, resubmit required"
        )
        self.order_id = order_id
        self.broker_status = broker_status
        self.work_item_id = work_item_id


# ============ DATA (bad input, permanent for this call) ============

class DataError(TradeGuardError):
    """Bad input or permanent rejection.

    Treatment: catch, log, return a structured result.
    """
    retryable = False


class ValidationError(DataError):
    """Raised when validation checks fail (bad input data)."""
    pass


class OrderSubmissionError(DataError):
    """Queued order exhausted its attempts and was dead-lettered."""

    def __init__(self, work_item_id: str, last_error: Optional[str]):
        super().__init__(f"Order submission failed: {last_error or 'unknown error'}")
        self.work_item_id = work_item_id
        self.last_error = last_error


# ============ INVARIANT (safety violation) ============

class InvariantError(TradeGuardError):
    """Safety invariant violation.

    Treatment: fatal to the current call. Never caught and silently continued.
    """
    retryable = False


class MissingOperatorIdentityError(InvariantError):
    """A trade cannot be persisted without the owning operator id."""
    pass
