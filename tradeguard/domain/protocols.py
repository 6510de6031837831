"""
Domain protocols (interfaces) for dependency inversion.

These protocols define the contracts the engine consumes, so execution and
risk code depend on abstractions rather than a concrete broker, queue store
or strategy layer. Production implementations live in tradeguard.data,
tradeguard.execution and tradeguard.risk; tests use tradeguard.paper and
in-memory SQLite.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from tradeguard.domain.models import (
    Account,
    BrokerOrder,
    BrokerPosition,
    HoldingPeriodCheck,
    Position,
    PriceSnapshot,
    TakeProfitSignal,
    TradeRecord,
    TrailingStopUpdate,
    WorkItem,
    WorkItemType,
)


@runtime_checkable
class Clock(Protocol):
    """Time source and wait primitive (see tradeguard.utils.clock)."""

    def now(self) -> datetime: ...

    def now_ms(self) -> int: ...

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


@runtime_checkable
class BrokerClient(Protocol):
    """
    Brokerage API. All calls are assumed unreliable.

    get_order raises OrderNotFoundError for unknown ids; other failures raise
    BrokerAPIError carrying the broker's message.
    """

    async def submit_order(self, params: Dict[str, Any]) -> BrokerOrder: ...

    async def get_order(self, order_id: str) -> BrokerOrder: ...

    async def cancel_order(self, order_id: str) -> None: ...

    async def list_open_orders(self, symbol: Optional[str] = None) -> List[BrokerOrder]: ...

    async def get_positions(self) -> List[BrokerPosition]: ...

    async def get_position(self, symbol: str) -> Optional[BrokerPosition]: ...

    async def close_position(self, symbol: str) -> BrokerOrder: ...

    async def get_account(self) -> Account: ...

    async def get_price_snapshot(self, symbol: str) -> PriceSnapshot: ...

    async def is_tradable(self, symbol: str) -> bool: ...


@runtime_checkable
class WorkQueue(Protocol):
    """At-least-once, key-deduplicated persisted job queue."""

    def enqueue(
        self,
        item_type: WorkItemType,
        symbol: Optional[str],
        idempotency_key: str,
        payload: Dict[str, Any],
        max_attempts: int = 3,
    ) -> WorkItem: ...

    def get_by_id(self, item_id: str) -> Optional[WorkItem]: ...

    def invalidate(self, item_id: str, reason: str) -> None: ...


@runtime_checkable
class RuleEvaluator(Protocol):
    """Advanced exit rules: tiered take-profit, trailing stop, holding period."""

    def register_position(self, symbol: str, entry_price: Decimal, opened_at: Optional[datetime] = None) -> None: ...

    def check_partial_take_profits(self, position: Position) -> Optional[TakeProfitSignal]: ...

    def update_trailing_stop(self, position: Position) -> Optional[TrailingStopUpdate]: ...

    def check_holding_period(self, position: Position) -> Optional[HoldingPeriodCheck]: ...

    def remove_rules(self, symbol: str) -> None: ...


@runtime_checkable
class SectorExposureChecker(Protocol):
    """Returns (allowed, reason) for adding ``position_value`` of ``symbol``."""

    async def check(self, symbol: str, position_value: Decimal) -> Tuple[bool, str]: ...


@runtime_checkable
class TradeStore(Protocol):
    """Persists filled trades; returns the stored trade id."""

    def record_trade(self, trade: TradeRecord) -> str: ...


@runtime_checkable
class LearningRecorder(Protocol):
    """Feeds trade outcomes back to the decision layer."""

    def record_entry(self, decision_id: Optional[str], symbol: str, entry_price: Decimal, qty: Decimal) -> None: ...

    def record_exit(self, symbol: str, exit_price: Decimal, pnl: Decimal, reason: str) -> None: ...


class AllowAllSectors:
    """Sector checker that never blocks."""

    async def check(self, symbol: str, position_value: Decimal) -> Tuple[bool, str]:
        return True, "sector limits not configured"


class NoopLearningRecorder:
    """No-op learning recorder for use in tests or when no decision layer is attached."""

    def record_entry(self, decision_id: Optional[str], symbol: str, entry_price: Decimal, qty: Decimal) -> None:
        pass

    def record_exit(self, symbol: str, exit_price: Decimal, pnl: Decimal, reason: str) -> None:
        pass
