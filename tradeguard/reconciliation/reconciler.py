"""
Reconciliation engine for position state synchronization.

The broker is the source of truth.
- Unmanaged: broker has a position we don't track -> adopt it.
- Known: quantity, available quantity and price are synced from the broker.
- Zombie: we track a position the broker no longer holds -> drop it and its
  exit rules.

This is the backstop for timed-out submissions and fills, cancels that never
confirmed, and anything else left inconsistent by an unreliable broker.
"""
from dataclasses import dataclass, field
from typing import List

from tradeguard.domain.protocols import BrokerClient
from tradeguard.exceptions import DataError, InvariantError, OperationalError
from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.clock import SystemClock
from tradeguard.utils.money import ZERO

logger = get_logger(__name__)


@dataclass
class ReconciliationResult:
    synced: int = 0
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    quantity_updates: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped: bool = False


class PositionReconciler:
    """Syncs a PositionManager against broker positions."""

    def __init__(self, broker: BrokerClient, position_manager, clock=None, interval_seconds: float = 300.0):
        self.broker = broker
        self.position_manager = position_manager
        self.clock = clock or SystemClock()
        self.interval_seconds = interval_seconds
        self._reconciling = False
        self._running = False
        self.last_result: ReconciliationResult = ReconciliationResult()

    async def reconcile(self) -> ReconciliationResult:
        """Run one pass. A pass requested while another is running is skipped."""
        if self._reconciling:
            logger.info("RECONCILE_SKIPPED", reason="already running")
            return ReconciliationResult(skipped=True)

        self._reconciling = True
        result = ReconciliationResult()
        logger.info("RECONCILE_START")
        try:
            try:
                broker_positions = await self.broker.get_positions()
            except OperationalError as e:
                logger.error("Failed to fetch broker positions for reconciliation", error=str(e))
                result.errors.append(f"fetch positions: {e}")
                return result

            held = {p.symbol: p for p in broker_positions if p.qty != ZERO}
            tracked = dict(self.position_manager.positions)

            for symbol, broker_position in held.items():
                if broker_position.qty < ZERO:
                    # only long positions are managed
                    logger.error("RECONCILE_SHORT_POSITION", symbol=symbol, qty=str(broker_position.qty))
                    result.errors.append(f"{symbol}: short position not managed (qty {broker_position.qty})")
                    continue
                try:
                    existing = tracked.get(symbol)
                    if existing is None:
                        if await self.position_manager.adopt_position(broker_position) is not None:
                            result.added.append(symbol)
                            logger.info(
                                "RECONCILE_ADOPTED",
                                symbol=symbol,
                                qty=str(broker_position.qty),
                                entry_price=str(broker_position.avg_entry_price),
                            )
                            continue
                        existing = self.position_manager.get_position(symbol)

                    tracked_qty = existing.qty if existing is not None else ZERO
                    if await self.position_manager.sync_position(broker_position):
                        result.quantity_updates.append(symbol)
                        logger.warning(
                            "RECONCILE_QTY_UPDATED",
                            symbol=symbol,
                            tracked_qty=str(tracked_qty),
                            broker_qty=str(broker_position.qty),
                        )
                    result.synced += 1
                except InvariantError:
                    raise
                except DataError as e:
                    logger.warning("Reconcile sync failed", symbol=symbol, error=str(e))
                    result.errors.append(f"{symbol}: {e}")

            for symbol in tracked:
                if symbol in held:
                    continue
                await self.position_manager.remove_position(symbol)
                result.removed.append(symbol)
                logger.info("RECONCILE_ZOMBIE_CLEANED", symbol=symbol)

            logger.info(
                "RECONCILE_SUMMARY",
                on_broker=len(held),
                tracked=len(tracked),
                synced=result.synced,
                adopted=len(result.added),
                removed=len(result.removed),
                quantity_updates=len(result.quantity_updates),
                errors=len(result.errors),
            )
            return result
        finally:
            self.last_result = result
            self._reconciling = False

    async def run_periodic(self) -> None:
        """Reconcile every ``interval_seconds`` until stop()."""
        self._running = True
        logger.info("Position reconciler started", interval_seconds=self.interval_seconds)
        while self._running:
            try:
                await self.reconcile()
            except InvariantError as e:
                # fatal to this pass only, the next pass starts clean
                logger.error("RECONCILE_ABORTED", error=str(e), error_type=type(e).__name__)
            await self.clock.sleep(self.interval_seconds)
        logger.info("Position reconciler stopped")

    def stop(self) -> None:
        self._running = False
