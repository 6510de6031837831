"""
Trade Recorder - persists one trade row per confirmed fill.

Called by the position manager after every open and close fill.

Design decisions:
- Idempotent by broker order id: recording the same fill twice returns the
  existing trade id and logs a warning.
- The operator id is mandatory. A trade without an owner is an invariant
  violation, raised before anything is written.
"""
from decimal import Decimal
from typing import Optional

from tradeguard.domain.models import TradeRecord
from tradeguard.exceptions import MissingOperatorIdentityError
from tradeguard.monitoring.logger import get_logger
from tradeguard.storage.db import Database
from tradeguard.storage.repository import list_trades, realized_pnl_total, save_trade

logger = get_logger(__name__)


class TradeRecorder:
    """TradeStore backed by the SQL trades table."""

    def __init__(self, db: Database):
        self.db = db

    def record_trade(self, trade: TradeRecord) -> str:
        if not trade.operator_id:
            raise MissingOperatorIdentityError(f"Cannot record {trade.symbol} trade: operator id not set")

        trade_id, created = save_trade(self.db, trade)
        if not created:
            logger.warning(
                "Trade already recorded for order",
                symbol=trade.symbol,
                order_id=trade.order_id,
                trade_id=trade_id,
            )
            return trade_id

        logger.info(
            "Trade recorded",
            trade_id=trade_id,
            symbol=trade.symbol,
            side=trade.side.value,
            qty=str(trade.qty),
            price=str(trade.price),
            pnl=str(trade.pnl) if trade.pnl is not None else None,
            order_id=trade.order_id,
        )
        return trade_id

    def trade_count(self, symbol: Optional[str] = None) -> int:
        return len(list_trades(self.db, symbol))

    def realized_pnl(self, symbol: Optional[str] = None) -> Decimal:
        return realized_pnl_total(self.db, symbol)
