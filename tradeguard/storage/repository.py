"""
ORM models and persistence functions for work items and trades.

All functions take an explicit Database so tests can run against an
in-memory SQLite instance.
"""
import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.exc import IntegrityError

from tradeguard.domain.models import (
    OrderSide,
    TradeRecord,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)
from tradeguard.monitoring.logger import get_logger
from tradeguard.storage.db import Base, Database

logger = get_logger(__name__)


class WorkItemModel(Base):
    """Persisted queue job."""
    __tablename__ = "work_items"

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    original_key = Column(String, nullable=True)
    payload = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    result = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)
    broker_order_id = Column(String, nullable=True)
    next_run_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class TradeModel(Base):
    """Filled trade."""
    __tablename__ = "trades"

    trade_id = Column(String, primary_key=True)
    order_id = Column(String, nullable=True, unique=True)
    symbol = Column(String, nullable=False, index=True)
    side = Column(String, nullable=False)
    qty = Column(Numeric(precision=20, scale=8), nullable=False)
    price = Column(Numeric(precision=20, scale=8), nullable=False)
    pnl = Column(Numeric(precision=20, scale=2), nullable=True)
    strategy_id = Column(String, nullable=True)
    decision_id = Column(String, nullable=True)
    operator_id = Column(String, nullable=False)
    notes = Column(Text, nullable=False, default="")
    executed_at = Column(DateTime, nullable=False)


def _naive_utc(dt: datetime) -> datetime:
    """Store UTC as naive datetimes (SQLite drops tzinfo anyway)."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _to_work_item(row: WorkItemModel) -> WorkItem:
    return WorkItem(
        id=row.id,
        type=WorkItemType(row.type),
        status=WorkItemStatus(row.status),
        symbol=row.symbol,
        idempotency_key=row.original_key or row.idempotency_key,
        payload=json.loads(row.payload),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        result=json.loads(row.result) if row.result else None,
        last_error=row.last_error,
        broker_order_id=row.broker_order_id,
        next_run_at=_aware(row.next_run_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


# ========== WORK ITEMS ==========

def insert_work_item(
    db: Database,
    item_type: WorkItemType,
    symbol: Optional[str],
    idempotency_key: str,
    payload: Dict[str, Any],
    max_attempts: int,
    now: datetime,
) -> tuple[WorkItem, bool]:
    """
    Insert a PENDING item unless the key already exists.

    Returns (item, created). A concurrent insert of the same key loses the
    unique-constraint race and gets the winner's row back.
    """
    existing = find_work_item_by_key(db, idempotency_key)
    if existing is not None:
        return existing, False

    ts = _naive_utc(now)
    row = WorkItemModel(
        id=uuid.uuid4().hex,
        type=item_type.value,
        status=WorkItemStatus.PENDING.value,
        symbol=symbol,
        idempotency_key=idempotency_key,
        payload=json.dumps(payload, sort_keys=True),
        attempts=0,
        max_attempts=max_attempts,
        next_run_at=ts,
        created_at=ts,
        updated_at=ts,
    )
    try:
        with db.get_session() as session:
            session.add(row)
    except IntegrityError:
        winner = find_work_item_by_key(db, idempotency_key)
        if winner is None:
            raise
        return winner, False
    return _to_work_item(row), True


def find_work_item_by_key(db: Database, idempotency_key: str) -> Optional[WorkItem]:
    with db.get_session() as session:
        row = session.query(WorkItemModel).filter(WorkItemModel.idempotency_key == idempotency_key).first()
        return _to_work_item(row) if row else None


def get_work_item(db: Database, item_id: str) -> Optional[WorkItem]:
    with db.get_session() as session:
        row = session.get(WorkItemModel, item_id)
        return _to_work_item(row) if row else None


def claim_next_work_item(db: Database, now: datetime) -> Optional[WorkItem]:
    """Move the oldest due PENDING item to IN_PROGRESS and count the attempt."""
    ts = _naive_utc(now)
    with db.get_session() as session:
        row = (
            session.query(WorkItemModel)
            .filter(
                WorkItemModel.status == WorkItemStatus.PENDING.value,
                WorkItemModel.next_run_at <= ts,
            )
            .order_by(WorkItemModel.next_run_at, WorkItemModel.created_at)
            .with_for_update(skip_locked=True)
            .first()
        )
        if row is None:
            return None
        row.status = WorkItemStatus.IN_PROGRESS.value
        row.attempts += 1
        row.updated_at = ts
        session.flush()
        return _to_work_item(row)


def update_work_item(db: Database, item_id: str, now: datetime, **fields: Any) -> Optional[WorkItem]:
    """
    Apply field updates to a work item.

    ``status`` accepts a WorkItemStatus, ``result`` a dict, ``next_run_at`` a
    datetime.
    """
    with db.get_session() as session:
        row = session.get(WorkItemModel, item_id)
        if row is None:
            return None
        for name, value in fields.items():
            if name == "status":
                value = WorkItemStatus(value).value
            elif name == "result":
                value = json.dumps(value, sort_keys=True) if value is not None else None
            elif name == "next_run_at":
                value = _naive_utc(value)
            setattr(row, name, value)
        row.updated_at = _naive_utc(now)
        session.flush()
        return _to_work_item(row)


def release_work_item_key(db: Database, item_id: str, reason: str, now: datetime) -> Optional[WorkItem]:
    """
    Cancel an item and free its idempotency key.

    The original key is kept in ``original_key`` for audit; the unique column
    gets a tombstone so the next enqueue with the same key creates a new item.
    """
    with db.get_session() as session:
        row = session.get(WorkItemModel, item_id)
        if row is None:
            return None
        if row.original_key is None:
            row.original_key = row.idempotency_key
            row.idempotency_key = f"{row.idempotency_key}:invalidated:{row.id}"
        row.status = WorkItemStatus.CANCELLED.value
        row.last_error = reason
        row.updated_at = _naive_utc(now)
        session.flush()
        return _to_work_item(row)


def count_work_items_by_status(db: Database) -> Dict[str, int]:
    with db.get_session() as session:
        rows = session.query(WorkItemModel.status, func.count(WorkItemModel.id)).group_by(WorkItemModel.status).all()
        return {status: count for status, count in rows}


def list_work_items(db: Database, status: Optional[WorkItemStatus] = None, limit: int = 100) -> List[WorkItem]:
    with db.get_session() as session:
        query = session.query(WorkItemModel)
        if status is not None:
            query = query.filter(WorkItemModel.status == status.value)
        rows = query.order_by(WorkItemModel.created_at.desc()).limit(limit).all()
        return [_to_work_item(r) for r in rows]


# ========== TRADES ==========

def save_trade(db: Database, trade: TradeRecord) -> tuple[str, bool]:
    """
    Persist a trade, idempotent by broker order id.

    Returns (trade_id, created).
    """
    if trade.order_id:
        existing = get_trade_by_order_id(db, trade.order_id)
        if existing is not None:
            return existing.trade_id, False

    trade_id = uuid.uuid4().hex
    row = TradeModel(
        trade_id=trade_id,
        order_id=trade.order_id,
        symbol=trade.symbol,
        side=OrderSide(trade.side).value,
        qty=trade.qty,
        price=trade.price,
        pnl=trade.pnl,
        strategy_id=trade.strategy_id,
        decision_id=trade.decision_id,
        operator_id=trade.operator_id,
        notes=trade.notes,
        executed_at=_naive_utc(trade.executed_at),
    )
    with db.get_session() as session:
        session.add(row)
    return trade_id, True


def get_trade_by_order_id(db: Database, order_id: str) -> Optional[TradeModel]:
    with db.get_session() as session:
        return session.query(TradeModel).filter(TradeModel.order_id == order_id).first()


def list_trades(db: Database, symbol: Optional[str] = None) -> List[TradeModel]:
    with db.get_session() as session:
        query = session.query(TradeModel)
        if symbol:
            query = query.filter(TradeModel.symbol == symbol)
        return query.order_by(TradeModel.executed_at).all()


def realized_pnl_total(db: Database, symbol: Optional[str] = None) -> Decimal:
    with db.get_session() as session:
        query = session.query(func.coalesce(func.sum(TradeModel.pnl), 0))
        if symbol:
            query = query.filter(TradeModel.symbol == symbol)
        return Decimal(str(query.scalar()))
