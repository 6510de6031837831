"""
Pytest configuration and shared fixtures.

Everything runs against an in-memory SQLite database, the paper broker and a
virtual clock, so queue polling, retry backoff and fill waits complete
without real sleeps.
"""
from decimal import Decimal

import pytest

from tradeguard.config.config import ExitRulesConfig, RiskConfig
from tradeguard.execution.order_coordinator import OrderSubmissionCoordinator
from tradeguard.execution.order_monitor import OrderMonitor
from tradeguard.execution.position_manager import PositionManager
from tradeguard.execution.queue_worker import WorkQueueWorker
from tradeguard.execution.trade_recorder import TradeRecorder
from tradeguard.execution.work_queue import SqlWorkQueue
from tradeguard.paper.paper_broker import PaperBroker
from tradeguard.risk.exit_rules import AdvancedRuleEvaluator
from tradeguard.risk.pre_trade_guard import PreTradeGuard
from tradeguard.risk.risk_validator import RiskValidator
from tradeguard.storage.db import Database
from tradeguard.utils.clock import VirtualClock


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def clock():
    # Monday 2026-01-05 10:00 America/New_York, regular session
    return VirtualClock()


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def broker(clock):
    paper = PaperBroker(clock=clock)
    paper.set_price("AAPL", Decimal("150.00"))
    return paper


@pytest.fixture
def queue(db, clock):
    return SqlWorkQueue(db, clock=clock, rng=lambda: 0.0)


@pytest.fixture
def worker(queue, broker, clock):
    return WorkQueueWorker(queue, broker, clock=clock)


@pytest.fixture
def coordinator(queue, broker, clock, worker):
    return OrderSubmissionCoordinator(queue, broker, clock=clock, worker=worker)


@pytest.fixture
def monitor(broker, clock):
    return OrderMonitor(broker, clock=clock, poll_interval_seconds=0.5, fill_timeout_seconds=5.0)


@pytest.fixture
def rules(clock):
    return AdvancedRuleEvaluator(ExitRulesConfig(), clock=clock)


@pytest.fixture
def recorder(db):
    return TradeRecorder(db)


@pytest.fixture
def make_position_manager(broker, coordinator, monitor, rules, recorder, clock):
    """Factory so tests can override the operator id or risk config."""

    def _make(operator_id="op-1", config=None, **kwargs):
        config = config or RiskConfig()
        return PositionManager(
            broker,
            coordinator,
            monitor,
            RiskValidator(broker, config),
            PreTradeGuard(broker, clock=clock),
            rules,
            recorder,
            operator_id=operator_id,
            config=config,
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def position_manager(make_position_manager):
    return make_position_manager()
