"""
Tests for graduated take-profit, trailing stop and holding period rules.
"""
from decimal import Decimal

import pytest

from tradeguard.config.config import ExitRulesConfig
from tradeguard.domain.models import Position
from tradeguard.risk.exit_rules import AdvancedRuleEvaluator


def _position(clock, current="100", entry="100", stop=None):
    return Position(
        symbol="AAPL",
        qty=Decimal("10"),
        entry_price=Decimal(entry),
        current_price=Decimal(current),
        stop_loss_price=Decimal(stop) if stop else None,
        opened_at=clock.now(),
    )


@pytest.fixture
def evaluator(clock):
    ev = AdvancedRuleEvaluator(ExitRulesConfig(), clock=clock)
    ev.register_position("AAPL", Decimal("100"), clock.now())
    return ev


class TestTakeProfitTiers:
    def test_tier_fires_once(self, evaluator, clock):
        position = _position(clock, current="111")
        signal = evaluator.check_partial_take_profits(position)
        assert signal.should_close
        assert signal.close_percent == Decimal("25")
        assert signal.reason == "Partial take-profit at 10% gain"

        assert evaluator.check_partial_take_profits(position) is None

    def test_tiers_fire_in_order(self, evaluator, clock):
        position = _position(clock, current="125")
        first = evaluator.check_partial_take_profits(position)
        second = evaluator.check_partial_take_profits(position)
        assert first.reason == "Partial take-profit at 10% gain"
        assert second.reason == "Partial take-profit at 20% gain"
        assert evaluator.get_state_info()["AAPL"]["tiers_executed"] == ["10", "20"]

    def test_below_first_tier(self, evaluator, clock):
        assert evaluator.check_partial_take_profits(_position(clock, current="105")) is None

    def test_unregistered_symbol(self, evaluator, clock):
        evaluator.remove_rules("AAPL")
        assert evaluator.check_partial_take_profits(_position(clock, current="150")) is None


class TestTrailingStop:
    def test_inactive_below_activation(self, evaluator, clock):
        assert evaluator.update_trailing_stop(_position(clock, current="104")) is None

    def test_initial_trail_below_break_even_trigger(self, evaluator, clock):
        update = evaluator.update_trailing_stop(_position(clock, current="106"))
        assert update.new_stop_loss == Decimal("100.70")
        assert update.reason.startswith("Initial trailing stop")

    def test_break_even_floor_above_trigger(self, evaluator, clock):
        update = evaluator.update_trailing_stop(_position(clock, current="108"))
        # trail 102.60 beats break-even 100.50
        assert update.new_stop_loss == Decimal("102.60")
        assert update.reason == "Moved stop to breakeven + 0.5%"

    def test_stop_only_ratchets_up(self, evaluator, clock):
        evaluator.update_trailing_stop(_position(clock, current="120"))
        position = _position(clock, current="110", stop="114")
        assert evaluator.update_trailing_stop(position) is None
        assert evaluator.get_rules("AAPL").high_water_mark == Decimal("120")

    def test_disabled(self, clock):
        ev = AdvancedRuleEvaluator(ExitRulesConfig(trailing_enabled=False), clock=clock)
        ev.register_position("AAPL", Decimal("100"))
        assert ev.update_trailing_stop(_position(clock, current="130")) is None


class TestHoldingPeriod:
    def test_not_exceeded(self, evaluator, clock):
        check = evaluator.check_holding_period(_position(clock))
        assert not check.exceeded
        assert check.max_hours == 168.0

    def test_exceeded(self, evaluator, clock):
        position = _position(clock)
        clock.advance(169 * 3600)
        check = evaluator.check_holding_period(position)
        assert check.exceeded
        assert check.holding_hours == pytest.approx(169.0)

    def test_position_override(self, evaluator, clock):
        position = _position(clock)
        position.max_holding_hours = 2.0
        clock.advance(3 * 3600)
        assert evaluator.check_holding_period(position).exceeded
