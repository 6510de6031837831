"""
Tests for pre-trade risk limits and loss protection.
"""
from decimal import Decimal

import pytest

from tradeguard.config.config import RiskConfig
from tradeguard.domain.models import OrderSide
from tradeguard.exceptions import BrokerAPIError
from tradeguard.risk.risk_validator import RiskValidator, calculate_loss_percentage
from tradeguard.utils.kill_switch import KillSwitch, KillSwitchReason


class TestRiskLimits:
    @pytest.mark.asyncio
    async def test_buy_within_limits(self, broker):
        validator = RiskValidator(broker, RiskConfig())
        result = await validator.check_risk_limits(OrderSide.BUY, "AAPL", Decimal("5000"))
        assert result.allowed

    @pytest.mark.asyncio
    async def test_kill_switch_blocks_everything(self, broker):
        kill_switch = KillSwitch()
        kill_switch.activate_sync(KillSwitchReason.MANUAL, "test")
        validator = RiskValidator(broker, RiskConfig(), kill_switch=kill_switch)

        for side in (OrderSide.BUY, OrderSide.SELL):
            result = await validator.check_risk_limits(side, "AAPL", Decimal("100"))
            assert not result.allowed
            assert result.reason == "Kill switch is active - trading halted"

    @pytest.mark.asyncio
    async def test_kill_switch_flag_argument(self, broker):
        validator = RiskValidator(broker, RiskConfig())
        result = await validator.check_risk_limits(OrderSide.BUY, "AAPL", Decimal("100"), kill_switch_active=True)
        assert not result.allowed

    @pytest.mark.asyncio
    async def test_max_positions(self, broker):
        broker.set_position("MSFT", Decimal("5"), Decimal("400"))
        validator = RiskValidator(broker, RiskConfig(max_positions_count=1))
        result = await validator.check_risk_limits(OrderSide.BUY, "AAPL", Decimal("100"))
        assert result.reason == "Maximum positions limit reached (1)"

    @pytest.mark.asyncio
    async def test_missing_price_blocks(self, broker):
        validator = RiskValidator(broker, RiskConfig())
        result = await validator.check_risk_limits(OrderSide.BUY, "ZZZZ", Decimal("100"))
        assert result.reason == "Cannot verify trade value - no valid price data for ZZZZ"

    @pytest.mark.asyncio
    async def test_trade_larger_than_position_limit(self, broker):
        validator = RiskValidator(broker, RiskConfig())
        result = await validator.check_risk_limits(OrderSide.BUY, "AAPL", Decimal("15000"))
        assert not result.allowed
        assert result.reason == "Trade exceeds max position size (10% = $10000.00)"

    @pytest.mark.asyncio
    async def test_values_above_ceiling_are_share_counts(self, broker):
        validator = RiskValidator(broker, RiskConfig(notional_value_ceiling=Decimal("1000")))
        result = await validator.check_risk_limits(OrderSide.BUY, "AAPL", Decimal("2000"))
        assert not result.allowed

    @pytest.mark.asyncio
    async def test_sells_skip_limits(self, broker):
        validator = RiskValidator(broker, RiskConfig(max_positions_count=1))
        broker.set_position("MSFT", Decimal("5"), Decimal("400"))
        result = await validator.check_risk_limits(OrderSide.SELL, "MSFT", Decimal("2000"))
        assert result.allowed

    @pytest.mark.asyncio
    async def test_broker_error_blocks(self, broker):
        broker.fail_next("get_positions", BrokerAPIError("timeout"))
        validator = RiskValidator(broker, RiskConfig())
        result = await validator.check_risk_limits(OrderSide.BUY, "AAPL", Decimal("100"))
        assert result.reason == "Could not verify risk limits"


class TestLossProtection:
    def test_loss_percentage(self):
        assert calculate_loss_percentage(Decimal("160"), Decimal("150")) == Decimal("6.25")
        assert calculate_loss_percentage(Decimal("150"), Decimal("160")) == Decimal("0")
        assert calculate_loss_percentage(Decimal("0"), Decimal("150")) is None

    def test_losing_sell_held_without_authorization(self, broker):
        result = RiskValidator(broker).check_loss_protection(OrderSide.SELL, Decimal("160"), Decimal("150"))
        assert not result.allowed
        assert result.reason == "Position at 6.25% loss - holding until stop-loss triggers or price recovers"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"is_stop_loss_triggered": True},
            {"is_emergency_stop": True},
            {"notes": "Emergency exit requested"},
            {"notes": "stop-loss hit"},
        ],
    )
    def test_authorized_losing_sell(self, broker, kwargs):
        result = RiskValidator(broker).check_loss_protection(OrderSide.SELL, Decimal("160"), Decimal("150"), **kwargs)
        assert result.allowed

    def test_profitable_sell_and_buys_pass(self, broker):
        validator = RiskValidator(broker)
        assert validator.check_loss_protection(OrderSide.SELL, Decimal("150"), Decimal("160")).allowed
        assert validator.check_loss_protection(OrderSide.BUY, Decimal("160"), Decimal("150")).allowed

    @pytest.mark.asyncio
    async def test_sell_check_reads_broker_position(self, broker):
        broker.set_position("AAPL", Decimal("10"), Decimal("160"), current_price=Decimal("150"))
        validator = RiskValidator(broker)

        assert not (await validator.check_sell_loss_protection("AAPL")).allowed
        assert (await validator.check_sell_loss_protection("AAPL", is_stop_loss_triggered=True)).allowed
        assert (await validator.check_sell_loss_protection("MSFT")).allowed

    @pytest.mark.asyncio
    async def test_sell_check_allows_when_position_unavailable(self, broker):
        broker.fail_next("get_position", BrokerAPIError("timeout"))
        assert (await RiskValidator(broker).check_sell_loss_protection("AAPL")).allowed
