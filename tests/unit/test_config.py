"""
Tests for configuration loading and validation.
"""
import os
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from tradeguard.config.config import BrokerConfig, Config, OrderQueueConfig, load_config
from tradeguard.config.dotenv_loader import load_dotenv_files

ENV_VARS = (
    "ENVIRONMENT",
    "DATABASE_URL",
    "ALPACA_API_KEY",
    "ALPACA_API_SECRET",
    "TRADEGUARD_OPERATOR_ID",
    "TG_DOTENV_PROBE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
    # load_dotenv writes os.environ directly
    os.environ.pop("TG_DOTENV_PROBE", None)


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


class TestFromYaml:
    def test_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ALPACA_API_KEY", "key-123")
        path = _write(
            tmp_path,
            "broker:\n  name: alpaca\n  api_key: ${ALPACA_API_KEY}\n  api_secret: ${ALPACA_API_SECRET}\n",
        )

        config = Config.from_yaml(path)

        assert config.broker.api_key == "key-123"
        assert config.broker.api_secret is None

    def test_environment_and_database_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "dev")
        monkeypatch.setenv("DATABASE_URL", "sqlite://")
        config = Config.from_yaml(_write(tmp_path, "environment: paper\n"))

        assert config.environment == "dev"
        assert config.data.database_url == "sqlite://"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "nope.yaml")

    def test_field_bounds_enforced(self, tmp_path):
        with pytest.raises(PydanticValidationError):
            Config.from_yaml(_write(tmp_path, "risk:\n  max_position_size_percent: '150'\n"))

    def test_tiers_must_ascend(self, tmp_path):
        with pytest.raises(PydanticValidationError):
            Config.from_yaml(_write(tmp_path, "exit_rules:\n  take_profit_tiers_pct: ['20', '10']\n"))


class TestValidateConfig:
    def test_alpaca_requires_credentials(self):
        config = Config(broker=BrokerConfig(name="alpaca"))
        with pytest.raises(ValueError, match="ALPACA_API_KEY"):
            config.validate_config()

    def test_prod_on_paper_endpoint(self):
        config = Config(environment="prod", broker=BrokerConfig(name="alpaca", api_key="k", api_secret="s"))
        with pytest.raises(ValueError, match="paper trading endpoint"):
            config.validate_config()

    def test_retry_delays_cover_attempts(self):
        config = Config(order_queue=OrderQueueConfig(max_attempts=5, submit_retry_delays_ms=[1000]))
        with pytest.raises(ValueError, match="submit_retry_delays_ms"):
            config.validate_config()


def test_load_packaged_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TRADEGUARD_OPERATOR_ID", "desk-7")

    config = load_config()

    assert config.environment == "paper"
    assert config.broker.name == "paper"
    assert config.operator_id == "desk-7"
    assert config.risk.emergency_stop_percent == Decimal("-8")
    assert config.exit_rules.take_profit_tiers_pct == [Decimal("10"), Decimal("20"), Decimal("35"), Decimal("50")]
    assert config.order_queue.submit_retry_delays_ms == [1000, 5000, 15000]


class TestDotenv:
    def test_local_overrides_env(self, tmp_path):
        (tmp_path / ".env").write_text("TG_DOTENV_PROBE=base\n")
        (tmp_path / ".env.local").write_text("TG_DOTENV_PROBE=local\n")

        loaded = load_dotenv_files(repo_root=tmp_path)

        assert loaded == [tmp_path / ".env", tmp_path / ".env.local"]
        assert os.environ["TG_DOTENV_PROBE"] == "local"

    def test_noop_in_prod(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "prod")
        (tmp_path / ".env").write_text("TG_DOTENV_PROBE=base\n")

        assert load_dotenv_files(repo_root=tmp_path) == []
        assert "TG_DOTENV_PROBE" not in os.environ
