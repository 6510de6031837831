"""
Configuration models for the order execution & position risk engine.

Uses Pydantic for validation and type safety.
"""
from typing import List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
from decimal import Decimal
import os
import re


class BrokerConfig(BaseSettings):
    """Broker connection settings."""
    model_config = SettingsConfigDict(extra="ignore")

    name: Literal["alpaca", "paper"] = "paper"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    base_url: str = "https://paper-api.alpaca.markets"
    data_url: str = "https://data.alpaca.markets"
    request_timeout_seconds: float = Field(default=30.0, ge=1.0, le=120.0)


class OrderQueueConfig(BaseSettings):
    """Idempotent submission and work-queue settings."""
    model_config = SettingsConfigDict(extra="ignore")

    submit_bucket_seconds: int = Field(default=300, ge=1, description="Idempotency window for submissions")
    cancel_bucket_seconds: int = Field(default=60, ge=1, description="Idempotency window for cancellations")
    max_attempts: int = Field(default=3, ge=1, le=10)
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    poll_timeout_seconds: float = Field(default=60.0, gt=0)
    cancel_timeout_seconds: float = Field(default=30.0, gt=0)
    default_strategy_id: str = "autonomous"

    # Worker
    worker_idle_seconds: float = Field(default=1.0, gt=0, description="Sleep between claims when queue is empty")
    submit_retry_delays_ms: List[int] = Field(default_factory=lambda: [1000, 5000, 15000])
    cancel_retry_delays_ms: List[int] = Field(default_factory=lambda: [1000, 3000, 10000])
    retry_jitter_fraction: float = Field(default=0.2, ge=0.0, le=1.0)


class OrderRetryConfig(BaseSettings):
    """Rejection retry engine and its global circuit breaker."""
    model_config = SettingsConfigDict(extra="ignore")

    max_retries_per_order: int = Field(default=3, ge=1, le=10)
    backoff_base_ms: int = Field(default=2000, ge=0)
    circuit_breaker_threshold: int = Field(default=10, ge=1, description="Failures within window before opening")
    circuit_breaker_window_ms: int = Field(default=60_000, ge=1000)
    circuit_breaker_reset_ms: int = Field(default=300_000, ge=1000)
    wash_trade_delay_ms: int = Field(default=30_000, ge=0)


class OrderExecutionConfig(BaseSettings):
    """Fill waiting and order housekeeping."""
    model_config = SettingsConfigDict(extra="ignore")

    fill_poll_interval_seconds: float = Field(default=0.5, gt=0)
    fill_timeout_seconds: float = Field(default=30.0, gt=0)
    stale_order_max_age_seconds: int = Field(default=300, ge=10)
    limit_price_buffer_pct: Decimal = Field(default=Decimal("0.005"), gt=0, lt=Decimal("0.1"))
    cancel_settle_seconds: float = Field(default=0.5, ge=0, description="Pause after cancelling open orders before a close")


class RiskConfig(BaseSettings):
    """Position sizing and pre-trade risk limits (percent units)."""
    model_config = SettingsConfigDict(extra="ignore")

    max_position_size_percent: Decimal = Field(default=Decimal("10"), gt=0, le=100)
    max_total_exposure_percent: Decimal = Field(default=Decimal("80"), gt=0, le=100)
    max_positions_count: int = Field(default=10, ge=1)
    default_position_fraction: Decimal = Field(default=Decimal("0.05"), gt=0, le=1)
    emergency_stop_percent: Decimal = Field(default=Decimal("-8"), lt=0)
    legacy_full_take_profit_percent: Decimal = Field(default=Decimal("15"))
    legacy_partial_take_profit_percent: Decimal = Field(default=Decimal("10"))
    notional_value_ceiling: Decimal = Field(
        default=Decimal("1000000"),
        description="Trade values at or above this are treated as share counts",
    )
    default_trailing_stop_percent: Decimal = Field(default=Decimal("5"), gt=0, lt=100)

    @field_validator("legacy_partial_take_profit_percent")
    @classmethod
    def partial_below_full(cls, v, info):
        full = info.data.get("legacy_full_take_profit_percent")
        if full is not None and v > full:
            raise ValueError("legacy_partial_take_profit_percent must not exceed legacy_full_take_profit_percent")
        return v


class ExitRulesConfig(BaseSettings):
    """Default advanced exit rules (tiered take-profit, trailing stop, holding period)."""
    model_config = SettingsConfigDict(extra="ignore")

    take_profit_tiers_pct: List[Decimal] = Field(
        default_factory=lambda: [Decimal("10"), Decimal("20"), Decimal("35"), Decimal("50")]
    )
    take_profit_close_pct: Decimal = Field(default=Decimal("25"), gt=0, le=100)
    trailing_enabled: bool = True
    trail_percent: Decimal = Field(default=Decimal("5"), gt=0, lt=100)
    trailing_activation_pct: Decimal = Field(default=Decimal("5"), ge=0)
    break_even_trigger_pct: Decimal = Field(default=Decimal("8"), ge=0)
    break_even_buffer_pct: Decimal = Field(default=Decimal("0.5"), ge=0)
    max_holding_hours: float = Field(default=168.0, gt=0)

    @field_validator("take_profit_tiers_pct")
    @classmethod
    def tiers_ascending(cls, v):
        if v != sorted(v):
            raise ValueError("take_profit_tiers_pct must be ascending")
        return v


class ReconciliationConfig(BaseSettings):
    """Broker position reconciliation."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    interval_seconds: int = Field(default=300, ge=10)


class DataConfig(BaseSettings):
    """Persistence settings."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str = "sqlite:///tradeguard.db"
    echo_sql: bool = False


class MonitoringConfig(BaseSettings):
    """Logging."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Top-level configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    order_queue: OrderQueueConfig = Field(default_factory=OrderQueueConfig)
    order_retry: OrderRetryConfig = Field(default_factory=OrderRetryConfig)
    execution: OrderExecutionConfig = Field(default_factory=OrderExecutionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    exit_rules: ExitRulesConfig = Field(default_factory=ExitRulesConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "paper", "prod"] = "paper"
    operator_id: Optional[str] = Field(default=None, description="Owner recorded on every persisted trade")
    kill_switch_state_path: Optional[str] = None

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} references from the environment."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            # Unset variables become empty scalars (None after YAML parsing)
            return os.environ.get(var_name, "")

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("data", {})
            config_dict["data"]["database_url"] = db_url

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform additional cross-section validation checks."""
        if self.broker.name == "alpaca" and not (self.broker.api_key and self.broker.api_secret):
            raise ValueError("Alpaca broker selected but ALPACA_API_KEY / ALPACA_API_SECRET are not set")

        if self.environment == "prod" and "paper-api" in self.broker.base_url and self.broker.name == "alpaca":
            raise ValueError("Production environment is pointed at the paper trading endpoint")

        if len(self.order_queue.submit_retry_delays_ms) < self.order_queue.max_attempts - 1:
            raise ValueError("submit_retry_delays_ms must cover every retry allowed by max_attempts")


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses tradeguard/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    from tradeguard.config.dotenv_loader import load_dotenv_files

    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
