"""
Centralized configuration management for the trade engine.

This module provides configuration management using environment variables
with sensible defaults and validation.
"""

from decimal import Decimal
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Database configuration for the SQL ledger store."""

    host: str = Field(default="localhost", alias="DB_HOST")
    port: int = Field(default=5432, alias="DB_PORT")
    database: str = Field(default="trade_engine", alias="DB_NAME")
    username: str = Field(default="trader", alias="DB_USER")
    password: str = Field(default="", alias="DB_PASSWORD")
    pool_size: int = Field(default=10, alias="DB_POOL_SIZE")
    max_overflow: int = Field(default=20, alias="DB_MAX_OVERFLOW")
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    model_config = SettingsConfigDict(
        env_prefix="",
        populate_by_name=True,
        case_sensitive=False
    )

    @property
    def url(self) -> str:
        """Get async database URL."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.username}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class RiskConfig(BaseSettings):
    """Risk management configuration."""

    # Position sizing / alert parameters (fractions of 1 unless noted)
    max_position_size_pct: Decimal = Field(default=Decimal("0.10"), alias="RISK_MAX_POSITION_SIZE_PCT")
    max_daily_loss_pct: Decimal = Field(default=Decimal("0.02"), alias="RISK_MAX_DAILY_LOSS_PCT")
    stop_loss_pct: Decimal = Field(default=Decimal("0.08"), alias="RISK_STOP_LOSS_PCT")
    take_profit_pct: Decimal = Field(default=Decimal("0.20"), alias="RISK_TAKE_PROFIT_PCT")
    max_correlation: float = Field(default=0.7, alias="RISK_MAX_CORRELATION")
    max_sector_concentration_pct: Decimal = Field(default=Decimal("0.25"), alias="RISK_MAX_SECTOR_CONCENTRATION_PCT")
    volatility_threshold_pct: float = Field(default=30.0, alias="RISK_VOLATILITY_THRESHOLD_PCT")  # annualized %

    # Engine gating limits
    max_order_value: Decimal = Field(default=Decimal("50000"), alias="RISK_MAX_ORDER_VALUE")
    min_order_value: Decimal = Field(default=Decimal("1"), alias="RISK_MIN_ORDER_VALUE")
    max_daily_trading_volume: Decimal = Field(default=Decimal("100000"), alias="RISK_MAX_DAILY_TRADING_VOLUME")
    max_position_concentration: Decimal = Field(default=Decimal("0.25"), alias="RISK_MAX_POSITION_CONCENTRATION")

    # Sizing assumptions
    kelly_win_rate: float = Field(default=0.55, alias="RISK_KELLY_WIN_RATE")
    default_volatility_pct: float = Field(default=25.0, alias="RISK_DEFAULT_VOLATILITY_PCT")
    volatility_lookback_days: int = Field(default=30, alias="RISK_VOLATILITY_LOOKBACK_DAYS")
    analytics_lookback_days: int = Field(default=90, alias="RISK_ANALYTICS_LOOKBACK_DAYS")
    sector_cluster_threshold: float = Field(default=0.5, alias="RISK_SECTOR_CLUSTER_THRESHOLD")
    default_portfolio_value: Decimal = Field(default=Decimal("10000"), alias="RISK_DEFAULT_PORTFOLIO_VALUE")
    risk_free_rate: float = Field(default=0.02, alias="RISK_FREE_RATE")
    market_return: float = Field(default=0.10, alias="RISK_MARKET_RETURN")
    benchmark_symbol: str = Field(default="SPY", alias="RISK_BENCHMARK_SYMBOL")
    rebalance_threshold: Decimal = Field(default=Decimal("0.05"), alias="RISK_REBALANCE_THRESHOLD")

    model_config = SettingsConfigDict(
        env_prefix="",
        populate_by_name=True,
        case_sensitive=False
    )

    @field_validator(
        'max_position_size_pct', 'max_daily_loss_pct', 'stop_loss_pct',
        'take_profit_pct', 'max_sector_concentration_pct', 'max_position_concentration'
    )
    @classmethod
    def validate_percentages(cls, v):
        """Validate percentage values are between 0 and 1."""
        if not (0 < v <= 1):
            raise ValueError("Percentage values must be between 0 and 1")
        return v


class ExecutionConfig(BaseSettings):
    """Order execution configuration."""

    trading_fee_rate: Decimal = Field(default=Decimal("0.001"), ge=0, lt=1, alias="EXEC_TRADING_FEE_RATE")
    base_slippage: Decimal = Field(default=Decimal("0.001"), alias="EXEC_BASE_SLIPPAGE")
    fractional_base_slippage: Decimal = Field(default=Decimal("0.002"), alias="EXEC_FRACTIONAL_BASE_SLIPPAGE")
    size_impact_divisor: Decimal = Field(default=Decimal("10000"), alias="EXEC_SIZE_IMPACT_DIVISOR")
    max_size_impact: Decimal = Field(default=Decimal("0.01"), alias="EXEC_MAX_SIZE_IMPACT")
    min_fractional_quantity: Decimal = Field(default=Decimal("0.000001"), alias="EXEC_MIN_FRACTIONAL_QUANTITY")
    price_deviation_warning: Decimal = Field(default=Decimal("0.10"), alias="EXEC_PRICE_DEVIATION_WARNING")
    large_order_warning: Decimal = Field(default=Decimal("10000"), alias="EXEC_LARGE_ORDER_WARNING")
    default_currency: str = Field(default="USD", alias="EXEC_DEFAULT_CURRENCY")
    default_wallet_balance: Decimal = Field(default=Decimal("10000"), alias="EXEC_DEFAULT_WALLET_BALANCE")
    crypto_symbols: Annotated[List[str], NoDecode] = Field(
        default=["BTC", "ETH", "SOL", "XRP", "ADA", "DOT"], alias="EXEC_CRYPTO_SYMBOLS"
    )

    # Price oracle call policy
    oracle_timeout: float = Field(default=5.0, alias="ORACLE_TIMEOUT")  # seconds
    oracle_max_attempts: int = Field(default=3, alias="ORACLE_MAX_ATTEMPTS")
    oracle_backoff_multiplier: float = Field(default=0.5, alias="ORACLE_BACKOFF_MULTIPLIER")
    oracle_backoff_min: float = Field(default=0.5, alias="ORACLE_BACKOFF_MIN")
    oracle_backoff_max: float = Field(default=4.0, alias="ORACLE_BACKOFF_MAX")

    model_config = SettingsConfigDict(
        env_prefix="",
        populate_by_name=True,
        case_sensitive=False
    )

    @field_validator('crypto_symbols', mode='before')
    @classmethod
    def parse_crypto_symbols(cls, v):
        """Accept comma separated symbol lists from the environment."""
        if isinstance(v, str):
            return [symbol.strip().upper() for symbol in v.split(',') if symbol.strip()]
        return v


class SchedulerConfig(BaseSettings):
    """Scheduler configuration."""

    order_monitor_interval: int = Field(default=30, alias="SCHEDULER_ORDER_MONITOR_INTERVAL")  # seconds
    order_monitor_error_interval: int = Field(default=60, alias="SCHEDULER_ORDER_MONITOR_ERROR_INTERVAL")  # seconds
    risk_check_interval: int = Field(default=60, alias="SCHEDULER_RISK_CHECK_INTERVAL")  # seconds
    max_trigger_attempts: int = Field(default=5, alias="SCHEDULER_MAX_TRIGGER_ATTEMPTS")

    # Trading hours (market timezone)
    trading_start_time: str = Field(default="09:30", alias="TRADING_START_TIME")
    trading_end_time: str = Field(default="16:00", alias="TRADING_END_TIME")
    timezone: str = Field(default="America/New_York", alias="SCHEDULER_TIMEZONE")
    trade_weekends: bool = Field(default=False, alias="SCHEDULER_TRADE_WEEKENDS")

    model_config = SettingsConfigDict(
        env_prefix="",
        populate_by_name=True,
        case_sensitive=False
    )

    @field_validator('trading_start_time', 'trading_end_time')
    @classmethod
    def validate_time_format(cls, v):
        """Validate HH:MM time format."""
        try:
            hours, minutes = v.split(':')
            if not (0 <= int(hours) < 24 and 0 <= int(minutes) < 60):
                raise ValueError
        except ValueError:
            raise ValueError(f"Invalid time format '{v}'. Expected HH:MM")
        return v


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO", alias="LOG_LEVEL")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        alias="LOG_FORMAT"
    )
    file_path: str = Field(default="data/logs/trade_engine.log", alias="LOG_FILE_PATH")
    max_file_size: int = Field(default=10485760, alias="LOG_MAX_FILE_SIZE")  # 10MB
    backup_count: int = Field(default=5, alias="LOG_BACKUP_COUNT")
    enable_console: bool = Field(default=True, alias="LOG_ENABLE_CONSOLE")
    enable_file: bool = Field(default=False, alias="LOG_ENABLE_FILE")

    model_config = SettingsConfigDict(
        env_prefix="",
        populate_by_name=True,
        case_sensitive=False
    )

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()


class Config(BaseSettings):
    """Main configuration class."""

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    service_name: str = Field(default="trade_engine", alias="SERVICE_NAME")

    @property
    def database(self) -> DatabaseConfig:
        """Get database configuration."""
        return DatabaseConfig(**{})

    @property
    def risk(self) -> RiskConfig:
        """Get risk configuration."""
        return RiskConfig(**{})

    @property
    def execution(self) -> ExecutionConfig:
        """Get execution configuration."""
        return ExecutionConfig(**{})

    @property
    def scheduler(self) -> SchedulerConfig:
        """Get scheduler configuration."""
        return SchedulerConfig(**{})

    @property
    def logging(self) -> LoggingConfig:
        """Get logging configuration."""
        return LoggingConfig(**{})

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        """Validate environment."""
        valid_envs = ["development", "testing", "staging", "production"]
        if v not in valid_envs:
            raise ValueError(f"Invalid environment. Must be one of: {valid_envs}")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global configuration instance
config = Config()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config


def reload_config() -> Config:
    """Reload configuration from environment."""
    global config
    config = Config()
    return config
