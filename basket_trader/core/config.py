"""Configuration management for the basket trading stack."""

from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import Field, ValidationError, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from basket_trader.core.exceptions import ConfigurationError

ALLOCATION_TOLERANCE = Decimal("0.000001")
CASH = "CASH"

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="Basket Trader", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")

    # Simulation-only unless a real execution backend is wired in
    dry_run: bool = Field(default=True, validation_alias="DRY_RUN")


# =============================================================================
# Risk Configuration
# =============================================================================


class RiskLimitsConfig(BaseSettings):
    """Static risk limits enforced by the RiskGate.

    All percentages are fractions (0.15 = 15%).
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    max_position_size_pct: float = Field(
        default=0.15, validation_alias="RISK_MAX_POSITION_SIZE_PCT"
    )
    max_daily_loss_pct: float = Field(default=0.05, validation_alias="RISK_MAX_DAILY_LOSS_PCT")
    max_drawdown_pct: float = Field(default=0.20, validation_alias="RISK_MAX_DRAWDOWN_PCT")
    max_correlation: float = Field(default=0.7, validation_alias="RISK_MAX_CORRELATION")
    max_volatility: float = Field(default=0.8, validation_alias="RISK_MAX_VOLATILITY")
    min_liquidity_usd: Decimal = Field(
        default=Decimal("100"), validation_alias="RISK_MIN_LIQUIDITY_USD"
    )
    max_concentration: float = Field(default=0.50, validation_alias="RISK_MAX_CONCENTRATION")
    max_leverage: float = Field(default=1.0, validation_alias="RISK_MAX_LEVERAGE")
    stop_loss_pct: float = Field(default=0.15, validation_alias="RISK_STOP_LOSS_PCT")
    take_profit_pct: float = Field(default=0.30, validation_alias="RISK_TAKE_PROFIT_PCT")

    @field_validator(
        "max_position_size_pct",
        "max_daily_loss_pct",
        "max_drawdown_pct",
        "max_correlation",
        "max_concentration",
        "stop_loss_pct",
        "take_profit_pct",
    )
    @classmethod
    def validate_fraction(cls, v):
        if not 0 < v <= 1:
            raise ValueError("Risk limit fractions must be in (0, 1]")
        return v

    @field_validator("max_volatility", "max_leverage")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("min_liquidity_usd")
    @classmethod
    def validate_liquidity(cls, v):
        if v < 0:
            raise ValueError("Minimum liquidity cannot be negative")
        return v


class AlertThresholdConfig(BaseSettings):
    """Warning thresholds for portfolio assessment (soft limits)."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    drawdown: float = Field(default=0.10, validation_alias="ALERT_DRAWDOWN")
    daily_loss: float = Field(default=0.03, validation_alias="ALERT_DAILY_LOSS")
    volatility: float = Field(default=0.60, validation_alias="ALERT_VOLATILITY")
    correlation: float = Field(default=0.60, validation_alias="ALERT_CORRELATION")
    concentration: float = Field(default=0.20, validation_alias="ALERT_CONCENTRATION")
    liquidity: float = Field(default=0.05, validation_alias="ALERT_LIQUIDITY")

    # Bounded alert log
    alert_window: int = Field(default=100, validation_alias="ALERT_WINDOW")
    alert_max_age_hours: int = Field(default=24, validation_alias="ALERT_MAX_AGE_HOURS")

    @field_validator("alert_window")
    @classmethod
    def validate_window(cls, v):
        if v < 1:
            raise ValueError("Alert window must hold at least one alert")
        return v


class SizingConfig(BaseSettings):
    """Position sizing advisor settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    base_fraction: float = Field(default=0.02, validation_alias="SIZING_BASE_FRACTION")

    # Confidence tiers
    high_confidence: float = Field(default=0.8, validation_alias="SIZING_HIGH_CONFIDENCE")
    high_confidence_multiplier: float = 1.5
    medium_confidence: float = Field(default=0.6, validation_alias="SIZING_MEDIUM_CONFIDENCE")
    medium_confidence_multiplier: float = 1.2
    low_confidence: float = Field(default=0.4, validation_alias="SIZING_LOW_CONFIDENCE")
    low_confidence_multiplier: float = 0.5

    # Risk tiers
    low_risk_multiplier: float = 1.2
    high_risk_multiplier: float = 0.7

    @field_validator("base_fraction")
    @classmethod
    def validate_base(cls, v):
        if not 0 < v <= 1:
            raise ValueError("Base fraction must be in (0, 1]")
        return v


# =============================================================================
# Execution Configuration
# =============================================================================


class ExecutionConfig(BaseSettings):
    """Execution and external call settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    slippage_pct: float = Field(default=0.01, validation_alias="EXECUTION_SLIPPAGE_PCT")
    execution_timeout_seconds: float = Field(
        default=10.0, validation_alias="EXECUTION_TIMEOUT_SECONDS"
    )
    price_timeout_seconds: float = Field(default=5.0, validation_alias="PRICE_TIMEOUT_SECONDS")
    signal_timeout_seconds: float = Field(default=10.0, validation_alias="SIGNAL_TIMEOUT_SECONDS")
    trailing_stop_distance: float = Field(
        default=0.0, validation_alias="EXECUTION_TRAILING_STOP_DISTANCE"
    )
    random_seed: Optional[int] = Field(default=None, validation_alias="EXECUTION_RANDOM_SEED")

    @field_validator("slippage_pct")
    @classmethod
    def validate_slippage(cls, v):
        if not 0 <= v <= 0.02:
            raise ValueError("Slippage must be between 0 and 2%")
        return v

    @field_validator("trailing_stop_distance")
    @classmethod
    def validate_trailing(cls, v):
        if not 0 <= v < 1:
            raise ValueError("Trailing stop distance must be in [0, 1)")
        return v


# =============================================================================
# Portfolio Configuration
# =============================================================================


def parse_allocation(raw: str) -> Dict[str, Decimal]:
    """Parse ``"SOL:0.40,BONK:0.25,CASH:0.35"`` into a token -> fraction map."""
    allocation: Dict[str, Decimal] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        token, _, value = part.partition(":")
        if not value:
            raise ValueError(f"Allocation entry '{part}' must look like TOKEN:fraction")
        allocation[token.strip().upper()] = Decimal(value.strip())
    return allocation


def validate_allocation(allocation: Dict[str, Decimal]) -> Dict[str, Decimal]:
    """Check a target allocation includes CASH, is non-negative and sums to 1.

    Raises:
        ConfigurationError: If any condition fails
    """
    if CASH not in allocation:
        raise ConfigurationError("Target allocation must include a CASH entry")
    if any(v < 0 for v in allocation.values()):
        raise ConfigurationError("Target allocation fractions cannot be negative")
    total = sum(allocation.values(), Decimal("0"))
    if abs(total - Decimal("1")) > ALLOCATION_TOLERANCE:
        raise ConfigurationError(f"Target allocation sums to {total}, expected 1.0")
    return allocation


class PortfolioConfig(BaseSettings):
    """Portfolio composition and rebalancing settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    initial_cash: Decimal = Field(default=Decimal("10000"), validation_alias="PORTFOLIO_INITIAL_CASH")
    target_allocation_str: str = Field(
        default="SOL:0.40,BONK:0.25,WIF:0.20,CASH:0.15",
        validation_alias="PORTFOLIO_TARGET_ALLOCATION",
    )
    rebalance_threshold: float = Field(default=0.05, validation_alias="PORTFOLIO_REBALANCE_THRESHOLD")
    tokens_str: str = Field(default="SOL,BONK,WIF,PEPE", validation_alias="PORTFOLIO_TOKENS")

    @computed_field
    @property
    def target_allocation(self) -> Dict[str, Decimal]:
        """Parsed target allocation."""
        return parse_allocation(self.target_allocation_str)

    @computed_field
    @property
    def tokens(self) -> List[str]:
        """Tokens traded by the live loops."""
        return [t.strip().upper() for t in self.tokens_str.split(",") if t.strip()]

    @field_validator("rebalance_threshold")
    @classmethod
    def validate_threshold(cls, v):
        if not 0 < v < 1:
            raise ValueError("Rebalance threshold must be in (0, 1)")
        return v


# =============================================================================
# Loop Configuration
# =============================================================================


class LoopConfig(BaseSettings):
    """Polling intervals for the live loops."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    trading_interval_seconds: float = Field(default=30.0, validation_alias="TRADING_INTERVAL_SECONDS")
    monitoring_interval_seconds: float = Field(
        default=60.0, validation_alias="MONITORING_INTERVAL_SECONDS"
    )
    error_backoff_seconds: float = Field(default=60.0, validation_alias="LOOP_ERROR_BACKOFF_SECONDS")


# =============================================================================
# Backtest Configuration
# =============================================================================


class BacktestConfig(BaseSettings):
    """Backtest simulator settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    initial_capital: Decimal = Field(default=Decimal("10000"), validation_alias="BACKTEST_INITIAL_CAPITAL")
    position_fraction: Decimal = Field(
        default=Decimal("0.10"), validation_alias="BACKTEST_POSITION_FRACTION"
    )
    min_confidence: float = Field(default=0.5, validation_alias="BACKTEST_MIN_CONFIDENCE")
    cache_dir: str = Field(default="data/backtests", validation_alias="BACKTEST_CACHE_DIR")
    synthetic_days: int = Field(default=365, validation_alias="BACKTEST_SYNTHETIC_DAYS")
    synthetic_seed: int = Field(default=42, validation_alias="BACKTEST_SYNTHETIC_SEED")


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///./data/basket_trader.db", validation_alias="DATABASE_URL"
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/basket_trader.log", validation_alias="LOG_FILE")


# =============================================================================
# Global Configuration Container
# =============================================================================


class BasketTraderConfig:
    """
    Container for all configuration sections.

    Usage:
        from basket_trader.core.config import trader_config

        limit = trader_config.risk_limits.max_position_size_pct
        report = trader_config.validate_configuration()
    """

    def __init__(self):
        self.system = SystemConfig()
        self.risk_limits = RiskLimitsConfig()
        self.alerts = AlertThresholdConfig()
        self.sizing = SizingConfig()
        self.execution = ExecutionConfig()
        self.portfolio = PortfolioConfig()
        self.loops = LoopConfig()
        self.backtest = BacktestConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    def validate_configuration(self) -> dict:
        """
        Validate cross-field configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        try:
            validate_allocation(self.portfolio.target_allocation)
        except (ConfigurationError, ValueError, ArithmeticError) as e:
            issues.append(str(e))

        limits = self.risk_limits
        if self.alerts.drawdown >= limits.max_drawdown_pct:
            issues.append("Drawdown warning threshold must be below the drawdown limit")
        if self.alerts.daily_loss >= limits.max_daily_loss_pct:
            issues.append("Daily loss warning threshold must be below the daily loss limit")
        if self.alerts.volatility >= limits.max_volatility:
            issues.append("Volatility warning threshold must be below the volatility limit")
        if self.sizing.base_fraction > limits.max_position_size_pct:
            issues.append("Base sizing fraction exceeds the maximum position size")
        if not self.portfolio.tokens:
            issues.append("No tokens configured")

        return {"valid": len(issues) == 0, "issues": issues}


def load_risk_limits(**overrides) -> RiskLimitsConfig:
    """Build RiskLimits from the environment plus overrides.

    Raises:
        ConfigurationError: If any limit is invalid
    """
    try:
        return RiskLimitsConfig(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid risk limits: {e}") from e


# =============================================================================
# Global Configuration Instances
# =============================================================================

risk_limits_config = RiskLimitsConfig()
execution_config = ExecutionConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

trader_config = BasketTraderConfig()


__all__ = [
    "ALLOCATION_TOLERANCE",
    "CASH",
    "BasketTraderConfig",
    "trader_config",
    "risk_limits_config",
    "execution_config",
    "database_config",
    "logging_config",
    "SystemConfig",
    "RiskLimitsConfig",
    "AlertThresholdConfig",
    "SizingConfig",
    "ExecutionConfig",
    "PortfolioConfig",
    "LoopConfig",
    "BacktestConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "parse_allocation",
    "validate_allocation",
    "load_risk_limits",
]
