"""Configuration management for the exit engine.

All thresholds use decimal-fraction representation (0.05 = 5%). Negative
values express losses (stop_loss_pct=-0.10 means exit at 10% below entry).
"""

from decimal import Decimal
from typing import List, Literal, Optional, Tuple

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SOL_MINT = "So11111111111111111111111111111111111111112"

_SETTINGS = dict(
    env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
)


def parse_ladder(raw: str) -> List[Tuple[Decimal, Decimal]]:
    """Parse ``"15:0.3,25:0.5"`` into ``[(0.15, 0.3), (0.25, 0.5)]``.

    Gains are given in percent, sell fractions as fractions of the
    remaining amount. Levels are returned in ascending gain order.
    """
    levels = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            gain, fraction = chunk.split(":")
            gain_pct = Decimal(gain.strip()) / 100
            sell_fraction = Decimal(fraction.strip())
        except Exception as e:
            raise ValueError(f"Malformed ladder level '{chunk}': {e}") from e
        if gain_pct <= 0:
            raise ValueError(f"Ladder gain must be positive: '{chunk}'")
        if sell_fraction <= 0 or sell_fraction > 1:
            raise ValueError(f"Ladder sell fraction must be in (0, 1]: '{chunk}'")
        levels.append((gain_pct, sell_fraction))
    gains = [g for g, _ in levels]
    if len(set(gains)) != len(gains):
        raise ValueError("Ladder gains must be unique")
    return sorted(levels)


# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(**_SETTINGS)

    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="Exit Engine", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")

    # Paper execution: quotes come from the price oracle, nothing is signed
    dry_run: bool = Field(default=True, validation_alias="DRY_RUN")


# =============================================================================
# Swap Execution Service (Jupiter)
# =============================================================================


class SwapServiceConfig(BaseSettings):
    """Swap execution service configuration."""

    model_config = SettingsConfigDict(**_SETTINGS)

    quote_api_url: str = Field(
        default="https://lite-api.jup.ag/swap/v1", validation_alias="JUPITER_API_URL"
    )
    token_api_url: str = Field(
        default="https://lite-api.jup.ag/tokens/v1",
        validation_alias="JUPITER_TOKEN_API_URL",
    )
    base_asset: str = Field(default=SOL_MINT, validation_alias="BASE_ASSET_MINT")
    base_asset_decimals: int = Field(default=9, validation_alias="BASE_ASSET_DECIMALS")

    slippage_bps: int = Field(default=500, validation_alias="SLIPPAGE_BPS")
    priority_fee: Literal["low", "medium", "high", "veryHigh"] = Field(
        default="high", validation_alias="PRIORITY_FEE"
    )

    request_timeout: float = Field(default=15.0, validation_alias="SWAP_TIMEOUT")
    confirmation_timeout: float = Field(
        default=60.0, validation_alias="SWAP_CONFIRMATION_TIMEOUT"
    )

    # Bounded exponential backoff for quote and swap attempts
    retry_attempts: int = Field(default=3, validation_alias="SWAP_RETRY_ATTEMPTS")
    retry_base_delay: float = Field(default=1.0, validation_alias="SWAP_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=10.0, validation_alias="SWAP_RETRY_MAX_DELAY")

    @field_validator("slippage_bps")
    @classmethod
    def validate_slippage(cls, v):
        """Slippage must be between 1 bps and 50%."""
        if v <= 0 or v > 5000:
            raise ValueError("slippage_bps must be between 1 and 5000")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_attempts(cls, v):
        if v < 1 or v > 10:
            raise ValueError("retry_attempts must be between 1 and 10")
        return v


# =============================================================================
# Price Oracle (Birdeye)
# =============================================================================


class PriceOracleConfig(BaseSettings):
    """Price oracle configuration."""

    model_config = SettingsConfigDict(**_SETTINGS)

    api_url: str = Field(
        default="https://public-api.birdeye.so", validation_alias="BIRDEYE_API_URL"
    )
    api_key: str = Field(default="", validation_alias="BIRDEYE_API_KEY")
    chain: str = Field(default="solana", validation_alias="BIRDEYE_CHAIN")
    timeout: float = Field(default=10.0, validation_alias="BIRDEYE_TIMEOUT")


# =============================================================================
# Risk Sizing Configuration
# =============================================================================


class RiskSizingConfig(BaseSettings):
    """Position sizing limits and the exit thresholds handed out at open time."""

    model_config = SettingsConfigDict(**_SETTINGS)

    max_single_position_pct: float = Field(
        default=0.05, validation_alias="MAX_SINGLE_POSITION_PCT"
    )
    max_portfolio_exposure_pct: float = Field(
        default=0.30, validation_alias="MAX_PORTFOLIO_EXPOSURE_PCT"
    )
    min_position_size: float = Field(default=0.01, validation_alias="MIN_POSITION_SIZE")

    # Bounds of the risk multiplier derived from the risk score
    min_risk_multiplier: float = Field(default=0.3, validation_alias="MIN_RISK_MULTIPLIER")
    max_risk_multiplier: float = Field(default=1.0, validation_alias="MAX_RISK_MULTIPLIER")

    stop_loss_pct: float = Field(default=0.25, validation_alias="SIZING_STOP_LOSS_PCT")
    take_profit_1_pct: float = Field(default=1.0, validation_alias="SIZING_TAKE_PROFIT_1_PCT")
    take_profit_2_pct: float = Field(default=3.0, validation_alias="SIZING_TAKE_PROFIT_2_PCT")
    trailing_activation_pct: float = Field(
        default=0.5, validation_alias="SIZING_TRAILING_ACTIVATION_PCT"
    )

    # Fraction of the remaining amount sold when take-profit-1 is reached
    take_profit_1_sell_fraction: float = Field(
        default=0.4, validation_alias="SIZING_TAKE_PROFIT_1_SELL_FRACTION"
    )

    @field_validator(
        "max_single_position_pct",
        "max_portfolio_exposure_pct",
        "take_profit_1_sell_fraction",
    )
    @classmethod
    def validate_fraction(cls, v):
        """Validate that the fraction is between 0 and 1."""
        if v <= 0 or v > 1:
            raise ValueError("Value must be between 0 and 1")
        return v

    @field_validator("stop_loss_pct")
    @classmethod
    def validate_stop_loss(cls, v):
        if v <= 0 or v >= 1:
            raise ValueError("stop_loss_pct must be between 0 and 1")
        return v


# =============================================================================
# Exit Threshold Configuration
# =============================================================================


class ExitThresholdConfig(BaseSettings):
    """Default exit thresholds for positions registered without explicit ones."""

    model_config = SettingsConfigDict(**_SETTINGS)

    stop_loss_pct: float = Field(default=-0.10, validation_alias="STOP_LOSS_PCT")
    emergency_stop_pct: float = Field(default=-0.20, validation_alias="EMERGENCY_STOP_PCT")
    take_profit_pct: float = Field(default=0.25, validation_alias="TAKE_PROFIT_PCT")

    trailing_stop_enabled: bool = Field(default=True, validation_alias="TRAILING_STOP_ENABLED")
    trailing_activation_pct: float = Field(
        default=0.05, validation_alias="TRAILING_ACTIVATION_PCT"
    )
    trailing_distance_pct: float = Field(
        default=0.05, validation_alias="TRAILING_DISTANCE_PCT"
    )

    # Stored as a string, accessed as parsed levels via property
    partial_take_profit_ladder_str: str = Field(
        default="15:0.3,25:0.5,50:1.0", validation_alias="PARTIAL_TAKE_PROFIT_LADDER"
    )

    @field_validator("stop_loss_pct", "emergency_stop_pct")
    @classmethod
    def validate_loss(cls, v):
        if v >= 0 or v <= -1:
            raise ValueError("Loss thresholds must be between -1 and 0")
        return v

    @field_validator("take_profit_pct", "trailing_activation_pct")
    @classmethod
    def validate_gain(cls, v):
        if v <= 0:
            raise ValueError("Gain thresholds must be positive")
        return v

    @field_validator("trailing_distance_pct")
    @classmethod
    def validate_distance(cls, v):
        if v <= 0 or v >= 1:
            raise ValueError("trailing_distance_pct must be between 0 and 1")
        return v

    @field_validator("partial_take_profit_ladder_str")
    @classmethod
    def validate_ladder(cls, v):
        parse_ladder(v)
        return v

    @property
    def partial_take_profit_ladder(self) -> List[Tuple[Decimal, Decimal]]:
        """Parse the ladder string into (gain_pct, sell_fraction) pairs."""
        return parse_ladder(self.partial_take_profit_ladder_str)


# =============================================================================
# Monitoring Configuration
# =============================================================================


class MonitorConfig(BaseSettings):
    """Polling, snapshot and push-ingest configuration."""

    model_config = SettingsConfigDict(**_SETTINGS)

    poll_enabled: bool = Field(default=True, validation_alias="POLL_ENABLED")
    poll_interval_seconds: float = Field(default=30.0, validation_alias="POLL_INTERVAL_SECONDS")
    price_timeout_seconds: float = Field(default=10.0, validation_alias="PRICE_TIMEOUT_SECONDS")
    snapshot_interval_seconds: float = Field(
        default=300.0, validation_alias="SNAPSHOT_INTERVAL_SECONDS"
    )
    queue_maxsize: int = Field(default=1000, validation_alias="EVENT_QUEUE_MAXSIZE")
    dedup_cache_size: int = Field(default=10000, validation_alias="PUSH_DEDUP_CACHE_SIZE")

    webhook_enabled: bool = Field(default=False, validation_alias="WEBHOOK_ENABLED")
    webhook_host: str = Field(default="0.0.0.0", validation_alias="WEBHOOK_HOST")
    webhook_port: int = Field(default=3000, validation_alias="WEBHOOK_PORT")
    webhook_secret: Optional[str] = Field(default=None, validation_alias="WEBHOOK_SECRET")

    @field_validator("poll_interval_seconds", "snapshot_interval_seconds")
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError("Intervals must be positive")
        return v


# =============================================================================
# Notification Configuration
# =============================================================================


class NotificationConfig(BaseSettings):
    """Notification configuration."""

    model_config = SettingsConfigDict(**_SETTINGS)

    # Telegram settings
    telegram_bot_token: Optional[str] = Field(default=None, validation_alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: Optional[str] = Field(default=None, validation_alias="TELEGRAM_CHAT_ID")

    # Webhook settings
    webhook_url: Optional[str] = Field(default=None, validation_alias="NOTIFY_WEBHOOK_URL")
    webhook_timeout: int = Field(default=10, validation_alias="NOTIFY_WEBHOOK_TIMEOUT")

    @computed_field
    @property
    def telegram_enabled(self) -> bool:
        """Telegram needs both a token and a chat id."""
        return bool(self.telegram_bot_token and self.telegram_chat_id)


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(**_SETTINGS)

    database_url: str = Field(
        default="sqlite:///./data/exit_engine.db", validation_alias="DATABASE_URL"
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(**_SETTINGS)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/exit_engine.log", validation_alias="LOG_FILE")


# =============================================================================
# Global Configuration Container
# =============================================================================


class ExitEngineConfig:
    """
    Container for all exit engine configurations.

    Usage:
        from exit_engine.core.config import engine_config

        if engine_config.is_dry_run:
            ...
        interval = engine_config.monitor.poll_interval_seconds
    """

    def __init__(self):
        self.system = SystemConfig()
        self.swap = SwapServiceConfig()
        self.oracle = PriceOracleConfig()
        self.sizing = RiskSizingConfig()
        self.thresholds = ExitThresholdConfig()
        self.monitor = MonitorConfig()
        self.notification = NotificationConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    @property
    def is_dry_run(self) -> bool:
        """Check if running with paper execution."""
        return self.system.dry_run

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if not self.oracle.api_key or self.oracle.api_key.startswith("your_"):
            issues.append("Missing BIRDEYE_API_KEY for the price oracle")

        if self.thresholds.emergency_stop_pct > self.thresholds.stop_loss_pct:
            issues.append("Emergency stop must sit at or below the regular stop-loss")

        if self.sizing.min_risk_multiplier > self.sizing.max_risk_multiplier:
            issues.append("min_risk_multiplier must not exceed max_risk_multiplier")

        if self.sizing.max_single_position_pct > self.sizing.max_portfolio_exposure_pct:
            issues.append("Single position limit exceeds portfolio exposure limit")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

database_config = DatabaseConfig()
logging_config = LoggingConfig()
notification_config = NotificationConfig()

engine_config = ExitEngineConfig()


__all__ = [
    "SOL_MINT",
    "parse_ladder",
    "ExitEngineConfig",
    "engine_config",
    "database_config",
    "logging_config",
    "notification_config",
    "SystemConfig",
    "SwapServiceConfig",
    "PriceOracleConfig",
    "RiskSizingConfig",
    "ExitThresholdConfig",
    "MonitorConfig",
    "NotificationConfig",
    "DatabaseConfig",
    "LoggingConfig",
]
