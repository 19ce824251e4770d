"""Unit tests for configuration classes."""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from conftest import StaticOracle
from exit_engine.core.config import (
    ExitEngineConfig,
    ExitThresholdConfig,
    MonitorConfig,
    NotificationConfig,
    RiskSizingConfig,
    SwapServiceConfig,
    SystemConfig,
    parse_ladder,
)
from exit_engine.core.engine import create_swap_service
from exit_engine.core.exceptions import ConfigurationError
from exit_engine.exchange import JupiterSwapService, PaperSwapService, TransactionSender


# =============================================================================
# Ladder parsing
# =============================================================================

class TestParseLadder:
    """Test the partial take-profit ladder format."""

    def test_parse_sorts_levels(self):
        """Levels come back in ascending gain order."""
        assert parse_ladder("25:0.5, 15:0.3") == [
            (Decimal("0.15"), Decimal("0.3")),
            (Decimal("0.25"), Decimal("0.5")),
        ]

    def test_parse_empty(self):
        assert parse_ladder("") == []

    @pytest.mark.parametrize("raw", ["15", "0:0.5", "15:1.5", "15:0", "abc:0.3", "15:0.3,15:0.5"])
    def test_parse_rejects_malformed(self, raw):
        """Malformed, non-positive or duplicate levels are rejected."""
        with pytest.raises(ValueError):
            parse_ladder(raw)


# =============================================================================
# Section validators
# =============================================================================

class TestExitThresholdConfig:
    """Test ExitThresholdConfig validation."""

    def test_defaults(self):
        config = ExitThresholdConfig()

        assert config.stop_loss_pct == -0.10
        assert config.emergency_stop_pct == -0.20
        assert config.partial_take_profit_ladder[0] == (Decimal("0.15"), Decimal("0.3"))

    def test_loss_must_be_negative(self):
        with pytest.raises(ValidationError):
            ExitThresholdConfig(stop_loss_pct=0.1)

    def test_distance_bounds(self):
        with pytest.raises(ValidationError):
            ExitThresholdConfig(trailing_distance_pct=1.0)

    def test_bad_ladder_string(self):
        with pytest.raises(ValidationError):
            ExitThresholdConfig(partial_take_profit_ladder_str="15:2")

    def test_environment_alias(self, monkeypatch):
        """Values are read from their environment variable names."""
        monkeypatch.setenv("STOP_LOSS_PCT", "-0.2")
        monkeypatch.setenv("PARTIAL_TAKE_PROFIT_LADDER", "40:1.0")

        config = ExitThresholdConfig()

        assert config.stop_loss_pct == -0.2
        assert config.partial_take_profit_ladder == [(Decimal("0.4"), Decimal("1.0"))]


class TestOtherSections:
    """Test validation on the remaining sections."""

    def test_slippage_bounds(self):
        with pytest.raises(ValidationError):
            SwapServiceConfig(slippage_bps=0)
        with pytest.raises(ValidationError):
            SwapServiceConfig(slippage_bps=6000)

    def test_retry_attempts_bounds(self):
        with pytest.raises(ValidationError):
            SwapServiceConfig(retry_attempts=0)

    def test_sizing_fraction_bounds(self):
        with pytest.raises(ValidationError):
            RiskSizingConfig(max_single_position_pct=1.5)

    def test_poll_interval_positive(self):
        with pytest.raises(ValidationError):
            MonitorConfig(poll_interval_seconds=0)

    def test_telegram_needs_token_and_chat(self):
        assert not NotificationConfig(telegram_bot_token="t").telegram_enabled
        assert NotificationConfig(telegram_bot_token="t", telegram_chat_id="1").telegram_enabled

    def test_environment_literal(self):
        with pytest.raises(ValidationError):
            SystemConfig(environment="invalid")


# =============================================================================
# Container validation
# =============================================================================

class TestExitEngineConfig:
    """Test the global configuration container."""

    def test_valid_configuration(self, engine_config):
        result = engine_config.validate_configuration()

        assert result == {"valid": True, "issues": []}

    def test_missing_oracle_key(self, engine_config):
        engine_config.oracle.api_key = ""

        result = engine_config.validate_configuration()

        assert not result["valid"]
        assert any("BIRDEYE_API_KEY" in issue for issue in result["issues"])

    def test_emergency_stop_above_stop_loss(self, engine_config):
        engine_config.thresholds = ExitThresholdConfig(stop_loss_pct=-0.3, emergency_stop_pct=-0.1)

        result = engine_config.validate_configuration()

        assert not result["valid"]

    def test_single_position_above_portfolio_limit(self, engine_config):
        engine_config.sizing = RiskSizingConfig(
            max_single_position_pct=0.5, max_portfolio_exposure_pct=0.3
        )

        assert not engine_config.validate_configuration()["valid"]

    def test_is_dry_run(self):
        config = ExitEngineConfig()
        config.system.dry_run = False

        assert not config.is_dry_run


# =============================================================================
# Execution service selection
# =============================================================================

class TestCreateSwapService:
    """Test paper/live execution selection."""

    def test_dry_run_uses_paper(self, engine_config):
        service = create_swap_service(StaticOracle(), config=engine_config)

        assert isinstance(service, PaperSwapService)

    def test_live_requires_sender(self, engine_config):
        engine_config.system.dry_run = False

        with pytest.raises(ConfigurationError):
            create_swap_service(StaticOracle(), config=engine_config)

    def test_live_with_sender(self, engine_config):
        class Sender(TransactionSender):
            public_key = "Wallet"

            async def send(self, transaction):
                return "sig"

        engine_config.system.dry_run = False

        service = create_swap_service(StaticOracle(), Sender(), engine_config)

        assert isinstance(service, JupiterSwapService)
