"""Pytest fixtures and utilities for the exit engine test suite."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from exit_engine.core.config import (
    ExitEngineConfig,
    ExitThresholdConfig,
    MonitorConfig,
    RiskSizingConfig,
    SwapServiceConfig,
)
from exit_engine.core.dispatcher import ExecutionDispatcher
from exit_engine.core.models import (
    ExitThresholds,
    NotificationEvent,
    NotificationType,
    PriceQuote,
    PriceUpdate,
    Quote,
    SwapResult,
    TakeProfitLevel,
)
from exit_engine.core.registry import PositionRegistry
from exit_engine.exchange.base import PriceOracle, SwapExecutionService
from exit_engine.notifications.base import NotificationSink
from exit_engine.storage.database import Database

BASE = "So11111111111111111111111111111111111111112"
TOKEN = "TokenMint1111111111111111111111111111111111"
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def ts(seconds: float) -> datetime:
    """Timestamp ``seconds`` after a fixed origin."""
    return T0 + timedelta(seconds=seconds)


def price_update(position_id: str, price, seconds: float) -> PriceUpdate:
    return PriceUpdate(position_id=position_id, price=Decimal(str(price)), ts=ts(seconds))


def make_thresholds(
    entry_price="1.00",
    stop_loss_pct="-0.15",
    emergency_stop_pct="-0.50",
    take_profit_pct: Optional[str] = None,
    trailing_activation_pct: Optional[str] = None,
    trailing_distance_pct="0.05",
    ladder=(),
) -> ExitThresholds:
    """Explicit thresholds relative to an entry price."""
    entry = Decimal(entry_price)
    return ExitThresholds(
        stop_loss_price=entry * (1 + Decimal(stop_loss_pct)),
        emergency_stop_pct=Decimal(emergency_stop_pct),
        take_profit_price=entry * (1 + Decimal(take_profit_pct)) if take_profit_pct else None,
        trailing_activation_pct=Decimal(trailing_activation_pct) if trailing_activation_pct else None,
        trailing_distance_pct=Decimal(trailing_distance_pct),
        ladder=[
            TakeProfitLevel(gain_pct=Decimal(gain), sell_fraction=Decimal(fraction))
            for gain, fraction in ladder
        ],
    )


# =============================================================================
# Collaborator doubles
# =============================================================================

class RecordingSink(NotificationSink):
    """Keeps every published event."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    async def publish(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, type: NotificationType) -> List[NotificationEvent]:
        return [e for e in self.events if e.type is type]


class StaticOracle(PriceOracle):
    """Returns whatever price was last set."""

    def __init__(self, price="1.0"):
        self.price = Decimal(str(price))
        self.calls = 0

    async def get_price(self, asset_id: str) -> PriceQuote:
        self.calls += 1
        return PriceQuote(price=self.price)


def make_swap_service(price="1.0") -> AsyncMock:
    """Swap service mock that quotes and fills at ``price``."""
    service = AsyncMock(spec=SwapExecutionService)
    fill_price = Decimal(str(price))
    counter = {"n": 0}

    async def get_quote(in_asset, out_asset, amount, slippage_bps):
        return Quote(
            in_asset=in_asset,
            out_asset=out_asset,
            in_amount=amount,
            out_amount=amount * fill_price,
            slippage_bps=slippage_bps,
        )

    async def execute_swap(quote, priority_options=None):
        counter["n"] += 1
        return SwapResult(
            signature=f"sig-{counter['n']}",
            output_amount=quote.out_amount,
            input_amount=quote.in_amount,
        )

    service.get_quote.side_effect = get_quote
    service.execute_swap.side_effect = execute_swap
    return service


async def no_sleep(delay: float) -> None:
    return None


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def swap_config():
    """Fast retry settings for tests."""
    return SwapServiceConfig(
        retry_attempts=3,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        request_timeout=1,
        confirmation_timeout=1,
    )


@pytest.fixture
def engine_config():
    """Engine configuration with polling disabled and a dummy oracle key."""
    config = ExitEngineConfig()
    config.oracle.api_key = "test-key"
    config.system.dry_run = True
    config.swap = SwapServiceConfig(retry_attempts=3, retry_base_delay=0.01, retry_max_delay=0.05)
    config.thresholds = ExitThresholdConfig()
    config.sizing = RiskSizingConfig()
    config.monitor = MonitorConfig(
        poll_enabled=False,
        poll_interval_seconds=0.05,
        snapshot_interval_seconds=60,
        price_timeout_seconds=1,
    )
    return config


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def registry():
    return PositionRegistry()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def swap_service():
    return make_swap_service()


@pytest.fixture
def dispatcher(registry, swap_service, sink, swap_config):
    return ExecutionDispatcher(registry, swap_service, sink, swap_config, sleep=no_sleep)


@pytest.fixture
def thresholds():
    """Scenario A style thresholds: stop at -15%, take-profit at +30%."""
    return make_thresholds(stop_loss_pct="-0.15", take_profit_pct="0.30")


@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()
