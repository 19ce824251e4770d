"""Unit tests for database operations."""
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import TOKEN, T0, make_thresholds, ts
from exit_engine.core.models import (
    ExitRecord,
    Position,
    TriggerKey,
    TriggerKind,
)
from exit_engine.storage.database import Database


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sample_position():
    """An open position that already took one ladder rung."""
    return Position(
        token_id=TOKEN,
        symbol="TKN",
        entry_price=Decimal("0.1"),
        entry_amount=Decimal("1000"),
        invested_capital=Decimal("100"),
        opened_at=T0,
        remaining_amount=Decimal("700"),
        cost_basis=Decimal("70"),
        current_price=Decimal("0.116"),
        highest_price=Decimal("0.12"),
        last_applied_ts=ts(30),
        thresholds=make_thresholds(
            entry_price="0.1", take_profit_pct="0.30", ladder=[("0.15", "0.3"), ("0.25", "0.5")]
        ),
        fired_triggers={TriggerKey(kind=TriggerKind.PARTIAL_TAKE_PROFIT, level=Decimal("0.15"))},
        exits=[
            ExitRecord(
                kind=TriggerKind.PARTIAL_TAKE_PROFIT,
                level=Decimal("0.15"),
                amount=Decimal("300"),
                fraction_of_entry=Decimal("0.3"),
                proceeds=Decimal("34.8"),
                realized_pnl=Decimal("4.8"),
                signature="sig-1",
                executed_at=ts(20),
            )
        ],
        realized_pnl=Decimal("4.8"),
        metadata={"risk_score": 40},
    )


# =============================================================================
# Database Initialization Tests
# =============================================================================

class TestDatabaseInitialization:
    """Test database initialization."""

    @pytest.mark.asyncio
    async def test_database_initialization(self, sample_position):
        """Tables exist once initialize() has run."""
        db = Database("sqlite+aiosqlite:///:memory:")
        await db.initialize()

        await db.save_position(sample_position)
        assert await db.get_position(sample_position.id) is not None

        await db.close()

    def test_sync_sqlite_url_is_converted(self):
        """Plain sqlite URLs get the async driver."""
        db = Database("sqlite:///./data/test.db")

        assert db.url == "sqlite+aiosqlite:///./data/test.db"


# =============================================================================
# Position Snapshot Tests
# =============================================================================

class TestPositionSnapshots:
    """Test saving and restoring positions."""

    @pytest.mark.asyncio
    async def test_round_trip_preserves_state(self, test_database, sample_position):
        """Every field needed to resume monitoring survives a save/load."""
        await test_database.save_position(sample_position)

        restored = await test_database.get_position(sample_position.id)

        assert restored.token_id == TOKEN
        assert restored.entry_price == Decimal("0.1")
        assert restored.remaining_amount == Decimal("700")
        assert restored.cost_basis == Decimal("70")
        assert restored.highest_price == Decimal("0.12")
        assert restored.last_applied_ts == ts(30)
        assert restored.opened_at == T0
        assert restored.thresholds == sample_position.thresholds
        assert restored.metadata == {"risk_score": 40}

    @pytest.mark.asyncio
    async def test_fired_set_and_exits_survive(self, test_database, sample_position):
        """The fired-trigger set and the exit audit trail are restored exactly."""
        await test_database.save_position(sample_position)

        restored = await test_database.get_position(sample_position.id)

        assert restored.fired_triggers == sample_position.fired_triggers
        assert len(restored.exits) == 1
        assert restored.exits[0].amount == Decimal("300")
        assert restored.exits[0].signature == "sig-1"
        assert restored.sold_amount == restored.entry_amount - restored.remaining_amount

    @pytest.mark.asyncio
    async def test_decimals_are_exact(self, test_database, sample_position):
        """Decimal values are not routed through float."""
        sample_position.current_price = Decimal("0.1000000000000000001")
        await test_database.save_position(sample_position)

        restored = await test_database.get_position(sample_position.id)

        assert restored.current_price == Decimal("0.1000000000000000001")

    @pytest.mark.asyncio
    async def test_save_updates_existing_row(self, test_database, sample_position):
        """Saving again overwrites rather than duplicating."""
        await test_database.save_position(sample_position)
        sample_position.active = False
        sample_position.exit_reason = TriggerKind.STOP_LOSS
        sample_position.exited_at = ts(60)

        await test_database.save_position(sample_position)

        positions = await test_database.load_positions()
        assert len(positions) == 1
        assert not positions[0].active
        assert positions[0].exit_reason is TriggerKind.STOP_LOSS

    @pytest.mark.asyncio
    async def test_load_active_only(self, test_database, sample_position):
        """Closed positions are filtered out on request and ordered by open time."""
        closed = sample_position.model_copy(
            update={"id": "closed-1", "active": False, "opened_at": T0 - timedelta(days=1)}
        )

        saved = await test_database.save_positions([sample_position, closed])

        assert saved == 2
        everything = await test_database.load_positions()
        assert [p.id for p in everything] == ["closed-1", sample_position.id]
        active = await test_database.load_positions(active_only=True)
        assert [p.id for p in active] == [sample_position.id]

    @pytest.mark.asyncio
    async def test_get_missing_position(self, test_database):
        """Unknown ids return None."""
        assert await test_database.get_position("missing") is None
