"""Database storage for position snapshots."""
import json
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import Boolean, Column, DateTime, JSON, String, Text, TypeDecorator, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from exit_engine.core.config import database_config
from exit_engine.core.models import (
    ExitRecord,
    ExitThresholds,
    Position,
    TriggerKey,
    TriggerKind,
)

logger = structlog.get_logger(__name__)

Base = declarative_base()


class DecimalString(TypeDecorator):
    """Decimal stored as text so values round-trip exactly on SQLite."""
    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class PositionModel(Base):
    """SQLAlchemy model for positions."""
    __tablename__ = 'positions'

    id = Column(String, primary_key=True)
    token_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    active = Column(Boolean, nullable=False, default=True, index=True)

    entry_price = Column(DecimalString, nullable=False)
    entry_amount = Column(DecimalString, nullable=False)
    invested_capital = Column(DecimalString, nullable=False)
    entry_signature = Column(String, nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=False)

    remaining_amount = Column(DecimalString, nullable=False)
    cost_basis = Column(DecimalString, nullable=False)
    current_price = Column(DecimalString, nullable=False)
    highest_price = Column(DecimalString, nullable=False)
    trailing_active = Column(Boolean, default=False)
    trailing_stop_price = Column(DecimalString, nullable=True)
    last_applied_ts = Column(DateTime(timezone=True), nullable=True)

    realized_pnl = Column(DecimalString, default=Decimal("0"))
    exit_reason = Column(String, nullable=True)
    exit_level = Column(DecimalString, nullable=True)
    exited_at = Column(DateTime(timezone=True), nullable=True)
    final_pnl = Column(DecimalString, nullable=True)
    final_pnl_pct = Column(DecimalString, nullable=True)

    # Ladder, fired set and exit records
    thresholds_json = Column(Text, nullable=False)
    fired_triggers_json = Column(JSON, default=list)
    exits_json = Column(Text, default="[]")
    metadata_json = Column(JSON, default=dict)


class Database:
    """Async database interface."""

    def __init__(self, db_url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = db_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession)

    async def initialize(self):
        """Create tables."""
        database = self.engine.url.database
        if self.engine.url.get_backend_name() == "sqlite" and database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=self.engine.url.render_as_string(hide_password=True))

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Position operations
    async def save_position(self, position: Position):
        """Save or update a position."""
        await self.save_positions([position])

    async def save_positions(self, positions: Iterable[Position]) -> int:
        """Upsert a batch of positions in one transaction."""
        count = 0
        async with self.session_maker() as session:
            for position in positions:
                db_position = await session.get(PositionModel, position.id)
                if db_position is None:
                    db_position = PositionModel(id=position.id)
                    session.add(db_position)
                self._fill_model(db_position, position)
                count += 1
            await session.commit()
        logger.debug("database.positions_saved", count=count)
        return count

    async def get_position(self, position_id: str) -> Optional[Position]:
        """Get a position by ID."""
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position_id)
            if db_position is None:
                return None
            return self._position_from_model(db_position)

    async def load_positions(self, active_only: bool = False) -> List[Position]:
        """Load persisted positions, oldest first."""
        async with self.session_maker() as session:
            query = select(PositionModel).order_by(PositionModel.opened_at)
            if active_only:
                query = query.where(PositionModel.active.is_(True))
            result = await session.execute(query)
            return [self._position_from_model(p) for p in result.scalars().all()]

    # Helpers
    def _fill_model(self, model: PositionModel, position: Position) -> None:
        """Copy position state onto the DB model."""
        model.token_id = position.token_id
        model.symbol = position.symbol
        model.active = position.active
        model.entry_price = position.entry_price
        model.entry_amount = position.entry_amount
        model.invested_capital = position.invested_capital
        model.entry_signature = position.entry_signature
        model.opened_at = position.opened_at
        model.remaining_amount = position.remaining_amount
        model.cost_basis = position.cost_basis
        model.current_price = position.current_price
        model.highest_price = position.highest_price
        model.trailing_active = position.trailing_active
        model.trailing_stop_price = position.trailing_stop_price
        model.last_applied_ts = position.last_applied_ts
        model.realized_pnl = position.realized_pnl
        model.exit_reason = position.exit_reason.value if position.exit_reason else None
        model.exit_level = position.exit_level
        model.exited_at = position.exited_at
        model.final_pnl = position.final_pnl
        model.final_pnl_pct = position.final_pnl_pct
        model.thresholds_json = position.thresholds.model_dump_json()
        model.fired_triggers_json = sorted(
            (
                {"kind": key.kind.value, "level": str(key.level) if key.level is not None else None}
                for key in position.fired_triggers
            ),
            key=lambda item: (item["kind"], item["level"] or ""),
        )
        model.exits_json = json.dumps([json.loads(record.model_dump_json()) for record in position.exits])
        model.metadata_json = position.metadata

    def _position_from_model(self, model: PositionModel) -> Position:
        """Convert DB model to Position object."""
        fired = {
            TriggerKey(
                kind=TriggerKind(item["kind"]),
                level=Decimal(item["level"]) if item.get("level") is not None else None,
            )
            for item in (model.fired_triggers_json or [])
        }
        return Position(
            id=model.id,
            token_id=model.token_id,
            symbol=model.symbol,
            active=model.active,
            entry_price=model.entry_price,
            entry_amount=model.entry_amount,
            invested_capital=model.invested_capital,
            entry_signature=model.entry_signature,
            opened_at=_aware(model.opened_at),
            remaining_amount=model.remaining_amount,
            cost_basis=model.cost_basis,
            current_price=model.current_price,
            highest_price=model.highest_price,
            trailing_active=bool(model.trailing_active),
            trailing_stop_price=model.trailing_stop_price,
            last_applied_ts=_aware(model.last_applied_ts),
            realized_pnl=model.realized_pnl,
            exit_reason=TriggerKind(model.exit_reason) if model.exit_reason else None,
            exit_level=model.exit_level,
            exited_at=_aware(model.exited_at),
            final_pnl=model.final_pnl,
            final_pnl_pct=model.final_pnl_pct,
            thresholds=ExitThresholds.model_validate_json(model.thresholds_json),
            fired_triggers=fired,
            exits=[ExitRecord.model_validate(item) for item in json.loads(model.exits_json or "[]")],
            metadata=model.metadata_json or {},
        )
