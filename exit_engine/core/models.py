"""Data models for the exit engine.

This module defines the structures that flow through the monitoring pipeline:
- Position: authoritative per-position state owned by the registry
- PriceUpdate / BalanceUpdate: canonical, timestamped trigger events
- ExitDecision: the evaluator's verdict, ordered by trigger priority
- Quote / SwapResult / DispatchOutcome: execution boundary and results
- NotificationEvent: what the notification sink receives

All monetary values use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_decimal(value: Union[Decimal, float, int, str]) -> Decimal:
    """Convert without picking up binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# =============================================================================
# Enums
# =============================================================================

class TriggerKind(str, Enum):
    """Exit trigger kinds, declared in evaluation priority order."""
    EMERGENCY_STOP = "emergency_stop"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    PARTIAL_TAKE_PROFIT = "partial_take_profit"
    TAKE_PROFIT = "take_profit"
    # Not produced by the evaluator
    MANUAL_CLOSE = "manual_close"
    EXTERNAL_CLOSE = "external_close"

    @property
    def priority(self) -> int:
        """Lower value wins when several triggers hold at once."""
        return list(TriggerKind).index(self)

    @property
    def is_partial(self) -> bool:
        return self is TriggerKind.PARTIAL_TAKE_PROFIT


class NotificationType(str, Enum):
    """Structured events published to the notification sink."""
    SELL_EXECUTED = "sell_executed"
    SELL_FAILED = "sell_failed"
    POSITION_REGISTERED = "position_registered"
    POSITION_CLOSED = "position_closed"


class OutcomeStatus(str, Enum):
    """Result of a single dispatch call."""
    EXECUTED = "executed"
    FAILED = "failed"
    COALESCED = "coalesced"   # Another dispatch for the position was in flight
    SKIPPED = "skipped"       # Nothing to do (inactive, already fired, none)


class EventSource(str, Enum):
    """Where a trigger event came from."""
    POLL = "poll"
    PUSH = "push"


# =============================================================================
# Thresholds
# =============================================================================

class TakeProfitLevel(BaseModel):
    """One rung of the partial take-profit ladder.

    Attributes:
        gain_pct: PnL fraction at which the rung fires (0.15 = +15%)
        sell_fraction: Fraction of the *remaining* amount sold when it fires
    """
    model_config = ConfigDict(frozen=True)

    gain_pct: Decimal = Field(..., gt=0, description="Gain fraction")
    sell_fraction: Decimal = Field(..., gt=0, le=1, description="Fraction of remaining")


class TriggerKey(BaseModel):
    """Identity of a trigger for fire-once bookkeeping."""
    model_config = ConfigDict(frozen=True)

    kind: TriggerKind
    level: Optional[Decimal] = None

    def __str__(self) -> str:
        if self.level is None:
            return self.kind.value
        return f"{self.kind.value}@{self.level}"


class ExitThresholds(BaseModel):
    """Exit configuration captured on a position at registration time.

    Attributes:
        stop_loss_price: Absolute price floor for a full exit
        emergency_stop_pct: PnL fraction (negative) for the hard stop
        take_profit_price: Absolute price ceiling for a full exit
        trailing_activation_pct: PnL fraction that arms the trailing stop
            (None disables trailing)
        trailing_distance_pct: Allowed pullback from the peak once armed
        ladder: Partial take-profit rungs, ascending by gain
    """
    stop_loss_price: Decimal = Field(..., ge=0)
    emergency_stop_pct: Decimal = Field(..., lt=0)
    take_profit_price: Optional[Decimal] = Field(default=None, gt=0)
    trailing_activation_pct: Optional[Decimal] = Field(default=None, gt=0)
    trailing_distance_pct: Decimal = Field(default=Decimal("0.05"), gt=0, lt=1)
    ladder: List[TakeProfitLevel] = Field(default_factory=list)

    @field_validator("ladder")
    @classmethod
    def sort_ladder(cls, v: List[TakeProfitLevel]) -> List[TakeProfitLevel]:
        """Keep rungs in ascending gain order and reject duplicates."""
        gains = [level.gain_pct for level in v]
        if len(set(gains)) != len(gains):
            raise ValueError("Ladder gains must be unique")
        return sorted(v, key=lambda level: level.gain_pct)

    @classmethod
    def from_config(cls, entry_price: Decimal, config) -> "ExitThresholds":
        """Build thresholds from an ExitThresholdConfig relative to entry."""
        entry_price = to_decimal(entry_price)
        return cls(
            stop_loss_price=entry_price * (1 + to_decimal(config.stop_loss_pct)),
            emergency_stop_pct=to_decimal(config.emergency_stop_pct),
            take_profit_price=entry_price * (1 + to_decimal(config.take_profit_pct)),
            trailing_activation_pct=(
                to_decimal(config.trailing_activation_pct)
                if config.trailing_stop_enabled else None
            ),
            trailing_distance_pct=to_decimal(config.trailing_distance_pct),
            ladder=[
                TakeProfitLevel(gain_pct=gain, sell_fraction=fraction)
                for gain, fraction in config.partial_take_profit_ladder
            ],
        )

    @classmethod
    def from_sizing(
        cls,
        entry_price: Decimal,
        sizing: "SizingResult",
        config,
        take_profit_1_sell_fraction: Decimal = Decimal("0.4"),
    ) -> "ExitThresholds":
        """Build thresholds from a sizing result.

        Take-profit-1 becomes a partial rung, take-profit-2 the full exit.
        Emergency stop and trailing distance come from ExitThresholdConfig.
        """
        entry_price = to_decimal(entry_price)
        return cls(
            stop_loss_price=entry_price * (1 - sizing.stop_loss_pct),
            emergency_stop_pct=to_decimal(config.emergency_stop_pct),
            take_profit_price=entry_price * (1 + sizing.take_profit_2_pct),
            trailing_activation_pct=sizing.trailing_activation_pct,
            trailing_distance_pct=to_decimal(config.trailing_distance_pct),
            ladder=[
                TakeProfitLevel(
                    gain_pct=sizing.take_profit_1_pct,
                    sell_fraction=to_decimal(take_profit_1_sell_fraction),
                )
            ],
        )


# =============================================================================
# Position Models
# =============================================================================

class ExitRecord(BaseModel):
    """One executed (or externally observed) reduction of a position."""
    kind: TriggerKind
    level: Optional[Decimal] = None
    amount: Decimal = Field(..., ge=0, description="Asset amount sold")
    fraction_of_entry: Decimal = Field(..., ge=0, le=1)
    proceeds: Decimal = Field(default=Decimal("0"), description="Base currency received")
    realized_pnl: Decimal = Field(default=Decimal("0"))
    signature: Optional[str] = None
    executed_at: datetime = Field(default_factory=utc_now)


class Position(BaseModel):
    """Authoritative state of a monitored position.

    Invariants (enforced by the registry):
    - 0 <= remaining_amount <= entry_amount
    - entry_amount - remaining_amount == sum of exit record amounts
    - nothing but audit fields changes once active is False

    Attributes:
        id: Position ID
        token_id: Asset (mint) being held
        entry_price: Price paid per unit at entry
        entry_amount: Units bought
        invested_capital: Base currency spent at entry
        remaining_amount: Units still held
        cost_basis: Part of invested_capital attributable to remaining units
        current_price: Last applied price
        highest_price: Peak price observed since entry
        trailing_active: Whether the trailing stop has been armed
        trailing_stop_price: Current trailing stop level once armed
        last_applied_ts: Timestamp of the last applied event
        fired_triggers: Trigger keys that already executed
        exits: Executed exit records
    """

    # Identity
    token_id: str = Field(..., description="Asset id / mint address")
    id: str = Field(default_factory=lambda: str(uuid4()), description="Position ID")
    symbol: Optional[str] = Field(default=None, description="Display symbol")

    # Entry state
    entry_price: Decimal = Field(..., gt=0)
    entry_amount: Decimal = Field(..., gt=0)
    invested_capital: Decimal = Field(..., ge=0)
    opened_at: datetime = Field(default_factory=utc_now)
    entry_signature: Optional[str] = None

    # Live state
    remaining_amount: Decimal = Field(default=Decimal("-1"))
    cost_basis: Decimal = Field(default=Decimal("-1"))
    current_price: Decimal = Field(default=Decimal("0"), ge=0)
    highest_price: Decimal = Field(default=Decimal("0"), ge=0)
    trailing_active: bool = False
    trailing_stop_price: Optional[Decimal] = None
    active: bool = True
    last_applied_ts: Optional[datetime] = None

    # Configuration
    thresholds: ExitThresholds

    # Audit
    fired_triggers: Set[TriggerKey] = Field(default_factory=set)
    exits: List[ExitRecord] = Field(default_factory=list)
    realized_pnl: Decimal = Field(default=Decimal("0"))
    exit_reason: Optional[TriggerKind] = None
    exit_level: Optional[Decimal] = None
    exited_at: Optional[datetime] = None
    final_pnl: Optional[Decimal] = None
    final_pnl_pct: Optional[Decimal] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        # Sentinels mean "not provided": start from the entry state
        if self.remaining_amount < 0:
            self.remaining_amount = self.entry_amount
        if self.cost_basis < 0:
            self.cost_basis = self.invested_capital
        if self.current_price == 0:
            self.current_price = self.entry_price
        if self.highest_price == 0:
            self.highest_price = self.entry_price

    @property
    def sold_amount(self) -> Decimal:
        """Units sold across all exits."""
        return sum((record.amount for record in self.exits), Decimal("0"))

    @property
    def remaining_fraction(self) -> Decimal:
        """Remaining units as a fraction of the entry amount."""
        return self.remaining_amount / self.entry_amount

    @property
    def sold_fraction(self) -> Decimal:
        """Sum of executed sell fractions, relative to the entry amount."""
        return sum((record.fraction_of_entry for record in self.exits), Decimal("0"))

    def pnl_pct(self, price: Optional[Decimal] = None) -> Decimal:
        """PnL fraction of ``price`` (default: current price) against entry."""
        price = self.current_price if price is None else price
        return (price - self.entry_price) / self.entry_price

    @property
    def current_value(self) -> Decimal:
        return self.remaining_amount * self.current_price

    @property
    def unrealized_pnl(self) -> Decimal:
        return self.current_value - self.cost_basis

    def has_fired(self, key: TriggerKey) -> bool:
        return key in self.fired_triggers

    def snapshot(self) -> "Position":
        """Detached copy safe to hand to readers."""
        return self.model_copy(deep=True)

    def summary(self) -> Dict[str, Any]:
        """Flat, JSON-friendly view used in notifications and status."""
        return {
            "id": self.id,
            "token_id": self.token_id,
            "symbol": self.symbol,
            "active": self.active,
            "entry_price": str(self.entry_price),
            "current_price": str(self.current_price),
            "highest_price": str(self.highest_price),
            "entry_amount": str(self.entry_amount),
            "remaining_amount": str(self.remaining_amount),
            "invested_capital": str(self.invested_capital),
            "realized_pnl": str(self.realized_pnl),
            "pnl_pct": str(round(self.pnl_pct() * 100, 4)),
            "fired_triggers": sorted(str(key) for key in self.fired_triggers),
            "exit_reason": self.exit_reason.value if self.exit_reason else None,
        }


# =============================================================================
# Trigger Events
# =============================================================================

class TriggerEvent(BaseModel):
    """A timestamped observation for one position."""
    model_config = ConfigDict(frozen=True)

    position_id: str
    ts: datetime = Field(default_factory=utc_now)
    source: EventSource = EventSource.POLL
    signature: Optional[str] = None


class PriceUpdate(TriggerEvent):
    """A price observation."""
    price: Decimal = Field(..., gt=0)


class BalanceUpdate(TriggerEvent):
    """A wallet balance observation for the position's asset."""
    amount: Decimal


# =============================================================================
# Decisions
# =============================================================================

@dataclass(frozen=True)
class ExitDecision:
    """Verdict of the trigger evaluator.

    ``kind`` is None for "no exit". Non-None decisions carry the fraction of
    the *remaining* amount to sell: 1 for full exits, the rung's fraction for
    partial take-profit.
    """
    kind: Optional[TriggerKind] = None
    sell_fraction: Decimal = Decimal("0")
    level: Optional[TakeProfitLevel] = None
    pnl_pct: Decimal = Decimal("0")

    @classmethod
    def none(cls, pnl_pct: Decimal = Decimal("0")) -> "ExitDecision":
        return cls(pnl_pct=pnl_pct)

    @classmethod
    def full(cls, kind: TriggerKind, pnl_pct: Decimal = Decimal("0")) -> "ExitDecision":
        return cls(kind=kind, sell_fraction=Decimal("1"), pnl_pct=pnl_pct)

    @classmethod
    def partial(cls, level: TakeProfitLevel, pnl_pct: Decimal = Decimal("0")) -> "ExitDecision":
        return cls(
            kind=TriggerKind.PARTIAL_TAKE_PROFIT,
            sell_fraction=level.sell_fraction,
            level=level,
            pnl_pct=pnl_pct,
        )

    @property
    def is_exit(self) -> bool:
        return self.kind is not None

    @property
    def is_full(self) -> bool:
        """True when the decision liquidates everything that remains."""
        return self.is_exit and self.sell_fraction >= 1

    @property
    def trigger_key(self) -> Optional[TriggerKey]:
        if self.kind is None:
            return None
        return TriggerKey(
            kind=self.kind,
            level=self.level.gain_pct if self.level is not None else None,
        )

    def __str__(self) -> str:
        return str(self.trigger_key) if self.is_exit else "none"


# =============================================================================
# Sizing
# =============================================================================

class SizingResult(BaseModel):
    """Output of risk sizing at open time."""
    position_size: Decimal = Field(..., gt=0, description="Base currency to invest")
    risk_multiplier: Decimal
    portfolio_exposure_pct: Decimal = Field(..., description="Exposure after the trade")
    stop_loss_pct: Decimal
    take_profit_1_pct: Decimal
    take_profit_2_pct: Decimal
    trailing_activation_pct: Decimal


# =============================================================================
# Execution Boundary
# =============================================================================

class Quote(BaseModel):
    """A swap quote from the execution service (UI units)."""
    in_asset: str
    out_asset: str
    in_amount: Decimal
    out_amount: Decimal
    price_impact_pct: Decimal = Decimal("0")
    slippage_bps: int = 0
    raw: Dict[str, Any] = Field(default_factory=dict)


class SwapResult(BaseModel):
    """A confirmed swap."""
    signature: str
    output_amount: Decimal
    input_amount: Optional[Decimal] = None


class PriceQuote(BaseModel):
    """A price observation from the oracle."""
    price: Decimal
    liquidity: Optional[Decimal] = None
    observed_at: datetime = Field(default_factory=utc_now)


@dataclass
class DispatchOutcome:
    """What happened to one dispatch call."""
    position_id: str
    decision: ExitDecision
    status: OutcomeStatus
    sell_amount: Decimal = Decimal("0")
    proceeds: Decimal = Decimal("0")
    pnl_percent: Decimal = Decimal("0")
    signature: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def executed(self) -> bool:
        return self.status is OutcomeStatus.EXECUTED


# =============================================================================
# Notifications
# =============================================================================

class NotificationEvent(BaseModel):
    """Structured event handed to notification sinks."""
    type: NotificationType
    position: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None
    pnl_percent: Optional[Decimal] = None
    sell_fraction: Optional[Decimal] = None
    proceeds: Optional[Decimal] = None
    signature: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def for_position(cls, type: NotificationType, position: Position, **kwargs) -> "NotificationEvent":
        return cls(type=type, position=position.summary(), **kwargs)


@dataclass
class EngineStats:
    """Counters kept by the engine for observability."""
    triggers: Dict[str, int] = field(default_factory=dict)
    sells_executed: int = 0
    sells_failed: int = 0
    dispatches_coalesced: int = 0
    events_applied: int = 0
    events_stale: int = 0
    events_inactive: int = 0
    push_ignored: int = 0
    push_duplicates: int = 0
    snapshots_written: int = 0

    def record_trigger(self, kind: TriggerKind) -> None:
        self.triggers[kind.value] = self.triggers.get(kind.value, 0) + 1

    def as_dict(self) -> Dict[str, Any]:
        return {
            "triggers": dict(self.triggers),
            "sells_executed": self.sells_executed,
            "sells_failed": self.sells_failed,
            "dispatches_coalesced": self.dispatches_coalesced,
            "events_applied": self.events_applied,
            "events_stale": self.events_stale,
            "events_inactive": self.events_inactive,
            "push_ignored": self.push_ignored,
            "push_duplicates": self.push_duplicates,
            "snapshots_written": self.snapshots_written,
        }
