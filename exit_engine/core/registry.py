"""Position registry - the only shared mutable structure in the engine.

Positions live in a map keyed by position id. Every entry carries its own
asyncio.Lock, so mutations on one position are serialized while different
positions proceed independently. Readers get detached snapshots and never
wait on a writer.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Union

import structlog

from exit_engine.core.exceptions import (
    DataInconsistency,
    DuplicateActivePosition,
    PositionNotFound,
    StaleEventDiscarded,
)
from exit_engine.core.models import (
    BalanceUpdate,
    ExitRecord,
    ExitThresholds,
    Position,
    PriceUpdate,
    TriggerKey,
    TriggerKind,
    to_decimal,
    utc_now,
)

logger = structlog.get_logger(__name__)


@dataclass
class _Entry:
    position: Position
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class PositionRegistry:
    """
    Owns the authoritative state of every position.

    Operations:
    - register(): create a new active position (one per asset)
    - apply_update(): timestamp-gated price/balance updates
    - apply_partial_exit() / apply_full_exit(): record executed sells
    - mark_fired(): record a trigger as executed

    Deactivated positions are retained for audit.
    """

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}
        self._active_by_token: Dict[str, str] = {}
        self.stale_discarded = 0
        self.inactive_discarded = 0

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def register(
        self,
        token_id: str,
        entry_price: Decimal,
        amount: Decimal,
        invested_capital: Decimal,
        thresholds: ExitThresholds,
        **extra,
    ) -> str:
        """Register a newly bought position and return its id.

        Raises:
            DuplicateActivePosition: An active position exists for token_id
        """
        existing = self._active_by_token.get(token_id)
        if existing is not None:
            raise DuplicateActivePosition(token_id, existing)

        position = Position(
            token_id=token_id,
            entry_price=to_decimal(entry_price),
            entry_amount=to_decimal(amount),
            invested_capital=to_decimal(invested_capital),
            thresholds=thresholds,
            **extra,
        )
        self._entries[position.id] = _Entry(position)
        self._active_by_token[token_id] = position.id

        logger.info(
            "registry.position_registered",
            position_id=position.id,
            token_id=token_id,
            entry_price=str(position.entry_price),
            amount=str(position.entry_amount),
            stop_loss_price=str(thresholds.stop_loss_price),
            take_profit_price=str(thresholds.take_profit_price),
        )
        return position.id

    def restore(self, position: Position) -> None:
        """Load a persisted position back into the registry."""
        if position.active:
            existing = self._active_by_token.get(position.token_id)
            if existing is not None and existing != position.id:
                raise DuplicateActivePosition(position.token_id, existing)
            self._active_by_token[position.token_id] = position.id
        self._entries[position.id] = _Entry(position)
        logger.info(
            "registry.position_restored",
            position_id=position.id,
            token_id=position.token_id,
            active=position.active,
            fired=sorted(str(key) for key in position.fired_triggers),
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _entry(self, position_id: str) -> _Entry:
        entry = self._entries.get(position_id)
        if entry is None:
            raise PositionNotFound(position_id)
        return entry

    def get(self, position_id: str) -> Position:
        """Snapshot of a single position."""
        return self._entry(position_id).position.snapshot()

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def is_active(self, position_id: str) -> bool:
        entry = self._entries.get(position_id)
        return entry is not None and entry.position.active

    def active_id_for_token(self, token_id: str) -> Optional[str]:
        return self._active_by_token.get(token_id)

    def snapshot(self, active_only: bool = False) -> List[Position]:
        """Eventually consistent copies of all (or all active) positions."""
        return [
            entry.position.snapshot()
            for entry in list(self._entries.values())
            if entry.position.active or not active_only
        ]

    def active_ids(self) -> List[str]:
        return [pid for pid, entry in list(self._entries.items()) if entry.position.active]

    def current_exposure(self) -> Decimal:
        """Base currency still committed to active positions."""
        return sum(
            (entry.position.cost_basis for entry in list(self._entries.values())
             if entry.position.active),
            Decimal("0"),
        )

    def lock_for(self, position_id: str) -> asyncio.Lock:
        """Serialization primitive for a position."""
        return self._entry(position_id).lock

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    async def apply_update(self, position_id: str, event: Union[PriceUpdate, BalanceUpdate]) -> bool:
        """Apply a price or balance observation.

        Returns False without mutating anything when the position is inactive
        or the event is not newer than the last applied one.

        Raises:
            DataInconsistency: A balance observation is negative or exceeds
                the entry amount
        """
        entry = self._entry(position_id)
        async with entry.lock:
            position = entry.position

            if not position.active:
                self.inactive_discarded += 1
                logger.debug("registry.update_discarded", position_id=position_id, reason="inactive")
                return False

            try:
                self._require_newer(position, event)
            except StaleEventDiscarded as e:
                self.stale_discarded += 1
                logger.debug(
                    "registry.update_discarded",
                    position_id=position_id,
                    reason="stale",
                    detail=str(e),
                )
                return False

            if isinstance(event, PriceUpdate):
                self._apply_price(position, event.price)
            else:
                self._apply_balance(position, to_decimal(event.amount), event)

            position.last_applied_ts = event.ts
            return True

    def _apply_price(self, position: Position, price: Decimal) -> None:
        position.current_price = price

        if price > position.highest_price:
            position.highest_price = price

        thresholds = position.thresholds
        if thresholds.trailing_activation_pct is not None:
            if not position.trailing_active and \
                    position.pnl_pct(position.highest_price) >= thresholds.trailing_activation_pct:
                position.trailing_active = True
                logger.info(
                    "registry.trailing_armed",
                    position_id=position.id,
                    highest_price=str(position.highest_price),
                )
            if position.trailing_active:
                position.trailing_stop_price = position.highest_price * (
                    1 - thresholds.trailing_distance_pct
                )

    def _apply_balance(self, position: Position, amount: Decimal, event: BalanceUpdate) -> None:
        if amount < 0 or amount > position.entry_amount:
            logger.critical(
                "registry.data_inconsistency",
                position_id=position.id,
                observed_amount=str(amount),
                entry_amount=str(position.entry_amount),
            )
            raise DataInconsistency(
                position.id,
                f"observed balance {amount} outside [0, {position.entry_amount}]",
            )

        if amount > position.remaining_amount:
            logger.warning(
                "registry.balance_above_remaining",
                position_id=position.id,
                observed_amount=str(amount),
                remaining_amount=str(position.remaining_amount),
            )
            return

        if amount == position.remaining_amount:
            return

        # Sold outside the engine: account for it so the sold-amount invariant holds
        sold = position.remaining_amount - amount
        fraction = sold / position.remaining_amount
        basis = position.cost_basis * fraction
        position.exits.append(
            ExitRecord(
                kind=TriggerKind.EXTERNAL_CLOSE,
                amount=sold,
                fraction_of_entry=sold / position.entry_amount,
                signature=event.signature,
                executed_at=event.ts,
            )
        )
        position.remaining_amount = amount
        position.cost_basis -= basis

        logger.warning(
            "registry.external_reduction",
            position_id=position.id,
            sold=str(sold),
            remaining_amount=str(amount),
        )

        if amount == 0:
            self._deactivate(position, TriggerKind.EXTERNAL_CLOSE, None, event.ts)

    # -------------------------------------------------------------------------
    # Exits
    # -------------------------------------------------------------------------

    async def apply_partial_exit(
        self,
        position_id: str,
        sold_fraction: Decimal,
        proceeds: Decimal,
        level: Optional[Decimal],
        kind: TriggerKind = TriggerKind.PARTIAL_TAKE_PROFIT,
        signature: Optional[str] = None,
    ) -> Position:
        """Record a sell of ``sold_fraction`` of the remaining amount.

        Raises:
            DataInconsistency: The remaining amount would go negative. No
                mutation happens in that case.
        """
        entry = self._entry(position_id)
        async with entry.lock:
            position = entry.position
            self._require_active(position)

            sold_fraction = to_decimal(sold_fraction)
            sold = position.remaining_amount * sold_fraction
            remaining = position.remaining_amount - sold
            if sold_fraction < 0 or remaining < 0:
                logger.critical(
                    "registry.data_inconsistency",
                    position_id=position_id,
                    sold_fraction=str(sold_fraction),
                    remaining_amount=str(position.remaining_amount),
                )
                raise DataInconsistency(
                    position_id,
                    f"selling fraction {sold_fraction} would leave {remaining}",
                )

            self._record_exit(position, kind, level, sold, sold_fraction, to_decimal(proceeds), signature)
            position.remaining_amount = remaining

            logger.info(
                "registry.partial_exit_applied",
                position_id=position_id,
                kind=kind.value,
                level=str(level) if level is not None else None,
                sold=str(sold),
                remaining_amount=str(remaining),
            )
            return position.snapshot()

    async def apply_full_exit(
        self,
        position_id: str,
        proceeds: Decimal,
        reason: TriggerKind,
        level: Optional[Decimal] = None,
        signature: Optional[str] = None,
    ) -> Position:
        """Record the sale of everything that remains and deactivate."""
        entry = self._entry(position_id)
        async with entry.lock:
            position = entry.position
            self._require_active(position)

            sold = position.remaining_amount
            self._record_exit(position, reason, level, sold, Decimal("1"), to_decimal(proceeds), signature)
            position.remaining_amount = Decimal("0")
            self._deactivate(position, reason, level, utc_now())
            return position.snapshot()

    async def mark_fired(self, position_id: str, key: TriggerKey) -> None:
        """Record a trigger as executed (audit only, allowed after close)."""
        entry = self._entry(position_id)
        async with entry.lock:
            entry.position.fired_triggers.add(key)

    @staticmethod
    def _require_newer(position: Position, event: Union[PriceUpdate, BalanceUpdate]) -> None:
        last = position.last_applied_ts
        if last is not None and event.ts <= last:
            raise StaleEventDiscarded(
                f"event at {event.ts.isoformat()} is not after {last.isoformat()}"
            )

    def _require_active(self, position: Position) -> None:
        if not position.active:
            raise DataInconsistency(position.id, "position is no longer active")

    def _record_exit(
        self,
        position: Position,
        kind: TriggerKind,
        level: Optional[Decimal],
        sold: Decimal,
        sold_fraction: Decimal,
        proceeds: Decimal,
        signature: Optional[str],
    ) -> None:
        basis = position.cost_basis * sold_fraction
        pnl = proceeds - basis
        position.exits.append(
            ExitRecord(
                kind=kind,
                level=level,
                amount=sold,
                fraction_of_entry=sold / position.entry_amount,
                proceeds=proceeds,
                realized_pnl=pnl,
                signature=signature,
            )
        )
        position.cost_basis -= basis
        position.realized_pnl += pnl

    def _deactivate(
        self,
        position: Position,
        reason: TriggerKind,
        level: Optional[Decimal],
        at,
    ) -> None:
        position.active = False
        position.exit_reason = reason
        position.exit_level = level
        position.exited_at = at
        position.final_pnl = position.realized_pnl
        if position.invested_capital > 0:
            position.final_pnl_pct = position.realized_pnl / position.invested_capital * 100
        if self._active_by_token.get(position.token_id) == position.id:
            del self._active_by_token[position.token_id]

        logger.info(
            "registry.position_deactivated",
            position_id=position.id,
            token_id=position.token_id,
            reason=reason.value,
            final_pnl=str(position.final_pnl),
        )
