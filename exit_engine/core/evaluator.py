"""Trigger evaluator - maps a position's state to an exit decision.

Pure: reads the position, never mutates it, performs no I/O. Checks run in
fixed priority order and the first match wins:

    EmergencyStop > StopLoss > TrailingStop > PartialTakeProfit > TakeProfit

A trigger already present in the position's fired set is never returned.
Only one partial take-profit rung is returned per call; the caller
re-evaluates after each applied exit so later rungs see the reduced position.
"""
from decimal import Decimal
from typing import Optional

import structlog

from exit_engine.core.models import (
    ExitDecision,
    Position,
    TakeProfitLevel,
    TriggerKey,
    TriggerKind,
)

logger = structlog.get_logger(__name__)


class TriggerEvaluator:
    """Stateless exit decision function."""

    def evaluate(self, position: Position) -> ExitDecision:
        """
        Decide whether, and how much of, the position should be sold.

        Args:
            position: Current position state (highest price already updated)

        Returns:
            ExitDecision; ``ExitDecision.none()`` when no trigger holds
        """
        if not position.active or position.remaining_amount <= 0:
            return ExitDecision.none()

        pnl_pct = position.pnl_pct()
        thresholds = position.thresholds

        if pnl_pct <= thresholds.emergency_stop_pct and \
                self._unfired(position, TriggerKind.EMERGENCY_STOP):
            return self._decide(position, ExitDecision.full(TriggerKind.EMERGENCY_STOP, pnl_pct))

        if position.current_price <= thresholds.stop_loss_price and \
                self._unfired(position, TriggerKind.STOP_LOSS):
            return self._decide(position, ExitDecision.full(TriggerKind.STOP_LOSS, pnl_pct))

        if self._trailing_hit(position) and \
                self._unfired(position, TriggerKind.TRAILING_STOP):
            return self._decide(position, ExitDecision.full(TriggerKind.TRAILING_STOP, pnl_pct))

        level = self._first_open_rung(position, pnl_pct)
        if level is not None:
            return self._decide(position, ExitDecision.partial(level, pnl_pct))

        if thresholds.take_profit_price is not None and \
                position.current_price >= thresholds.take_profit_price and \
                self._unfired(position, TriggerKind.TAKE_PROFIT):
            return self._decide(position, ExitDecision.full(TriggerKind.TAKE_PROFIT, pnl_pct))

        return ExitDecision.none(pnl_pct)

    def _trailing_hit(self, position: Position) -> bool:
        thresholds = position.thresholds
        if thresholds.trailing_activation_pct is None or not position.trailing_active:
            return False
        floor = position.highest_price * (1 - thresholds.trailing_distance_pct)
        return position.current_price <= floor

    def _first_open_rung(self, position: Position, pnl_pct: Decimal) -> Optional[TakeProfitLevel]:
        # Ladder is kept in ascending gain order
        for level in position.thresholds.ladder:
            if pnl_pct < level.gain_pct:
                break
            key = TriggerKey(kind=TriggerKind.PARTIAL_TAKE_PROFIT, level=level.gain_pct)
            if not position.has_fired(key):
                return level
        return None

    @staticmethod
    def _unfired(position: Position, kind: TriggerKind) -> bool:
        return not position.has_fired(TriggerKey(kind=kind))

    @staticmethod
    def _decide(position: Position, decision: ExitDecision) -> ExitDecision:
        logger.info(
            "evaluator.trigger",
            position_id=position.id,
            trigger=str(decision),
            pnl_pct=str(round(decision.pnl_pct * 100, 4)),
            price=str(position.current_price),
            sell_fraction=str(decision.sell_fraction),
        )
        return decision
