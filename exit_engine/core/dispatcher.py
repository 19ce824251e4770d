"""Execution dispatcher - turns exit decisions into confirmed swaps.

For one decision the dispatcher:
1. Re-reads the position and computes sell_amount = remaining * fraction
2. Requests a quote, retrying with bounded exponential backoff
3. Submits the swap, retrying the same way (re-quoting after slippage)
4. On confirmation, applies the exit to the registry, marks the trigger
   fired and publishes ``sell_executed``

A failed attempt leaves the position untouched and the trigger unfired, so
the next update re-evaluates it. At most one dispatch per position is in
flight; a concurrent request for the same position is coalesced and the
caller is told to re-evaluate once the in-flight one completes.
"""
import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

from exit_engine.core.config import SwapServiceConfig, engine_config
from exit_engine.core.exceptions import (
    DataInconsistency,
    DuplicateTriggerIgnored,
    ExecutionFailed,
    NetworkError,
    NoRoute,
    QuoteUnavailable,
    SlippageExceeded,
    SwapServiceError,
)
from exit_engine.core.models import (
    DispatchOutcome,
    ExitDecision,
    NotificationEvent,
    NotificationType,
    OutcomeStatus,
    Position,
    Quote,
    SwapResult,
)
from exit_engine.core.registry import PositionRegistry
from exit_engine.exchange.base import SwapExecutionService
from exit_engine.notifications.base import NotificationSink, safe_publish
from exit_engine.utils.retry import retry_async, with_timeout

logger = structlog.get_logger(__name__)


class ExecutionDispatcher:
    """
    Executes exit decisions against the swap execution service.

    Attributes:
        registry: Position registry the results are applied to
        swap_service: External quote/swap service
        notifier: Sink for sell_executed / sell_failed / position_closed
        config: Retry, timeout, slippage and base-asset settings
    """

    QUOTE_RETRYABLE = (NoRoute, NetworkError)
    SWAP_RETRYABLE = (NetworkError, SlippageExceeded)

    def __init__(
        self,
        registry: PositionRegistry,
        swap_service: SwapExecutionService,
        notifier: NotificationSink,
        config: Optional[SwapServiceConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.swap_service = swap_service
        self.notifier = notifier
        self.config = config or engine_config.swap
        self._sleep = sleep

        self._in_flight: Set[str] = set()
        self._recheck: Set[str] = set()

        # Counters
        self.executed = 0
        self.failed = 0
        self.coalesced = 0

    def in_flight(self, position_id: str) -> bool:
        return position_id in self._in_flight

    def take_recheck(self, position_id: str) -> bool:
        """True once if a decision arrived while a dispatch was in flight."""
        if position_id in self._recheck:
            self._recheck.discard(position_id)
            return True
        return False

    async def dispatch(self, position: Position, decision: ExitDecision) -> DispatchOutcome:
        """
        Execute one exit decision for a position.

        Args:
            position: Position the decision was made for
            decision: Evaluator decision (must be an exit)

        Returns:
            DispatchOutcome describing what happened
        """
        position_id = position.id

        if position_id in self._in_flight:
            self._recheck.add(position_id)
            self.coalesced += 1
            logger.info(
                "dispatcher.coalesced",
                position_id=position_id,
                trigger=str(decision),
            )
            return DispatchOutcome(position_id, decision, OutcomeStatus.COALESCED)

        self._in_flight.add(position_id)
        try:
            return await self._dispatch(position_id, decision)
        finally:
            self._in_flight.discard(position_id)

    async def _dispatch(self, position_id: str, decision: ExitDecision) -> DispatchOutcome:
        log = logger.bind(position_id=position_id, trigger=str(decision))

        if not decision.is_exit:
            return DispatchOutcome(position_id, decision, OutcomeStatus.SKIPPED)

        # Latest state: the caller's copy may predate an exit that just landed
        position = self.registry.get(position_id)
        if not position.active:
            log.info("dispatcher.skipped", reason="inactive")
            return DispatchOutcome(position_id, decision, OutcomeStatus.SKIPPED)

        try:
            self._require_unfired(position, decision)
        except DuplicateTriggerIgnored as e:
            log.info("dispatcher.duplicate_trigger_ignored", detail=str(e))
            return DispatchOutcome(position_id, decision, OutcomeStatus.SKIPPED)

        sell_amount = position.remaining_amount * decision.sell_fraction
        if sell_amount <= 0:
            log.warning("dispatcher.skipped", reason="nothing_to_sell")
            return DispatchOutcome(position_id, decision, OutcomeStatus.SKIPPED)

        log.info(
            "dispatcher.selling",
            token_id=position.token_id,
            sell_amount=str(sell_amount),
            sell_fraction=str(decision.sell_fraction),
            price=str(position.current_price),
        )

        attempts = {"quote": 0, "swap": 0}

        # Quote
        try:
            quote = await self._quote_with_retry(position, sell_amount, attempts)
        except SwapServiceError as e:
            error = QuoteUnavailable(f"No quote after {attempts['quote']} attempts: {e}", e)
            return await self._fail(position, decision, sell_amount, "QuoteUnavailable", error, attempts)
        except Exception as e:
            logger.error("dispatcher.quote_error", position_id=position_id, error_type=type(e).__name__, error=str(e))
            error = QuoteUnavailable(f"Quote failed unexpectedly: {type(e).__name__}: {e}", e)
            return await self._fail(position, decision, sell_amount, "QuoteUnavailable", error, attempts)

        # Swap
        try:
            result = await self._swap_with_retry(position, sell_amount, quote, attempts)
        except SwapServiceError as e:
            error = ExecutionFailed(f"Swap failed after {attempts['swap']} attempts: {e}", e)
            return await self._fail(position, decision, sell_amount, type(e).__name__, error, attempts)
        except Exception as e:
            logger.error("dispatcher.swap_error", position_id=position_id, error_type=type(e).__name__, error=str(e))
            error = ExecutionFailed(f"Swap failed unexpectedly: {type(e).__name__}: {e}", e)
            return await self._fail(position, decision, sell_amount, "ExecutionFailed", error, attempts)

        return await self._apply(position, decision, sell_amount, result, attempts)

    @staticmethod
    def _require_unfired(position: Position, decision: ExitDecision) -> None:
        if position.has_fired(decision.trigger_key):
            raise DuplicateTriggerIgnored(f"{decision} already executed for {position.id}")

    # -------------------------------------------------------------------------
    # Network phases
    # -------------------------------------------------------------------------

    async def _request_quote(self, position: Position, sell_amount: Decimal, attempts: Dict[str, int]) -> Quote:
        attempts["quote"] += 1
        return await with_timeout(
            self.swap_service.get_quote(
                position.token_id,
                self.config.base_asset,
                sell_amount,
                self.config.slippage_bps,
            ),
            self.config.request_timeout,
            "get_quote",
        )

    async def _quote_with_retry(self, position: Position, sell_amount: Decimal, attempts: Dict[str, int]) -> Quote:
        return await retry_async(
            self._request_quote,
            position,
            sell_amount,
            attempts,
            operation="dispatcher.quote",
            max_attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            retryable_exceptions=self.QUOTE_RETRYABLE,
            sleep=self._sleep,
        )

    async def _swap_with_retry(
        self,
        position: Position,
        sell_amount: Decimal,
        quote: Quote,
        attempts: Dict[str, int],
    ) -> SwapResult:
        state = {"quote": quote}
        priority = {"priorityLevel": self.config.priority_fee}

        async def submit() -> SwapResult:
            attempts["swap"] += 1
            return await with_timeout(
                self.swap_service.execute_swap(state["quote"], priority),
                self.config.confirmation_timeout,
                "execute_swap",
            )

        async def requote(attempt: int, error: BaseException) -> None:
            # A slipped quote is stale; the next attempt needs a fresh one
            if isinstance(error, SlippageExceeded):
                state["quote"] = await self._quote_with_retry(position, sell_amount, attempts)

        return await retry_async(
            submit,
            operation="dispatcher.swap",
            max_attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            retryable_exceptions=self.SWAP_RETRYABLE,
            on_retry=requote,
            sleep=self._sleep,
        )

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    async def _apply(
        self,
        position: Position,
        decision: ExitDecision,
        sell_amount: Decimal,
        result: SwapResult,
        attempts: Dict[str, int],
    ) -> DispatchOutcome:
        level = decision.level.gain_pct if decision.level is not None else None
        proceeds = result.output_amount

        try:
            if decision.is_full:
                updated = await self.registry.apply_full_exit(
                    position.id, proceeds, decision.kind, level=level, signature=result.signature
                )
            else:
                updated = await self.registry.apply_partial_exit(
                    position.id,
                    decision.sell_fraction,
                    proceeds,
                    level,
                    kind=decision.kind,
                    signature=result.signature,
                )
        except DataInconsistency as e:
            # The swap landed but the books refuse it: operator must reconcile
            logger.critical(
                "dispatcher.data_inconsistency",
                position_id=position.id,
                signature=result.signature,
                error=str(e),
            )
            # Confirmed on chain, so it must not fire again
            await self.registry.mark_fired(position.id, decision.trigger_key)
            return await self._fail(position, decision, sell_amount, "DataInconsistency", e, attempts)

        await self.registry.mark_fired(position.id, decision.trigger_key)
        updated.fired_triggers.add(decision.trigger_key)

        record = updated.exits[-1]
        basis = record.proceeds - record.realized_pnl
        pnl_percent = (record.realized_pnl / basis * 100) if basis > 0 else Decimal("0")

        self.executed += 1
        logger.info(
            "dispatcher.sell_executed",
            position_id=position.id,
            trigger=str(decision),
            sold=str(record.amount),
            proceeds=str(proceeds),
            pnl_percent=str(round(pnl_percent, 4)),
            remaining_amount=str(updated.remaining_amount),
            signature=result.signature,
        )

        await safe_publish(
            self.notifier,
            NotificationEvent.for_position(
                NotificationType.SELL_EXECUTED,
                updated,
                reason=str(decision),
                pnl_percent=pnl_percent,
                sell_fraction=decision.sell_fraction,
                proceeds=proceeds,
                signature=result.signature,
            ),
        )
        if not updated.active:
            await safe_publish(
                self.notifier,
                NotificationEvent.for_position(
                    NotificationType.POSITION_CLOSED,
                    updated,
                    reason=str(decision),
                    pnl_percent=updated.final_pnl_pct,
                ),
            )

        return DispatchOutcome(
            position.id,
            decision,
            OutcomeStatus.EXECUTED,
            sell_amount=record.amount,
            proceeds=proceeds,
            pnl_percent=pnl_percent,
            signature=result.signature,
            attempts=attempts["quote"] + attempts["swap"],
        )

    async def _fail(
        self,
        position: Position,
        decision: ExitDecision,
        sell_amount: Decimal,
        reason: str,
        error: Exception,
        attempts: Dict[str, int],
    ) -> DispatchOutcome:
        self.failed += 1
        logger.error(
            "dispatcher.sell_failed",
            position_id=position.id,
            trigger=str(decision),
            reason=reason,
            error=str(error),
            quote_attempts=attempts["quote"],
            swap_attempts=attempts["swap"],
        )
        await safe_publish(
            self.notifier,
            NotificationEvent.for_position(
                NotificationType.SELL_FAILED,
                position,
                reason=str(decision),
                pnl_percent=decision.pnl_pct * 100,
                sell_fraction=decision.sell_fraction,
                error=f"{reason}: {error}",
            ),
        )
        return DispatchOutcome(
            position.id,
            decision,
            OutcomeStatus.FAILED,
            sell_amount=sell_amount,
            error=reason,
            attempts=attempts["quote"] + attempts["swap"],
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "executed": self.executed,
            "failed": self.failed,
            "coalesced": self.coalesced,
            "in_flight": sorted(self._in_flight),
        }
