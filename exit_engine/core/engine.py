"""Exit engine - orchestrates all components."""
import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError

from exit_engine.core.config import ExitEngineConfig, engine_config
from exit_engine.core.dispatcher import ExecutionDispatcher
from exit_engine.core.evaluator import TriggerEvaluator
from exit_engine.core.exceptions import ConfigurationError, DataInconsistency
from exit_engine.core.models import (
    DispatchOutcome,
    ExitDecision,
    ExitThresholds,
    NotificationEvent,
    NotificationType,
    OutcomeStatus,
    EngineStats,
    SizingResult,
    TriggerEvent,
    TriggerKind,
    to_decimal,
)
from exit_engine.core.registry import PositionRegistry
from exit_engine.exchange.base import PriceOracle, SwapExecutionService, TransactionSender
from exit_engine.exchange.jupiter_client import JupiterSwapService
from exit_engine.exchange.paper import PaperSwapService
from exit_engine.ingest.gateway import EventIngestGateway
from exit_engine.notifications.base import NotificationSink, safe_publish
from exit_engine.notifications.sinks import LogNotificationSink
from exit_engine.risk.sizing import RiskSizer
from exit_engine.storage.database import Database

logger = structlog.get_logger(__name__)


class ExitEngine:
    """
    Exit engine that orchestrates all components.

    Responsibilities:
    - Registers positions and hands out their thresholds
    - Runs one worker per active position: apply event, evaluate, dispatch
    - Keeps polling and push ingest attached to active positions
    - Snapshots positions to the database and restores them on start

    Per position the pipeline is strictly sequential; different positions
    run concurrently.
    """

    def __init__(
        self,
        swap_service: SwapExecutionService,
        oracle: PriceOracle,
        notifier: Optional[NotificationSink] = None,
        database: Optional[Database] = None,
        config: Optional[ExitEngineConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or engine_config
        self.swap_service = swap_service
        self.oracle = oracle
        self.notifier = notifier or LogNotificationSink()
        self.database = database

        self.registry = PositionRegistry()
        self.evaluator = TriggerEvaluator()
        self.sizer = RiskSizer(self.config.sizing)
        self.dispatcher = ExecutionDispatcher(
            self.registry, swap_service, self.notifier, self.config.swap, sleep=sleep
        )
        self.gateway = EventIngestGateway(
            oracle,
            self.registry.active_id_for_token,
            self.config.monitor,
            base_asset=self.config.swap.base_asset,
        )
        self.stats = EngineStats()

        # Control
        self._running = False
        self._workers: Dict[str, asyncio.Task] = {}
        self._pipelines: Dict[str, asyncio.Lock] = {}
        self._snapshot_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self):
        """Validate configuration, restore state and start monitoring."""
        logger.info("engine.starting", dry_run=self.config.is_dry_run)

        validation = self.config.validate_configuration()
        if not validation["valid"]:
            logger.error("engine.invalid_configuration", issues=validation["issues"])
            raise ConfigurationError(validation["issues"])

        if self.database is not None:
            await self.database.initialize()
            await self._load_state()

        self._running = True
        for position_id in self.registry.active_ids():
            self._track(position_id)

        if self.database is not None:
            self._snapshot_task = asyncio.create_task(self._snapshot_loop())

        logger.info(
            "engine.started",
            active_positions=len(self.registry.active_ids()),
            polling=self.config.monitor.poll_enabled,
        )

    async def stop(self):
        """Stop the exit engine gracefully."""
        logger.info("engine.stopping")
        self._running = False

        if self._snapshot_task:
            self._snapshot_task.cancel()
            try:
                await self._snapshot_task
            except asyncio.CancelledError:
                pass
            self._snapshot_task = None

        await self.gateway.close()

        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        await self._save_state()
        logger.info("engine.stopped")

    async def _load_state(self):
        """Load persisted positions into the registry."""
        positions = await self.database.load_positions()
        for position in positions:
            self.registry.restore(position)
        logger.info(
            "engine.state_loaded",
            positions=len(positions),
            active=sum(1 for p in positions if p.active),
        )

    async def _save_state(self):
        """Save every position to the database."""
        if self.database is None:
            return
        try:
            count = await self.database.save_positions(self.registry.snapshot())
        except (SQLAlchemyError, OSError) as e:
            logger.error("engine.snapshot_failed", error=str(e))
            return
        self.stats.snapshots_written += 1
        logger.info("engine.state_saved", positions=count)

    async def _snapshot_loop(self):
        while True:
            await asyncio.sleep(self.config.monitor.snapshot_interval_seconds)
            await self._save_state()

    async def _snapshot_position(self, position_id: str):
        if self.database is None:
            return
        try:
            await self.database.save_position(self.registry.get(position_id))
        except (SQLAlchemyError, OSError) as e:
            logger.error("engine.snapshot_failed", position_id=position_id, error=str(e))

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def plan_entry(self, risk_score, wallet_balance) -> Optional[SizingResult]:
        """Size a new position against the capital already committed."""
        return self.sizer.size(risk_score, wallet_balance, self.registry.current_exposure())

    async def register_position(
        self,
        token_id: str,
        entry_price: Union[Decimal, float, str],
        amount: Union[Decimal, float, str],
        invested_capital: Union[Decimal, float, str, None] = None,
        thresholds: Optional[ExitThresholds] = None,
        sizing: Optional[SizingResult] = None,
        **extra,
    ) -> str:
        """
        Start monitoring a bought position.

        Args:
            token_id: Asset mint
            entry_price: Base currency paid per unit
            amount: Units bought
            invested_capital: Base currency spent (default: price * amount,
                or the sized amount when ``sizing`` is given)
            thresholds: Explicit thresholds; otherwise derived from ``sizing``
                or the configured defaults
            sizing: Result of plan_entry()

        Returns:
            The new position id
        """
        entry_price = to_decimal(entry_price)
        amount = to_decimal(amount)

        if thresholds is None:
            if sizing is not None:
                thresholds = ExitThresholds.from_sizing(
                    entry_price,
                    sizing,
                    self.config.thresholds,
                    to_decimal(self.config.sizing.take_profit_1_sell_fraction),
                )
            else:
                thresholds = ExitThresholds.from_config(entry_price, self.config.thresholds)

        if invested_capital is None:
            invested_capital = sizing.position_size if sizing is not None else entry_price * amount

        position_id = await self.registry.register(
            token_id, entry_price, amount, to_decimal(invested_capital), thresholds, **extra
        )

        if self._running:
            self._track(position_id)
        await self._snapshot_position(position_id)

        await safe_publish(
            self.notifier,
            NotificationEvent.for_position(
                NotificationType.POSITION_REGISTERED, self.registry.get(position_id)
            ),
        )
        return position_id

    # -------------------------------------------------------------------------
    # Ingest
    # -------------------------------------------------------------------------

    def submit(self, event: TriggerEvent) -> bool:
        """Hand a canonical event to the position's pipeline."""
        return self.gateway.publish(event)

    def handle_push(self, payloads: Union[Dict[str, Any], Iterable[Dict[str, Any]]]) -> int:
        """Normalize and route pushed notifications."""
        return self.gateway.handle_push(payloads)

    async def drain(self):
        """Wait until every queued event has been processed."""
        for position_id in self.gateway.tracked():
            channel = self.gateway.channel(position_id)
            if channel is not None:
                await channel.join()

    # -------------------------------------------------------------------------
    # Per-position pipeline
    # -------------------------------------------------------------------------

    def _pipeline(self, position_id: str) -> asyncio.Lock:
        lock = self._pipelines.get(position_id)
        if lock is None:
            lock = self._pipelines[position_id] = asyncio.Lock()
        return lock

    def _track(self, position_id: str):
        if position_id in self._workers:
            return
        position = self.registry.get(position_id)
        channel = self.gateway.open_channel(position_id)
        self._workers[position_id] = asyncio.create_task(
            self._worker(position_id, channel), name=f"worker:{position_id}"
        )
        if self.config.monitor.poll_enabled:
            self.gateway.start_polling(position_id, position.token_id)
        logger.info("engine.tracking", position_id=position_id, token_id=position.token_id)

    async def _worker(self, position_id: str, channel: asyncio.Queue):
        log = logger.bind(position_id=position_id)
        while True:
            event = await channel.get()
            batch = [event]
            # Coalesce whatever queued up meanwhile
            while not channel.empty():
                batch.append(channel.get_nowait())

            try:
                async with self._pipeline(position_id):
                    await self._process(position_id, batch)
            except Exception as e:
                log.error("engine.worker_error", error=str(e), exc_info=True)
            finally:
                for _ in batch:
                    channel.task_done()

            if not self.registry.is_active(position_id):
                await self._retire(position_id)
                return

    async def _process(self, position_id: str, events: List[TriggerEvent]):
        applied = False
        for event in events:
            was_active = self.registry.is_active(position_id)
            try:
                ok = await self.registry.apply_update(position_id, event)
            except DataInconsistency as e:
                logger.critical("engine.data_inconsistency", position_id=position_id, error=str(e))
                continue

            if not ok:
                if was_active:
                    self.stats.events_stale += 1
                else:
                    self.stats.events_inactive += 1
                continue

            self.stats.events_applied += 1
            applied = True

            if was_active and not self.registry.is_active(position_id):
                await self._on_external_close(position_id)
                return

        recheck = self.dispatcher.take_recheck(position_id)
        if applied or recheck:
            await self._evaluate_and_dispatch(position_id)

    async def _evaluate_and_dispatch(self, position_id: str):
        """Evaluate and dispatch until no trigger holds or a dispatch fails.

        A single update may cross several ladder rungs; each executed exit is
        applied before the next evaluation so later rungs act on the reduced
        position.
        """
        while self.registry.is_active(position_id):
            position = self.registry.get(position_id)
            decision = self.evaluator.evaluate(position)
            if not decision.is_exit:
                return

            outcome = await self.dispatcher.dispatch(position, decision)
            self._record_outcome(outcome)
            if not outcome.executed:
                return
            await self._snapshot_position(position_id)

    def _record_outcome(self, outcome: DispatchOutcome):
        if outcome.status is OutcomeStatus.EXECUTED:
            self.stats.sells_executed += 1
            self.stats.record_trigger(outcome.decision.kind)
        elif outcome.status is OutcomeStatus.FAILED:
            self.stats.sells_failed += 1
        elif outcome.status is OutcomeStatus.COALESCED:
            self.stats.dispatches_coalesced += 1

    async def _on_external_close(self, position_id: str):
        position = self.registry.get(position_id)
        self.stats.record_trigger(TriggerKind.EXTERNAL_CLOSE)
        logger.warning(
            "engine.external_close",
            position_id=position_id,
            token_id=position.token_id,
            final_pnl=str(position.final_pnl),
        )
        await self._snapshot_position(position_id)
        await safe_publish(
            self.notifier,
            NotificationEvent.for_position(
                NotificationType.POSITION_CLOSED,
                position,
                reason=TriggerKind.EXTERNAL_CLOSE.value,
                pnl_percent=position.final_pnl_pct,
            ),
        )

    async def _retire(self, position_id: str):
        """Detach polling, channel and worker from a closed position."""
        channel = self.gateway.channel(position_id)
        # Events queued after the last batch will never be processed
        while channel is not None and not channel.empty():
            channel.get_nowait()
            channel.task_done()
        await self.gateway.untrack(position_id)
        self._pipelines.pop(position_id, None)
        worker = self._workers.pop(position_id, None)
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
        logger.info("engine.position_retired", position_id=position_id)

    # -------------------------------------------------------------------------
    # Manual control
    # -------------------------------------------------------------------------

    async def close_position(self, position_id: str, reason: str = "manual") -> DispatchOutcome:
        """Sell everything that remains, through the position's pipeline."""
        self.registry.get(position_id)
        async with self._pipeline(position_id):
            position = self.registry.get(position_id)
            decision = ExitDecision.full(TriggerKind.MANUAL_CLOSE, position.pnl_pct())
            logger.info(
                "engine.manual_close",
                position_id=position_id,
                token_id=position.token_id,
                reason=reason,
            )
            outcome = await self.dispatcher.dispatch(position, decision)
            self._record_outcome(outcome)

        if outcome.executed:
            await self._snapshot_position(position_id)
        if not self.registry.is_active(position_id):
            await self._retire(position_id)
        return outcome

    async def close_all_positions(self, reason: str = "manual") -> Dict[str, DispatchOutcome]:
        """
        Close every active position, e.g. for a panic or end-of-day close.

        Positions are closed one at a time; a failure on one is recorded in
        its outcome and does not stop the others.

        Returns:
            Dispatch outcome per position id
        """
        position_ids = self.registry.active_ids()
        logger.warning("engine.close_all_started", positions=len(position_ids), reason=reason)

        outcomes: Dict[str, DispatchOutcome] = {}
        for position_id in position_ids:
            try:
                outcomes[position_id] = await self.close_position(position_id, reason)
            except Exception as e:
                logger.error(
                    "engine.close_all_position_error",
                    position_id=position_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                outcomes[position_id] = DispatchOutcome(
                    position_id,
                    ExitDecision.full(TriggerKind.MANUAL_CLOSE),
                    OutcomeStatus.FAILED,
                    error=type(e).__name__,
                )

        closed = sum(1 for outcome in outcomes.values() if outcome.executed)
        logger.info(
            "engine.close_all_finished",
            closed=closed,
            failed=len(outcomes) - closed,
            reason=reason,
        )
        return outcomes

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Get current engine status."""
        push = self.gateway.normalizer
        self.stats.push_ignored = push.ignored
        self.stats.push_duplicates = push.duplicates

        positions = self.registry.snapshot()
        return {
            'running': self._running,
            'dry_run': self.config.is_dry_run,
            'active_positions': sum(1 for p in positions if p.active),
            'exposure': str(self.registry.current_exposure()),
            'positions': {p.id: p.summary() for p in positions},
            'stats': self.stats.as_dict(),
            'registry': {
                'stale_discarded': self.registry.stale_discarded,
                'inactive_discarded': self.registry.inactive_discarded,
            },
            'dispatcher': self.dispatcher.get_stats(),
            'gateway': self.gateway.get_stats(),
        }


def create_swap_service(
    oracle: PriceOracle,
    sender: Optional[TransactionSender] = None,
    config: Optional[ExitEngineConfig] = None,
) -> SwapExecutionService:
    """Paper execution in dry-run mode, Jupiter otherwise.

    Raises:
        ConfigurationError: Live mode without a transaction sender
    """
    config = config or engine_config
    if config.is_dry_run:
        return PaperSwapService(oracle)
    if sender is None:
        raise ConfigurationError("Live execution requires a transaction sender")
    return JupiterSwapService(sender, config.swap)
