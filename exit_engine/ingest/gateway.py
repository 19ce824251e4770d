"""Event ingest gateway - merges pushed and polled observations.

Both input paths end in ``publish()``, which forwards events onto the
position's own channel (an asyncio.Queue consumed by that position's worker).
Per position, events are forwarded in non-decreasing timestamp order; an
event older than the last one forwarded is dropped and counted.

Polling runs one cancellable PollTask per active position, so a slow price
lookup for one position never delays another.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog

from exit_engine.core.config import MonitorConfig, engine_config
from exit_engine.core.exceptions import NetworkError, PriceOracleError
from exit_engine.core.models import (
    EventSource,
    PriceUpdate,
    TriggerEvent,
    utc_now,
)
from exit_engine.exchange.base import PriceOracle
from exit_engine.ingest.push import PositionResolver, PushNormalizer
from exit_engine.utils.retry import with_timeout

logger = structlog.get_logger(__name__)


class PollTask:
    """
    Cancellable scheduled price lookup for one position.

    Looks up the price every ``interval`` seconds and publishes a
    PriceUpdate stamped at response time. Lookup failures are logged and
    the next tick proceeds normally.
    """

    def __init__(
        self,
        gateway: "EventIngestGateway",
        position_id: str,
        token_id: str,
        interval: float,
        timeout: float,
    ):
        self.gateway = gateway
        self.position_id = position_id
        self.token_id = token_id
        self.interval = interval
        self.timeout = timeout
        self.polls = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None
        self.logger = logger.bind(position_id=position_id, token_id=token_id)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"poll:{self.position_id}")

    async def cancel(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        if task is asyncio.current_task():
            # Cancelled from inside its own publish path: just stop
            task.cancel()
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def poll_once(self) -> bool:
        """Run a single lookup; True if an event was published."""
        self.polls += 1
        try:
            quote = await with_timeout(
                self.gateway.oracle.get_price(self.token_id),
                self.timeout,
                "get_price",
            )
        except (PriceOracleError, NetworkError) as e:
            self.failures += 1
            self.logger.warning("poll.price_unavailable", error=str(e))
            return False

        if quote.price is None or quote.price <= 0:
            self.failures += 1
            self.logger.warning("poll.price_invalid", price=str(quote.price))
            return False

        return self.gateway.publish(
            PriceUpdate(
                position_id=self.position_id,
                price=quote.price,
                ts=utc_now(),
                source=EventSource.POLL,
            )
        )

    async def _run(self) -> None:
        self.logger.info("poll.started", interval=self.interval)
        while True:
            await asyncio.sleep(self.interval)
            await self.poll_once()


class EventIngestGateway:
    """
    Normalizes push and poll input into per-position event channels.

    Attributes:
        oracle: Price oracle for the poll path
        normalizer: Push payload normalizer
        config: Poll interval, timeouts and queue sizes
    """

    def __init__(
        self,
        oracle: PriceOracle,
        resolver: PositionResolver,
        config: Optional[MonitorConfig] = None,
        base_asset: Optional[str] = None,
    ):
        self.oracle = oracle
        self.config = config or engine_config.monitor
        self.normalizer = PushNormalizer(
            resolver,
            base_asset or engine_config.swap.base_asset,
            dedup_cache_size=self.config.dedup_cache_size,
        )

        self._channels: Dict[str, asyncio.Queue] = {}
        self._last_forwarded: Dict[str, datetime] = {}
        self._pollers: Dict[str, PollTask] = {}

        # Counters
        self.forwarded = 0
        self.out_of_order = 0
        self.dropped_overflow = 0
        self.unrouted = 0

    # -------------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------------

    def open_channel(self, position_id: str) -> asyncio.Queue:
        """Create (or return) the event channel for a position."""
        channel = self._channels.get(position_id)
        if channel is None:
            channel = asyncio.Queue(maxsize=self.config.queue_maxsize)
            self._channels[position_id] = channel
        return channel

    def channel(self, position_id: str) -> Optional[asyncio.Queue]:
        return self._channels.get(position_id)

    def publish(self, event: TriggerEvent) -> bool:
        """Forward an event to its position's channel.

        Returns False if the position has no channel or the event is older
        than the last one forwarded for that position.
        """
        channel = self._channels.get(event.position_id)
        if channel is None:
            self.unrouted += 1
            logger.debug("gateway.unrouted_event", position_id=event.position_id)
            return False

        last = self._last_forwarded.get(event.position_id)
        if last is not None and event.ts < last:
            self.out_of_order += 1
            logger.debug(
                "gateway.out_of_order_dropped",
                position_id=event.position_id,
                event_ts=event.ts.isoformat(),
                last_forwarded=last.isoformat(),
            )
            return False

        if channel.full():
            # Keep the newest observations; the oldest queued one goes
            channel.get_nowait()
            channel.task_done()
            self.dropped_overflow += 1
            logger.warning("gateway.channel_overflow", position_id=event.position_id)

        channel.put_nowait(event)
        self._last_forwarded[event.position_id] = event.ts
        self.forwarded += 1
        return True

    # -------------------------------------------------------------------------
    # Push path
    # -------------------------------------------------------------------------

    def handle_push(self, payloads: Union[Dict[str, Any], Iterable[Dict[str, Any]]]) -> int:
        """Normalize and forward pushed payloads; returns events forwarded."""
        if isinstance(payloads, dict):
            payloads = [payloads]

        arrival = utc_now()
        forwarded = 0
        for payload in payloads:
            try:
                events = self.normalizer.normalize(payload, arrival)
            except (ArithmeticError, AttributeError, TypeError, ValueError) as e:
                # One malformed payload must not cost the rest of the batch
                self.normalizer.ignored += 1
                logger.warning(
                    "gateway.push_payload_rejected",
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue
            for event in events:
                if self.publish(event):
                    forwarded += 1
        return forwarded

    # -------------------------------------------------------------------------
    # Poll path
    # -------------------------------------------------------------------------

    def start_polling(self, position_id: str, token_id: str) -> PollTask:
        """Start the scheduled price lookup for a position."""
        poller = self._pollers.get(position_id)
        if poller is None:
            poller = PollTask(
                self,
                position_id,
                token_id,
                interval=self.config.poll_interval_seconds,
                timeout=self.config.price_timeout_seconds,
            )
            self._pollers[position_id] = poller
        poller.start()
        return poller

    def poller(self, position_id: str) -> Optional[PollTask]:
        return self._pollers.get(position_id)

    async def untrack(self, position_id: str) -> None:
        """Tear down polling and the channel of a deactivated position."""
        poller = self._pollers.pop(position_id, None)
        if poller is not None:
            await poller.cancel()
        self._channels.pop(position_id, None)
        self._last_forwarded.pop(position_id, None)
        logger.info("gateway.untracked", position_id=position_id)

    async def close(self) -> None:
        """Cancel every poll task."""
        pollers = list(self._pollers.values())
        self._pollers.clear()
        await asyncio.gather(*(poller.cancel() for poller in pollers))
        logger.info("gateway.closed", pollers=len(pollers))

    def tracked(self) -> List[str]:
        return list(self._channels)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "forwarded": self.forwarded,
            "out_of_order": self.out_of_order,
            "dropped_overflow": self.dropped_overflow,
            "unrouted": self.unrouted,
            "pollers": len(self._pollers),
            "push": self.normalizer.get_stats(),
        }
