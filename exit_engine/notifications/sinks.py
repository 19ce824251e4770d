"""Notification sink implementations."""
import json
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
import structlog

from exit_engine.core.config import NotificationConfig, notification_config
from exit_engine.core.models import NotificationEvent, NotificationType
from exit_engine.notifications.base import NotificationSink, safe_publish

logger = structlog.get_logger(__name__)

TELEGRAM_API = "https://api.telegram.org"


def event_payload(event: NotificationEvent) -> Dict[str, Any]:
    """JSON-safe dict of an event (Decimals become strings)."""
    return json.loads(event.model_dump_json())


def format_message(event: NotificationEvent) -> str:
    """Short human summary of an event."""
    position = event.position
    name = position.get("symbol") or (position.get("token_id") or "")[:8]

    if event.type is NotificationType.SELL_EXECUTED:
        pnl = f"{event.pnl_percent:+.2f}%" if event.pnl_percent is not None else "n/a"
        return (
            f"SELL {name} ({event.reason})\n"
            f"Fraction: {event.sell_fraction}  PnL: {pnl}\n"
            f"Proceeds: {event.proceeds}\n"
            f"Tx: {event.signature}"
        )
    if event.type is NotificationType.SELL_FAILED:
        return f"SELL FAILED {name} ({event.reason})\n{event.error}"
    if event.type is NotificationType.POSITION_REGISTERED:
        return (
            f"Monitoring {name}\n"
            f"Entry: {position.get('entry_price')}  Amount: {position.get('entry_amount')}"
        )
    pnl = f"{event.pnl_percent:+.2f}%" if event.pnl_percent is not None else "n/a"
    return f"Closed {name} ({event.reason})  Final PnL: {pnl}"


class LogNotificationSink(NotificationSink):
    """Writes events to the structured log."""

    async def publish(self, event: NotificationEvent) -> None:
        logger.info(
            f"notification.{event.type.value}",
            position_id=event.position.get("id"),
            token_id=event.position.get("token_id"),
            reason=event.reason,
            pnl_percent=str(event.pnl_percent) if event.pnl_percent is not None else None,
            signature=event.signature,
            error=event.error,
        )


class _HttpSink(NotificationSink):
    def __init__(self, timeout: float, session: Optional[aiohttp.ClientSession] = None):
        self.timeout = timeout
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()


class WebhookNotificationSink(_HttpSink):
    """POSTs each event as JSON to a configured URL."""

    def __init__(self, url: str, timeout: float = 10, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(timeout, session)
        self.url = url

    async def publish(self, event: NotificationEvent) -> None:
        session = await self._get_session()
        async with session.post(self.url, json=event_payload(event)) as resp:
            if resp.status >= 400:
                raise RuntimeError(f"Webhook returned {resp.status}")


class TelegramNotificationSink(_HttpSink):
    """Sends a short summary through the Telegram Bot API."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout: float = 10,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(timeout, session)
        self.bot_token = bot_token
        self.chat_id = chat_id

    async def publish(self, event: NotificationEvent) -> None:
        session = await self._get_session()
        url = f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": format_message(event),
            "disable_web_page_preview": True,
        }
        async with session.post(url, json=payload) as resp:
            if resp.status != 200:
                raise RuntimeError(f"Telegram returned {resp.status}: {await resp.text()}")


class CompositeNotificationSink(NotificationSink):
    """Fans an event out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: Iterable[NotificationSink]):
        self.sinks: List[NotificationSink] = list(sinks)

    async def publish(self, event: NotificationEvent) -> None:
        for sink in self.sinks:
            await safe_publish(sink, event)

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()


def create_notifier(config: Optional[NotificationConfig] = None) -> NotificationSink:
    """Log sink plus whatever webhook / Telegram delivery is configured."""
    config = config or notification_config
    sinks: List[NotificationSink] = [LogNotificationSink()]
    if config.webhook_url:
        sinks.append(WebhookNotificationSink(config.webhook_url, config.webhook_timeout))
    if config.telegram_enabled:
        sinks.append(
            TelegramNotificationSink(
                config.telegram_bot_token, config.telegram_chat_id, config.webhook_timeout
            )
        )
    return CompositeNotificationSink(sinks)
