"""Unit tests for notification sinks."""
from decimal import Decimal

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from conftest import RecordingSink
from exit_engine.core.config import NotificationConfig
from exit_engine.core.models import NotificationEvent, NotificationType
from exit_engine.notifications import (
    CompositeNotificationSink,
    LogNotificationSink,
    NotificationSink,
    TelegramNotificationSink,
    WebhookNotificationSink,
    create_notifier,
    event_payload,
    format_message,
    safe_publish,
)


class FailingSink(NotificationSink):

    async def publish(self, event):
        raise RuntimeError("sink down")


def sell_event(**kwargs):
    defaults = dict(
        type=NotificationType.SELL_EXECUTED,
        position={"id": "pos-1", "token_id": "TokenMint111", "symbol": "TKN"},
        reason="stop_loss",
        pnl_percent=Decimal("-16"),
        sell_fraction=Decimal("1"),
        proceeds=Decimal("0.84"),
        signature="sig-1",
    )
    defaults.update(kwargs)
    return NotificationEvent(**defaults)


@pytest_asyncio.fixture
async def receiver():
    """Local HTTP endpoint recording what the sinks post."""
    received = []

    async def hook(request):
        received.append(await request.json())
        status = 500 if request.query.get("fail") else 200
        return web.json_response({"ok": status == 200}, status=status)

    app = web.Application()
    app.router.add_post("/hook", hook)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield server, received
    await server.close()


class TestFormatting:

    def test_sell_message(self):
        message = format_message(sell_event())

        assert message.startswith("SELL TKN (stop_loss)")
        assert "-16.00%" in message
        assert "sig-1" in message

    def test_failure_message(self):
        message = format_message(
            sell_event(type=NotificationType.SELL_FAILED, error="QuoteUnavailable: no route")
        )

        assert message.startswith("SELL FAILED TKN")
        assert "QuoteUnavailable" in message

    def test_payload_is_json_safe(self):
        payload = event_payload(sell_event())

        assert payload["type"] == "sell_executed"
        assert payload["proceeds"] == "0.84"


class TestSinks:

    @pytest.mark.asyncio
    async def test_safe_publish_swallows_failures(self):
        assert not await safe_publish(FailingSink(), sell_event())
        assert await safe_publish(LogNotificationSink(), sell_event())

    @pytest.mark.asyncio
    async def test_composite_continues_past_failing_sink(self):
        recorder = RecordingSink()
        composite = CompositeNotificationSink([FailingSink(), recorder])

        await composite.publish(sell_event())

        assert len(recorder.events) == 1

    @pytest.mark.asyncio
    async def test_webhook_sink_posts_event(self, receiver):
        server, received = receiver
        sink = WebhookNotificationSink(str(server.make_url("/hook")))

        await sink.publish(sell_event())
        await sink.close()

        assert received[0]["signature"] == "sig-1"
        assert received[0]["position"]["id"] == "pos-1"

    @pytest.mark.asyncio
    async def test_webhook_sink_raises_on_error_status(self, receiver):
        server, _ = receiver
        sink = WebhookNotificationSink(str(server.make_url("/hook?fail=1")))

        with pytest.raises(RuntimeError):
            await sink.publish(sell_event())
        await sink.close()


class TestCreateNotifier:

    def test_log_only_by_default(self):
        notifier = create_notifier(NotificationConfig())

        assert [type(s) for s in notifier.sinks] == [LogNotificationSink]

    def test_configured_delivery(self):
        config = NotificationConfig(
            webhook_url="http://localhost/hook",
            telegram_bot_token="token",
            telegram_chat_id="42",
        )

        notifier = create_notifier(config)

        assert [type(s) for s in notifier.sinks] == [
            LogNotificationSink,
            WebhookNotificationSink,
            TelegramNotificationSink,
        ]
