"""Best-effort delivery of engine events."""

from exit_engine.notifications.base import NotificationSink, safe_publish
from exit_engine.notifications.sinks import (
    CompositeNotificationSink,
    LogNotificationSink,
    TelegramNotificationSink,
    WebhookNotificationSink,
    create_notifier,
    event_payload,
    format_message,
)

__all__ = [
    "NotificationSink",
    "safe_publish",
    "CompositeNotificationSink",
    "LogNotificationSink",
    "TelegramNotificationSink",
    "WebhookNotificationSink",
    "create_notifier",
    "event_payload",
    "format_message",
]
