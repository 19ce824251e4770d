"""Notification sink boundary.

Delivery is best-effort: a failing sink is logged and never affects the
engine's state or control flow.
"""
from abc import ABC, abstractmethod

import structlog

from exit_engine.core.models import NotificationEvent

logger = structlog.get_logger(__name__)


class NotificationSink(ABC):
    """Receives structured engine events."""

    @abstractmethod
    async def publish(self, event: NotificationEvent) -> None:
        """Deliver one event."""

    async def close(self) -> None:
        """Release network resources."""


async def safe_publish(sink: NotificationSink, event: NotificationEvent) -> bool:
    """Publish without letting sink failures escape."""
    try:
        await sink.publish(event)
        return True
    except Exception as e:
        logger.error(
            "notifications.publish_failed",
            sink=type(sink).__name__,
            event_type=event.type.value,
            error=str(e),
        )
        return False
