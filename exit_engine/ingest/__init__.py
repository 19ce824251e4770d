"""Event ingestion: push normalization, polling and the webhook receiver."""

from exit_engine.ingest.gateway import EventIngestGateway, PollTask
from exit_engine.ingest.push import PushNormalizer, SignatureCache, parse_timestamp
from exit_engine.ingest.webhook_server import WEBHOOK_PATH, WebhookServer

__all__ = [
    "EventIngestGateway",
    "PollTask",
    "PushNormalizer",
    "SignatureCache",
    "parse_timestamp",
    "WebhookServer",
    "WEBHOOK_PATH",
]
