"""HTTP receiver for pushed transaction notifications.

Exposes ``POST /webhooks/helius`` (a JSON list of payloads, or a single
payload) and ``GET /health``. When a secret is configured, requests must
carry it in the ``Authorization`` header.
"""
import hmac
import json
from typing import Optional

import structlog
from aiohttp import web

from exit_engine.core.config import MonitorConfig, engine_config
from exit_engine.ingest.gateway import EventIngestGateway

logger = structlog.get_logger(__name__)

WEBHOOK_PATH = "/webhooks/helius"


class WebhookServer:
    """aiohttp application forwarding pushed payloads to the gateway."""

    def __init__(self, gateway: EventIngestGateway, config: Optional[MonitorConfig] = None):
        self.gateway = gateway
        self.config = config or engine_config.monitor
        self.requests = 0
        self.rejected = 0
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(WEBHOOK_PATH, self.handle_webhook)
        app.router.add_get("/health", self.handle_health)
        return app

    def _authorized(self, request: web.Request) -> bool:
        secret = self.config.webhook_secret
        if not secret:
            return True
        supplied = request.headers.get("Authorization", "")
        return hmac.compare_digest(supplied.encode(), secret.encode())

    async def handle_webhook(self, request: web.Request) -> web.Response:
        self.requests += 1

        if not self._authorized(request):
            self.rejected += 1
            logger.warning("webhook.unauthorized", remote=request.remote)
            return web.json_response({"status": "error", "error": "unauthorized"}, status=401)

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            self.rejected += 1
            logger.warning("webhook.invalid_json", remote=request.remote)
            return web.json_response({"status": "error", "error": "invalid json"}, status=400)

        if not isinstance(body, (list, dict)):
            self.rejected += 1
            return web.json_response({"status": "error", "error": "expected object or list"}, status=400)

        processed = self.gateway.handle_push(body)
        logger.info(
            "webhook.received",
            payloads=len(body) if isinstance(body, list) else 1,
            processed=processed,
        )
        return web.json_response({"status": "ok", "processed": processed})

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "tracked": len(self.gateway.tracked()),
            "requests": self.requests,
        })

    async def start(self) -> None:
        """Bind and serve on the configured host/port."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.webhook_host, self.config.webhook_port)
        await site.start()
        logger.info(
            "webhook.server_started",
            host=self.config.webhook_host,
            port=self.config.webhook_port,
            path=WEBHOOK_PATH,
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("webhook.server_stopped")
