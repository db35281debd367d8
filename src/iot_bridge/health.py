"""HTTP surface: liveness, readiness and Prometheus metrics."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from .clients.store import StoreConnectionManager
from .clients.transport import TransportSupervisor
from .metrics import InstrumentationRegistry


logger = logging.getLogger(__name__)


def _dumps(data) -> str:
    return json.dumps(data, default=str)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthCheckHandler:
    """Health check HTTP handler."""

    def __init__(
        self,
        metrics: InstrumentationRegistry,
        store: StoreConnectionManager,
        transport: TransportSupervisor
    ):
        self.metrics = metrics
        self.store = store
        self.transport = transport

    async def health(self, request: Request) -> Response:
        """Liveness: 200 for as long as the process can answer."""
        return web.json_response(
            {
                "status": "healthy",
                "timestamp": _now(),
                "components": {
                    "store": self.store.state.value,
                    "transport": self.transport.state.value
                }
            },
            status=200
        )

    async def ready(self, request: Request) -> Response:
        """Readiness: 200 only while messages can flow from broker to database."""
        is_ready = self.store.is_ready and self.transport.is_subscribed

        return web.json_response(
            {
                "ready": is_ready,
                "store": self.store.get_stats(),
                "transport": self.transport.get_stats(),
                "counters": {
                    "mqtt_messages_total": self.metrics.received_total,
                    "db_inserts_total": self.metrics.persisted_total
                },
                "timestamp": _now()
            },
            status=200 if is_ready else 503,
            dumps=_dumps
        )

    async def metrics_endpoint(self, request: Request) -> Response:
        body, content_type = self.metrics.render()
        # aiohttp rejects charset inside content_type, so pass the raw header
        return web.Response(body=body, headers={"Content-Type": content_type})


def create_app(handler: HealthCheckHandler) -> web.Application:
    app = web.Application()
    app.router.add_get('/health', handler.health)
    app.router.add_get('/ready', handler.ready)
    app.router.add_get('/metrics', handler.metrics_endpoint)
    return app


class HealthCheckServer:
    """HTTP server for health and metrics endpoints."""

    def __init__(self, handler: HealthCheckHandler, host: str = "0.0.0.0", port: int = 3000):
        self.handler = handler
        self.host = host
        self.port = port
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def start(self):
        logger.info(f"Starting health check server on {self.host}:{self.port}")

        self.app = create_app(self.handler)
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"Backend service running on port {self.port}")

    async def stop(self):
        logger.info("Stopping health check server")

        if self.site:
            await self.site.stop()

        if self.runner:
            await self.runner.cleanup()

        logger.info("Health check server stopped")
