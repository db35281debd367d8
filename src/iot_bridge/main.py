"""IoT Bridge Service - MQTT to PostgreSQL ingestion with Prometheus metrics."""

import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from prometheus_client import CollectorRegistry
from pydantic import ValidationError

from .clients.store import StoreConnectionManager
from .clients.transport import TransportSupervisor
from .config.resolver import ConfigResolver
from .config.settings import BridgeSettings, load_settings
from .health import HealthCheckHandler, HealthCheckServer
from .metrics import InstrumentationRegistry
from .pipeline import IngestionPipeline
from .utils.logging import setup_logging


logger = logging.getLogger(__name__)


class BridgeService:
    """Wires resolver, store, transport, pipeline and HTTP surface together."""

    def __init__(
        self,
        settings: BridgeSettings,
        registry: Optional[CollectorRegistry] = None,
        resolver: Optional[ConfigResolver] = None
    ):
        self.settings = settings
        self.metrics = InstrumentationRegistry(registry)
        self.resolver = resolver or ConfigResolver(settings)
        self.store = StoreConnectionManager()
        self.pipeline = IngestionPipeline(self.store, self.metrics)
        self.transport = TransportSupervisor(settings, self.resolver, self.pipeline.handle)
        self.health_server = HealthCheckServer(
            HealthCheckHandler(self.metrics, self.store, self.transport),
            host=settings.health_host,
            port=settings.port
        )

        self.tasks: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()
        self.running = False

    async def start(self):
        """Start all components and block until shutdown is requested."""
        if self.running:
            logger.warning("Service already running")
            return

        logger.info(f"Starting {self.settings.service_name} ({self.settings.environment})")
        self._setup_signal_handlers()
        self.running = True

        try:
            await self.health_server.start()

            # Store and transport come up independently; neither waits on the other.
            self.tasks.append(asyncio.create_task(self._initialize_store(), name="store-init"))
            self.tasks.append(asyncio.create_task(self.transport.run(), name="transport"))

            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def _initialize_store(self):
        config = await self.resolver.resolve_store()
        await self.store.initialize(config)

    def request_shutdown(self):
        self._shutdown_event.set()

    async def stop(self):
        """Stop the service gracefully."""
        if not self.running:
            return

        logger.info("Shutting down bridge service")
        self.running = False

        await self.transport.stop()

        for task in self.tasks:
            if not task.done():
                task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()

        await self.store.close()
        await self.health_server.stop()

        logger.info(
            f"Bridge service stopped: received={self.metrics.received_total}, "
            f"persisted={self.metrics.persisted_total}"
        )

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum.name}, initiating shutdown")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except (NotImplementedError, RuntimeError):
                # Not available on Windows event loops or outside the main thread
                logger.debug(f"Cannot install handler for {signum.name}")


async def main() -> int:
    """Main entry point."""
    try:
        settings = load_settings(os.getenv("CONFIG_FILE"))
    except (ValidationError, ValueError, FileNotFoundError) as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(settings)
    service = BridgeService(settings)

    try:
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        return 1
    return 0


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
