"""
Base class shared by the ingestor, trade processor and gateway.

Each service is one asyncio process that runs:

- its own work, started in ``_startup_hook`` and stopped in
  ``_shutdown_hook``
- an aiohttp server exposing ``/health``, ``/health/ready``,
  ``/health/live`` and ``/metrics`` plus any service routes
- a background refresh of the process-level gauges

SIGTERM and SIGINT set ``shutdown_event``; ``run()`` then shuts the
service down in reverse order of startup.
"""

import asyncio
import signal
from abc import ABC, abstractmethod
from typing import Optional

from aiohttp import web
import psutil
import structlog

from .config import ServiceConfig
from .health import HealthChecker
from .metrics import MetricsCollector


logger = structlog.get_logger(__name__)

METRICS_REFRESH_SECONDS = 30.0


class AsyncService(ABC):
    """Lifecycle, HTTP surface and observability for one service process."""

    def __init__(self, config: ServiceConfig):
        self.config = config
        self.logger = structlog.get_logger(config.service_name).bind(service=config.service_name)

        self.health_checker = HealthChecker(config)
        self.metrics = MetricsCollector(config.service_name)

        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self.metrics_task: Optional[asyncio.Task] = None

        self.shutdown_event = asyncio.Event()
        self._shutting_down = False

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
            except (NotImplementedError, RuntimeError):
                # Windows, or a loop running outside the main thread
                return

    def _on_signal(self, signum: int) -> None:
        self.logger.info("Received shutdown signal", signal=signal.Signals(signum).name)
        self.shutdown_event.set()

    def create_app(self) -> web.Application:
        """Build the aiohttp application; subclasses may add middlewares."""
        self.app = web.Application()
        router = self.app.router
        router.add_get("/health", self._health_handler)
        router.add_get("/health/ready", self._readiness_handler)
        router.add_get("/health/live", self._liveness_handler)
        router.add_get("/metrics", self._metrics_handler)
        self._setup_service_routes()
        return self.app

    def _setup_service_routes(self) -> None:
        """Register service routes on ``self.app``; none by default."""

    @abstractmethod
    async def _startup_hook(self) -> None:
        """Start the service's own work."""

    @abstractmethod
    async def _shutdown_hook(self) -> None:
        """Stop the service's own work and release its clients."""

    async def startup(self) -> None:
        self.logger.info("Starting service", config=self.config.to_dict())
        self._install_signal_handlers()
        self.create_app()

        await self._startup_hook()
        self.metrics_task = asyncio.create_task(self._refresh_process_metrics())

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        port = self.config.observability.health_port
        self.site = web.TCPSite(self.runner, host="0.0.0.0", port=port)
        await self.site.start()
        self.logger.info("Service started", port=port)

    async def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        self.logger.info("Shutting down service")

        if self.site:
            await self.site.stop()

        await self._shutdown_hook()

        if self.metrics_task:
            self.metrics_task.cancel()
            await asyncio.gather(self.metrics_task, return_exceptions=True)

        if self.runner:
            await self.runner.cleanup()

        self.shutdown_event.set()
        self.logger.info("Service shutdown complete")

    async def run(self) -> None:
        """Start, wait for a shutdown signal, then shut down."""
        try:
            await self.startup()
            await self.shutdown_event.wait()
        except Exception as exc:
            self.logger.error("Service error", error=str(exc), exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def _health_handler(self, request: web.Request) -> web.Response:
        health = await self.health_checker.check_health()
        return web.json_response(health, status=200 if health["healthy"] else 503)

    async def _readiness_handler(self, request: web.Request) -> web.Response:
        readiness = await self.health_checker.check_readiness()
        return web.json_response(readiness, status=200 if readiness["ready"] else 503)

    async def _liveness_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"alive": True})

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            body=self.metrics.get_metrics(),
            headers={"Content-Type": self.metrics.get_content_type()},
        )

    async def _refresh_process_metrics(self) -> None:
        process = psutil.Process()
        while not self.shutdown_event.is_set():
            self.metrics.update_service_info(
                version=getattr(self.config, "version", "0.1.0"),
                environment=self.config.environment,
            )

            health = await self.health_checker.check_health()
            self.metrics.set_health_status(health["healthy"])

            try:
                self.metrics.set_memory_usage(process.memory_info().rss)
            except psutil.Error as exc:
                logger.warning("Failed to read process memory", error=str(exc))

            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=METRICS_REFRESH_SECONDS)
            except asyncio.TimeoutError:
                continue
