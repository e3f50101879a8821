"""
Entry point for the trade processor service.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from aiohttp import web
import structlog

from shared.framework.consumer import ConsumerConfig, KafkaConsumer
from shared.framework.health import HealthCheck
from shared.framework.service import AsyncService
from shared.storage.postgres import PostgresClient
from shared.storage.redis import RedisClient
from shared.utils.errors import ConfigurationError
from shared.utils.logging import setup_logging
from shared.utils.tracing import setup_tracing

from .batch import BatchAccumulator, FlushController
from .config import TradeProcessorConfig
from .metrics import ProcessorMetrics
from .publisher import FanOutPublisher
from .store import TradeStore
from .supervisor import StreamLoopSupervisor, SupervisorState
from .window import WindowAggregator

logger = structlog.get_logger(__name__)

SUPERVISOR_STOP_TIMEOUT_SECONDS = 30.0


class TradeProcessorService(AsyncService):
    """Consumes trades, keeps moving averages, persists batches and fans out updates."""

    def __init__(self, config: Optional[TradeProcessorConfig] = None) -> None:
        config = config or TradeProcessorConfig()
        super().__init__(config)
        self.config = config

        dsn = config.require_postgres_dsn()
        self.processor_metrics = ProcessorMetrics(self.metrics)

        # Storage clients
        self.postgres = PostgresClient(dsn)
        self.redis = RedisClient(config.database.redis_url)
        self.store = TradeStore(self.postgres, table=config.trades_table)

        # Processing components
        self.window = WindowAggregator(config.window_size)
        self.controller = FlushController(
            BatchAccumulator(),
            self.store,
            max_batch_size=config.max_batch_size,
            batch_timeout=config.batch_timeout_seconds,
            failure_policy=config.flush_failure_policy,
            max_retries=config.flush_max_retries,
            max_retry_batches=config.flush_max_retry_batches,
            metrics=self.processor_metrics,
        )
        self.publisher = FanOutPublisher(
            self.redis,
            channel=config.updates_channel,
            timeout=config.publish_timeout_seconds,
            queue_size=config.publish_queue_size,
            metrics=self.processor_metrics,
        )
        self.consumer = KafkaConsumer(
            config=ConsumerConfig(
                topics=[config.input_topic],
                group_id=config.consumer_group,
                auto_offset_reset=config.kafka.auto_offset_reset,
                enable_auto_commit=config.kafka.enable_auto_commit,
                session_timeout_ms=config.kafka.session_timeout_ms,
                heartbeat_interval_ms=config.kafka.heartbeat_interval_ms,
            ),
            kafka_config=config.kafka,
        )
        self.supervisor = StreamLoopSupervisor(
            self.consumer,
            self.window,
            self.controller,
            self.publisher,
            reconnect_backoff=config.reconnect_backoff_seconds,
            poll_interval=config.poll_interval_seconds,
            metrics=self.processor_metrics,
        )
        self.supervisor_task: Optional[asyncio.Task] = None

        self.health_checker.add_check(
            HealthCheck(
                name="trade_log",
                check_func=self._check_supervisor,
                description="Processing loop is subscribed to the trade log",
            )
        )
        self.health_checker.add_check(
            HealthCheck(
                name="postgres",
                check_func=self.postgres.health_check,
                critical=False,
                description="Time-series store reachable",
            )
        )
        self.health_checker.add_check(
            HealthCheck(
                name="redis",
                check_func=self.redis.health_check,
                critical=False,
                description="Cache and pub/sub reachable",
            )
        )

    async def _startup_hook(self) -> None:
        """Execute service-specific startup logic."""
        if self.config.create_schema:
            await self.store.ensure_schema()

        self.supervisor_task = asyncio.create_task(
            self.supervisor.run(), name="trade-processor-loop"
        )
        self.supervisor_task.add_done_callback(self._on_supervisor_done)
        logger.info(
            "Trade processor started",
            input_topic=self.config.input_topic,
            window_size=self.config.window_size,
            max_batch_size=self.config.max_batch_size,
            batch_timeout_ms=self.config.batch_timeout_ms,
            flush_failure_policy=self.config.flush_failure_policy,
        )

    async def _shutdown_hook(self) -> None:
        """Execute service-specific shutdown logic."""
        self.supervisor.stop()
        if self.supervisor_task:
            try:
                await asyncio.wait_for(
                    self.supervisor_task, timeout=SUPERVISOR_STOP_TIMEOUT_SECONDS
                )
            except asyncio.TimeoutError:
                logger.error(
                    "Processing loop did not stop in time, pending rows abandoned",
                    timeout=SUPERVISOR_STOP_TIMEOUT_SECONDS,
                )

        await self.redis.close()
        await self.postgres.close()
        logger.info("Trade processor stopped")

    def _on_supervisor_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Processing loop crashed", error=str(exc), exc_info=exc)
            self.shutdown_event.set()

    def _check_supervisor(self) -> bool:
        return self.supervisor.state in (
            SupervisorState.SUBSCRIBED,
            SupervisorState.RUNNING,
        )

    def _setup_service_routes(self) -> None:
        """Expose service-specific status endpoint."""
        if not self.app:
            return

        self.app.router.add_get("/status", self._status_handler)

    async def _status_handler(self, request: web.Request) -> web.Response:
        """Return basic runtime information."""
        data = {
            "service": self.config.service_slug,
            "state": self.supervisor.state.value,
            "input_topic": self.config.input_topic,
            "symbols": self.window.symbols(),
            "pending_rows": self.controller.pending_rows,
            "retry_batches": self.controller.retry_batches,
            "fan_out_backlog": self.publisher.backlog,
            "records_processed": self.supervisor.records_processed,
            "decode_failures": self.supervisor.decode_failures,
            "consumer": self.consumer.get_metrics(),
        }
        return web.json_response(data)


async def main() -> None:
    """Service entrypoint."""
    try:
        config = TradeProcessorConfig()
        config.require_postgres_dsn()
    except ConfigurationError as exc:
        setup_logging("trade-processor")
        logger.error("Invalid configuration", **exc.to_dict())
        raise SystemExit(2) from exc

    setup_logging(
        "trade-processor",
        log_level=config.observability.log_level,
        format_type=config.observability.log_format,
    )
    setup_tracing(
        "trade-processor",
        endpoint=config.observability.otel_endpoint,
        enabled=config.observability.trace_enabled,
    )

    service = TradeProcessorService(config=config)
    await service.run()


if __name__ == "__main__":
    asyncio.run(main())
