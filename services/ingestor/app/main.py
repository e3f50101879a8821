"""
Entry point for the ingestor service.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from aiohttp import web
import structlog

from shared.framework.health import HealthCheck
from shared.framework.producer import KafkaProducer, ProducerConfig
from shared.framework.service import AsyncService
from shared.schemas.trade import TradeRecord
from shared.utils.errors import ConfigurationError
from shared.utils.logging import setup_logging
from shared.utils.tracing import setup_tracing

from .config import IngestorConfig
from .feed import TradeFeed

logger = structlog.get_logger(__name__)


class IngestorService(AsyncService):
    """Bridges exchange trade streams onto the durable trade log."""

    def __init__(self, config: Optional[IngestorConfig] = None) -> None:
        config = config or IngestorConfig()
        super().__init__(config)
        self.config = config

        self.producer = KafkaProducer(
            config=ProducerConfig(topic=config.output_topic),
            kafka_config=config.kafka,
            error_handler=self._handle_producer_error,
        )

        self.metrics_forwarded = self.metrics.create_counter(
            "trades_forwarded_total",
            "Trades forwarded to the trade log",
            labels=["symbol"],
        )
        self.metrics_skipped = self.metrics.create_counter(
            "frames_skipped_total",
            "Stream frames that did not describe a trade",
        )

        self.feeds: Dict[str, TradeFeed] = {
            symbol: TradeFeed(
                symbol,
                config.stream_url(symbol),
                self.producer,
                reconnect_backoff=config.reconnect_backoff_seconds,
                heartbeat=config.heartbeat_seconds,
                on_forwarded=self._record_forwarded,
                on_skipped=self.metrics_skipped.inc,
            )
            for symbol in config.symbols
        }
        self.feed_tasks: List[asyncio.Task] = []

        self.health_checker.add_check(
            HealthCheck(
                name="exchange_stream",
                check_func=self._check_streams,
                critical=False,
                description="At least one exchange stream is connected",
            )
        )

    async def _startup_hook(self) -> None:
        """Execute service-specific startup logic."""
        await self.producer.start()
        for symbol, feed in self.feeds.items():
            self.feed_tasks.append(asyncio.create_task(feed.run(), name=f"feed-{symbol}"))
        logger.info(
            "Ingestor started",
            symbols=self.config.symbols,
            output_topic=self.config.output_topic,
        )

    async def _shutdown_hook(self) -> None:
        """Execute service-specific shutdown logic."""
        for feed in self.feeds.values():
            feed.stop()
        for task in self.feed_tasks:
            task.cancel()
        await asyncio.gather(*self.feed_tasks, return_exceptions=True)

        await self.producer.stop()
        logger.info("Ingestor stopped")

    def _record_forwarded(self, trade: TradeRecord) -> None:
        self.metrics_forwarded.labels(symbol=trade.symbol).inc()

    async def _handle_producer_error(self, error: Exception) -> None:
        self.metrics.record_error(type(error).__name__, "producer")
        logger.error("Producer error", error=str(error))

    def _check_streams(self) -> bool:
        return any(feed.connected for feed in self.feeds.values())

    def _setup_service_routes(self) -> None:
        """Expose service-specific status endpoint."""
        if not self.app:
            return

        self.app.router.add_get("/status", self._status_handler)

    async def _status_handler(self, request: web.Request) -> web.Response:
        """Return basic runtime information."""
        data = {
            "service": self.config.service_slug,
            "output_topic": self.config.output_topic,
            "feeds": {
                symbol: {
                    "connected": feed.connected,
                    "trades_forwarded": feed.trades_forwarded,
                    "frames_skipped": feed.frames_skipped,
                }
                for symbol, feed in self.feeds.items()
            },
            "producer": self.producer.get_metrics(),
        }
        return web.json_response(data)


async def main() -> None:
    """Service entrypoint."""
    try:
        config = IngestorConfig()
    except ConfigurationError as exc:
        setup_logging("ingestor")
        logger.error("Invalid configuration", **exc.to_dict())
        raise SystemExit(2) from exc

    setup_logging(
        "ingestor",
        log_level=config.observability.log_level,
        format_type=config.observability.log_format,
    )
    setup_tracing(
        "ingestor",
        endpoint=config.observability.otel_endpoint,
        enabled=config.observability.trace_enabled,
    )

    service = IngestorService(config=config)
    await service.run()


if __name__ == "__main__":
    asyncio.run(main())
