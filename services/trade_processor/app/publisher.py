"""
Latest-value cache and pub/sub fan-out.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional

import structlog
from redis.exceptions import RedisError

from shared.schemas.updates import PriceUpdate, cache_keys, encode_price_update
from shared.storage.redis import RedisClient

from .metrics import ProcessorMetrics
from .models import PublishOutcome

logger = structlog.get_logger(__name__)

PUBLISH_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class FanOutPublisher:
    """
    Writes the latest price and average for a symbol and announces it.

    The processing loop hands updates over with ``submit``, which never
    waits: updates go on a bounded queue drained by one background task,
    so a slow or unreachable Redis never holds up the next record. A
    single drain task keeps updates in submission order. When the queue
    is full the update is dropped and counted.

    Both sinks are best effort. A failure is logged and counted per
    sink and never reaches the processing loop.
    """

    def __init__(
        self,
        client: RedisClient,
        channel: str = "updates",
        timeout: float = 1.0,
        queue_size: int = 1000,
        metrics: Optional[ProcessorMetrics] = None,
    ) -> None:
        self.client = client
        self.channel = channel
        self.timeout = timeout
        self._metrics = metrics or ProcessorMetrics()
        self._queue: "asyncio.Queue[PriceUpdate]" = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain_loop(), name="fan-out")

    async def stop(self, timeout: float = 5.0) -> None:
        """Give queued updates up to ``timeout`` seconds to go out, then stop."""
        if self._task is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Fan-out queue not drained before stop", backlog=self.backlog)

        task, self._task = self._task, None
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def join(self) -> None:
        """Wait until every submitted update has been handled."""
        await self._queue.join()

    def submit(self, symbol: str, price: float, average: float, event_time: int) -> bool:
        """Queue an update without waiting; False when it had to be dropped."""
        self.start()
        update = PriceUpdate(symbol=symbol, price=price, sma=average, timestamp=event_time)
        try:
            self._queue.put_nowait(update)
        except asyncio.QueueFull:
            self._metrics.publish_dropped.inc()
            logger.warning(
                "Fan-out queue full, update dropped",
                symbol=symbol,
                queue_size=self._queue.maxsize,
            )
            return False
        return True

    async def publish(
        self, symbol: str, price: float, average: float, event_time: int
    ) -> PublishOutcome:
        """Write one update to both sinks now."""
        return await self._deliver(
            PriceUpdate(symbol=symbol, price=price, sma=average, timestamp=event_time)
        )

    async def _drain_loop(self) -> None:
        while True:
            update = await self._queue.get()
            try:
                await self._deliver(update)
            finally:
                self._queue.task_done()

    async def _deliver(self, update: PriceUpdate) -> PublishOutcome:
        price_key, sma_key = cache_keys(update.symbol)
        cached = await self._attempt(
            "cache",
            update.symbol,
            self.client.set_many({price_key: update.price, sma_key: update.sma}),
        )
        published = await self._attempt(
            "pubsub",
            update.symbol,
            self.client.publish(self.channel, encode_price_update(update)),
        )
        return PublishOutcome(cached=cached, published=published)

    async def _attempt(self, sink: str, symbol: str, operation: Awaitable) -> bool:
        try:
            await asyncio.wait_for(operation, timeout=self.timeout)
        except PUBLISH_ERRORS as exc:
            self._metrics.publish_failures.labels(sink=sink).inc()
            logger.warning(
                "Fan-out failed",
                sink=sink,
                symbol=symbol,
                error=str(exc) or type(exc).__name__,
            )
            return False
        return True
