"""
Single control loop driving the trade processor.

One task owns the window state, the pending batch and the flush timer,
so no locking is needed: records are processed strictly in log order
and flushes happen between records.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from shared.framework.consumer import KafkaConsumer, LogRecord
from shared.schemas.trade import decode_trade
from shared.utils.errors import (
    ConsumerConnectionError,
    TimestampConversionError,
    TradeDecodeError,
)
from shared.utils.tracing import trace_async_function

from .batch import FlushController
from .metrics import ProcessorMetrics
from .models import FlushStatus, FlushTrigger, PendingRecord, ProcessedTrade
from .publisher import FanOutPublisher
from .window import WindowAggregator

logger = structlog.get_logger(__name__)


class SupervisorState(str, Enum):
    """Lifecycle of the processing loop."""

    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RUNNING = "running"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class StreamLoopSupervisor:
    """
    Connects to the trade log and runs the processing loop until stopped.

    Joining the consumer group is retried forever with a fixed backoff.
    While running, each iteration waits for the next record no longer
    than the time left before the flush deadline, so the time trigger
    fires even when the log is idle.
    """

    def __init__(
        self,
        consumer: KafkaConsumer,
        window: WindowAggregator,
        controller: FlushController,
        publisher: FanOutPublisher,
        *,
        reconnect_backoff: float = 5.0,
        poll_interval: float = 1.0,
        metrics: Optional[ProcessorMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.consumer = consumer
        self.window = window
        self.controller = controller
        self.publisher = publisher
        self.reconnect_backoff = reconnect_backoff
        self.poll_interval = poll_interval

        self._metrics = metrics or ProcessorMetrics()
        self._sleep = sleep
        self._stop_event = asyncio.Event()

        self.state = SupervisorState.CONNECTING
        self.connect_attempts = 0
        self.records_processed = 0
        self.decode_failures = 0
        self.timestamp_failures = 0

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the loop to finish after the current iteration."""
        if not self._stop_event.is_set():
            logger.info("Stop requested", state=self.state.value)
        self._stop_event.set()

    async def run(self) -> None:
        """
        Run until ``stop()`` is called, then flush and close.

        When the task is cancelled instead, nothing more is written: the
        rows still pending are counted as dropped and the consumer is
        closed.
        """
        cancelled = False
        try:
            while not self.stopping:
                if not await self._connect():
                    await self._backoff()
                    continue

                try:
                    await self._consume()
                except ConsumerConnectionError as exc:
                    self.state = SupervisorState.RECONNECTING
                    self._metrics.reconnects.inc()
                    logger.error(
                        "Lost connection to the trade log",
                        error=exc.message,
                        retry_in=self.reconnect_backoff,
                    )
                    await self.consumer.close()
                    await self._backoff()
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            await self._shutdown(flush=not cancelled)

    async def _connect(self) -> bool:
        self.state = (
            SupervisorState.RECONNECTING if self.connect_attempts else SupervisorState.CONNECTING
        )
        self.connect_attempts += 1
        try:
            await self.consumer.connect()
        except ConsumerConnectionError as exc:
            self._metrics.reconnects.inc()
            logger.error(
                "Failed to subscribe to the trade log",
                attempt=self.connect_attempts,
                error=exc.message,
                retry_in=self.reconnect_backoff,
            )
            return False

        self.state = SupervisorState.SUBSCRIBED
        logger.info("Subscribed to the trade log", attempt=self.connect_attempts)
        return True

    async def _backoff(self) -> None:
        """Wait out the reconnect delay, returning early on stop."""
        if self.stopping:
            return

        sleeper = asyncio.ensure_future(self._sleep(self.reconnect_backoff))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        _, pending = await asyncio.wait(
            {sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()

    async def _consume(self) -> None:
        self.state = SupervisorState.RUNNING
        while not self.stopping:
            timeout = min(self.poll_interval, self.controller.seconds_until_deadline())
            record = await self.consumer.poll(timeout)
            if record is not None:
                await self.process_record(record)
            await self.controller.flush_if_due()

    async def process_record(self, record: LogRecord) -> Optional[ProcessedTrade]:
        async with trace_async_function(
            "trade_processor.process_record",
            attributes={
                "messaging.kafka.partition": record.partition,
                "messaging.kafka.offset": record.offset,
            },
        ):
            log = logger.bind(
                topic=record.topic, partition=record.partition, offset=record.offset
            )
            return await self.process_payload(record.value, log=log)

    async def process_payload(
        self, payload: Optional[bytes], log=None
    ) -> Optional[ProcessedTrade]:
        """
        Handle one payload from the log.

        Returns None when the payload cannot be decoded; in that case no
        window, cache or batch state is touched.
        """
        log = log or logger
        try:
            trade = decode_trade(payload)
        except TradeDecodeError as exc:
            self.decode_failures += 1
            self._metrics.trades.labels(status="decode_error").inc()
            log.warning("Skipping undecodable record", error=exc.message, **exc.details)
            return None

        average = self.window.update(trade.symbol, trade.price)
        self._metrics.moving_average.labels(symbol=trade.symbol).set(average)

        queued = self.publisher.submit(trade.symbol, trade.price, average, trade.event_time)

        try:
            pending = PendingRecord.from_trade(trade)
        except TimestampConversionError as exc:
            self.timestamp_failures += 1
            self._metrics.trades.labels(status="timestamp_error").inc()
            log.warning(
                "Trade timestamp out of range, not persisted",
                symbol=trade.symbol,
                event_time=trade.event_time,
                error=exc.message,
            )
            batched, flush = False, None
        else:
            flush = await self.controller.add(pending)
            batched = True

        self.records_processed += 1
        self._metrics.trades.labels(status="processed").inc()
        log.debug(
            "Trade processed",
            symbol=trade.symbol,
            price=trade.price,
            average=average,
            window=len(self.window.window(trade.symbol)),
            pending=self.controller.pending_rows,
        )
        return ProcessedTrade(
            trade=trade, average=average, queued=queued, batched=batched, flush=flush
        )

    async def _shutdown(self, flush: bool = True) -> None:
        # Each shutdown flush writes one batch: retries first, then fresh rows
        while flush and self.controller.pending_rows:
            try:
                result = await self.controller.flush(FlushTrigger.SHUTDOWN)
            except Exception as exc:
                logger.error("Shutdown flush failed", error=str(exc), exc_info=True)
                break
            if result.status is not FlushStatus.SUCCESS:
                break

        leftover = self.controller.pending_rows
        if leftover:
            self._metrics.rows_dropped.inc(leftover)
            logger.error("Rows left unpersisted at shutdown", rows=leftover)

        await self.publisher.stop()
        await self.consumer.close()
        self.state = SupervisorState.STOPPED
        logger.info(
            "Trade processor loop stopped",
            records_processed=self.records_processed,
            decode_failures=self.decode_failures,
        )
