"""
Batch accumulation and dual-trigger flushing.

Rows are flushed to the time-series store when the batch reaches
``max_batch_size`` or when ``batch_timeout`` elapses, whichever comes
first. Every flush attempt restarts the timer from the flush instant.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Protocol, Sequence

import structlog

from shared.utils.errors import StorageError
from shared.utils.tracing import trace_async_function

from .metrics import ProcessorMetrics
from .models import FlushResult, FlushStatus, FlushTrigger, PendingRecord

logger = structlog.get_logger(__name__)


class TradeWriter(Protocol):
    """Anything that can persist a batch of trade rows in one operation."""

    async def write_trades(self, records: Sequence[PendingRecord]) -> None:
        """Persist all records or raise StorageError."""


class BatchAccumulator:
    """Ordered buffer of rows waiting to be persisted.

    Capacity is enforced by the flush controller, never here, so
    nothing is dropped silently.
    """

    def __init__(self) -> None:
        self._records: List[PendingRecord] = []

    def append(self, record: PendingRecord) -> None:
        self._records.append(record)

    def drain(self, limit: Optional[int] = None) -> List[PendingRecord]:
        """Remove and return the oldest ``limit`` records (all when None)."""
        if limit is None or limit >= len(self._records):
            drained, self._records = self._records, []
            return drained

        drained = self._records[:limit]
        del self._records[:limit]
        return drained

    def requeue(self, records: Sequence[PendingRecord]) -> None:
        """Put records back in front of anything appended since they were drained."""
        self._records[0:0] = list(records)

    def peek(self) -> List[PendingRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)


@dataclass
class RetryBatch:
    """A batch that failed to persist, with its own attempt count."""

    records: List[PendingRecord]
    attempts: int = 0


class FlushController:
    """
    Decides when the accumulated batch goes to the store.

    Failure policy:
        ``requeue``: a failed batch is set aside in a retry queue and
        retried on its own by later time or shutdown flushes. Each
        batch counts its own attempts; after ``max_retries`` failed
        retries it is dropped. At most ``max_retry_batches`` batches
        wait for a retry; beyond that the oldest is dropped.
        ``drop``: a failed batch is discarded at once.
    Size flushes only ever write fresh rows, so a failing batch is not
    retried once per incoming record. Dropped rows are logged at error
    level and counted in ``batch_rows_dropped_total``.
    """

    def __init__(
        self,
        accumulator: BatchAccumulator,
        store: TradeWriter,
        *,
        max_batch_size: int,
        batch_timeout: float,
        failure_policy: str = "requeue",
        max_retries: int = 3,
        max_retry_batches: int = 10,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[ProcessorMetrics] = None,
    ) -> None:
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be positive")
        if batch_timeout <= 0:
            raise ValueError("batch_timeout must be positive")
        if failure_policy not in ("requeue", "drop"):
            raise ValueError(f"Unknown flush failure policy: {failure_policy}")
        if max_retry_batches <= 0:
            raise ValueError("max_retry_batches must be positive")

        self.accumulator = accumulator
        self.max_batch_size = max_batch_size
        self.batch_timeout = batch_timeout
        self.failure_policy = failure_policy
        self.max_retries = max_retries
        self.max_retry_batches = max_retry_batches

        self._store = store
        self._clock = clock
        self._metrics = metrics or ProcessorMetrics()
        self._deadline = clock() + batch_timeout
        self._retries: Deque[RetryBatch] = deque()

    @property
    def deadline(self) -> float:
        return self._deadline

    @property
    def retry_batches(self) -> int:
        return len(self._retries)

    @property
    def pending_rows(self) -> int:
        """Rows not yet persisted: the open batch plus batches awaiting a retry."""
        return len(self.accumulator) + sum(len(batch.records) for batch in self._retries)

    def seconds_until_deadline(self) -> float:
        return max(0.0, self._deadline - self._clock())

    def reset_timer(self) -> None:
        self._deadline = self._clock() + self.batch_timeout

    async def add(self, record: PendingRecord) -> Optional[FlushResult]:
        """Append a row and flush at once if the batch is full."""
        self.accumulator.append(record)
        self._update_gauges()

        if len(self.accumulator) >= self.max_batch_size:
            return await self.flush(FlushTrigger.SIZE)
        return None

    async def flush_if_due(self) -> Optional[FlushResult]:
        """Fire the time trigger if the deadline has passed."""
        if self._clock() < self._deadline:
            return None
        return await self.flush(FlushTrigger.TIME)

    async def flush(self, trigger: FlushTrigger) -> FlushResult:
        """
        Write one batch with a single bulk insert.

        Time and shutdown flushes retry the oldest failed batch first,
        on its own. Otherwise up to ``max_batch_size`` fresh rows are
        drained and written.

        Raises:
            Exception: Anything other than StorageError from the store
                is re-raised after the rows have been kept for a retry
                or counted as dropped.
        """
        if self._retries and trigger is not FlushTrigger.SIZE:
            batch = self._retries.popleft()
        elif self.accumulator:
            batch = RetryBatch(self.accumulator.drain(self.max_batch_size))
        else:
            # Nothing pending; restart the period so idle timers do not pile up
            self.reset_timer()
            return FlushResult(trigger=trigger, status=FlushStatus.EMPTY, rows=0)

        records = batch.records
        attempt = batch.attempts + 1
        started = time.perf_counter()

        try:
            async with trace_async_function(
                "trade_processor.flush",
                attributes={"flush.trigger": trigger.value, "flush.rows": len(records)},
            ):
                await self._store.write_trades(records)
        except asyncio.CancelledError:
            self._restore(batch)
            raise
        except StorageError as exc:
            return self._handle_failure(trigger, batch, exc)
        except Exception as exc:
            self._handle_failure(trigger, batch, exc)
            raise
        finally:
            self.reset_timer()
            self._metrics.flush_duration.observe(time.perf_counter() - started)
            self._update_gauges()

        self._metrics.flushes.labels(trigger=trigger.value, status=FlushStatus.SUCCESS.value).inc()
        self._metrics.rows_persisted.inc(len(records))
        logger.info(
            "Batch persisted",
            trigger=trigger.value,
            rows=len(records),
            attempt=attempt,
            pending=self.pending_rows,
        )
        return FlushResult(
            trigger=trigger, status=FlushStatus.SUCCESS, rows=len(records), attempt=attempt
        )

    def _restore(self, batch: RetryBatch) -> None:
        # Interrupted write: the attempt does not count
        if batch.attempts:
            self._retries.appendleft(batch)
        else:
            self.accumulator.requeue(batch.records)

    def _handle_failure(
        self,
        trigger: FlushTrigger,
        batch: RetryBatch,
        error: Exception,
    ) -> FlushResult:
        retried = batch.attempts > 0
        batch.attempts += 1
        rows = len(batch.records)

        if self.failure_policy == "requeue" and batch.attempts <= self.max_retries:
            if retried:
                self._retries.appendleft(batch)
            else:
                self._retries.append(batch)
            status = FlushStatus.REQUEUED
            logger.warning(
                "Batch persist failed, rows kept for retry",
                trigger=trigger.value,
                rows=rows,
                attempt=batch.attempts,
                max_retries=self.max_retries,
                error=str(error) or type(error).__name__,
            )
            self._evict_overflow()
        else:
            status = FlushStatus.DROPPED
            self._metrics.rows_dropped.inc(rows)
            logger.error(
                "Batch persist failed, rows dropped",
                trigger=trigger.value,
                rows=rows,
                attempt=batch.attempts,
                policy=self.failure_policy,
                error=str(error) or type(error).__name__,
            )

        self._metrics.flushes.labels(trigger=trigger.value, status=status.value).inc()
        return FlushResult(
            trigger=trigger,
            status=status,
            rows=rows,
            attempt=batch.attempts,
            error=str(error) or type(error).__name__,
        )

    def _evict_overflow(self) -> None:
        while len(self._retries) > self.max_retry_batches:
            evicted = self._retries.popleft()
            self._metrics.rows_dropped.inc(len(evicted.records))
            logger.error(
                "Retry queue full, oldest batch dropped",
                rows=len(evicted.records),
                attempts=evicted.attempts,
                max_retry_batches=self.max_retry_batches,
            )

    def _update_gauges(self) -> None:
        self._metrics.pending.set(self.pending_rows)
        self._metrics.retry_batches.set(len(self._retries))
