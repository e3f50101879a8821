"""Unit tests for batch accumulation and dual-trigger flushing."""

import asyncio

import pytest

from services.trade_processor.app.batch import BatchAccumulator, FlushController
from services.trade_processor.app.models import FlushStatus, FlushTrigger
from tests.fixtures.mock_services import (
    BrokenTradeStore,
    HangingTradeStore,
    StubTradeStore,
    pending,
)


def _sample(metrics, name, **labels):
    return metrics.collector.registry.get_sample_value(f"trade_processor_{name}", labels) or 0.0


class TestBatchAccumulator:
    """Test BatchAccumulator class."""

    def test_drain_respects_limit_and_order(self):
        """Draining removes the oldest records first."""
        accumulator = BatchAccumulator()
        for i in range(5):
            accumulator.append(pending(float(i)))

        drained = accumulator.drain(3)

        assert [record.price for record in drained] == [0.0, 1.0, 2.0]
        assert [record.price for record in accumulator.peek()] == [3.0, 4.0]

    def test_drain_all(self):
        """Draining without a limit empties the accumulator."""
        accumulator = BatchAccumulator()
        accumulator.append(pending(1.0))
        accumulator.append(pending(2.0))

        assert len(accumulator.drain()) == 2
        assert len(accumulator) == 0

    def test_requeue_goes_to_front(self):
        """Requeued records precede records appended after the drain."""
        accumulator = BatchAccumulator()
        accumulator.append(pending(1.0))
        accumulator.append(pending(2.0))
        drained = accumulator.drain()
        accumulator.append(pending(3.0))

        accumulator.requeue(drained)

        assert [record.price for record in accumulator.peek()] == [1.0, 2.0, 3.0]


class TestFlushController:
    """Test FlushController class."""

    @pytest.mark.asyncio
    async def test_size_trigger_at_exact_bound(self, controller, stub_store):
        """The 100th record flushes a batch of exactly 100."""
        for i in range(99):
            assert await controller.add(pending(float(i))) is None
        assert stub_store.calls == 0

        result = await controller.add(pending(99.0))

        assert result.trigger is FlushTrigger.SIZE
        assert result.status is FlushStatus.SUCCESS
        assert result.rows == 100
        assert len(stub_store.batches) == 1
        assert len(controller.accumulator) == 0

    @pytest.mark.asyncio
    async def test_burst_of_150_leaves_50_pending(self, controller, stub_store):
        """A burst flushes at record 100 and keeps the rest pending."""
        results = [await controller.add(pending(float(i))) for i in range(150)]

        flushes = [result for result in results if result is not None]
        assert len(flushes) == 1
        assert flushes[0].rows == 100
        assert [record.price for record in stub_store.batches[0]] == [float(i) for i in range(100)]
        assert len(controller.accumulator) == 50

    @pytest.mark.asyncio
    async def test_time_trigger(self, controller, stub_store, fake_clock):
        """A non-empty batch flushes once the timeout has elapsed."""
        await controller.add(pending(1.0))
        fake_clock.advance(0.4)
        assert await controller.flush_if_due() is None

        fake_clock.advance(0.2)
        result = await controller.flush_if_due()

        assert result.trigger is FlushTrigger.TIME
        assert result.status is FlushStatus.SUCCESS
        assert result.rows == 1
        assert stub_store.rows == [pending(1.0)]

    @pytest.mark.asyncio
    async def test_empty_time_trigger_only_resets_deadline(self, controller, stub_store, fake_clock):
        """An idle timer never reaches the store."""
        fake_clock.advance(2.0)

        result = await controller.flush_if_due()

        assert result.status is FlushStatus.EMPTY
        assert stub_store.calls == 0
        assert controller.deadline == fake_clock() + 0.5

    @pytest.mark.asyncio
    async def test_deadline_reset_relative_to_flush(self, controller, fake_clock):
        """Every flush restarts the timer from the flush instant."""
        fake_clock.advance(0.3)
        for i in range(100):
            await controller.add(pending(float(i)))

        assert controller.deadline == pytest.approx(fake_clock() + 0.5)
        assert controller.seconds_until_deadline() == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_seconds_until_deadline_never_negative(self, controller, fake_clock):
        """An overdue deadline reports zero."""
        fake_clock.advance(10.0)
        assert controller.seconds_until_deadline() == 0.0

    @pytest.mark.asyncio
    async def test_flush_drains_at_most_max_batch_size(self, stub_store, fake_clock, processor_metrics):
        """A flush writes no more than the batch bound."""
        controller = FlushController(
            BatchAccumulator(),
            stub_store,
            max_batch_size=10,
            batch_timeout=0.5,
            clock=fake_clock,
            metrics=processor_metrics,
        )
        for i in range(25):
            controller.accumulator.append(pending(float(i)))

        result = await controller.flush(FlushTrigger.SHUTDOWN)

        assert result.rows == 10
        assert len(controller.accumulator) == 15

    @pytest.mark.asyncio
    async def test_requeue_then_success(self, fake_clock, processor_metrics):
        """A failed batch is retried in its original order."""
        store = StubTradeStore(failures=1)
        controller = FlushController(
            BatchAccumulator(),
            store,
            max_batch_size=100,
            batch_timeout=0.5,
            clock=fake_clock,
            metrics=processor_metrics,
        )
        await controller.add(pending(1.0))
        await controller.add(pending(2.0))

        first = await controller.flush(FlushTrigger.TIME)
        assert first.status is FlushStatus.REQUEUED
        assert first.attempt == 1
        assert controller.pending_rows == 2
        assert controller.retry_batches == 1
        assert len(controller.accumulator) == 0

        await controller.add(pending(3.0))
        second = await controller.flush(FlushTrigger.TIME)

        assert second.status is FlushStatus.SUCCESS
        assert second.attempt == 2
        assert second.rows == 2
        assert [record.price for record in store.rows] == [1.0, 2.0]

        third = await controller.flush(FlushTrigger.TIME)

        assert third.attempt == 1
        assert [record.price for record in store.rows] == [1.0, 2.0, 3.0]
        assert _sample(processor_metrics, "batch_flushes_total", trigger="time", status="requeued") == 1.0

    @pytest.mark.asyncio
    async def test_requeue_gives_up_after_max_retries(self, fake_clock, processor_metrics):
        """After the retries are spent the batch is dropped and counted."""
        store = StubTradeStore(failures=10)
        controller = FlushController(
            BatchAccumulator(),
            store,
            max_batch_size=100,
            batch_timeout=0.5,
            failure_policy="requeue",
            max_retries=2,
            clock=fake_clock,
            metrics=processor_metrics,
        )
        await controller.add(pending(1.0))
        await controller.add(pending(2.0))

        statuses = [(await controller.flush(FlushTrigger.TIME)).status for _ in range(3)]

        assert statuses == [FlushStatus.REQUEUED, FlushStatus.REQUEUED, FlushStatus.DROPPED]
        assert len(controller.accumulator) == 0
        assert _sample(processor_metrics, "batch_rows_dropped_total") == 2.0

    @pytest.mark.asyncio
    async def test_drop_policy_discards_immediately(self, fake_clock, processor_metrics):
        """Best-effort mode loses the failed batch at once."""
        store = StubTradeStore(failures=1)
        controller = FlushController(
            BatchAccumulator(),
            store,
            max_batch_size=100,
            batch_timeout=0.5,
            failure_policy="drop",
            clock=fake_clock,
            metrics=processor_metrics,
        )
        await controller.add(pending(1.0))

        result = await controller.flush(FlushTrigger.TIME)

        assert result.status is FlushStatus.DROPPED
        assert result.error == "store unavailable"
        assert len(controller.accumulator) == 0
        assert _sample(processor_metrics, "batch_rows_dropped_total") == 1.0

    @pytest.mark.asyncio
    async def test_failed_flush_still_resets_deadline(self, fake_clock, processor_metrics):
        """The timer restarts after failed attempts too."""
        controller = FlushController(
            BatchAccumulator(),
            StubTradeStore(failures=1),
            max_batch_size=100,
            batch_timeout=0.5,
            clock=fake_clock,
            metrics=processor_metrics,
        )
        await controller.add(pending(1.0))
        fake_clock.advance(0.7)

        await controller.flush_if_due()

        assert controller.deadline == pytest.approx(fake_clock() + 0.5)

    def test_invalid_arguments(self, stub_store):
        """Bad limits or an unknown policy are rejected."""
        with pytest.raises(ValueError):
            FlushController(BatchAccumulator(), stub_store, max_batch_size=0, batch_timeout=0.5)
        with pytest.raises(ValueError):
            FlushController(BatchAccumulator(), stub_store, max_batch_size=10, batch_timeout=0)
        with pytest.raises(ValueError):
            FlushController(
                BatchAccumulator(),
                stub_store,
                max_batch_size=10,
                batch_timeout=0.5,
                failure_policy="retry-forever",
            )
        with pytest.raises(ValueError):
            FlushController(
                BatchAccumulator(),
                stub_store,
                max_batch_size=10,
                batch_timeout=0.5,
                max_retry_batches=0,
            )

    @pytest.mark.asyncio
    async def test_fifty_records_then_a_pause(self, controller, stub_store, fake_clock):
        """Fifty records and a pause past the timeout give one flush of 50."""
        for i in range(50):
            assert await controller.add(pending(float(i))) is None
        fake_clock.advance(0.6)

        result = await controller.flush_if_due()

        assert result.trigger is FlushTrigger.TIME
        assert result.status is FlushStatus.SUCCESS
        assert result.rows == 50
        assert len(stub_store.batches) == 1
        assert len(controller.accumulator) == 0
        assert await controller.flush_if_due() is None

    @pytest.mark.asyncio
    async def test_failed_size_flush_is_not_refired_by_new_records(self, fake_clock, processor_metrics):
        """Records arriving after a failed size flush do not spend its retries."""
        store = StubTradeStore(failures=4)
        controller = FlushController(
            BatchAccumulator(),
            store,
            max_batch_size=100,
            batch_timeout=0.5,
            max_retries=3,
            clock=fake_clock,
            metrics=processor_metrics,
        )

        statuses = []
        largest = 0
        for i in range(104):
            result = await controller.add(pending(float(i)))
            if result is not None:
                statuses.append(result.status)
            largest = max(largest, len(controller.accumulator))

        assert statuses == [FlushStatus.REQUEUED]
        assert store.calls == 1
        assert largest <= 100
        assert len(controller.accumulator) == 4
        assert controller.retry_batches == 1
        assert _sample(processor_metrics, "batch_rows_dropped_total") == 0.0

        fake_clock.advance(0.5)
        retry = await controller.flush_if_due()

        assert retry.status is FlushStatus.REQUEUED
        assert retry.rows == 100
        assert retry.attempt == 2
        assert len(controller.accumulator) == 4

    @pytest.mark.asyncio
    async def test_retry_attempts_are_tracked_per_batch(self, fake_clock, processor_metrics):
        """Rows that failed once are not dropped because an older batch failed too."""
        store = StubTradeStore(failures=2)
        controller = FlushController(
            BatchAccumulator(),
            store,
            max_batch_size=3,
            batch_timeout=0.5,
            max_retries=1,
            clock=fake_clock,
            metrics=processor_metrics,
        )
        await controller.add(pending(1.0))
        first = await controller.flush(FlushTrigger.TIME)
        assert first.status is FlushStatus.REQUEUED

        for price in (2.0, 3.0):
            assert await controller.add(pending(price)) is None
        size = await controller.add(pending(4.0))

        assert size.trigger is FlushTrigger.SIZE
        assert size.status is FlushStatus.REQUEUED
        assert (size.rows, size.attempt) == (3, 1)
        assert _sample(processor_metrics, "batch_rows_dropped_total") == 0.0

        fake_clock.advance(0.5)
        older = await controller.flush_if_due()
        fake_clock.advance(0.5)
        newer = await controller.flush_if_due()

        assert (older.status, older.rows, older.attempt) == (FlushStatus.SUCCESS, 1, 2)
        assert (newer.status, newer.rows, newer.attempt) == (FlushStatus.SUCCESS, 3, 2)
        assert [record.price for record in store.rows] == [1.0, 2.0, 3.0, 4.0]
        assert controller.pending_rows == 0

    @pytest.mark.asyncio
    async def test_retry_queue_is_bounded(self, fake_clock, processor_metrics):
        """Past the retry limit the oldest failed batch is dropped and counted."""
        controller = FlushController(
            BatchAccumulator(),
            StubTradeStore(failures=10),
            max_batch_size=2,
            batch_timeout=0.5,
            max_retry_batches=2,
            clock=fake_clock,
            metrics=processor_metrics,
        )

        for i in range(6):
            await controller.add(pending(float(i)))

        assert controller.retry_batches == 2
        assert controller.pending_rows == 4
        assert _sample(processor_metrics, "batch_rows_dropped_total") == 2.0

    @pytest.mark.asyncio
    async def test_unexpected_store_error_keeps_rows(self, fake_clock, processor_metrics):
        """An error outside the storage taxonomy propagates without losing the batch."""
        controller = FlushController(
            BatchAccumulator(),
            BrokenTradeStore(RuntimeError("driver bug")),
            max_batch_size=100,
            batch_timeout=0.5,
            clock=fake_clock,
            metrics=processor_metrics,
        )
        await controller.add(pending(1.0))
        await controller.add(pending(2.0))

        with pytest.raises(RuntimeError):
            await controller.flush(FlushTrigger.TIME)

        assert controller.pending_rows == 2
        assert controller.retry_batches == 1
        assert _sample(processor_metrics, "batch_rows_dropped_total") == 0.0

    @pytest.mark.asyncio
    async def test_interrupted_write_returns_rows(self, fake_clock, processor_metrics):
        """Cancelling a flush mid-write puts its rows back in order."""
        store = HangingTradeStore()
        controller = FlushController(
            BatchAccumulator(),
            store,
            max_batch_size=100,
            batch_timeout=0.5,
            clock=fake_clock,
            metrics=processor_metrics,
        )
        await controller.add(pending(1.0))
        await controller.add(pending(2.0))

        task = asyncio.create_task(controller.flush(FlushTrigger.TIME))
        await store.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [record.price for record in controller.accumulator.peek()] == [1.0, 2.0]
        assert controller.retry_batches == 0
