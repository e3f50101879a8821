"""Unit tests for the stream loop supervisor."""

import asyncio
import json

import pytest

from services.trade_processor.app.batch import BatchAccumulator, FlushController
from services.trade_processor.app.metrics import ProcessorMetrics
from services.trade_processor.app.models import FlushTrigger
from services.trade_processor.app.publisher import FanOutPublisher
from services.trade_processor.app.supervisor import StreamLoopSupervisor, SupervisorState
from services.trade_processor.app.window import WindowAggregator
from shared.utils.errors import ConsumerConnectionError
from tests.fixtures.mock_services import (
    FakeClock,
    HangingTradeStore,
    StubLogConsumer,
    StubRedisClient,
    StubTradeStore,
    log_record,
    trade_payload,
)


def _flushes(metrics, trigger):
    return metrics.collector.registry.get_sample_value(
        "trade_processor_batch_flushes_total", {"trigger": trigger, "status": "success"}
    ) or 0.0


class TestProcessPayload:
    """Test handling of individual payloads."""

    @pytest.mark.asyncio
    async def test_decode_failure_leaves_state_untouched(self, supervisor_factory, stub_consumer, stub_redis):
        """Garbage on the log changes nothing but the failure counter."""
        supervisor = supervisor_factory(stub_consumer)

        result = await supervisor.process_payload(b"\x0a\x10BTC")

        assert result is None
        assert supervisor.decode_failures == 1
        assert len(supervisor.window) == 0
        assert len(supervisor.controller.accumulator) == 0
        assert stub_redis.values == {}
        assert stub_redis.published == []

    @pytest.mark.asyncio
    async def test_cache_and_channel_reflect_each_record(self, supervisor_factory, stub_consumer, stub_redis):
        """After record i the cache and the last update describe record i."""
        supervisor = supervisor_factory(stub_consumer)

        for i in range(12):
            price = 100.0 + i
            result = await supervisor.process_payload(trade_payload(price=price, event_time=1_000 + i))
            await supervisor.publisher.join()

            assert stub_redis.values["btc_price"] == price
            assert stub_redis.values["btc_sma"] == result.average
            last = json.loads(stub_redis.published[-1][1])
            assert last["price"] == price
            assert last["sma"] == result.average
            assert last["timestamp"] == 1_000 + i

        assert result.average == pytest.approx(sum(100.0 + i for i in range(2, 12)) / 10)
        assert len(supervisor.controller.accumulator) == 12
        await supervisor.publisher.stop()

    @pytest.mark.asyncio
    async def test_window_example(self, supervisor_factory, stub_consumer):
        """Prices 100..109 average 104.5, then 110 moves it to 105.5."""
        supervisor = supervisor_factory(stub_consumer)

        results = [await supervisor.process_payload(trade_payload(price=100.0 + i)) for i in range(11)]

        assert results[9].average == pytest.approx(104.5)
        assert results[10].average == pytest.approx(105.5)
        await supervisor.publisher.stop()

    @pytest.mark.asyncio
    async def test_unconvertible_timestamp_skips_only_the_batch(self, supervisor_factory, stub_consumer, stub_redis):
        """The window and fan-out still see a trade whose time cannot be stored."""
        supervisor = supervisor_factory(stub_consumer)

        result = await supervisor.process_payload(trade_payload(price=50.0, event_time=2**63))
        await supervisor.publisher.join()

        assert result is not None
        assert not result.batched
        assert result.average == 50.0
        assert stub_redis.values["btc_price"] == 50.0
        assert len(supervisor.controller.accumulator) == 0
        assert supervisor.timestamp_failures == 1
        await supervisor.publisher.stop()

    @pytest.mark.asyncio
    async def test_cold_start_replay_is_deterministic(self):
        """Replaying the same log reproduces the same (price, average) sequence."""
        payloads = [trade_payload(price=p) for p in (100.0, 101.5, 99.0, 103.25, 98.0, 110.0, 105.0)]

        async def replay():
            metrics = ProcessorMetrics()
            supervisor = StreamLoopSupervisor(
                StubLogConsumer(),
                WindowAggregator(3),
                FlushController(
                    BatchAccumulator(),
                    StubTradeStore(),
                    max_batch_size=100,
                    batch_timeout=0.5,
                    clock=FakeClock(),
                    metrics=metrics,
                ),
                FanOutPublisher(StubRedisClient(), metrics=metrics),
                metrics=metrics,
            )
            results = [await supervisor.process_payload(payload) for payload in payloads]
            await supervisor.publisher.stop()
            return [(result.trade.price, result.average) for result in results]

        assert await replay() == await replay()


class TestRunLoop:
    """Test the connect / poll / flush loop."""

    @pytest.mark.asyncio
    async def test_retries_subscription_with_fixed_backoff(self, supervisor_factory, stub_store):
        """Failed subscriptions are retried every 5 seconds until one succeeds."""
        consumer = StubLogConsumer(
            script=[log_record(trade_payload(price=p), offset=i) for i, p in enumerate((1.0, 2.0, 3.0))],
            connect_failures=2,
        )
        supervisor = supervisor_factory(consumer)
        consumer.on_exhausted = supervisor.stop

        await supervisor.run()

        assert consumer.connect_calls == 3
        assert supervisor.sleeps == [5.0, 5.0]
        assert supervisor.state is SupervisorState.STOPPED
        assert supervisor.records_processed == 3

    @pytest.mark.asyncio
    async def test_shutdown_flushes_pending_rows(self, supervisor_factory, stub_store, processor_metrics):
        """Rows still pending at stop are written with the shutdown trigger."""
        consumer = StubLogConsumer(
            script=[log_record(trade_payload(price=p)) for p in (1.0, 2.0)],
        )
        supervisor = supervisor_factory(consumer)
        consumer.on_exhausted = supervisor.stop

        await supervisor.run()

        assert [row.price for row in stub_store.rows] == [1.0, 2.0]
        assert _flushes(processor_metrics, FlushTrigger.SHUTDOWN.value) == 1.0
        assert consumer.close_calls == 1

    @pytest.mark.asyncio
    async def test_lost_connection_reconnects(self, supervisor_factory, stub_store):
        """A consumer failure mid-stream leads to a fresh subscription."""
        consumer = StubLogConsumer(
            script=[
                log_record(trade_payload(price=1.0), offset=0),
                ConsumerConnectionError("all brokers down"),
                log_record(trade_payload(price=2.0), offset=1),
            ],
        )
        supervisor = supervisor_factory(consumer)
        consumer.on_exhausted = supervisor.stop

        await supervisor.run()

        assert consumer.connect_calls == 2
        assert consumer.close_calls == 2
        assert supervisor.sleeps == [5.0]
        assert [row.price for row in stub_store.rows] == [1.0, 2.0]
        assert supervisor.window.window("BTCUSDT") == (1.0, 2.0)

    @pytest.mark.asyncio
    async def test_poll_waits_no_longer_than_the_flush_deadline(self, supervisor_factory, fake_clock):
        """The poll timeout is the time left before the deadline, capped by the poll interval."""
        consumer = StubLogConsumer()
        supervisor = supervisor_factory(consumer)
        consumer.on_exhausted = supervisor.stop

        fake_clock.advance(0.2)
        await supervisor.run()

        assert consumer.poll_timeouts[0] == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_time_trigger_fires_on_idle_log(self, supervisor_factory, fake_clock, stub_store, processor_metrics):
        """A quiet log does not hold back a non-empty batch."""
        consumer = StubLogConsumer(script=[log_record(trade_payload(price=7.0))])
        supervisor = supervisor_factory(consumer)

        def idle():
            fake_clock.advance(1.0)
            supervisor.stop()

        consumer.on_exhausted = idle

        await supervisor.run()

        assert [row.price for row in stub_store.rows] == [7.0]
        assert _flushes(processor_metrics, FlushTrigger.TIME.value) == 1.0
        assert _flushes(processor_metrics, FlushTrigger.SHUTDOWN.value) == 0.0

    @pytest.mark.asyncio
    async def test_decode_failures_do_not_stop_the_loop(self, supervisor_factory, stub_store):
        """Bad records are skipped and the next good one is processed."""
        consumer = StubLogConsumer(
            script=[
                log_record(b"\xff\xff\xff", offset=0),
                log_record(None, offset=1),
                log_record(trade_payload(price=3.0), offset=2),
            ],
        )
        supervisor = supervisor_factory(consumer)
        consumer.on_exhausted = supervisor.stop

        await supervisor.run()

        assert supervisor.decode_failures == 2
        assert [row.price for row in stub_store.rows] == [3.0]


class TestDownstreamIsolation:
    """Test that slow or interrupted downstream I/O neither stalls the loop nor loses rows silently."""

    @pytest.mark.asyncio
    async def test_hung_redis_does_not_stall_processing(self, controller, processor_metrics):
        """Records keep flowing while every Redis call hangs."""
        redis = StubRedisClient()

        async def hang(*args):
            await asyncio.sleep(10)

        redis.set_many = hang
        redis.publish = hang
        publisher = FanOutPublisher(redis, timeout=1.0, metrics=processor_metrics)
        supervisor = StreamLoopSupervisor(
            StubLogConsumer(),
            WindowAggregator(10),
            controller,
            publisher,
            metrics=processor_metrics,
        )
        loop = asyncio.get_running_loop()

        started = loop.time()
        results = [await supervisor.process_payload(trade_payload(price=100.0 + i)) for i in range(5)]

        assert loop.time() - started < 0.1
        assert all(result.queued for result in results)
        assert len(controller.accumulator) == 5
        await publisher.stop(timeout=0.01)

    @pytest.mark.asyncio
    async def test_cancel_during_flush_counts_the_rows(self, fake_clock, processor_metrics):
        """Rows caught in a write that is cancelled are reported as dropped."""
        store = HangingTradeStore()
        consumer = StubLogConsumer(
            script=[log_record(trade_payload(price=p), offset=i) for i, p in enumerate((1.0, 2.0))],
            on_exhausted=lambda: fake_clock.advance(1.0),
        )
        controller = FlushController(
            BatchAccumulator(),
            store,
            max_batch_size=100,
            batch_timeout=0.5,
            clock=fake_clock,
            metrics=processor_metrics,
        )
        supervisor = StreamLoopSupervisor(
            consumer,
            WindowAggregator(10),
            controller,
            FanOutPublisher(StubRedisClient(), metrics=processor_metrics),
            metrics=processor_metrics,
        )

        task = asyncio.create_task(supervisor.run())
        await store.entered.wait()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert processor_metrics.collector.registry.get_sample_value(
            "trade_processor_batch_rows_dropped_total"
        ) == 2.0
        assert consumer.close_calls == 1
        assert supervisor.state is SupervisorState.STOPPED
