"""
Prometheus instruments for the trade processor.
"""

from __future__ import annotations

from typing import Optional

from shared.framework.metrics import MetricsCollector


class ProcessorMetrics:
    """Named instruments shared by the window, batch and fan-out components."""

    def __init__(self, collector: Optional[MetricsCollector] = None) -> None:
        self.collector = collector or MetricsCollector("trade_processor")

        self.trades = self.collector.create_counter(
            "trades_total",
            "Log records handled by the processing loop, by outcome",
            labels=["status"],
        )
        self.flushes = self.collector.create_counter(
            "batch_flushes_total",
            "Batch flush attempts by trigger and outcome",
            labels=["trigger", "status"],
        )
        self.rows_persisted = self.collector.create_counter(
            "batch_rows_persisted_total",
            "Trade rows written to the time-series store",
        )
        self.rows_dropped = self.collector.create_counter(
            "batch_rows_dropped_total",
            "Trade rows discarded after failed persistence",
        )
        self.flush_duration = self.collector.create_histogram(
            "batch_flush_duration_seconds",
            "Duration of bulk inserts into the time-series store",
        )
        self.pending = self.collector.create_gauge(
            "batch_pending_rows",
            "Rows waiting for the next flush",
        )
        self.publish_failures = self.collector.create_counter(
            "publish_failures_total",
            "Failed fan-out operations by sink",
            labels=["sink"],
        )
        self.publish_dropped = self.collector.create_counter(
            "publish_updates_dropped_total",
            "Updates discarded because the fan-out queue was full",
        )
        self.retry_batches = self.collector.create_gauge(
            "batch_retry_batches",
            "Failed batches waiting for a retry",
        )
        self.reconnects = self.collector.create_counter(
            "log_reconnects_total",
            "Failed attempts to join the consumer group",
        )
        self.moving_average = self.collector.create_gauge(
            "moving_average",
            "Latest moving average per symbol",
            labels=["symbol"],
        )
