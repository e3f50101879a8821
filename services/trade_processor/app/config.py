"""
Configuration for the trade processor service.
"""

from __future__ import annotations

import os

from shared.framework.config import ServiceConfig, env_bool, env_float, env_int
from shared.utils.errors import ConfigurationError

FLUSH_FAILURE_POLICIES = ("requeue", "drop")


class TradeProcessorConfig(ServiceConfig):
    """Service configuration loaded from environment variables."""

    def __init__(self) -> None:
        super().__init__(service_name="trade_processor")

        # Hyphenated name used in /status and process names
        self.service_slug = "trade-processor"

        # Durable log
        self.input_topic = os.getenv("TRADE_PROCESSOR_INPUT_TOPIC", "trades")
        self.consumer_group = os.getenv(
            "TRADE_PROCESSOR_CONSUMER_GROUP",
            "crypto-processor-group",
        )
        self.reconnect_backoff_seconds = env_float(
            "TRADE_PROCESSOR_RECONNECT_BACKOFF_SECONDS", "5.0"
        )
        self.poll_interval_seconds = env_float(
            "TRADE_PROCESSOR_POLL_INTERVAL_SECONDS", "1.0"
        )

        # Sliding window
        self.window_size = env_int("TRADE_PROCESSOR_WINDOW_SIZE", "10")

        # Dual-trigger batching
        self.max_batch_size = env_int("TRADE_PROCESSOR_MAX_BATCH_SIZE", "100")
        self.batch_timeout_ms = env_int("TRADE_PROCESSOR_BATCH_TIMEOUT_MS", "500")
        self.flush_failure_policy = os.getenv(
            "TRADE_PROCESSOR_FLUSH_FAILURE_POLICY", "requeue"
        ).lower()
        self.flush_max_retries = env_int("TRADE_PROCESSOR_FLUSH_MAX_RETRIES", "3")
        self.flush_max_retry_batches = env_int(
            "TRADE_PROCESSOR_FLUSH_MAX_RETRY_BATCHES", "10"
        )

        # Time-series store
        self.trades_table = os.getenv("TRADE_PROCESSOR_TRADES_TABLE", "trades")
        self.create_schema = env_bool("TRADE_PROCESSOR_CREATE_SCHEMA", "false")

        # Cache / pub-sub fan-out
        self.updates_channel = os.getenv("TRADE_PROCESSOR_UPDATES_CHANNEL", "updates")
        self.publish_timeout_seconds = env_float(
            "TRADE_PROCESSOR_PUBLISH_TIMEOUT_SECONDS", "1.0"
        )
        self.publish_queue_size = env_int("TRADE_PROCESSOR_PUBLISH_QUEUE_SIZE", "1000")

        self._validate()

    @property
    def batch_timeout_seconds(self) -> float:
        return self.batch_timeout_ms / 1000.0

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            {
                "input_topic": self.input_topic,
                "consumer_group": self.consumer_group,
                "window_size": self.window_size,
                "max_batch_size": self.max_batch_size,
                "batch_timeout_ms": self.batch_timeout_ms,
                "flush_failure_policy": self.flush_failure_policy,
                "flush_max_retries": self.flush_max_retries,
                "updates_channel": self.updates_channel,
            }
        )
        return data

    def _validate(self) -> None:
        positive = {
            "TRADE_PROCESSOR_WINDOW_SIZE": self.window_size,
            "TRADE_PROCESSOR_MAX_BATCH_SIZE": self.max_batch_size,
            "TRADE_PROCESSOR_BATCH_TIMEOUT_MS": self.batch_timeout_ms,
            "TRADE_PROCESSOR_RECONNECT_BACKOFF_SECONDS": self.reconnect_backoff_seconds,
            "TRADE_PROCESSOR_POLL_INTERVAL_SECONDS": self.poll_interval_seconds,
            "TRADE_PROCESSOR_PUBLISH_TIMEOUT_SECONDS": self.publish_timeout_seconds,
            "TRADE_PROCESSOR_PUBLISH_QUEUE_SIZE": self.publish_queue_size,
            "TRADE_PROCESSOR_FLUSH_MAX_RETRY_BATCHES": self.flush_max_retry_batches,
        }
        for key, value in positive.items():
            if value <= 0:
                raise ConfigurationError(
                    f"{key} must be positive", config_key=key, config_value=value
                )

        if self.flush_max_retries < 0:
            raise ConfigurationError(
                "TRADE_PROCESSOR_FLUSH_MAX_RETRIES must not be negative",
                config_key="TRADE_PROCESSOR_FLUSH_MAX_RETRIES",
                config_value=self.flush_max_retries,
            )

        if self.flush_failure_policy not in FLUSH_FAILURE_POLICIES:
            raise ConfigurationError(
                f"TRADE_PROCESSOR_FLUSH_FAILURE_POLICY must be one of {FLUSH_FAILURE_POLICIES}",
                config_key="TRADE_PROCESSOR_FLUSH_FAILURE_POLICY",
                config_value=self.flush_failure_policy,
            )
