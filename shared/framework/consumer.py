"""
Kafka consumer abstraction for async microservices.

Wraps a confluent-kafka consumer behind an awaitable ``poll`` so a
single asyncio control loop can wait on "next record" and its own
timers without blocking the event loop.
"""

import asyncio
from typing import Optional, Any, Dict, List
from dataclasses import dataclass

from confluent_kafka import Consumer, KafkaError, KafkaException, Message
import structlog

from shared.utils.errors import ConsumerConnectionError
from .config import KafkaConfig


logger = structlog.get_logger(__name__)

# Errors that mean the consumer has lost the cluster rather than a single message
_CONNECTION_ERROR_CODES = {
    KafkaError._ALL_BROKERS_DOWN,
}


@dataclass
class ConsumerConfig:
    """Consumer configuration."""
    topics: List[str]
    group_id: str
    auto_offset_reset: str = "earliest"
    enable_auto_commit: bool = True
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 3000


@dataclass(frozen=True)
class LogRecord:
    """A single record read from the durable log."""
    topic: str
    partition: int
    offset: int
    key: Optional[str]
    value: Optional[bytes]
    timestamp_ms: Optional[int] = None


class KafkaConsumer:
    """
    High-level Kafka consumer for a single-loop service.

    Features:
    - Connection check before subscribing
    - Blocking poll pushed to a worker thread
    - Classification of fatal vs. transient broker errors
    """

    def __init__(
        self,
        config: ConsumerConfig,
        kafka_config: KafkaConfig,
    ):
        self.config = config
        self.kafka_config = kafka_config

        self.logger = structlog.get_logger("kafka-consumer")
        self.consumer: Optional[Consumer] = None
        self.running = False

        # Metrics
        self.messages_received = 0
        self.messages_failed = 0
        self.last_message_time: Optional[float] = None

    def _create_consumer(self) -> Consumer:
        """Create Kafka consumer instance."""
        consumer_config = {
            'bootstrap.servers': self.kafka_config.bootstrap_servers,
            'group.id': self.config.group_id,
            'auto.offset.reset': self.config.auto_offset_reset,
            'enable.auto.commit': self.config.enable_auto_commit,
            'session.timeout.ms': self.config.session_timeout_ms,
            'heartbeat.interval.ms': self.config.heartbeat_interval_ms,
        }

        return Consumer(consumer_config)

    async def connect(self) -> None:
        """
        Create the consumer, check the cluster is reachable and subscribe.

        Raises:
            ConsumerConnectionError: If the cluster cannot be reached or the
                subscription is rejected.
        """
        if self.running:
            return

        self.logger.info(
            "Connecting Kafka consumer",
            topics=self.config.topics,
            group_id=self.config.group_id,
            bootstrap_servers=self.kafka_config.bootstrap_servers,
        )

        consumer: Optional[Consumer] = None
        try:
            consumer = self._create_consumer()
            await asyncio.to_thread(
                consumer.list_topics,
                timeout=self.kafka_config.metadata_timeout_seconds,
            )
            consumer.subscribe(self.config.topics)
        except (KafkaException, RuntimeError, ValueError) as exc:
            if consumer is not None:
                await asyncio.to_thread(consumer.close)
            raise ConsumerConnectionError(
                f"Failed to subscribe: {exc}",
                topic=",".join(self.config.topics),
            ) from exc

        self.consumer = consumer
        self.running = True
        self.logger.info("Kafka consumer subscribed", topics=self.config.topics)

    async def poll(self, timeout: float) -> Optional[LogRecord]:
        """
        Wait up to ``timeout`` seconds for the next record.

        Returns None on timeout, partition EOF or a per-message error.

        Raises:
            ConsumerConnectionError: If the consumer lost the cluster.
        """
        if not self.consumer:
            raise ConsumerConnectionError("Consumer is not connected")

        try:
            message = await asyncio.to_thread(self.consumer.poll, max(timeout, 0.0))
        except (KafkaException, RuntimeError) as exc:
            raise ConsumerConnectionError(f"Consumer poll failed: {exc}") from exc

        if message is None:
            return None

        error = message.error()
        if error is not None:
            return self._handle_message_error(message, error)

        self.messages_received += 1
        self.last_message_time = asyncio.get_running_loop().time()
        return self._to_record(message)

    def _handle_message_error(self, message: Message, error: KafkaError) -> None:
        if error.code() == KafkaError._PARTITION_EOF:
            # End of partition - normal condition
            return None

        if error.fatal() or error.code() in _CONNECTION_ERROR_CODES:
            raise ConsumerConnectionError(
                f"Kafka consumer error: {error.str()}",
                topic=message.topic(),
                retriable=error.retriable(),
            )

        self.messages_failed += 1
        self.logger.warning(
            "Message error",
            error=error.str(),
            topic=message.topic(),
            partition=message.partition(),
            offset=message.offset(),
        )
        return None

    @staticmethod
    def _to_record(message: Message) -> LogRecord:
        key = message.key()
        timestamp_type, timestamp_ms = message.timestamp()
        return LogRecord(
            topic=message.topic(),
            partition=message.partition(),
            offset=message.offset(),
            key=key.decode("utf-8", errors="replace") if key else None,
            value=message.value(),
            timestamp_ms=timestamp_ms if timestamp_type else None,
        )

    async def close(self) -> None:
        """Leave the consumer group and release the client."""
        consumer, self.consumer = self.consumer, None
        self.running = False
        if consumer is None:
            return

        try:
            await asyncio.to_thread(consumer.close)
        except (KafkaException, RuntimeError) as exc:
            self.logger.warning("Error closing Kafka consumer", error=str(exc))
        self.logger.info("Kafka consumer closed")

    def get_metrics(self) -> Dict[str, Any]:
        """Get consumer metrics."""
        return {
            "messages_received": self.messages_received,
            "messages_failed": self.messages_failed,
            "last_message_time": self.last_message_time,
            "running": self.running,
        }
