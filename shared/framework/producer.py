"""
Kafka producer used to append trades to the durable log.

Callers hand over already-encoded payloads through ``send_message``;
a background task feeds them to librdkafka so a burst of exchange
frames never blocks the websocket reader. Delivery is at-least-once
as far as librdkafka's own retries go, and failures are counted and
logged rather than raised back to the feed.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from confluent_kafka import KafkaError, KafkaException, Message, Producer
import structlog

from .config import KafkaConfig


logger = structlog.get_logger(__name__)

QueuedMessage = Dict[str, Any]


@dataclass
class ProducerConfig:
    """Producer configuration."""
    topic: str
    flush_timeout: float = 5.0
    message_timeout_ms: int = 5000
    retry_backoff_ms: int = 100
    max_retries: int = 3
    linger_ms: int = 5
    queue_size: int = 10000


class KafkaProducer:
    """Queue-backed producer for one topic."""

    def __init__(
        self,
        config: ProducerConfig,
        kafka_config: KafkaConfig,
        error_handler: Optional[Callable[[Exception], Awaitable[None]]] = None,
    ):
        self.config = config
        self.kafka_config = kafka_config
        self.error_handler = error_handler

        self.logger = structlog.get_logger("kafka-producer").bind(topic=config.topic)
        self.producer: Optional[Producer] = None
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self.message_queue: "asyncio.Queue[QueuedMessage]" = asyncio.Queue(maxsize=config.queue_size)

        self.messages_sent = 0
        self.messages_delivered = 0
        self.messages_failed = 0

    def _create_producer(self) -> Producer:
        return Producer({
            "bootstrap.servers": self.kafka_config.bootstrap_servers,
            "retries": self.config.max_retries,
            "retry.backoff.ms": self.config.retry_backoff_ms,
            "message.timeout.ms": self.config.message_timeout_ms,
            "linger.ms": self.config.linger_ms,
        })

    async def start(self) -> None:
        if self.running:
            return

        self.producer = self._create_producer()
        self.running = True
        self.task = asyncio.create_task(self._produce_loop(), name=f"producer-{self.config.topic}")
        self.logger.info("Kafka producer started", bootstrap_servers=self.kafka_config.bootstrap_servers)

    async def stop(self) -> None:
        """Stop the loop, hand over what is still queued and wait for delivery."""
        if not self.running:
            return
        self.running = False

        if self.task:
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)

        while not self.message_queue.empty():
            self._produce(self.message_queue.get_nowait())

        if self.producer:
            undelivered = await asyncio.to_thread(self.producer.flush, self.config.flush_timeout)
            if undelivered:
                self.logger.warning("Messages left undelivered on shutdown", count=undelivered)

        self.logger.info("Kafka producer stopped", **self.get_metrics())

    async def send_message(self, payload: bytes, key: Optional[str] = None) -> None:
        """Queue an encoded payload; waits only when the local queue is full."""
        await self.message_queue.put({"payload": payload, "key": key})

    async def _produce_loop(self) -> None:
        while self.running:
            try:
                message = await asyncio.wait_for(self.message_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                # Idle: still serve delivery callbacks
                self.producer.poll(0)
                continue

            try:
                self._produce(message)
            except KafkaException as exc:
                if self.error_handler:
                    await self.error_handler(exc)

    def _produce(self, message: QueuedMessage) -> None:
        if not self.producer:
            return

        key = message["key"]
        kwargs = {
            "topic": self.config.topic,
            "value": message["payload"],
            "key": key.encode("utf-8") if key else None,
            "callback": self._delivery_callback,
        }
        try:
            self._produce_with_retry(kwargs)
        except BufferError as exc:
            self.messages_failed += 1
            self.logger.error("Local producer queue full, message dropped", error=str(exc))
            return
        except KafkaException as exc:
            self.messages_failed += 1
            self.logger.error("Message send error", error=str(exc))
            raise

        self.messages_sent += 1
        self.producer.poll(0)

    def _produce_with_retry(self, kwargs: Dict[str, Any]) -> None:
        try:
            self.producer.produce(**kwargs)
        except BufferError:
            # librdkafka queue full: let deliveries drain, then retry once
            self.producer.poll(0.5)
            self.producer.produce(**kwargs)

    def _delivery_callback(self, err: Optional[KafkaError], msg: Optional[Message]) -> None:
        if err is not None:
            self.messages_failed += 1
            self.logger.error("Message delivery failed", error=str(err))
            return

        self.messages_delivered += 1
        self.logger.debug("Message delivered", partition=msg.partition(), offset=msg.offset())

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "messages_sent": self.messages_sent,
            "messages_delivered": self.messages_delivered,
            "messages_failed": self.messages_failed,
            "queue_size": self.message_queue.qsize(),
        }
