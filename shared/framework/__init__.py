"""
Core framework components for the trade stream services.

Provides base classes and abstractions for building
observable asyncio services with Kafka integration.
"""

from .service import AsyncService
from .consumer import ConsumerConfig, KafkaConsumer, LogRecord
from .producer import KafkaProducer, ProducerConfig
from .config import ServiceConfig
from .health import HealthCheck, HealthChecker
from .metrics import MetricsCollector

__all__ = [
    "AsyncService",
    "ConsumerConfig",
    "KafkaConsumer",
    "LogRecord",
    "KafkaProducer",
    "ProducerConfig",
    "ServiceConfig",
    "HealthCheck",
    "HealthChecker",
    "MetricsCollector",
]
