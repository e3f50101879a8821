"""
Configuration management for the trade stream services.

Provides typed configuration classes with environment variable
injection and validation.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from shared.utils.errors import ConfigurationError

VALID_ENVIRONMENTS = ("local", "dev", "staging", "prod")


def env_int(name: str, default: str) -> int:
    """Read an integer environment variable, failing loudly on garbage."""
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"{name} must be an integer",
            config_key=name,
            config_value=raw,
        ) from exc


def env_float(name: str, default: str) -> float:
    """Read a float environment variable, failing loudly on garbage."""
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"{name} must be a number",
            config_key=name,
            config_value=raw,
        ) from exc


def env_bool(name: str, default: str) -> bool:
    """Read a boolean environment variable."""
    return os.getenv(name, default).lower() == "true"


@dataclass
class KafkaConfig:
    """Kafka configuration."""
    bootstrap_servers: str = field(default_factory=lambda: os.getenv("TRADESTREAM_KAFKA_BOOTSTRAP", "localhost:9094"))
    auto_offset_reset: str = field(default_factory=lambda: os.getenv("TRADESTREAM_KAFKA_AUTO_OFFSET_RESET", "earliest"))
    enable_auto_commit: bool = field(default_factory=lambda: env_bool("TRADESTREAM_KAFKA_AUTO_COMMIT", "true"))
    session_timeout_ms: int = field(default_factory=lambda: env_int("TRADESTREAM_KAFKA_SESSION_TIMEOUT_MS", "30000"))
    heartbeat_interval_ms: int = field(default_factory=lambda: env_int("TRADESTREAM_KAFKA_HEARTBEAT_INTERVAL_MS", "3000"))
    metadata_timeout_seconds: float = field(default_factory=lambda: env_float("TRADESTREAM_KAFKA_METADATA_TIMEOUT_SECONDS", "5.0"))


@dataclass
class DatabaseConfig:
    """Database configuration."""
    postgres_dsn: Optional[str] = field(default_factory=lambda: os.getenv("TRADESTREAM_POSTGRES_DSN"))
    redis_url: str = field(default_factory=lambda: os.getenv("TRADESTREAM_REDIS_URL", "redis://localhost:6379/0"))


@dataclass
class ObservabilityConfig:
    """Observability configuration."""
    log_level: str = field(default_factory=lambda: os.getenv("TRADESTREAM_LOG_LEVEL", "info"))
    log_format: str = field(default_factory=lambda: os.getenv("TRADESTREAM_LOG_FORMAT", "json"))
    trace_enabled: bool = field(default_factory=lambda: env_bool("TRADESTREAM_TRACE_ENABLED", "false"))
    otel_endpoint: Optional[str] = field(default_factory=lambda: os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"))
    health_port: int = field(default_factory=lambda: env_int("TRADESTREAM_HEALTH_PORT", "8080"))


@dataclass
class ServiceConfig:
    """Base service configuration."""
    service_name: str
    environment: str = field(default_factory=lambda: os.getenv("TRADESTREAM_ENV", "local"))

    # Sub-configurations
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.service_name:
            raise ConfigurationError("service_name is required", config_key="service_name")

        if self.environment not in VALID_ENVIRONMENTS:
            raise ConfigurationError(
                f"Invalid environment: {self.environment}",
                config_key="TRADESTREAM_ENV",
                config_value=self.environment,
            )

    def require_postgres_dsn(self) -> str:
        """Return the store connection string or abort startup."""
        dsn = self.database.postgres_dsn
        if not dsn:
            raise ConfigurationError(
                "TRADESTREAM_POSTGRES_DSN is required",
                config_key="TRADESTREAM_POSTGRES_DSN",
            )
        return dsn

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary, without credentials."""
        return {
            "service_name": self.service_name,
            "environment": self.environment,
            "kafka": {
                "bootstrap_servers": self.kafka.bootstrap_servers,
                "auto_offset_reset": self.kafka.auto_offset_reset,
                "enable_auto_commit": self.kafka.enable_auto_commit,
                "session_timeout_ms": self.kafka.session_timeout_ms,
            },
            "database": {
                "postgres_configured": bool(self.database.postgres_dsn),
                "redis_url": self.database.redis_url,
            },
            "observability": {
                "log_level": self.observability.log_level,
                "trace_enabled": self.observability.trace_enabled,
                "health_port": self.observability.health_port,
            },
        }
