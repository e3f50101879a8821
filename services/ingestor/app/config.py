"""
Configuration for the ingestor service.
"""

from __future__ import annotations

import os
from typing import List

from shared.framework.config import ServiceConfig, env_float
from shared.utils.errors import ConfigurationError


class IngestorConfig(ServiceConfig):
    """Service configuration loaded from environment variables."""

    def __init__(self) -> None:
        super().__init__(service_name="ingestor")

        self.service_slug = "ingestor"

        # Exchange stream
        self.stream_base_url = os.getenv(
            "INGESTOR_STREAM_BASE_URL", "wss://stream.binance.com:9443/ws"
        ).rstrip("/")
        self.symbols: List[str] = [
            symbol.strip().lower()
            for symbol in os.getenv("INGESTOR_SYMBOLS", "btcusdt").split(",")
            if symbol.strip()
        ]
        self.reconnect_backoff_seconds = env_float(
            "INGESTOR_RECONNECT_BACKOFF_SECONDS", "5.0"
        )
        self.heartbeat_seconds = env_float("INGESTOR_HEARTBEAT_SECONDS", "20.0")

        # Durable log
        self.output_topic = os.getenv("INGESTOR_OUTPUT_TOPIC", "trades")

        self._validate()

    def stream_url(self, symbol: str) -> str:
        """Trade stream endpoint for one symbol."""
        return f"{self.stream_base_url}/{symbol.lower()}@trade"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            {
                "stream_base_url": self.stream_base_url,
                "symbols": self.symbols,
                "output_topic": self.output_topic,
            }
        )
        return data

    def _validate(self) -> None:
        if not self.symbols:
            raise ConfigurationError(
                "INGESTOR_SYMBOLS must name at least one symbol",
                config_key="INGESTOR_SYMBOLS",
            )
        if self.reconnect_backoff_seconds <= 0:
            raise ConfigurationError(
                "INGESTOR_RECONNECT_BACKOFF_SECONDS must be positive",
                config_key="INGESTOR_RECONNECT_BACKOFF_SECONDS",
                config_value=self.reconnect_backoff_seconds,
            )
