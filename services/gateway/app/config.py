"""
Configuration for the gateway service.
"""

from __future__ import annotations

import os

from shared.framework.config import ServiceConfig, env_float, env_int
from shared.utils.errors import ConfigurationError


class GatewayConfig(ServiceConfig):
    """Service configuration loaded from environment variables."""

    def __init__(self) -> None:
        super().__init__(service_name="gateway")

        self.service_slug = "gateway"

        # Read API
        self.trades_table = os.getenv("GATEWAY_TRADES_TABLE", "trades")
        self.history_limit = env_int("GATEWAY_HISTORY_LIMIT", "100")
        self.default_symbol = os.getenv("GATEWAY_DEFAULT_SYMBOL", "BTCUSDT").upper()
        self.cors_origin = os.getenv("GATEWAY_CORS_ORIGIN", "*")

        # Recommendation
        self.recommendation_margin = env_float("GATEWAY_RECOMMENDATION_MARGIN", "0.0")
        self.neutral_signal = os.getenv("GATEWAY_NEUTRAL_SIGNAL", "HOLD")

        # Live updates
        self.updates_channel = os.getenv("GATEWAY_UPDATES_CHANNEL", "updates")
        self.client_queue_size = env_int("GATEWAY_CLIENT_QUEUE_SIZE", "100")
        self.relay_retry_seconds = env_float("GATEWAY_RELAY_RETRY_SECONDS", "2.0")

        self._validate()

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            {
                "history_limit": self.history_limit,
                "recommendation_margin": self.recommendation_margin,
                "neutral_signal": self.neutral_signal,
                "updates_channel": self.updates_channel,
                "client_queue_size": self.client_queue_size,
            }
        )
        return data

    def _validate(self) -> None:
        positive = {
            "GATEWAY_HISTORY_LIMIT": self.history_limit,
            "GATEWAY_CLIENT_QUEUE_SIZE": self.client_queue_size,
            "GATEWAY_RELAY_RETRY_SECONDS": self.relay_retry_seconds,
        }
        for key, value in positive.items():
            if value <= 0:
                raise ConfigurationError(
                    f"{key} must be positive", config_key=key, config_value=value
                )

        if not 0.0 <= self.recommendation_margin < 1.0:
            raise ConfigurationError(
                "GATEWAY_RECOMMENDATION_MARGIN must be in [0, 1)",
                config_key="GATEWAY_RECOMMENDATION_MARGIN",
                config_value=self.recommendation_margin,
            )
        if not self.neutral_signal:
            raise ConfigurationError(
                "GATEWAY_NEUTRAL_SIGNAL must not be empty",
                config_key="GATEWAY_NEUTRAL_SIGNAL",
            )
