"""
redis.asyncio client for the latest-value cache and the update channel.

Responses are decoded to ``str``. Operations connect lazily and
re-raise any failure after logging it; callers decide whether a
cache outage matters.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Mapping, Optional, Union

import redis.asyncio as redis
import structlog


logger = structlog.get_logger(__name__)


@dataclass
class RedisConfig:
    url: str
    max_connections: int = 20
    timeout: float = 5.0
    retry_on_timeout: bool = True


class RedisClient:
    """Key/value reads and writes plus publish/subscribe on one connection pool."""

    def __init__(self, config: Union[RedisConfig, str]):
        self.config = RedisConfig(url=config) if isinstance(config, str) else config
        self.logger = structlog.get_logger("redis-client")
        self.client: Optional[redis.Redis] = None

    @property
    def is_connected(self) -> bool:
        return self.client is not None

    async def connect(self) -> None:
        if self.client is not None:
            return

        client = redis.from_url(
            self.config.url,
            decode_responses=True,
            max_connections=self.config.max_connections,
            socket_timeout=self.config.timeout,
            socket_connect_timeout=self.config.timeout,
            retry_on_timeout=self.config.retry_on_timeout,
        )
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise

        self.client = client
        self.logger.info("Connected to Redis")

    async def close(self) -> None:
        client, self.client = self.client, None
        if client is not None:
            await client.aclose()
            self.logger.info("Disconnected from Redis")

    async def _ensure(self) -> redis.Redis:
        if self.client is None:
            await self.connect()
        return self.client

    async def get(self, key: str) -> Optional[str]:
        try:
            return await (await self._ensure()).get(key)
        except Exception as exc:
            self.logger.error("Redis get error", error=str(exc), key=key)
            raise

    async def set_many(self, values: Mapping[str, Union[str, int, float]]) -> None:
        """Overwrite several keys in one round trip (``MSET``)."""
        try:
            await (await self._ensure()).mset(dict(values))
        except Exception as exc:
            self.logger.error("Redis mset error", error=str(exc), keys=list(values))
            raise

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message; returns how many subscribers received it."""
        try:
            return await (await self._ensure()).publish(channel, message)
        except Exception as exc:
            self.logger.error("Redis publish error", error=str(exc), channel=channel)
            raise

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        """Yield every message published on ``channel`` until the caller stops iterating."""
        pubsub = (await self._ensure()).pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(channel)
        self.logger.info("Subscribed to Redis channel", channel=channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    yield message["data"]
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def health_check(self) -> bool:
        try:
            return await (await self._ensure()).ping() is True
        except Exception as exc:
            self.logger.warning("Redis health check failed", error=str(exc))
            return False
