"""
Storage abstractions for the trade stream services.

Provides async clients for:
- PostgreSQL / TimescaleDB (trade history)
- Redis (latest-value cache and pub/sub)
"""

from .postgres import PostgresClient, PostgresConfig
from .redis import RedisClient, RedisConfig

__all__ = [
    "PostgresClient",
    "PostgresConfig",
    "RedisClient",
    "RedisConfig",
]
