"""
asyncpg client for the PostgreSQL/TimescaleDB trade store.

The pool is created lazily on first use, so a store that is down when
a service starts shows up as failed operations (and a degraded health
check) rather than a crashed process.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import asyncpg
import structlog


logger = structlog.get_logger(__name__)


@dataclass
class PostgresConfig:
    dsn: str
    min_size: int = 1
    max_size: int = 5
    command_timeout: float = 30.0


class PostgresClient:
    """Pooled access to the store; every failure is logged and re-raised."""

    def __init__(self, config: Union[PostgresConfig, str]):
        self.config = PostgresConfig(dsn=config) if isinstance(config, str) else config
        self.logger = structlog.get_logger("postgres-client")
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            self.config.dsn,
            min_size=self.config.min_size,
            max_size=self.config.max_size,
            command_timeout=self.config.command_timeout,
        )
        self.logger.info("Connected to PostgreSQL", max_size=self.config.max_size)

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
            self.logger.info("Disconnected from PostgreSQL")

    @asynccontextmanager
    async def _connection(self, sql: str) -> AsyncIterator[asyncpg.Connection]:
        try:
            await self.connect()
            async with self._pool.acquire() as conn:
                yield conn
        except Exception as exc:
            self.logger.error("PostgreSQL error", error=str(exc) or type(exc).__name__, sql=sql)
            raise

    async def fetch(self, query: str, *args: Any) -> List[Dict[str, Any]]:
        async with self._connection(query) as conn:
            rows = await conn.fetch(query, *args)
        return [dict(row) for row in rows]

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self._connection(query) as conn:
            return await conn.fetchval(query, *args)

    async def execute(self, statement: str, *args: Any) -> str:
        """Run a statement and return its command status (``INSERT 0 100``)."""
        async with self._connection(statement) as conn:
            return await conn.execute(statement, *args)

    async def insert_columns(
        self,
        table: str,
        columns: Dict[str, str],
        values: Dict[str, List[Any]],
    ) -> str:
        """
        Insert many rows with one statement.

        Each column is shipped as one array parameter and expanded
        server-side with ``unnest``, so the statement text does not
        grow with the row count.

        Args:
            table: Target table
            columns: Column name to PostgreSQL element type, in order
            values: Column name to the list of values for that column
        """
        names = list(columns)
        lengths = {len(values[name]) for name in names}
        if len(lengths) != 1:
            raise ValueError("All column value lists must have the same length")

        casts = ", ".join(
            f"${index}::{columns[name]}[]" for index, name in enumerate(names, start=1)
        )
        statement = (
            f"INSERT INTO {table} ({', '.join(names)}) "
            f"SELECT * FROM unnest({casts})"
        )

        status = await self.execute(statement, *[values[name] for name in names])
        self.logger.debug("Rows inserted", table=table, count=lengths.pop())
        return status

    async def health_check(self) -> bool:
        try:
            return await self.fetchval("SELECT 1") == 1
        except Exception as exc:
            self.logger.warning("PostgreSQL health check failed", error=str(exc) or type(exc).__name__)
            return False
