"""
Time-series store adapter for persisted trades.
"""

from __future__ import annotations

import asyncio
from typing import Sequence

import asyncpg
import structlog

from shared.storage.postgres import PostgresClient
from shared.utils.errors import StorageError

from .models import PendingRecord

logger = structlog.get_logger(__name__)

STORE_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)

TRADE_COLUMNS = {
    "symbol": "text",
    "price": "float8",
    "time": "timestamptz",
}


class TradeStore:
    """Writes batches of trades into the ``trades`` hypertable."""

    def __init__(self, client: PostgresClient, table: str = "trades") -> None:
        self.client = client
        self.table = table

    async def write_trades(self, records: Sequence[PendingRecord]) -> None:
        """
        Insert the batch with one statement.

        Either all rows of the batch are written or none are.

        Raises:
            StorageError: If the insert fails for any reason.
        """
        if not records:
            return

        values = {
            "symbol": [record.symbol for record in records],
            "price": [record.price for record in records],
            "time": [record.persisted_time for record in records],
        }

        try:
            await self.client.insert_columns(self.table, TRADE_COLUMNS, values)
        except STORE_ERRORS as exc:
            raise StorageError(
                f"Failed to insert {len(records)} trades",
                operation="insert",
                table=self.table,
            ) from exc

    async def ensure_schema(self) -> None:
        """Create the trades table, and make it a hypertable when TimescaleDB is present."""
        try:
            await self.client.execute(
                f"CREATE TABLE IF NOT EXISTS {self.table} ("
                "symbol TEXT NOT NULL, "
                "price DOUBLE PRECISION NOT NULL, "
                "time TIMESTAMPTZ NOT NULL)"
            )
            has_timescale = await self.client.fetchval(
                "SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'timescaledb')"
            )
            if has_timescale:
                await self.client.execute(
                    "SELECT create_hypertable($1, 'time', if_not_exists => TRUE)",
                    self.table,
                )
        except STORE_ERRORS as exc:
            raise StorageError(
                "Failed to prepare trades schema",
                operation="ensure_schema",
                table=self.table,
            ) from exc

        logger.info("Trades schema ready", table=self.table, hypertable=bool(has_timescale))

