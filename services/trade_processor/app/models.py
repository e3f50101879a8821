"""
Data models used by the trade processor service.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from shared.schemas.trade import TradeRecord
from shared.utils.errors import TimestampConversionError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def millis_to_datetime(value: int) -> datetime:
    """Convert epoch milliseconds into an aware UTC datetime."""
    try:
        return EPOCH + timedelta(milliseconds=value)
    except (OverflowError, TypeError) as exc:
        raise TimestampConversionError(
            f"Timestamp {value!r} has no absolute instant", value=value
        ) from exc


class FlushTrigger(str, Enum):
    """What caused a batch flush."""

    SIZE = "size"
    TIME = "time"
    SHUTDOWN = "shutdown"


class FlushStatus(str, Enum):
    """Outcome of one flush attempt."""

    SUCCESS = "success"
    EMPTY = "empty"
    REQUEUED = "requeued"
    DROPPED = "dropped"


@dataclass(frozen=True, slots=True)
class PendingRecord:
    """A trade waiting to be written to the time-series store."""

    symbol: str
    price: float
    persisted_time: datetime

    @classmethod
    def from_trade(cls, trade: TradeRecord) -> "PendingRecord":
        """
        Build the row for a trade.

        Raises:
            TimestampConversionError: If ``event_time`` is out of range.
        """
        return cls(
            symbol=trade.symbol,
            price=trade.price,
            persisted_time=millis_to_datetime(trade.event_time),
        )


@dataclass(frozen=True, slots=True)
class FlushResult:
    """Structured result of a flush attempt."""

    trigger: FlushTrigger
    status: FlushStatus
    rows: int
    attempt: int = 0
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class PublishOutcome:
    """Which fan-out sinks accepted an update."""

    cached: bool
    published: bool


@dataclass(frozen=True, slots=True)
class ProcessedTrade:
    """Everything the loop derived from one log record."""

    trade: TradeRecord
    average: float
    queued: bool
    batched: bool
    flush: Optional[FlushResult] = None
