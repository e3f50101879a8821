"""
Latest-price update message and cache key layout.

The processor is the only writer of both the cache keys and the
update channel; the gateway only reads them. Both sides go through
this module so the layout cannot drift.
"""

from __future__ import annotations

from typing import Tuple

from pydantic import BaseModel, ConfigDict

# Longest suffix first so "BUSD" is not mistaken for "USD"
QUOTE_ASSETS = ("USDT", "BUSD", "USDC", "USD")


class PriceUpdate(BaseModel):
    """Notification published for every processed trade."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    symbol: str
    price: float
    sma: float
    timestamp: int


def encode_price_update(update: PriceUpdate) -> str:
    """Serialize an update for the pub/sub channel."""
    return update.model_dump_json()


def decode_price_update(raw: str | bytes) -> PriceUpdate:
    """Parse an update read back from the pub/sub channel."""
    return PriceUpdate.model_validate_json(raw)


def instrument_key(symbol: str) -> str:
    """Cache prefix for a symbol: ``BTCUSDT`` -> ``btc``."""
    upper = symbol.upper()
    for quote in QUOTE_ASSETS:
        if upper.endswith(quote) and len(upper) > len(quote):
            return upper[: -len(quote)].lower()
    return upper.lower()


def cache_keys(symbol: str) -> Tuple[str, str]:
    """Return the ``(<instrument>_price, <instrument>_sma)`` key pair."""
    prefix = instrument_key(symbol)
    return f"{prefix}_price", f"{prefix}_sma"
