"""
Schema definitions shared by the trade stream services.

Provides:
- The trade record and its protobuf wire codec
- The latest-price update message and cache key layout
"""

from .trade import TradeRecord, decode_trade, encode_trade
from .updates import (
    PriceUpdate,
    cache_keys,
    decode_price_update,
    encode_price_update,
    instrument_key,
)

__all__ = [
    "TradeRecord",
    "decode_trade",
    "encode_trade",
    "PriceUpdate",
    "cache_keys",
    "decode_price_update",
    "encode_price_update",
    "instrument_key",
]
