"""
Exchange trade feed bridged onto the trade log.
"""

from __future__ import annotations

import asyncio
import json
import math
from typing import Any, Awaitable, Callable, Optional, Protocol

import aiohttp
from aiohttp import WSMsgType
import structlog
from pydantic import ValidationError

from shared.schemas.trade import TradeRecord, encode_trade

logger = structlog.get_logger(__name__)


class TradeSink(Protocol):
    async def send_message(self, payload: bytes, key: Optional[str] = None) -> None:
        ...


def _to_float(value: Any) -> float:
    """Exchange prices arrive as strings; anything unusable becomes 0.0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def parse_trade_frame(raw: str) -> Optional[TradeRecord]:
    """
    Convert one Binance ``@trade`` frame into a TradeRecord.

    Combined-stream frames (``{"stream": ..., "data": {...}}``) are
    unwrapped. Frames without a symbol or trade time are ignored.
    """
    try:
        frame = json.loads(raw)
    except ValueError:
        return None

    if isinstance(frame, dict) and isinstance(frame.get("data"), dict):
        frame = frame["data"]
    if not isinstance(frame, dict):
        return None

    try:
        return TradeRecord(
            symbol=frame["s"],
            price=_to_float(frame.get("p")),
            quantity=_to_float(frame.get("q")),
            event_time=int(frame["T"]),
        )
    except (KeyError, TypeError, ValueError, ValidationError):
        return None


class TradeFeed:
    """Streams trades for one symbol and forwards them, reconnecting forever."""

    def __init__(
        self,
        symbol: str,
        url: str,
        sink: TradeSink,
        *,
        reconnect_backoff: float = 5.0,
        heartbeat: float = 20.0,
        on_forwarded: Optional[Callable[[TradeRecord], None]] = None,
        on_skipped: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.symbol = symbol
        self.url = url
        self.sink = sink
        self.reconnect_backoff = reconnect_backoff
        self.heartbeat = heartbeat

        self._on_forwarded = on_forwarded
        self._on_skipped = on_skipped
        self._sleep = sleep
        self._running = False

        self.connected = False
        self.trades_forwarded = 0
        self.frames_skipped = 0

    def stop(self) -> None:
        self._running = False

    async def run(self) -> None:
        self._running = True
        while self._running:
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.ws_connect(self.url, heartbeat=self.heartbeat) as ws:
                        self.connected = True
                        logger.info("Connected to trade stream", symbol=self.symbol, url=self.url)
                        await self._consume(ws)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                logger.error(
                    "Trade stream error",
                    symbol=self.symbol,
                    error=str(exc) or type(exc).__name__,
                    retry_in=self.reconnect_backoff,
                )
            finally:
                self.connected = False

            if self._running:
                await self._sleep(self.reconnect_backoff)

    async def _consume(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for message in ws:
            if not self._running:
                return
            if message.type == WSMsgType.TEXT:
                await self.handle_frame(message.data)
            elif message.type == WSMsgType.ERROR:
                logger.warning("Trade stream reported an error", symbol=self.symbol, error=str(ws.exception()))
                return
        logger.warning("Trade stream closed by peer", symbol=self.symbol)

    async def handle_frame(self, raw: str) -> Optional[TradeRecord]:
        """Encode and forward one frame; returns the trade sent, if any."""
        trade = parse_trade_frame(raw)
        if trade is None:
            self.frames_skipped += 1
            if self._on_skipped:
                self._on_skipped()
            logger.debug("Ignoring non-trade frame", symbol=self.symbol)
            return None

        await self.sink.send_message(encode_trade(trade), key=trade.symbol)
        self.trades_forwarded += 1
        if self._on_forwarded:
            self._on_forwarded(trade)
        return trade
