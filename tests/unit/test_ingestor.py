"""Unit tests for the exchange ingestion bridge."""

import json

import aiohttp
import pytest

from services.ingestor.app.feed import TradeFeed, parse_trade_frame
from shared.schemas.trade import TradeRecord, decode_trade


def _frame(**overrides):
    frame = {
        "e": "trade",
        "E": 1_700_000_000_050,
        "s": "BTCUSDT",
        "t": 12345,
        "p": "42000.10",
        "q": "0.00200000",
        "T": 1_700_000_000_000,
        "m": True,
        "M": True,
    }
    frame.update(overrides)
    return json.dumps(frame)


class _SinkStub:
    def __init__(self):
        self.sent = []

    async def send_message(self, payload, key=None):
        self.sent.append({"payload": payload, "key": key})


class TestParseTradeFrame:
    """Test conversion of exchange frames."""

    def test_trade_frame(self):
        """String prices and quantities are parsed into numbers."""
        assert parse_trade_frame(_frame()) == TradeRecord(
            symbol="BTCUSDT", price=42000.10, quantity=0.002, event_time=1_700_000_000_000
        )

    def test_unparseable_numbers_become_zero(self):
        """Bad numeric strings fall back to 0.0 rather than dropping the trade."""
        trade = parse_trade_frame(_frame(p="n/a", q=None))

        assert trade.price == 0.0
        assert trade.quantity == 0.0

    def test_non_finite_numbers_become_zero(self):
        """NaN never leaves the bridge."""
        assert parse_trade_frame(_frame(p="NaN")).price == 0.0

    def test_combined_stream_frame(self):
        """Combined-stream envelopes are unwrapped."""
        raw = json.dumps({"stream": "btcusdt@trade", "data": json.loads(_frame())})

        assert parse_trade_frame(raw).symbol == "BTCUSDT"

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[]",
            json.dumps({"result": None, "id": 1}),
            _frame(T=None),
            _frame(s=""),
        ],
    )
    def test_ignored_frames(self, raw):
        """Frames that do not describe a trade are skipped."""
        assert parse_trade_frame(raw) is None


class TestTradeFeed:
    """Test TradeFeed class."""

    @pytest.mark.asyncio
    async def test_frame_is_encoded_and_keyed_by_symbol(self):
        """Trades go to the log as protobuf keyed by symbol."""
        sink = _SinkStub()
        forwarded = []
        feed = TradeFeed("btcusdt", "wss://example/ws/btcusdt@trade", sink, on_forwarded=forwarded.append)

        trade = await feed.handle_frame(_frame())

        assert sink.sent[0]["key"] == "BTCUSDT"
        assert decode_trade(sink.sent[0]["payload"]) == trade
        assert forwarded == [trade]
        assert feed.trades_forwarded == 1

    @pytest.mark.asyncio
    async def test_skipped_frame_is_not_sent(self):
        """Non-trade frames never reach the log."""
        sink = _SinkStub()
        feed = TradeFeed("btcusdt", "wss://example/ws/btcusdt@trade", sink)

        assert await feed.handle_frame("not json") is None
        assert sink.sent == []
        assert feed.frames_skipped == 1

    @pytest.mark.asyncio
    async def test_reconnects_with_fixed_backoff(self, monkeypatch):
        """Connection failures are retried after the configured delay."""
        attempts = []

        class _FailingSession:
            async def __aenter__(self):
                return self

            async def __aexit__(self, exc_type, exc, tb):
                return False

            def ws_connect(self, url, **kwargs):
                attempts.append(url)
                raise aiohttp.ClientConnectionError("connection refused")

        monkeypatch.setattr(aiohttp, "ClientSession", _FailingSession)
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)
            if len(sleeps) == 2:
                feed.stop()

        feed = TradeFeed(
            "btcusdt",
            "wss://example/ws/btcusdt@trade",
            _SinkStub(),
            reconnect_backoff=5.0,
            sleep=fake_sleep,
        )

        await feed.run()

        assert len(attempts) == 2
        assert sleeps == [5.0, 5.0]
        assert not feed.connected
