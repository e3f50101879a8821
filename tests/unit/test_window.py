"""Unit tests for the sliding window aggregator."""

import pytest

from services.trade_processor.app.window import WindowAggregator


class TestWindowAggregator:
    """Test WindowAggregator class."""

    def test_warm_up_averages_over_seen_prices(self):
        """Before the window is full the mean covers only the prices seen."""
        window = WindowAggregator(10)

        assert window.update("BTCUSDT", 100.0) == 100.0
        assert window.update("BTCUSDT", 102.0) == 101.0
        assert window.update("BTCUSDT", 104.0) == 102.0

    def test_full_window_then_eviction(self):
        """Ten prices average to 104.5; the eleventh evicts the oldest."""
        window = WindowAggregator(10)

        averages = [window.update("BTCUSDT", 100.0 + i) for i in range(10)]
        assert averages[-1] == pytest.approx(104.5)

        assert window.update("BTCUSDT", 110.0) == pytest.approx(105.5)
        assert window.window("BTCUSDT") == tuple(101.0 + i for i in range(10))

    def test_symbols_are_independent(self):
        """Each symbol has its own window, created on first sighting."""
        window = WindowAggregator(3)

        window.update("BTCUSDT", 100.0)
        window.update("ETHUSDT", 10.0)
        window.update("BTCUSDT", 200.0)

        assert window.average("BTCUSDT") == 150.0
        assert window.average("ETHUSDT") == 10.0
        assert window.average("SOLUSDT") is None
        assert sorted(window.symbols()) == ["BTCUSDT", "ETHUSDT"]
        assert len(window) == 2

    def test_window_never_exceeds_capacity(self):
        """Length is bounded by the capacity."""
        window = WindowAggregator(5)
        for i in range(50):
            window.update("BTCUSDT", float(i))

        assert len(window.window("BTCUSDT")) == 5
        assert window.average("BTCUSDT") == pytest.approx(47.0)

    @pytest.mark.parametrize("capacity", [0, -1])
    def test_invalid_capacity(self, capacity):
        """A non-positive capacity is rejected at construction."""
        with pytest.raises(ValueError):
            WindowAggregator(capacity)
