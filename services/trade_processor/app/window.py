"""Per-symbol sliding window of recent prices."""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, List, Optional, Tuple


class WindowAggregator:
    """
    Keeps the most recent ``capacity`` prices for every symbol seen.

    Windows are created on first sighting. The average is taken over
    the current length of the window, so during warm-up it is the mean
    of the prices seen so far rather than a sum divided by capacity.
    """

    def __init__(self, capacity: int = 10) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._windows: Dict[str, Deque[float]] = {}

    def update(self, symbol: str, price: float) -> float:
        """Add a price to the symbol's window and return the new average."""
        window = self._windows.get(symbol)
        if window is None:
            window = deque(maxlen=self.capacity)
            self._windows[symbol] = window

        # maxlen evicts the oldest entry once capacity is exceeded
        window.append(price)
        return sum(window) / len(window)

    def average(self, symbol: str) -> Optional[float]:
        window = self._windows.get(symbol)
        if not window:
            return None
        return sum(window) / len(window)

    def window(self, symbol: str) -> Tuple[float, ...]:
        return tuple(self._windows.get(symbol, ()))

    def symbols(self) -> List[str]:
        return list(self._windows)

    def __len__(self) -> int:
        return len(self._windows)
