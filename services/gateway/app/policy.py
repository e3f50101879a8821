"""Trading signal derived from the latest price and its moving average."""

from __future__ import annotations

from dataclasses import dataclass

PURCHASE = "PURCHASE"
SELL = "SELL"


@dataclass(frozen=True)
class RecommendationPolicy:
    """
    Compares the price against a band around the moving average.

    Above the band is PURCHASE, below is SELL, anything inside the band
    (including an exact match and the all-zero cold cache) is the
    neutral signal.
    """

    margin: float = 0.0
    neutral: str = "HOLD"

    def __post_init__(self) -> None:
        if not 0.0 <= self.margin < 1.0:
            raise ValueError("margin must be in [0, 1)")

    def recommend(self, price: float, sma: float) -> str:
        if price > sma * (1 + self.margin):
            return PURCHASE
        if price < sma * (1 - self.margin):
            return SELL
        return self.neutral
