from __future__ import annotations

import math
from dataclasses import dataclass

from autotrade.data.candles import Candle

_PRICE_FIELDS = ("open", "high", "low", "close", "volume")


@dataclass(slots=True)
class BollingerBand:
    upper: float
    middle: float
    lower: float

    def position(self, price: float) -> float | None:
        """0 at the lower band, 1 at the upper band; None when the band is flat."""
        width = self.upper - self.lower
        if width <= 0:
            return None
        return (price - self.lower) / width


def rsi(candles: list[Candle], period: int = 14) -> float:
    """Simple RSI over the newest ``period + 1`` candles (newest-first input).

    No Wilder smoothing beyond the initial window. Returns 50 without enough
    data and 100 when the window has no losses.
    """
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(candles) < period + 1:
        return 50.0
    gains = 0.0
    losses = 0.0
    window = candles[: period + 1]
    for idx in range(period):
        change = window[idx].close - window[idx + 1].close
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def moving_average(candles: list[Candle], period: int, field: str = "close") -> list[float]:
    """Rolling-sum SMA over chronological candles, one value per full window."""
    if period <= 0:
        raise ValueError("period must be > 0")
    if field not in _PRICE_FIELDS:
        raise ValueError(f"unsupported candle field '{field}'")
    if len(candles) < period:
        return []
    values = [float(getattr(candle, field)) for candle in candles]
    output: list[float] = []
    running = sum(values[:period])
    output.append(running / period)
    for idx in range(period, len(values)):
        running += values[idx] - values[idx - period]
        output.append(running / period)
    return output


def bollinger_bands(candles: list[Candle], period: int = 20, multiplier: float = 2.0) -> list[BollingerBand]:
    """Bands on typical price with population std, oldest window first."""
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(candles) < period:
        return []
    typical = [(c.high + c.low + c.close) / 3.0 for c in candles]
    output: list[BollingerBand] = []
    for end in range(period, len(typical) + 1):
        window = typical[end - period : end]
        mean = sum(window) / period
        variance = sum((value - mean) ** 2 for value in window) / period
        std = math.sqrt(variance)
        output.append(BollingerBand(upper=mean + multiplier * std, middle=mean, lower=mean - multiplier * std))
    return output


def average_volume(candles: list[Candle]) -> float:
    if not candles:
        return 0.0
    return sum(c.volume for c in candles) / len(candles)
