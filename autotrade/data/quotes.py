from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(slots=True)
class Quote:
    code: str
    name: str
    price: float
    change_abs: float = 0.0
    change_pct: float = 0.0
    volume: float = 0.0
    open_price: float = 0.0
    high_price: float = 0.0
    prev_close: float = 0.0
    updated_at: datetime | None = None

    def apply_tick(
        self,
        *,
        price: float,
        volume: float | None = None,
        open_price: float | None = None,
        high_price: float | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        if price <= 0:
            return
        self.price = price
        if volume is not None and volume > 0:
            self.volume = volume
        if open_price is not None and open_price > 0:
            self.open_price = open_price
        if high_price is not None and high_price > 0:
            self.high_price = max(high_price, self.high_price)
        else:
            self.high_price = max(self.high_price, price)
        if updated_at is not None:
            self.updated_at = updated_at
        self.recompute_change()

    def recompute_change(self) -> None:
        # Always against the previous close, never the previous tick.
        if self.prev_close <= 0:
            return
        self.change_abs = self.price - self.prev_close
        self.change_pct = self.change_abs / self.prev_close * 100.0

    @property
    def trading_value(self) -> float:
        return self.price * self.volume


def quote_from_screening(row: dict) -> Quote:
    """Build a quote from a screening row; prev close is implied by the change rate."""
    price = float(row.get("price") or 0.0)
    change_pct = float(row.get("change_rate") or 0.0)
    prev_close = float(row.get("prev_close") or 0.0)
    if prev_close <= 0 and price > 0 and change_pct > -100.0:
        prev_close = price / (1.0 + change_pct / 100.0)
    quote = Quote(
        code=str(row.get("code") or "").strip(),
        name=str(row.get("name") or "").strip(),
        price=price,
        change_pct=change_pct,
        volume=float(row.get("volume") or 0.0),
        open_price=float(row.get("open_price") or 0.0),
        high_price=float(row.get("high_price") or 0.0),
        prev_close=prev_close,
    )
    quote.recompute_change()
    return quote


@dataclass(slots=True)
class WatchedSymbol:
    code: str
    quote: Quote
    start_price: float
    detected_change_pct: float
    detected_at: datetime
    strategy_flags: dict[str, bool] = field(default_factory=dict)

    @property
    def relative_move_pct(self) -> float:
        if self.start_price <= 0:
            return 0.0
        return (self.quote.price - self.start_price) / self.start_price * 100.0

    @property
    def change_since_detection(self) -> float:
        return self.quote.change_pct - self.detected_change_pct


class WatchList:
    """Symbols under evaluation; replaced wholesale by each screening pass."""

    def __init__(self) -> None:
        self._items: dict[str, WatchedSymbol] = {}
        self._lock = threading.Lock()

    def replace(self, quotes: list[Quote], now: datetime) -> list[str]:
        with self._lock:
            fresh: dict[str, WatchedSymbol] = {}
            for quote in quotes:
                if not quote.code or quote.code in fresh:
                    continue
                existing = self._items.get(quote.code)
                if existing is not None:
                    # Baselines are fixed at first detection.
                    existing.quote.apply_tick(
                        price=quote.price,
                        volume=quote.volume,
                        open_price=quote.open_price,
                        high_price=quote.high_price,
                        updated_at=now,
                    )
                    fresh[quote.code] = existing
                    continue
                fresh[quote.code] = WatchedSymbol(
                    code=quote.code,
                    quote=quote,
                    start_price=quote.price,
                    detected_change_pct=quote.change_pct,
                    detected_at=now,
                )
            self._items = fresh
            return list(fresh.keys())

    def remove(self, code: str) -> None:
        with self._lock:
            self._items.pop(code, None)

    def get(self, code: str) -> WatchedSymbol | None:
        with self._lock:
            return self._items.get(code)

    def items(self) -> list[WatchedSymbol]:
        with self._lock:
            return list(self._items.values())

    def codes(self) -> list[str]:
        with self._lock:
            return list(self._items.keys())

    def apply_tick(self, code: str, **kwargs) -> bool:
        with self._lock:
            item = self._items.get(code)
            if item is None:
                return False
            item.quote.apply_tick(**kwargs)
            return True
