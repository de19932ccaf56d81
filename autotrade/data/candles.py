from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo


@dataclass(slots=True)
class Candle:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


def parse_price(value: Any) -> float:
    """Broker prices arrive as signed strings ("-78800", "+1200"); the sign is the
    direction against the previous close, not part of the price."""
    if value is None:
        return 0.0
    raw = str(value).strip().replace(",", "")
    if not raw:
        return 0.0
    try:
        return abs(float(raw))
    except ValueError:
        return 0.0


def parse_signed(value: Any) -> float:
    if value is None:
        return 0.0
    raw = str(value).strip().replace(",", "")
    if not raw:
        return 0.0
    try:
        return float(raw)
    except ValueError:
        return 0.0


def parse_chart_time(value: str, timezone_name: str = "Asia/Seoul") -> datetime:
    raw = str(value).strip()
    if len(raw) == 14:
        fmt = "%Y%m%d%H%M%S"
    elif len(raw) == 12:
        fmt = "%Y%m%d%H%M"
    elif len(raw) == 8:
        fmt = "%Y%m%d"
    else:
        raise ValueError(f"Unsupported chart timestamp {value!r}")
    local = datetime.strptime(raw, fmt).replace(tzinfo=ZoneInfo(timezone_name))
    return local.astimezone(timezone.utc)


def candles_from_chart(rows: list[dict[str, Any]], timezone_name: str = "Asia/Seoul") -> list[Candle]:
    """Parse minute-chart rows into candles ordered newest-first."""
    output: list[Candle] = []
    for item in rows:
        ts_raw = item.get("cntr_tm") or item.get("dt")
        if not ts_raw:
            continue
        try:
            timestamp = parse_chart_time(ts_raw, timezone_name)
        except ValueError:
            continue
        close = parse_price(item.get("cur_prc") or item.get("close"))
        open_price = parse_price(item.get("open_pric") or item.get("open")) or close
        high = parse_price(item.get("high_pric") or item.get("high")) or max(open_price, close)
        low = parse_price(item.get("low_pric") or item.get("low")) or min(open_price, close)
        if close <= 0:
            continue
        output.append(
            Candle(
                timestamp=timestamp,
                open=open_price,
                high=max(high, open_price, close),
                low=min(low, open_price, close),
                close=close,
                volume=abs(parse_signed(item.get("trde_qty") or item.get("volume"))),
            )
        )
    return newest_first(output)


def newest_first(candles: list[Candle]) -> list[Candle]:
    return sorted(candles, key=lambda c: c.timestamp, reverse=True)


def chronological(candles: list[Candle]) -> list[Candle]:
    return sorted(candles, key=lambda c: c.timestamp)
