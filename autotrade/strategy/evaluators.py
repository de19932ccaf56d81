from __future__ import annotations

from datetime import datetime
from typing import Callable

from autotrade.clock import is_within_window
from autotrade.data.candles import Candle, chronological
from autotrade.data.quotes import WatchedSymbol
from autotrade.strategy.contracts import StrategyConfig, StrategySignal
from autotrade.strategy.indicators import average_volume, bollinger_bands, moving_average, rsi

Evaluator = Callable[[WatchedSymbol, list[Candle], StrategyConfig, datetime], StrategySignal]


def _fallback(name: str, symbol: WatchedSymbol, threshold_pct: float, have: int, need: int) -> StrategySignal:
    move = symbol.relative_move_pct
    fired = symbol.start_price > 0 and move >= threshold_pct
    return StrategySignal(
        strategy=name,
        fired=fired,
        reason=f"fallback move={move:.2f}% threshold={threshold_pct:.2f}% candles={have}/{need}",
        fallback=True,
        metadata={"relative_move_pct": move, "candles": have, "required": need},
    )


def _no(name: str, reason: str, **metadata) -> StrategySignal:
    return StrategySignal(strategy=name, fired=False, reason=reason, metadata=dict(metadata))


def _yes(name: str, reason: str, **metadata) -> StrategySignal:
    return StrategySignal(strategy=name, fired=True, reason=reason, metadata=dict(metadata))


def basic_momentum(symbol: WatchedSymbol, candles: list[Candle], config: StrategyConfig, now: datetime) -> StrategySignal:
    name = "basic_momentum"
    params = config.basic_momentum
    need = params.rsi_period + 1
    if len(candles) < need:
        return _fallback(name, symbol, params.fallback_move_pct, len(candles), need)
    quote = symbol.quote
    if not (params.min_change_pct <= quote.change_pct <= params.max_change_pct):
        return _no(name, f"change {quote.change_pct:.2f}% outside [{params.min_change_pct}, {params.max_change_pct}]")
    if quote.trading_value < params.min_trading_value:
        return _no(name, f"trading value {quote.trading_value:.0f} < {params.min_trading_value:.0f}")
    value = rsi(candles, params.rsi_period)
    if value > params.rsi_max:
        return _no(name, f"rsi {value:.1f} > {params.rsi_max}", rsi=value)
    return _yes(name, f"change {quote.change_pct:.2f}% rsi {value:.1f}", rsi=value, change_pct=quote.change_pct)


def market_open_breakout(
    symbol: WatchedSymbol, candles: list[Candle], config: StrategyConfig, now: datetime
) -> StrategySignal:
    name = "market_open_breakout"
    params = config.market_open_breakout
    if not is_within_window(now, params.start_time, params.end_time, config.timezone):
        return _no(name, f"outside window {params.start_time}-{params.end_time}")
    quote = symbol.quote
    if quote.change_pct < params.min_change_pct:
        return _no(name, f"change {quote.change_pct:.2f}% < {params.min_change_pct}")
    need = params.opening_range_bars + 1
    if len(candles) < need:
        return _fallback(name, symbol, params.fallback_move_pct, len(candles), need)
    ordered = chronological(candles)
    opening = ordered[: params.opening_range_bars]
    range_high = max(c.high for c in opening)
    range_volume = average_volume(opening)
    if range_high <= 0 or range_volume <= 0:
        return _no(name, "opening range empty")
    latest = ordered[-1]
    if quote.price <= range_high:
        return _no(name, f"price {quote.price:.0f} <= opening high {range_high:.0f}")
    if latest.volume < range_volume * params.volume_multiplier:
        return _no(name, f"volume {latest.volume:.0f} < {params.volume_multiplier}x {range_volume:.0f}")
    return _yes(name, f"broke opening high {range_high:.0f}", range_high=range_high)


def bollinger_rebound(
    symbol: WatchedSymbol, candles: list[Candle], config: StrategyConfig, now: datetime
) -> StrategySignal:
    name = "bollinger_rebound"
    params = config.bollinger_rebound
    if len(candles) < params.period:
        return _fallback(name, symbol, params.fallback_move_pct, len(candles), params.period)
    bands = bollinger_bands(chronological(candles), params.period, params.multiplier)
    if not bands:
        return _no(name, "no bands")
    band = bands[-1]
    position = band.position(symbol.quote.price)
    if position is None:
        return _no(name, "flat band")
    if position >= params.band_position_max:
        return _no(name, f"band position {position:.2f} >= {params.band_position_max}", band_position=position)
    return _yes(
        name,
        f"band position {position:.2f} lower={band.lower:.0f}",
        band_position=position,
        lower=band.lower,
        upper=band.upper,
    )


def scalping_pullback(
    symbol: WatchedSymbol, candles: list[Candle], config: StrategyConfig, now: datetime
) -> StrategySignal:
    name = "scalping_pullback"
    params = config.scalping_pullback
    if len(candles) < params.lookback_bars:
        return _fallback(name, symbol, params.fallback_move_pct, len(candles), params.lookback_bars)
    recent = candles[: params.lookback_bars]
    recent_low = min(c.low for c in recent)
    avg_vol = average_volume(recent)
    if recent_low <= 0 or avg_vol <= 0:
        return _no(name, "zero low or volume")
    rise = (symbol.quote.price - recent_low) / recent_low * 100.0
    if not (params.min_rise_from_low_pct <= rise <= params.max_rise_from_low_pct):
        return _no(
            name,
            f"rise from low {rise:.2f}% outside [{params.min_rise_from_low_pct}, {params.max_rise_from_low_pct}]",
        )
    latest_volume = recent[0].volume
    if latest_volume < avg_vol * params.volume_multiplier:
        return _no(name, f"volume {latest_volume:.0f} < {params.volume_multiplier}x {avg_vol:.0f}")
    return _yes(name, f"rise from low {rise:.2f}%", rise_from_low_pct=rise, recent_low=recent_low)


def volume_breakout(
    symbol: WatchedSymbol, candles: list[Candle], config: StrategyConfig, now: datetime
) -> StrategySignal:
    name = "volume_breakout"
    params = config.volume_breakout
    need = max(params.lookback_bars, params.volume_bars) + 1
    if len(candles) < need:
        return _fallback(name, symbol, params.fallback_move_pct, len(candles), need)
    latest = candles[0]
    previous = candles[1 : params.lookback_bars + 1]
    previous_high = max(c.high for c in previous)
    prev_volume = average_volume(candles[1 : params.volume_bars + 1])
    if previous_high <= 0 or prev_volume <= 0:
        return _no(name, "zero previous high or volume")
    breakout = (symbol.quote.price - previous_high) / previous_high * 100.0
    if breakout < params.breakout_pct:
        return _no(name, f"breakout {breakout:.2f}% < {params.breakout_pct}%")
    if latest.volume < prev_volume * params.volume_multiplier:
        return _no(name, f"volume {latest.volume:.0f} < {params.volume_multiplier}x {prev_volume:.0f}")
    return _yes(name, f"breakout {breakout:.2f}% over {previous_high:.0f}", breakout_pct=breakout)


def market_close_momentum(
    symbol: WatchedSymbol, candles: list[Candle], config: StrategyConfig, now: datetime
) -> StrategySignal:
    name = "market_close_momentum"
    params = config.market_close_momentum
    if not is_within_window(now, params.start_time, params.end_time, config.timezone):
        return _no(name, f"outside window {params.start_time}-{params.end_time}")
    quote = symbol.quote
    if not (params.min_change_pct <= quote.change_pct <= params.max_change_pct):
        return _no(name, f"change {quote.change_pct:.2f}% outside [{params.min_change_pct}, {params.max_change_pct}]")
    if len(candles) < params.ma_period:
        return _fallback(name, symbol, params.fallback_move_pct, len(candles), params.ma_period)
    averages = moving_average(chronological(candles), params.ma_period)
    ma = averages[-1]
    if quote.price <= ma:
        return _no(name, f"price {quote.price:.0f} <= ma{params.ma_period} {ma:.0f}", ma=ma)
    return _yes(name, f"price above ma{params.ma_period} {ma:.0f}", ma=ma)


EVALUATORS: dict[str, Evaluator] = {
    "basic_momentum": basic_momentum,
    "market_open_breakout": market_open_breakout,
    "bollinger_rebound": bollinger_rebound,
    "scalping_pullback": scalping_pullback,
    "volume_breakout": volume_breakout,
    "market_close_momentum": market_close_momentum,
}
