from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from autotrade.config import (
    AppConfig,
    BasicMomentumConfig,
    BollingerReboundConfig,
    MarketCloseMomentumConfig,
    MarketOpenBreakoutConfig,
    ScalpingPullbackConfig,
    VolumeBreakoutConfig,
)


@dataclass(slots=True)
class StrategySignal:
    strategy: str
    fired: bool
    reason: str
    fallback: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StrategyConfig:
    """Per-cycle copy of the strategy settings handed to every evaluator."""

    timezone: str
    evaluation_order: tuple[str, ...]
    basic_momentum: BasicMomentumConfig
    market_open_breakout: MarketOpenBreakoutConfig
    bollinger_rebound: BollingerReboundConfig
    scalping_pullback: ScalpingPullbackConfig
    volume_breakout: VolumeBreakoutConfig
    market_close_momentum: MarketCloseMomentumConfig

    @classmethod
    def from_app_config(cls, config: AppConfig) -> "StrategyConfig":
        strategies = config.strategies.model_copy(deep=True)
        return cls(
            timezone=config.timezone,
            evaluation_order=tuple(strategies.evaluation_order),
            basic_momentum=strategies.basic_momentum,
            market_open_breakout=strategies.market_open_breakout,
            bollinger_rebound=strategies.bollinger_rebound,
            scalping_pullback=strategies.scalping_pullback,
            volume_breakout=strategies.volume_breakout,
            market_close_momentum=strategies.market_close_momentum,
        )

    def section(self, name: str) -> Any:
        return getattr(self, name)

    def is_enabled(self, name: str) -> bool:
        return bool(getattr(self.section(name), "enabled", False))

    @property
    def enabled_strategies(self) -> list[str]:
        return [name for name in self.evaluation_order if self.is_enabled(name)]

    @property
    def required_candles(self) -> int:
        """Longest history any enabled evaluator can use."""
        needs = [0]
        if self.is_enabled("basic_momentum"):
            needs.append(self.basic_momentum.rsi_period + 1)
        if self.is_enabled("market_open_breakout"):
            needs.append(self.market_open_breakout.opening_range_bars + 1)
        if self.is_enabled("bollinger_rebound"):
            needs.append(self.bollinger_rebound.period)
        if self.is_enabled("scalping_pullback"):
            needs.append(self.scalping_pullback.lookback_bars)
        if self.is_enabled("volume_breakout"):
            needs.append(max(self.volume_breakout.lookback_bars, self.volume_breakout.volume_bars) + 1)
        if self.is_enabled("market_close_momentum"):
            needs.append(self.market_close_momentum.ma_period)
        return max(needs)
