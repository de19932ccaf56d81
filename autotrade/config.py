from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

STRATEGY_NAMES = (
    "basic_momentum",
    "market_open_breakout",
    "bollinger_rebound",
    "scalping_pullback",
    "volume_breakout",
    "market_close_momentum",
)


def _normalize_hhmm(value: str, field_name: str) -> str:
    parts = str(value).strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"{field_name} must use HH:MM format")
    try:
        hh = int(parts[0])
        mm = int(parts[1])
    except ValueError as exc:
        raise ValueError(f"{field_name} must use HH:MM format") from exc
    if not (0 <= hh <= 23 and 0 <= mm <= 59):
        raise ValueError(f"{field_name} must be a valid clock time")
    return f"{hh:02d}:{mm:02d}"


class BrokerConfig(BaseModel):
    base_url: str = "https://mockapi.kiwoom.com"
    socket_url: str = "wss://mockapi.kiwoom.com:10000/api/dostk/websocket"
    exchange: str = "KRX"
    request_timeout_seconds: float = 10.0
    order_timeout_seconds: float = 5.0
    rate_limit_rps: float = 4.0
    rate_limit_burst: int = 4
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 15.0
    token_refresh_margin_seconds: int = 300
    stream_reconnect_attempts: int = 5
    stream_reconnect_delay_seconds: float = 3.0

    @model_validator(mode="after")
    def validate_values(self) -> "BrokerConfig":
        self.base_url = self.base_url.strip().rstrip("/")
        self.exchange = self.exchange.strip().upper() or "KRX"
        if self.request_timeout_seconds <= 0:
            raise ValueError("broker.request_timeout_seconds must be > 0")
        if self.order_timeout_seconds <= 0:
            raise ValueError("broker.order_timeout_seconds must be > 0")
        if self.request_max_attempts <= 0:
            raise ValueError("broker.request_max_attempts must be > 0")
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("broker.backoff_base_seconds must be <= backoff_max_seconds")
        return self


class TradingConfig(BaseModel):
    window_start: str = "09:00"
    window_end: str = "15:10"
    max_concurrent_holdings: int = 5
    max_trades_per_symbol: int = 1
    max_daily_symbols: int = 10
    investment_per_symbol: float = 1_000_000.0
    fee_rate: float = 0.00015
    buy_order_type: str = "limit"
    excluded_name_patterns: list[str] = Field(
        default_factory=lambda: ["레버리지", "인버스", "선물", "2X", "곱버스", "ETN"]
    )
    condition_ids: list[str] = Field(default_factory=lambda: ["ka10027"])
    max_candidates_per_cycle: int = 30

    @model_validator(mode="after")
    def validate_values(self) -> "TradingConfig":
        self.window_start = _normalize_hhmm(self.window_start, "trading.window_start")
        self.window_end = _normalize_hhmm(self.window_end, "trading.window_end")
        if self.window_start >= self.window_end:
            raise ValueError("trading.window_start must be before trading.window_end")
        if self.max_concurrent_holdings <= 0:
            raise ValueError("trading.max_concurrent_holdings must be > 0")
        if self.max_trades_per_symbol <= 0:
            raise ValueError("trading.max_trades_per_symbol must be > 0")
        if self.max_daily_symbols <= 0:
            raise ValueError("trading.max_daily_symbols must be > 0")
        if self.investment_per_symbol <= 0:
            raise ValueError("trading.investment_per_symbol must be > 0")
        if not (0 <= self.fee_rate < 1):
            raise ValueError("trading.fee_rate must be in [0,1)")
        self.buy_order_type = self.buy_order_type.strip().lower()
        if self.buy_order_type not in {"limit", "market"}:
            raise ValueError("trading.buy_order_type must be limit or market")
        self.excluded_name_patterns = [
            str(item).strip() for item in self.excluded_name_patterns if str(item).strip()
        ]
        self.condition_ids = list(
            dict.fromkeys(str(item).strip() for item in self.condition_ids if str(item).strip())
        )
        if self.max_candidates_per_cycle <= 0:
            raise ValueError("trading.max_candidates_per_cycle must be > 0")
        return self


class ExitConfig(BaseModel):
    stop_loss_pct: float = -2.0
    take_profit_pct: float = 3.0
    trailing_arm_pct: float = 1.5
    trailing_drop_pct: float = 0.8
    liquidation_time: str | None = "15:15"
    profit_exit_order_type: str = "market"

    @model_validator(mode="after")
    def validate_values(self) -> "ExitConfig":
        if self.stop_loss_pct >= 0:
            raise ValueError("exit.stop_loss_pct must be < 0")
        if self.take_profit_pct <= 0:
            raise ValueError("exit.take_profit_pct must be > 0")
        if self.trailing_arm_pct <= 0:
            raise ValueError("exit.trailing_arm_pct must be > 0")
        if self.trailing_drop_pct <= 0:
            raise ValueError("exit.trailing_drop_pct must be > 0")
        if self.liquidation_time is not None and str(self.liquidation_time).strip():
            self.liquidation_time = _normalize_hhmm(self.liquidation_time, "exit.liquidation_time")
        else:
            self.liquidation_time = None
        self.profit_exit_order_type = self.profit_exit_order_type.strip().lower()
        if self.profit_exit_order_type not in {"limit", "market"}:
            raise ValueError("exit.profit_exit_order_type must be limit or market")
        return self


class ExecutionConfig(BaseModel):
    decision_interval_seconds: float = 30.0
    exit_monitor_interval_seconds: float = 2.0
    snapshot_interval_seconds: float = 10.0
    persist_interval_seconds: float = 300.0
    heartbeat_seconds: float = 300.0
    order_cooldown_seconds: float = 5.0
    order_timeout_seconds: float = 30.0
    cancelled_purge_seconds: float = 20.0
    snapshot_push_grace_seconds: float = 10.0
    dedupe_bucket_seconds: int = 60
    rate_limit_backoff_factor: float = 2.0
    rate_limit_backoff_max: float = 8.0
    candle_period: str = "1"
    candle_count: int = 60

    @model_validator(mode="after")
    def validate_values(self) -> "ExecutionConfig":
        for name in (
            "decision_interval_seconds",
            "exit_monitor_interval_seconds",
            "snapshot_interval_seconds",
            "persist_interval_seconds",
            "heartbeat_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"execution.{name} must be > 0")
        if self.order_cooldown_seconds < 0:
            raise ValueError("execution.order_cooldown_seconds must be >= 0")
        if self.order_timeout_seconds <= 0:
            raise ValueError("execution.order_timeout_seconds must be > 0")
        if self.cancelled_purge_seconds < 0:
            raise ValueError("execution.cancelled_purge_seconds must be >= 0")
        if self.dedupe_bucket_seconds <= 0:
            raise ValueError("execution.dedupe_bucket_seconds must be > 0")
        if self.rate_limit_backoff_factor < 1:
            raise ValueError("execution.rate_limit_backoff_factor must be >= 1")
        if self.rate_limit_backoff_max < 1:
            raise ValueError("execution.rate_limit_backoff_max must be >= 1")
        if self.candle_count <= 0:
            raise ValueError("execution.candle_count must be > 0")
        return self


class BasicMomentumConfig(BaseModel):
    enabled: bool = True
    min_change_pct: float = 2.0
    max_change_pct: float = 15.0
    min_trading_value: float = 1_000_000_000.0
    rsi_period: int = 14
    rsi_max: float = 75.0
    fallback_move_pct: float = 0.5


class MarketOpenBreakoutConfig(BaseModel):
    enabled: bool = False
    start_time: str = "09:00"
    end_time: str = "09:05"
    min_change_pct: float = 3.0
    opening_range_bars: int = 3
    volume_multiplier: float = 1.5
    fallback_move_pct: float = 1.0

    @model_validator(mode="after")
    def validate_window(self) -> "MarketOpenBreakoutConfig":
        self.start_time = _normalize_hhmm(self.start_time, "market_open_breakout.start_time")
        self.end_time = _normalize_hhmm(self.end_time, "market_open_breakout.end_time")
        if self.opening_range_bars <= 0:
            raise ValueError("market_open_breakout.opening_range_bars must be > 0")
        return self


class BollingerReboundConfig(BaseModel):
    enabled: bool = False
    period: int = 20
    multiplier: float = 2.0
    band_position_max: float = 0.2
    fallback_move_pct: float = 0.7


class ScalpingPullbackConfig(BaseModel):
    enabled: bool = False
    lookback_bars: int = 5
    min_rise_from_low_pct: float = 0.5
    max_rise_from_low_pct: float = 3.0
    volume_multiplier: float = 1.2
    fallback_move_pct: float = 0.5


class VolumeBreakoutConfig(BaseModel):
    enabled: bool = False
    lookback_bars: int = 20
    breakout_pct: float = 0.3
    volume_bars: int = 5
    volume_multiplier: float = 2.0
    fallback_move_pct: float = 1.0


class MarketCloseMomentumConfig(BaseModel):
    enabled: bool = False
    start_time: str = "14:50"
    end_time: str = "15:10"
    min_change_pct: float = 1.0
    max_change_pct: float = 10.0
    ma_period: int = 20
    fallback_move_pct: float = 0.5

    @model_validator(mode="after")
    def validate_window(self) -> "MarketCloseMomentumConfig":
        self.start_time = _normalize_hhmm(self.start_time, "market_close_momentum.start_time")
        self.end_time = _normalize_hhmm(self.end_time, "market_close_momentum.end_time")
        if self.ma_period <= 0:
            raise ValueError("market_close_momentum.ma_period must be > 0")
        return self


class StrategiesConfig(BaseModel):
    evaluation_order: list[str] = Field(default_factory=lambda: list(STRATEGY_NAMES))
    basic_momentum: BasicMomentumConfig = Field(default_factory=BasicMomentumConfig)
    market_open_breakout: MarketOpenBreakoutConfig = Field(default_factory=MarketOpenBreakoutConfig)
    bollinger_rebound: BollingerReboundConfig = Field(default_factory=BollingerReboundConfig)
    scalping_pullback: ScalpingPullbackConfig = Field(default_factory=ScalpingPullbackConfig)
    volume_breakout: VolumeBreakoutConfig = Field(default_factory=VolumeBreakoutConfig)
    market_close_momentum: MarketCloseMomentumConfig = Field(default_factory=MarketCloseMomentumConfig)

    @model_validator(mode="after")
    def normalize_order(self) -> "StrategiesConfig":
        order: list[str] = []
        for item in self.evaluation_order:
            name = str(item).strip().lower()
            if not name or name in order:
                continue
            if name not in STRATEGY_NAMES:
                raise ValueError(f"strategies.evaluation_order contains unknown strategy '{item}'")
            order.append(name)
        # Strategies left out of the explicit order still run, after the listed ones.
        order.extend(name for name in STRATEGY_NAMES if name not in order)
        self.evaluation_order = order
        return self


class MonitoringConfig(BaseModel):
    alerts_enabled: bool = True
    alert_cooldown_seconds: int = 30
    submission_error_alert_threshold: int = 3


class StorageConfig(BaseModel):
    sqlite_path: str = "autotrade_state.db"


class AppConfig(BaseModel):
    timezone: str = "Asia/Seoul"
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    exit: ExitConfig = Field(default_factory=ExitConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    strategies: StrategiesConfig = Field(default_factory=StrategiesConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @model_validator(mode="after")
    def validate_values(self) -> "AppConfig":
        liquidation = self.exit.liquidation_time
        if liquidation is not None and self.trading.window_end >= liquidation:
            raise ValueError("trading.window_end must be before exit.liquidation_time")
        return self


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    if not config_path.exists():
        return AppConfig()
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)
