from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from autotrade.config import STRATEGY_NAMES, AppConfig, ExitConfig, TradingConfig, load_config


def test_missing_file_gives_defaults(tmp_path) -> None:
    config = load_config(tmp_path / "absent.yaml")
    assert config == AppConfig()
    assert config.timezone == "Asia/Seoul"
    assert config.trading.window_start == "09:00"
    assert config.exit.stop_loss_pct == -2.0


def test_load_yaml_overrides(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "\n".join(
            [
                "trading:",
                "  window_start: '9:30'",
                "  max_concurrent_holdings: 3",
                "  buy_order_type: MARKET",
                "  condition_ids: [ka10027, ka10027, ' ka10030 ']",
                "exit:",
                "  liquidation_time: ''",
                "strategies:",
                "  volume_breakout:",
                "    enabled: true",
            ]
        ),
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.trading.window_start == "09:30"
    assert config.trading.max_concurrent_holdings == 3
    assert config.trading.buy_order_type == "market"
    assert config.trading.condition_ids == ["ka10027", "ka10030"]
    assert config.exit.liquidation_time is None
    assert config.strategies.volume_breakout.enabled is True


def test_empty_yaml_gives_defaults(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path) == AppConfig()


def test_evaluation_order_is_completed_with_missing_strategies() -> None:
    config = AppConfig.model_validate({"strategies": {"evaluation_order": ["Volume_Breakout", "volume_breakout"]}})
    order = config.strategies.evaluation_order
    assert order[0] == "volume_breakout"
    assert sorted(order) == sorted(STRATEGY_NAMES)


def test_unknown_strategy_rejected() -> None:
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"strategies": {"evaluation_order": ["moon_shot"]}})


@pytest.mark.parametrize(
    "overrides",
    [
        {"window_start": "15:30", "window_end": "09:00"},
        {"window_start": "25:00"},
        {"max_concurrent_holdings": 0},
        {"fee_rate": 1.5},
        {"buy_order_type": "stop"},
    ],
)
def test_trading_config_validation(overrides) -> None:
    with pytest.raises(ValidationError):
        TradingConfig(**overrides)


def test_exit_config_validation() -> None:
    with pytest.raises(ValidationError):
        ExitConfig(stop_loss_pct=1.0)
    with pytest.raises(ValidationError):
        ExitConfig(profit_exit_order_type="best")


def test_buy_window_must_close_before_forced_liquidation() -> None:
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"trading": {"window_end": "15:20"}, "exit": {"liquidation_time": "15:15"}})
    config = AppConfig.model_validate({"trading": {"window_end": "15:20"}, "exit": {"liquidation_time": None}})
    assert config.trading.window_end == "15:20"
    assert AppConfig().trading.window_end < AppConfig().exit.liquidation_time


def test_shipped_config_loads() -> None:
    config = load_config(Path(__file__).resolve().parents[1] / "config.yaml")
    assert config.trading.window_end < config.exit.liquidation_time
