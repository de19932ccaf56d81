from __future__ import annotations

from pathlib import Path

import pytest

import main
from autotrade.config import AppConfig


def test_dry_run_state_lives_beside_live_state(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("AUTOTRADE_DB_PATH", raising=False)
    config = AppConfig()
    live_path = main.resolve_db_path(tmp_path, config, live=True)
    dry_path = main.resolve_db_path(tmp_path, config, live=False)
    assert live_path == str(tmp_path / "autotrade_state.db")
    assert dry_path == str(tmp_path / "autotrade_state.dry.db")


def test_db_path_env_override(tmp_path, monkeypatch) -> None:
    target = tmp_path / "elsewhere" / "state.sqlite"
    monkeypatch.setenv("AUTOTRADE_DB_PATH", str(target))
    assert main.resolve_db_path(Path("/unused"), AppConfig(), live=True) == str(target)


def test_live_mode_requires_credentials(monkeypatch) -> None:
    for name in ("KIWOOM_APPKEY", "KIWOOM_SECRETKEY", "KIWOOM_ACCOUNT"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(RuntimeError):
        main.build_client(AppConfig(), live=True)
    assert main.build_client(AppConfig(), live=False) is None


def test_client_built_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("KIWOOM_APPKEY", "app")
    monkeypatch.setenv("KIWOOM_SECRETKEY", "secret")
    monkeypatch.setenv("KIWOOM_ACCOUNT", "1234567890")
    monkeypatch.setenv("KIWOOM_BASE_URL", "https://api.kiwoom.example/")
    client = main.build_client(AppConfig(), live=True)
    assert client is not None
    assert client.base_url == "https://api.kiwoom.example"
    assert client.account == "1234567890"


def test_ledger_takes_execution_settings() -> None:
    config = AppConfig.model_validate({"execution": {"order_timeout_seconds": 45, "dedupe_bucket_seconds": 30}})
    ledger = main.build_ledger(config)
    assert ledger.order_timeout_seconds == 45
    assert ledger.dedupe_bucket_seconds == 30
