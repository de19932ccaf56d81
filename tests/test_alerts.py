from __future__ import annotations

import requests

from autotrade.monitoring.alerts import AlertConfig, AlertDispatcher, describe_order


class FakeResponse:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class Recorder:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, url: str, json=None, timeout=None) -> FakeResponse:
        self.calls.append((url, json))
        return FakeResponse(self.status_code)


class ManualClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _dispatcher(post: Recorder, clock: ManualClock, **overrides) -> AlertDispatcher:
    config = AlertConfig(
        enabled=overrides.get("enabled", True),
        discord_webhook="https://discord.example/webhook",
        telegram_bot_token="bot-token",
        telegram_chat_id="42",
        cooldown_seconds=30,
    )
    return AlertDispatcher(config, post=post, clock=clock)


def test_alert_goes_to_both_channels() -> None:
    post = Recorder()
    dispatcher = _dispatcher(post, ManualClock())
    sent = dispatcher.send(
        event="ORDER_FILLED",
        message="buy 005930 qty=10",
        context={"price": 78800},
    )
    assert sent is True
    assert [url for url, _ in post.calls] == [
        "https://discord.example/webhook",
        "https://api.telegram.org/botbot-token/sendMessage",
    ]
    assert post.calls[0][1]["content"] == "[INFO] ORDER_FILLED: buy 005930 qty=10 | price=78,800"
    assert post.calls[1][1]["chat_id"] == "42"


def test_cooldown_suppresses_repeats_per_key() -> None:
    post = Recorder()
    clock = ManualClock()
    dispatcher = _dispatcher(post, clock)

    assert dispatcher.send(event="EXIT_ORDER_FAILED", message="first") is True
    clock.now += 10
    assert dispatcher.send(event="EXIT_ORDER_FAILED", message="second") is False
    assert dispatcher.send(event="ORDER_FILLED", message="other key", dedupe_key="fill-005930-1") is True
    clock.now += 21
    assert dispatcher.send(event="EXIT_ORDER_FAILED", message="third") is True


def test_disabled_dispatcher_sends_nothing() -> None:
    post = Recorder()
    dispatcher = _dispatcher(post, ManualClock(), enabled=False)
    assert dispatcher.send(event="ORDER_FILLED", message="x") is False
    assert post.calls == []


def test_channel_failure_is_logged_not_raised() -> None:
    post = Recorder(status_code=500)
    dispatcher = _dispatcher(post, ManualClock())
    assert dispatcher.send(event="UNHANDLED_RUNTIME_ERROR", message="boom", level="error") is True
    assert len(post.calls) == 2


def test_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("ALERT_DISCORD_WEBHOOK", "https://discord.example/hook")
    monkeypatch.delenv("ALERT_TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.delenv("ALERT_TELEGRAM_CHAT_ID", raising=False)
    config = AlertConfig.from_env(enabled=True, cooldown_seconds=5)
    assert config.discord_webhook == "https://discord.example/hook"
    assert config.telegram_bot_token is None
    assert config.cooldown_seconds == 5


def test_describe_order() -> None:
    assert describe_order("005930", "sell", 10, 78_800, name="삼성전자") == "매도 005930 삼성전자 10주 @ 78,800원"
    assert describe_order("000660", "buy", 1_200) == "매수 000660 1,200주"


def test_context_numbers_are_grouped() -> None:
    post = Recorder()
    dispatcher = _dispatcher(post, ManualClock())
    dispatcher.send(
        event="STOP_LOSS_EXIT",
        level="warning",
        message=describe_order("005930", "sell", 99),
        context={"pnl_pct": -3.0, "realized": -29_700},
    )
    assert post.calls[0][1]["content"] == "[WARNING] STOP_LOSS_EXIT: 매도 005930 99주 | pnl_pct=-3.00 realized=-29,700"
