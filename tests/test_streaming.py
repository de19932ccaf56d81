from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone

import pytest

from autotrade.data.streaming import StreamingFeed, parse_real_message
from autotrade.storage.models import FillMessage, QuoteTick

NOW = datetime(2026, 3, 3, 1, 0, tzinfo=timezone.utc)

TRADE = {
    "trnm": "REAL",
    "data": [
        {
            "type": "0B",
            "item": "005930",
            "values": {
                "10": "-78800",
                "11": "-200",
                "12": "-0.25",
                "13": "+1500",
                "16": "78900",
                "17": "-79000",
                "18": "78500",
            },
        }
    ],
}

EXECUTION = {
    "trnm": "REAL",
    "data": [
        {
            "type": "00",
            "item": "",
            "values": {
                "9203": "0000123",
                "9001": "A005930",
                "913": "체결",
                "900": "10",
                "901": "78800",
                "902": "4",
                "903": "472800",
                "905": "+매수",
                "907": "2",
                "910": "78800",
                "911": "6",
            },
        }
    ],
}


class FakeSocket:
    def __init__(self, incoming: list[dict] | None = None, stop_event: threading.Event | None = None):
        self.incoming = [json.dumps(item) for item in (incoming or [])]
        self.stop_event = stop_event
        self.sent: list[dict] = []

    def __enter__(self) -> "FakeSocket":
        return self

    def __exit__(self, *exc) -> bool:
        return False

    def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    def recv(self, timeout: float | None = None) -> str:
        if not self.incoming:
            if self.stop_event is not None:
                self.stop_event.set()
            raise TimeoutError
        return self.incoming.pop(0)


def _feed(**kwargs) -> tuple[StreamingFeed, list, list]:
    ticks: list[QuoteTick] = []
    fills: list[FillMessage] = []
    feed = StreamingFeed(
        "wss://example.invalid/ws",
        lambda: "token-1",
        on_tick=ticks.append,
        on_fill=fills.append,
        stop_event=kwargs.pop("stop_event", threading.Event()),
        reconnect_delay_seconds=0,
        clock=lambda: NOW,
        **kwargs,
    )
    return feed, ticks, fills


def _connected(feed: StreamingFeed) -> FakeSocket:
    socket = FakeSocket()
    feed._ws = socket
    feed._logged_in = True
    return socket


def test_parse_trade_tick_strips_direction_signs() -> None:
    (tick,) = parse_real_message(TRADE, NOW)
    assert isinstance(tick, QuoteTick)
    assert tick.symbol == "005930"
    assert tick.price == 78_800
    assert tick.change_abs == -200
    assert tick.change_pct == -0.25
    assert tick.volume == 1_500
    assert tick.high_price == 79_000
    assert tick.received_at == NOW


def test_parse_order_execution() -> None:
    (fill,) = parse_real_message(EXECUTION, NOW)
    assert isinstance(fill, FillMessage)
    assert fill.broker_id == "123"
    assert fill.symbol == "005930"
    assert fill.side == "buy"
    assert fill.order_qty == 10
    assert fill.unfilled_qty == 4
    assert fill.filled_qty == 6
    assert fill.fill_price == 78_800
    assert fill.cumulative_amount == 472_800


def test_parse_skips_unknown_and_malformed_entries() -> None:
    payload = {"trnm": "REAL", "data": [{"type": "0D", "values": {}}, "junk", {"type": "0B", "values": {"10": "0"}}]}
    assert parse_real_message(payload, NOW) == []


def test_ping_is_echoed() -> None:
    feed, _, _ = _feed()
    socket = _connected(feed)
    feed.handle_message(json.dumps({"trnm": "PING", "seq": 7}))
    assert socket.sent == [{"trnm": "PING", "seq": 7}]


def test_login_registers_order_feed_and_wanted_codes() -> None:
    feed, _, _ = _feed()
    feed.set_subscriptions(["005930"])
    socket = FakeSocket()
    feed._ws = socket

    feed.handle_message(json.dumps({"trnm": "LOGIN", "return_code": 0, "return_msg": ""}))
    assert feed.connected is True
    assert socket.sent[0]["trnm"] == "REG"
    assert socket.sent[0]["data"] == [{"item": [""], "type": ["00"]}]
    assert socket.sent[1]["data"] == [{"item": ["005930"], "type": ["0B"]}]


def test_login_failure_raises() -> None:
    feed, _, _ = _feed()
    feed._ws = FakeSocket()
    with pytest.raises(ConnectionError):
        feed.handle_message(json.dumps({"trnm": "LOGIN", "return_code": 1, "return_msg": "invalid token"}))
    assert feed.connected is False


def test_subscription_diff() -> None:
    feed, _, _ = _feed()
    socket = _connected(feed)
    added, removed = feed.set_subscriptions({"005930", "000660"})
    assert added == {"005930", "000660"}
    assert removed == set()

    socket.sent.clear()
    added, removed = feed.set_subscriptions({"000660", "035720"})
    assert added == {"035720"}
    assert removed == {"005930"}
    assert [packet["trnm"] for packet in socket.sent] == ["REMOVE", "REG"]
    assert feed.subscriptions() == {"000660", "035720"}


def test_subscriptions_kept_while_disconnected() -> None:
    feed, _, _ = _feed()
    assert feed.set_subscriptions({"005930"}) == (set(), set())
    assert feed.subscriptions() == {"005930"}


def test_real_messages_dispatch_to_callbacks() -> None:
    feed, ticks, fills = _feed()
    feed.handle_message(json.dumps(TRADE))
    feed.handle_message(json.dumps(EXECUTION))
    feed.handle_message("not json")
    assert [tick.symbol for tick in ticks] == ["005930"]
    assert [fill.broker_id for fill in fills] == ["123"]


def test_session_logs_in_and_streams_until_stopped() -> None:
    stop = threading.Event()
    socket = FakeSocket(
        [{"trnm": "LOGIN", "return_code": 0}, TRADE],
        stop_event=stop,
    )
    calls: list[str] = []

    def connector(url, **kwargs):
        calls.append(url)
        return socket

    feed, ticks, _ = _feed(stop_event=stop, connector=connector)
    feed.set_subscriptions(["005930"])
    feed._run()

    assert calls == ["wss://example.invalid/ws"]
    assert socket.sent[0] == {"trnm": "LOGIN", "token": "token-1"}
    assert len(ticks) == 1
    assert feed.connected is False


def test_gives_up_after_bounded_reconnects() -> None:
    attempts: list[int] = []

    def connector(url, **kwargs):
        attempts.append(1)
        raise OSError("connection refused")

    feed, _, _ = _feed(connector=connector, reconnect_attempts=3)
    feed._run()
    assert len(attempts) == 3


def test_cancel_notice_is_not_parsed_as_fill() -> None:
    payload = {
        "trnm": "REAL",
        "data": [
            {
                "type": "00",
                "item": "005930",
                "values": {
                    "9203": "0000502",
                    "904": "0000501",
                    "9001": "A005930",
                    "913": "취소",
                    "900": "10",
                    "901": "10000",
                    "902": "0",
                    "905": "+매수취소",
                },
            }
        ],
    }
    (notice,) = parse_real_message(payload, NOW)
    assert notice.kind == "cancellation"
    assert notice.original_broker_id == "501"
    assert notice.filled_qty == 0


def test_failing_fill_callback_keeps_session_alive() -> None:
    stop = threading.Event()
    socket = FakeSocket([{"trnm": "LOGIN", "return_code": 0}, EXECUTION, TRADE], stop_event=stop)
    connects: list[str] = []
    ticks: list[QuoteTick] = []

    def connector(url, **kwargs):
        connects.append(url)
        return socket

    def broken_fill(message: FillMessage) -> None:
        raise sqlite3.OperationalError("database is locked")

    feed = StreamingFeed(
        "wss://example.invalid/ws",
        lambda: "token-1",
        on_tick=ticks.append,
        on_fill=broken_fill,
        stop_event=stop,
        reconnect_attempts=3,
        reconnect_delay_seconds=0,
        clock=lambda: NOW,
        connector=connector,
    )
    feed._run()

    assert connects == ["wss://example.invalid/ws"]
    assert [tick.symbol for tick in ticks] == ["005930"]
