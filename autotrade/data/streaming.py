from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Iterable

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect

from autotrade.clock import utc_now
from autotrade.data.broker_client import normalize_code, normalize_order_no, parse_side
from autotrade.data.candles import parse_price, parse_signed
from autotrade.storage.models import FillMessage, QuoteTick

LOGGER = logging.getLogger(__name__)

REAL_TYPE_TRADE = "0B"
REAL_TYPE_ORDER = "00"

# Trade tick fields.
F_PRICE = "10"
F_CHANGE = "11"
F_CHANGE_RATE = "12"
F_VOLUME = "13"
F_OPEN = "16"
F_HIGH = "17"
F_LOW = "18"

# Order execution fields.
F_ORDER_NO = "9203"
F_ORIGINAL_ORDER_NO = "904"
F_CODE = "9001"
F_ORDER_STATUS = "913"
F_ORDER_QTY = "900"
F_ORDER_PRICE = "901"
F_UNFILLED_QTY = "902"
F_FILLED_AMOUNT = "903"
F_ORDER_CLASS = "905"
F_SELL_BUY = "907"
F_FILL_PRICE = "910"
F_FILL_QTY = "911"


def _optional_price(values: dict[str, Any], key: str) -> float | None:
    if key not in values:
        return None
    parsed = parse_price(values.get(key))
    return parsed if parsed > 0 else None


def _optional_signed(values: dict[str, Any], key: str) -> float | None:
    if key not in values:
        return None
    return parse_signed(values.get(key))


def parse_trade_tick(item: str, values: dict[str, Any], received_at: datetime) -> QuoteTick | None:
    code = normalize_code(item or values.get(F_CODE))
    price = parse_price(values.get(F_PRICE))
    if not code or price <= 0:
        return None
    volume = _optional_signed(values, F_VOLUME)
    return QuoteTick(
        symbol=code,
        price=price,
        change_abs=_optional_signed(values, F_CHANGE),
        change_pct=_optional_signed(values, F_CHANGE_RATE),
        volume=abs(volume) if volume is not None else None,
        open_price=_optional_price(values, F_OPEN),
        high_price=_optional_price(values, F_HIGH),
        low_price=_optional_price(values, F_LOW),
        received_at=received_at,
    )


def parse_order_execution(item: str, values: dict[str, Any], received_at: datetime) -> FillMessage | None:
    broker_id = normalize_order_no(values.get(F_ORDER_NO))
    code = normalize_code(values.get(F_CODE) or item)
    side = parse_side(values.get(F_SELL_BUY)) or parse_side(values.get(F_ORDER_CLASS))
    order_qty = int(abs(parse_signed(values.get(F_ORDER_QTY))))
    if not broker_id or not code or side is None or order_qty <= 0:
        return None
    unfilled = int(abs(parse_signed(values.get(F_UNFILLED_QTY))))
    fill_price = _optional_price(values, F_FILL_PRICE)
    fill_qty_raw = _optional_signed(values, F_FILL_QTY)
    amount = _optional_signed(values, F_FILLED_AMOUNT)
    return FillMessage(
        broker_id=broker_id,
        symbol=code,
        side=side,
        order_qty=order_qty,
        order_price=parse_price(values.get(F_ORDER_PRICE)),
        unfilled_qty=min(unfilled, order_qty),
        fill_price=fill_price,
        fill_qty=int(abs(fill_qty_raw)) if fill_qty_raw else None,
        cumulative_amount=abs(amount) if amount else None,
        status_text=str(values.get(F_ORDER_STATUS) or "").strip(),
        original_broker_id=normalize_order_no(values.get(F_ORIGINAL_ORDER_NO)) or None,
        received_at=received_at,
    )


def parse_real_message(payload: dict[str, Any], received_at: datetime) -> list[QuoteTick | FillMessage]:
    output: list[QuoteTick | FillMessage] = []
    for entry in payload.get("data") or []:
        if not isinstance(entry, dict):
            continue
        values = entry.get("values") or {}
        if not isinstance(values, dict):
            continue
        kind = str(entry.get("type") or "")
        item = str(entry.get("item") or "")
        if kind == REAL_TYPE_TRADE:
            tick = parse_trade_tick(item, values, received_at)
            if tick is not None:
                output.append(tick)
        elif kind == REAL_TYPE_ORDER:
            fill = parse_order_execution(item, values, received_at)
            if fill is not None:
                output.append(fill)
    return output


def registration_packet(trnm: str, codes: Iterable[str], types: Iterable[str], group: str = "1") -> dict[str, Any]:
    return {
        "trnm": trnm,
        "grp_no": group,
        "refresh": "1",
        "data": [{"item": list(codes), "type": list(types)}],
    }


class StreamingFeed:
    """Real-time tick and order-execution listener on a daemon thread."""

    def __init__(
        self,
        url: str,
        token_provider: Callable[[], str],
        *,
        on_tick: Callable[[QuoteTick], None],
        on_fill: Callable[[FillMessage], None],
        stop_event: threading.Event,
        reconnect_attempts: int = 5,
        reconnect_delay_seconds: float = 3.0,
        recv_timeout_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        connector: Callable[..., Any] = connect,
    ):
        self.url = url
        self.token_provider = token_provider
        self.on_tick = on_tick
        self.on_fill = on_fill
        self.stop_event = stop_event
        self.reconnect_attempts = max(1, int(reconnect_attempts))
        self.reconnect_delay_seconds = max(0.0, float(reconnect_delay_seconds))
        self.recv_timeout_seconds = recv_timeout_seconds
        self._clock = clock
        self._connector = connector
        self._ws: Any = None
        self._lock = threading.Lock()
        self._wanted: set[str] = set()
        self._registered: set[str] = set()
        self._logged_in = False
        self._thread: threading.Thread | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._logged_in

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self._run, name="stream", daemon=True)
        self._thread.start()
        return self._thread

    def subscriptions(self) -> set[str]:
        with self._lock:
            return set(self._wanted)

    def set_subscriptions(self, codes: Iterable[str]) -> tuple[set[str], set[str]]:
        """Register new codes and drop stale ones; returns (added, removed)."""
        wanted = {code for code in codes if code}
        with self._lock:
            self._wanted = wanted
            if not self.connected:
                return set(), set()
            added = wanted - self._registered
            removed = self._registered - wanted
            if removed:
                self._send(registration_packet("REMOVE", sorted(removed), [REAL_TYPE_TRADE]))
            if added:
                self._send(registration_packet("REG", sorted(added), [REAL_TYPE_TRADE]))
            self._registered = set(wanted)
        if added or removed:
            LOGGER.info("Stream subscriptions added=%s removed=%s total=%s", sorted(added), sorted(removed), len(wanted))
        return added, removed

    def _send(self, message: dict[str, Any]) -> None:
        if self._ws is None:
            return
        self._ws.send(json.dumps(message, ensure_ascii=False))

    def handle_message(self, raw: str | bytes) -> None:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            LOGGER.warning("Unparseable stream message: %.200s", raw)
            return
        if not isinstance(payload, dict):
            return
        trnm = str(payload.get("trnm") or "")
        if trnm == "PING":
            with self._lock:
                self._send(payload)
            return
        if trnm == "LOGIN":
            if str(payload.get("return_code")) not in {"0", "None"}:
                LOGGER.error("Stream login failed: %s", payload.get("return_msg"))
                raise ConnectionError(f"stream login failed: {payload.get('return_msg')}")
            self._on_login()
            return
        if trnm in {"REG", "REMOVE"}:
            if str(payload.get("return_code")) not in {"0", "None"}:
                LOGGER.warning("Stream %s failed: %s", trnm, payload.get("return_msg"))
            return
        if trnm != "REAL":
            return
        for item in parse_real_message(payload, self._clock()):
            callback = self.on_fill if isinstance(item, FillMessage) else self.on_tick
            try:
                callback(item)
            except Exception:
                # The session stays up; snapshots reconcile whatever this push missed.
                LOGGER.exception("Stream callback failed symbol=%s type=%s", item.symbol, type(item).__name__)

    def _on_login(self) -> None:
        with self._lock:
            self._logged_in = True
            self._registered = set()
            self._send(registration_packet("REG", [""], [REAL_TYPE_ORDER]))
            wanted = set(self._wanted)
        LOGGER.info("Stream logged in")
        self.set_subscriptions(wanted)

    def _run(self) -> None:
        failures = 0
        while not self.stop_event.is_set():
            try:
                self._session()
                failures = 0
            except (OSError, WebSocketException, ConnectionError) as exc:
                failures += 1
                LOGGER.warning(
                    "Stream disconnected attempt=%d/%d: %s",
                    failures,
                    self.reconnect_attempts,
                    exc,
                )
            except Exception:
                failures += 1
                LOGGER.exception("Stream handler failed")
            finally:
                with self._lock:
                    self._ws = None
                    self._logged_in = False
                    self._registered = set()
            if failures >= self.reconnect_attempts:
                LOGGER.error("Stream gave up after %d attempts; relying on snapshot polling", failures)
                return
            self.stop_event.wait(self.reconnect_delay_seconds)

    def _session(self) -> None:
        token = self.token_provider()
        with self._connector(self.url, open_timeout=10, close_timeout=2) as ws:
            with self._lock:
                self._ws = ws
                self._send({"trnm": "LOGIN", "token": token})
            LOGGER.info("Stream connected url=%s", self.url)
            while not self.stop_event.is_set():
                try:
                    raw = ws.recv(timeout=self.recv_timeout_seconds)
                except TimeoutError:
                    continue
                except ConnectionClosed as exc:
                    raise ConnectionError(f"stream closed: {exc}") from exc
                self.handle_message(raw)
