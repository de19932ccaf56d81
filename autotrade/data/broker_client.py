from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import requests

from autotrade.data.candles import Candle, candles_from_chart, parse_price, parse_signed
from autotrade.errors import (
    BrokerAPIError,
    BrokerAuthError,
    OrderOutcomeUnknown,
    RateLimitError,
    TransientNetworkError,
    classify_rejection,
)
from autotrade.storage.models import SIDE_BUY, SIDE_SELL, BrokerOrder, Holding

LOGGER = logging.getLogger(__name__)

API_TOKEN = "/oauth2/token"
API_ORDER = "/api/dostk/ordr"
API_ACCOUNT = "/api/dostk/acnt"
API_CHART = "/api/dostk/chart"
API_RANKING = "/api/dostk/rkinfo"

# Screening condition id (the ranking api-id) -> (request body, result list key).
SCREENING_QUERIES: dict[str, tuple[dict[str, str], str]] = {
    "ka10027": (
        {
            "mrkt_tp": "000",
            "sort_tp": "1",
            "trde_qty_cnd": "0000",
            "stk_cnd": "0",
            "crd_cnd": "0",
            "updown_incls": "1",
            "pric_cnd": "0",
            "trde_prica_cnd": "0",
            "stex_tp": "3",
        },
        "pred_pre_flu_rt_upper",
    ),
    "ka10030": (
        {
            "mrkt_tp": "000",
            "sort_tp": "1",
            "mang_stk_incls": "0",
            "crd_tp": "0",
            "trde_qty_tp": "0",
            "pric_tp": "0",
            "trde_prica_tp": "0",
            "mrkt_open_tp": "0",
            "stex_tp": "3",
        },
        "tdy_trde_qty_upper",
    ),
    "ka10032": (
        {"mrkt_tp": "000", "mang_stk_incls": "0", "stex_tp": "3"},
        "trde_prica_upper",
    ),
    "ka10023": (
        {
            "mrkt_tp": "000",
            "sort_tp": "1",
            "tm_tp": "2",
            "trde_qty_tp": "5",
            "tm": "",
            "stk_cnd": "0",
            "pric_tp": "0",
            "stex_tp": "3",
        },
        "trde_qty_sdnin",
    ),
}


@dataclass(slots=True)
class BrokerClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    http_429_count: int = 0
    rate_limit_rejections: int = 0
    network_errors: int = 0
    token_refreshes: int = 0
    orders_sent: int = 0
    orders_unknown: int = 0


class TokenBucketLimiter:
    def __init__(self, rate_per_second: float, burst: int):
        self.rate_per_second = max(0.1, float(rate_per_second))
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            wait_seconds = 0.0
            with self.lock:
                now = time.monotonic()
                elapsed = max(0.0, now - self.last_refill)
                self.tokens = min(
                    float(self.capacity),
                    self.tokens + elapsed * self.rate_per_second,
                )
                self.last_refill = now
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait_seconds = (1.0 - self.tokens) / self.rate_per_second
            time.sleep(wait_seconds)


def _parse_retry_after(headers: Any) -> float | None:
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


def _return_code(payload: dict[str, Any]) -> int | None:
    raw = payload.get("return_code")
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def normalize_code(raw: Any) -> str:
    code = str(raw or "").strip()
    if code[:1] in {"A", "J", "Q"} and len(code) == 7:
        code = code[1:]
    return code


def normalize_order_no(raw: Any) -> str:
    return str(raw or "").strip().lstrip("0")


def parse_side(raw: Any) -> str | None:
    text = str(raw or "").strip()
    if text in {"1", "매도"} or "매도" in text:
        return SIDE_SELL
    if text in {"2", "매수"} or "매수" in text:
        return SIDE_BUY
    lowered = text.lower()
    if lowered in {"sell", "s"}:
        return SIDE_SELL
    if lowered in {"buy", "b"}:
        return SIDE_BUY
    return None


def _first_list(payload: dict[str, Any], preferred: str | None = None) -> list[dict[str, Any]]:
    if preferred and isinstance(payload.get(preferred), list):
        return [row for row in payload[preferred] if isinstance(row, dict)]
    for value in payload.values():
        if isinstance(value, list) and (not value or isinstance(value[0], dict)):
            return [row for row in value if isinstance(row, dict)]
    return []


def parse_holdings(payload: dict[str, Any]) -> list[Holding]:
    output: list[Holding] = []
    for row in _first_list(payload, "acnt_evlt_remn_indv_tot"):
        code = normalize_code(row.get("stk_cd"))
        quantity = int(abs(parse_signed(row.get("rmnd_qty"))))
        if not code:
            continue
        output.append(
            Holding(
                symbol=code,
                name=str(row.get("stk_nm") or "").strip(),
                quantity=quantity,
                avg_cost=parse_price(row.get("pur_pric")),
                current_price=parse_price(row.get("cur_prc")),
            )
        )
    return output


def parse_order_time(raw: Any, trading_date: datetime, timezone_name: str = "Asia/Seoul") -> datetime | None:
    text = str(raw or "").strip().replace(":", "")
    if len(text) < 6 or not text[:6].isdigit():
        return None
    local_day = trading_date.astimezone(ZoneInfo(timezone_name))
    local = local_day.replace(
        hour=int(text[0:2]),
        minute=int(text[2:4]),
        second=int(text[4:6]),
        microsecond=0,
    )
    return local.astimezone(timezone.utc)


def parse_order_history(
    payload: dict[str, Any],
    now: datetime,
    timezone_name: str = "Asia/Seoul",
) -> list[BrokerOrder]:
    output: list[BrokerOrder] = []
    for row in _first_list(payload, "acnt_ord_cntr_prps_dtl"):
        broker_id = normalize_order_no(row.get("ord_no")) or None
        code = normalize_code(row.get("stk_cd"))
        side = parse_side(row.get("io_tp_nm") or row.get("sell_tp") or row.get("trde_tp"))
        quantity = int(abs(parse_signed(row.get("ord_qty"))))
        if broker_id is None or not code or side is None or quantity <= 0:
            continue
        filled = int(abs(parse_signed(row.get("cntr_qty"))))
        fill_price = parse_price(row.get("cntr_uv"))
        output.append(
            BrokerOrder(
                broker_id=broker_id,
                symbol=code,
                side=side,
                quantity=quantity,
                price=parse_price(row.get("ord_uv")),
                filled_qty=min(filled, quantity),
                avg_fill_price=fill_price if fill_price > 0 else None,
                submitted_at=parse_order_time(row.get("ord_tm"), now, timezone_name),
                name=str(row.get("stk_nm") or "").strip(),
            )
        )
    return output


def parse_screening(payload: dict[str, Any], list_key: str | None = None) -> list[dict[str, Any]]:
    output: list[dict[str, Any]] = []
    for row in _first_list(payload, list_key):
        code = normalize_code(row.get("stk_cd"))
        price = parse_price(row.get("cur_prc"))
        if not code or price <= 0:
            continue
        output.append(
            {
                "code": code,
                "name": str(row.get("stk_nm") or "").strip(),
                "price": price,
                "change_rate": parse_signed(row.get("flu_rt")),
                "volume": abs(parse_signed(row.get("now_trde_qty") or row.get("trde_qty"))),
                "open_price": parse_price(row.get("open_pric")),
                "high_price": parse_price(row.get("high_pric")),
            }
        )
    return output


class KiwoomClient:
    """
    Kiwoom REST client.

    Auth flow:
    - POST /oauth2/token with appkey + secretkey.
    - Bearer token on every call, refreshed ahead of its expiry.

    Reads retry transient failures with jittered backoff. Orders are sent
    once: a dropped or timed-out order call raises OrderOutcomeUnknown.
    """

    def __init__(
        self,
        base_url: str,
        app_key: str,
        secret_key: str,
        account: str = "",
        *,
        exchange: str = "KRX",
        timeout_seconds: float = 10.0,
        order_timeout_seconds: float = 5.0,
        rate_limit_rps: float = 4.0,
        rate_limit_burst: int = 4,
        request_max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 15.0,
        token_refresh_margin_seconds: int = 300,
        timezone_name: str = "Asia/Seoul",
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.app_key = app_key
        self.secret_key = secret_key
        self.account = account.strip()
        self.exchange = exchange
        self.timeout_seconds = timeout_seconds
        self.order_timeout_seconds = order_timeout_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.1, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))
        self.token_refresh_margin_seconds = max(0, int(token_refresh_margin_seconds))
        self.timezone_name = timezone_name

        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json;charset=UTF-8"})
        self._token: str | None = None
        self._token_expires_at: datetime | None = None
        self._token_lock = threading.Lock()
        self._limiter = TokenBucketLimiter(rate_per_second=rate_limit_rps, burst=rate_limit_burst)
        self._metrics = BrokerClientMetrics()
        self._metrics_lock = threading.Lock()

    @classmethod
    def from_config(cls, broker, *, app_key: str, secret_key: str, account: str, timezone_name: str) -> "KiwoomClient":
        return cls(
            broker.base_url,
            app_key,
            secret_key,
            account,
            exchange=broker.exchange,
            timeout_seconds=broker.request_timeout_seconds,
            order_timeout_seconds=broker.order_timeout_seconds,
            rate_limit_rps=broker.rate_limit_rps,
            rate_limit_burst=broker.rate_limit_burst,
            request_max_attempts=broker.request_max_attempts,
            backoff_base_seconds=broker.backoff_base_seconds,
            backoff_max_seconds=broker.backoff_max_seconds,
            token_refresh_margin_seconds=broker.token_refresh_margin_seconds,
            timezone_name=timezone_name,
        )

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            return asdict(self._metrics)

    # ------------------------------------------------------------------ token

    def _token_valid(self, now: datetime) -> bool:
        if not self._token or self._token_expires_at is None:
            return False
        return now + timedelta(seconds=self.token_refresh_margin_seconds) < self._token_expires_at

    def access_token(self, *, force: bool = False) -> str:
        with self._token_lock:
            now = datetime.now(timezone.utc)
            if not force and self._token_valid(now):
                return str(self._token)
            self._issue_token()
            return str(self._token)

    def _issue_token(self) -> None:
        try:
            self._limiter.acquire()
            self._metric_add("total_requests", 1)
            response = self.session.post(
                f"{self.base_url}{API_TOKEN}",
                json={"grant_type": "client_credentials", "appkey": self.app_key, "secretkey": self.secret_key},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            self._metric_add("network_errors", 1)
            raise TransientNetworkError(f"Network error issuing token: {exc}") from exc
        if response.status_code >= 500:
            raise TransientNetworkError(f"Token endpoint error: HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise BrokerAuthError(f"Token response is not JSON: HTTP {response.status_code}") from exc
        code = _return_code(payload)
        token = payload.get("token")
        if response.status_code >= 400 or (code not in (None, 0)) or not token:
            raise BrokerAuthError(
                f"Token issuance failed: HTTP {response.status_code} code={code} msg={payload.get('return_msg')}"
            )
        expires_at = datetime.now(timezone.utc) + timedelta(hours=12)
        raw_expiry = str(payload.get("expires_dt") or "").strip()
        if len(raw_expiry) == 14 and raw_expiry.isdigit():
            local = datetime.strptime(raw_expiry, "%Y%m%d%H%M%S").replace(tzinfo=ZoneInfo(self.timezone_name))
            expires_at = local.astimezone(timezone.utc)
        self._token = str(token)
        self._token_expires_at = expires_at
        self._metric_add("token_refreshes", 1)
        LOGGER.info("Broker token issued, expires at %s", expires_at.isoformat())

    # ---------------------------------------------------------------- request

    def _sleep_retry(self, *, api_id: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        if retry_after is not None:
            sleep_seconds = max(0.0, retry_after)
        else:
            exponential = min(
                self.backoff_max_seconds,
                self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
            )
            jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
            sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        self._metric_add("total_retries", 1)
        LOGGER.warning(
            "Retrying broker call api_id=%s attempt=%d/%d sleep=%.2fs reason=%s",
            api_id,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        time.sleep(sleep_seconds)

    def _headers(self, api_id: str, *, cont_yn: str = "N", next_key: str = "") -> dict[str, str]:
        return {
            "authorization": f"Bearer {self.access_token()}",
            "api-id": api_id,
            "cont-yn": cont_yn,
            "next-key": next_key,
        }

    def _send(
        self,
        path: str,
        api_id: str,
        body: dict[str, Any],
        *,
        timeout: float,
        cont_yn: str = "N",
        next_key: str = "",
    ) -> requests.Response:
        self._limiter.acquire()
        self._metric_add("total_requests", 1)
        return self.session.post(
            f"{self.base_url}{path}",
            json=body,
            headers=self._headers(api_id, cont_yn=cont_yn, next_key=next_key),
            timeout=timeout,
        )

    def _read(
        self,
        path: str,
        api_id: str,
        body: dict[str, Any],
        *,
        cont_yn: str = "N",
        next_key: str = "",
    ) -> tuple[dict[str, Any], dict[str, str]]:
        """POST a query with retries. Returns (payload, continuation headers)."""
        refreshed = False
        for attempt in range(1, self.request_max_attempts + 1):
            try:
                response = self._send(
                    path,
                    api_id,
                    body,
                    timeout=self.timeout_seconds,
                    cont_yn=cont_yn,
                    next_key=next_key,
                )
            except requests.RequestException as exc:
                self._metric_add("network_errors", 1)
                if attempt >= self.request_max_attempts:
                    raise TransientNetworkError(f"Network error {api_id}: {exc}") from exc
                self._sleep_retry(api_id=api_id, attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            if response.status_code in (401, 403) and not refreshed:
                refreshed = True
                self.access_token(force=True)
                continue

            if response.status_code == 429:
                self._metric_add("http_429_count", 1)
                if attempt >= self.request_max_attempts:
                    raise RateLimitError(f"HTTP 429 on {api_id}")
                self._sleep_retry(
                    api_id=api_id,
                    attempt=attempt,
                    reason="http_429",
                    retry_after=_parse_retry_after(response.headers),
                )
                continue

            if response.status_code in (500, 502, 503, 504):
                if attempt >= self.request_max_attempts:
                    raise TransientNetworkError(f"HTTP {response.status_code} on {api_id}")
                self._sleep_retry(api_id=api_id, attempt=attempt, reason=f"http_{response.status_code}")
                continue

            try:
                payload = response.json() if response.content else {}
            except ValueError as exc:
                raise BrokerAPIError(f"Non-JSON response for {api_id}: HTTP {response.status_code}") from exc
            if not isinstance(payload, dict):
                payload = {}

            code = _return_code(payload)
            if response.status_code >= 400 or code not in (None, 0):
                error = classify_rejection(
                    str(payload.get("return_msg") or response.text),
                    return_code=code,
                    http_status=response.status_code,
                )
                if isinstance(error, RateLimitError):
                    self._metric_add("rate_limit_rejections", 1)
                    if attempt < self.request_max_attempts:
                        self._sleep_retry(api_id=api_id, attempt=attempt, reason="rate_limited")
                        continue
                raise error

            continuation = {
                "cont_yn": str(response.headers.get("cont-yn") or "N"),
                "next_key": str(response.headers.get("next-key") or ""),
            }
            return payload, continuation
        raise TransientNetworkError(f"Could not complete {api_id} after retries")

    def _read_pages(self, path: str, api_id: str, body: dict[str, Any], max_pages: int = 10) -> list[dict[str, Any]]:
        pages: list[dict[str, Any]] = []
        cont_yn, next_key = "N", ""
        for _ in range(max_pages):
            payload, continuation = self._read(path, api_id, body, cont_yn=cont_yn, next_key=next_key)
            pages.append(payload)
            if continuation["cont_yn"] != "Y" or not continuation["next_key"]:
                break
            cont_yn, next_key = "Y", continuation["next_key"]
        return pages

    # ------------------------------------------------------------------ reads

    def get_balance(self) -> list[Holding]:
        pages = self._read_pages(API_ACCOUNT, "kt00018", {"qry_tp": "1", "dmst_stex_tp": self.exchange})
        holdings: list[Holding] = []
        for payload in pages:
            holdings.extend(parse_holdings(payload))
        return holdings

    def get_order_history(self, now: datetime | None = None) -> list[BrokerOrder]:
        moment = now or datetime.now(timezone.utc)
        order_date = moment.astimezone(ZoneInfo(self.timezone_name)).strftime("%Y%m%d")
        body = {
            "ord_dt": order_date,
            "qry_tp": "1",
            "stk_bond_tp": "1",
            "sell_tp": "0",
            "stk_cd": "",
            "fr_ord_no": "",
            "dmst_stex_tp": "%",
        }
        orders: list[BrokerOrder] = []
        for payload in self._read_pages(API_ACCOUNT, "kt00007", body):
            orders.extend(parse_order_history(payload, moment, self.timezone_name))
        return orders

    def get_candles(self, code: str, period: str = "1", count: int = 60) -> list[Candle]:
        payload, _ = self._read(API_CHART, "ka10080", {"stk_cd": code, "tic_scope": str(period), "upd_stkpc_tp": "1"})
        rows = payload.get("stk_min_pole_chart_qry") or []
        candles = candles_from_chart(rows if isinstance(rows, list) else [], self.timezone_name)
        return candles[: max(0, int(count))]

    def search(self, condition_ids: list[str]) -> list[dict[str, Any]]:
        """Run each screening condition and merge rows by code, first seen wins."""
        merged: dict[str, dict[str, Any]] = {}
        for condition_id in condition_ids:
            body, list_key = SCREENING_QUERIES.get(condition_id, ({"mrkt_tp": "000", "stex_tp": "3"}, None))
            payload, _ = self._read(API_RANKING, condition_id, dict(body))
            for row in parse_screening(payload, list_key):
                merged.setdefault(row["code"], row)
        return list(merged.values())

    # ----------------------------------------------------------------- orders

    def place_order(self, *, code: str, side: str, quantity: int, price: float, market: bool) -> str:
        api_id = "kt10000" if side == SIDE_BUY else "kt10001"
        body = {
            "dmst_stex_tp": self.exchange,
            "stk_cd": code,
            "ord_qty": str(int(quantity)),
            "ord_uv": "" if market else str(int(price)),
            "trde_tp": "3" if market else "0",
            "cond_uv": "",
        }
        self._metric_add("orders_sent", 1)
        try:
            response = self._send(API_ORDER, api_id, body, timeout=self.order_timeout_seconds)
        except (requests.Timeout, requests.ConnectionError) as exc:
            self._metric_add("orders_unknown", 1)
            raise OrderOutcomeUnknown(f"No answer for {api_id} {code} qty={quantity}: {exc}") from exc
        except requests.RequestException as exc:
            raise BrokerAPIError(f"Order request failed before sending {api_id} {code}: {exc}") from exc

        if response.status_code == 429:
            self._metric_add("http_429_count", 1)
            raise RateLimitError(f"HTTP 429 on {api_id} {code}")
        if response.status_code >= 500:
            self._metric_add("orders_unknown", 1)
            raise OrderOutcomeUnknown(f"HTTP {response.status_code} on {api_id} {code}")
        try:
            payload = response.json()
        except ValueError as exc:
            self._metric_add("orders_unknown", 1)
            raise OrderOutcomeUnknown(f"Unreadable order response {api_id} {code}") from exc
        code_value = _return_code(payload)
        if response.status_code >= 400 or code_value not in (None, 0):
            raise classify_rejection(
                str(payload.get("return_msg") or response.text),
                return_code=code_value,
                http_status=response.status_code,
            )
        order_no = normalize_order_no(payload.get("ord_no"))
        if not order_no:
            self._metric_add("orders_unknown", 1)
            raise OrderOutcomeUnknown(f"Order accepted without order number {api_id} {code}")
        return order_no
