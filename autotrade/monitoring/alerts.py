from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

LOGGER = logging.getLogger(__name__)

SIDE_LABELS = {"buy": "매수", "sell": "매도"}


def describe_order(symbol: str, side: str | None, quantity: int | None, price: float | None = None, name: str = "") -> str:
    """One-line order summary, e.g. "매도 005930 삼성전자 10주 @ 78,800원"."""
    parts = [SIDE_LABELS.get(side or "", side or "?"), symbol]
    if name:
        parts.append(name)
    if quantity:
        parts.append(f"{int(quantity):,}주")
    text = " ".join(parts)
    if price:
        text += f" @ {price:,.0f}원"
    return text


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int):
        return f"{value:,}"
    if isinstance(value, float):
        return f"{value:,.2f}" if abs(value) < 100 else f"{value:,.0f}"
    return str(value)


@dataclass(slots=True)
class AlertConfig:
    enabled: bool = True
    discord_webhook: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    cooldown_seconds: int = 30

    @classmethod
    def from_env(cls, *, enabled: bool, cooldown_seconds: int) -> "AlertConfig":
        return cls(
            enabled=enabled,
            discord_webhook=os.getenv("ALERT_DISCORD_WEBHOOK"),
            telegram_bot_token=os.getenv("ALERT_TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("ALERT_TELEGRAM_CHAT_ID"),
            cooldown_seconds=cooldown_seconds,
        )


class AlertDispatcher:
    def __init__(
        self,
        config: AlertConfig,
        *,
        post: Callable[..., requests.Response] = requests.post,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._post = post
        self._clock = clock
        self._last_sent_ts: dict[str, float] = {}
        self._lock = threading.Lock()

    def send(
        self,
        *,
        event: str,
        message: str,
        level: str = "info",
        context: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> bool:
        if not self.config.enabled:
            return False
        key = dedupe_key or event
        with self._lock:
            now = self._clock()
            prev = self._last_sent_ts.get(key)
            if prev is not None and (now - prev) < self.config.cooldown_seconds:
                return False
            self._last_sent_ts[key] = now

        details = f"[{level.upper()}] {event}: {message}"
        if context:
            details += " | " + " ".join(f"{k}={_format_value(v)}" for k, v in context.items())

        self._send_discord(details)
        self._send_telegram(details)
        return True

    def _send_discord(self, text: str) -> None:
        webhook = (self.config.discord_webhook or "").strip()
        if not webhook:
            return
        try:
            response = self._post(webhook, json={"content": text}, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("Discord alert failed: %s", exc)

    def _send_telegram(self, text: str) -> None:
        bot_token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not bot_token or not chat_id:
            return
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        try:
            response = self._post(url, json={"chat_id": chat_id, "text": text}, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("Telegram alert failed: %s", exc)
