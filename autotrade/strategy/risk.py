from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime

from autotrade.clock import is_within_window, trading_day
from autotrade.config import TradingConfig
from autotrade.execution.ledger import OrderLedger

SYMBOL_CODE_RE = re.compile(r"^\d{6}$")


@dataclass(slots=True)
class RiskCheck:
    allowed: bool
    reason_codes: list[str]
    metadata: dict[str, float | int | str] = field(default_factory=dict)


class RiskEngine:
    def __init__(self, trading: TradingConfig, timezone_name: str = "Asia/Seoul"):
        self.trading = trading
        self.timezone_name = timezone_name

    def in_trading_window(self, now: datetime) -> bool:
        return is_within_window(now, self.trading.window_start, self.trading.window_end, self.timezone_name)

    def excluded_by_name(self, name: str) -> str | None:
        upper = (name or "").upper()
        for pattern in self.trading.excluded_name_patterns:
            if pattern.upper() in upper:
                return pattern
        return None

    def can_open_new_trade(
        self,
        *,
        code: str,
        name: str,
        now: datetime,
        ledger: OrderLedger,
        restricted: set[str] | dict[str, str],
    ) -> RiskCheck:
        """Every buy gate is evaluated so the log shows all failing reasons at once."""
        reasons: list[str] = []
        metadata: dict[str, float | int | str] = {}

        if not self.in_trading_window(now):
            reasons.append("OUTSIDE_TRADING_WINDOW")
        if not SYMBOL_CODE_RE.match(code or ""):
            reasons.append("INVALID_SYMBOL_CODE")
        pattern = self.excluded_by_name(name)
        if pattern is not None:
            reasons.append("EXCLUDED_NAME_PATTERN")
            metadata["pattern"] = pattern
        if code in restricted:
            reasons.append("SYMBOL_RESTRICTED")

        held = ledger.position(code)
        if held is not None and held.quantity > 0:
            reasons.append("ALREADY_HELD")
        if ledger.has_open_order(code):
            reasons.append("ORDER_PENDING")

        holdings = len(ledger.positions())
        metadata["holdings"] = holdings
        if holdings >= self.trading.max_concurrent_holdings:
            reasons.append("MAX_HOLDINGS_REACHED")

        lifetime = ledger.lifetime_buys(code)
        metadata["lifetime_buys"] = lifetime
        if lifetime >= self.trading.max_trades_per_symbol:
            reasons.append("MAX_TRADES_PER_SYMBOL_REACHED")

        traded_today = ledger.symbols_bought_on(trading_day(now, self.timezone_name))
        metadata["daily_symbols"] = len(traded_today)
        if code not in traded_today and len(traded_today) >= self.trading.max_daily_symbols:
            reasons.append("MAX_DAILY_SYMBOLS_REACHED")

        return RiskCheck(allowed=len(reasons) == 0, reason_codes=reasons, metadata=metadata)
