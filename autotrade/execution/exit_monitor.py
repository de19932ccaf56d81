from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from autotrade.clock import is_at_or_after
from autotrade.config import ExitConfig
from autotrade.errors import BrokerAPIError
from autotrade.execution.ledger import (
    EFFECT_ORDER_CANCELLED,
    EFFECT_ORDER_FILLED,
    EFFECT_ORDER_PURGED,
    EFFECT_ORDER_REJECTED,
    EFFECT_POSITION_CLOSED,
    LedgerEffect,
    OrderLedger,
)
from autotrade.execution.orders import OUTCOME_THROTTLED, OrderExecutor, SubmitResult
from autotrade.execution.sizing import round_to_tick
from autotrade.storage.models import SIDE_SELL, PositionRecord

LOGGER = logging.getLogger(__name__)

RULE_TRAILING_STOP = "trailing_stop"
RULE_TAKE_PROFIT = "take_profit"
RULE_STOP_LOSS = "stop_loss"
RULE_TIME_EXIT = "time_exit"

_RELEASE_KINDS = frozenset({EFFECT_ORDER_FILLED, EFFECT_ORDER_CANCELLED, EFFECT_ORDER_PURGED, EFFECT_ORDER_REJECTED})


@dataclass(slots=True)
class ExitDecision:
    symbol: str
    rule: str
    quantity: int
    is_market: bool
    price: float
    pnl_pct: float
    peak_pnl_pct: float

    @property
    def reason(self) -> str:
        return f"{self.rule} pnl={self.pnl_pct:.2f}% peak={self.peak_pnl_pct:.2f}%"


def evaluate_exit(
    position: PositionRecord,
    config: ExitConfig,
    now: datetime,
    timezone_name: str = "Asia/Seoul",
) -> ExitDecision | None:
    """First matching rule wins: trailing stop, take profit, stop loss, time exit."""
    if position.quantity <= 0 or position.current_price <= 0 or position.avg_cost <= 0:
        return None
    pnl = position.unrealized_pnl_pct
    peak = max(position.peak_pnl_pct, pnl)
    profit_market = config.profit_exit_order_type == "market"
    rule = None
    is_market = True
    if peak >= config.trailing_arm_pct and peak - pnl >= config.trailing_drop_pct:
        rule, is_market = RULE_TRAILING_STOP, profit_market
    elif peak >= config.take_profit_pct:
        rule, is_market = RULE_TAKE_PROFIT, profit_market
    elif pnl <= config.stop_loss_pct:
        rule = RULE_STOP_LOSS
    elif is_at_or_after(now, config.liquidation_time, timezone_name):
        rule = RULE_TIME_EXIT
    if rule is None:
        return None
    price = position.current_price if is_market else float(round_to_tick(position.current_price))
    return ExitDecision(
        symbol=position.symbol,
        rule=rule,
        quantity=position.quantity,
        is_market=is_market,
        price=price,
        pnl_pct=pnl,
        peak_pnl_pct=peak,
    )


class ExitMonitor:
    """Checks every held position and submits at most one exit per symbol.

    A symbol stays in flight from submission until its sell fills, is
    cancelled, or is rejected, or the position closes.
    """

    def __init__(
        self,
        *,
        ledger: OrderLedger,
        executor: OrderExecutor,
        config: ExitConfig,
        timezone_name: str = "Asia/Seoul",
        on_effects: Callable[[list[LedgerEffect]], None] | None = None,
        on_error: Callable[[str, BrokerAPIError], None] | None = None,
        on_exit: Callable[[ExitDecision, SubmitResult], None] | None = None,
    ):
        self.ledger = ledger
        self.executor = executor
        self.config = config
        self.timezone_name = timezone_name
        self.on_effects = on_effects
        self.on_error = on_error
        self.on_exit = on_exit
        self._in_flight: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def in_flight(self) -> dict[str, str | None]:
        with self._lock:
            return dict(self._in_flight)

    def _claim(self, symbol: str) -> bool:
        with self._lock:
            if symbol in self._in_flight:
                return False
            self._in_flight[symbol] = None
            return True

    def _bind(self, symbol: str, local_id: str | None) -> None:
        with self._lock:
            if symbol in self._in_flight:
                self._in_flight[symbol] = local_id

    def release(self, symbol: str) -> None:
        with self._lock:
            self._in_flight.pop(symbol, None)

    def handle_effects(self, effects: list[LedgerEffect]) -> None:
        for effect in effects:
            if effect.kind == EFFECT_POSITION_CLOSED:
                self.release(effect.symbol)
                continue
            if effect.side != SIDE_SELL or effect.kind not in _RELEASE_KINDS:
                continue
            with self._lock:
                bound = self._in_flight.get(effect.symbol, "")
                if bound is not None and bound == effect.local_id:
                    self._in_flight.pop(effect.symbol, None)

    def pending_decisions(self, now: datetime) -> list[ExitDecision]:
        decisions: list[ExitDecision] = []
        in_flight = self.in_flight()
        for position in self.ledger.positions():
            if position.symbol in in_flight:
                continue
            if self.ledger.has_open_order(position.symbol, SIDE_SELL):
                continue
            decision = evaluate_exit(position, self.config, now, self.timezone_name)
            if decision is not None:
                decisions.append(decision)
        # Stop-loss exits go first; the order cooldown still applies to them.
        decisions.sort(key=lambda item: 0 if item.rule == RULE_STOP_LOSS else 1)
        return decisions

    def run_once(self, now: datetime, should_continue: Callable[[], bool] | None = None) -> list[SubmitResult]:
        results: list[SubmitResult] = []
        for decision in self.pending_decisions(now):
            if should_continue is not None and not should_continue():
                break
            if not self._claim(decision.symbol):
                continue
            LOGGER.info(
                "Exit signal symbol=%s rule=%s qty=%s pnl=%.2f%% peak=%.2f%% market=%s",
                decision.symbol,
                decision.rule,
                decision.quantity,
                decision.pnl_pct,
                decision.peak_pnl_pct,
                decision.is_market,
            )
            try:
                result = self.executor.submit(
                    symbol=decision.symbol,
                    side=SIDE_SELL,
                    quantity=decision.quantity,
                    price=decision.price,
                    is_market=decision.is_market,
                    reference_price=decision.price,
                    priority=decision.rule == RULE_STOP_LOSS,
                    metadata={"exit_rule": decision.rule, "reason": decision.reason},
                )
            except BrokerAPIError as exc:
                self.release(decision.symbol)
                if self.on_error is not None:
                    self.on_error(decision.symbol, exc)
                else:
                    LOGGER.error("Exit order failed symbol=%s rule=%s: %s", decision.symbol, decision.rule, exc)
                continue
            if result.outcome == OUTCOME_THROTTLED:
                self.release(decision.symbol)
                continue
            self._bind(decision.symbol, result.local_id)
            # A dry-run fill may already have settled the order inside submit.
            self.handle_effects(result.effects)
            if self.on_effects is not None:
                self.on_effects(result.effects)
            if self.on_exit is not None:
                self.on_exit(decision, result)
            results.append(result)
        return results
