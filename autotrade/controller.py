from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Protocol

from autotrade.clock import trading_day, utc_now
from autotrade.config import AppConfig
from autotrade.data.broker_client import KiwoomClient
from autotrade.data.candles import Candle
from autotrade.data.quotes import WatchedSymbol, WatchList, quote_from_screening
from autotrade.errors import (
    BrokerAPIError,
    InstrumentRestrictedError,
    InsufficientFundsError,
    RateLimitError,
    TransientNetworkError,
)
from autotrade.execution.exit_monitor import RULE_STOP_LOSS, ExitDecision, ExitMonitor
from autotrade.execution.ledger import (
    EFFECT_INVARIANT,
    EFFECT_ORDER_FILLED,
    EFFECT_POSITION_CLOSED,
    EFFECT_POSITION_OPENED,
    EFFECT_SYNTHESIZED,
    HistorySnapshot,
    HoldingsSnapshot,
    LedgerEffect,
    OrderLedger,
    PriceMark,
    PushFill,
    Sweep,
)
from autotrade.execution.orders import OUTCOME_THROTTLED, OrderExecutor, SubmitResult
from autotrade.execution.pnl import RealizedPnLAccumulator
from autotrade.execution.sizing import order_quantity, round_to_tick
from autotrade.monitoring.alerts import AlertDispatcher, describe_order
from autotrade.storage.journal import Journal
from autotrade.storage.models import SIDE_BUY, SIDE_SELL, FillMessage, QuoteTick
from autotrade.strategy.contracts import StrategyConfig
from autotrade.strategy.risk import RiskEngine
from autotrade.strategy.router import StrategyRouter

LOGGER = logging.getLogger(__name__)

_RESUBSCRIBE_KINDS = frozenset({EFFECT_POSITION_OPENED, EFFECT_POSITION_CLOSED})


class SubscriptionSink(Protocol):
    def set_subscriptions(self, codes: list[str] | set[str]) -> tuple[set[str], set[str]]: ...


@dataclass(slots=True)
class CycleSummary:
    screened: int = 0
    evaluated: int = 0
    signals: int = 0
    submitted: int = 0
    blockers: dict[str, int] = field(default_factory=dict)

    def block(self, reason: str) -> None:
        self.blockers[reason] = self.blockers.get(reason, 0) + 1


class TradingController:
    """Owns the decision cycle, the exit monitor, and snapshot reconciliation.

    Every broker failure is turned into a log line and a skip here; nothing
    raised by the client escapes a loop body.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        client: KiwoomClient | None,
        ledger: OrderLedger,
        executor: OrderExecutor,
        journal: Journal | None,
        alerts: AlertDispatcher,
        account: str,
        stop_event: threading.Event | None = None,
        router: StrategyRouter | None = None,
        watchlist: WatchList | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.client = client
        self.ledger = ledger
        self.executor = executor
        self.journal = journal
        self.alerts = alerts
        self.account = account
        self.stop_event = stop_event or threading.Event()
        self.trading_enabled = threading.Event()
        self.trading_enabled.set()
        self.router = router or StrategyRouter()
        self.watchlist = watchlist or WatchList()
        self.risk = RiskEngine(config.trading, config.timezone)
        self.pnl = RealizedPnLAccumulator(ledger)
        self.exit_monitor = ExitMonitor(
            ledger=ledger,
            executor=executor,
            config=config.exit,
            timezone_name=config.timezone,
            on_effects=self.handle_effects,
            on_error=self._on_exit_error,
            on_exit=self._on_exit_submitted,
        )
        self.stream: SubscriptionSink | None = None
        self._clock = clock
        self._restricted: dict[str, str] = {}
        self._restricted_day: date | None = None
        self._restricted_lock = threading.Lock()
        self._backoff = 1.0
        self._backoff_lock = threading.Lock()
        self._rate_limit_hits = 0
        self._submission_errors = 0
        self._dirty = False
        self._dirty_lock = threading.Lock()
        self._last_persist = time.monotonic()
        self.cycles = 0

    # ---------------------------------------------------------------- state

    def should_continue(self) -> bool:
        return self.trading_enabled.is_set() and not self.stop_event.is_set()

    def restore(self) -> None:
        if self.journal is None:
            return
        state = self.journal.load_state(self.account)
        self.ledger.restore(state.orders, state.positions)
        self.pnl = RealizedPnLAccumulator(self.ledger, state.daily_pnl)
        LOGGER.info(
            "Restored state account=%s orders=%d positions=%d daily_pnl=%.0f as_of=%s",
            self.account,
            len(state.orders),
            len(state.positions),
            state.daily_pnl.amount,
            state.daily_pnl.as_of_date,
        )
        self._load_restricted(trading_day(self._clock(), self.config.timezone))

    def _load_restricted(self, day: date) -> None:
        with self._restricted_lock:
            if self._restricted_day == day:
                return
            self._restricted_day = day
            self._restricted = self.journal.load_restricted(self.account, day) if self.journal is not None else {}
        if self._restricted:
            LOGGER.info("Restricted symbols for %s: %s", day, ",".join(sorted(self._restricted)))

    def restricted(self) -> dict[str, str]:
        with self._restricted_lock:
            return dict(self._restricted)

    def restrict(self, code: str, reason: str, now: datetime) -> None:
        day = trading_day(now, self.config.timezone)
        self._load_restricted(day)
        with self._restricted_lock:
            self._restricted[code] = reason
        if self.journal is not None:
            self.journal.add_restricted(self.account, day, code, reason, now)

    def persist(self, now: datetime | None = None) -> None:
        if self.journal is None:
            return
        moment = now or self._clock()
        with self._dirty_lock:
            self._dirty = False
        self.journal.save_state(
            self.account,
            orders=self.ledger.orders(),
            positions=self.ledger.positions(),
            daily_pnl=self.pnl.state,
            saved_at=moment,
        )
        self._last_persist = time.monotonic()

    def _persist_if_needed(self, now: datetime) -> None:
        with self._dirty_lock:
            dirty = self._dirty
        overdue = (time.monotonic() - self._last_persist) >= self.config.execution.persist_interval_seconds
        if dirty or overdue:
            self.persist(now)

    # ---------------------------------------------------------------- backoff

    @property
    def backoff_multiplier(self) -> float:
        with self._backoff_lock:
            return self._backoff

    def _on_rate_limit(self, code: str, context: str, exc: Exception) -> None:
        execution = self.config.execution
        with self._backoff_lock:
            self._backoff = min(execution.rate_limit_backoff_max, self._backoff * execution.rate_limit_backoff_factor)
            multiplier = self._backoff
            self._rate_limit_hits += 1
        LOGGER.warning(
            "Rate limited during %s symbol=%s; skipping, backoff x%.1f: %s",
            context,
            code,
            multiplier,
            exc,
        )

    def rate_limit_hits(self) -> int:
        with self._backoff_lock:
            return self._rate_limit_hits

    def _decay_backoff(self) -> None:
        with self._backoff_lock:
            self._backoff = max(1.0, self._backoff / self.config.execution.rate_limit_backoff_factor)

    def decision_interval(self) -> float:
        return self.config.execution.decision_interval_seconds * self.backoff_multiplier

    def snapshot_interval(self) -> float:
        return self.config.execution.snapshot_interval_seconds * self.backoff_multiplier

    # ---------------------------------------------------------------- effects

    def handle_effects(self, effects: list[LedgerEffect]) -> None:
        """React to ledger changes; re-applied events yield no effects and stay silent."""
        if not effects:
            return
        with self._dirty_lock:
            self._dirty = True
        self.exit_monitor.handle_effects(effects)
        resubscribe = False
        for effect in effects:
            if effect.kind in _RESUBSCRIBE_KINDS:
                resubscribe = True
            if effect.kind == EFFECT_ORDER_FILLED:
                realized = effect.detail.get("realized_pnl")
                self.alerts.send(
                    event="ORDER_FILLED",
                    message=describe_order(
                        effect.symbol,
                        effect.side,
                        effect.detail.get("quantity"),
                        effect.detail.get("avg_fill_price"),
                    ),
                    context={"realized": round(float(realized))} if realized is not None else None,
                    dedupe_key=f"fill-{effect.symbol}-{effect.local_id}",
                )
            elif effect.kind == EFFECT_SYNTHESIZED:
                LOGGER.warning(
                    "Synthesized %s order from holdings symbol=%s qty=%s price=%.0f",
                    effect.side,
                    effect.symbol,
                    effect.detail.get("quantity"),
                    effect.detail.get("price", 0.0),
                )
            elif effect.kind == EFFECT_INVARIANT:
                self.alerts.send(
                    event="LEDGER_INVARIANT_VIOLATION",
                    level="critical",
                    message=str(effect.detail.get("error")),
                    context={"symbol": effect.symbol, "local_id": effect.local_id},
                    dedupe_key=f"invariant-{effect.symbol}-{effect.local_id}",
                )
        if resubscribe:
            self.refresh_subscriptions()

    def subscription_codes(self) -> set[str]:
        codes = set(self.watchlist.codes())
        codes.update(position.symbol for position in self.ledger.positions())
        return codes

    def refresh_subscriptions(self) -> None:
        if self.stream is None:
            return
        self.stream.set_subscriptions(self.subscription_codes())

    # ---------------------------------------------------------------- stream

    def on_tick(self, tick: QuoteTick) -> None:
        self.watchlist.apply_tick(
            tick.symbol,
            price=tick.price,
            volume=tick.volume,
            open_price=tick.open_price,
            high_price=tick.high_price,
            updated_at=tick.received_at,
        )
        self.ledger.apply(PriceMark(tick.symbol, tick.price, tick.received_at))

    def on_fill(self, message: FillMessage) -> None:
        effects = self.ledger.apply(PushFill(message=message, at=message.received_at))
        if not effects:
            return
        self.handle_effects(effects)
        now = self._clock()
        self.pnl.update(trading_day(now, self.config.timezone))
        self.persist(now)

    # ---------------------------------------------------------------- snapshot

    def run_snapshot_cycle(self, now: datetime | None = None) -> list[LedgerEffect]:
        """Order history first, then holdings, then the timeout sweep.

        Holdings are only reconciled after a successful history merge; merging
        holdings against a stale order list would synthesize phantom orders.
        """
        moment = now or self._clock()
        effects: list[LedgerEffect] = []
        if self.client is not None:
            history_ok = False
            try:
                effects.extend(self.ledger.apply(HistorySnapshot(self.client.get_order_history(moment), moment)))
                history_ok = True
            except RateLimitError as exc:
                self._on_rate_limit("-", "order history", exc)
            except BrokerAPIError as exc:
                LOGGER.warning("Order history unavailable; holdings reconciliation skipped: %s", exc)
            if history_ok:
                try:
                    effects.extend(self.ledger.apply(HoldingsSnapshot(self.client.get_balance(), moment)))
                except RateLimitError as exc:
                    self._on_rate_limit("-", "balance", exc)
                except BrokerAPIError as exc:
                    LOGGER.warning("Balance unavailable: %s", exc)
        effects.extend(self.ledger.apply(Sweep(moment)))
        self.handle_effects(effects)
        self.pnl.update(trading_day(moment, self.config.timezone))
        self._persist_if_needed(moment)
        return effects

    # ---------------------------------------------------------------- exits

    def run_exit_cycle(self, now: datetime | None = None) -> list[SubmitResult]:
        return self.exit_monitor.run_once(now or self._clock(), should_continue=lambda: not self.stop_event.is_set())

    def _on_exit_submitted(self, decision: ExitDecision, result: SubmitResult) -> None:
        if decision.rule != RULE_STOP_LOSS:
            return
        self.alerts.send(
            event="STOP_LOSS_EXIT",
            level="warning",
            message=describe_order(decision.symbol, SIDE_SELL, decision.quantity),
            context={"pnl_pct": decision.pnl_pct, "peak_pct": decision.peak_pnl_pct, "outcome": result.outcome},
            dedupe_key=f"stop-loss-{decision.symbol}-{result.local_id}",
        )

    def _on_exit_error(self, code: str, exc: BrokerAPIError) -> None:
        if isinstance(exc, RateLimitError):
            self._on_rate_limit(code, "exit order", exc)
            return
        LOGGER.error("Exit order failed symbol=%s: %s", code, exc)
        self.alerts.send(
            event="EXIT_ORDER_FAILED",
            level="error",
            message=str(exc),
            context={"symbol": code},
            dedupe_key=f"exit-failed-{code}",
        )

    # ---------------------------------------------------------------- decisions

    def screen(self, now: datetime) -> list[str]:
        if self.client is None:
            return self.watchlist.codes()
        rows = self.client.search(self.config.trading.condition_ids)
        quotes = [quote_from_screening(row) for row in rows]
        quotes = [quote for quote in quotes if quote.code and quote.price > 0]
        quotes = quotes[: self.config.trading.max_candidates_per_cycle]
        codes = self.watchlist.replace(quotes, now)
        self.refresh_subscriptions()
        return codes

    def fetch_candles(self, code: str, required: int) -> list[Candle]:
        """Chart history, or an empty list when it is unavailable."""
        if self.client is None or required <= 0:
            return []
        execution = self.config.execution
        try:
            return self.client.get_candles(code, execution.candle_period, max(required, execution.candle_count))
        except RateLimitError as exc:
            self._on_rate_limit(code, "candles", exc)
        except BrokerAPIError as exc:
            LOGGER.warning("Candles unavailable symbol=%s; evaluating without chart: %s", code, exc)
        return []

    def run_decision_cycle(self, now: datetime | None = None) -> CycleSummary:
        moment = now or self._clock()
        self.cycles += 1
        summary = CycleSummary()
        hits_before = self.rate_limit_hits()
        self._load_restricted(trading_day(moment, self.config.timezone))
        if not self.risk.in_trading_window(moment):
            LOGGER.debug("Outside trading window; decision cycle idle")
            summary.block("OUTSIDE_TRADING_WINDOW")
            return summary
        try:
            codes = self.screen(moment)
        except RateLimitError as exc:
            self._on_rate_limit("-", "screening", exc)
            codes = self.watchlist.codes()
        except BrokerAPIError as exc:
            LOGGER.warning("Screening failed; keeping previous watch-list: %s", exc)
            codes = self.watchlist.codes()
        summary.screened = len(codes)

        strategy_config = StrategyConfig.from_app_config(self.config)
        for code in codes:
            if not self.should_continue():
                LOGGER.info("Trading disabled; decision cycle stopped before %s", code)
                break
            item = self.watchlist.get(code)
            if item is None:
                continue
            self._process_symbol(item, strategy_config, moment, summary)
        if self.rate_limit_hits() == hits_before:
            self._decay_backoff()
        if summary.blockers:
            LOGGER.debug("Cycle blockers: %s", summary.blockers)
        return summary

    def _process_symbol(
        self,
        item: WatchedSymbol,
        strategy_config: StrategyConfig,
        now: datetime,
        summary: CycleSummary,
    ) -> str:
        code = item.code
        name = item.quote.name
        check = self.risk.can_open_new_trade(
            code=code,
            name=name,
            now=now,
            ledger=self.ledger,
            restricted=self.restricted(),
        )
        if not check.allowed:
            for reason in check.reason_codes:
                summary.block(reason)
            LOGGER.debug("Buy gated symbol=%s reasons=%s context=%s", code, check.reason_codes, check.metadata)
            return "gated"

        candles = self.fetch_candles(code, strategy_config.required_candles)
        summary.evaluated += 1
        decision = self.router.evaluate(item, candles, strategy_config, now)
        if not decision.buy:
            summary.block("NO_SIGNAL")
            return "no_signal"
        summary.signals += 1

        price = item.quote.price
        market = self.config.trading.buy_order_type == "market"
        order_price = price if market else float(round_to_tick(price))
        quantity = order_quantity(
            investment=self.config.trading.investment_per_symbol,
            price=order_price,
            fee_rate=self.config.trading.fee_rate,
        )
        if quantity <= 0:
            summary.block("QUANTITY_ZERO")
            LOGGER.info(
                "Buy skipped symbol=%s reason=QUANTITY_ZERO price=%.0f investment=%.0f",
                code,
                order_price,
                self.config.trading.investment_per_symbol,
            )
            return "sized_out"

        LOGGER.info(
            "Buy signal symbol=%s name=%s strategy=%s price=%.0f qty=%s reason=%s",
            code,
            name,
            decision.strategy,
            order_price,
            quantity,
            decision.reason,
        )
        try:
            result = self.executor.submit(
                symbol=code,
                side=SIDE_BUY,
                quantity=quantity,
                price=order_price,
                is_market=market,
                reference_price=price,
                name=name,
                metadata={"strategy": decision.strategy, "reason": decision.reason},
            )
        except RateLimitError as exc:
            self._on_rate_limit(code, "buy order", exc)
            return "rate_limited"
        except InsufficientFundsError as exc:
            LOGGER.warning("Buy skipped symbol=%s reason=INSUFFICIENT_FUNDS qty=%s price=%.0f: %s", code, quantity, order_price, exc)
            return "rejected"
        except InstrumentRestrictedError as exc:
            LOGGER.warning("Symbol restricted for the session symbol=%s: %s", code, exc)
            self.restrict(code, f"restricted: {exc}", now)
            return "rejected"
        except TransientNetworkError as exc:
            # Symbol stays eligible next cycle.
            LOGGER.warning("Buy not sent symbol=%s qty=%s price=%.0f: %s", code, quantity, order_price, exc)
            self._record_submission_error(code, exc)
            return "transient"
        except BrokerAPIError as exc:
            LOGGER.error("Buy rejected symbol=%s qty=%s price=%.0f: %s", code, quantity, order_price, exc)
            self.restrict(code, f"rejected: {exc}", now)
            self._record_submission_error(code, exc)
            return "rejected"

        if result.outcome == OUTCOME_THROTTLED:
            summary.block("THROTTLED")
            return "throttled"
        self._submission_errors = 0
        summary.submitted += 1
        self.watchlist.remove(code)
        self.handle_effects(result.effects)
        self.refresh_subscriptions()
        return "submitted"

    def _record_submission_error(self, code: str, exc: BrokerAPIError) -> None:
        self._submission_errors += 1
        threshold = self.config.monitoring.submission_error_alert_threshold
        if self._submission_errors >= threshold:
            LOGGER.error("Repeated order submission failures count=%d last_symbol=%s", self._submission_errors, code)
            self.alerts.send(
                event="REPEATED_SUBMISSION_ERRORS",
                level="error",
                message=str(exc),
                context={"count": self._submission_errors, "symbol": code},
                dedupe_key="submission-errors",
            )

    # ---------------------------------------------------------------- loops

    def heartbeat(self) -> None:
        positions = self.ledger.positions()
        pending = self.ledger.open_orders()
        metrics = self.client.metrics_snapshot() if self.client is not None else {}
        LOGGER.info(
            "Heartbeat cycles=%d holdings=%d pending_orders=%d watch=%d daily_pnl=%.0f backoff=x%.1f api_requests=%d retries=%d http429=%d",
            self.cycles,
            len(positions),
            len(pending),
            len(self.watchlist.codes()),
            self.pnl.state.amount,
            self.backoff_multiplier,
            metrics.get("total_requests", 0),
            metrics.get("total_retries", 0),
            metrics.get("http_429_count", 0),
        )

    def _loop(self, name: str, body: Callable[[], object], interval: Callable[[], float]) -> None:
        LOGGER.info("%s loop started", name)
        while not self.stop_event.is_set():
            try:
                body()
            except BrokerAPIError as exc:
                LOGGER.error("%s loop broker error: %s", name, exc)
            except Exception:
                LOGGER.exception("Unhandled %s loop error", name)
                self.alerts.send(
                    event="UNHANDLED_RUNTIME_ERROR",
                    level="error",
                    message=f"Unhandled exception in {name} loop",
                    dedupe_key=f"runtime-{name}",
                )
            self.stop_event.wait(interval())
        LOGGER.info("%s loop stopped", name)

    def decision_loop(self) -> None:
        self._loop("decision", self.run_decision_cycle, self.decision_interval)

    def exit_loop(self) -> None:
        self._loop("exit", self.run_exit_cycle, lambda: self.config.execution.exit_monitor_interval_seconds)

    def snapshot_loop(self) -> None:
        last_heartbeat = time.monotonic()

        def body() -> None:
            nonlocal last_heartbeat
            self.run_snapshot_cycle()
            mono = time.monotonic()
            if (mono - last_heartbeat) >= self.config.execution.heartbeat_seconds:
                self.heartbeat()
                last_heartbeat = mono

        self._loop("snapshot", body, self.snapshot_interval)

    def start(self) -> list[threading.Thread]:
        threads = [
            threading.Thread(target=self.snapshot_loop, name="snapshot", daemon=True),
            threading.Thread(target=self.exit_loop, name="exit-monitor", daemon=True),
            threading.Thread(target=self.decision_loop, name="decision", daemon=True),
        ]
        for thread in threads:
            thread.start()
        return threads

