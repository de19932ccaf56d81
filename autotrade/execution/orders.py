from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from autotrade.clock import utc_now
from autotrade.data.broker_client import KiwoomClient
from autotrade.errors import BrokerAPIError, OrderOutcomeUnknown
from autotrade.execution.ledger import (
    LedgerEffect,
    OrderAcknowledged,
    OrderLedger,
    OrderRejected,
    OrderSubmitted,
    PushFill,
)
from autotrade.storage.models import FillMessage

LOGGER = logging.getLogger(__name__)

OUTCOME_ACCEPTED = "accepted"
OUTCOME_UNKNOWN = "unknown"
OUTCOME_THROTTLED = "throttled"


class OrderThrottle:
    """Global minimum spacing between order submissions.

    Priority callers (stop-loss exits) are served before ordinary waiters but
    still wait out the cooldown.
    """

    def __init__(self, cooldown_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._clock = clock
        self._cond = threading.Condition()
        self._last_sent: float | None = None
        self._priority_waiting = 0

    def _remaining(self) -> float:
        if self._last_sent is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._last_sent))

    def remaining(self) -> float:
        with self._cond:
            return self._remaining()

    def try_acquire(self, *, priority: bool = False) -> bool:
        with self._cond:
            if not priority and self._priority_waiting > 0:
                return False
            if self._remaining() > 0:
                return False
            self._last_sent = self._clock()
            return True

    def acquire(self, *, priority: bool = False, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else self._clock() + max(0.0, timeout)
        with self._cond:
            if priority:
                self._priority_waiting += 1
            try:
                while True:
                    blocked_by_priority = not priority and self._priority_waiting > 0
                    remaining = self._remaining()
                    if remaining <= 0 and not blocked_by_priority:
                        self._last_sent = self._clock()
                        return True
                    wait_for = remaining if remaining > 0 else self.cooldown_seconds or 0.05
                    if deadline is not None:
                        left = deadline - self._clock()
                        if left <= 0:
                            return False
                        wait_for = min(wait_for, left)
                    self._cond.wait(wait_for)
            finally:
                if priority:
                    self._priority_waiting -= 1
                self._cond.notify_all()


@dataclass(slots=True)
class SubmitResult:
    local_id: str | None
    broker_id: str | None
    outcome: str
    effects: list[LedgerEffect] = field(default_factory=list)


class OrderExecutor:
    def __init__(
        self,
        *,
        client: KiwoomClient | None,
        ledger: OrderLedger,
        throttle: OrderThrottle,
        dry_run: bool,
        clock: Callable[[], datetime] = utc_now,
    ):
        if not dry_run and client is None:
            raise ValueError("live mode requires a broker client")
        self.client = client
        self.ledger = ledger
        self.throttle = throttle
        self.dry_run = dry_run
        self.mode_prefix = "DRY" if dry_run else "LIVE"
        self._clock = clock

    def submit(
        self,
        *,
        symbol: str,
        side: str,
        quantity: int,
        price: float,
        is_market: bool,
        reference_price: float,
        name: str = "",
        priority: bool = False,
        metadata: dict[str, Any] | None = None,
        throttle_timeout: float | None = None,
    ) -> SubmitResult:
        """Send one order. Never retried here: a failure forfeits the attempt.

        Broker rejections propagate after the pending record is withdrawn. An
        unknown outcome keeps the record without a broker id so the next
        snapshot can settle it.
        """
        wait = throttle_timeout if throttle_timeout is not None else self.throttle.cooldown_seconds + 1.0
        if not self.throttle.acquire(priority=priority, timeout=wait):
            LOGGER.warning(
                "Order throttled symbol=%s side=%s qty=%s cooldown_left=%.1fs",
                symbol,
                side,
                quantity,
                self.throttle.remaining(),
            )
            return SubmitResult(local_id=None, broker_id=None, outcome=OUTCOME_THROTTLED)

        if not self.dry_run and self.client is None:
            raise RuntimeError(f"live {side} order for {symbol} without a broker client")
        limit_price = 0.0 if is_market else float(price)
        submitted = OrderSubmitted(
            symbol=symbol,
            side=side,
            quantity=int(quantity),
            price=limit_price,
            is_market=is_market,
            at=self._clock(),
            reference_price=float(reference_price),
            name=name,
            metadata=dict(metadata or {}),
        )
        effects = list(self.ledger.apply(submitted))
        local_id = str(submitted.local_id)

        if self.dry_run:
            broker_id = f"{self.mode_prefix}-{uuid.uuid4().hex[:10]}"
            effects.extend(self.ledger.apply(OrderAcknowledged(symbol, local_id, broker_id, self._clock())))
            fill_price = float(reference_price if is_market else price)
            # Same path as a broker push so dry runs exercise reconciliation.
            message = FillMessage(
                broker_id=broker_id,
                symbol=symbol,
                side=side,
                order_qty=int(quantity),
                order_price=limit_price,
                unfilled_qty=0,
                fill_price=fill_price,
                fill_qty=int(quantity),
                cumulative_amount=fill_price * int(quantity),
                status_text="체결",
                received_at=self._clock(),
            )
            effects.extend(self.ledger.apply(PushFill(message=message, at=self._clock())))
            LOGGER.info(
                "DRY-RUN: %s %s qty=%s price=%.0f market=%s id=%s",
                side,
                symbol,
                quantity,
                fill_price,
                is_market,
                broker_id,
            )
            return SubmitResult(local_id=local_id, broker_id=broker_id, outcome=OUTCOME_ACCEPTED, effects=effects)

        try:
            broker_id = self.client.place_order(
                code=symbol,
                side=side,
                quantity=int(quantity),
                price=limit_price,
                market=is_market,
            )
        except OrderOutcomeUnknown as exc:
            LOGGER.warning(
                "Order outcome unknown symbol=%s side=%s qty=%s local_id=%s: %s",
                symbol,
                side,
                quantity,
                local_id,
                exc,
            )
            return SubmitResult(local_id=local_id, broker_id=None, outcome=OUTCOME_UNKNOWN, effects=effects)
        except BrokerAPIError as exc:
            self.ledger.apply(OrderRejected(symbol, local_id, str(exc), self._clock()))
            raise
        effects.extend(self.ledger.apply(OrderAcknowledged(symbol, local_id, broker_id, self._clock())))
        LOGGER.info(
            "Placed %s %s qty=%s price=%.0f market=%s broker_id=%s local_id=%s",
            side,
            symbol,
            quantity,
            limit_price,
            is_market,
            broker_id,
            local_id,
        )
        return SubmitResult(local_id=local_id, broker_id=broker_id, outcome=OUTCOME_ACCEPTED, effects=effects)
