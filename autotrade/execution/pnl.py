from __future__ import annotations

import logging
import threading
from datetime import date

from autotrade.errors import DataIncompleteError
from autotrade.execution.ledger import OrderLedger
from autotrade.storage.models import DailyRealizedPnL, OrderRecord

LOGGER = logging.getLogger(__name__)


class RealizedPnLAccumulator:
    """Daily realized P&L booked from settled sells.

    The date check always runs before anything is booked, so the first pass on
    a new day starts from zero. Rolling the date only resets the running total;
    order records are left alone.
    """

    def __init__(self, ledger: OrderLedger, state: DailyRealizedPnL | None = None):
        self.ledger = ledger
        self._state = state or DailyRealizedPnL()
        self._lock = threading.Lock()
        self._booking = threading.Lock()

    @property
    def state(self) -> DailyRealizedPnL:
        with self._lock:
            return DailyRealizedPnL(amount=self._state.amount, as_of_date=self._state.as_of_date)

    def roll_date(self, today: date) -> bool:
        with self._lock:
            if self._state.as_of_date == today:
                return False
            previous = self._state
            self._state = DailyRealizedPnL(amount=0.0, as_of_date=today)
        if previous.as_of_date is not None:
            LOGGER.info(
                "Daily realized P&L reset previous_date=%s previous_amount=%.0f new_date=%s",
                previous.as_of_date,
                previous.amount,
                today,
            )
        return True

    @staticmethod
    def _pending_amount(order: OrderRecord) -> float:
        if order.realized_pnl is None:
            raise DataIncompleteError(
                f"sell {order.local_id} {order.symbol} has no linked buy price yet"
            )
        return order.realized_pnl - (order.booked_pnl or 0.0)

    def update(self, today: date) -> float:
        """Book every settled sell not yet booked; returns the amount added."""
        with self._booking:
            self.roll_date(today)
            self.ledger.resolve_pending_pnl()
            return self._book_settled()

    def _book_settled(self) -> float:
        added = 0.0
        deferred = 0
        for order in self.ledger.settled_sells():
            try:
                amount = self._pending_amount(order)
            except DataIncompleteError as exc:
                deferred += 1
                LOGGER.debug("Realized P&L deferred: %s", exc)
                continue
            if order.booked_pnl is not None and amount == 0:
                continue
            with self._lock:
                self._state.amount += amount
            self.ledger.mark_booked(order.symbol, order.local_id, order.realized_pnl)
            added += amount
            LOGGER.info(
                "Realized P&L booked symbol=%s local_id=%s amount=%.0f fill=%.0f linked=%.0f qty=%s",
                order.symbol,
                order.local_id,
                amount,
                order.avg_fill_price or 0.0,
                order.linked_buy_price or 0.0,
                order.filled_qty,
            )
        if deferred:
            LOGGER.warning("Realized P&L incomplete for %s sell(s); retrying next pass", deferred)
        return added
