from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Union

from autotrade.clock import trading_day
from autotrade.errors import InvariantViolation
from autotrade.storage.models import (
    SIDE_BUY,
    SIDE_SELL,
    STATUS_CANCELLED,
    STATUS_FILLED,
    STATUS_PARTIALLY_FILLED,
    PUSH_KIND_CANCELLATION,
    PUSH_KIND_EXECUTION,
    STATUS_SUBMITTED,
    BrokerOrder,
    FillMessage,
    Holding,
    OrderRecord,
    PositionRecord,
)

LOGGER = logging.getLogger(__name__)

_PRICE_EPSILON = 1e-6


@dataclass(slots=True)
class OrderSubmitted:
    symbol: str
    side: str
    quantity: int
    price: float
    is_market: bool
    at: datetime
    reference_price: float = 0.0
    name: str = ""
    local_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OrderAcknowledged:
    symbol: str
    local_id: str
    broker_id: str
    at: datetime


@dataclass(slots=True)
class OrderRejected:
    symbol: str
    local_id: str
    reason: str
    at: datetime


@dataclass(slots=True)
class PushFill:
    message: FillMessage
    at: datetime


@dataclass(slots=True)
class HistorySnapshot:
    orders: list[BrokerOrder]
    at: datetime


@dataclass(slots=True)
class HoldingsSnapshot:
    holdings: list[Holding]
    at: datetime


@dataclass(slots=True)
class PriceMark:
    symbol: str
    price: float
    at: datetime


@dataclass(slots=True)
class Sweep:
    at: datetime


LedgerEvent = Union[
    OrderSubmitted,
    OrderAcknowledged,
    OrderRejected,
    PushFill,
    HistorySnapshot,
    HoldingsSnapshot,
    PriceMark,
    Sweep,
]

EFFECT_ORDER_RECORDED = "order_recorded"
EFFECT_ORDER_REJECTED = "order_rejected"
EFFECT_FILL = "fill"
EFFECT_ORDER_FILLED = "order_filled"
EFFECT_ORDER_CANCELLED = "order_cancelled"
EFFECT_ORDER_REOPENED = "order_reopened"
EFFECT_ORDER_PURGED = "order_purged"
EFFECT_POSITION_OPENED = "position_opened"
EFFECT_POSITION_CLOSED = "position_closed"
EFFECT_SYNTHESIZED = "synthesized"
EFFECT_LINK_RESOLVED = "link_resolved"
EFFECT_INVARIANT = "invariant_violation"


@dataclass(slots=True)
class LedgerEffect:
    kind: str
    symbol: str
    local_id: str | None = None
    side: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class _SymbolBook:
    symbol: str
    orders: list[OrderRecord] = field(default_factory=list)
    position: PositionRecord | None = None
    last_push_at: datetime | None = None
    lock: threading.RLock = field(default_factory=threading.RLock)


def _copy_order(order: OrderRecord) -> OrderRecord:
    return replace(order, metadata=dict(order.metadata))


def _same_price(left: float, right: float) -> bool:
    return abs(float(left) - float(right)) <= _PRICE_EPSILON


class OrderLedger:
    """Single owner of order and position records.

    Every change arrives as an event through ``apply``. Events are appended to
    the log, then reduced under the lock of the symbol they touch, so push
    fills and snapshots for one symbol serialize while other symbols proceed.
    ``apply`` returns the effects the reduction produced; an empty list means
    the event changed nothing (duplicates, stale snapshots, price marks).
    """

    def __init__(
        self,
        *,
        order_timeout_seconds: float = 30.0,
        cancelled_purge_seconds: float = 20.0,
        snapshot_push_grace_seconds: float = 10.0,
        dedupe_bucket_seconds: int = 60,
        timezone_name: str = "Asia/Seoul",
        max_logged_events: int = 50_000,
    ):
        self.order_timeout_seconds = float(order_timeout_seconds)
        self.cancelled_purge_seconds = float(cancelled_purge_seconds)
        self.snapshot_push_grace_seconds = float(snapshot_push_grace_seconds)
        self.dedupe_bucket_seconds = max(1, int(dedupe_bucket_seconds))
        self.timezone_name = timezone_name
        self._books: dict[str, _SymbolBook] = {}
        self._guard = threading.Lock()
        self._log: deque[tuple[int, LedgerEvent]] = deque(maxlen=max_logged_events)
        self._log_lock = threading.Lock()
        self._seq = itertools.count(1)
        self._local_ids = itertools.count(1)

    # ------------------------------------------------------------------ events

    def apply(self, event: LedgerEvent) -> list[LedgerEffect]:
        if isinstance(event, OrderSubmitted) and event.local_id is None:
            event.local_id = self._next_local_id()
        with self._log_lock:
            self._log.append((next(self._seq), event))
        if isinstance(event, OrderSubmitted):
            return self._apply_submitted(event)
        if isinstance(event, OrderAcknowledged):
            return self._apply_acknowledged(event)
        if isinstance(event, OrderRejected):
            return self._apply_rejected(event)
        if isinstance(event, PushFill):
            return self._apply_push(event)
        if isinstance(event, HistorySnapshot):
            return self._apply_history(event)
        if isinstance(event, HoldingsSnapshot):
            return self._apply_holdings(event)
        if isinstance(event, PriceMark):
            return self._apply_mark(event)
        if isinstance(event, Sweep):
            return self._apply_sweep(event)
        raise TypeError(f"Unsupported ledger event {type(event).__name__}")

    def events(self) -> list[tuple[int, LedgerEvent]]:
        with self._log_lock:
            return list(self._log)

    def _next_local_id(self) -> str:
        return str(next(self._local_ids))

    def _book(self, symbol: str) -> _SymbolBook:
        with self._guard:
            book = self._books.get(symbol)
            if book is None:
                book = _SymbolBook(symbol=symbol)
                self._books[symbol] = book
            return book

    def _all_books(self) -> list[_SymbolBook]:
        with self._guard:
            return list(self._books.values())

    def _apply_submitted(self, event: OrderSubmitted) -> list[LedgerEffect]:
        book = self._book(event.symbol)
        with book.lock:
            linked = None
            if event.side == SIDE_SELL and book.position is not None:
                linked = book.position.avg_cost
            order = OrderRecord(
                local_id=str(event.local_id),
                broker_id=None,
                symbol=event.symbol,
                side=event.side,
                quantity=int(event.quantity),
                price=float(event.price),
                is_market=bool(event.is_market),
                status=STATUS_SUBMITTED,
                submitted_at=event.at,
                updated_at=event.at,
                reference_price=float(event.reference_price or event.price),
                linked_buy_price=linked,
                name=event.name,
                metadata=dict(event.metadata),
            )
            book.orders.append(order)
            return [
                LedgerEffect(
                    EFFECT_ORDER_RECORDED,
                    event.symbol,
                    order.local_id,
                    order.side,
                    {"quantity": order.quantity, "price": order.price},
                )
            ]

    def _apply_acknowledged(self, event: OrderAcknowledged) -> list[LedgerEffect]:
        book = self._book(event.symbol)
        with book.lock:
            order = self._by_local_id(book, event.local_id)
            if order is None:
                LOGGER.warning(
                    "Ack for unknown order symbol=%s local_id=%s broker_id=%s",
                    event.symbol,
                    event.local_id,
                    event.broker_id,
                )
                return []
            if order.broker_id == event.broker_id:
                return []
            duplicate = self._by_broker_id(book, event.broker_id)
            try:
                if order.broker_id is not None:
                    raise InvariantViolation(
                        f"order {order.local_id} already has broker id {order.broker_id}, ack says {event.broker_id}"
                    )
                if duplicate is not None and duplicate.quantity != order.quantity:
                    raise InvariantViolation(
                        f"broker id {event.broker_id} seen with qty {duplicate.quantity}, submitted qty {order.quantity}"
                    )
            except InvariantViolation as exc:
                return [self._violation(book.symbol, order, exc)]
            order.broker_id = event.broker_id
            order.updated_at = event.at
            effects: list[LedgerEffect] = []
            if duplicate is not None:
                # A push for this order arrived before the submit call returned.
                book.orders.remove(duplicate)
                order.filled_qty = duplicate.filled_qty
                order.avg_fill_price = duplicate.avg_fill_price
                order.status = duplicate.status
                order.cancelled_at = duplicate.cancelled_at
                if order.linked_buy_price is None:
                    order.linked_buy_price = duplicate.linked_buy_price
                self._refresh_pnl(order)
                effects.append(
                    LedgerEffect(
                        EFFECT_ORDER_RECORDED,
                        book.symbol,
                        order.local_id,
                        order.side,
                        {"merged_local_id": duplicate.local_id},
                    )
                )
            return effects

    def _apply_rejected(self, event: OrderRejected) -> list[LedgerEffect]:
        book = self._book(event.symbol)
        with book.lock:
            order = self._by_local_id(book, event.local_id)
            if order is None or order.filled_qty > 0:
                return []
            book.orders.remove(order)
            return [
                LedgerEffect(
                    EFFECT_ORDER_REJECTED,
                    book.symbol,
                    order.local_id,
                    order.side,
                    {"reason": event.reason},
                )
            ]

    def _apply_push(self, event: PushFill) -> list[LedgerEffect]:
        msg = event.message
        if msg.kind == PUSH_KIND_CANCELLATION:
            return self._apply_push_cancel(event)
        book = self._book(msg.symbol)
        with book.lock:
            if msg.kind == PUSH_KIND_EXECUTION:
                book.last_push_at = event.at
            effects: list[LedgerEffect] = []
            seen_at = msg.received_at or event.at
            order = self._match(book, msg.broker_id, msg.side, msg.order_qty, msg.order_price, seen_at)
            if order is None and msg.original_broker_id and msg.kind != PUSH_KIND_EXECUTION:
                # Acceptance of a cancel/modify request; the original order carries the state.
                return effects
            if order is None:
                order = self._new_external_order(
                    book,
                    broker_id=msg.broker_id,
                    side=msg.side,
                    quantity=msg.order_qty,
                    price=msg.order_price,
                    submitted_at=seen_at,
                    origin="push",
                    reference_price=msg.fill_price or msg.order_price,
                )
                effects.append(
                    LedgerEffect(EFFECT_ORDER_RECORDED, book.symbol, order.local_id, order.side, {"origin": "push"})
                )
            try:
                self._adopt(order, msg.broker_id, msg.order_qty)
            except InvariantViolation as exc:
                return effects + [self._violation(book.symbol, order, exc)]
            new_filled = min(order.quantity, msg.filled_qty)
            if new_filled <= order.filled_qty:
                return effects
            avg_price = None
            if msg.cumulative_amount and msg.cumulative_amount > 0 and new_filled > 0:
                avg_price = msg.cumulative_amount / new_filled
            effects.extend(
                self._fill(book, order, new_filled, avg_price=avg_price, last_price=msg.fill_price, at=event.at)
            )
            return effects

    def _apply_push_cancel(self, event: PushFill) -> list[LedgerEffect]:
        """Broker-side cancel or reject: close the order without touching its fills."""
        msg = event.message
        book = self._book(msg.symbol)
        with book.lock:
            order = self._by_broker_id(book, msg.broker_id) or self._by_broker_id(book, msg.original_broker_id)
            if order is None:
                LOGGER.info(
                    "Cancel push for unknown order symbol=%s broker_id=%s original=%s status=%s",
                    msg.symbol,
                    msg.broker_id,
                    msg.original_broker_id,
                    msg.status_text,
                )
                return []
            if not order.is_open:
                return []
            order.status = STATUS_CANCELLED
            order.cancelled_at = event.at
            order.updated_at = event.at
            self._refresh_pnl(order)
            LOGGER.warning(
                "Broker cancelled order symbol=%s local_id=%s broker_id=%s side=%s filled=%s/%s status=%s",
                order.symbol,
                order.local_id,
                order.broker_id,
                order.side,
                order.filled_qty,
                order.quantity,
                msg.status_text,
            )
            return [
                LedgerEffect(
                    EFFECT_ORDER_CANCELLED,
                    book.symbol,
                    order.local_id,
                    order.side,
                    {"filled_qty": order.filled_qty, "status": msg.status_text},
                )
            ]

    def _apply_history(self, event: HistorySnapshot) -> list[LedgerEffect]:
        grouped: dict[str, list[BrokerOrder]] = {}
        for row in event.orders:
            grouped.setdefault(row.symbol, []).append(row)
        effects: list[LedgerEffect] = []
        for symbol, rows in grouped.items():
            book = self._book(symbol)
            with book.lock:
                for row in sorted(rows, key=lambda item: item.submitted_at or event.at):
                    effects.extend(self._merge_history_row(book, row, event.at))
        return effects

    def _merge_history_row(self, book: _SymbolBook, row: BrokerOrder, at: datetime) -> list[LedgerEffect]:
        submitted_at = row.submitted_at or at
        order = self._match(book, row.broker_id, row.side, row.quantity, row.price, submitted_at)
        effects: list[LedgerEffect] = []
        if order is None:
            if row.filled_qty <= 0:
                return effects
            order = self._new_external_order(
                book,
                broker_id=row.broker_id,
                side=row.side,
                quantity=row.quantity,
                price=row.price,
                submitted_at=submitted_at,
                origin="history",
                reference_price=row.avg_fill_price or row.price,
                name=row.name,
            )
            effects.append(
                LedgerEffect(EFFECT_ORDER_RECORDED, book.symbol, order.local_id, order.side, {"origin": "history"})
            )
        try:
            self._adopt(order, row.broker_id, row.quantity)
        except InvariantViolation as exc:
            return effects + [self._violation(book.symbol, order, exc)]
        reported = min(order.quantity, int(row.filled_qty))
        if reported > order.filled_qty:
            effects.extend(
                self._fill(book, order, reported, avg_price=row.avg_fill_price, last_price=None, at=at)
            )
        return effects

    def _apply_holdings(self, event: HoldingsSnapshot) -> list[LedgerEffect]:
        reported = {item.symbol: item for item in event.holdings if item.quantity >= 0}
        with self._guard:
            symbols = set(self._books) | set(reported)
        effects: list[LedgerEffect] = []
        for symbol in sorted(symbols):
            book = self._book(symbol)
            with book.lock:
                effects.extend(self._reconcile_holding(book, reported.get(symbol), event.at))
        return effects

    def _reconcile_holding(self, book: _SymbolBook, holding: Holding | None, at: datetime) -> list[LedgerEffect]:
        held = int(holding.quantity) if holding is not None else 0
        net = self._net(book)
        effects: list[LedgerEffect] = []
        if held > net:
            price = holding.avg_cost if holding is not None and holding.avg_cost > 0 else 0.0
            if price <= 0 and holding is not None:
                price = holding.current_price
            effects.extend(self._allocate(book, SIDE_BUY, held - net, price, at, name=holding.name if holding else ""))
        elif held < net:
            if book.last_push_at is not None:
                since_push = (at - book.last_push_at).total_seconds()
                if since_push < self.snapshot_push_grace_seconds:
                    LOGGER.info(
                        "Snapshot behind push symbol=%s held=%s ledger=%s since_push=%.1fs",
                        book.symbol,
                        held,
                        net,
                        since_push,
                    )
                    return effects
            price = 0.0
            if holding is not None and holding.current_price > 0:
                price = holding.current_price
            elif book.position is not None:
                price = book.position.current_price
            effects.extend(self._allocate(book, SIDE_SELL, net - held, price, at))
        if holding is not None and held > 0 and book.position is not None:
            if holding.avg_cost > 0:
                book.position.avg_cost = holding.avg_cost
            if holding.name:
                book.position.name = holding.name
            book.position.mark(holding.current_price, at)
        return effects

    def _allocate(
        self,
        book: _SymbolBook,
        side: str,
        quantity: int,
        price: float,
        at: datetime,
        name: str = "",
    ) -> list[LedgerEffect]:
        """Attribute a holdings difference to known orders, oldest open first."""
        effects: list[LedgerEffect] = []
        remaining = int(quantity)
        candidates = [
            order
            for order in book.orders
            if order.side == side and order.unfilled_qty > 0 and (order.is_open or order.status == STATUS_CANCELLED)
        ]
        candidates.sort(key=lambda order: (0 if order.is_open else 1, order.submitted_at))
        for order in candidates:
            if remaining <= 0:
                break
            take = min(remaining, order.unfilled_qty)
            effects.extend(
                self._fill(
                    book,
                    order,
                    order.filled_qty + take,
                    avg_price=None,
                    last_price=order.effective_price or price,
                    at=at,
                )
            )
            remaining -= take
        if remaining > 0:
            effects.extend(self._synthesize(book, side, remaining, price, at, name=name))
        return effects

    def _synthesize(
        self,
        book: _SymbolBook,
        side: str,
        quantity: int,
        price: float,
        at: datetime,
        name: str = "",
    ) -> list[LedgerEffect]:
        metadata: dict[str, Any] = {"synthetic": True}
        if side == SIDE_SELL:
            metadata["estimated"] = True
        order = OrderRecord(
            local_id=self._next_local_id(),
            broker_id=None,
            symbol=book.symbol,
            side=side,
            quantity=int(quantity),
            price=float(price),
            is_market=False,
            status=STATUS_SUBMITTED,
            submitted_at=at,
            updated_at=at,
            reference_price=float(price),
            name=name or (book.position.name if book.position else ""),
            origin="snapshot",
            metadata=metadata,
        )
        book.orders.append(order)
        LOGGER.warning(
            "Synthesized %s symbol=%s qty=%s price=%.0f from holdings snapshot",
            side,
            book.symbol,
            quantity,
            price,
        )
        effects = [
            LedgerEffect(
                EFFECT_SYNTHESIZED,
                book.symbol,
                order.local_id,
                side,
                {"quantity": int(quantity), "price": float(price)},
            )
        ]
        effects.extend(self._fill(book, order, order.quantity, avg_price=price, last_price=price, at=at))
        return effects

    def _apply_mark(self, event: PriceMark) -> list[LedgerEffect]:
        with self._guard:
            book = self._books.get(event.symbol)
        if book is None:
            return []
        with book.lock:
            if book.position is not None:
                book.position.mark(event.price, event.at)
        return []

    def _apply_sweep(self, event: Sweep) -> list[LedgerEffect]:
        effects: list[LedgerEffect] = []
        for book in self._all_books():
            with book.lock:
                for order in list(book.orders):
                    if order.is_open:
                        age = (event.at - order.submitted_at).total_seconds()
                        if age < self.order_timeout_seconds:
                            continue
                        order.status = STATUS_CANCELLED
                        order.cancelled_at = event.at
                        order.updated_at = event.at
                        self._refresh_pnl(order)
                        LOGGER.warning(
                            "Order timed out symbol=%s local_id=%s broker_id=%s side=%s filled=%s/%s age=%.1fs",
                            order.symbol,
                            order.local_id,
                            order.broker_id,
                            order.side,
                            order.filled_qty,
                            order.quantity,
                            age,
                        )
                        effects.append(
                            LedgerEffect(
                                EFFECT_ORDER_CANCELLED,
                                book.symbol,
                                order.local_id,
                                order.side,
                                {"filled_qty": order.filled_qty, "age_seconds": age},
                            )
                        )
                    elif order.status == STATUS_CANCELLED and order.filled_qty == 0 and order.cancelled_at is not None:
                        # Partially filled cancels stay: their shares are part of the position.
                        waited = (event.at - order.cancelled_at).total_seconds()
                        if waited < self.cancelled_purge_seconds:
                            continue
                        book.orders.remove(order)
                        effects.append(
                            LedgerEffect(EFFECT_ORDER_PURGED, book.symbol, order.local_id, order.side)
                        )
        return effects

    # ----------------------------------------------------------------- reducer

    def _by_local_id(self, book: _SymbolBook, local_id: str) -> OrderRecord | None:
        for order in book.orders:
            if order.local_id == local_id:
                return order
        return None

    def _by_broker_id(self, book: _SymbolBook, broker_id: str | None) -> OrderRecord | None:
        if not broker_id:
            return None
        for order in book.orders:
            if order.broker_id == broker_id:
                return order
        return None

    def _bucket(self, at: datetime) -> int:
        return int(at.timestamp() // self.dedupe_bucket_seconds)

    def _match(
        self,
        book: _SymbolBook,
        broker_id: str | None,
        side: str,
        quantity: int,
        price: float,
        submitted_at: datetime,
    ) -> OrderRecord | None:
        """Broker id first, then (side, qty, price, time bucket) among orders without one."""
        found = self._by_broker_id(book, broker_id)
        if found is not None:
            return found
        bucket = self._bucket(submitted_at)
        candidates = [
            order
            for order in book.orders
            if order.broker_id is None
            and order.origin == "local"
            and order.side == side
            and order.quantity == int(quantity)
            and _same_price(order.price, price)
            and abs(self._bucket(order.submitted_at) - bucket) <= 1
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda order: order.submitted_at)
        return candidates[0]

    def _adopt(self, order: OrderRecord, broker_id: str | None, quantity: int) -> None:
        if order.quantity != int(quantity):
            raise InvariantViolation(
                f"broker id {broker_id} reports qty {quantity}, ledger order {order.local_id} has {order.quantity}"
            )
        if broker_id and order.broker_id is None:
            order.broker_id = broker_id

    def _new_external_order(
        self,
        book: _SymbolBook,
        *,
        broker_id: str | None,
        side: str,
        quantity: int,
        price: float,
        submitted_at: datetime,
        origin: str,
        reference_price: float | None = None,
        name: str = "",
    ) -> OrderRecord:
        order = OrderRecord(
            local_id=self._next_local_id(),
            broker_id=broker_id or None,
            symbol=book.symbol,
            side=side,
            quantity=int(quantity),
            price=float(price),
            is_market=price <= 0,
            status=STATUS_SUBMITTED,
            submitted_at=submitted_at,
            updated_at=submitted_at,
            reference_price=float(reference_price or price or 0.0),
            name=name or (book.position.name if book.position else ""),
            origin=origin,
        )
        if side == SIDE_SELL and book.position is not None:
            order.linked_buy_price = book.position.avg_cost
        book.orders.append(order)
        return order

    def _fill(
        self,
        book: _SymbolBook,
        order: OrderRecord,
        new_filled: int,
        *,
        avg_price: float | None,
        last_price: float | None,
        at: datetime,
    ) -> list[LedgerEffect]:
        old_filled = order.filled_qty
        delta = int(new_filled) - old_filled
        if delta <= 0:
            return []
        old_value = (order.avg_fill_price or 0.0) * old_filled
        if avg_price is not None and avg_price > 0:
            delta_price = (avg_price * new_filled - old_value) / delta
            if delta_price <= 0:
                delta_price = avg_price
        else:
            delta_price = last_price if last_price and last_price > 0 else order.effective_price
            avg_price = (old_value + delta_price * delta) / new_filled
        if order.side == SIDE_SELL and order.linked_buy_price is None and book.position is not None:
            order.linked_buy_price = book.position.avg_cost
        was_cancelled = order.status == STATUS_CANCELLED
        order.filled_qty = int(new_filled)
        order.avg_fill_price = avg_price
        order.updated_at = at
        order.status = STATUS_FILLED if order.unfilled_qty == 0 else STATUS_PARTIALLY_FILLED
        effects: list[LedgerEffect] = []
        if was_cancelled:
            order.cancelled_at = None
            LOGGER.warning(
                "Late fill reopened cancelled order symbol=%s local_id=%s broker_id=%s filled=%s/%s",
                order.symbol,
                order.local_id,
                order.broker_id,
                order.filled_qty,
                order.quantity,
            )
            effects.append(LedgerEffect(EFFECT_ORDER_REOPENED, book.symbol, order.local_id, order.side))
        self._refresh_pnl(order)
        effects.append(
            LedgerEffect(
                EFFECT_FILL,
                book.symbol,
                order.local_id,
                order.side,
                {
                    "delta": delta,
                    "price": delta_price,
                    "filled_qty": order.filled_qty,
                    "quantity": order.quantity,
                },
            )
        )
        effects.extend(self._sync_position(book, order.side, delta, delta_price, at, order.name))
        if order.status == STATUS_FILLED:
            effects.append(
                LedgerEffect(
                    EFFECT_ORDER_FILLED,
                    book.symbol,
                    order.local_id,
                    order.side,
                    {
                        "quantity": order.quantity,
                        "avg_fill_price": order.avg_fill_price,
                        "realized_pnl": order.realized_pnl,
                    },
                )
            )
        return effects

    def _net(self, book: _SymbolBook) -> int:
        net = 0
        for order in book.orders:
            if order.side == SIDE_BUY:
                net += order.filled_qty
            else:
                net -= order.filled_qty
        return net

    def _sync_position(
        self,
        book: _SymbolBook,
        side: str,
        delta: int,
        price: float,
        at: datetime,
        name: str,
    ) -> list[LedgerEffect]:
        net = self._net(book)
        position = book.position
        if net <= 0:
            if net < 0:
                LOGGER.warning("Net filled below zero symbol=%s net=%s", book.symbol, net)
            if position is None:
                return []
            book.position = None
            return [
                LedgerEffect(
                    EFFECT_POSITION_CLOSED,
                    book.symbol,
                    side=side,
                    detail={"peak_pnl_pct": position.peak_pnl_pct, "avg_cost": position.avg_cost},
                )
            ]
        if position is None:
            book.position = PositionRecord(
                symbol=book.symbol,
                quantity=net,
                avg_cost=price,
                current_price=price,
                opened_at=at,
                updated_at=at,
                name=name,
            )
            return [LedgerEffect(EFFECT_POSITION_OPENED, book.symbol, side=side, detail={"quantity": net, "avg_cost": price})]
        if side == SIDE_BUY and net > 0:
            previous_qty = max(0, net - delta)
            position.avg_cost = (position.avg_cost * previous_qty + price * delta) / net
        position.quantity = net
        position.updated_at = at
        return []

    def _refresh_pnl(self, order: OrderRecord) -> None:
        if order.side != SIDE_SELL or not order.is_settled:
            return
        if order.linked_buy_price is None or order.avg_fill_price is None:
            order.realized_pnl = None
            return
        order.realized_pnl = (order.avg_fill_price - order.linked_buy_price) * order.filled_qty

    def _violation(self, symbol: str, order: OrderRecord, exc: InvariantViolation) -> LedgerEffect:
        LOGGER.critical(
            "Ledger invariant violation symbol=%s local_id=%s broker_id=%s: %s",
            symbol,
            order.local_id,
            order.broker_id,
            exc,
        )
        return LedgerEffect(EFFECT_INVARIANT, symbol, order.local_id, order.side, {"error": str(exc)})

    # ---------------------------------------------------------------- P&L hooks

    def resolve_pending_pnl(self) -> list[LedgerEffect]:
        """Fill in missing buy prices on settled sells from the symbol's filled buys."""
        effects: list[LedgerEffect] = []
        for book in self._all_books():
            with book.lock:
                for order in book.orders:
                    if order.side != SIDE_SELL or not order.is_settled or order.linked_buy_price is not None:
                        continue
                    buys = [
                        candidate
                        for candidate in book.orders
                        if candidate.side == SIDE_BUY
                        and candidate.filled_qty > 0
                        and candidate.avg_fill_price
                        and candidate.submitted_at <= order.submitted_at
                    ]
                    if not buys:
                        continue
                    buys.sort(key=lambda candidate: candidate.submitted_at)
                    order.linked_buy_price = buys[-1].avg_fill_price
                    self._refresh_pnl(order)
                    effects.append(
                        LedgerEffect(
                            EFFECT_LINK_RESOLVED,
                            book.symbol,
                            order.local_id,
                            order.side,
                            {"linked_buy_price": order.linked_buy_price},
                        )
                    )
        return effects

    def settled_sells(self) -> list[OrderRecord]:
        output: list[OrderRecord] = []
        for book in self._all_books():
            with book.lock:
                output.extend(
                    _copy_order(order)
                    for order in book.orders
                    if order.side == SIDE_SELL and order.is_settled
                )
        return output

    def mark_booked(self, symbol: str, local_id: str, amount: float) -> None:
        book = self._book(symbol)
        with book.lock:
            order = self._by_local_id(book, local_id)
            if order is not None:
                order.booked_pnl = amount

    # ----------------------------------------------------------------- queries

    def position(self, symbol: str) -> PositionRecord | None:
        with self._guard:
            book = self._books.get(symbol)
        if book is None:
            return None
        with book.lock:
            return replace(book.position) if book.position is not None else None

    def positions(self) -> list[PositionRecord]:
        output: list[PositionRecord] = []
        for book in self._all_books():
            with book.lock:
                if book.position is not None:
                    output.append(replace(book.position))
        return sorted(output, key=lambda item: item.symbol)

    def orders(self, symbol: str | None = None) -> list[OrderRecord]:
        books = self._all_books()
        output: list[OrderRecord] = []
        for book in books:
            if symbol is not None and book.symbol != symbol:
                continue
            with book.lock:
                output.extend(_copy_order(order) for order in book.orders)
        return sorted(output, key=lambda order: order.submitted_at)

    def order(self, local_id: str) -> OrderRecord | None:
        for book in self._all_books():
            with book.lock:
                found = self._by_local_id(book, local_id)
                if found is not None:
                    return _copy_order(found)
        return None

    def open_orders(self) -> list[OrderRecord]:
        return [order for order in self.orders() if order.is_open]

    def has_open_order(self, symbol: str, side: str | None = None) -> bool:
        for order in self.orders(symbol):
            if order.is_open and (side is None or order.side == side):
                return True
        return False

    def lifetime_buys(self, symbol: str) -> int:
        return sum(
            1
            for order in self.orders(symbol)
            if order.side == SIDE_BUY and (order.filled_qty > 0 or order.is_open)
        )

    def symbols_bought_on(self, day: date) -> set[str]:
        return {
            order.symbol
            for order in self.orders()
            if order.side == SIDE_BUY
            and (order.filled_qty > 0 or order.is_open)
            and trading_day(order.submitted_at, self.timezone_name) == day
        }

    def net_filled(self, symbol: str) -> int:
        with self._guard:
            book = self._books.get(symbol)
        if book is None:
            return 0
        with book.lock:
            return self._net(book)

    def totals(self, symbol: str) -> tuple[int, int]:
        bought = sold = 0
        for order in self.orders(symbol):
            if order.side == SIDE_BUY:
                bought += order.filled_qty
            else:
                sold += order.filled_qty
        return bought, sold

    # ------------------------------------------------------------- persistence

    def restore(self, orders: list[OrderRecord], positions: list[PositionRecord]) -> None:
        """Load persisted records; only valid before any event has been applied."""
        by_symbol: dict[str, list[OrderRecord]] = {}
        highest = 0
        for order in orders:
            by_symbol.setdefault(order.symbol, []).append(order)
            if order.local_id.isdigit():
                highest = max(highest, int(order.local_id))
        held = {position.symbol: position for position in positions if position.quantity > 0}
        with self._guard:
            self._books = {}
            for symbol in set(by_symbol) | set(held):
                book = _SymbolBook(symbol=symbol)
                book.orders = sorted(by_symbol.get(symbol, []), key=lambda item: item.submitted_at)
                book.position = held.get(symbol)
                self._books[symbol] = book
            self._local_ids = itertools.count(highest + 1)
        for symbol, book in list(self._books.items()):
            net = self._net(book)
            if book.position is None or book.position.quantity == net:
                continue
            LOGGER.warning(
                "Restored position differs from order totals symbol=%s position=%s orders=%s",
                symbol,
                book.position.quantity,
                net,
            )
            # Order totals win; the next holdings snapshot settles any remaining gap.
            if net > 0:
                book.position.quantity = net
            else:
                book.position = None
