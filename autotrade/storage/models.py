from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

SIDE_BUY = "buy"
SIDE_SELL = "sell"

STATUS_SUBMITTED = "SUBMITTED"
STATUS_PARTIALLY_FILLED = "PARTIALLY_FILLED"
STATUS_FILLED = "FILLED"
STATUS_CANCELLED = "CANCELLED"

OPEN_STATUSES = frozenset({STATUS_SUBMITTED, STATUS_PARTIALLY_FILLED})

# Order-status values (field 913) on execution pushes.
PUSH_EXECUTED = "체결"
PUSH_CANCELLED = "취소"
PUSH_REJECTED = "거부"

PUSH_KIND_EXECUTION = "execution"
PUSH_KIND_CANCELLATION = "cancellation"
PUSH_KIND_NOTICE = "notice"


@dataclass(slots=True)
class OrderRecord:
    local_id: str
    broker_id: str | None
    symbol: str
    side: str
    quantity: int
    price: float
    is_market: bool
    status: str
    submitted_at: datetime
    updated_at: datetime
    filled_qty: int = 0
    avg_fill_price: float | None = None
    reference_price: float = 0.0
    cancelled_at: datetime | None = None
    linked_buy_price: float | None = None
    realized_pnl: float | None = None
    booked_pnl: float | None = None
    name: str = ""
    origin: str = "local"
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def unfilled_qty(self) -> int:
        return max(0, self.quantity - self.filled_qty)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_settled(self) -> bool:
        """Terminal with at least one share executed."""
        if self.status == STATUS_FILLED:
            return True
        return self.status == STATUS_CANCELLED and self.filled_qty > 0

    @property
    def effective_price(self) -> float:
        if self.price > 0:
            return self.price
        return self.reference_price


@dataclass(slots=True)
class PositionRecord:
    symbol: str
    quantity: int
    avg_cost: float
    current_price: float
    opened_at: datetime
    updated_at: datetime
    peak_pnl_pct: float = 0.0
    name: str = ""

    @property
    def unrealized_pnl(self) -> float:
        return (self.current_price - self.avg_cost) * self.quantity

    @property
    def unrealized_pnl_pct(self) -> float:
        if self.avg_cost <= 0:
            return 0.0
        return (self.current_price - self.avg_cost) / self.avg_cost * 100.0

    def mark(self, price: float, at: datetime) -> None:
        if price <= 0:
            return
        self.current_price = price
        self.updated_at = at
        # Trailing reference only ever moves up while the position is open.
        self.peak_pnl_pct = max(self.peak_pnl_pct, self.unrealized_pnl_pct)


@dataclass(slots=True)
class DailyRealizedPnL:
    amount: float = 0.0
    as_of_date: date | None = None


@dataclass(slots=True)
class Holding:
    symbol: str
    name: str
    quantity: int
    avg_cost: float
    current_price: float


@dataclass(slots=True)
class BrokerOrder:
    broker_id: str
    symbol: str
    side: str
    quantity: int
    price: float
    filled_qty: int
    avg_fill_price: float | None = None
    submitted_at: datetime | None = None
    name: str = ""


@dataclass(slots=True)
class FillMessage:
    broker_id: str
    symbol: str
    side: str
    order_qty: int
    order_price: float
    unfilled_qty: int
    fill_price: float | None = None
    fill_qty: int | None = None
    cumulative_amount: float | None = None
    status_text: str = ""
    original_broker_id: str | None = None
    received_at: datetime | None = None

    @property
    def kind(self) -> str:
        status = self.status_text
        if PUSH_CANCELLED in status or PUSH_REJECTED in status:
            return PUSH_KIND_CANCELLATION
        if PUSH_EXECUTED in status:
            return PUSH_KIND_EXECUTION
        if status:
            return PUSH_KIND_NOTICE
        # No status field: only the execution fields make it a fill.
        if self.fill_qty or self.fill_price:
            return PUSH_KIND_EXECUTION
        return PUSH_KIND_NOTICE

    @property
    def filled_qty(self) -> int:
        if self.kind != PUSH_KIND_EXECUTION:
            return 0
        return max(0, self.order_qty - self.unfilled_qty)


@dataclass(slots=True)
class QuoteTick:
    symbol: str
    price: float
    change_abs: float | None = None
    change_pct: float | None = None
    volume: float | None = None
    open_price: float | None = None
    high_price: float | None = None
    low_price: float | None = None
    received_at: datetime | None = None
