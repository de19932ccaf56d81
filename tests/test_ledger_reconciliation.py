from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from autotrade.execution.ledger import (
    EFFECT_FILL,
    EFFECT_INVARIANT,
    EFFECT_ORDER_CANCELLED,
    EFFECT_ORDER_FILLED,
    EFFECT_ORDER_PURGED,
    EFFECT_ORDER_REOPENED,
    EFFECT_POSITION_CLOSED,
    EFFECT_POSITION_OPENED,
    EFFECT_SYNTHESIZED,
    HistorySnapshot,
    HoldingsSnapshot,
    OrderAcknowledged,
    OrderLedger,
    OrderRejected,
    OrderSubmitted,
    PriceMark,
    PushFill,
    Sweep,
)
from autotrade.storage.models import (
    STATUS_CANCELLED,
    STATUS_FILLED,
    STATUS_PARTIALLY_FILLED,
    BrokerOrder,
    FillMessage,
    Holding,
)

T0 = datetime(2026, 3, 3, 1, 0, tzinfo=timezone.utc)


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def _submit(ledger: OrderLedger, *, symbol: str = "005930", side: str = "buy", qty: int = 10, price: float = 10_000, at: datetime = T0) -> str:
    event = OrderSubmitted(symbol=symbol, side=side, quantity=qty, price=price, is_market=False, at=at, reference_price=price)
    ledger.apply(event)
    return str(event.local_id)


def _push(
    broker_id: str,
    *,
    symbol: str = "005930",
    side: str = "buy",
    qty: int = 10,
    price: float = 10_000,
    unfilled: int = 0,
    fill_price: float | None = None,
    at: datetime = T0,
) -> PushFill:
    filled = qty - unfilled
    fill = fill_price if fill_price is not None else price
    message = FillMessage(
        broker_id=broker_id,
        symbol=symbol,
        side=side,
        order_qty=qty,
        order_price=price,
        unfilled_qty=unfilled,
        fill_price=fill,
        fill_qty=filled,
        cumulative_amount=fill * filled,
        status_text="체결",
        received_at=at,
    )
    return PushFill(message=message, at=at)


def _kinds(effects) -> list[str]:
    return [effect.kind for effect in effects]


def test_push_and_snapshot_for_same_order_yield_one_record() -> None:
    ledger = OrderLedger()
    local_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", local_id, "1234", _at(1)))
    ledger.apply(_push("1234", at=_at(2)))
    history = [BrokerOrder("1234", "005930", "buy", 10, 10_000, 10, 10_000.0, T0, "삼성전자")]
    ledger.apply(HistorySnapshot(history, _at(5)))
    ledger.apply(HoldingsSnapshot([Holding("005930", "삼성전자", 10, 10_000, 10_050)], _at(6)))

    orders = ledger.orders("005930")
    assert len(orders) == 1
    assert orders[0].status == STATUS_FILLED
    assert orders[0].unfilled_qty == 0
    assert orders[0].broker_id == "1234"
    position = ledger.position("005930")
    assert position is not None
    assert position.quantity == 10
    assert position.current_price == 10_050


def test_push_before_ack_matches_pending_local_order() -> None:
    ledger = OrderLedger()
    local_id = _submit(ledger)
    ledger.apply(_push("777", at=_at(1)))
    assert ledger.apply(OrderAcknowledged("005930", local_id, "777", _at(2))) == []

    orders = ledger.orders("005930")
    assert len(orders) == 1
    assert orders[0].local_id == local_id
    assert orders[0].status == STATUS_FILLED


def test_ack_merges_record_created_from_early_push() -> None:
    ledger = OrderLedger()
    # Submitted two buckets earlier than the push so the push cannot match by shape.
    local_id = _submit(ledger, at=_at(-300))
    ledger.apply(_push("888", at=_at(1)))
    assert len(ledger.orders("005930")) == 2

    ledger.apply(OrderAcknowledged("005930", local_id, "888", _at(2)))
    orders = ledger.orders("005930")
    assert len(orders) == 1
    assert orders[0].local_id == local_id
    assert orders[0].filled_qty == 10
    assert ledger.net_filled("005930") == 10


def test_same_push_twice_is_idempotent() -> None:
    ledger = OrderLedger()
    local_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", local_id, "1", _at(1)))
    partial = _push("1", unfilled=6, at=_at(2))

    first = ledger.apply(partial)
    assert EFFECT_FILL in _kinds(first)
    assert ledger.apply(partial) == []
    order = ledger.order(local_id)
    assert order is not None
    assert order.status == STATUS_PARTIALLY_FILLED
    assert order.filled_qty == 4
    assert ledger.position("005930").quantity == 4

    ledger.apply(_push("1", unfilled=0, at=_at(3)))
    ledger.apply(_push("1", unfilled=6, at=_at(4)))
    assert ledger.order(local_id).status == STATUS_FILLED
    assert ledger.position("005930").quantity == 10


def test_conservation_of_bought_minus_sold() -> None:
    ledger = OrderLedger()
    buy_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", buy_id, "1", _at(1)))
    ledger.apply(_push("1", at=_at(2)))
    sell_id = _submit(ledger, side="sell", qty=4, price=10_500, at=_at(10))
    ledger.apply(OrderAcknowledged("005930", sell_id, "2", _at(11)))
    ledger.apply(_push("2", side="sell", qty=4, price=10_500, at=_at(12)))

    bought, sold = ledger.totals("005930")
    assert (bought, sold) == (10, 4)
    assert ledger.position("005930").quantity == bought - sold


def test_sell_fill_realizes_pnl_against_position_cost() -> None:
    ledger = OrderLedger()
    buy_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", buy_id, "1", _at(1)))
    ledger.apply(_push("1", at=_at(2)))
    sell_id = _submit(ledger, side="sell", price=10_500, at=_at(10))
    ledger.apply(OrderAcknowledged("005930", sell_id, "2", _at(11)))
    effects = ledger.apply(_push("2", side="sell", price=10_500, at=_at(12)))

    assert EFFECT_POSITION_CLOSED in _kinds(effects)
    assert ledger.position("005930") is None
    sell = ledger.order(sell_id)
    assert sell.linked_buy_price == 10_000
    assert sell.realized_pnl == pytest.approx(5_000)


def test_unfilled_order_times_out_and_is_purged() -> None:
    ledger = OrderLedger(order_timeout_seconds=30, cancelled_purge_seconds=20)
    local_id = _submit(ledger)
    assert ledger.apply(Sweep(_at(29))) == []

    effects = ledger.apply(Sweep(_at(31)))
    assert _kinds(effects) == [EFFECT_ORDER_CANCELLED]
    assert ledger.order(local_id).status == STATUS_CANCELLED
    assert ledger.has_open_order("005930") is False

    assert ledger.apply(Sweep(_at(40))) == []
    effects = ledger.apply(Sweep(_at(52)))
    assert _kinds(effects) == [EFFECT_ORDER_PURGED]
    assert ledger.orders("005930") == []


def test_partially_filled_cancel_is_kept() -> None:
    ledger = OrderLedger(order_timeout_seconds=30, cancelled_purge_seconds=20)
    local_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", local_id, "5", _at(1)))
    ledger.apply(_push("5", unfilled=7, at=_at(2)))
    ledger.apply(Sweep(_at(31)))
    ledger.apply(Sweep(_at(120)))

    order = ledger.order(local_id)
    assert order is not None
    assert order.status == STATUS_CANCELLED
    assert order.filled_qty == 3
    assert ledger.position("005930").quantity == 3


def test_late_fill_reopens_cancelled_order() -> None:
    ledger = OrderLedger(order_timeout_seconds=30, cancelled_purge_seconds=20)
    local_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", local_id, "9", _at(1)))
    ledger.apply(Sweep(_at(31)))

    effects = ledger.apply(_push("9", at=_at(35)))
    kinds = _kinds(effects)
    assert EFFECT_ORDER_REOPENED in kinds
    assert EFFECT_ORDER_FILLED in kinds
    assert ledger.order(local_id).status == STATUS_FILLED
    assert ledger.position("005930").quantity == 10


def test_conflicting_quantity_for_broker_id_is_an_invariant_violation() -> None:
    ledger = OrderLedger()
    local_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", local_id, "42", _at(1)))

    effects = ledger.apply(_push("42", qty=20, at=_at(2)))
    assert _kinds(effects) == [EFFECT_INVARIANT]
    order = ledger.order(local_id)
    assert order.quantity == 10
    assert order.filled_qty == 0
    assert ledger.position("005930") is None


def test_rejected_order_is_withdrawn() -> None:
    ledger = OrderLedger()
    local_id = _submit(ledger)
    ledger.apply(OrderRejected("005930", local_id, "주문가능금액 부족", _at(1)))
    assert ledger.orders("005930") == []


def test_holdings_without_orders_synthesize_a_filled_buy() -> None:
    ledger = OrderLedger()
    effects = ledger.apply(HoldingsSnapshot([Holding("000660", "SK하이닉스", 5, 150_000, 151_000)], T0))

    kinds = _kinds(effects)
    assert EFFECT_SYNTHESIZED in kinds
    assert EFFECT_POSITION_OPENED in kinds
    orders = ledger.orders("000660")
    assert len(orders) == 1
    assert orders[0].origin == "snapshot"
    assert orders[0].status == STATUS_FILLED
    position = ledger.position("000660")
    assert position.quantity == 5
    assert position.avg_cost == 150_000
    assert position.name == "SK하이닉스"


def test_holdings_fill_pending_local_order_before_synthesizing() -> None:
    ledger = OrderLedger()
    local_id = _submit(ledger)
    ledger.apply(HoldingsSnapshot([Holding("005930", "삼성전자", 10, 10_000, 10_000)], _at(3)))

    orders = ledger.orders("005930")
    assert len(orders) == 1
    assert orders[0].local_id == local_id
    assert orders[0].status == STATUS_FILLED


def test_lagging_snapshot_after_recent_push_is_ignored() -> None:
    ledger = OrderLedger(snapshot_push_grace_seconds=10)
    local_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", local_id, "1", _at(1)))
    ledger.apply(_push("1", at=_at(2)))

    assert ledger.apply(HoldingsSnapshot([], _at(5))) == []
    assert ledger.position("005930").quantity == 10

    effects = ledger.apply(HoldingsSnapshot([], _at(30)))
    assert EFFECT_POSITION_CLOSED in _kinds(effects)
    sells = [order for order in ledger.orders("005930") if order.side == "sell"]
    assert len(sells) == 1
    assert sells[0].metadata["estimated"] is True


def test_history_row_without_fills_is_not_recorded() -> None:
    ledger = OrderLedger()
    ledger.apply(HistorySnapshot([BrokerOrder("55", "035720", "buy", 3, 50_000, 0, None, T0)], T0))
    assert ledger.orders("035720") == []


def test_peak_pnl_never_decreases_while_open() -> None:
    ledger = OrderLedger()
    local_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", local_id, "1", _at(1)))
    ledger.apply(_push("1", at=_at(2)))

    ledger.apply(PriceMark("005930", 10_300, _at(3)))
    assert ledger.position("005930").peak_pnl_pct == pytest.approx(3.0)
    ledger.apply(PriceMark("005930", 9_900, _at(4)))
    position = ledger.position("005930")
    assert position.peak_pnl_pct == pytest.approx(3.0)
    assert position.unrealized_pnl_pct == pytest.approx(-1.0)


def test_event_log_records_every_event() -> None:
    ledger = OrderLedger()
    _submit(ledger)
    ledger.apply(Sweep(_at(1)))
    sequence = [seq for seq, _ in ledger.events()]
    assert sequence == [1, 2]


def test_restore_prefers_order_totals() -> None:
    source = OrderLedger()
    local_id = _submit(source)
    source.apply(OrderAcknowledged("005930", local_id, "1", _at(1)))
    source.apply(_push("1", at=_at(2)))
    orders = source.orders()
    positions = source.positions()
    positions[0].quantity = 99

    restored = OrderLedger()
    restored.restore(orders, positions)
    assert restored.position("005930").quantity == 10
    next_id = _submit(restored, symbol="000660")
    assert int(next_id) > int(local_id)


def _notice(broker_id: str, status: str, *, unfilled: int = 0, original: str | None = None, at: datetime = T0) -> PushFill:
    message = FillMessage(
        broker_id=broker_id,
        symbol="005930",
        side="buy",
        order_qty=10,
        order_price=10_000,
        unfilled_qty=unfilled,
        status_text=status,
        original_broker_id=original,
        received_at=at,
    )
    return PushFill(message=message, at=at)


def test_broker_cancel_push_does_not_open_position() -> None:
    ledger = OrderLedger()
    local_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", local_id, "501", _at(1)))

    effects = ledger.apply(_notice("501", "취소", at=_at(3)))

    assert _kinds(effects) == [EFFECT_ORDER_CANCELLED]
    assert ledger.position("005930") is None
    (order,) = ledger.orders("005930")
    assert order.status == STATUS_CANCELLED
    assert order.filled_qty == 0
    assert ledger.apply(_notice("501", "취소", at=_at(4))) == []


def test_cancel_confirmation_keeps_partial_fill() -> None:
    ledger = OrderLedger()
    local_id = _submit(ledger)
    ledger.apply(OrderAcknowledged("005930", local_id, "501", _at(1)))
    ledger.apply(_push("501", unfilled=6, at=_at(2)))

    ledger.apply(_notice("502", "확인", original="501", at=_at(3)))
    ledger.apply(_notice("502", "취소", original="501", at=_at(4)))

    (order,) = ledger.orders("005930")
    assert order.status == STATUS_CANCELLED
    assert order.filled_qty == 4
    assert ledger.position("005930").quantity == 4


def test_acceptance_and_reject_notices_never_fill() -> None:
    ledger = OrderLedger()
    local_id = _submit(ledger)
    ledger.apply(_notice("601", "접수", unfilled=10, at=_at(1)))
    ledger.apply(OrderAcknowledged("005930", local_id, "601", _at(2)))
    ledger.apply(_notice("601", "접수", unfilled=0, at=_at(3)))
    assert ledger.position("005930") is None

    ledger.apply(_notice("601", "거부", at=_at(4)))
    (order,) = ledger.orders("005930")
    assert order.status == STATUS_CANCELLED
    assert order.filled_qty == 0
