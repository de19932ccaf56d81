from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from autotrade.execution.ledger import OrderLedger
from autotrade.storage.db import get_connection, init_db
from autotrade.storage.journal import Journal
from autotrade.storage.models import DailyRealizedPnL, OrderRecord, PositionRecord

NOW = datetime(2026, 3, 3, 1, 0, tzinfo=timezone.utc)


def _journal(tmp_path) -> Journal:
    conn = get_connection(tmp_path / "journal.db")
    init_db(conn)
    return Journal(conn)


def _order(local_id: str, side: str, *, filled: int, at: datetime) -> OrderRecord:
    return OrderRecord(
        local_id=local_id,
        broker_id=f"B{local_id}",
        symbol="005930",
        side=side,
        quantity=10,
        price=10_000,
        is_market=False,
        status="FILLED" if filled == 10 else "PARTIALLY_FILLED",
        submitted_at=at,
        updated_at=at,
        filled_qty=filled,
        avg_fill_price=10_000.0,
        reference_price=10_000,
        name="삼성전자",
        metadata={"strategy": "basic_momentum"},
    )


def _position(quantity: int = 10) -> PositionRecord:
    return PositionRecord(
        symbol="005930",
        quantity=quantity,
        avg_cost=10_000,
        current_price=10_150,
        opened_at=NOW,
        updated_at=NOW,
        peak_pnl_pct=1.8,
        name="삼성전자",
    )


def test_save_and_load_round_trip(tmp_path) -> None:
    journal = _journal(tmp_path)
    orders = [_order("1", "buy", filled=10, at=NOW)]
    journal.save_state(
        "1234567890",
        orders=orders,
        positions=[_position()],
        daily_pnl=DailyRealizedPnL(amount=12_500, as_of_date=date(2026, 3, 3)),
        saved_at=NOW,
    )

    state = journal.load_state("1234567890")
    assert state.orders == orders
    assert state.positions == [_position()]
    assert state.daily_pnl.amount == 12_500
    assert state.daily_pnl.as_of_date == date(2026, 3, 3)


def test_save_replaces_previous_snapshot(tmp_path) -> None:
    journal = _journal(tmp_path)
    journal.save_state(
        "acct",
        orders=[_order("1", "buy", filled=10, at=NOW), _order("2", "sell", filled=4, at=NOW + timedelta(seconds=5))],
        positions=[_position(6)],
        daily_pnl=DailyRealizedPnL(),
        saved_at=NOW,
    )
    journal.save_state("acct", orders=[], positions=[], daily_pnl=DailyRealizedPnL(), saved_at=NOW)

    state = journal.load_state("acct")
    assert state.orders == []
    assert state.positions == []
    assert state.daily_pnl.as_of_date is None


def test_accounts_are_isolated(tmp_path) -> None:
    journal = _journal(tmp_path)
    journal.save_state(
        "A",
        orders=[_order("1", "buy", filled=10, at=NOW)],
        positions=[_position()],
        daily_pnl=DailyRealizedPnL(amount=1.0, as_of_date=date(2026, 3, 3)),
        saved_at=NOW,
    )
    state = journal.load_state("B")
    assert state.orders == []
    assert state.positions == []
    assert state.daily_pnl.amount == 0.0


def test_restored_ledger_matches_saved_orders(tmp_path) -> None:
    journal = _journal(tmp_path)
    journal.save_state(
        "acct",
        orders=[_order("1", "buy", filled=10, at=NOW), _order("2", "sell", filled=4, at=NOW + timedelta(seconds=5))],
        positions=[_position(6)],
        daily_pnl=DailyRealizedPnL(),
        saved_at=NOW,
    )
    state = journal.load_state("acct")
    ledger = OrderLedger()
    ledger.restore(state.orders, state.positions)

    assert ledger.totals("005930") == (10, 4)
    assert ledger.position("005930").quantity == 6
    assert ledger.position("005930").peak_pnl_pct == 1.8


def test_restricted_symbols_are_scoped_by_trading_day(tmp_path) -> None:
    journal = _journal(tmp_path)
    today = date(2026, 3, 3)
    journal.add_restricted("acct", today, "005930", "매매제한 종목", NOW)
    journal.add_restricted("acct", today, "005930", "거래정지", NOW)
    journal.add_restricted("acct", today - timedelta(days=1), "000660", "신용", NOW)

    assert journal.load_restricted("acct", today) == {"005930": "거래정지"}
    assert journal.load_restricted("other", today) == {}
