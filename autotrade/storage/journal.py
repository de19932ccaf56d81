from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from autotrade.storage.models import DailyRealizedPnL, OrderRecord, PositionRecord


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass(slots=True)
class LedgerState:
    orders: list[OrderRecord] = field(default_factory=list)
    positions: list[PositionRecord] = field(default_factory=list)
    daily_pnl: DailyRealizedPnL = field(default_factory=DailyRealizedPnL)


class Journal:
    """Account-keyed snapshot store for the ledger and daily P&L."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()

    def save_state(
        self,
        account: str,
        *,
        orders: list[OrderRecord],
        positions: list[PositionRecord],
        daily_pnl: DailyRealizedPnL,
        saved_at: datetime,
    ) -> None:
        """Replace the stored snapshot for ``account`` in one transaction."""
        with self.lock:
            with self.conn:
                self.conn.execute("DELETE FROM orders WHERE account = ?", (account,))
                self.conn.executemany(
                    """
                    INSERT INTO orders (
                        account, local_id, broker_id, symbol, name, side, quantity, price, is_market, status,
                        filled_qty, avg_fill_price, reference_price, submitted_at, updated_at, cancelled_at,
                        linked_buy_price, realized_pnl, booked_pnl, origin, metadata
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            account,
                            order.local_id,
                            order.broker_id,
                            order.symbol,
                            order.name,
                            order.side,
                            order.quantity,
                            order.price,
                            int(order.is_market),
                            order.status,
                            order.filled_qty,
                            order.avg_fill_price,
                            order.reference_price,
                            _to_iso(order.submitted_at),
                            _to_iso(order.updated_at),
                            _to_iso(order.cancelled_at),
                            order.linked_buy_price,
                            order.realized_pnl,
                            order.booked_pnl,
                            order.origin,
                            json.dumps(order.metadata, ensure_ascii=False),
                        )
                        for order in orders
                    ],
                )
                self.conn.execute("DELETE FROM positions WHERE account = ?", (account,))
                self.conn.executemany(
                    """
                    INSERT INTO positions (
                        account, symbol, name, quantity, avg_cost, current_price, peak_pnl_pct, opened_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            account,
                            position.symbol,
                            position.name,
                            position.quantity,
                            position.avg_cost,
                            position.current_price,
                            position.peak_pnl_pct,
                            _to_iso(position.opened_at),
                            _to_iso(position.updated_at),
                        )
                        for position in positions
                    ],
                )
                self.conn.execute(
                    """
                    INSERT INTO daily_pnl (account, amount, as_of_date, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(account) DO UPDATE SET
                        amount=excluded.amount,
                        as_of_date=excluded.as_of_date,
                        updated_at=excluded.updated_at
                    """,
                    (
                        account,
                        daily_pnl.amount,
                        daily_pnl.as_of_date.isoformat() if daily_pnl.as_of_date else None,
                        _to_iso(saved_at),
                    ),
                )

    def load_state(self, account: str) -> LedgerState:
        with self.lock:
            order_rows = self.conn.execute(
                "SELECT * FROM orders WHERE account = ? ORDER BY submitted_at ASC",
                (account,),
            ).fetchall()
            position_rows = self.conn.execute(
                "SELECT * FROM positions WHERE account = ? ORDER BY symbol ASC",
                (account,),
            ).fetchall()
            pnl_row = self.conn.execute(
                "SELECT amount, as_of_date FROM daily_pnl WHERE account = ?",
                (account,),
            ).fetchone()
        daily = DailyRealizedPnL()
        if pnl_row is not None:
            daily = DailyRealizedPnL(
                amount=float(pnl_row["amount"]),
                as_of_date=date.fromisoformat(pnl_row["as_of_date"]) if pnl_row["as_of_date"] else None,
            )
        return LedgerState(
            orders=[self._row_to_order(row) for row in order_rows],
            positions=[self._row_to_position(row) for row in position_rows],
            daily_pnl=daily,
        )

    def add_restricted(self, account: str, trading_day: date, symbol: str, reason: str, created_at: datetime) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO restricted_symbols (account, trading_day, symbol, reason, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account, trading_day, symbol) DO UPDATE SET reason=excluded.reason
                """,
                (account, trading_day.isoformat(), symbol, reason, _to_iso(created_at)),
            )
            self.conn.commit()

    def load_restricted(self, account: str, trading_day: date) -> dict[str, str]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT symbol, reason FROM restricted_symbols WHERE account = ? AND trading_day = ?",
                (account, trading_day.isoformat()),
            ).fetchall()
        return {str(row["symbol"]): str(row["reason"]) for row in rows}

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> OrderRecord:
        return OrderRecord(
            local_id=str(row["local_id"]),
            broker_id=row["broker_id"],
            symbol=row["symbol"],
            side=row["side"],
            quantity=int(row["quantity"]),
            price=float(row["price"]),
            is_market=bool(row["is_market"]),
            status=row["status"],
            submitted_at=_from_iso(row["submitted_at"]),
            updated_at=_from_iso(row["updated_at"]),
            filled_qty=int(row["filled_qty"]),
            avg_fill_price=row["avg_fill_price"],
            reference_price=float(row["reference_price"]),
            cancelled_at=_from_iso(row["cancelled_at"]),
            linked_buy_price=row["linked_buy_price"],
            realized_pnl=row["realized_pnl"],
            booked_pnl=row["booked_pnl"],
            name=row["name"],
            origin=row["origin"],
            metadata=json.loads(row["metadata"] or "{}"),
        )

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> PositionRecord:
        return PositionRecord(
            symbol=row["symbol"],
            quantity=int(row["quantity"]),
            avg_cost=float(row["avg_cost"]),
            current_price=float(row["current_price"]),
            opened_at=_from_iso(row["opened_at"]),
            updated_at=_from_iso(row["updated_at"]),
            peak_pnl_pct=float(row["peak_pnl_pct"]),
            name=row["name"],
        )
