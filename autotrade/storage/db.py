from __future__ import annotations

import sqlite3
from pathlib import Path


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=30000;")
    return conn


def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row[1]) for row in rows}


def _ensure_column(
    conn: sqlite3.Connection,
    table_name: str,
    column_name: str,
    column_sql: str,
) -> None:
    if column_name in _table_columns(conn, table_name):
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_sql}")


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS orders (
            account TEXT NOT NULL,
            local_id TEXT NOT NULL,
            broker_id TEXT,
            symbol TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            side TEXT NOT NULL,
            quantity INTEGER NOT NULL,
            price REAL NOT NULL,
            is_market INTEGER NOT NULL,
            status TEXT NOT NULL,
            filled_qty INTEGER NOT NULL DEFAULT 0,
            avg_fill_price REAL,
            reference_price REAL NOT NULL DEFAULT 0,
            submitted_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            cancelled_at TEXT,
            linked_buy_price REAL,
            realized_pnl REAL,
            booked_pnl REAL,
            origin TEXT NOT NULL DEFAULT 'local',
            metadata TEXT NOT NULL DEFAULT '{}',
            PRIMARY KEY (account, local_id)
        );

        CREATE TABLE IF NOT EXISTS positions (
            account TEXT NOT NULL,
            symbol TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            quantity INTEGER NOT NULL,
            avg_cost REAL NOT NULL,
            current_price REAL NOT NULL,
            peak_pnl_pct REAL NOT NULL DEFAULT 0,
            opened_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (account, symbol)
        );

        CREATE TABLE IF NOT EXISTS daily_pnl (
            account TEXT PRIMARY KEY,
            amount REAL NOT NULL DEFAULT 0,
            as_of_date TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS restricted_symbols (
            account TEXT NOT NULL,
            trading_day TEXT NOT NULL,
            symbol TEXT NOT NULL,
            reason TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            PRIMARY KEY (account, trading_day, symbol)
        );

        CREATE INDEX IF NOT EXISTS idx_orders_account_symbol ON orders(account, symbol);
        """
    )
    _ensure_column(conn, "orders", "booked_pnl", "REAL")
    _ensure_column(conn, "orders", "origin", "TEXT NOT NULL DEFAULT 'local'")
    conn.commit()
