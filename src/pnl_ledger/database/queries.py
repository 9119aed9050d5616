from __future__ import annotations

import sqlite3
from datetime import date, datetime

from pnl_ledger.ledger.models import AssetType, OpKind, Side, SplitEvent, Transaction


# --- Transactions ---

def insert_transaction(conn: sqlite3.Connection, tx: Transaction) -> int | None:
    """Insert a normalized transaction. Returns the row id, None if tx_id already exists."""
    cur = conn.execute(
        "INSERT OR IGNORE INTO transactions "
        "(tx_id, symbol, asset_type, side, quantity, price, multiplier, traded_at, "
        "contract_key, op_kind) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            tx.tx_id,
            tx.symbol,
            tx.asset_type.value if tx.asset_type else None,
            tx.side.value if tx.side else None,
            tx.quantity,
            tx.price,
            tx.multiplier,
            tx.timestamp.isoformat() if tx.timestamp else None,
            tx.contract_key,
            tx.op_kind.value if tx.op_kind else None,
        ),
    )
    return cur.lastrowid if cur.rowcount else None


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        symbol=row["symbol"],
        quantity=row["quantity"],
        price=row["price"],
        timestamp=datetime.fromisoformat(row["traded_at"]) if row["traded_at"] else None,
        asset_type=AssetType(row["asset_type"]) if row["asset_type"] else None,
        side=Side(row["side"]) if row["side"] else None,
        multiplier=row["multiplier"],
        contract_key=row["contract_key"],
        op_kind=OpKind(row["op_kind"]) if row["op_kind"] else None,
        tx_id=row["tx_id"] or str(row["row_id"]),
    )


def get_transactions(
    conn: sqlite3.Connection,
    symbol: str | None = None,
) -> list[Transaction]:
    sql = "SELECT * FROM transactions"
    params: list = []
    if symbol:
        sql += " WHERE symbol = ?"
        params.append(symbol)
    sql += " ORDER BY traded_at, row_id"
    return [_row_to_transaction(r) for r in conn.execute(sql, params).fetchall()]


def delete_transaction(conn: sqlite3.Connection, tx_id: str) -> None:
    conn.execute("DELETE FROM transactions WHERE tx_id = ?", (tx_id,))


# --- Splits ---

def upsert_split(conn: sqlite3.Connection, split: SplitEvent) -> bool:
    """Insert or update a split row. Returns True when the table changed."""
    existing = conn.execute(
        "SELECT ratio FROM split_events WHERE symbol = ? AND effective_date = ?",
        (split.symbol, split.effective_date.isoformat()),
    ).fetchone()
    if existing is not None and existing["ratio"] == split.ratio:
        return False
    conn.execute(
        "INSERT OR REPLACE INTO split_events (symbol, effective_date, ratio) VALUES (?, ?, ?)",
        (split.symbol, split.effective_date.isoformat(), split.ratio),
    )
    return True


def get_splits(conn: sqlite3.Connection, symbol: str | None = None) -> list[SplitEvent]:
    sql = "SELECT * FROM split_events"
    params: list = []
    if symbol:
        sql += " WHERE symbol = ?"
        params.append(symbol)
    sql += " ORDER BY symbol, effective_date"
    return [
        SplitEvent(r["symbol"], date.fromisoformat(r["effective_date"]), r["ratio"])
        for r in conn.execute(sql, params).fetchall()
    ]


# --- Ledger snapshots ---

def upsert_snapshot(
    conn: sqlite3.Connection,
    as_of: date,
    version: str,
    split_fingerprint: str,
    payload: str,
) -> None:
    conn.execute(
        """INSERT OR REPLACE INTO ledger_snapshots
           (as_of, version, split_fingerprint, payload, computed_at)
           VALUES (?, ?, ?, ?, datetime('now'))""",
        (as_of.isoformat(), version, split_fingerprint, payload),
    )


def get_snapshot(conn: sqlite3.Connection, as_of: date) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT * FROM ledger_snapshots WHERE as_of = ?", (as_of.isoformat(),)
    ).fetchone()


def get_latest_snapshot_before(
    conn: sqlite3.Connection,
    day: date,
    split_fingerprint: str,
    version: str,
) -> sqlite3.Row | None:
    """Latest snapshot strictly before ``day`` built under the same split table."""
    return conn.execute(
        "SELECT * FROM ledger_snapshots "
        "WHERE as_of < ? AND split_fingerprint = ? AND version = ? "
        "ORDER BY as_of DESC LIMIT 1",
        (day.isoformat(), split_fingerprint, version),
    ).fetchone()


def delete_snapshots_from(conn: sqlite3.Connection, day: date) -> None:
    conn.execute("DELETE FROM ledger_snapshots WHERE as_of >= ?", (day.isoformat(),))
