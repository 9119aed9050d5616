from __future__ import annotations

import sqlite3

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS transactions (
    row_id        INTEGER PRIMARY KEY AUTOINCREMENT,
    tx_id         TEXT UNIQUE,
    symbol        TEXT,
    asset_type    TEXT,
    side          TEXT,
    quantity      REAL,
    price         REAL,
    multiplier    REAL,
    traded_at     TEXT,
    contract_key  TEXT,
    op_kind       TEXT,
    created_at    TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS split_events (
    symbol         TEXT NOT NULL,
    effective_date TEXT NOT NULL,
    ratio          REAL NOT NULL,
    PRIMARY KEY (symbol, effective_date)
);

CREATE TABLE IF NOT EXISTS price_records (
    record_key   TEXT PRIMARY KEY,
    symbol       TEXT NOT NULL,
    price_date   TEXT NOT NULL,
    close        REAL,
    status       TEXT NOT NULL,
    provider     TEXT NOT NULL DEFAULT '',
    note         TEXT NOT NULL DEFAULT '',
    retrieved_at TEXT,
    attempts     INTEGER NOT NULL DEFAULT 0,
    updated_at   TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS ledger_snapshots (
    as_of             TEXT PRIMARY KEY,
    version           TEXT NOT NULL,
    split_fingerprint TEXT NOT NULL,
    payload           TEXT NOT NULL,
    computed_at       TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_transactions_traded_at
    ON transactions(traded_at);

CREATE INDEX IF NOT EXISTS idx_price_records_symbol_date
    ON price_records(symbol, price_date);

CREATE INDEX IF NOT EXISTS idx_price_records_status
    ON price_records(status);
"""


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    # Idempotent migrations for existing databases
    for stmt in [
        "ALTER TABLE price_records ADD COLUMN attempts INTEGER NOT NULL DEFAULT 0",
    ]:
        try:
            conn.execute(stmt)
        except sqlite3.OperationalError:
            pass  # column already exists
