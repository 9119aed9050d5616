from __future__ import annotations

import json
import logging
import sqlite3
from datetime import date, timedelta
from typing import Sequence

from pnl_ledger.database import queries
from pnl_ledger.ledger.fifo import FifoLedger
from pnl_ledger.ledger.models import (
    AssetType,
    AuditEvent,
    GroupState,
    LedgerSnapshot,
    Lot,
    SplitEvent,
    Transaction,
)
from pnl_ledger.ledger.splits import split_fingerprint
from pnl_ledger.market_calendar import is_trading_day, ny_day

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "v1"


def _lot_to_list(lot: Lot) -> list:
    return [lot.quantity, lot.cost, lot.opened_on.isoformat(), lot.multiplier]


def _lot_from_list(raw: list) -> Lot:
    return Lot(float(raw[0]), float(raw[1]), date.fromisoformat(raw[2]), float(raw[3]))


def snapshot_to_json(snapshot: LedgerSnapshot) -> str:
    """Serialize a checkpoint. Floats keep their exact repr so a reload is lossless."""
    payload = {
        "as_of": snapshot.as_of.isoformat(),
        "version": snapshot.version,
        "split_fingerprint": snapshot.split_fingerprint,
        "realized_pnl": snapshot.realized_pnl,
        "win_count": snapshot.win_count,
        "loss_count": snapshot.loss_count,
        "groups": {
            key: {
                "symbol": g.symbol,
                "asset_type": g.asset_type.value,
                "multiplier": g.multiplier,
                "realized_pnl": g.realized_pnl,
                "long_lots": [_lot_to_list(l) for l in g.long_lots],
                "short_lots": [_lot_to_list(l) for l in g.short_lots],
                "anomalies": list(g.anomalies),
                "last_trade_day": g.last_trade_day.isoformat() if g.last_trade_day else None,
            }
            for key, g in sorted(snapshot.groups.items())
        },
        "audit_trail": [
            [e.symbol, e.open_date.isoformat(), e.close_date.isoformat(),
             e.open_price, e.close_price, e.quantity, e.pnl, e.multiplier]
            for e in snapshot.audit_trail
        ],
        "pending_anomalies": {k: list(v) for k, v in sorted(snapshot.pending_anomalies.items())},
    }
    return json.dumps(payload, separators=(",", ":"))


def snapshot_from_json(text: str) -> LedgerSnapshot:
    data = json.loads(text)
    groups = {
        key: GroupState(
            symbol=g["symbol"],
            asset_type=AssetType(g["asset_type"]),
            multiplier=float(g["multiplier"]),
            realized_pnl=float(g["realized_pnl"]),
            long_lots=tuple(_lot_from_list(l) for l in g["long_lots"]),
            short_lots=tuple(_lot_from_list(l) for l in g["short_lots"]),
            anomalies=tuple(g["anomalies"]),
            last_trade_day=date.fromisoformat(g["last_trade_day"]) if g["last_trade_day"] else None,
        )
        for key, g in data["groups"].items()
    }
    audit_trail = tuple(
        AuditEvent(sym, date.fromisoformat(od), date.fromisoformat(cd),
                   float(op), float(cp), float(q), float(pnl), float(m))
        for sym, od, cd, op, cp, q, pnl, m in data["audit_trail"]
    )
    return LedgerSnapshot(
        as_of=date.fromisoformat(data["as_of"]),
        split_fingerprint=data["split_fingerprint"],
        groups=groups,
        realized_pnl=float(data["realized_pnl"]),
        win_count=int(data["win_count"]),
        loss_count=int(data["loss_count"]),
        audit_trail=audit_trail,
        version=data["version"],
        pending_anomalies={k: tuple(v) for k, v in data.get("pending_anomalies", {}).items()},
    )


def save_snapshot(conn: sqlite3.Connection, snapshot: LedgerSnapshot) -> None:
    queries.upsert_snapshot(
        conn, snapshot.as_of, snapshot.version, snapshot.split_fingerprint,
        snapshot_to_json(snapshot),
    )
    conn.commit()


def load_snapshot(conn: sqlite3.Connection, as_of: date) -> LedgerSnapshot | None:
    row = queries.get_snapshot(conn, as_of)
    if row is None:
        return None
    return snapshot_from_json(row["payload"])


def latest_snapshot_before(
    conn: sqlite3.Connection,
    day: date,
    split_fingerprint: str,
    version: str = SNAPSHOT_VERSION,
) -> LedgerSnapshot | None:
    """Most recent usable checkpoint dated strictly before ``day``.

    A corrupt payload is logged and treated as absent; replay from scratch
    is always correct, only slower.
    """
    row = queries.get_latest_snapshot_before(conn, day, split_fingerprint, version)
    if row is None:
        return None
    try:
        return snapshot_from_json(row["payload"])
    except (ValueError, KeyError, TypeError):
        logger.warning("Discarding unreadable ledger snapshot %s", row["as_of"], exc_info=True)
        return None


def month_end_sessions(start: date, end: date) -> list[date]:
    """Last trading day of every month from ``start``'s month whose session is <= end."""
    sessions = []
    month = date(start.year, start.month, 1)
    while month <= end:
        next_month = date(month.year + (month.month == 12), month.month % 12 + 1, 1)
        day = next_month - timedelta(days=1)
        while not is_trading_day(day):
            day -= timedelta(days=1)
        if start <= day <= end:
            sessions.append(day)
        month = next_month
    return sessions


def build_month_end_snapshots(
    conn: sqlite3.Connection,
    transactions: Sequence[Transaction],
    splits: Sequence[SplitEvent],
    through: date,
) -> list[date]:
    """Replay history once, saving a checkpoint at every month-end session.

    Transactions are fed to the ledger one month at a time so each
    checkpoint only carries anomaly notes of trades on or before its date.
    Snapshots that no longer match an edited history are not cleaned up
    here; call ``queries.delete_snapshots_from`` after editing past
    transactions.
    """
    dated = [(ny_day(tx.timestamp), tx) for tx in transactions if tx.timestamp is not None]
    if not dated:
        return []
    sessions = month_end_sessions(min(day for day, _ in dated), through)

    buckets: dict[date, list[Transaction]] = {s: [] for s in sessions}
    for day, tx in dated:
        session = next((s for s in sessions if day <= s), None)
        if session is not None:
            buckets[session].append(tx)

    ledger = FifoLedger(splits)
    for session in sessions:
        ledger.apply_many(buckets[session])
        save_snapshot(conn, ledger.checkpoint(session))

    logger.info("Saved %d month-end ledger snapshots through %s (splits %s)",
                len(sessions), through, split_fingerprint(splits))
    return sessions
