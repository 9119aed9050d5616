"""Rebuild month-end ledger snapshots from scratch and verify that resuming
from each one reproduces the full replay exactly.
REUSABLE: run after any change to ledger or snapshot logic.
"""
import logging
from datetime import date

from pnl_ledger.database import queries
from pnl_ledger.database.connection import get_app_connection
from pnl_ledger.ledger.fifo import build_ledger
from pnl_ledger.ledger.splits import load_splits
from pnl_ledger.market_calendar import last_closed_session
from pnl_ledger.snapshots import build_month_end_snapshots, load_snapshot

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

conn = get_app_connection()

txs = queries.get_transactions(conn)
splits = load_splits(conn)
print(f"{len(txs)} transactions, {len(splits)} split events")

queries.delete_snapshots_from(conn, date.min)
conn.commit()
sessions = build_month_end_snapshots(conn, txs, splits, last_closed_session())

full = build_ledger(txs, splits)
print("\n=== Full replay ===")
print(f"  Holdings: {len(full.holdings)}  zero-net dropped: {full.audit.zero_net_dropped}")
print(f"  Realized: ${full.realized_pnl:,.2f}  wins={full.win_count} losses={full.loss_count}")
print(f"  Anomalies: {full.audit.anomaly_count}")

print(f"\n=== Resume from {len(sessions)} checkpoints ===")
failures = 0
for session in sessions:
    resumed = build_ledger(txs, splits, snapshot=load_snapshot(conn, session))
    ok = (
        resumed.holdings == full.holdings
        and resumed.realized_pnl == full.realized_pnl
        and resumed.audit_trail == full.audit_trail
    )
    if not ok:
        failures += 1
        print(f"  {session}  MISMATCH  realized={resumed.realized_pnl!r} vs {full.realized_pnl!r}")
print(f"  {len(sessions) - failures}/{len(sessions)} checkpoints match")
