"""Report required closes that are still missing, grouped by status, and
optionally run backfill cycles until the queue drains or eco mode trips.
Usage: python scripts/gap_audit.py [--heal]
"""
import logging
import sys
import time
from collections import Counter

from pnl_ledger.autoheal.runner import AutoHealRunner
from pnl_ledger.config import Settings
from pnl_ledger.database import queries
from pnl_ledger.gaps import detect_gaps
from pnl_ledger.ledger.splits import load_splits
from pnl_ledger.market_calendar import last_closed_session

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

settings = Settings()
runner = AutoHealRunner(settings)
conn = runner.conn
through = last_closed_session()

txs = queries.get_transactions(conn)
splits = load_splits(conn)
gaps = detect_gaps(txs, runner.store, through, splits)

print(f"=== Gaps through {through}: {len(gaps)} ===")
for status, count in sorted(Counter(g.status.value for g in gaps).items()):
    print(f"  {status:15} {count:>6}")

by_symbol = Counter(g.symbol for g in gaps)
print("\n=== Worst symbols ===")
for symbol, count in by_symbol.most_common(15):
    first = min(g.date for g in gaps if g.symbol == symbol)
    print(f"  {symbol:22} {count:>5} missing  (oldest {first})")

if "--heal" in sys.argv:
    print("\n=== Healing ===")
    for _ in range(settings.session_dispatch_budget):
        if not runner.cycle(through) or runner.controller.eco_mode:
            break
        time.sleep(settings.cooldown_seconds)
    remaining = detect_gaps(queries.get_transactions(conn), runner.store, through, splits)
    print(f"  {runner.controller.dispatch_count} dispatches, {len(remaining)} gaps left")

runner.stop()
