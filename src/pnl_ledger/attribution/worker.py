from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, timedelta
from typing import Sequence

from pnl_ledger.attribution.engine import (
    DayAttribution,
    PeriodTotal,
    compute_daily_attribution,
    period_start,
    period_totals,
)
from pnl_ledger.database import queries
from pnl_ledger.ledger.models import LedgerSnapshot, SplitEvent, Transaction
from pnl_ledger.ledger.splits import load_splits, split_fingerprint
from pnl_ledger.market_calendar import calendar_days, prev_trading_day
from pnl_ledger.prices.store import PriceStore
from pnl_ledger.snapshots import latest_snapshot_before

logger = logging.getLogger(__name__)


def attribution_fingerprint(
    target_day: date,
    transactions: Sequence[Transaction],
    splits: Sequence[SplitEvent],
    price_count: int,
) -> str:
    last_id = transactions[-1].tx_id if transactions else None
    return (
        f"pnl_v1_{target_day.isoformat()}_{len(transactions)}_{last_id or 'none'}"
        f"_{split_fingerprint(splits)}_{price_count}"
    )


class AttributionWorker:
    """Run attribution off the calling thread and memoize results.

    Results are cached by :func:`attribution_fingerprint` together with the
    requested day set; any new transaction, split row or price record
    changes the key. Concurrent requests for the same key share one
    computation.
    """

    def __init__(self, max_workers: int = 1) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="attribution")
        self._lock = threading.Lock()
        self._memo: dict[tuple[str, tuple[date, ...]], Future] = {}

    def submit(
        self,
        days: Sequence[date],
        transactions: Sequence[Transaction],
        prices,
        splits: Sequence[SplitEvent] = (),
        snapshot: LedgerSnapshot | None = None,
        price_count: int | None = None,
    ) -> Future:
        requested = tuple(sorted(set(days)))
        count = len(prices) if price_count is None else price_count
        key = (attribution_fingerprint(requested[-1], transactions, splits, count), requested)
        with self._lock:
            future = self._memo.get(key)
            if future is not None and future.done() and future.exception() is not None:
                future = None
            if future is not None:
                logger.debug("Attribution cache hit %s", key[0])
                return future
            future = self._executor.submit(
                compute_daily_attribution, list(requested), list(transactions), prices, splits, snapshot,
            )
            self._memo[key] = future
        future.add_done_callback(lambda f: self._forget_failed(key, f))
        return future

    def _forget_failed(self, key: tuple[str, tuple[date, ...]], future: Future) -> None:
        if future.exception() is not None:
            logger.error("Attribution %s failed: %s", key[0], future.exception())
            with self._lock:
                if self._memo.get(key) is future:
                    del self._memo[key]

    def clear(self) -> None:
        with self._lock:
            self._memo.clear()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


def attribute_range(conn: sqlite3.Connection, start: date, end: date) -> dict[date, DayAttribution]:
    """Load everything from the database and attribute ``start``..``end``."""
    transactions = queries.get_transactions(conn)
    splits = load_splits(conn)
    store = PriceStore(conn)
    symbols = sorted({tx.price_symbol for tx in transactions if tx.symbol})
    fold_start = prev_trading_day(start)
    prices = store.load_price_map(symbols, fold_start, end)
    snapshot = latest_snapshot_before(conn, fold_start + timedelta(days=1), split_fingerprint(splits))
    return compute_daily_attribution(list(calendar_days(start, end)), transactions, prices, splits, snapshot)


def attribute_periods(conn: sqlite3.Connection, today: date) -> dict[str, PeriodTotal]:
    """Week-, month- and year-to-date PnL through ``today``."""
    results = attribute_range(conn, period_start(today, "ytd"), today)
    return period_totals(results, today)
