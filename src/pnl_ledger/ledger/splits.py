from __future__ import annotations

import hashlib
import logging
import math
import sqlite3
from dataclasses import replace
from datetime import date
from typing import Iterable, Sequence

import yfinance as yf

from pnl_ledger.config import DEFAULT_STOCK_SPLITS
from pnl_ledger.database import queries
from pnl_ledger.ledger.models import AssetType, SplitEvent, Transaction
from pnl_ledger.ledger.symbols import normalize_symbol
from pnl_ledger.market_calendar import ny_day

logger = logging.getLogger(__name__)


def default_splits() -> list[SplitEvent]:
    return [SplitEvent(sym, eff, ratio) for sym, eff, ratio in DEFAULT_STOCK_SPLITS]


def split_fingerprint(splits: Iterable[SplitEvent]) -> str:
    """Stable identity of a split table, independent of ordering."""
    rows = sorted(
        (normalize_symbol(s.symbol), s.effective_date.isoformat(), repr(float(s.ratio)))
        for s in splits
    )
    digest = hashlib.sha1("|".join(",".join(r) for r in rows).encode()).hexdigest()
    return f"{len(rows)}-{digest[:12]}"


def _valid_ratio(ratio: float) -> bool:
    return isinstance(ratio, (int, float)) and math.isfinite(ratio) and ratio > 0


def cumulative_split_factor(
    symbol: str,
    day: date,
    splits: Sequence[SplitEvent],
    cutoff: date | None = None,
) -> float:
    """Product of all split ratios effective after ``day``.

    With ``cutoff``, splits effective after the cutoff are ignored, which
    gives the share basis as it stood on the cutoff date.
    """
    norm = normalize_symbol(symbol)
    if not norm:
        return 1.0
    factor = 1.0
    for ev in splits:
        if normalize_symbol(ev.symbol) != norm:
            continue
        if cutoff is not None and ev.effective_date > cutoff:
            continue
        if day < ev.effective_date and _valid_ratio(ev.ratio):
            factor *= ev.ratio
    if not math.isfinite(factor) or factor <= 0:
        return 1.0
    return factor


def is_split_eligible(tx: Transaction) -> bool:
    return tx.asset_type in (None, AssetType.STOCK) and not tx.contract_key


def adjust_transaction(
    tx: Transaction,
    splits: Sequence[SplitEvent],
    cutoff: date | None = None,
) -> Transaction:
    """Rescale a pre-split trade onto the post-split share basis.

    Notional (quantity * price) is unchanged.
    """
    if not splits or not is_split_eligible(tx):
        return tx
    if tx.symbol is None or tx.timestamp is None or tx.quantity is None or tx.price is None:
        return tx
    factor = cumulative_split_factor(tx.symbol, ny_day(tx.timestamp), splits, cutoff)
    if factor == 1.0:
        return tx
    return replace(tx, quantity=tx.quantity * factor, price=tx.price / factor)


def adjust_transactions(
    transactions: Iterable[Transaction],
    splits: Sequence[SplitEvent],
    cutoff: date | None = None,
) -> list[Transaction]:
    return [adjust_transaction(tx, splits, cutoff) for tx in transactions]


def to_ledger_basis(close: float, symbol: str, day: date, splits: Sequence[SplitEvent]) -> float:
    """Convert an as-traded close into the split-adjusted basis the ledger uses."""
    return close / cumulative_split_factor(symbol, day, splits)


def unadjust_vendor_close(
    adjusted_close: float, symbol: str, day: date, splits: Sequence[SplitEvent]
) -> float:
    """Vendor closes are split-adjusted; recover the price actually printed that day."""
    return adjusted_close * cumulative_split_factor(symbol, day, splits)


def load_splits(conn: sqlite3.Connection) -> list[SplitEvent]:
    """Split table from the database, topped up with defaults for unknown symbols."""
    stored = queries.get_splits(conn)
    known = {normalize_symbol(s.symbol) for s in stored}
    extras = [s for s in default_splits() if normalize_symbol(s.symbol) not in known]
    return stored + extras


def ensure_splits(
    conn: sqlite3.Connection,
    symbols: list[str],
    start: date,
    end: date,
) -> int:
    """Fetch splits from yfinance and store them.

    Returns the number of split rows inserted or updated.
    """
    count = 0
    errors = 0
    for sym in symbols:
        try:
            splits = yf.Ticker(sym).splits
        except Exception:
            logger.warning("Failed to fetch splits for %s", sym)
            errors += 1
            continue
        if splits is None or splits.empty:
            continue
        for dt, ratio in splits.items():
            split_date = dt.date()
            if split_date < start or split_date > end:
                continue
            event = SplitEvent(normalize_symbol(sym), split_date, float(ratio))
            if queries.upsert_split(conn, event):
                logger.info("Split: %s on %s ratio=%.6f", sym, split_date, event.ratio)
                count += 1
    if errors:
        logger.warning("Failed to fetch splits for %d/%d symbols", errors, len(symbols))
    conn.commit()
    return count
