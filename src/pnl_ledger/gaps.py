"""Find trading days that lack a usable close for an open position."""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Sequence

from pnl_ledger.config import POSITION_EPSILON
from pnl_ledger.ledger.fifo import FifoLedger
from pnl_ledger.ledger.models import SplitEvent, Transaction
from pnl_ledger.market_calendar import calendar_days, is_trading_day
from pnl_ledger.prices.status import PriceStatus, is_satisfied
from pnl_ledger.prices.store import PriceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class GapTask:
    date: date
    symbol: str
    status: PriceStatus = PriceStatus.MISSING


def required_days(
    transactions: Iterable[Transaction],
    through: date,
    splits: Sequence[SplitEvent] = (),
    epsilon: float = POSITION_EPSILON,
) -> dict[str, list[date]]:
    """Trading days each price symbol needs a close for.

    A day is required when the position left open at the end of that day
    (after all of the day's trades) is non-zero. Positions opened and closed
    within one day need no close.
    """
    trades = FifoLedger(splits).normalize(transactions)
    deltas: dict[str, dict[date, float]] = defaultdict(lambda: defaultdict(float))
    symbols: dict[str, str] = {}
    for trade in trades:
        deltas[trade.group_key][trade.day] += trade.quantity
        symbols[trade.group_key] = trade.symbol

    # Positions are tracked per ledger group; groups sharing a price symbol
    # need the same closes
    by_symbol: dict[str, set[date]] = defaultdict(set)
    for key in sorted(deltas):
        by_day = deltas[key]
        position = 0.0
        for day in calendar_days(min(by_day), through):
            position += by_day.get(day, 0.0)
            if is_trading_day(day) and abs(position) > epsilon:
                by_symbol[symbols[key]].add(day)
    return {symbol: sorted(days) for symbol, days in sorted(by_symbol.items()) if days}


def detect_gaps(
    transactions: Iterable[Transaction],
    store: PriceStore,
    through: date,
    splits: Sequence[SplitEvent] = (),
) -> list[GapTask]:
    """Required (date, symbol) pairs whose price record is not yet satisfied."""
    required = required_days(transactions, through, splits)
    if not required:
        return []

    start = min(days[0] for days in required.values())
    statuses = store.statuses(list(required), start, through)

    gaps = []
    total = 0
    for symbol, days in required.items():
        total += len(days)
        for day in days:
            status = statuses.get((day, symbol))
            if not is_satisfied(status):
                gaps.append(GapTask(day, symbol, status or PriceStatus.MISSING))
    gaps.sort()
    logger.info("Gap scan through %s: %d/%d required closes missing across %d symbols",
                through, len(gaps), total, len(required))
    return gaps
