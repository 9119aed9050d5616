"""Daily PnL attribution.

Each calendar day's PnL is split into realized PnL (lots closed that day)
and the change in unrealized PnL of the open lots, marked at the day's
close. Days are processed as a fold over the calendar; the accumulator
carries the previous day's marks and the last known closes forward, so
weekends and holidays inherit Friday's prices.
"""
from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Mapping, Sequence

import pandas as pd

from pnl_ledger.ledger.fifo import FifoLedger
from pnl_ledger.ledger.models import LedgerSnapshot, Lot, SplitEvent, Transaction
from pnl_ledger.ledger.splits import to_ledger_basis
from pnl_ledger.market_calendar import is_trading_day, prev_trading_day
from pnl_ledger.prices.store import PriceRecord, record_key

logger = logging.getLogger(__name__)

PriceMap = Mapping[str, "PriceRecord | float"]


class AttributionStatus(str, enum.Enum):
    OK = "ok"
    MISSING_DATA = "missing_data"
    MARKET_CLOSED = "market_closed"


@dataclass(frozen=True)
class SymbolAttribution:
    symbol: str
    realized: float
    unrealized_change: float
    close: float | None


@dataclass(frozen=True)
class DayAttribution:
    day: date
    status: AttributionStatus
    realized: float
    unrealized_change: float
    total: float
    missing_symbols: tuple[str, ...] = ()
    items: tuple[SymbolAttribution, ...] = ()


@dataclass(frozen=True)
class _FoldState:
    # Unrealized value of each open symbol at the end of the previous day;
    # None when the symbol was open but had no usable close.
    marks: dict[str, float | None]
    # Last known close per symbol on the ledger's split basis
    closes: dict[str, float | None]


def _usable_close(prices: PriceMap, day: date, symbol: str) -> float | None:
    value = prices.get(record_key(day, symbol))
    if value is None:
        return None
    if isinstance(value, PriceRecord):
        return value.usable_close
    value = float(value)
    return value if value > 0 else None


def _mark(lots_by_symbol: Mapping[str, list[Lot]], closes: Mapping[str, float | None]) -> dict[str, float | None]:
    marks: dict[str, float | None] = {}
    for symbol, lots in lots_by_symbol.items():
        close = closes.get(symbol)
        if close is None:
            marks[symbol] = None
        else:
            marks[symbol] = sum((close - lot.cost) * lot.quantity * lot.multiplier for lot in lots)
    return marks


def _closes_for_day(
    day: date,
    symbols: Iterable[str],
    previous: Mapping[str, float | None],
    prices: PriceMap,
    splits: Sequence[SplitEvent],
) -> dict[str, float | None]:
    if not is_trading_day(day):
        return dict(previous)
    closes = dict(previous)
    for symbol in symbols:
        raw = _usable_close(prices, day, symbol)
        closes[symbol] = None if raw is None else to_ledger_basis(raw, symbol, day, splits)
    return closes


def _step(
    state: _FoldState,
    day: date,
    lots_by_symbol: Mapping[str, list[Lot]],
    realized_by_symbol: Mapping[str, float],
    prices: PriceMap,
    splits: Sequence[SplitEvent],
) -> tuple[_FoldState, DayAttribution]:
    touched = set(state.marks) | set(lots_by_symbol) | set(realized_by_symbol)
    closes = _closes_for_day(day, touched, state.closes, prices, splits)
    marks = _mark(lots_by_symbol, closes)

    items = []
    missing = []
    realized_total = 0.0
    unrealized_total = 0.0
    for symbol in sorted(touched):
        prev = state.marks.get(symbol, 0.0)
        cur = marks.get(symbol, 0.0)
        if prev is None or cur is None:
            missing.append(symbol)
            continue
        realized = realized_by_symbol.get(symbol, 0.0)
        change = cur - prev
        realized_total += realized
        unrealized_total += change
        items.append(SymbolAttribution(symbol, realized, change, closes.get(symbol)))

    if not is_trading_day(day):
        status = AttributionStatus.MARKET_CLOSED
    elif missing:
        status = AttributionStatus.MISSING_DATA
    else:
        status = AttributionStatus.OK

    result = DayAttribution(
        day=day,
        status=status,
        realized=realized_total,
        unrealized_change=unrealized_total,
        total=realized_total + unrealized_total,
        missing_symbols=tuple(missing),
        items=tuple(items),
    )
    return _FoldState(marks, closes), result


def compute_daily_attribution(
    days: Iterable[date],
    transactions: Sequence[Transaction],
    prices: PriceMap,
    splits: Sequence[SplitEvent] = (),
    snapshot: LedgerSnapshot | None = None,
) -> dict[date, DayAttribution]:
    """Attribute PnL to each requested day.

    ``prices`` maps ``{date}_{symbol}`` keys to PriceRecords (or bare
    as-traded closes). A day whose endpoint close is unusable for an open
    symbol is reported as missing_data, and that symbol is left out of the
    day's totals. ``snapshot`` resumes the ledger from a checkpoint dated on
    or before the trading day preceding the first requested day.
    """
    requested = sorted(set(days))
    if not requested:
        return {}
    start = prev_trading_day(requested[0])
    end = requested[-1]

    ledger = FifoLedger(splits)
    if snapshot is not None:
        if snapshot.as_of <= start:
            ledger.seed(snapshot)
        else:
            logger.debug("Snapshot %s is after fold start %s, replaying from scratch", snapshot.as_of, start)
    trades = ledger.normalize(transactions)

    pos = 0
    while pos < len(trades) and trades[pos].day <= start:
        ledger.apply(trades[pos])
        pos += 1

    lots = ledger.open_lots_by_symbol()
    closes = _closes_for_day(start, lots, {}, prices, splits)
    state = _FoldState(_mark(lots, closes), closes)

    wanted = set(requested)
    results: dict[date, DayAttribution] = {}
    day = start + timedelta(days=1)
    while day <= end:
        realized: dict[str, float] = defaultdict(float)
        while pos < len(trades) and trades[pos].day == day:
            for event in ledger.apply(trades[pos]):
                realized[event.symbol] += event.pnl
            pos += 1
        state, result = _step(state, day, ledger.open_lots_by_symbol(), realized, prices, splits)
        if day in wanted:
            results[day] = result
        day += timedelta(days=1)

    missing_days = sum(1 for r in results.values() if r.status is AttributionStatus.MISSING_DATA)
    if missing_days:
        logger.info("Attribution %s..%s: %d/%d days missing price data",
                    requested[0], end, missing_days, len(results))
    return results


def attribution_frame(results: Mapping[date, DayAttribution]) -> pd.DataFrame:
    rows = [
        {
            "date": r.day,
            "status": r.status.value,
            "realized": r.realized,
            "unrealized_change": r.unrealized_change,
            "total": r.total,
            "missing_symbols": ",".join(r.missing_symbols),
        }
        for r in sorted(results.values(), key=lambda r: r.day)
    ]
    columns = ["date", "status", "realized", "unrealized_change", "total", "missing_symbols"]
    return pd.DataFrame(rows, columns=columns)


# Day statuses whose totals count towards week/month/year-to-date sums
_SUMMABLE = frozenset({AttributionStatus.OK, AttributionStatus.MARKET_CLOSED})

PERIODS = ("wtd", "mtd", "ytd")


@dataclass(frozen=True)
class PeriodTotal:
    period: str
    start: date
    end: date
    realized: float
    unrealized_change: float
    total: float
    counted_days: int
    missing_days: tuple[date, ...] = ()


def period_start(day: date, period: str) -> date:
    """First calendar day of the week (Monday), month or year containing ``day``."""
    if period == "wtd":
        return day - timedelta(days=day.weekday())
    if period == "mtd":
        return day.replace(day=1)
    if period == "ytd":
        return date(day.year, 1, 1)
    raise ValueError(f"Unknown period {period!r}, expected one of {PERIODS}")


def period_total(
    results: Mapping[date, DayAttribution], start: date, end: date, period: str = ""
) -> PeriodTotal:
    """Sum daily totals over ``start``..``end``.

    Only ``ok`` and ``market_closed`` days are summed. ``missing_data`` days
    and days absent from ``results`` are listed in ``missing_days`` instead
    of being guessed.
    """
    realized = 0.0
    unrealized = 0.0
    counted = 0
    missing = []
    day = start
    while day <= end:
        result = results.get(day)
        if result is None or result.status not in _SUMMABLE:
            missing.append(day)
        else:
            realized += result.realized
            unrealized += result.unrealized_change
            counted += 1
        day += timedelta(days=1)
    if missing:
        logger.info("%s total %s..%s skips %d days without price data",
                    period or "Period", start, end, len(missing))
    return PeriodTotal(
        period=period,
        start=start,
        end=end,
        realized=realized,
        unrealized_change=unrealized,
        total=realized + unrealized,
        counted_days=counted,
        missing_days=tuple(missing),
    )


def period_totals(results: Mapping[date, DayAttribution], today: date) -> dict[str, PeriodTotal]:
    """Week-, month- and year-to-date totals ending on ``today``."""
    return {p: period_total(results, period_start(today, p), today, p) for p in PERIODS}
