from __future__ import annotations

import enum
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable

from pnl_ledger.config import Settings
from pnl_ledger.gaps import GapTask
from pnl_ledger.market_calendar import holiday_name, is_trading_day
from pnl_ledger.prices.fetcher import BackfillFetcher, BackfillResponse, FetchOutcome
from pnl_ledger.prices.status import PriceStatus, is_dispatchable
from pnl_ledger.prices.store import PriceStore

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[date, tuple[str, ...]], None]


class HealState(str, enum.Enum):
    IDLE = "idle"
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    COOLING_DOWN = "cooling_down"


@dataclass(frozen=True)
class DispatchReport:
    price_date: date | None
    symbols: tuple[str, ...]
    queued: bool = False
    written: int = 0
    rechecked: tuple[date, ...] = ()
    error: str | None = None


class AutoHealController:
    """Rate-limited backfill loop for price gaps.

    Call :meth:`submit` whenever gap detection produces a new task list and
    :meth:`tick` from a scheduler. Each tick dispatches at most one batch:
    the oldest date first, capped at ``max_batch_symbols``. A (date, symbol)
    pair is not dispatched again within ``retry_delay_seconds``. Once
    ``session_dispatch_budget`` dispatches have been made the controller
    enters eco mode and stops until :meth:`reset`.
    """

    def __init__(
        self,
        store: PriceStore,
        fetcher: BackfillFetcher,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_refresh: RefreshCallback | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._settings = settings or Settings()
        self._clock = clock
        self._on_refresh = on_refresh

        self._lock = threading.Lock()
        self._state = HealState.IDLE
        self._tasks: list[GapTask] = []
        self._dispatched: dict[tuple[date, str], float] = {}
        self._dispatch_count = 0
        self._eco_mode = False
        self._cooldown_until = 0.0
        self._rechecks: dict[date, tuple[float, tuple[str, ...]]] = {}

    @property
    def state(self) -> HealState:
        return self._state

    @property
    def eco_mode(self) -> bool:
        return self._eco_mode

    @property
    def dispatch_count(self) -> int:
        return self._dispatch_count

    @property
    def pending_tasks(self) -> list[GapTask]:
        with self._lock:
            return list(self._tasks)

    def submit(self, tasks: Iterable[GapTask]) -> int:
        """Replace the work queue with the dispatchable subset of ``tasks``.

        Tasks falling on non-trading days are settled locally as
        ``market_closed`` instead of being queued.
        """
        queue = []
        closed: dict[date, list[str]] = defaultdict(list)
        for task in tasks:
            if not is_dispatchable(task.status):
                continue
            if is_trading_day(task.date):
                queue.append(task)
            else:
                closed[task.date].append(task.symbol)
        for day, symbols in sorted(closed.items()):
            self._store.mark_market_closed(day, symbols, holiday_name(day) or "weekend")

        with self._lock:
            self._tasks = sorted(queue)
            if self._state is HealState.IDLE and self._tasks:
                self._state = HealState.QUEUED
            return len(self._tasks)

    def reset(self) -> None:
        """Explicit user refresh: forget dispatch history, budget and eco mode."""
        with self._lock:
            self._dispatched.clear()
            self._dispatch_count = 0
            if self._eco_mode:
                logger.info("Auto-heal eco mode cleared by refresh")
            self._eco_mode = False
            self._rechecks.clear()
            if self._state is not HealState.IN_FLIGHT:
                self._state = HealState.QUEUED if self._tasks else HealState.IDLE

    def _claim_batch(self, now: float) -> tuple[date, tuple[str, ...]] | None:
        # Caller holds the lock
        if self._eco_mode:
            return None
        retry_delay = self._settings.retry_delay_seconds
        eligible = [
            t for t in self._tasks
            if now - self._dispatched.get((t.date, t.symbol), float("-inf")) >= retry_delay
        ]
        if not eligible:
            return None
        if self._dispatch_count >= self._settings.session_dispatch_budget:
            self._eco_mode = True
            logger.warning(
                "Auto-heal budget of %d dispatches exhausted; eco mode on until refresh",
                self._settings.session_dispatch_budget,
            )
            return None

        oldest = eligible[0].date
        symbols = tuple(t.symbol for t in eligible if t.date == oldest)[:self._settings.max_batch_symbols]
        for sym in symbols:
            self._dispatched[(oldest, sym)] = now
        claimed = {(oldest, s) for s in symbols}
        self._tasks = [t for t in self._tasks if (t.date, t.symbol) not in claimed]
        self._dispatch_count += 1
        return oldest, symbols

    def tick(self, now: float | None = None) -> DispatchReport | None:
        """Advance the loop once. Returns a report if anything was done."""
        now = self._clock() if now is None else now
        with self._lock:
            if self._state is HealState.IN_FLIGHT:
                return None
            if self._state is HealState.COOLING_DOWN:
                if now < self._cooldown_until:
                    return None
                self._state = HealState.QUEUED if self._tasks else HealState.IDLE

            due = sorted(d for d, (at, _) in self._rechecks.items() if at <= now)
            recheck_calls = [(d, self._rechecks.pop(d)[1]) for d in due]
            batch = self._claim_batch(now)
            if batch is None and not recheck_calls:
                if not self._tasks:
                    self._state = HealState.IDLE
                return None
            self._state = HealState.IN_FLIGHT

        report = None
        try:
            for price_date, symbols in recheck_calls:
                logger.info("Deferred recheck for %s (%d symbols)", price_date, len(symbols))
                self._refresh(price_date, symbols)
            if batch is not None:
                report = self._dispatch(*batch, now=now)
        finally:
            with self._lock:
                self._state = HealState.COOLING_DOWN
                self._cooldown_until = now + self._settings.cooldown_seconds

        if report is None:
            report = DispatchReport(None, (), rechecked=tuple(d for d, _ in recheck_calls))
        elif recheck_calls:
            report = DispatchReport(
                report.price_date, report.symbols, report.queued, report.written,
                tuple(d for d, _ in recheck_calls), report.error,
            )
        return report

    def _dispatch(self, price_date: date, symbols: tuple[str, ...], now: float) -> DispatchReport:
        marked = self._store.mark_pending(price_date, symbols)
        logger.info("Auto-heal dispatch #%d: %s x%d", self._dispatch_count, price_date, len(symbols))
        if not marked:
            return DispatchReport(price_date, symbols)
        symbols = tuple(marked)

        error = None
        try:
            response = self._fetcher.fetch(price_date, symbols)
        except Exception as exc:
            logger.warning("Backfill fetch failed for %s: %s", price_date, exc, exc_info=True)
            error = str(exc)
            response = BackfillResponse(tuple(
                FetchOutcome(sym, PriceStatus.ERROR, note=error) for sym in symbols
            ))

        written = self._store.apply_outcomes(price_date, response.outcomes)

        if response.queued:
            with self._lock:
                if price_date not in self._rechecks:
                    self._rechecks[price_date] = (
                        now + self._settings.deferred_recheck_seconds, symbols,
                    )
        else:
            self._refresh(price_date, symbols)
        return DispatchReport(price_date, symbols, response.queued, written, error=error)

    def _refresh(self, price_date: date, symbols: tuple[str, ...]) -> None:
        if self._on_refresh is None:
            return
        try:
            self._on_refresh(price_date, symbols)
        except Exception:
            logger.exception("Auto-heal refresh callback failed for %s", price_date)
