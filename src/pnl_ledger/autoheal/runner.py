from __future__ import annotations

import logging
import threading
from datetime import date

from pnl_ledger.autoheal.controller import AutoHealController
from pnl_ledger.config import Settings
from pnl_ledger.database import queries
from pnl_ledger.database.connection import get_connection
from pnl_ledger.database.schema import initialize_schema
from pnl_ledger.gaps import detect_gaps
from pnl_ledger.ledger.splits import load_splits
from pnl_ledger.market_calendar import last_closed_session
from pnl_ledger.prices.fetcher import BackfillFetcher, YFinanceBackfillFetcher
from pnl_ledger.prices.store import PriceStore

logger = logging.getLogger(__name__)


class AutoHealRunner:
    def __init__(
        self,
        settings: Settings,
        fetcher: BackfillFetcher | None = None,
        interval: float | None = None,
    ) -> None:
        self._settings = settings
        self._interval = interval if interval is not None else settings.heal_interval_seconds
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

        self.conn = get_connection(settings.db_path)
        initialize_schema(self.conn)
        self.store = PriceStore(self.conn, settings)
        self._fetcher = fetcher or YFinanceBackfillFetcher(
            load_splits(self.conn), pacing_seconds=settings.request_pacing_seconds,
        )
        self.controller = AutoHealController(
            self.store, self._fetcher, settings, on_refresh=self._on_refresh,
        )

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        logger.info("AutoHealRunner started (interval=%ss)", self._interval)

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout=10)
        self.conn.close()
        logger.info("AutoHealRunner stopped")

    def refresh(self) -> None:
        """User-initiated refresh: clear eco mode and rescan immediately."""
        self.controller.reset()
        self._wake_event.set()

    def _on_refresh(self, price_date: date, symbols: tuple[str, ...]) -> None:
        # Written prices change the gap set; rescan on the next loop pass
        self._wake_event.set()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.cycle()
            except Exception:
                logger.exception("AutoHealRunner cycle failed")
            self._wake_event.wait(timeout=self._interval)
            self._wake_event.clear()

    def cycle(self, through: date | None = None) -> int:
        """Detect gaps, hand them to the controller and tick it once.

        Returns the number of dispatchable tasks submitted.
        """
        through = through or last_closed_session()
        self.store.fail_stale_pending()
        transactions = queries.get_transactions(self.conn)
        splits = load_splits(self.conn)
        gaps = detect_gaps(transactions, self.store, through, splits)
        submitted = self.controller.submit(gaps)
        report = self.controller.tick()
        if report is not None and report.price_date is not None:
            logger.info(
                "Backfilled %s: %d/%d records written%s",
                report.price_date, report.written, len(report.symbols),
                " (queued)" if report.queued else "",
            )
        if self.controller.eco_mode:
            logger.info("Auto-heal in eco mode, %d gaps waiting for refresh", submitted)
        return submitted
