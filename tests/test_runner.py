from dataclasses import replace
from datetime import date

from conftest import make_tx
from pnl_ledger.autoheal.runner import AutoHealRunner
from pnl_ledger.database import queries
from pnl_ledger.prices.fetcher import BackfillResponse, FetchOutcome
from pnl_ledger.prices.status import PriceStatus


class RecordingFetcher:
    def __init__(self):
        self.calls = []

    def fetch(self, price_date, symbols):
        self.calls.append((price_date, tuple(symbols)))
        return BackfillResponse(tuple(FetchOutcome(s, PriceStatus.OK, 50.0, "test") for s in symbols))


def _runner(settings, fetcher):
    runner = AutoHealRunner(replace(settings, cooldown_seconds=0), fetcher, interval=3600)
    for tx in [make_tx("XYZ", 10, 48.0, date(2024, 1, 3), tx_id="t-1"),
               make_tx("XYZ", -10, 52.0, date(2024, 1, 8), tx_id="t-2")]:
        queries.insert_transaction(runner.conn, tx)
    runner.conn.commit()
    return runner


def test_cycle_backfills_oldest_gap_first(settings):
    fetcher = RecordingFetcher()
    runner = _runner(settings, fetcher)
    try:
        assert runner.cycle(through=date(2024, 1, 10)) == 3
        assert fetcher.calls == [(date(2024, 1, 3), ("XYZ",))]
        assert runner.store.get("XYZ", date(2024, 1, 3)).status is PriceStatus.OK

        runner.cycle(through=date(2024, 1, 10))
        runner.cycle(through=date(2024, 1, 10))
        assert [c[0] for c in fetcher.calls] == [date(2024, 1, 3), date(2024, 1, 4), date(2024, 1, 5)]
        assert runner.cycle(through=date(2024, 1, 10)) == 0
    finally:
        runner.stop()


def test_refresh_clears_eco_mode(settings):
    fetcher = RecordingFetcher()
    runner = _runner(replace(settings, session_dispatch_budget=1), fetcher)
    try:
        runner.cycle(through=date(2024, 1, 10))
        runner.cycle(through=date(2024, 1, 10))
        assert runner.controller.eco_mode
        runner.refresh()
        assert not runner.controller.eco_mode
        runner.cycle(through=date(2024, 1, 10))
        assert len(fetcher.calls) == 2
    finally:
        runner.stop()


def test_start_and_stop(settings):
    runner = _runner(settings, RecordingFetcher())
    runner.start()
    runner.stop()
