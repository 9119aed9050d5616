from datetime import date

import pytest

from conftest import make_tx
from pnl_ledger.attribution.engine import AttributionStatus
from pnl_ledger.attribution.worker import (
    AttributionWorker,
    attribute_periods,
    attribute_range,
    attribution_fingerprint,
)
from pnl_ledger.database import queries
from pnl_ledger.ledger.splits import default_splits, split_fingerprint
from pnl_ledger.prices.status import PriceStatus
from pnl_ledger.prices.store import PriceRecord, PriceStore, record_key
from pnl_ledger.snapshots import build_month_end_snapshots

JAN_2 = date(2024, 1, 2)
JAN_3 = date(2024, 1, 3)
JAN_4 = date(2024, 1, 4)


def test_fingerprint_components():
    txs = [make_tx("XYZ", 1, 1.0, JAN_2, tx_id="t-1"), make_tx("XYZ", 1, 1.0, JAN_3, tx_id="t-2")]
    fp = attribution_fingerprint(JAN_3, txs, [], 12)
    assert fp == f"pnl_v1_2024-01-03_2_t-2_{split_fingerprint([])}_12"
    assert attribution_fingerprint(JAN_3, [], [], 0).startswith("pnl_v1_2024-01-03_0_none_")
    assert fp != attribution_fingerprint(JAN_3, txs, default_splits(), 12)


def test_worker_memoizes_by_fingerprint():
    txs = [make_tx("XYZ", 10, 10.0, JAN_2, tx_id="t-1")]
    prices = {record_key(JAN_2, "XYZ"): 10.0, record_key(JAN_3, "XYZ"): 11.0}
    worker = AttributionWorker()
    try:
        first = worker.submit([JAN_3], txs, prices)
        second = worker.submit([JAN_3], txs, prices)
        assert first is second
        assert first.result(timeout=5)[JAN_3].total == pytest.approx(10.0)

        prices[record_key(date(2024, 1, 4), "XYZ")] = 12.0
        third = worker.submit([JAN_3], txs, prices)
        assert third is not first
    finally:
        worker.shutdown()


def test_failed_runs_are_not_cached():
    worker = AttributionWorker()
    try:
        bad = worker.submit([JAN_3], [make_tx("XYZ", 1, 1.0, JAN_2)], {record_key(JAN_2, "XYZ"): "nan?"})
        with pytest.raises(ValueError):
            bad.result(timeout=5)
        retry = worker.submit([JAN_3], [make_tx("XYZ", 1, 1.0, JAN_2)], {record_key(JAN_2, "XYZ"): "nan?"})
        assert retry is not bad
    finally:
        worker.shutdown()


def test_attribute_range_from_database(in_memory_db):
    for tx in [make_tx("XYZ", 10, 10.0, date(2023, 12, 28), tx_id="t-1"),
               make_tx("XYZ", -4, 12.0, JAN_3, tx_id="t-2")]:
        queries.insert_transaction(in_memory_db, tx)
    in_memory_db.commit()
    store = PriceStore(in_memory_db)
    store.upsert(PriceRecord("XYZ", JAN_2, 11.0, PriceStatus.OK))
    store.upsert(PriceRecord("XYZ", JAN_3, 11.5, PriceStatus.OK))
    build_month_end_snapshots(in_memory_db, queries.get_transactions(in_memory_db), default_splits(),
                              through=JAN_2)

    results = attribute_range(in_memory_db, JAN_3, JAN_3)
    day = results[JAN_3]
    assert day.status is AttributionStatus.OK
    assert day.realized == pytest.approx(8.0)
    # 10 shares marked 11 -> 6 shares marked 11.5 after selling 4 at 12
    assert day.total == pytest.approx(8.0 + 6 * 1.5 - 10 * 1.0)


def test_cache_key_covers_requested_days():
    txs = [make_tx("XYZ", 10, 10.0, JAN_2, tx_id="t-1")]
    prices = {record_key(d, "XYZ"): c for d, c in [(JAN_2, 10.0), (JAN_3, 11.0), (JAN_4, 12.0)]}
    worker = AttributionWorker()
    try:
        only_last = worker.submit([JAN_4], txs, prices).result(timeout=5)
        both = worker.submit([JAN_3, JAN_4], txs, prices).result(timeout=5)
        assert set(only_last) == {JAN_4}
        assert set(both) == {JAN_3, JAN_4}
        assert both[JAN_3].total == pytest.approx(10.0)
        assert worker.submit([JAN_4, JAN_3, JAN_4], txs, prices).result(timeout=5) is both
    finally:
        worker.shutdown()


def test_attribute_periods_from_database(in_memory_db):
    queries.insert_transaction(in_memory_db, make_tx("XYZ", 10, 10.0, JAN_2, tx_id="t-1"))
    in_memory_db.commit()
    store = PriceStore(in_memory_db)
    store.upsert(PriceRecord("XYZ", JAN_2, 10.0, PriceStatus.OK))
    store.upsert(PriceRecord("XYZ", JAN_3, 11.0, PriceStatus.OK))

    totals = attribute_periods(in_memory_db, JAN_3)
    assert set(totals) == {"wtd", "mtd", "ytd"}
    for total in totals.values():
        assert total.start == date(2024, 1, 1)
        assert total.total == pytest.approx(10.0)
        assert total.counted_days == 3
        assert total.missing_days == ()
