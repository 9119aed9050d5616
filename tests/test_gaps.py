from datetime import date

import pytest

from conftest import make_tx
from pnl_ledger.gaps import GapTask, detect_gaps, required_days
from pnl_ledger.ledger.models import AssetType, SplitEvent
from pnl_ledger.market_calendar import trading_days
from pnl_ledger.prices.status import PriceStatus
from pnl_ledger.prices.store import PriceRecord, PriceStore

JAN_2 = date(2024, 1, 2)
JAN_5 = date(2024, 1, 5)
JAN_10 = date(2024, 1, 10)
JAN_11 = date(2024, 1, 11)


@pytest.fixture
def store(in_memory_db, settings):
    return PriceStore(in_memory_db, settings)


def _held_jan_2_to_10():
    return [make_tx("XYZ", 10, 100.0, JAN_2), make_tx("XYZ", -10, 105.0, JAN_11)]


def test_required_days_for_position_held_over_weekend():
    required = required_days(_held_jan_2_to_10(), through=date(2024, 1, 31))
    assert required["XYZ"] == trading_days(JAN_2, JAN_10)
    assert len(required["XYZ"]) == 7


def test_single_missing_day_yields_one_gap(store):
    for day in trading_days(JAN_2, JAN_10):
        if day != JAN_5:
            store.upsert(PriceRecord("XYZ", day, 100.0, PriceStatus.OK))
    gaps = detect_gaps(_held_jan_2_to_10(), store, through=date(2024, 1, 31))
    assert gaps == [GapTask(JAN_5, "XYZ", PriceStatus.MISSING)]


def test_intraday_round_trip_needs_no_price():
    txs = [make_tx("XYZ", 10, 100.0, JAN_5), make_tx("XYZ", -10, 101.0, JAN_5, minute=30)]
    assert required_days(txs, through=JAN_10) == {}


def test_closed_before_close_is_not_required():
    txs = [
        make_tx("XYZ", 10, 100.0, JAN_2),
        make_tx("XYZ", -10, 101.0, JAN_5),
        make_tx("XYZ", 5, 99.0, JAN_10),
    ]
    required = required_days(txs, through=JAN_11)
    assert required["XYZ"] == [JAN_2, date(2024, 1, 3), date(2024, 1, 4), JAN_10, JAN_11]


def test_short_positions_need_prices():
    required = required_days([make_tx("XYZ", -5, 100.0, JAN_10)], through=JAN_11)
    assert required["XYZ"] == [JAN_10, JAN_11]


def test_split_adjusted_round_trip_closes_position():
    splits = [SplitEvent("XYZ", date(2024, 1, 8), 2.0)]
    txs = [make_tx("XYZ", 10, 100.0, JAN_2), make_tx("XYZ", -20, 55.0, JAN_10)]
    required = required_days(txs, through=JAN_11, splits=splits)
    assert required["XYZ"][-1] == date(2024, 1, 9)


def test_satisfied_statuses_are_not_gaps(store):
    txs = [make_tx("XYZ", 10, 100.0, JAN_2)]
    store.upsert(PriceRecord("XYZ", JAN_2, None, PriceStatus.NO_LIQUIDITY))
    store.upsert(PriceRecord("XYZ", date(2024, 1, 3), None, PriceStatus.MISSING_VENDOR))
    store.mark_pending(date(2024, 1, 4), ["XYZ"])
    gaps = detect_gaps(txs, store, through=date(2024, 1, 4))
    assert [(g.date, g.status) for g in gaps] == [
        (date(2024, 1, 3), PriceStatus.MISSING_VENDOR),
        (date(2024, 1, 4), PriceStatus.PENDING),
    ]


def test_option_gaps_use_contract_key(store):
    contract = "XYZ240119C00100000"
    txs = [make_tx("XYZ", 1, 2.0, JAN_10, asset_type=AssetType.OPTION, contract_key=contract)]
    gaps = detect_gaps(txs, store, through=JAN_11)
    assert {g.symbol for g in gaps} == {contract}


def test_stock_and_uncoded_option_positions_do_not_net():
    # Long stock and a short option without a contract key share a price
    # symbol but are separate positions
    txs = [
        make_tx("XYZ", 1, 100.0, JAN_2),
        make_tx("XYZ", -1, 2.0, JAN_2, asset_type=AssetType.OPTION),
    ]
    required = required_days(txs, through=date(2024, 1, 4))
    assert required == {"XYZ": [JAN_2, date(2024, 1, 3), date(2024, 1, 4)]}
