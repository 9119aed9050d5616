import random
from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import make_tx
from pnl_ledger.ledger.fifo import FifoLedger, build_ledger, build_snapshot
from pnl_ledger.ledger.models import AssetType, Lot, OpKind, PositionSide, Side, SplitEvent, Transaction
from pnl_ledger.ledger.splits import adjust_transactions, default_splits
from pnl_ledger.ledger.symbols import build_contract_key


D1 = date(2024, 3, 4)
D2 = date(2024, 3, 5)
D3 = date(2024, 3, 6)


def test_fifo_closes_oldest_lots_first():
    result = build_ledger([
        make_tx("XYZ", 100, 10.0, D1),
        make_tx("XYZ", 50, 12.0, D2),
        make_tx("XYZ", -120, 15.0, D3),
    ])
    assert result.realized_pnl == pytest.approx(560.0)
    holding = result.holdings["XYZ|stock"]
    assert holding.lots == (Lot(30.0, 12.0, D2, 1.0),)
    assert holding.net_quantity == pytest.approx(30.0)
    assert holding.cost_basis == pytest.approx(360.0)
    assert holding.cost_per_unit == pytest.approx(12.0)
    assert holding.side is PositionSide.LONG

    first, second = result.audit_trail
    assert (first.open_date, first.quantity, first.pnl) == (D1, 100.0, 500.0)
    assert (second.open_date, second.quantity, second.pnl) == (D2, 20.0, 60.0)
    assert result.win_count == 2
    assert result.loss_count == 0


def test_short_then_cover_drops_zero_net_holding():
    result = build_ledger([
        make_tx("XYZ", -50, 20.0, D1),
        make_tx("XYZ", 50, 18.0, D2),
    ])
    assert result.realized_pnl == pytest.approx(100.0)
    assert result.holdings == {}
    assert result.audit.zero_net_dropped == 1
    assert result.audit.positions_produced == 0
    assert result.win_count == 1


def test_oversell_opens_short_lot():
    ledger = FifoLedger()
    ledger.apply_many([
        make_tx("XYZ", -50, 20.0, D1),
    ])
    holdings, _ = ledger.holdings()
    holding = holdings["XYZ|stock"]
    assert holding.side is PositionSide.SHORT
    assert holding.lots == (Lot(-50.0, 20.0, D1, 1.0),)
    assert holding.cost_basis == pytest.approx(1000.0)


def test_long_to_short_flip_in_one_trade():
    result = build_ledger([
        make_tx("XYZ", 10, 5.0, D1),
        make_tx("XYZ", -15, 6.0, D2),
    ])
    assert result.realized_pnl == pytest.approx(10.0)
    holding = result.holdings["XYZ|stock"]
    assert holding.net_quantity == pytest.approx(-5.0)
    assert holding.lots == (Lot(-5.0, 6.0, D2, 1.0),)


def test_loss_is_counted():
    result = build_ledger([
        make_tx("XYZ", 10, 5.0, D1),
        make_tx("XYZ", -10, 4.0, D2),
        make_tx("ABC", 10, 5.0, D1),
        make_tx("ABC", -10, 5.00000001, D2),
    ])
    assert result.loss_count == 1
    # A scratch trade is neither a win nor a loss
    assert result.win_count == 0


def test_unsorted_input_is_processed_chronologically():
    result = build_ledger([
        make_tx("XYZ", -120, 15.0, D3),
        make_tx("XYZ", 50, 12.0, D2),
        make_tx("XYZ", 100, 10.0, D1),
    ])
    assert result.realized_pnl == pytest.approx(560.0)


def test_same_timestamp_keeps_input_order():
    result = build_ledger([
        make_tx("XYZ", 10, 10.0, D1),
        make_tx("XYZ", 10, 20.0, D1),
        make_tx("XYZ", -10, 30.0, D2),
    ])
    assert result.realized_pnl == pytest.approx(200.0)
    assert result.holdings["XYZ|stock"].lots[0].cost == 20.0


def test_shorting_disabled_clamps_oversell():
    result = build_ledger(
        [make_tx("XYZ", 10, 5.0, D1), make_tx("XYZ", -15, 6.0, D2)],
        allow_short=False,
    )
    assert result.realized_pnl == pytest.approx(10.0)
    assert result.holdings == {}
    assert result.audit.anomaly_count == 1


def test_option_multiplier_and_contract_grouping():
    contract = build_contract_key("aapl", date(2025, 1, 17), "c", 200)
    result = build_ledger([
        make_tx("AAPL", 1, 2.5, D1, asset_type=AssetType.OPTION, contract_key=contract),
        make_tx("AAPL", 2, 2.0, D1, minute=1, asset_type=AssetType.OPTION, contract_key=contract),
        make_tx("AAPL", -1, 3.0, D2, asset_type=AssetType.OPTION, contract_key=contract),
        make_tx("AAPL", 100, 190.0, D1),
    ])
    assert result.realized_pnl == pytest.approx(50.0)
    option = result.holdings[f"{contract}|option"]
    assert option.multiplier == 100.0
    assert option.net_quantity == pytest.approx(2.0)
    assert option.cost_basis == pytest.approx(400.0)
    assert option.cost_per_unit == pytest.approx(2.0)
    assert result.holdings["AAPL|stock"].net_quantity == pytest.approx(100.0)
    assert result.audit_trail[0].symbol == contract


def test_data_quality_anomalies():
    ts = datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)
    result = build_ledger([
        Transaction("aapl ", 10, 100.0, ts),
        Transaction("AAPL", 5, 110.0, ts + timedelta(minutes=1),
                    asset_type=AssetType.STOCK, side=Side.SELL),
        Transaction("AAPL", 0, 0.0, ts + timedelta(minutes=2),
                    asset_type=AssetType.STOCK, op_kind=OpKind.SPLIT),
        Transaction("AAPL", None, 100.0, ts + timedelta(minutes=3), asset_type=AssetType.STOCK),
        Transaction(None, 1, 1.0, ts),
    ])
    holding = result.holdings["AAPL|stock"]
    assert holding.net_quantity == pytest.approx(5.0)
    assert result.realized_pnl == pytest.approx(50.0)

    notes = holding.anomalies
    assert "assumed:stock" in notes
    assert "side_inferred_from_qty" in notes
    assert "split_row_ignored" in notes
    assert "missing required field (quantity/price)" in notes
    assert any(n.startswith("qty_sign_mismatch") for n in notes)

    assert result.unattached_anomalies == ("tx_4: missing required field (symbol/timestamp)",)
    assert result.audit.tx_read == 5
    assert result.audit.tx_used == 2
    assert result.audit.anomaly_count == 6


def test_excluded_rows_are_logged(caplog):
    with caplog.at_level("WARNING"):
        build_ledger([Transaction("XYZ", 1, 1.0, None)])
    assert "missing symbol or timestamp" in caplog.text


def test_naive_timestamp_is_utc():
    # 02:00 UTC on the 5th is still the 4th in New York
    result = build_ledger([
        Transaction("XYZ", 1, 1.0, datetime(2024, 3, 5, 2, 0), asset_type=AssetType.STOCK, side=Side.BUY),
    ])
    assert result.holdings["XYZ|stock"].lots[0].opened_on == D1


def test_split_adjusts_pre_split_trades():
    result = build_ledger(
        [
            make_tx("NVDA", 10, 1000.0, date(2024, 6, 3)),
            make_tx("NVDA", -100, 120.0, date(2024, 6, 12)),
        ],
        splits=default_splits(),
    )
    assert result.holdings == {}
    assert result.realized_pnl == pytest.approx(2000.0)
    event = result.audit_trail[0]
    assert event.quantity == pytest.approx(100.0)
    assert event.open_price == pytest.approx(100.0)


def test_split_cutoff_ignores_later_splits():
    splits = [SplitEvent("XYZ", date(2024, 6, 10), 2.0)]
    result = build_ledger([make_tx("XYZ", 10, 50.0, D1)], splits=splits, split_cutoff=date(2024, 5, 31))
    assert result.holdings["XYZ|stock"].net_quantity == pytest.approx(10.0)


def _random_history(seed: int, n: int = 200) -> list[Transaction]:
    rng = random.Random(seed)
    start = datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc)
    txs = []
    for i in range(n):
        qty = rng.choice([-1, 1]) * rng.randint(1, 40)
        txs.append(Transaction(
            symbol=rng.choice(["AAA", "BBB", "CCC"]),
            quantity=float(qty),
            price=float(rng.randint(50, 150)),
            timestamp=start + timedelta(hours=7 * i),
            asset_type=AssetType.STOCK,
            side=Side.BUY if qty > 0 else Side.SELL,
        ))
    rng.shuffle(txs)
    return txs


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_lot_quantities_match_running_sum(seed):
    txs = _random_history(seed)
    naive: dict[str, float] = {}
    for tx in txs:
        naive[tx.symbol] = naive.get(tx.symbol, 0.0) + tx.quantity

    result = build_ledger(txs)
    for symbol, expected in naive.items():
        key = f"{symbol}|stock"
        if expected == 0:
            assert key not in result.holdings
            continue
        holding = result.holdings[key]
        assert holding.net_quantity == expected
        assert sum(lot.quantity for lot in holding.lots) == expected


@pytest.mark.parametrize("seed", [4, 5])
def test_snapshot_resume_matches_full_replay(seed):
    txs = _random_history(seed)
    full = build_ledger(txs)

    snapshot = build_snapshot(txs, date(2024, 2, 15))
    resumed = build_ledger(txs, snapshot=snapshot)

    assert resumed.holdings == full.holdings
    assert resumed.realized_pnl == full.realized_pnl
    assert resumed.audit_trail == full.audit_trail
    assert resumed.win_count == full.win_count
    assert resumed.loss_count == full.loss_count
    assert resumed.audit.anomaly_count == full.audit.anomaly_count
    assert resumed.audit.zero_net_dropped == full.audit.zero_net_dropped


def test_snapshot_with_other_split_table_is_ignored(caplog):
    txs = [
        make_tx("NVDA", 10, 1000.0, date(2024, 6, 3)),
        make_tx("NVDA", -50, 120.0, date(2024, 6, 12)),
    ]
    stale = build_snapshot(txs, date(2024, 6, 5), splits=[])
    with caplog.at_level("WARNING"):
        resumed = build_ledger(txs, splits=default_splits(), snapshot=stale)
    full = build_ledger(txs, splits=default_splits())
    assert "split table changed" in caplog.text
    assert resumed.holdings == full.holdings
    assert resumed.realized_pnl == full.realized_pnl


def test_seed_requires_fresh_ledger():
    ledger = FifoLedger()
    ledger.apply_many([make_tx("XYZ", 1, 1.0, D1)])
    with pytest.raises(RuntimeError):
        ledger.seed(ledger.checkpoint(D1))


def test_seed_records_resume_point():
    txs = [make_tx("XYZ", 5, 10.0, D1), make_tx("XYZ", -5, 12.0, D3)]
    ledger = FifoLedger()
    assert ledger.resumed_from is None
    assert ledger.seed(build_snapshot(txs, D2))
    assert ledger.resumed_from == D2
    ledger.apply_many(txs)
    assert ledger.realized_pnl == pytest.approx(10.0)


def test_zero_quantity_is_excluded():
    result = build_ledger([make_tx("XYZ", 0, 10.0, D1)])
    assert result.holdings == {}
    assert result.audit.zero_net_dropped == 0
    assert result.audit.tx_used == 0
    assert result.unattached_anomalies == ("XYZ|stock: zero_quantity",)

    result = build_ledger([make_tx("XYZ", 5, 10.0, D1), make_tx("XYZ", 0, 11.0, D2)])
    assert result.holdings["XYZ|stock"].anomalies == ("zero_quantity",)
    assert result.audit.tx_used == 1


@pytest.mark.parametrize("seed", [6, 7])
def test_lot_quantities_match_split_adjusted_running_sum(seed):
    txs = _random_history(seed)
    splits = [SplitEvent("AAA", date(2024, 2, 1), 2.0)]
    naive: dict[str, float] = {}
    for tx in adjust_transactions(txs, splits):
        naive[tx.symbol] = naive.get(tx.symbol, 0.0) + tx.quantity

    result = build_ledger(txs, splits=splits)
    for symbol, expected in naive.items():
        key = f"{symbol}|stock"
        if abs(expected) < 1e-9:
            assert key not in result.holdings
            continue
        holding = result.holdings[key]
        assert holding.net_quantity == pytest.approx(expected)
        assert sum(lot.quantity for lot in holding.lots) == pytest.approx(expected)
