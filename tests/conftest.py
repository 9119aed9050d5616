import sqlite3
from datetime import date, datetime, timezone

import pytest

from pnl_ledger.config import Settings
from pnl_ledger.database.schema import initialize_schema
from pnl_ledger.ledger.models import AssetType, Side, Transaction


@pytest.fixture
def in_memory_db():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    initialize_schema(conn)
    return conn


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=tmp_path / "test.db",
        max_batch_symbols=3,
        retry_delay_seconds=300,
        session_dispatch_budget=5,
        deferred_recheck_seconds=30,
        cooldown_seconds=2,
        request_pacing_seconds=0,
        write_chunk_size=2,
        max_error_attempts=3,
    )


def make_tx(symbol, quantity, price, day: date, minute: int = 0, **kwargs) -> Transaction:
    """A trade during the NY session (15:00 UTC is 10:00/11:00 in New York)."""
    kwargs.setdefault("side", Side.BUY if quantity > 0 else Side.SELL)
    kwargs.setdefault("asset_type", AssetType.STOCK)
    return Transaction(
        symbol=symbol,
        quantity=quantity,
        price=price,
        timestamp=datetime(day.year, day.month, day.day, 15, minute, tzinfo=timezone.utc),
        **kwargs,
    )
