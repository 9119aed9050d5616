from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Sequence

from pnl_ledger.config import Settings
from pnl_ledger.ledger.symbols import normalize_symbol
from pnl_ledger.prices.fetcher import FetchOutcome
from pnl_ledger.prices.status import (
    DISPATCHABLE,
    PRICED,
    TERMINAL,
    PriceStatus,
    check_transition,
)

logger = logging.getLogger(__name__)

MANUAL_PROVIDER = "manual"


def record_key(price_date: date, symbol: str) -> str:
    return f"{price_date.isoformat()}_{normalize_symbol(symbol)}"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class PriceRecord:
    symbol: str
    price_date: date
    close: float | None
    status: PriceStatus
    provider: str = ""
    note: str = ""
    retrieved_at: str | None = None
    attempts: int = 0

    @property
    def key(self) -> str:
        return record_key(self.price_date, self.symbol)

    @property
    def usable_close(self) -> float | None:
        """Close usable for valuation, None when the record carries no price."""
        if self.status in PRICED and self.close is not None and self.close > 0:
            return self.close
        return None


def _row_to_record(row: sqlite3.Row) -> PriceRecord:
    return PriceRecord(
        symbol=row["symbol"],
        price_date=date.fromisoformat(row["price_date"]),
        close=row["close"],
        status=PriceStatus(row["status"]),
        provider=row["provider"],
        note=row["note"],
        retrieved_at=row["retrieved_at"],
        attempts=row["attempts"],
    )


def _validate(record: PriceRecord) -> None:
    if record.status is PriceStatus.OK and (record.close is None or record.close <= 0):
        raise ValueError(f"ok price for {record.key} requires a positive close, got {record.close!r}")


class PriceStore:
    """Persisted daily close records keyed ``{YYYY-MM-DD}_{SYMBOL}``.

    Automatic writers go through the status machine: an ``ok`` record is
    never overwritten and terminal records are left alone. The manual
    repair methods at the bottom bypass those rules on purpose.
    """

    def __init__(self, conn: sqlite3.Connection, settings: Settings | None = None) -> None:
        self._conn = conn
        self._settings = settings or Settings()

    # -- Reads -------------------------------------------------------------------

    def get(self, symbol: str, price_date: date) -> PriceRecord | None:
        row = self._conn.execute(
            "SELECT * FROM price_records WHERE record_key = ?",
            (record_key(price_date, symbol),),
        ).fetchone()
        return _row_to_record(row) if row else None

    def get_many(self, keys: Iterable[tuple[date, str]]) -> dict[tuple[date, str], PriceRecord]:
        wanted = {record_key(d, s): (d, normalize_symbol(s)) for d, s in keys}
        result: dict[tuple[date, str], PriceRecord] = {}
        if not wanted:
            return result
        key_list = list(wanted)
        # Stay under SQLite's bound-parameter limit
        for i in range(0, len(key_list), 500):
            chunk = key_list[i:i + 500]
            placeholders = ",".join("?" * len(chunk))
            rows = self._conn.execute(
                f"SELECT * FROM price_records WHERE record_key IN ({placeholders})", chunk
            ).fetchall()
            for row in rows:
                result[wanted[row["record_key"]]] = _row_to_record(row)
        return result

    def _range_rows(self, symbols: Sequence[str], start: date, end: date) -> list[sqlite3.Row]:
        norm = sorted({normalize_symbol(s) for s in symbols})
        if not norm:
            return []
        placeholders = ",".join("?" * len(norm))
        return self._conn.execute(
            f"SELECT * FROM price_records WHERE symbol IN ({placeholders}) "
            "AND price_date >= ? AND price_date <= ? ORDER BY price_date, symbol",
            (*norm, start.isoformat(), end.isoformat()),
        ).fetchall()

    def load_price_map(self, symbols: Sequence[str], start: date, end: date) -> dict[str, PriceRecord]:
        """All records in range keyed by ``{date}_{symbol}``."""
        return {row["record_key"]: _row_to_record(row) for row in self._range_rows(symbols, start, end)}

    def statuses(
        self, symbols: Sequence[str], start: date, end: date
    ) -> dict[tuple[date, str], PriceStatus]:
        return {
            (date.fromisoformat(row["price_date"]), row["symbol"]): PriceStatus(row["status"])
            for row in self._range_rows(symbols, start, end)
        }

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) AS n FROM price_records").fetchone()["n"]

    # -- Writes ------------------------------------------------------------------

    def _write(self, records: list[PriceRecord]) -> int:
        """Write records, committing every ``write_chunk_size`` rows."""
        chunk_size = max(1, self._settings.write_chunk_size)
        now = _utcnow().isoformat()
        for i in range(0, len(records), chunk_size):
            chunk = records[i:i + chunk_size]
            self._conn.executemany(
                "INSERT OR REPLACE INTO price_records "
                "(record_key, symbol, price_date, close, status, provider, note, "
                "retrieved_at, attempts, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        r.key, normalize_symbol(r.symbol), r.price_date.isoformat(), r.close,
                        r.status.value, r.provider, r.note, r.retrieved_at, r.attempts, now,
                    )
                    for r in chunk
                ],
            )
            self._conn.commit()
        return len(records)

    def upsert(self, record: PriceRecord) -> bool:
        """Write one record through the status machine. Returns False if skipped."""
        _validate(record)
        existing = self.get(record.symbol, record.price_date)
        if existing is not None and existing.status in TERMINAL:
            return False
        # A direct write is an implicit fetch: unsatisfied -> pending -> result
        check_transition(PriceStatus.PENDING, record.status)
        self._write([record])
        return True

    def mark_pending(self, price_date: date, symbols: Sequence[str]) -> list[str]:
        """Move dispatchable records to pending. Returns the symbols marked."""
        existing = self.get_many((price_date, s) for s in symbols)
        records = []
        for sym in symbols:
            norm = normalize_symbol(sym)
            current = existing.get((price_date, norm))
            if current is not None and current.status not in DISPATCHABLE:
                continue
            records.append(PriceRecord(
                symbol=norm,
                price_date=price_date,
                close=current.close if current else None,
                status=PriceStatus.PENDING,
                provider=current.provider if current else "",
                note=current.note if current else "",
                retrieved_at=current.retrieved_at if current else None,
                attempts=current.attempts if current else 0,
            ))
        self._write(records)
        return [r.symbol for r in records]

    def apply_outcomes(self, price_date: date, outcomes: Iterable[FetchOutcome]) -> int:
        """Persist fetch outcomes for one date. Returns the number of records written.

        Existing ``ok`` and other terminal records are left untouched, so
        replaying the same outcomes is a no-op.
        """
        outcomes = list(outcomes)
        existing = self.get_many((price_date, o.symbol) for o in outcomes)
        retrieved_at = _utcnow().isoformat()
        records = []
        for outcome in outcomes:
            norm = normalize_symbol(outcome.symbol)
            current = existing.get((price_date, norm))
            if current is not None and current.status in TERMINAL:
                logger.debug("Skipping %s on %s: already %s", norm, price_date, current.status.value)
                continue

            status = outcome.status
            close = outcome.close
            note = outcome.note
            attempts = current.attempts if current else 0

            if status is PriceStatus.OK and (close is None or close <= 0):
                logger.warning("Provider %s returned invalid close %r for %s on %s",
                               outcome.provider, close, norm, price_date)
                status, close, note = PriceStatus.ERROR, None, f"invalid close {outcome.close!r}"

            if status is PriceStatus.ERROR:
                attempts += 1
                if attempts >= self._settings.max_error_attempts:
                    logger.warning("Giving up on %s %s after %d failed attempts", norm, price_date, attempts)
                    status = PriceStatus.MISSING_VENDOR
                    note = f"gave up after {attempts} attempts: {note}".strip(": ")

            check_transition(PriceStatus.PENDING, status)
            records.append(PriceRecord(
                symbol=norm,
                price_date=price_date,
                close=close if status in PRICED else None,
                status=status,
                provider=outcome.provider,
                note=note,
                retrieved_at=retrieved_at,
                attempts=attempts,
            ))
        return self._write(records)

    def save_estimate(
        self,
        symbol: str,
        price_date: date,
        close: float,
        status: PriceStatus,
        provider: str,
        note: str = "",
    ) -> bool:
        """Store an estimated close, flagged by a plan_limited/no_liquidity status."""
        if status not in (PriceStatus.PLAN_LIMITED, PriceStatus.NO_LIQUIDITY):
            raise ValueError(f"{status.value} is not an estimate status")
        if close is None or close <= 0:
            raise ValueError(f"estimate for {symbol} on {price_date} requires a positive close")
        existing = self.get(symbol, price_date)
        if existing is not None and existing.status in TERMINAL:
            return False
        self._write([PriceRecord(
            symbol=normalize_symbol(symbol),
            price_date=price_date,
            close=close,
            status=status,
            provider=provider,
            note=note,
            retrieved_at=_utcnow().isoformat(),
            attempts=existing.attempts if existing else 0,
        )])
        return True

    def mark_market_closed(self, price_date: date, symbols: Sequence[str], note: str = "") -> int:
        existing = self.get_many((price_date, s) for s in symbols)
        records = [
            PriceRecord(normalize_symbol(s), price_date, None, PriceStatus.MARKET_CLOSED, "calendar", note)
            for s in symbols
            if (price_date, normalize_symbol(s)) not in existing
            or existing[(price_date, normalize_symbol(s))].status not in TERMINAL
        ]
        return self._write(records)

    def fail_stale_pending(self, now: datetime | None = None, timeout_seconds: float | None = None) -> int:
        """Turn pending records older than the timeout into errors so they can be retried."""
        now = now or _utcnow()
        timeout = timeout_seconds if timeout_seconds is not None else self._settings.pending_timeout_seconds
        cutoff = (now - timedelta(seconds=timeout)).isoformat()
        rows = self._conn.execute(
            "SELECT * FROM price_records WHERE status = ? AND updated_at < ?",
            (PriceStatus.PENDING.value, cutoff),
        ).fetchall()
        records = [
            replace(_row_to_record(r), status=PriceStatus.ERROR, note="pending timed out")
            for r in rows
        ]
        if records:
            logger.warning("Failing %d stale pending price records", len(records))
        return self._write(records)

    # -- Manual repair -----------------------------------------------------------

    def manual_repair(self, symbol: str, price_date: date, close: float, note: str = "") -> PriceRecord:
        """Force a confirmed close, overriding whatever is stored."""
        record = PriceRecord(
            symbol=normalize_symbol(symbol),
            price_date=price_date,
            close=close,
            status=PriceStatus.OK,
            provider=MANUAL_PROVIDER,
            note=note or "manual repair",
            retrieved_at=_utcnow().isoformat(),
        )
        _validate(record)
        self._write([record])
        logger.info("Manual repair: %s on %s close=%.4f", record.symbol, price_date, close)
        return record

    def reset_for_retry(self, symbol: str, price_date: date) -> bool:
        """Put a non-ok record back to missing with a fresh attempt count."""
        existing = self.get(symbol, price_date)
        if existing is None or existing.status is PriceStatus.OK:
            return False
        self._write([PriceRecord(existing.symbol, price_date, None, PriceStatus.MISSING, note="reset")])
        return True

    def purge_estimates(self, symbols: Sequence[str] | None = None) -> int:
        """Delete plan_limited/no_liquidity records so the next gap pass re-requests them."""
        sql = "DELETE FROM price_records WHERE status IN (?, ?)"
        params: list = [PriceStatus.PLAN_LIMITED.value, PriceStatus.NO_LIQUIDITY.value]
        if symbols:
            norm = sorted({normalize_symbol(s) for s in symbols})
            sql += f" AND symbol IN ({','.join('?' * len(norm))})"
            params.extend(norm)
        cur = self._conn.execute(sql, params)
        self._conn.commit()
        logger.info("Purged %d estimated price records", cur.rowcount)
        return cur.rowcount
