from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Protocol, Sequence

import pandas as pd
import yfinance as yf

from pnl_ledger.config import REQUEST_PACING_SECONDS
from pnl_ledger.ledger.models import SplitEvent
from pnl_ledger.ledger.splits import unadjust_vendor_close
from pnl_ledger.market_calendar import holiday_name, is_trading_day
from pnl_ledger.prices.status import PriceStatus

logger = logging.getLogger(__name__)

YFINANCE_PROVIDER = "yfinance"


@dataclass(frozen=True)
class FetchOutcome:
    symbol: str
    status: PriceStatus
    close: float | None = None
    provider: str = ""
    note: str = ""


@dataclass(frozen=True)
class BackfillResponse:
    """Result of one backfill request.

    ``queued`` means the provider accepted the request for asynchronous
    processing; records will show up in the store later.
    """
    outcomes: tuple[FetchOutcome, ...] = ()
    queued: bool = False


class BackfillFetcher(Protocol):
    def fetch(self, price_date: date, symbols: Sequence[str]) -> BackfillResponse: ...


class YFinanceBackfillFetcher:
    """Fetch single-day closes from yfinance, one symbol per request."""

    def __init__(
        self,
        splits: Sequence[SplitEvent] = (),
        pacing_seconds: float = REQUEST_PACING_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.splits = tuple(splits)
        self._pacing = pacing_seconds
        self._sleep = sleep

    def fetch(self, price_date: date, symbols: Sequence[str]) -> BackfillResponse:
        if not is_trading_day(price_date):
            note = holiday_name(price_date) or "weekend"
            return BackfillResponse(tuple(
                FetchOutcome(sym, PriceStatus.MARKET_CLOSED, provider=YFINANCE_PROVIDER, note=note)
                for sym in symbols
            ))

        outcomes = []
        for i, sym in enumerate(symbols):
            if i and self._pacing > 0:
                self._sleep(self._pacing)
            outcomes.append(self._fetch_one(price_date, sym))
        return BackfillResponse(tuple(outcomes))

    def _fetch_one(self, price_date: date, symbol: str) -> FetchOutcome:
        try:
            df = yf.download(
                symbol,
                start=price_date.isoformat(),
                end=(price_date + timedelta(days=1)).isoformat(),
                progress=False,
                auto_adjust=False,
            )
        except Exception as exc:
            logger.warning("yfinance download failed for %s on %s: %s", symbol, price_date, exc)
            return FetchOutcome(symbol, PriceStatus.ERROR, provider=YFINANCE_PROVIDER, note=str(exc))

        if df is None or df.empty:
            return FetchOutcome(symbol, PriceStatus.MISSING_VENDOR, provider=YFINANCE_PROVIDER,
                                note="no rows returned")

        # yfinance 1.1+ always returns MultiIndex columns (Price, Ticker)
        if isinstance(df.columns, pd.MultiIndex):
            df.columns = df.columns.get_level_values(0)
            df = df.loc[:, ~df.columns.duplicated()]

        if "Close" not in df.columns:
            logger.warning("No Close column for %s after download", symbol)
            return FetchOutcome(symbol, PriceStatus.MISSING_VENDOR, provider=YFINANCE_PROVIDER,
                                note="no Close column")

        for dt_idx, row in df.iterrows():
            if dt_idx.date() != price_date:
                continue
            close_val = row["Close"]
            if hasattr(close_val, "__len__") and not isinstance(close_val, str):
                close_val = close_val.iloc[0]
            close = float(close_val)
            if math.isnan(close) or close <= 0:
                return FetchOutcome(symbol, PriceStatus.MISSING_VENDOR, provider=YFINANCE_PROVIDER,
                                    note=f"unusable close {close_val!r}")
            # Vendor closes are back-adjusted for later splits
            close = unadjust_vendor_close(close, symbol, price_date, self.splits)
            return FetchOutcome(symbol, PriceStatus.OK, close=close, provider=YFINANCE_PROVIDER)

        return FetchOutcome(symbol, PriceStatus.MISSING_VENDOR, provider=YFINANCE_PROVIDER,
                            note=f"no row for {price_date}")
