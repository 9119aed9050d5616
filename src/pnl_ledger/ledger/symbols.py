from __future__ import annotations

import re
import unicodedata
from datetime import date

_WHITESPACE = re.compile(r"\s+")
_NON_OCC = re.compile(r"[^A-Z0-9.]")


def normalize_symbol(raw: str | None) -> str:
    """NFKC-normalize, drop all whitespace and upper-case a ticker."""
    if not raw:
        return ""
    return _WHITESPACE.sub("", unicodedata.normalize("NFKC", raw)).upper()


def sanitize_underlying(ticker: str) -> str:
    return _NON_OCC.sub("", ticker.strip().upper())[:6]


def format_strike(strike: float) -> str:
    if strike < 0:
        raise ValueError("Strike price must be a non-negative number")
    return f"{round(strike * 1000):08d}"


def build_contract_key(underlying: str, expiry: date, right: str, strike: float) -> str:
    """Compact OCC option identity, e.g. AAPL250117C00200000."""
    right = right.upper()
    if right not in ("C", "P"):
        raise ValueError(f"Option right must be 'C' or 'P', got {right!r}")
    return f"{sanitize_underlying(underlying)}{expiry:%y%m%d}{right}{format_strike(strike)}"
