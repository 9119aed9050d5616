from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_DEFAULT_DB_PATH = _PROJECT_ROOT / "data" / "pnl_ledger.db"


# -- Stock splits ---------------------------------------------------------------
# Fallback table used when the database holds no split rows for a symbol.
# (symbol, effective NY trading day, new shares per old share)

DEFAULT_STOCK_SPLITS: tuple[tuple[str, date, float], ...] = (
    ("NFLX", date(2015, 7, 15), 7.0),
    ("TSLA", date(2022, 8, 25), 3.0),
    ("NVDA", date(2024, 6, 10), 10.0),
    ("NFLX", date(2025, 11, 17), 10.0),
)


# -- Auto-heal defaults -----------------------------------------------------------

MAX_BATCH_SYMBOLS = 10
RETRY_DELAY_SECONDS = 300
SESSION_DISPATCH_BUDGET = 40
DEFERRED_RECHECK_SECONDS = 30
COOLDOWN_SECONDS = 2
REQUEST_PACING_SECONDS = 0.25
# SQLite has no hard write limit but the store mirrors the 500-op batch
# ceiling of the hosted store the records are synced to.
WRITE_CHUNK_SIZE = 400
MAX_ERROR_ATTEMPTS = 3
PENDING_TIMEOUT_SECONDS = 600
HEAL_INTERVAL_SECONDS = 60

POSITION_EPSILON = 1e-6


def _load_env_file() -> dict[str, str]:
    """Read key=value pairs from .env at project root."""
    env_path = _PROJECT_ROOT / ".env"
    if not env_path.exists():
        return {}
    result = {}
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        result[key.strip()] = value.strip()
    return result


def _env(name: str) -> str | None:
    value = os.environ.get(name)
    if value:
        return value
    return _load_env_file().get(name)


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    return float(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    db_path: Path = field(default_factory=lambda: Path(
        _env("PNL_DB_PATH") or str(_DEFAULT_DB_PATH)
    ))
    max_batch_symbols: int = field(
        default_factory=lambda: _env_int("PNL_MAX_BATCH_SYMBOLS", MAX_BATCH_SYMBOLS)
    )
    retry_delay_seconds: float = field(
        default_factory=lambda: _env_float("PNL_RETRY_DELAY_SECONDS", RETRY_DELAY_SECONDS)
    )
    session_dispatch_budget: int = field(
        default_factory=lambda: _env_int("PNL_SESSION_BUDGET", SESSION_DISPATCH_BUDGET)
    )
    deferred_recheck_seconds: float = field(
        default_factory=lambda: _env_float("PNL_DEFERRED_RECHECK_SECONDS", DEFERRED_RECHECK_SECONDS)
    )
    cooldown_seconds: float = COOLDOWN_SECONDS
    request_pacing_seconds: float = field(
        default_factory=lambda: _env_float("PNL_REQUEST_PACING_SECONDS", REQUEST_PACING_SECONDS)
    )
    write_chunk_size: int = field(
        default_factory=lambda: _env_int("PNL_WRITE_CHUNK_SIZE", WRITE_CHUNK_SIZE)
    )
    max_error_attempts: int = field(
        default_factory=lambda: _env_int("PNL_MAX_ERROR_ATTEMPTS", MAX_ERROR_ATTEMPTS)
    )
    pending_timeout_seconds: float = PENDING_TIMEOUT_SECONDS
    heal_interval_seconds: float = field(
        default_factory=lambda: _env_float("PNL_HEAL_INTERVAL_SECONDS", HEAL_INTERVAL_SECONDS)
    )
    position_epsilon: float = POSITION_EPSILON
