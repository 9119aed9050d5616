from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import pandas as pd

from pnl_ledger.ledger.fifo import WIN_LOSS_THRESHOLD
from pnl_ledger.ledger.models import AuditEvent, Holding

AUDIT_COLUMNS = [
    "symbol", "open_date", "close_date", "open_price", "close_price",
    "quantity", "pnl", "multiplier", "holding_days",
]


@dataclass(frozen=True)
class WinLossStats:
    win_count: int
    loss_count: int
    win_rate: float | None
    avg_win: float | None
    avg_loss: float | None
    pnl_ratio: float | None
    expectancy: float | None


def audit_frame(audit_trail: Sequence[AuditEvent]) -> pd.DataFrame:
    """One row per closed lot slice."""
    if not audit_trail:
        return pd.DataFrame(columns=AUDIT_COLUMNS)
    df = pd.DataFrame([
        {
            "symbol": e.symbol,
            "open_date": e.open_date,
            "close_date": e.close_date,
            "open_price": e.open_price,
            "close_price": e.close_price,
            "quantity": e.quantity,
            "pnl": e.pnl,
            "multiplier": e.multiplier,
        }
        for e in audit_trail
    ])
    df["holding_days"] = (pd.to_datetime(df["close_date"]) - pd.to_datetime(df["open_date"])).dt.days
    return df[AUDIT_COLUMNS]


def win_rate_stats(audit_trail: Sequence[AuditEvent]) -> WinLossStats:
    """Win/loss statistics over closing events.

    Events with |pnl| <= 1e-4 are scratches and count as neither.
    avg_loss is reported as a positive magnitude.
    """
    df = audit_frame(audit_trail)
    wins = df.loc[df["pnl"] > WIN_LOSS_THRESHOLD, "pnl"] if not df.empty else pd.Series(dtype=float)
    losses = df.loc[df["pnl"] < -WIN_LOSS_THRESHOLD, "pnl"] if not df.empty else pd.Series(dtype=float)

    win_count = len(wins)
    loss_count = len(losses)
    decided = win_count + loss_count
    if decided == 0:
        return WinLossStats(0, 0, None, None, None, None, None)

    win_rate = win_count / decided
    avg_win = float(wins.mean()) if win_count else 0.0
    avg_loss = float(-losses.mean()) if loss_count else 0.0
    pnl_ratio = avg_win / avg_loss if avg_loss > 0 else None
    expectancy = win_rate * avg_win - (1 - win_rate) * avg_loss
    return WinLossStats(win_count, loss_count, win_rate, avg_win, avg_loss, pnl_ratio, expectancy)


def realized_by_symbol(audit_trail: Sequence[AuditEvent]) -> pd.Series:
    df = audit_frame(audit_trail)
    if df.empty:
        return pd.Series(dtype=float, name="pnl")
    return df.groupby("symbol")["pnl"].sum().sort_values(ascending=False)


def holdings_frame(holdings: Mapping[str, Holding]) -> pd.DataFrame:
    rows = [
        {
            "symbol": h.symbol,
            "asset_type": h.asset_type.value,
            "side": h.side.value,
            "net_quantity": h.net_quantity,
            "multiplier": h.multiplier,
            "cost_basis": h.cost_basis,
            "cost_per_unit": h.cost_per_unit,
            "realized_pnl": h.realized_pnl,
            "lots": len(h.lots),
            "anomalies": len(h.anomalies),
        }
        for h in holdings.values()
    ]
    return pd.DataFrame(rows)
