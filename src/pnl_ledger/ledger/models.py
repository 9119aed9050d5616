from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime

from pnl_ledger.ledger.symbols import normalize_symbol


class AssetType(enum.Enum):
    STOCK = "stock"
    OPTION = "option"


class Side(enum.Enum):
    BUY = "BUY"
    SELL = "SELL"


class OpKind(enum.Enum):
    TRADE = "TRADE"
    SPLIT = "SPLIT"
    ASSIGNMENT = "ASSIGNMENT"
    EXPIRATION = "EXPIRATION"


class PositionSide(enum.Enum):
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass(frozen=True)
class Transaction:
    symbol: str | None
    quantity: float | None
    price: float | None
    timestamp: datetime | None
    asset_type: AssetType | None = None
    side: Side | None = None
    multiplier: float | None = None
    contract_key: str | None = None
    op_kind: OpKind | None = None
    tx_id: str | None = None

    @property
    def price_symbol(self) -> str:
        """Identity prices are stored under: the option contract, else the ticker."""
        if self.contract_key:
            return normalize_symbol(self.contract_key)
        return normalize_symbol(self.symbol)


@dataclass(frozen=True)
class SplitEvent:
    symbol: str
    effective_date: date
    ratio: float


@dataclass(frozen=True)
class Lot:
    quantity: float
    cost: float
    opened_on: date
    multiplier: float


@dataclass(frozen=True)
class Holding:
    symbol: str
    asset_type: AssetType
    group_key: str
    net_quantity: float
    multiplier: float
    cost_basis: float
    cost_per_unit: float
    realized_pnl: float
    side: PositionSide
    lots: tuple[Lot, ...]
    anomalies: tuple[str, ...]
    last_trade_day: date | None


@dataclass(frozen=True)
class AuditEvent:
    symbol: str
    open_date: date
    close_date: date
    open_price: float
    close_price: float
    quantity: float
    pnl: float
    multiplier: float


@dataclass(frozen=True)
class LedgerAudit:
    tx_read: int
    tx_used: int
    positions_produced: int
    zero_net_dropped: int
    anomaly_count: int


@dataclass(frozen=True)
class GroupState:
    """Per-group ledger state captured in a checkpoint."""
    symbol: str
    asset_type: AssetType
    multiplier: float
    realized_pnl: float
    long_lots: tuple[Lot, ...]
    short_lots: tuple[Lot, ...]
    anomalies: tuple[str, ...]
    last_trade_day: date | None


@dataclass(frozen=True)
class LedgerSnapshot:
    as_of: date
    split_fingerprint: str
    groups: dict[str, GroupState]
    realized_pnl: float
    win_count: int
    loss_count: int
    audit_trail: tuple[AuditEvent, ...] = ()
    version: str = "v1"
    # Anomalies of groups that never received a usable trade
    pending_anomalies: dict[str, tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerResult:
    holdings: dict[str, Holding]
    audit_trail: tuple[AuditEvent, ...]
    audit: LedgerAudit
    realized_pnl: float
    win_count: int
    loss_count: int
    unattached_anomalies: tuple[str, ...] = field(default=())
