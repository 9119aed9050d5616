from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable, Sequence

from pnl_ledger.config import POSITION_EPSILON
from pnl_ledger.ledger.models import (
    AssetType,
    AuditEvent,
    GroupState,
    Holding,
    LedgerAudit,
    LedgerResult,
    LedgerSnapshot,
    Lot,
    OpKind,
    PositionSide,
    Side,
    SplitEvent,
    Transaction,
)
from pnl_ledger.ledger.splits import adjust_transaction, split_fingerprint
from pnl_ledger.market_calendar import ny_day

logger = logging.getLogger(__name__)

# Realized PnL inside this band counts as neither a win nor a loss
WIN_LOSS_THRESHOLD = 1e-4

OPTION_MULTIPLIER = 100.0


@dataclass(frozen=True)
class NormalizedTrade:
    """A validated, split-adjusted trade with a signed quantity."""
    index: int
    group_key: str
    symbol: str
    asset_type: AssetType
    quantity: float
    price: float
    multiplier: float
    timestamp: datetime
    day: date


@dataclass
class _Layer:
    quantity: float
    cost: float
    opened_on: date
    multiplier: float

    def freeze(self) -> Lot:
        return Lot(self.quantity, self.cost, self.opened_on, self.multiplier)


@dataclass
class _Group:
    symbol: str
    asset_type: AssetType
    multiplier: float
    realized: float = 0.0
    long: deque = field(default_factory=deque)
    short: deque = field(default_factory=deque)
    anomalies: list[str] = field(default_factory=list)
    last_trade_day: date | None = None

    def net_quantity(self) -> float:
        return sum(l.quantity for l in self.long) + sum(s.quantity for s in self.short)


def group_key_for(symbol: str, asset_type: AssetType) -> str:
    return f"{symbol}|{asset_type.value}"


def _timestamp_key(ts: datetime) -> float:
    # Naive timestamps are UTC, matching ny_day()
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


class FifoLedger:
    """Incremental FIFO lot matcher.

    Feed transactions with :meth:`apply_many` (any order within one call) or
    pre-sorted :class:`NormalizedTrade` objects with :meth:`apply`. State can
    be captured with :meth:`checkpoint` and restored with :meth:`seed`.
    """

    def __init__(
        self,
        splits: Sequence[SplitEvent] = (),
        split_cutoff: date | None = None,
        allow_short: bool = True,
        epsilon: float = POSITION_EPSILON,
    ) -> None:
        self._splits = tuple(splits)
        self._split_cutoff = split_cutoff
        self._allow_short = allow_short
        self._eps = epsilon
        self._groups: dict[str, _Group] = {}
        self._pending_anomalies: dict[str, list[str]] = {}
        self._unattached: list[str] = []
        self._audit_trail: list[AuditEvent] = []
        self._win_count = 0
        self._loss_count = 0
        self._tx_read = 0
        self._tx_used = 0
        self._resumed_from: date | None = None

    @property
    def split_fingerprint(self) -> str:
        fp = split_fingerprint(self._splits)
        if self._split_cutoff is not None:
            fp = f"{fp}@{self._split_cutoff.isoformat()}"
        return fp

    @property
    def resumed_from(self) -> date | None:
        return self._resumed_from

    # -- Normalization -------------------------------------------------------

    def _note(self, key: str, message: str) -> None:
        group = self._groups.get(key)
        if group is not None:
            group.anomalies.append(message)
        else:
            self._pending_anomalies.setdefault(key, []).append(message)

    def normalize(self, transactions: Iterable[Transaction]) -> list[NormalizedTrade]:
        """Validate, default and split-adjust transactions, recording anomalies.

        Transactions dated on or before a seeded snapshot are skipped.
        Returns trades sorted chronologically (stable on input order).
        """
        trades: list[NormalizedTrade] = []
        for i, tx in enumerate(transactions):
            self._tx_read += 1
            if not tx.symbol or tx.timestamp is None:
                label = tx.symbol or f"tx_{i}"
                self._unattached.append(f"{label}: missing required field (symbol/timestamp)")
                logger.warning("Excluded transaction %s: missing symbol or timestamp", label)
                continue

            day = ny_day(tx.timestamp)
            if self._resumed_from is not None and day <= self._resumed_from:
                continue

            asset_type = tx.asset_type or AssetType.STOCK
            symbol = tx.price_symbol
            key = group_key_for(symbol, asset_type)

            if tx.quantity is None or tx.price is None:
                self._note(key, "missing required field (quantity/price)")
                logger.warning("Excluded transaction %s on %s: missing quantity or price", symbol, day)
                continue
            if tx.op_kind is OpKind.SPLIT:
                self._note(key, "split_row_ignored")
                continue
            if abs(tx.quantity) <= self._eps:
                self._note(key, "zero_quantity")
                logger.warning("Excluded transaction %s on %s: zero quantity", symbol, day)
                continue

            if tx.asset_type is None:
                self._note(key, "assumed:stock")

            side = tx.side
            if side is None:
                side = Side.BUY if tx.quantity > 0 else Side.SELL
                self._note(key, "side_inferred_from_qty")

            quantity = tx.quantity
            if (side is Side.BUY and quantity < 0) or (side is Side.SELL and quantity > 0):
                self._note(key, f"qty_sign_mismatch: side={side.value}, qty={quantity}")
                quantity = abs(quantity) if side is Side.BUY else -abs(quantity)

            multiplier = tx.multiplier
            if multiplier is None:
                multiplier = OPTION_MULTIPLIER if asset_type is AssetType.OPTION else 1.0

            adjusted = adjust_transaction(
                Transaction(
                    symbol=tx.symbol,
                    quantity=quantity,
                    price=tx.price,
                    timestamp=tx.timestamp,
                    asset_type=asset_type,
                    contract_key=tx.contract_key,
                ),
                self._splits,
                self._split_cutoff,
            )
            trades.append(NormalizedTrade(
                index=i,
                group_key=key,
                symbol=symbol,
                asset_type=asset_type,
                quantity=adjusted.quantity,
                price=adjusted.price,
                multiplier=float(multiplier),
                timestamp=tx.timestamp,
                day=day,
            ))

        trades.sort(key=lambda t: (_timestamp_key(t.timestamp), t.index))
        return trades

    # -- Matching --------------------------------------------------------------

    def _group(self, trade: NormalizedTrade) -> _Group:
        group = self._groups.get(trade.group_key)
        if group is None:
            group = _Group(trade.symbol, trade.asset_type, trade.multiplier)
            group.anomalies.extend(self._pending_anomalies.pop(trade.group_key, []))
            self._groups[trade.group_key] = group
        return group

    def _close(
        self, group: _Group, head: _Layer, matched: float, trade: NormalizedTrade, pnl: float
    ) -> AuditEvent:
        group.realized += pnl
        if pnl > WIN_LOSS_THRESHOLD:
            self._win_count += 1
        elif pnl < -WIN_LOSS_THRESHOLD:
            self._loss_count += 1
        event = AuditEvent(
            symbol=group.symbol,
            open_date=head.opened_on,
            close_date=trade.day,
            open_price=head.cost,
            close_price=trade.price,
            quantity=matched,
            pnl=pnl,
            multiplier=trade.multiplier,
        )
        self._audit_trail.append(event)
        return event

    def apply(self, trade: NormalizedTrade) -> list[AuditEvent]:
        """Apply one normalized trade. Returns the lot-closing events it produced."""
        group = self._group(trade)
        group.last_trade_day = trade.day
        self._tx_used += 1
        events: list[AuditEvent] = []

        if trade.quantity > 0:
            remaining = trade.quantity
            while remaining > self._eps and group.short:
                head = group.short[0]
                matched = min(remaining, -head.quantity)
                pnl = (head.cost - trade.price) * matched * trade.multiplier
                events.append(self._close(group, head, matched, trade, pnl))
                head.quantity += matched
                remaining -= matched
                if abs(head.quantity) <= self._eps:
                    group.short.popleft()
            if remaining > self._eps:
                group.long.append(_Layer(remaining, trade.price, trade.day, trade.multiplier))
        else:
            remaining = -trade.quantity
            while remaining > self._eps and group.long:
                head = group.long[0]
                matched = min(remaining, head.quantity)
                pnl = (trade.price - head.cost) * matched * trade.multiplier
                events.append(self._close(group, head, matched, trade, pnl))
                head.quantity -= matched
                remaining -= matched
                if abs(head.quantity) <= self._eps:
                    group.long.popleft()
            if remaining > self._eps:
                if self._allow_short:
                    group.short.append(_Layer(-remaining, trade.price, trade.day, trade.multiplier))
                else:
                    group.anomalies.append(f"oversell_clamped: {remaining:.6f} on {trade.day}")
                    logger.warning(
                        "Oversell of %s on %s clamped by %.6f (shorting disabled)",
                        trade.symbol, trade.day, remaining,
                    )
        return events

    def apply_many(self, transactions: Iterable[Transaction]) -> list[AuditEvent]:
        events: list[AuditEvent] = []
        for trade in self.normalize(transactions):
            events.extend(self.apply(trade))
        return events

    # -- Views -----------------------------------------------------------------

    def open_lots_by_symbol(self) -> dict[str, list[Lot]]:
        """Open lots keyed by price symbol, groups with no open lots omitted."""
        result: dict[str, list[Lot]] = {}
        for key in sorted(self._groups):
            group = self._groups[key]
            lots = [l.freeze() for l in group.long] + [s.freeze() for s in group.short]
            if lots:
                result.setdefault(group.symbol, []).extend(lots)
        return result

    @property
    def realized_pnl(self) -> float:
        return sum(self._groups[k].realized for k in sorted(self._groups))

    @property
    def audit_trail(self) -> tuple[AuditEvent, ...]:
        return tuple(self._audit_trail)

    def holdings(self) -> tuple[dict[str, Holding], int]:
        """Open holdings by group key, plus the number of zero-net groups dropped."""
        holdings: dict[str, Holding] = {}
        dropped = 0
        for key in sorted(self._groups):
            group = self._groups[key]
            net = group.net_quantity()
            if abs(net) <= self._eps:
                dropped += 1
                continue
            is_long = net > 0
            layers = group.long if is_long else group.short
            cost_basis = sum(abs(l.quantity) * l.cost * l.multiplier for l in layers)
            holdings[key] = Holding(
                symbol=group.symbol,
                asset_type=group.asset_type,
                group_key=key,
                net_quantity=net,
                multiplier=group.multiplier,
                cost_basis=cost_basis,
                cost_per_unit=cost_basis / (abs(net) * group.multiplier),
                realized_pnl=group.realized,
                side=PositionSide.LONG if is_long else PositionSide.SHORT,
                lots=tuple(l.freeze() for l in layers),
                anomalies=tuple(sorted(group.anomalies)),
                last_trade_day=group.last_trade_day,
            )
        return holdings, dropped

    def result(self) -> LedgerResult:
        holdings, dropped = self.holdings()
        unattached = list(self._unattached)
        for key, notes in sorted(self._pending_anomalies.items()):
            unattached.extend(f"{key}: {n}" for n in notes)
        anomaly_count = sum(len(g.anomalies) for g in self._groups.values()) + len(unattached)
        return LedgerResult(
            holdings=holdings,
            audit_trail=self.audit_trail,
            audit=LedgerAudit(
                tx_read=self._tx_read,
                tx_used=self._tx_used,
                positions_produced=len(holdings),
                zero_net_dropped=dropped,
                anomaly_count=anomaly_count,
            ),
            realized_pnl=self.realized_pnl,
            win_count=self._win_count,
            loss_count=self._loss_count,
            unattached_anomalies=tuple(unattached),
        )

    # -- Checkpoints -----------------------------------------------------------

    def checkpoint(self, as_of: date) -> LedgerSnapshot:
        """Capture the ledger state. Callers must have applied exactly the trades dated <= as_of."""
        groups = {
            key: GroupState(
                symbol=g.symbol,
                asset_type=g.asset_type,
                multiplier=g.multiplier,
                realized_pnl=g.realized,
                long_lots=tuple(l.freeze() for l in g.long),
                short_lots=tuple(s.freeze() for s in g.short),
                anomalies=tuple(g.anomalies),
                last_trade_day=g.last_trade_day,
            )
            for key, g in sorted(self._groups.items())
        }
        return LedgerSnapshot(
            as_of=as_of,
            split_fingerprint=self.split_fingerprint,
            groups=groups,
            realized_pnl=self.realized_pnl,
            win_count=self._win_count,
            loss_count=self._loss_count,
            audit_trail=self.audit_trail,
            pending_anomalies={k: tuple(v) for k, v in sorted(self._pending_anomalies.items())},
        )

    def seed(self, snapshot: LedgerSnapshot) -> bool:
        """Restore state from a checkpoint. Returns False if the snapshot is unusable."""
        if self._groups or self._tx_read:
            raise RuntimeError("seed() must be called on a fresh ledger")
        if snapshot.split_fingerprint != self.split_fingerprint:
            logger.warning(
                "Ignoring snapshot %s: split table changed (%s != %s), replaying from scratch",
                snapshot.as_of, snapshot.split_fingerprint, self.split_fingerprint,
            )
            return False
        for key, state in snapshot.groups.items():
            self._groups[key] = _Group(
                symbol=state.symbol,
                asset_type=state.asset_type,
                multiplier=state.multiplier,
                realized=state.realized_pnl,
                long=deque(_Layer(l.quantity, l.cost, l.opened_on, l.multiplier) for l in state.long_lots),
                short=deque(_Layer(s.quantity, s.cost, s.opened_on, s.multiplier) for s in state.short_lots),
                anomalies=list(state.anomalies),
                last_trade_day=state.last_trade_day,
            )
        self._pending_anomalies = {k: list(v) for k, v in snapshot.pending_anomalies.items()}
        self._audit_trail = list(snapshot.audit_trail)
        self._win_count = snapshot.win_count
        self._loss_count = snapshot.loss_count
        self._resumed_from = snapshot.as_of
        logger.info("Ledger resumed from snapshot %s (%d groups)", snapshot.as_of, len(snapshot.groups))
        return True


def build_ledger(
    transactions: Iterable[Transaction],
    splits: Sequence[SplitEvent] = (),
    snapshot: LedgerSnapshot | None = None,
    split_cutoff: date | None = None,
    allow_short: bool = True,
) -> LedgerResult:
    """Replay transactions through a FIFO ledger, optionally resuming from a snapshot."""
    ledger = FifoLedger(splits, split_cutoff=split_cutoff, allow_short=allow_short)
    if snapshot is not None:
        ledger.seed(snapshot)
    ledger.apply_many(transactions)
    return ledger.result()


def build_snapshot(
    transactions: Iterable[Transaction],
    as_of: date,
    splits: Sequence[SplitEvent] = (),
    split_cutoff: date | None = None,
) -> LedgerSnapshot:
    """Replay every transaction dated <= as_of and capture the resulting state."""
    dated = [tx for tx in transactions if tx.timestamp is None or ny_day(tx.timestamp) <= as_of]
    ledger = FifoLedger(splits, split_cutoff=split_cutoff)
    ledger.apply_many(dated)
    return ledger.checkpoint(as_of)
