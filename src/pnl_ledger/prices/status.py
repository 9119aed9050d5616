from __future__ import annotations

import enum


class PriceStatus(str, enum.Enum):
    OK = "ok"
    PENDING = "pending"
    MISSING = "missing"
    MISSING_VENDOR = "missing_vendor"
    MARKET_CLOSED = "market_closed"
    PLAN_LIMITED = "plan_limited"
    NO_LIQUIDITY = "no_liquidity"
    ERROR = "error"


# No further automatic work is needed for these
SATISFIED = frozenset({
    PriceStatus.OK,
    PriceStatus.MARKET_CLOSED,
    PriceStatus.PLAN_LIMITED,
    PriceStatus.NO_LIQUIDITY,
})

# Automatic writers never move a record out of these
TERMINAL = SATISFIED | {PriceStatus.MISSING_VENDOR}

DISPATCHABLE = frozenset({PriceStatus.MISSING, PriceStatus.ERROR})

# Statuses whose close can be used for valuation. Estimates are flagged
# through the status itself, never upgraded to ok.
PRICED = frozenset({PriceStatus.OK, PriceStatus.PLAN_LIMITED, PriceStatus.NO_LIQUIDITY})

_FETCH_RESULTS = frozenset({
    PriceStatus.OK,
    PriceStatus.MISSING_VENDOR,
    PriceStatus.ERROR,
    PriceStatus.PLAN_LIMITED,
    PriceStatus.NO_LIQUIDITY,
    PriceStatus.MARKET_CLOSED,
})

ALLOWED_TRANSITIONS: dict[PriceStatus, frozenset[PriceStatus]] = {
    PriceStatus.MISSING: frozenset({PriceStatus.PENDING, PriceStatus.MARKET_CLOSED}),
    PriceStatus.ERROR: frozenset({PriceStatus.PENDING, PriceStatus.MISSING_VENDOR}),
    PriceStatus.PENDING: _FETCH_RESULTS,
}


class InvalidTransitionError(ValueError):
    def __init__(self, current: PriceStatus, target: PriceStatus) -> None:
        super().__init__(f"Illegal price status transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def is_satisfied(status: PriceStatus | None) -> bool:
    return status in SATISFIED


def is_dispatchable(status: PriceStatus | None) -> bool:
    """A day with no record at all is implicitly missing."""
    return status is None or status in DISPATCHABLE


def can_transition(current: PriceStatus | None, target: PriceStatus) -> bool:
    if current is None:
        current = PriceStatus.MISSING
    if current == target:
        return current not in TERMINAL
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def check_transition(current: PriceStatus | None, target: PriceStatus) -> None:
    """Raise InvalidTransitionError unless an automatic writer may move current -> target."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current or PriceStatus.MISSING, target)
