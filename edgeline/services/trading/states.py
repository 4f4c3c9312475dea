"""Strategy trade states and the allowed transitions between them.

    scheduled -> active -> hedged -> settled
    scheduled -> cancelled | failed
    active    -> cancelled | failed

hedged may only move to settled; settled, cancelled and failed are terminal.
"""

from enum import Enum


class TradeStatus(str, Enum):
    """Lifecycle status of a StrategyTrade."""

    SCHEDULED = "scheduled"
    ACTIVE = "active"
    HEDGED = "hedged"
    SETTLED = "settled"
    CANCELLED = "cancelled"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[TradeStatus, frozenset[TradeStatus]] = {
    TradeStatus.SCHEDULED: frozenset(
        {TradeStatus.ACTIVE, TradeStatus.CANCELLED, TradeStatus.FAILED}
    ),
    TradeStatus.ACTIVE: frozenset(
        {TradeStatus.HEDGED, TradeStatus.CANCELLED, TradeStatus.FAILED}
    ),
    TradeStatus.HEDGED: frozenset({TradeStatus.SETTLED}),
    TradeStatus.SETTLED: frozenset(),
    TradeStatus.CANCELLED: frozenset(),
    TradeStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {TradeStatus.SETTLED, TradeStatus.CANCELLED, TradeStatus.FAILED}
)

# Statuses whose back/lay fields may no longer change
FROZEN_LEG_STATUSES = frozenset({TradeStatus.HEDGED, TradeStatus.SETTLED})

# Statuses the monitoring loop evaluates
MONITORED_STATUSES = frozenset({TradeStatus.SCHEDULED, TradeStatus.ACTIVE})


def can_transition(current: TradeStatus | str, target: TradeStatus | str) -> bool:
    """Check whether current -> target is a legal lifecycle transition."""
    return TradeStatus(target) in ALLOWED_TRANSITIONS[TradeStatus(current)]


def is_terminal(status: TradeStatus | str) -> bool:
    return TradeStatus(status) in TERMINAL_STATUSES


def can_cancel(status: TradeStatus | str) -> bool:
    """Manual cancel is only possible before the position is hedged."""
    return can_transition(status, TradeStatus.CANCELLED)
