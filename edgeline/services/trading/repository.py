"""Storage boundary for strategy trades.

Every write goes through a compare-and-swap on (status, version). There is
no in-process locking: several monitoring workers may run at once and the
database row is the only arbiter.
"""

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edgeline.models import StrategyTrade, StrategyTradeEvent
from edgeline.services.trading.errors import (
    RecordNotFound,
    TradeValidationError,
    TransitionConflict,
)
from edgeline.services.trading.states import (
    FROZEN_LEG_STATUSES,
    TradeStatus,
    can_transition,
)

logger = structlog.get_logger(__name__)

LEG_FIELDS = frozenset(
    {
        "back_order_ref",
        "back_customer_ref",
        "back_price",
        "back_size",
        "back_matched_size",
        "lay_order_ref",
        "lay_customer_ref",
        "lay_price",
        "lay_size",
        "lay_matched_size",
    }
)


async def get_trade(db: AsyncSession, trade_id: int) -> StrategyTrade | None:
    """Fresh read of one trade, bypassing the identity map."""
    result = await db.execute(
        select(StrategyTrade)
        .where(StrategyTrade.id == trade_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def trades_in_status(
    db: AsyncSession,
    statuses: Sequence[TradeStatus],
    strategy_key: str | None = None,
    kickoff_before: datetime | None = None,
) -> list[StrategyTrade]:
    """Trades in any of the given statuses, earliest kickoff first."""
    query = select(StrategyTrade).where(
        StrategyTrade.status.in_([s.value for s in statuses])
    )
    if strategy_key:
        query = query.where(StrategyTrade.strategy_key == strategy_key)
    if kickoff_before is not None:
        query = query.where(StrategyTrade.kickoff_at < kickoff_before)
    result = await db.execute(query.order_by(StrategyTrade.kickoff_at, StrategyTrade.id))
    return list(result.scalars().all())


async def _compare_and_swap(
    db: AsyncSession,
    trade: StrategyTrade,
    expected_status: TradeStatus,
    values: dict[str, Any],
) -> StrategyTrade:
    result = await db.execute(
        update(StrategyTrade)
        .where(
            StrategyTrade.id == trade.id,
            StrategyTrade.status == expected_status.value,
            StrategyTrade.version == trade.version,
        )
        .values(version=StrategyTrade.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        current = await get_trade(db, trade.id)
        raise TransitionConflict(
            trade.id,
            expected_status.value,
            actual_status=current.status if current else None,
        )

    await db.flush()
    refreshed = await get_trade(db, trade.id)
    if refreshed is None:
        raise RecordNotFound(f"Trade {trade.id} disappeared after update")
    return refreshed


async def transition(
    db: AsyncSession,
    trade: StrategyTrade,
    target: TradeStatus,
    **values: Any,
) -> StrategyTrade:
    """
    Move a trade to `target` if it is still in the status/version we read.

    Raises:
        TradeValidationError: target is not reachable from the current status
        TransitionConflict: another writer got there first
    """
    current = TradeStatus(trade.status)
    if not can_transition(current, target):
        raise TradeValidationError(
            f"Trade {trade.id}: {current.value} -> {target.value} is not allowed"
        )
    return await _compare_and_swap(db, trade, current, {"status": target.value, **values})


async def update_fields(
    db: AsyncSession, trade: StrategyTrade, **values: Any
) -> StrategyTrade:
    """Change non-status fields under the same compare-and-swap guard."""
    current = TradeStatus(trade.status)
    frozen = LEG_FIELDS.intersection(values)
    if current in FROZEN_LEG_STATUSES and frozen:
        raise TradeValidationError(
            f"Trade {trade.id} is {current.value}; leg fields are frozen: "
            + ", ".join(sorted(frozen))
        )
    return await _compare_and_swap(db, trade, current, values)


def jsonable(value: Any) -> Any:
    """Make a payload safe for a JSON column."""
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


async def record_event(
    db: AsyncSession,
    trade_id: int,
    event_type: str,
    payload: dict[str, Any] | None = None,
) -> None:
    """Append to the trade's audit trail."""
    db.add(
        StrategyTradeEvent(
            trade_id=trade_id, event_type=event_type, payload=jsonable(payload or {})
        )
    )
    await db.flush()
