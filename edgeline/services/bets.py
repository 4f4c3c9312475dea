"""Manual bet recording and settlement.

A bet is settled exactly once: pending -> won | lost | void. Settlement is a
conditional UPDATE on status='pending' so two concurrent settle requests
cannot both apply.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edgeline.models import Bet, Event
from edgeline.services.trading.errors import (
    BetAlreadySettled,
    RecordNotFound,
    TradeValidationError,
)
from edgeline.services.trading.hedging import ZERO, round_money

logger = structlog.get_logger(__name__)


class BetStatus(str, Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    VOID = "void"


SETTLED_STATUSES = frozenset({BetStatus.WON, BetStatus.LOST, BetStatus.VOID})


def settlement_amounts(stake: Decimal, odds: Decimal, status: BetStatus) -> tuple[Decimal, Decimal]:
    """(returns, pnl) for a settled bet."""
    if status == BetStatus.WON:
        returns = round_money(stake * odds)
        return returns, returns - stake
    if status == BetStatus.LOST:
        return ZERO.quantize(Decimal("0.01")), round_money(-stake)
    if status == BetStatus.VOID:
        return round_money(stake), ZERO.quantize(Decimal("0.01"))
    raise TradeValidationError(f"Cannot settle a bet as '{status.value}'")


async def create_bet(
    db: AsyncSession,
    event_id: int,
    market: str,
    selection: str,
    source: str,
    odds: Decimal,
    stake: Decimal,
    accepted_fair_prob: Decimal,
    accepted_fair_price: Decimal,
) -> Bet:
    """Record a manually placed bet."""
    if odds <= 1:
        raise TradeValidationError(f"Odds must be greater than 1, got {odds}")
    if stake <= 0:
        raise TradeValidationError(f"Stake must be positive, got {stake}")
    if not 0 < accepted_fair_prob < 1:
        raise TradeValidationError(
            f"Fair probability must be between 0 and 1, got {accepted_fair_prob}"
        )
    if await db.get(Event, event_id) is None:
        raise RecordNotFound(f"Event {event_id} not found")

    bet = Bet(
        event_id=event_id,
        market=market,
        selection=selection,
        source=source,
        odds=odds,
        stake=round_money(stake),
        accepted_fair_prob=accepted_fair_prob,
        accepted_fair_price=accepted_fair_price,
        status=BetStatus.PENDING.value,
    )
    db.add(bet)
    await db.flush()
    logger.info("bet_created", bet_id=bet.id, selection=selection, odds=str(odds))
    return bet


async def settle_bet(
    db: AsyncSession,
    bet_id: int,
    status: BetStatus | str,
    settled_at: datetime | None = None,
) -> Bet:
    """
    Settle a pending bet.

    Raises:
        TradeValidationError: unknown bet or status
        BetAlreadySettled: the bet is already won, lost or void
    """
    try:
        status = BetStatus(status)
    except ValueError:
        raise TradeValidationError(f"Unknown bet status '{status}'") from None
    if status not in SETTLED_STATUSES:
        raise TradeValidationError(f"Cannot settle a bet as '{status.value}'")

    bet = await db.get(Bet, bet_id)
    if bet is None:
        raise RecordNotFound(f"Bet {bet_id} not found")
    if bet.status != BetStatus.PENDING.value:
        raise BetAlreadySettled(bet.id, bet.status)

    returns, pnl = settlement_amounts(bet.stake, bet.odds, status)
    result = await db.execute(
        update(Bet)
        .where(Bet.id == bet_id, Bet.status == BetStatus.PENDING.value)
        .values(
            status=status.value,
            returns=returns,
            pnl=pnl,
            settled_at=settled_at or datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        current = await db.scalar(select(Bet.status).where(Bet.id == bet_id))
        raise BetAlreadySettled(bet_id, current or "unknown")

    await db.flush()
    await db.refresh(bet)
    logger.info("bet_settled", bet_id=bet.id, status=status.value, pnl=str(pnl))
    return bet
