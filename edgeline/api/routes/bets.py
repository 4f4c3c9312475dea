"""Manual bets API endpoints."""

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from edgeline.api.dependencies import get_db
from edgeline.services.bets import BetStatus, create_bet, settle_bet

router = APIRouter(prefix="/api/bets", tags=["bets"])


class BetCreate(BaseModel):
    """Bet placed by hand, usually from a candidate."""

    event_id: int
    market: str
    selection: str
    source: str = Field(description="Bookmaker the bet was placed with")
    odds: Decimal = Field(gt=1)
    stake: Decimal = Field(gt=0)
    accepted_fair_prob: Decimal = Field(gt=0, lt=1)
    accepted_fair_price: Decimal = Field(gt=1)


class BetSettle(BaseModel):
    status: BetStatus


class BetResponse(BaseModel):
    id: int
    event_id: int
    market: str
    selection: str
    source: str
    odds: Decimal
    stake: Decimal
    accepted_fair_prob: Decimal
    accepted_fair_price: Decimal
    status: str
    returns: Decimal | None = None
    pnl: Decimal | None = None
    settled_at: datetime | None = None

    class Config:
        from_attributes = True


@router.post("", response_model=BetResponse, status_code=201)
async def record_bet(payload: BetCreate, db: AsyncSession = Depends(get_db)):
    """Record a manual bet."""
    bet = await create_bet(db, **payload.model_dump())
    await db.commit()
    return BetResponse.model_validate(bet)


@router.post("/{bet_id}/settle", response_model=BetResponse)
async def settle(bet_id: int, payload: BetSettle, db: AsyncSession = Depends(get_db)):
    """Settle a pending bet. Settling twice returns 409."""
    bet = await settle_bet(db, bet_id, payload.status)
    await db.commit()
    return BetResponse.model_validate(bet)
