"""Strategy trades API endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from edgeline.api.dependencies import get_db, get_trade_engine
from edgeline.services.read_model import strategy_stats, trade_page, trade_with_events
from edgeline.services.trading.engine import TradeLifecycleEngine
from edgeline.services.trading.states import TradeStatus

router = APIRouter(prefix="/api/trades", tags=["trades"])


class TradeItem(BaseModel):
    """Strategy trade summary."""

    id: int
    strategy_key: str
    event_name: str | None
    competition_name: str | None
    runner_name: str
    kickoff_at: datetime
    status: str
    version: int
    back_price: Decimal | None = None
    back_size: Decimal | None = None
    back_matched_size: Decimal | None = None
    lay_price: Decimal | None = None
    lay_size: Decimal | None = None
    lay_matched_size: Decimal | None = None
    hedge_reason: str | None = None
    margin: Decimal | None = None
    commission_paid: Decimal | None = None
    realised_pnl: Decimal | None = None
    outcome: str | None = None
    settled_at: datetime | None = None
    last_error: str | None = None

    class Config:
        from_attributes = True


class TradeEventItem(BaseModel):
    """Audit trail entry."""

    event_type: str
    payload: dict[str, Any]
    occurred_at: datetime

    class Config:
        from_attributes = True


class TradeDetail(TradeItem):
    """Trade with its audit trail."""

    betfair_event_id: str
    betfair_market_id: str | None = None
    selection_id: int | None = None
    state_data: dict[str, Any] | None = None
    events: list[TradeEventItem]


class TradeListResponse(BaseModel):
    items: list[TradeItem]
    total: int
    page: int
    page_size: int


class CompetitionStatsItem(BaseModel):
    name: str
    trades: int
    staked: Decimal
    pnl: Decimal

    class Config:
        from_attributes = True


class StrategyStatsResponse(BaseModel):
    """Realised results of the automated strategy."""

    total_trades: int
    total_staked: Decimal
    pnl: Decimal
    competitions: list[CompetitionStatsItem]

    class Config:
        from_attributes = True


class CancelResponse(BaseModel):
    trade_id: int
    cancelled: bool
    status: str
    message: str


@router.get("", response_model=TradeListResponse)
async def list_trades(
    db: AsyncSession = Depends(get_db),
    status: TradeStatus | None = Query(None, description="Filter by status"),
    strategy: str | None = Query(None, description="Filter by strategy key"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
):
    """List strategy trades ordered by kickoff."""
    result = await trade_page(
        db,
        status=status.value if status else None,
        strategy_key=strategy,
        page=page,
        page_size=page_size,
    )
    return TradeListResponse(
        items=[TradeItem.model_validate(t) for t in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@router.get("/stats", response_model=StrategyStatsResponse)
async def get_strategy_stats(
    db: AsyncSession = Depends(get_db),
    strategy: str | None = Query(None, description="Filter by strategy key"),
    date_from: datetime | None = Query(None, description="Earliest kickoff"),
    date_to: datetime | None = Query(None, description="Latest kickoff"),
):
    """Total staked, trade count and realised P&L, broken down by competition."""
    stats = await strategy_stats(
        db, strategy_key=strategy, date_from=date_from, date_to=date_to
    )
    return StrategyStatsResponse.model_validate(stats)


@router.get("/{trade_id}", response_model=TradeDetail)
async def get_trade(trade_id: int, db: AsyncSession = Depends(get_db)):
    """Get one trade with its event history."""
    trade = await trade_with_events(db, trade_id)
    if trade is None:
        raise HTTPException(status_code=404, detail="Trade not found")
    return TradeDetail.model_validate(trade)


@router.post("/{trade_id}/cancel", response_model=CancelResponse)
async def cancel_trade(
    trade_id: int,
    engine: TradeLifecycleEngine = Depends(get_trade_engine),
):
    """
    Cancel a trade.

    A scheduled trade is cancelled immediately. An active trade is only
    cancelled once the exchange confirms nothing matched on the back order;
    otherwise it stays active and the response says why. Hedged or settled
    trades return 409.
    """
    outcome = await engine.cancel_trade(trade_id)
    return CancelResponse(
        trade_id=outcome.trade_id,
        cancelled=outcome.applied,
        status=outcome.status,
        message=outcome.reason,
    )
