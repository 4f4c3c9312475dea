"""Edge candidates API endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from edgeline.api.dependencies import get_db
from edgeline.services.read_model import ranked_candidates

router = APIRouter(prefix="/api/candidates", tags=["candidates"])


class CandidateItem(BaseModel):
    """Candidate in list response."""

    id: int
    event_id: int
    event_name: str
    commence_time: datetime
    market: str
    selection: str
    bookmaker: str
    is_exchange: bool
    offered_price: float
    fair_price: float
    fair_prob: float
    edge_pp: float
    tier: str
    books_count: int
    quote_observed_at: datetime
    created_at: datetime
    notes: str | None = None


class CandidateListResponse(BaseModel):
    """Candidate list response."""

    items: list[CandidateItem]
    total: int


@router.get("", response_model=CandidateListResponse)
async def list_candidates(
    db: AsyncSession = Depends(get_db),
    tier: str | None = Query(None, description="Filter by tier (high, medium, low)"),
    min_edge: float | None = Query(None, description="Minimum edge in percentage points"),
    since: datetime | None = Query(None, description="Only candidates created after this time"),
    limit: int = Query(50, ge=1, le=500),
):
    """
    List edge candidates, largest edge first.

    Candidates are history: every detection cycle appends new rows, so the
    same selection can appear more than once across cycles.
    """
    rows = await ranked_candidates(
        db, tier=tier, min_edge_pp=min_edge, since=since, limit=limit
    )
    items = [
        CandidateItem(
            id=candidate.id,
            event_id=event.id,
            event_name=event.name,
            commence_time=event.commence_time,
            market=candidate.market,
            selection=candidate.selection,
            bookmaker=candidate.bookmaker,
            is_exchange=candidate.is_exchange,
            offered_price=candidate.offered_price,
            fair_price=candidate.fair_price,
            fair_prob=candidate.fair_prob,
            edge_pp=candidate.edge_pp,
            tier=candidate.tier,
            books_count=candidate.books_count,
            quote_observed_at=candidate.quote_observed_at,
            created_at=candidate.created_at,
            notes=candidate.notes,
        )
        for candidate, event in rows
    ]
    return CandidateListResponse(items=items, total=len(items))
