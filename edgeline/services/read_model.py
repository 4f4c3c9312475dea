"""Read-only queries behind the API."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from edgeline.models import Candidate, Event, JobRun, StrategyTrade


async def ranked_candidates(
    db: AsyncSession,
    tier: str | None = None,
    min_edge_pp: float | None = None,
    since: datetime | None = None,
    limit: int = 50,
) -> list[tuple[Candidate, Event]]:
    """Candidates with their event, largest edge first."""
    query = select(Candidate, Event).join(Event, Candidate.event_id == Event.id)
    if tier:
        query = query.where(Candidate.tier == tier)
    if min_edge_pp is not None:
        query = query.where(Candidate.edge_pp >= min_edge_pp)
    if since is not None:
        query = query.where(Candidate.created_at >= since)
    query = query.order_by(Candidate.edge_pp.desc(), Candidate.id.desc()).limit(limit)

    result = await db.execute(query)
    return [(candidate, event) for candidate, event in result.all()]


@dataclass
class TradePage:
    items: list[StrategyTrade]
    total: int
    page: int
    page_size: int


async def trade_page(
    db: AsyncSession,
    status: str | None = None,
    strategy_key: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> TradePage:
    """Trades ordered by kickoff, one page at a time."""
    filters = []
    if status:
        filters.append(StrategyTrade.status == status)
    if strategy_key:
        filters.append(StrategyTrade.strategy_key == strategy_key)

    total = await db.scalar(select(func.count(StrategyTrade.id)).where(*filters))
    result = await db.execute(
        select(StrategyTrade)
        .where(*filters)
        .order_by(StrategyTrade.kickoff_at, StrategyTrade.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return TradePage(
        items=list(result.scalars().all()),
        total=total or 0,
        page=page,
        page_size=page_size,
    )


UNKNOWN_COMPETITION = "Unknown"
CENT = Decimal("0.01")


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT)


@dataclass
class CompetitionStats:
    name: str
    trades: int
    staked: Decimal
    pnl: Decimal


@dataclass
class StrategyStats:
    total_trades: int = 0
    total_staked: Decimal = Decimal("0.00")
    pnl: Decimal = Decimal("0.00")
    competitions: list[CompetitionStats] = field(default_factory=list)


async def strategy_stats(
    db: AsyncSession,
    strategy_key: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> StrategyStats:
    """
    Realised P&L of trades with a recorded result, per competition.

    Staked is the matched back stake. Competitions are ordered by P&L,
    best first.
    """
    filters = [StrategyTrade.realised_pnl.is_not(None)]
    if strategy_key:
        filters.append(StrategyTrade.strategy_key == strategy_key)
    if date_from is not None:
        filters.append(StrategyTrade.kickoff_at >= date_from)
    if date_to is not None:
        filters.append(StrategyTrade.kickoff_at <= date_to)

    result = await db.execute(
        select(
            StrategyTrade.competition_name,
            func.count(StrategyTrade.id),
            func.sum(StrategyTrade.back_matched_size),
            func.sum(StrategyTrade.realised_pnl),
        )
        .where(*filters)
        .group_by(StrategyTrade.competition_name)
    )

    stats = StrategyStats()
    by_name: dict[str, CompetitionStats] = {}
    for name, trades, staked, pnl in result.all():
        key = name or UNKNOWN_COMPETITION
        entry = by_name.setdefault(key, CompetitionStats(key, 0, Decimal("0.00"), Decimal("0.00")))
        entry.trades += trades
        entry.staked += _money(staked)
        entry.pnl += _money(pnl)

        stats.total_trades += trades
        stats.total_staked += _money(staked)
        stats.pnl += _money(pnl)

    stats.competitions = sorted(by_name.values(), key=lambda c: (-c.pnl, c.name))
    return stats


async def trade_with_events(db: AsyncSession, trade_id: int) -> StrategyTrade | None:
    """One trade with its audit trail loaded."""
    result = await db.execute(
        select(StrategyTrade)
        .where(StrategyTrade.id == trade_id)
        .options(selectinload(StrategyTrade.events))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def latest_job_runs(db: AsyncSession) -> dict[str, JobRun]:
    """Most recent run of each scheduled job."""
    latest = (
        select(JobRun.job_name, func.max(JobRun.id).label("max_id"))
        .group_by(JobRun.job_name)
        .subquery()
    )
    result = await db.execute(select(JobRun).join(latest, JobRun.id == latest.c.max_id))
    return {run.job_name: run for run in result.scalars().all()}
