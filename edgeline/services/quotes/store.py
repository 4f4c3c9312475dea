"""Quote store.

Append-only persistence for events, quotes and candidates. Inserts are
idempotent on the natural key so duplicate or out-of-order delivery from the
provider is harmless.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from edgeline.models import Candidate, Event, Quote
from edgeline.services.edge.detector import EdgeSignal
from edgeline.services.quotes.normalize import NormalizedQuote

logger = structlog.get_logger(__name__)

QUOTE_NATURAL_KEY = ["event_id", "market", "selection", "bookmaker", "observed_at"]


def dialect_insert(db: AsyncSession, model):
    """INSERT construct with ON CONFLICT support for the bound dialect."""
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


async def upsert_event(
    db: AsyncSession,
    external_id: str,
    sport: str,
    home_team: str,
    away_team: str,
    commence_time: datetime,
) -> int:
    """Insert or refresh an event keyed by its external id. Returns the row id."""
    stmt = dialect_insert(db, Event).values(
        external_id=external_id,
        sport=sport,
        home_team=home_team,
        away_team=away_team,
        commence_time=commence_time,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["external_id"],
        set_={
            "sport": sport,
            "home_team": home_team,
            "away_team": away_team,
            "commence_time": commence_time,
        },
    ).returning(Event.id)
    result = await db.execute(stmt)
    return result.scalar_one()


async def event_ids_by_external_id(
    db: AsyncSession, external_ids: Iterable[str]
) -> dict[str, int]:
    """Map external event ids to row ids for the ids that exist."""
    ids = list(set(external_ids))
    if not ids:
        return {}
    result = await db.execute(
        select(Event.external_id, Event.id).where(Event.external_id.in_(ids))
    )
    return {external_id: event_id for external_id, event_id in result.all()}


async def insert_quotes(db: AsyncSession, quotes: list[NormalizedQuote]) -> int:
    """
    Append quotes, ignoring any whose natural key already exists.

    Quotes for unknown events are skipped and logged. Returns the number of
    rows actually inserted.
    """
    if not quotes:
        return 0

    event_ids = await event_ids_by_external_id(db, (q.event_external_id for q in quotes))

    rows: dict[tuple, dict] = {}
    for quote in quotes:
        event_id = event_ids.get(quote.event_external_id)
        if event_id is None:
            logger.warning("quote_unknown_event", event_external_id=quote.event_external_id)
            continue
        key = (event_id, quote.market, quote.selection, quote.bookmaker, quote.observed_at)
        rows[key] = {
            "event_id": event_id,
            "market": quote.market,
            "selection": quote.selection,
            "bookmaker": quote.bookmaker,
            "is_exchange": quote.is_exchange,
            "price": quote.price,
            "point": quote.point,
            "observed_at": quote.observed_at,
            "raw": quote.raw,
        }

    if not rows:
        return 0

    stmt = (
        dialect_insert(db, Quote)
        .values(list(rows.values()))
        .on_conflict_do_nothing(index_elements=QUOTE_NATURAL_KEY)
        .returning(Quote.id)
    )
    result = await db.execute(stmt)
    inserted = len(result.all())

    if inserted < len(quotes):
        logger.debug("quotes_deduplicated", received=len(quotes), inserted=inserted)
    return inserted


async def markets_with_quotes_since(
    db: AsyncSession, since: datetime
) -> list[tuple[int, str]]:
    """(event_id, market) pairs that received a quote observed at or after `since`."""
    result = await db.execute(
        select(Quote.event_id, Quote.market)
        .where(Quote.observed_at >= since)
        .distinct()
        .order_by(Quote.event_id, Quote.market)
    )
    return [(event_id, market) for event_id, market in result.all()]


async def quote_window(
    db: AsyncSession,
    event_id: int,
    market: str,
    as_of: datetime,
    max_age_seconds: int,
) -> list[Quote]:
    """All quotes for one market observed within the recency window."""
    cutoff = as_of - timedelta(seconds=max_age_seconds)
    result = await db.execute(
        select(Quote)
        .where(
            Quote.event_id == event_id,
            Quote.market == market,
            Quote.observed_at >= cutoff,
            Quote.observed_at <= as_of,
        )
        .order_by(Quote.observed_at)
    )
    return list(result.scalars().all())


async def save_candidates(db: AsyncSession, signals: list[EdgeSignal]) -> list[Candidate]:
    """Persist detector output. Candidates are always inserted, never updated."""
    candidates = [
        Candidate(
            event_id=signal.event_id,
            market=signal.market,
            selection=signal.selection,
            bookmaker=signal.bookmaker,
            is_exchange=signal.is_exchange,
            offered_price=signal.offered_price,
            offered_prob=signal.offered_prob,
            fair_price=signal.fair_price,
            fair_prob=signal.fair_prob,
            edge_pp=signal.edge_pp,
            tier=signal.tier,
            books_count=signal.books_count,
            exchanges_count=signal.exchanges_count,
            quote_observed_at=signal.quote_observed_at,
            notes=signal.notes,
        )
        for signal in signals
    ]
    db.add_all(candidates)
    await db.flush()
    return candidates
