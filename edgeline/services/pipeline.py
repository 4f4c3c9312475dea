"""Odds ingestion and edge detection pipeline.

One cycle:
1. Upsert the provider's events
2. Normalize raw quote records (malformed ones are quarantined)
3. Append quotes to the store (duplicates ignored)
4. For every market with fresh quotes, price it and detect edges
5. Persist the candidates
"""

from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from edgeline.config.trading import TradingConfig
from edgeline.models import Candidate
from edgeline.services.edge.detector import EdgeDetector
from edgeline.services.pricing.fair_price import FairPriceModel
from edgeline.services.quotes.normalize import normalize_quotes
from edgeline.services.quotes.provider import ProviderBatch
from edgeline.services.quotes.store import (
    insert_quotes,
    markets_with_quotes_since,
    quote_window,
    save_candidates,
    upsert_event,
)

logger = structlog.get_logger(__name__)


async def ingest_batch(db: AsyncSession, batch: ProviderBatch) -> dict[str, int]:
    """Store one provider batch. Returns counts."""
    for event in batch.events:
        await upsert_event(
            db,
            external_id=event.external_id,
            sport=event.sport,
            home_team=event.home_team,
            away_team=event.away_team,
            commence_time=event.commence_time,
        )

    normalized = normalize_quotes(batch.records)
    inserted = await insert_quotes(db, normalized.quotes)

    return {
        "events": len(batch.events),
        "events_skipped": batch.skipped_events,
        "records": len(batch.records),
        "quarantined": len(normalized.quarantined),
        "quotes_inserted": inserted,
    }


async def detect_edges(
    db: AsyncSession, config: TradingConfig, as_of: datetime
) -> dict[str, Any]:
    """
    Run edge detection over every market with fresh quotes.

    Each cycle is independent: an edge that persists is raised again by the
    next cycle. Within a cycle the detector keeps one candidate per
    (selection, bookmaker).
    """
    fresh_since = as_of - timedelta(seconds=config.ingestion.fresh_quote_seconds)
    detector = EdgeDetector(config.edge, FairPriceModel(config.fair_price))

    stats: dict[str, Any] = {"markets": 0, "candidates": 0, "errors": 0, "by_tier": {}}
    saved: list[Candidate] = []

    for event_id, market in await markets_with_quotes_since(db, fresh_since):
        stats["markets"] += 1
        try:
            quotes = await quote_window(
                db, event_id, market, as_of, config.fair_price.max_quote_age_seconds
            )
            signals = detector.detect(event_id, market, quotes, as_of, fresh_since=fresh_since)
            if signals:
                saved.extend(await save_candidates(db, signals))
        except Exception as e:
            logger.error(
                "edge_detection_failed", event_id=event_id, market=market, error=str(e)
            )
            stats["errors"] += 1

    stats["candidates"] = len(saved)
    for candidate in saved:
        stats["by_tier"][candidate.tier] = stats["by_tier"].get(candidate.tier, 0) + 1
    return stats
