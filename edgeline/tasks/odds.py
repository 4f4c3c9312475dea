"""Odds polling task.

Fetches bookmaker odds, stores quotes and raises edge candidates.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
import structlog

from edgeline.config import get_settings, get_trading_config
from edgeline.models.base import get_task_session
from edgeline.services.pipeline import detect_edges, ingest_batch
from edgeline.services.quotes.provider import OddsApiClient, OddsProviderError
from edgeline.tasks import celery_app
from edgeline.tasks.locks import cycle_lock, record_job_run

logger = structlog.get_logger(__name__)


async def poll_odds_cycle(session, provider: OddsApiClient, now: datetime | None = None) -> dict[str, Any]:
    """
    One ingestion + detection pass over every configured sport.

    A failing sport is counted and skipped; the others still run.
    """
    config = get_trading_config()
    now = now or datetime.now(timezone.utc)
    stats: dict[str, Any] = {
        "sports": 0,
        "events": 0,
        "quotes_inserted": 0,
        "quarantined": 0,
        "provider_errors": 0,
    }

    for sport in config.ingestion.sports:
        try:
            batch = await provider.fetch_odds(
                sport, config.ingestion.regions, config.ingestion.markets
            )
        except OddsProviderError as e:
            logger.error("odds_fetch_failed", sport=sport, error=str(e), status=e.status_code)
            stats["provider_errors"] += 1
            continue

        ingested = await ingest_batch(session, batch)
        await session.commit()
        stats["sports"] += 1
        stats["events"] += ingested["events"]
        stats["quotes_inserted"] += ingested["quotes_inserted"]
        stats["quarantined"] += ingested["quarantined"]

    detection = await detect_edges(session, config, now)
    await session.commit()
    stats.update(
        markets_evaluated=detection["markets"],
        candidates=detection["candidates"],
        candidates_by_tier=detection["by_tier"],
        detection_errors=detection["errors"],
    )
    stats["records_processed"] = stats["quotes_inserted"]
    return stats


@celery_app.task(bind=True, soft_time_limit=240, time_limit=280)
def poll_odds(self):
    """
    Scheduled: every odds_poll_seconds (default 5 minutes)

    Process:
    1. Take the poll_odds cycle lock (skip if another run holds it)
    2. Fetch odds per sport, normalize, store
    3. Detect edges on markets with fresh quotes
    4. Log job run
    """
    return asyncio.run(_poll_odds_async(self))


async def _poll_odds_async(task) -> dict[str, Any]:
    settings = get_settings()
    started_at = datetime.now(timezone.utc)
    redis_client = redis.from_url(settings.redis_url)

    try:
        async with get_task_session() as session:
            async with record_job_run(session, "poll_odds") as stats:
                if not settings.odds_api_key:
                    stats.update(skipped=True, reason="odds_api_key not configured")
                    logger.warning("poll_odds_skipped", reason=stats["reason"])
                    return stats

                async with cycle_lock(redis_client, "poll_odds", ttl_seconds=300) as acquired:
                    if not acquired:
                        stats.update(skipped=True, reason="previous cycle still running")
                        return stats

                    async with OddsApiClient(
                        settings.odds_api_key,
                        settings.odds_api_url,
                        exchanges=get_trading_config().ingestion.exchanges,
                    ) as provider:
                        stats.update(await poll_odds_cycle(session, provider, started_at))

                logger.info(
                    "poll_odds_complete",
                    quotes=stats.get("quotes_inserted", 0),
                    candidates=stats.get("candidates", 0),
                    duration_seconds=(datetime.now(timezone.utc) - started_at).total_seconds(),
                    task_id=task.request.id,
                )
                return stats
    finally:
        await redis_client.aclose()
