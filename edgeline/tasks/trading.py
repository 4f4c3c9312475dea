"""Strategy trading tasks.

Fixture sync, the monitoring cycle, settlement and Betfair session
keep-alive. Every task is a no-op unless trading is enabled, Betfair
credentials are configured and the strategy is switched on.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
import structlog
from celery import shared_task

from edgeline.config import get_settings, get_trading_config
from edgeline.config.trading import RetryPolicy
from edgeline.models.base import get_task_session, get_task_session_factory
from edgeline.services.betfair_client import BetfairAuth, BetfairClient, BetfairGateway
from edgeline.services.betfair_client.api import REQUEST_TIMEOUT_SECONDS
from edgeline.services.trading.engine import TradeLifecycleEngine
from edgeline.tasks.locks import cycle_lock, record_job_run

logger = structlog.get_logger(__name__)

# Exchange calls one trade can make in a monitoring cycle: back and lay order
# reads, a price read, a cancel with its read-back, a placement and its
# reconcile lookup
CALLS_PER_TRADE = 7


def monitor_lock_ttl(
    monitor_seconds: float,
    retry: RetryPolicy,
    request_timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> int:
    """Lock lifetime that outlasts a monitoring cycle stuck in retries."""
    return int(monitor_seconds + CALLS_PER_TRADE * retry.worst_case_seconds(request_timeout))


def trading_disabled_reason() -> str | None:
    """Why the trading tasks should not run, or None if they may."""
    settings = get_settings()
    if not settings.trading_enabled:
        return "trading disabled"
    if not settings.betfair_configured:
        return "betfair credentials not configured"
    if not get_trading_config().strategy.enabled:
        return "strategy disabled"
    return None


async def _run_with_engine(
    job_name: str,
    lock_ttl: int,
    work: Callable[[TradeLifecycleEngine, BetfairGateway], Awaitable[dict[str, Any]]],
) -> dict[str, Any]:
    """Shared scaffolding: guard, JobRun, cycle lock, Betfair client, engine."""
    settings = get_settings()
    config = get_trading_config()
    redis_client = redis.from_url(settings.redis_url)

    try:
        async with get_task_session() as session:
            async with record_job_run(session, job_name) as stats:
                reason = trading_disabled_reason()
                if reason:
                    stats.update(skipped=True, reason=reason)
                    logger.debug("trading_task_skipped", job=job_name, reason=reason)
                    return stats

                async with cycle_lock(redis_client, job_name, ttl_seconds=lock_ttl) as acquired:
                    if not acquired:
                        stats.update(skipped=True, reason="previous cycle still running")
                        return stats

                    async with get_task_session_factory() as session_factory:
                        async with BetfairClient(
                            redis_client=redis_client, retry_policy=config.retry
                        ) as betfair:
                            gateway = BetfairGateway(betfair)
                            engine = TradeLifecycleEngine(
                                session_factory=session_factory,
                                gateway=gateway,
                                config=config.strategy,
                            )
                            stats.update(await work(engine, gateway))
                return stats
    finally:
        await redis_client.aclose()


async def monitor_trades_async() -> dict[str, Any]:
    async def work(engine: TradeLifecycleEngine, gateway: BetfairGateway) -> dict[str, Any]:
        result = await engine.run_cycle(datetime.now(timezone.utc))
        result["records_processed"] = result["trades_checked"]
        return result

    lock_ttl = monitor_lock_ttl(get_settings().trade_monitor_seconds, get_trading_config().retry)
    return await _run_with_engine("monitor_trades", lock_ttl=lock_ttl, work=work)


async def sync_fixtures_async() -> dict[str, Any]:
    async def work(engine: TradeLifecycleEngine, gateway: BetfairGateway) -> dict[str, Any]:
        result = await engine.sync_fixtures(gateway, datetime.now(timezone.utc))
        result["records_processed"] = result["created"] + result["updated"]
        return result

    return await _run_with_engine("sync_fixtures", lock_ttl=600, work=work)


async def settle_trades_async() -> dict[str, Any]:
    async def work(engine: TradeLifecycleEngine, gateway: BetfairGateway) -> dict[str, Any]:
        result = await engine.settle_pending(gateway, datetime.now(timezone.utc))
        result["records_processed"] = result["settled"]
        return result

    return await _run_with_engine("settle_trades", lock_ttl=600, work=work)


# =============================================================================
# Celery Task Wrappers
# =============================================================================

@shared_task(name="edgeline.tasks.trading.monitor_trades", queue="trading")
def monitor_trades() -> dict[str, Any]:
    """
    Celery task for one trade monitoring cycle.

    Runs every trade_monitor_seconds (default 45s).
    """
    return asyncio.run(monitor_trades_async())


@shared_task(name="edgeline.tasks.trading.sync_fixtures", queue="trading")
def sync_fixtures() -> dict[str, Any]:
    """
    Celery task to create scheduled trades for upcoming fixtures.

    Runs every fixture_sync_seconds (default 6 hours).
    """
    return asyncio.run(sync_fixtures_async())


@shared_task(name="edgeline.tasks.trading.settle_trades", queue="trading")
def settle_trades() -> dict[str, Any]:
    """
    Celery task to settle finished trades from exchange runner results.

    Runs every 15 minutes.
    """
    return asyncio.run(settle_trades_async())


@shared_task(name="edgeline.tasks.trading.betfair_keepalive", queue="trading")
def betfair_keepalive() -> dict[str, Any]:
    """Celery task to extend the cached Betfair session."""

    async def _run():
        settings = get_settings()
        if not settings.betfair_configured:
            return {"status": "skipped", "reason": "betfair credentials not configured"}
        redis_client = redis.from_url(settings.redis_url)
        try:
            alive = await BetfairAuth(redis_client).keep_alive()
        finally:
            await redis_client.aclose()
        logger.info("betfair_keepalive", success=alive)
        return {"status": "success" if alive else "failed"}

    return asyncio.run(_run())
