"""Health check endpoints."""

from datetime import datetime, timezone

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from edgeline.api.dependencies import get_betfair_client, get_db, get_redis
from edgeline.config import get_settings
from edgeline.services.betfair_client import BetfairClient
from edgeline.services.read_model import latest_job_runs

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime


class ReadyCheck(BaseModel):
    """Individual readiness check."""

    status: str
    message: str | None = None


class ReadyResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    checks: dict[str, ReadyCheck]


@router.get("/health", response_model=HealthResponse)
async def health():
    """
    Basic health check.

    Returns healthy if the service is running.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/ready", response_model=ReadyResponse)
async def ready(
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    """
    Readiness check for all dependencies.

    Checks:
    - Database connectivity
    - Redis connectivity
    - Betfair credentials configured
    - Trading switch
    """
    checks = {}
    all_ready = True

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        checks["db"] = ReadyCheck(status="ok")
    except Exception as e:
        checks["db"] = ReadyCheck(status="error", message=str(e))
        all_ready = False

    # Check Redis
    try:
        await redis_client.ping()
        checks["redis"] = ReadyCheck(status="ok")
    except Exception as e:
        checks["redis"] = ReadyCheck(status="error", message=str(e))
        all_ready = False

    # Check Betfair configuration
    settings = get_settings()
    if settings.betfair_configured:
        checks["betfair"] = ReadyCheck(status="ok", message="Credentials configured")
    else:
        checks["betfair"] = ReadyCheck(
            status="warning", message="Credentials not configured"
        )
        # Don't mark as not ready, just warn

    checks["trading"] = ReadyCheck(
        status="ok" if settings.trading_enabled else "warning",
        message="Enabled" if settings.trading_enabled else "Disabled by configuration",
    )

    return ReadyResponse(ready=all_ready, checks=checks)


@router.get("/health/betfair")
async def betfair_health(
    betfair: BetfairClient = Depends(get_betfair_client),
):
    """
    Check Betfair API connectivity.

    Attempts to authenticate and fetch event types.
    """
    try:
        is_healthy = await betfair.health_check()
        return {
            "status": "healthy" if is_healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
            "timestamp": datetime.now(timezone.utc),
        }


class JobStatus(BaseModel):
    """Most recent run of one scheduled job."""

    status: str
    started_at: datetime
    completed_at: datetime | None = None
    records_processed: int
    error_message: str | None = None


@router.get("/health/jobs", response_model=dict[str, JobStatus])
async def job_health(db: AsyncSession = Depends(get_db)):
    """Last run of each scheduled cycle (poll_odds, monitor_trades, ...)."""
    runs = await latest_job_runs(db)
    return {
        name: JobStatus(
            status=run.status,
            started_at=run.started_at,
            completed_at=run.completed_at,
            records_processed=run.records_processed or 0,
            error_message=run.error_message,
        )
        for name, run in runs.items()
    }
