"""Cross-process guards for scheduled cycles.

Each cycle type holds a Redis lock (SET NX EX) while it runs, so a slow
cycle and the next beat tick never overlap, whichever worker picks them up.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from edgeline.models.domain import JobRun

logger = structlog.get_logger(__name__)

LOCK_PREFIX = "edgeline:lock:"

# Release only a lock we still own
RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


@asynccontextmanager
async def cycle_lock(
    redis_client: redis.Redis, name: str, ttl_seconds: int
) -> AsyncIterator[bool]:
    """
    Try to take the lock for one cycle type.

    Yields True if acquired, False if another instance holds it. The TTL
    bounds how long a crashed worker can block the next cycle.
    """
    key = f"{LOCK_PREFIX}{name}"
    token = uuid.uuid4().hex
    acquired = bool(await redis_client.set(key, token, nx=True, ex=ttl_seconds))
    if not acquired:
        logger.info("cycle_lock_busy", cycle=name)
    try:
        yield acquired
    finally:
        if acquired:
            await redis_client.eval(RELEASE_LUA, 1, key, token)


@asynccontextmanager
async def record_job_run(session: AsyncSession, job_name: str) -> AsyncIterator[dict[str, Any]]:
    """
    Log a JobRun around a cycle.

    The body fills the yielded stats dict. Setting stats["skipped"] marks the
    run skipped; an exception marks it failed and is re-raised.
    """
    job_run = JobRun(
        job_name=job_name,
        started_at=datetime.now(timezone.utc),
        status="running",
    )
    session.add(job_run)
    await session.commit()

    stats: dict[str, Any] = {}
    job_status = "running"
    error_message = None
    try:
        yield stats
        job_status = "skipped" if stats.get("skipped") else "success"
    except Exception as e:
        await session.rollback()
        await session.refresh(job_run)
        job_status = "failed"
        error_message = str(e)
        raise
    finally:
        job_run.completed_at = datetime.now(timezone.utc)
        job_run.status = job_status
        job_run.error_message = error_message
        job_run.records_processed = int(stats.get("records_processed", 0))
        job_run.job_metadata = stats
        session.add(job_run)
        await session.commit()
