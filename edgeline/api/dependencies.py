"""FastAPI dependencies for Edgeline."""

from collections.abc import AsyncGenerator

import redis.asyncio as redis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from edgeline.config import get_settings, get_trading_config
from edgeline.models.base import async_session_factory
from edgeline.services.betfair_client import BetfairClient, BetfairGateway
from edgeline.services.trading.engine import TradeLifecycleEngine


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis client dependency."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url)
    try:
        yield client
    finally:
        await client.aclose()


async def get_betfair_client(
    redis_client: redis.Redis = Depends(get_redis),
) -> AsyncGenerator[BetfairClient, None]:
    """Get Betfair client dependency."""
    retry = get_trading_config().retry
    async with BetfairClient(redis_client=redis_client, retry_policy=retry) as client:
        yield client


async def get_trade_engine(
    betfair: BetfairClient = Depends(get_betfair_client),
) -> TradeLifecycleEngine:
    """Lifecycle engine for manual trade operations (cancel)."""
    return TradeLifecycleEngine(
        session_factory=async_session_factory,
        gateway=BetfairGateway(betfair),
        config=get_trading_config().strategy,
    )
