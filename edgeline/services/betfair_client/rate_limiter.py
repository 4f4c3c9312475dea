"""Rate limiter for Betfair API requests.

Token bucket shared across processes through Redis. Order operations
(placeOrders, cancelOrders) draw from their own bucket so a burst of price
polling can never starve a hedge.
"""

import asyncio
import time
from dataclasses import dataclass

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)

ORDER_ENDPOINTS = frozenset({"placeOrders", "cancelOrders", "replaceOrders"})

# Atomic take-one-token. Returns {1, 0} on success, {0, wait_seconds} otherwise.
TOKEN_BUCKET_LUA = """
local key = KEYS[1]
local rate = tonumber(ARGV[1])
local burst = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local state = redis.call('HMGET', key, 'tokens', 'last_update')
local tokens = tonumber(state[1]) or burst
local last_update = tonumber(state[2]) or now

tokens = math.min(burst, tokens + (now - last_update) * rate)

if tokens >= 1 then
    redis.call('HSET', key, 'tokens', tokens - 1, 'last_update', now)
    redis.call('EXPIRE', key, 60)
    return {1, 0}
end
return {0, tostring((1 - tokens) / rate)}
"""


@dataclass(frozen=True)
class Bucket:
    """Refill rate (tokens per second) and burst capacity."""

    rate: float
    burst: int


class BetfairRateLimiter:
    """
    Distributed token bucket limiter.

    Defaults: market data 5 req/s (burst 10), orders 2 req/s (burst 4).
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        data_bucket: Bucket = Bucket(rate=5.0, burst=10),
        order_bucket: Bucket = Bucket(rate=2.0, burst=4),
        key_prefix: str = "edgeline:ratelimit:betfair",
        max_wait_seconds: float = 10.0,
    ):
        self.redis = redis_client
        self.data_bucket = data_bucket
        self.order_bucket = order_bucket
        self.key_prefix = key_prefix
        self.max_wait_seconds = max_wait_seconds

    def bucket_for(self, endpoint: str) -> tuple[str, Bucket]:
        """Bucket name and limits for an API endpoint."""
        if endpoint in ORDER_ENDPOINTS:
            return "orders", self.order_bucket
        return "data", self.data_bucket

    async def acquire(self, endpoint: str = "default") -> tuple[bool, float]:
        """
        Try to take a token.

        Returns (acquired, suggested_wait_seconds). Fails open if Redis is
        unavailable; Betfair's own throttling still applies in that case.
        """
        name, bucket = self.bucket_for(endpoint)
        try:
            allowed, wait = await self.redis.eval(
                TOKEN_BUCKET_LUA,
                1,
                f"{self.key_prefix}:{name}",
                str(bucket.rate),
                str(bucket.burst),
                str(time.time()),
            )
        except redis.RedisError as e:
            logger.error("rate_limiter_error", error=str(e), endpoint=endpoint)
            return True, 0.0
        return int(allowed) == 1, float(wait)

    async def wait_if_needed(self, endpoint: str = "default") -> None:
        """Block until a token is available or max_wait_seconds elapses."""
        waited = 0.0
        while True:
            acquired, wait = await self.acquire(endpoint)
            if acquired:
                return
            if waited >= self.max_wait_seconds:
                logger.warning(
                    "rate_limiter_max_wait_exceeded", endpoint=endpoint, waited=waited
                )
                return
            delay = min(max(wait, 0.05), self.max_wait_seconds - waited)
            logger.debug("rate_limited", endpoint=endpoint, wait_time=delay)
            await asyncio.sleep(delay)
            waited += delay
