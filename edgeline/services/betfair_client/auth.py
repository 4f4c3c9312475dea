"""Betfair session management.

Logs in with the SSL certificate when one is configured (required for bots
placing orders) and falls back to interactive login otherwise. The session
token is shared between workers through Redis so concurrent Celery tasks do
not each open their own session.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import redis.asyncio as redis
import structlog

from edgeline.config import get_settings

logger = structlog.get_logger(__name__)

CERT_LOGIN_URL = "https://identitysso-cert.betfair.com/api/certlogin"
INTERACTIVE_LOGIN_URL = "https://identitysso.betfair.com/api/login"
KEEPALIVE_URL = "https://identitysso.betfair.com/api/keepAlive"


class BetfairAuthError(Exception):
    """Raised when Betfair authentication fails."""

    pass


class BetfairAuth:
    """
    Obtain and cache a Betfair session token.

    Tokens are kept in memory and in Redis (`edgeline:betfair:session`).
    Betfair sessions last 8h of inactivity on the UK exchange; we refresh
    well inside that.
    """

    TOKEN_TTL_SECONDS = 4 * 60 * 60
    REDIS_TOKEN_KEY = "edgeline:betfair:session"

    def __init__(self, redis_client: redis.Redis | None = None):
        self.settings = get_settings()
        self.redis = redis_client
        self._token: str | None = None
        self._expires_at: datetime | None = None
        self._lock = asyncio.Lock()

    def _memory_token(self) -> str | None:
        if self._token and self._expires_at and datetime.now(timezone.utc) < self._expires_at:
            return self._token
        return None

    async def get_session_token(self) -> str:
        """Return a valid session token, logging in if needed."""
        token = self._memory_token()
        if token:
            return token

        async with self._lock:
            token = self._memory_token() or await self._redis_token()
            if token:
                return token

            token = await self._login()
            await self._store(token)
            logger.info("betfair_login_success")
            return token

    async def invalidate(self) -> None:
        """Forget the current token so the next call logs in again."""
        self._token = None
        self._expires_at = None
        if self.redis:
            try:
                await self.redis.delete(self.REDIS_TOKEN_KEY)
            except redis.RedisError as e:
                logger.warning("redis_delete_token_error", error=str(e))
        logger.info("betfair_session_invalidated")

    async def keep_alive(self) -> bool:
        """Extend the current session. Returns False if Betfair refused."""
        token = await self.get_session_token()
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    KEEPALIVE_URL,
                    headers={
                        "X-Application": self.settings.betfair_app_key,
                        "X-Authentication": token,
                        "Accept": "application/json",
                    },
                )
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("keepalive_error", error=str(e))
            return False

        if data.get("status") == "SUCCESS":
            await self._store(token)
            return True

        logger.warning("keepalive_failed", error=data.get("error"))
        await self.invalidate()
        return False

    async def _login(self) -> str:
        """Certificate login when a cert is configured, interactive otherwise."""
        if not self.settings.betfair_configured:
            raise BetfairAuthError("Betfair credentials are not configured")

        form = {
            "username": self.settings.betfair_username,
            "password": self.settings.betfair_password,
        }
        headers = {
            "X-Application": self.settings.betfair_app_key,
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }

        client_kwargs: dict[str, Any] = {"timeout": 15.0}
        url = INTERACTIVE_LOGIN_URL
        if self.settings.betfair_cert_path:
            key_path = self.settings.betfair_cert_key_path or self.settings.betfair_cert_path.replace(
                ".crt", ".key"
            )
            client_kwargs["cert"] = (self.settings.betfair_cert_path, key_path)
            url = CERT_LOGIN_URL

        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                response = await client.post(url, data=form, headers=headers)
                return self._parse_login_response(response.json())
        except httpx.HTTPError as e:
            logger.error("betfair_login_http_error", error=str(e), url=url)
            raise BetfairAuthError(f"Login HTTP error: {e}") from e
        except ValueError as e:
            raise BetfairAuthError(f"Login returned invalid JSON: {e}") from e

    @staticmethod
    def _parse_login_response(data: dict[str, Any]) -> str:
        """Extract the token from either login endpoint's response shape."""
        status = data.get("loginStatus") or data.get("status")
        if status == "SUCCESS":
            token = data.get("sessionToken") or data.get("token")
            if token:
                return token
            raise BetfairAuthError("No token in successful response")

        error = data.get("error") or status or "Unknown error"
        raise BetfairAuthError(f"Login failed: {error}")

    async def _redis_token(self) -> str | None:
        if not self.redis:
            return None
        try:
            cached = await self.redis.get(self.REDIS_TOKEN_KEY)
            ttl = await self.redis.ttl(self.REDIS_TOKEN_KEY)
        except redis.RedisError as e:
            logger.warning("redis_get_token_error", error=str(e))
            return None
        if not cached or ttl <= 0:
            return None
        self._token = cached.decode() if isinstance(cached, bytes) else cached
        self._expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        return self._token

    async def _store(self, token: str) -> None:
        self._token = token
        self._expires_at = datetime.now(timezone.utc) + timedelta(
            seconds=self.TOKEN_TTL_SECONDS
        )
        if self.redis:
            try:
                await self.redis.set(
                    self.REDIS_TOKEN_KEY, token, ex=self.TOKEN_TTL_SECONDS
                )
            except redis.RedisError as e:
                logger.warning("redis_cache_token_error", error=str(e))
