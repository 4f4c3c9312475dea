"""Betfair Exchange API client.

Provides async access to Betfair's betting exchange API with:
- Automatic authentication
- Rate limiting
- Bounded retry with exponential backoff for transient failures
- Error classification
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import httpx
import redis.asyncio as redis
import structlog

from edgeline.config import get_settings
from edgeline.config.trading import RetryPolicy
from edgeline.services.betfair_client.auth import BetfairAuth, BetfairAuthError
from edgeline.services.betfair_client.rate_limiter import BetfairRateLimiter

logger = structlog.get_logger(__name__)

# Betfair API URLs
BETTING_API_URL = "https://api.betfair.com/exchange/betting/rest/v1.0"
REQUEST_TIMEOUT_SECONDS = 30.0


class BetfairErrorType(Enum):
    """Classification of Betfair API errors."""

    INVALID_SESSION = "INVALID_SESSION"
    TOO_MUCH_DATA = "TOO_MUCH_DATA"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_INPUT = "INVALID_INPUT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNKNOWN = "UNKNOWN"


class BetfairAPIError(Exception):
    """Betfair API error with classification."""

    def __init__(
        self,
        message: str,
        error_type: BetfairErrorType,
        retryable: bool = False,
        code: str | None = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.retryable = retryable
        self.code = code


ERROR_CLASSIFICATION: dict[str, tuple[BetfairErrorType, bool]] = {
    "INVALID_SESSION_INFORMATION": (BetfairErrorType.INVALID_SESSION, True),
    "NO_SESSION": (BetfairErrorType.INVALID_SESSION, True),
    "TOO_MUCH_DATA": (BetfairErrorType.TOO_MUCH_DATA, False),
    "INVALID_INPUT_DATA": (BetfairErrorType.INVALID_INPUT, False),
    "INVALID_APP_KEY": (BetfairErrorType.INVALID_INPUT, False),
    "TOO_MANY_REQUESTS": (BetfairErrorType.RATE_LIMITED, True),
    "SERVICE_BUSY": (BetfairErrorType.SERVICE_UNAVAILABLE, True),
    "TIMEOUT_ERROR": (BetfairErrorType.TIMEOUT, True),
    "UNEXPECTED_ERROR": (BetfairErrorType.SERVICE_UNAVAILABLE, True),
}


@dataclass
class Event:
    """Match/event from Betfair."""

    id: str
    name: str
    competition_id: str | None = None
    venue: str | None = None
    timezone: str | None = None
    open_date: datetime | None = None
    market_count: int = 0


@dataclass
class Runner:
    """Selection within a market."""

    selection_id: int
    runner_name: str
    handicap: float = 0.0
    sort_priority: int = 0


@dataclass
class MarketCatalogue:
    """Market metadata from Betfair."""

    market_id: str
    market_name: str
    market_type: str
    event_id: str
    event_name: str
    competition_id: str | None = None
    competition_name: str | None = None
    market_start_time: datetime | None = None
    runners: list[Runner] = field(default_factory=list)


@dataclass
class PriceSize:
    """Price and size at a level."""

    price: Decimal
    size: Decimal


@dataclass
class RunnerBook:
    """Runner prices and volumes."""

    selection_id: int
    status: str
    last_price_traded: Decimal | None = None
    back_prices: list[PriceSize] = field(default_factory=list)
    lay_prices: list[PriceSize] = field(default_factory=list)


@dataclass
class MarketBook:
    """Live market prices and state."""

    market_id: str
    status: str = "OPEN"
    in_play: bool = False
    total_matched: Decimal = Decimal("0")
    runners: list[RunnerBook] = field(default_factory=list)

    def runner(self, selection_id: int) -> RunnerBook | None:
        for runner in self.runners:
            if runner.selection_id == selection_id:
                return runner
        return None


@dataclass
class CurrentOrder:
    """An order still visible in listCurrentOrders."""

    bet_id: str
    market_id: str
    selection_id: int
    side: str
    status: str
    price: Decimal
    size: Decimal
    size_matched: Decimal
    size_remaining: Decimal
    average_price_matched: Decimal | None = None
    customer_order_ref: str | None = None


@dataclass
class ClearedOrder:
    """A settled, voided, lapsed or cancelled order from listClearedOrders."""

    bet_id: str
    bet_status: str
    size_settled: Decimal
    price_matched: Decimal | None = None
    bet_outcome: str | None = None


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value or 0))


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None


class BetfairClient:
    """
    Betfair Exchange API client.

    Supports:
    - Session token authentication (certificate + interactive)
    - Rate limiting (separate data and order buckets)
    - Bounded retry with exponential backoff (RetryPolicy)
    - Error classification and handling
    """

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        rate_limiter: BetfairRateLimiter | None = None,
        auth: BetfairAuth | None = None,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize Betfair client.

        Args:
            redis_client: Redis client for session caching and rate limiting
            rate_limiter: Optional custom rate limiter
            auth: Optional custom auth handler
            retry_policy: Attempts and backoff for transient failures
            http_client: Optional preconfigured httpx client
        """
        self.settings = get_settings()
        self.redis = redis_client
        self.auth = auth or BetfairAuth(redis_client)
        self.rate_limiter = rate_limiter or (
            BetfairRateLimiter(redis_client) if redis_client else None
        )
        self.retry_policy = retry_policy or RetryPolicy()
        self._http_client = http_client
        self._owns_http_client = http_client is None

    async def __aenter__(self) -> "BetfairClient":
        """Async context manager entry."""
        await self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._http_client and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)
            self._owns_http_client = True
        return self._http_client

    def _classify_error(self, error_code: str) -> tuple[BetfairErrorType, bool]:
        """Classify error code and determine if retryable."""
        return ERROR_CLASSIFICATION.get(error_code, (BetfairErrorType.UNKNOWN, False))

    @staticmethod
    def _aping_error_code(response: httpx.Response) -> str | None:
        """Extract the APINGException errorCode from an error body."""
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None
        detail = body.get("detail") or {}
        exception = detail.get("APINGException") or detail.get("exception") or {}
        return exception.get("errorCode") or body.get("faultcode")

    async def _request(self, endpoint: str, params: dict[str, Any]) -> Any:
        """
        Make an API request with rate limiting and retry.

        Transient failures (timeouts, connection errors, 429, 5xx,
        SERVICE_BUSY) are retried up to retry_policy.max_attempts in total.
        Everything else raises immediately.

        Raises:
            BetfairAPIError: If the request fails or the retry budget runs out
        """
        url = f"{BETTING_API_URL}/{endpoint}/"
        attempts = self.retry_policy.max_attempts
        last_error: BetfairAPIError | None = None

        for attempt in range(attempts):
            if attempt > 0:
                wait_time = self.retry_policy.delay_for(attempt - 1)
                logger.warning(
                    "betfair_request_retrying",
                    endpoint=endpoint,
                    attempt=attempt,
                    wait_time=wait_time,
                    error=str(last_error),
                )
                await asyncio.sleep(wait_time)

            try:
                if self.rate_limiter:
                    await self.rate_limiter.wait_if_needed(endpoint)

                token = await self.auth.get_session_token()
                client = await self._get_client()
                response = await client.post(
                    url,
                    json=params,
                    headers={
                        "X-Application": self.settings.betfair_app_key,
                        "X-Authentication": token,
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                    },
                )
                response.raise_for_status()
                return response.json()

            except httpx.TransportError as e:
                last_error = BetfairAPIError(
                    f"Transport error: {e.__class__.__name__}",
                    BetfairErrorType.TIMEOUT,
                    retryable=True,
                )

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                code = self._aping_error_code(e.response)

                if status == 429:
                    last_error = BetfairAPIError(
                        "Rate limited", BetfairErrorType.RATE_LIMITED, True, code
                    )
                    continue
                if status >= 500 and code is None:
                    last_error = BetfairAPIError(
                        f"Server error: {status}",
                        BetfairErrorType.SERVICE_UNAVAILABLE,
                        True,
                    )
                    continue

                error_type, retryable = self._classify_error(code or "")
                if error_type == BetfairErrorType.INVALID_SESSION:
                    await self.auth.invalidate()
                    last_error = BetfairAPIError(
                        "Session expired", error_type, True, code
                    )
                    continue
                if retryable:
                    last_error = BetfairAPIError(
                        f"{endpoint} failed: {code}", error_type, True, code
                    )
                    continue

                logger.warning(
                    "betfair_request_rejected",
                    endpoint=endpoint,
                    status_code=status,
                    error_code=code,
                    response_text=e.response.text[:500] if e.response.text else "",
                )
                raise BetfairAPIError(
                    f"{endpoint} rejected: {code or status}",
                    error_type if code else BetfairErrorType.INVALID_INPUT,
                    retryable=False,
                    code=code,
                ) from e

            except BetfairAuthError as e:
                raise BetfairAPIError(
                    str(e), BetfairErrorType.INVALID_SESSION, retryable=False
                ) from e

        assert last_error is not None
        logger.error(
            "betfair_retries_exhausted",
            endpoint=endpoint,
            attempts=attempts,
            error=str(last_error),
        )
        raise last_error

    async def list_events(
        self,
        competition_ids: list[str] | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        sport_ids: list[str] | None = None,
    ) -> list[Event]:
        """
        Fetch events within time window.

        Args:
            competition_ids: Filter by competition IDs
            from_time: Start of time window
            to_time: End of time window
            sport_ids: Filter by sport IDs

        Returns:
            List of events
        """
        filter_params: dict[str, Any] = {}
        if competition_ids:
            filter_params["competitionIds"] = competition_ids
        if sport_ids:
            filter_params["eventTypeIds"] = sport_ids
        if from_time or to_time:
            filter_params["marketStartTime"] = {}
            if from_time:
                filter_params["marketStartTime"]["from"] = from_time.isoformat()
            if to_time:
                filter_params["marketStartTime"]["to"] = to_time.isoformat()

        data = await self._request("listEvents", {"filter": filter_params})

        return [
            Event(
                id=item["event"]["id"],
                name=item["event"]["name"],
                venue=item["event"].get("venue"),
                timezone=item["event"].get("timezone"),
                open_date=_parse_datetime(item["event"].get("openDate")),
                market_count=item.get("marketCount", 0),
            )
            for item in data
        ]

    async def list_market_catalogue(
        self,
        event_ids: list[str] | None = None,
        competition_ids: list[str] | None = None,
        market_types: list[str] | None = None,
        max_results: int = 200,
    ) -> list[MarketCatalogue]:
        """
        Fetch market metadata.

        Args:
            event_ids: Filter by event IDs
            competition_ids: Filter by competition IDs
            market_types: Filter by market type codes (e.g. OVER_UNDER_25)
            max_results: Maximum results to return

        Returns:
            List of market catalogues
        """
        filter_params: dict[str, Any] = {}
        if event_ids:
            filter_params["eventIds"] = event_ids
        if competition_ids:
            filter_params["competitionIds"] = competition_ids
        if market_types:
            filter_params["marketTypeCodes"] = market_types

        data = await self._request(
            "listMarketCatalogue",
            {
                "filter": filter_params,
                "maxResults": str(max_results),
                "marketProjection": [
                    "EVENT",
                    "COMPETITION",
                    "RUNNER_DESCRIPTION",
                    "MARKET_DESCRIPTION",
                    "MARKET_START_TIME",
                ],
            },
        )

        markets = []
        for item in data:
            event = item.get("event", {})
            competition = item.get("competition", {})
            description = item.get("description", {})
            markets.append(
                MarketCatalogue(
                    market_id=item["marketId"],
                    market_name=item.get("marketName", ""),
                    market_type=description.get("marketType", "UNKNOWN"),
                    event_id=event.get("id", ""),
                    event_name=event.get("name", ""),
                    competition_id=competition.get("id"),
                    competition_name=competition.get("name"),
                    market_start_time=_parse_datetime(item.get("marketStartTime")),
                    runners=[
                        Runner(
                            selection_id=r["selectionId"],
                            runner_name=r.get("runnerName", "Unknown"),
                            handicap=r.get("handicap", 0.0),
                            sort_priority=r.get("sortPriority", 0),
                        )
                        for r in item.get("runners", [])
                    ],
                )
            )
        return markets

    async def list_market_book(
        self,
        market_ids: list[str],
        price_depth: int = 1,
    ) -> list[MarketBook]:
        """
        Fetch live prices and runner status.

        Args:
            market_ids: Market IDs to fetch
            price_depth: Number of price levels per side

        Returns:
            List of market books with prices
        """
        data = await self._request(
            "listMarketBook",
            {
                "marketIds": market_ids,
                "priceProjection": {
                    "priceData": ["EX_BEST_OFFERS"],
                    "exBestOffersOverrides": {"bestPricesDepth": price_depth},
                },
            },
        )

        books = []
        for item in data:
            runners = []
            for runner_data in item.get("runners", []):
                ex = runner_data.get("ex", {})
                runners.append(
                    RunnerBook(
                        selection_id=runner_data["selectionId"],
                        status=runner_data.get("status", "ACTIVE"),
                        last_price_traded=_decimal(runner_data["lastPriceTraded"])
                        if runner_data.get("lastPriceTraded")
                        else None,
                        back_prices=[
                            PriceSize(price=_decimal(p["price"]), size=_decimal(p["size"]))
                            for p in ex.get("availableToBack", [])
                        ],
                        lay_prices=[
                            PriceSize(price=_decimal(p["price"]), size=_decimal(p["size"]))
                            for p in ex.get("availableToLay", [])
                        ],
                    )
                )

            books.append(
                MarketBook(
                    market_id=item["marketId"],
                    status=item.get("status", "OPEN"),
                    in_play=item.get("inplay", False),
                    total_matched=_decimal(item.get("totalMatched")),
                    runners=runners,
                )
            )
        return books

    async def place_orders(
        self,
        market_id: str,
        instructions: list[dict[str, Any]],
        customer_ref: str | None = None,
    ) -> dict[str, Any]:
        """
        Place limit orders.

        customer_ref makes the request idempotent on Betfair's side, so a
        retried placement after a timeout cannot create a second order.

        Returns:
            The raw PlaceExecutionReport
        """
        params: dict[str, Any] = {"marketId": market_id, "instructions": instructions}
        if customer_ref:
            params["customerRef"] = customer_ref
        return await self._request("placeOrders", params)

    async def cancel_orders(self, market_id: str, bet_ids: list[str]) -> dict[str, Any]:
        """
        Cancel unmatched portions of orders.

        Returns:
            The raw CancelExecutionReport
        """
        return await self._request(
            "cancelOrders",
            {
                "marketId": market_id,
                "instructions": [{"betId": bet_id} for bet_id in bet_ids],
            },
        )

    async def list_current_orders(
        self,
        bet_ids: list[str] | None = None,
        market_ids: list[str] | None = None,
        customer_order_refs: list[str] | None = None,
    ) -> list[CurrentOrder]:
        """Fetch orders that are still executable or recently completed."""
        params: dict[str, Any] = {"orderProjection": "ALL"}
        if bet_ids:
            params["betIds"] = bet_ids
        if market_ids:
            params["marketIds"] = market_ids
        if customer_order_refs:
            params["customerOrderRefs"] = customer_order_refs

        data = await self._request("listCurrentOrders", params)
        orders = []
        for item in data.get("currentOrders", []):
            price_size = item.get("priceSize", {})
            orders.append(
                CurrentOrder(
                    bet_id=str(item["betId"]),
                    market_id=item["marketId"],
                    selection_id=item["selectionId"],
                    side=item.get("side", ""),
                    status=item.get("status", ""),
                    price=_decimal(price_size.get("price")),
                    size=_decimal(price_size.get("size")),
                    size_matched=_decimal(item.get("sizeMatched")),
                    size_remaining=_decimal(item.get("sizeRemaining")),
                    average_price_matched=_decimal(item["averagePriceMatched"])
                    if item.get("averagePriceMatched")
                    else None,
                    customer_order_ref=item.get("customerOrderRef"),
                )
            )
        return orders

    async def list_cleared_orders(
        self, bet_ids: list[str], bet_status: str = "SETTLED"
    ) -> list[ClearedOrder]:
        """Fetch orders that have left the current orders view."""
        data = await self._request(
            "listClearedOrders", {"betStatus": bet_status, "betIds": bet_ids}
        )
        return [
            ClearedOrder(
                bet_id=str(item["betId"]),
                bet_status=bet_status,
                size_settled=_decimal(item.get("sizeSettled")),
                price_matched=_decimal(item["priceMatched"])
                if item.get("priceMatched")
                else None,
                bet_outcome=item.get("betOutcome"),
            )
            for item in data.get("clearedOrders", [])
        ]

    async def health_check(self) -> bool:
        """
        Check if Betfair API is accessible.

        Returns:
            True if API is healthy
        """
        try:
            await self._request("listEventTypes", {"filter": {}})
            return True
        except BetfairAPIError as e:
            logger.error("betfair_health_check_failed", error=str(e))
            return False
