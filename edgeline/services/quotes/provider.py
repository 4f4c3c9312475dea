"""Odds provider adapter.

Fetches bookmaker odds from The Odds API (v4, decimal format) and flattens
each event's bookmaker/market/outcome tree into raw quote records for
normalize_quotes. No validation happens here; malformed outcomes flow through
and are quarantined by normalization.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
import structlog

logger = structlog.get_logger(__name__)


class OddsProviderError(Exception):
    """The provider returned an error or an unusable payload."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ProviderEvent:
    external_id: str
    sport: str
    home_team: str
    away_team: str
    commence_time: datetime


@dataclass
class ProviderBatch:
    """Events and flattened raw quote records from one provider call."""

    events: list[ProviderEvent] = field(default_factory=list)
    records: list[dict[str, Any]] = field(default_factory=list)
    skipped_events: int = 0


def flatten_events(
    payload: list[dict[str, Any]],
    sport: str,
    exchanges: frozenset[str] = frozenset(),
) -> ProviderBatch:
    """
    Flatten provider events into (events, raw quote records).

    Events missing an id, teams or a parseable start time are skipped along
    with their odds; everything below event level is passed through as-is.
    """
    batch = ProviderBatch()
    for item in payload:
        try:
            event = ProviderEvent(
                external_id=str(item["id"]),
                sport=item.get("sport_key") or sport,
                home_team=item["home_team"],
                away_team=item["away_team"],
                commence_time=datetime.fromisoformat(
                    item["commence_time"].replace("Z", "+00:00")
                ),
            )
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            batch.skipped_events += 1
            logger.warning("provider_event_skipped", error=str(e))
            continue
        batch.events.append(event)

        for bookmaker in item.get("bookmakers") or []:
            key = bookmaker.get("key")
            for market in bookmaker.get("markets") or []:
                observed = market.get("last_update") or bookmaker.get("last_update")
                for outcome in market.get("outcomes") or []:
                    batch.records.append(
                        {
                            "event_external_id": event.external_id,
                            "market": market.get("key"),
                            "selection": outcome.get("name"),
                            "bookmaker": key,
                            "price": outcome.get("price"),
                            "point": outcome.get("point"),
                            "observed_at": observed,
                            "is_exchange": key in exchanges,
                            "raw": outcome,
                        }
                    )
    return batch


class OddsApiClient:
    """Thin async client for The Odds API."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        exchanges: tuple[str, ...] = (),
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.exchanges = frozenset(exchanges)
        self._http_client = http_client
        self._owns_http_client = http_client is None

    async def __aenter__(self) -> "OddsApiClient":
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
            self._owns_http_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._http_client and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_odds(
        self,
        sport: str,
        regions: tuple[str, ...],
        markets: tuple[str, ...],
    ) -> ProviderBatch:
        """Fetch current odds for one sport."""
        if self._http_client is None:
            raise RuntimeError("OddsApiClient must be used as an async context manager")

        try:
            response = await self._http_client.get(
                f"{self.base_url}/sports/{sport}/odds",
                params={
                    "apiKey": self.api_key,
                    "regions": ",".join(regions),
                    "markets": ",".join(markets),
                    "oddsFormat": "decimal",
                    "dateFormat": "iso",
                },
            )
        except httpx.TransportError as e:
            raise OddsProviderError(f"Provider unreachable: {e}") from e

        if response.status_code != 200:
            raise OddsProviderError(
                f"Provider returned HTTP {response.status_code} for {sport}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise OddsProviderError(f"Provider returned invalid JSON for {sport}") from e
        if not isinstance(payload, list):
            raise OddsProviderError(f"Unexpected provider payload for {sport}")

        logger.debug(
            "provider_odds_fetched",
            sport=sport,
            events=len(payload),
            requests_remaining=response.headers.get("x-requests-remaining"),
        )
        return flatten_events(payload, sport, self.exchanges)
