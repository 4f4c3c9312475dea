"""Tests for the odds provider adapter."""

import httpx
import pytest

from edgeline.services.quotes.provider import OddsApiClient, OddsProviderError, flatten_events

EVENT = {
    "id": "e912304de2b2ce35b473ce2ecd3d1502",
    "sport_key": "soccer_epl",
    "commence_time": "2026-03-14T17:30:00Z",
    "home_team": "Arsenal",
    "away_team": "Chelsea",
    "bookmakers": [
        {
            "key": "pinnacle",
            "last_update": "2026-03-14T14:58:00Z",
            "markets": [
                {
                    "key": "h2h",
                    "last_update": "2026-03-14T14:59:00Z",
                    "outcomes": [
                        {"name": "Arsenal", "price": 2.1},
                        {"name": "Chelsea", "price": 3.6},
                        {"name": "Draw", "price": 3.4},
                    ],
                },
                {
                    "key": "totals",
                    "outcomes": [
                        {"name": "Over", "price": 1.9, "point": 2.5},
                        {"name": "Under", "price": 1.95, "point": 2.5},
                    ],
                },
            ],
        },
        {
            "key": "betfair_ex_uk",
            "last_update": "2026-03-14T14:59:30Z",
            "markets": [
                {"key": "h2h", "outcomes": [{"name": "Arsenal", "price": 2.14}]},
            ],
        },
    ],
}


class TestFlattenEvents:
    def test_one_record_per_outcome(self):
        batch = flatten_events([EVENT], "soccer_epl", frozenset({"betfair_ex_uk"}))

        assert len(batch.events) == 1
        assert batch.events[0].home_team == "Arsenal"
        assert batch.events[0].commence_time.tzinfo is not None
        assert len(batch.records) == 6

    def test_market_timestamp_preferred_over_bookmaker(self):
        batch = flatten_events([EVENT], "soccer_epl")
        h2h = batch.records[0]
        totals = batch.records[3]

        assert h2h["observed_at"] == "2026-03-14T14:59:00Z"
        assert totals["observed_at"] == "2026-03-14T14:58:00Z"
        assert totals["point"] == 2.5

    def test_exchanges_flagged(self):
        batch = flatten_events([EVENT], "soccer_epl", frozenset({"betfair_ex_uk"}))
        flags = {r["bookmaker"]: r["is_exchange"] for r in batch.records}
        assert flags == {"pinnacle": False, "betfair_ex_uk": True}

    def test_malformed_event_skipped(self):
        broken = {"id": "x", "home_team": "A", "commence_time": "not a date"}
        batch = flatten_events([broken, EVENT], "soccer_epl")

        assert batch.skipped_events == 1
        assert len(batch.events) == 1


class TestOddsApiClient:
    async def test_fetch_odds(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=[EVENT], headers={"x-requests-remaining": "480"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            async with OddsApiClient(
                "key", "https://odds.test/v4/", exchanges=("betfair_ex_uk",), http_client=http_client
            ) as client:
                batch = await client.fetch_odds("soccer_epl", ("uk", "eu"), ("h2h", "totals"))

        assert seen["path"] == "/v4/sports/soccer_epl/odds"
        assert seen["params"]["regions"] == "uk,eu"
        assert seen["params"]["markets"] == "h2h,totals"
        assert seen["params"]["oddsFormat"] == "decimal"
        assert len(batch.records) == 6

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(401, json={"message": "Invalid API key"}),
            httpx.Response(200, json={"message": "not a list"}),
            httpx.Response(200, content=b"<html>"),
        ],
    )
    async def test_unusable_response(self, response):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: response)) as http_client:
            async with OddsApiClient("key", "https://odds.test/v4", http_client=http_client) as client:
                with pytest.raises(OddsProviderError):
                    await client.fetch_odds("soccer_epl", ("uk",), ("h2h",))

    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            async with OddsApiClient("key", "https://odds.test/v4", http_client=http_client) as client:
                with pytest.raises(OddsProviderError):
                    await client.fetch_odds("soccer_epl", ("uk",), ("h2h",))

    async def test_requires_context_manager(self):
        with pytest.raises(RuntimeError):
            await OddsApiClient("key", "https://odds.test/v4").fetch_odds("soccer_epl", ("uk",), ("h2h",))
