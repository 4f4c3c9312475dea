"""API tests through the ASGI app with the database and engine overridden."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from edgeline.api.dependencies import get_db, get_trade_engine
from edgeline.main import app

NOW = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
async def client(session_factory, engine):
    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_trade_engine] = lambda: engine
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestTradesApi:
    async def test_list_and_filter(self, client, make_trade):
        await make_trade(NOW + timedelta(hours=2))
        await make_trade(NOW + timedelta(hours=1), status="hedged")

        response = await client.get("/api/trades", params={"status": "hedged"})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["status"] == "hedged"

    async def test_detail_includes_history(self, client, make_trade):
        trade_id = await make_trade(NOW + timedelta(hours=2))
        await client.post(f"/api/trades/{trade_id}/cancel")

        response = await client.get(f"/api/trades/{trade_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "cancelled"
        assert [e["event_type"] for e in body["events"]] == ["CANCELLED"]

    async def test_unknown_trade(self, client):
        assert (await client.get("/api/trades/9999")).status_code == 404
        assert (await client.post("/api/trades/9999/cancel")).status_code == 404

    async def test_cancel_hedged_is_conflict(self, client, make_trade):
        trade_id = await make_trade(NOW, status="hedged")

        response = await client.post(f"/api/trades/{trade_id}/cancel")

        assert response.status_code == 409

    async def test_cancel_finding_fill_reports_not_cancelled(self, client, make_trade, gateway):
        trade_id = await make_trade(
            NOW + timedelta(minutes=40),
            status="active",
            back_order_ref="B1",
            back_size=10,
            back_matched_size=0,
        )
        gateway.add_order("B1", "4.00", "6.00", price="2.10")

        response = await client.post(f"/api/trades/{trade_id}/cancel")

        assert response.status_code == 200
        assert response.json()["cancelled"] is False
        assert response.json()["status"] == "active"

    async def test_strategy_stats_by_competition(self, client, make_trade):
        for pnl, competition in (("0.68", "English Premier League"), ("-1.82", "English Premier League"), ("1.10", None)):
            await make_trade(
                NOW - timedelta(days=1),
                status="settled",
                competition_name=competition,
                back_matched_size=Decimal("10.00"),
                realised_pnl=Decimal(pnl),
            )
        await make_trade(NOW + timedelta(hours=1), status="hedged", back_matched_size=Decimal("10.00"))

        response = await client.get("/api/trades/stats")

        assert response.status_code == 200
        body = response.json()
        assert body["total_trades"] == 3
        assert body["total_staked"] == "30.00"
        assert body["pnl"] == "-0.04"
        assert [(c["name"], c["trades"], c["pnl"]) for c in body["competitions"]] == [
            ("Unknown", 1, "1.10"),
            ("English Premier League", 2, "-1.14"),
        ]

    async def test_strategy_stats_empty(self, client):
        body = (await client.get("/api/trades/stats")).json()

        assert body["total_trades"] == 0
        assert body["competitions"] == []


class TestBetsApi:
    async def test_record_and_settle_once(self, client, sample_event):
        created = await client.post(
            "/api/bets",
            json={
                "event_id": sample_event.id,
                "market": "h2h",
                "selection": "Arsenal",
                "source": "pinnacle",
                "odds": "2.10",
                "stake": "10",
                "accepted_fair_prob": "0.5",
                "accepted_fair_price": "2.0",
            },
        )
        assert created.status_code == 201
        bet_id = created.json()["id"]

        settled = await client.post(f"/api/bets/{bet_id}/settle", json={"status": "won"})
        assert settled.status_code == 200
        assert settled.json()["status"] == "won"

        again = await client.post(f"/api/bets/{bet_id}/settle", json={"status": "lost"})
        assert again.status_code == 409

    async def test_unknown_event(self, client):
        response = await client.post(
            "/api/bets",
            json={
                "event_id": 9999,
                "market": "h2h",
                "selection": "Arsenal",
                "source": "pinnacle",
                "odds": "2.10",
                "stake": "10",
                "accepted_fair_prob": "0.5",
                "accepted_fair_price": "2.0",
            },
        )
        assert response.status_code == 404


class TestCandidatesApi:
    async def test_empty_list(self, client):
        response = await client.get("/api/candidates")
        assert response.status_code == 200
