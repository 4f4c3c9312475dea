"""Tests for the append-only quote store (SQLite)."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from edgeline.models import Candidate, Event, Quote
from edgeline.services.edge.detector import EdgeSignal
from edgeline.services.quotes.normalize import normalize_quote
from edgeline.services.quotes.store import (
    insert_quotes,
    markets_with_quotes_since,
    quote_window,
    save_candidates,
    upsert_event,
)

NOW = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)


def quote(bookmaker="bet365", selection="Arsenal", price=2.1, observed_at=NOW, **kwargs):
    return normalize_quote(
        {
            "event_external_id": "evt-1",
            "market": "h2h",
            "selection": selection,
            "bookmaker": bookmaker,
            "price": price,
            "observed_at": observed_at,
            **kwargs,
        }
    )


async def quote_count(db) -> int:
    return await db.scalar(select(func.count(Quote.id)))


class TestUpsertEvent:
    async def test_insert_then_update(self, db):
        first = await upsert_event(db, "evt-9", "soccer_epl", "A", "B", NOW)
        second = await upsert_event(db, "evt-9", "soccer_epl", "A", "B", NOW + timedelta(hours=1))
        await db.commit()

        assert first == second
        event = await db.get(Event, first)
        await db.refresh(event)
        assert event.commence_time.replace(tzinfo=timezone.utc) == NOW + timedelta(hours=1)


class TestInsertQuotes:
    """Inserts are idempotent on the natural key."""

    async def test_duplicate_delivery_stores_one_row(self, db, sample_event):
        assert await insert_quotes(db, [quote()]) == 1
        assert await insert_quotes(db, [quote()]) == 0
        await db.commit()
        assert await quote_count(db) == 1

    async def test_duplicates_within_one_batch(self, db, sample_event):
        assert await insert_quotes(db, [quote(), quote(), quote(price=2.2)]) == 1
        assert await quote_count(db) == 1

    async def test_new_observation_is_a_new_row(self, db, sample_event):
        await insert_quotes(db, [quote()])
        await insert_quotes(db, [quote(observed_at=NOW + timedelta(minutes=1))])
        assert await quote_count(db) == 2

    async def test_unknown_event_is_skipped(self, db, sample_event):
        orphan = normalize_quote(
            {
                "event_external_id": "missing",
                "market": "h2h",
                "selection": "X",
                "bookmaker": "bet365",
                "price": 2.0,
                "observed_at": NOW,
            }
        )
        assert await insert_quotes(db, [orphan]) == 0

    async def test_line_markets_do_not_collide(self, db, sample_event):
        await insert_quotes(
            db,
            [
                quote(selection="Under", price=1.9, market="totals", point=2.5),
                quote(selection="Under", price=1.4, market="totals", point=3.5),
            ],
        )
        markets = await markets_with_quotes_since(db, NOW - timedelta(minutes=5))
        assert sorted(m for _, m in markets) == ["totals@2.5", "totals@3.5"]


class TestQuoteWindow:
    async def test_window_excludes_old_and_future_quotes(self, db, sample_event):
        await insert_quotes(
            db,
            [
                quote(observed_at=NOW - timedelta(hours=2)),
                quote(observed_at=NOW - timedelta(minutes=5)),
                quote(observed_at=NOW + timedelta(minutes=5)),
            ],
        )
        window = await quote_window(db, sample_event.id, "h2h", NOW, max_age_seconds=1800)
        assert len(window) == 1


class TestCandidates:
    async def test_candidates_saved_with_quote_time(self, db, sample_event):
        signal = EdgeSignal(
            event_id=sample_event.id,
            market="h2h",
            selection="Arsenal",
            bookmaker="bet365",
            is_exchange=False,
            offered_price=2.3,
            offered_prob=1 / 2.3,
            fair_price=2.05,
            fair_prob=1 / 2.05,
            edge_pp=5.3,
            tier="high",
            books_count=3,
            exchanges_count=0,
            quote_observed_at=NOW,
        )
        await save_candidates(db, [signal])
        await db.commit()

        assert await db.scalar(select(func.count(Candidate.id))) == 1
        saved = (await db.execute(select(Candidate))).scalar_one()
        assert (saved.selection, saved.bookmaker, saved.tier) == ("Arsenal", "bet365", "high")
        assert saved.quote_observed_at.replace(tzinfo=timezone.utc) == NOW
