"""Unit tests for the de-vigged consensus fair price model."""

from datetime import datetime, timedelta, timezone

import pytest

from edgeline.config.trading import FairPriceConfig
from edgeline.services.pricing.fair_price import FairPrice, FairPriceModel, InsufficientData
from edgeline.services.quotes.normalize import NormalizedQuote

NOW = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)


def quote(bookmaker, selection, price, age_seconds=0, is_exchange=False):
    return NormalizedQuote(
        event_external_id="evt-1",
        market="h2h",
        selection=selection,
        bookmaker=bookmaker,
        price=price,
        observed_at=NOW - timedelta(seconds=age_seconds),
        is_exchange=is_exchange,
    )


def book(bookmaker, home, away, age_seconds=0, is_exchange=False):
    return [
        quote(bookmaker, "Home", home, age_seconds, is_exchange),
        quote(bookmaker, "Away", away, age_seconds, is_exchange),
    ]


@pytest.fixture
def model():
    return FairPriceModel(FairPriceConfig(max_quote_age_seconds=1800, min_sources=2))


class TestConsensus:
    """Fair probability from several bookmakers."""

    def test_two_books_average_devigged_probabilities(self, model):
        quotes = book("bet365", 1.9, 1.9) + book("williamhill", 1.8, 2.0)
        prices = model.fair_prices(quotes, NOW)

        home = prices["Home"]
        assert isinstance(home, FairPrice)
        expected = (0.5 + (1 / 1.8) / (1 / 1.8 + 1 / 2.0)) / 2
        assert home.fair_prob == pytest.approx(expected)
        assert home.fair_price == pytest.approx(1 / expected)
        assert home.sources == 2

    def test_fair_probabilities_lie_in_open_interval_and_sum_to_one(self, model):
        quotes = book("a", 1.5, 2.6) + book("b", 1.45, 2.8) + book("c", 1.55, 2.5)
        prices = model.fair_prices(quotes, NOW)

        probs = [p.fair_prob for p in prices.values()]
        assert all(0 < p < 1 for p in probs)
        assert sum(probs) == pytest.approx(1.0)

    def test_latest_price_per_bookmaker_wins(self, model):
        quotes = book("a", 3.0, 1.4, age_seconds=600) + book("a", 1.9, 1.9) + book("b", 1.9, 1.9)
        home = model.fair_price(quotes, "Home", NOW)
        assert home.fair_prob == pytest.approx(0.5)


class TestQuorum:
    """Below min_sources the model reports insufficient data."""

    def test_single_book_is_insufficient(self, model):
        result = model.fair_price(book("a", 1.9, 1.9), "Home", NOW)
        assert isinstance(result, InsufficientData)
        assert result.sources == 1
        assert result.required == 2

    def test_stale_quotes_do_not_count(self, model):
        quotes = book("a", 1.9, 1.9) + book("b", 1.9, 1.9, age_seconds=3600)
        assert isinstance(model.fair_price(quotes, "Home", NOW), InsufficientData)

    def test_future_quotes_are_ignored(self, model):
        quotes = book("a", 1.9, 1.9) + book("b", 1.9, 1.9, age_seconds=-60)
        assert isinstance(model.fair_price(quotes, "Home", NOW), InsufficientData)

    def test_partial_book_does_not_count(self, model):
        quotes = book("a", 1.9, 1.9) + [quote("b", "Home", 1.9)]
        assert isinstance(model.fair_price(quotes, "Home", NOW), InsufficientData)

    def test_unquoted_selection(self, model):
        quotes = book("a", 1.9, 1.9) + book("b", 1.9, 1.9)
        result = model.fair_price(quotes, "Draw", NOW)
        assert isinstance(result, InsufficientData)
        assert result.reason == "selection_not_quoted"


class TestExchangeStability:
    """Exchange books only count inside the stability band."""

    def test_stable_exchange_counts(self, model):
        quotes = book("a", 1.9, 1.9) + book("betfair_ex_uk", 2.0, 2.02, is_exchange=True)
        home = model.fair_price(quotes, "Home", NOW)
        assert isinstance(home, FairPrice)
        assert home.exchanges_count == 1
        assert home.books_count == 1

    def test_thin_exchange_is_excluded(self, model):
        quotes = book("a", 1.9, 1.9) + book("betfair_ex_uk", 1.5, 1.5, is_exchange=True)
        assert isinstance(model.fair_price(quotes, "Home", NOW), InsufficientData)


class TestLeaveOneOut:
    def test_excluding_the_offering_book(self, model):
        quotes = book("a", 1.9, 1.9) + book("b", 1.9, 1.9) + book("c", 1.5, 2.7)
        with_own = model.fair_price(quotes, "Away", NOW)
        without_own = model.fair_price(quotes, "Away", NOW, exclude_bookmaker="c")
        assert without_own.sources == 2
        assert without_own.fair_prob == pytest.approx(0.5)
        assert with_own.fair_prob != pytest.approx(without_own.fair_prob)
