"""De-vigged consensus fair price model.

For one (event, market) the model takes a window of quotes and produces a
fair probability per selection:

1. Drop quotes older than max_quote_age_seconds (or observed after as_of).
2. Keep each bookmaker's latest price per selection.
3. De-vig each bookmaker's complete market (normalize 1/price to sum to 1).
   Exchanges only count when their raw book is stable (sum within band).
4. Average the selection's normalized probability across bookmakers with
   equal weight.

Fewer than min_sources contributing bookmakers yields InsufficientData, which
callers treat as "skip", never as an error.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

import structlog

from edgeline.config.trading import FairPriceConfig
from edgeline.models.base import ensure_utc
from edgeline.services.pricing.odds import clamp_probability, devig, overround

logger = structlog.get_logger(__name__)


class PricedQuote(Protocol):
    """Anything quote-shaped: ORM Quote rows and NormalizedQuote both qualify."""

    bookmaker: str
    selection: str
    price: float
    observed_at: datetime
    is_exchange: bool


@dataclass
class BookMarket:
    """One bookmaker's latest complete view of a market."""

    bookmaker: str
    is_exchange: bool
    prices: dict[str, float] = field(default_factory=dict)
    observed_at: dict[str, datetime] = field(default_factory=dict)

    def devigged(self) -> dict[str, float]:
        selections = list(self.prices)
        probs = devig([self.prices[s] for s in selections])
        return dict(zip(selections, probs))


@dataclass(frozen=True)
class FairPrice:
    """Fair probability and price for one selection as of a point in time."""

    selection: str
    fair_prob: float
    fair_price: float
    sources: int
    books_count: int
    exchanges_count: int
    as_of: datetime


@dataclass(frozen=True)
class InsufficientData:
    """The quorum of independent sources was not met."""

    selection: str
    sources: int
    required: int
    reason: str = "insufficient_sources"


class FairPriceModel:
    """Compute de-vigged consensus fair prices from a quote window."""

    def __init__(self, config: FairPriceConfig):
        self.config = config

    def collect_books(
        self, quotes: Iterable[PricedQuote], as_of: datetime
    ) -> dict[str, BookMarket]:
        """Latest fresh price per (bookmaker, selection)."""
        cutoff = as_of - timedelta(seconds=self.config.max_quote_age_seconds)
        books: dict[str, BookMarket] = {}

        for quote in quotes:
            observed_at = ensure_utc(quote.observed_at)
            if observed_at < cutoff or observed_at > as_of:
                continue
            book = books.get(quote.bookmaker)
            if book is None:
                book = BookMarket(bookmaker=quote.bookmaker, is_exchange=quote.is_exchange)
                books[quote.bookmaker] = book
            seen = book.observed_at.get(quote.selection)
            if seen is None or observed_at > seen:
                book.prices[quote.selection] = quote.price
                book.observed_at[quote.selection] = observed_at

        return books

    def usable_books(self, books: dict[str, BookMarket]) -> dict[str, BookMarket]:
        """
        Books that quote every selection of the market.

        A partial book cannot be de-vigged proportionally, and an exchange
        whose raw book falls outside the stability band is too thin to trust.
        """
        selections: set[str] = set()
        for book in books.values():
            selections.update(book.prices)
        if len(selections) < 2:
            return {}

        usable = {}
        for name, book in books.items():
            if set(book.prices) != selections:
                continue
            if book.is_exchange:
                total = overround(book.prices.values())
                if not (
                    self.config.exchange_stability_min
                    <= total
                    <= self.config.exchange_stability_max
                ):
                    logger.debug(
                        "exchange_book_unstable", bookmaker=name, overround=total
                    )
                    continue
            usable[name] = book
        return usable

    def fair_prices(
        self,
        quotes: Iterable[PricedQuote],
        as_of: datetime,
        exclude_bookmaker: str | None = None,
    ) -> dict[str, FairPrice | InsufficientData]:
        """Fair price for every selection in the market."""
        books = self.usable_books(self.collect_books(quotes, as_of))
        if exclude_bookmaker is not None:
            books.pop(exclude_bookmaker, None)

        selections: set[str] = set()
        for book in books.values():
            selections.update(book.prices)

        devigged = {name: book.devigged() for name, book in books.items()}
        exchanges = sum(1 for book in books.values() if book.is_exchange)
        sources = len(books)

        results: dict[str, FairPrice | InsufficientData] = {}
        for selection in sorted(selections):
            if sources < self.config.min_sources:
                results[selection] = InsufficientData(
                    selection=selection,
                    sources=sources,
                    required=self.config.min_sources,
                )
                continue

            mean = sum(p[selection] for p in devigged.values()) / sources
            prob = clamp_probability(mean, self.config.epsilon)
            results[selection] = FairPrice(
                selection=selection,
                fair_prob=prob,
                fair_price=1.0 / prob,
                sources=sources,
                books_count=sources - exchanges,
                exchanges_count=exchanges,
                as_of=as_of,
            )
        return results

    def fair_price(
        self,
        quotes: Iterable[PricedQuote],
        selection: str,
        as_of: datetime,
        exclude_bookmaker: str | None = None,
    ) -> FairPrice | InsufficientData:
        """Fair price for a single selection."""
        result = self.fair_prices(quotes, as_of, exclude_bookmaker).get(selection)
        if result is None:
            return InsufficientData(
                selection=selection,
                sources=0,
                required=self.config.min_sources,
                reason="selection_not_quoted",
            )
        return result
