"""Edge detector.

Compares each fresh bookmaker quote against the de-vigged fair price for the
same selection and emits point-in-time signals:

    edge_pp = 100 * (fair_prob - 1 / offered_price)

Exchange offers are compared on their commission-adjusted price. Signals
below min_edge_pp are dropped; the rest get a tier from ordered thresholds
(first match, high to low). Within one cycle only the most recent quote per
(event, market, selection, bookmaker) is evaluated.

Insufficient data from the fair price model is a silent skip.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from edgeline.config.trading import EdgeConfig, TierThreshold
from edgeline.models.base import ensure_utc
from edgeline.services.pricing.fair_price import (
    FairPrice,
    FairPriceModel,
    InsufficientData,
    PricedQuote,
)
from edgeline.services.pricing.odds import apply_exchange_commission, implied_probability

logger = structlog.get_logger(__name__)


def compute_edge_pp(fair_prob: float, offered_price: float) -> float:
    """Edge in percentage points between fair and offered implied probability."""
    return 100.0 * (fair_prob - implied_probability(offered_price))


def classify_tier(edge_pp: float, tiers: Sequence[TierThreshold]) -> str:
    """
    Assign a tier to an edge.

    Thresholds are checked from highest to lowest and the first match wins.
    Edges below every threshold fall into the lowest tier.
    """
    ordered = sorted(tiers, key=lambda t: t.min_edge_pp, reverse=True)
    for tier in ordered:
        if edge_pp >= tier.min_edge_pp:
            return tier.name
    return ordered[-1].name


@dataclass(frozen=True)
class EdgeSignal:
    """One candidate opportunity, ready to be persisted."""

    event_id: int
    market: str
    selection: str
    bookmaker: str
    is_exchange: bool
    offered_price: float
    offered_prob: float
    fair_price: float
    fair_prob: float
    edge_pp: float
    tier: str
    books_count: int
    exchanges_count: int
    quote_observed_at: datetime
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "event_id": self.event_id,
            "market": self.market,
            "selection": self.selection,
            "bookmaker": self.bookmaker,
            "offered_price": self.offered_price,
            "fair_price": self.fair_price,
            "edge_pp": self.edge_pp,
            "tier": self.tier,
        }


class EdgeDetector:
    """Turn a market's quote window into deduplicated edge signals."""

    def __init__(self, config: EdgeConfig, fair_model: FairPriceModel):
        self.config = config
        self.fair_model = fair_model

    def latest_per_bookmaker(
        self, quotes: Iterable[PricedQuote], fresh_since: datetime | None = None
    ) -> dict[tuple[str, str], PricedQuote]:
        """Most recent fresh quote per (selection, bookmaker)."""
        latest: dict[tuple[str, str], PricedQuote] = {}
        for quote in quotes:
            observed_at = ensure_utc(quote.observed_at)
            if fresh_since is not None and observed_at < fresh_since:
                continue
            key = (quote.selection, quote.bookmaker)
            current = latest.get(key)
            if current is None or observed_at > ensure_utc(current.observed_at):
                latest[key] = quote
        return latest

    def evaluate(
        self, quote: PricedQuote, fair: FairPrice | InsufficientData
    ) -> tuple[float, float, float] | None:
        """
        Edge of one quote against a fair price.

        Returns (offered_price, offered_prob, edge_pp) or None when there is
        no fair price or the edge is below the floor.
        """
        if isinstance(fair, InsufficientData):
            return None

        offered = quote.price
        if quote.is_exchange:
            offered = apply_exchange_commission(offered, self.config.exchange_commission)
        if offered <= 1.0:
            return None

        edge_pp = compute_edge_pp(fair.fair_prob, offered)
        if edge_pp < self.config.min_edge_pp:
            return None
        return offered, implied_probability(offered), edge_pp

    def detect(
        self,
        event_id: int,
        market: str,
        quotes: Sequence[PricedQuote],
        as_of: datetime,
        fresh_since: datetime | None = None,
    ) -> list[EdgeSignal]:
        """
        Detect edges in one market.

        `quotes` is the full recency window (used for the fair price);
        only quotes observed at or after `fresh_since` are candidates.
        """
        quotes = list(quotes)
        consensus = self.fair_model.fair_prices(quotes, as_of)
        signals: list[EdgeSignal] = []

        for (selection, bookmaker), quote in sorted(
            self.latest_per_bookmaker(quotes, fresh_since).items()
        ):
            if self.config.exclude_own_book:
                fair = self.fair_model.fair_price(
                    quotes, selection, as_of, exclude_bookmaker=bookmaker
                )
            else:
                fair = consensus.get(selection)
            if fair is None:
                continue

            evaluated = self.evaluate(quote, fair)
            if evaluated is None:
                continue
            offered_price, offered_prob, edge_pp = evaluated

            notes = None
            if quote.is_exchange:
                notes = (
                    f"Exchange price {quote.price} adjusted for "
                    f"{self.config.exchange_commission:.0%} commission"
                )

            signals.append(
                EdgeSignal(
                    event_id=event_id,
                    market=market,
                    selection=selection,
                    bookmaker=bookmaker,
                    is_exchange=quote.is_exchange,
                    offered_price=offered_price,
                    offered_prob=offered_prob,
                    fair_price=fair.fair_price,
                    fair_prob=fair.fair_prob,
                    edge_pp=edge_pp,
                    tier=classify_tier(edge_pp, self.config.tiers),
                    books_count=fair.books_count,
                    exchanges_count=fair.exchanges_count,
                    quote_observed_at=ensure_utc(quote.observed_at),
                    notes=notes,
                )
            )

        if signals:
            logger.debug(
                "edges_detected", event_id=event_id, market=market, count=len(signals)
            )
        return signals
