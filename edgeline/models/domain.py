"""Domain models for Edgeline.

This module defines all database models for the edge detection pipeline and
the automated exchange trading strategy.

CRITICAL ownership rules:
- Quotes are append-only. Nothing updates or deletes a quote row.
- Candidates are created by the edge detector only and never mutated.
- StrategyTrade rows are mutated only by the trade lifecycle engine, and only
  through the compare-and-swap helpers in services.trading.repository.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from edgeline.models.base import Base, JSONType, TimestampMixin

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


class Event(Base, TimestampMixin):
    """
    Single sporting fixture as supplied by the odds provider.

    Events are upserted by the discovery collaborator keyed by external_id.
    """

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    sport: Mapped[str] = mapped_column(String(100), nullable=False)
    home_team: Mapped[str] = mapped_column(String(200), nullable=False)
    away_team: Mapped[str] = mapped_column(String(200), nullable=False)
    commence_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), default="upcoming")
    last_polled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    quotes: Mapped[list["Quote"]] = relationship("Quote", back_populates="event")

    __table_args__ = (Index("idx_events_commence", "commence_time"),)

    @property
    def name(self) -> str:
        return f"{self.home_team} v {self.away_team}"

    def __repr__(self) -> str:
        return f"<Event {self.name} ({self.commence_time})>"


class Quote(Base):
    """
    One observed price for one selection at one bookmaker.

    CRITICAL: Append-only. The natural key
    (event_id, market, selection, bookmaker, observed_at) is unique so that
    duplicate or out-of-order re-delivery never creates a second row.

    `market` is line-qualified for markets with a point (e.g. "totals@2.5"),
    so each line is its own mutually exclusive set of selections.
    """

    __tablename__ = "quotes"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id"), nullable=False
    )
    market: Mapped[str] = mapped_column(String(50), nullable=False)
    selection: Mapped[str] = mapped_column(String(200), nullable=False)
    bookmaker: Mapped[str] = mapped_column(String(100), nullable=False)
    is_exchange: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    point: Mapped[float | None] = mapped_column(Float, nullable=True)
    observed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    raw: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    event: Mapped["Event"] = relationship("Event", back_populates="quotes")

    __table_args__ = (
        UniqueConstraint(
            "event_id",
            "market",
            "selection",
            "bookmaker",
            "observed_at",
            name="uq_quote_natural_key",
        ),
        Index("idx_quotes_event_market_time", "event_id", "market", "observed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Quote {self.bookmaker} {self.market}/{self.selection} "
            f"@ {self.price} ({self.observed_at})>"
        )


class Candidate(Base):
    """
    Point-in-time positive-edge opportunity emitted by the edge detector.

    edge_pp = 100 * (fair_prob - offered_prob). Candidates are never updated;
    later cycles insert new rows for the same key and history is retained.
    """

    __tablename__ = "candidates"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id"), nullable=False
    )
    market: Mapped[str] = mapped_column(String(50), nullable=False)
    selection: Mapped[str] = mapped_column(String(200), nullable=False)
    bookmaker: Mapped[str] = mapped_column(String(100), nullable=False)
    is_exchange: Mapped[bool] = mapped_column(Boolean, default=False)

    offered_price: Mapped[float] = mapped_column(Float, nullable=False)
    offered_prob: Mapped[float] = mapped_column(Float, nullable=False)
    fair_price: Mapped[float] = mapped_column(Float, nullable=False)
    fair_prob: Mapped[float] = mapped_column(Float, nullable=False)
    edge_pp: Mapped[float] = mapped_column(Float, nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)

    books_count: Mapped[int] = mapped_column(Integer, nullable=False)
    exchanges_count: Mapped[int] = mapped_column(Integer, default=0)
    quote_observed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    event: Mapped["Event"] = relationship("Event")

    __table_args__ = (
        Index("idx_candidates_edge", "edge_pp"),
        Index("idx_candidates_tier_created", "tier", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Candidate {self.bookmaker} {self.market}/{self.selection} "
            f"edge={self.edge_pp:.2f}pp tier={self.tier}>"
        )


class StrategyTrade(Base, TimestampMixin):
    """
    Lifecycle record for one automated back-then-hedge trade.

    CRITICAL invariants:
    1. Exactly one trade per (strategy_key, betfair_event_id, runner_name).
       Double creation would double stake risk.
    2. `version` is the compare-and-swap token. Every status change is an
       UPDATE ... WHERE status = expected AND version = expected.
    3. Once status is hedged or settled the back/lay fields are frozen.
    """

    __tablename__ = "strategy_trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    strategy_key: Mapped[str] = mapped_column(String(50), nullable=False)

    # Exchange identifiers
    betfair_event_id: Mapped[str] = mapped_column(String(50), nullable=False)
    betfair_market_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    selection_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    runner_name: Mapped[str] = mapped_column(String(200), nullable=False)
    competition_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    event_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    kickoff_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="scheduled",
        doc="scheduled, active, hedged, settled, cancelled, failed",
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Back leg
    back_order_ref: Mapped[str | None] = mapped_column(String(50), nullable=True)
    back_customer_ref: Mapped[str | None] = mapped_column(String(50), nullable=True)
    back_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 4), nullable=True)
    back_size: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    back_matched_size: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2), nullable=True
    )

    # Lay leg
    lay_order_ref: Mapped[str | None] = mapped_column(String(50), nullable=True)
    lay_customer_ref: Mapped[str | None] = mapped_column(String(50), nullable=True)
    lay_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 4), nullable=True)
    lay_size: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    lay_matched_size: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2), nullable=True
    )
    hedge_reason: Mapped[str | None] = mapped_column(
        String(20), nullable=True, doc="'margin' or 'cutoff'"
    )

    # Outcome
    margin: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2), nullable=True, doc="Locked margin at hedge time, net of commission"
    )
    commission_paid: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2), nullable=True
    )
    realised_pnl: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    outcome: Mapped[str | None] = mapped_column(
        String(10), nullable=True, doc="WIN, LOSE, VOID"
    )
    settled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    state_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    events: Mapped[list["StrategyTradeEvent"]] = relationship(
        "StrategyTradeEvent",
        back_populates="trade",
        order_by="StrategyTradeEvent.id",
    )

    __table_args__ = (
        UniqueConstraint(
            "strategy_key",
            "betfair_event_id",
            "runner_name",
            name="uq_strategy_trade_selection",
        ),
        Index("idx_strategy_trades_status", "status"),
        Index("idx_strategy_trades_kickoff", "kickoff_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<StrategyTrade {self.strategy_key} {self.event_name} "
            f"status={self.status} v{self.version}>"
        )


class StrategyTradeEvent(Base):
    """Append-only audit trail of everything that happened to a trade."""

    __tablename__ = "strategy_trade_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True)
    trade_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("strategy_trades.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    trade: Mapped["StrategyTrade"] = relationship(
        "StrategyTrade", back_populates="events"
    )

    __table_args__ = (Index("idx_strategy_trade_events_trade", "trade_id"),)

    def __repr__(self) -> str:
        return f"<StrategyTradeEvent trade={self.trade_id} {self.event_type}>"


class Bet(Base):
    """
    Manually placed bet, usually taken from a candidate.

    Settled exactly once: pending -> won | lost | void. Terminal statuses
    reject further mutation.
    """

    __tablename__ = "bets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id"), nullable=False
    )
    market: Mapped[str] = mapped_column(String(50), nullable=False)
    selection: Mapped[str] = mapped_column(String(200), nullable=False)
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    odds: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    stake: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    accepted_fair_prob: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    accepted_fair_price: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    status: Mapped[str] = mapped_column(
        String(10), nullable=False, default="pending", doc="pending, won, lost, void"
    )
    returns: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    pnl: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    event: Mapped["Event"] = relationship("Event")

    __table_args__ = (Index("idx_bets_status", "status"),)

    def __repr__(self) -> str:
        return f"<Bet {self.source} {self.selection} @ {self.odds} status={self.status}>"


class JobRun(Base):
    """
    Task execution audit log.

    Every scheduled cycle run is logged here for monitoring and for
    debugging failures.
    """

    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, doc="'running', 'success', 'failed', 'skipped'"
    )
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    __table_args__ = (Index("idx_job_runs_name_started", "job_name", "started_at"),)

    def __repr__(self) -> str:
        return f"<JobRun {self.job_name} status={self.status}>"
