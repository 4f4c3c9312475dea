"""Initial schema for Edgeline.

Revision ID: 0001
Revises:
Create Date: 2026-10-17

Creates the tables for both halves of the system:
- events, quotes, candidates: odds ingestion and edge detection
- strategy_trades, strategy_trade_events: automated trade lifecycle
- bets: manually placed bets
- job_runs: task audit logging

CRITICAL: quotes are unique on their natural key and strategy trades on
(strategy_key, betfair_event_id, runner_name). Ingestion idempotency and
the one-trade-per-fixture guarantee both depend on these constraints.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # Events table
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("external_id", sa.String(length=100), nullable=False),
        sa.Column("sport", sa.String(length=100), nullable=False),
        sa.Column("home_team", sa.String(length=200), nullable=False),
        sa.Column("away_team", sa.String(length=200), nullable=False),
        sa.Column("commence_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_id"),
    )
    op.create_index("idx_events_commence", "events", ["commence_time"])

    # Quotes table (append-only)
    op.create_table(
        "quotes",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("market", sa.String(length=50), nullable=False),
        sa.Column("selection", sa.String(length=200), nullable=False),
        sa.Column("bookmaker", sa.String(length=100), nullable=False),
        sa.Column("is_exchange", sa.Boolean(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("point", sa.Float(), nullable=True),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("raw", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "event_id",
            "market",
            "selection",
            "bookmaker",
            "observed_at",
            name="uq_quote_natural_key",
        ),
    )
    op.create_index(
        "idx_quotes_event_market_time", "quotes", ["event_id", "market", "observed_at"]
    )

    # Candidates table (history, never updated)
    op.create_table(
        "candidates",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("market", sa.String(length=50), nullable=False),
        sa.Column("selection", sa.String(length=200), nullable=False),
        sa.Column("bookmaker", sa.String(length=100), nullable=False),
        sa.Column("is_exchange", sa.Boolean(), nullable=True),
        sa.Column("offered_price", sa.Float(), nullable=False),
        sa.Column("offered_prob", sa.Float(), nullable=False),
        sa.Column("fair_price", sa.Float(), nullable=False),
        sa.Column("fair_prob", sa.Float(), nullable=False),
        sa.Column("edge_pp", sa.Float(), nullable=False),
        sa.Column("tier", sa.String(length=20), nullable=False),
        sa.Column("books_count", sa.Integer(), nullable=False),
        sa.Column("exchanges_count", sa.Integer(), nullable=True),
        sa.Column("quote_observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_candidates_edge", "candidates", ["edge_pp"])
    op.create_index("idx_candidates_tier_created", "candidates", ["tier", "created_at"])

    # Strategy trades table with CAS version column
    op.create_table(
        "strategy_trades",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("strategy_key", sa.String(length=50), nullable=False),
        sa.Column("betfair_event_id", sa.String(length=50), nullable=False),
        sa.Column("betfair_market_id", sa.String(length=50), nullable=True),
        sa.Column("selection_id", sa.BigInteger(), nullable=True),
        sa.Column("runner_name", sa.String(length=200), nullable=False),
        sa.Column("competition_name", sa.String(length=200), nullable=True),
        sa.Column("event_name", sa.String(length=300), nullable=True),
        sa.Column("kickoff_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("back_order_ref", sa.String(length=50), nullable=True),
        sa.Column("back_customer_ref", sa.String(length=50), nullable=True),
        sa.Column("back_price", sa.Numeric(precision=10, scale=4), nullable=True),
        sa.Column("back_size", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("back_matched_size", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("lay_order_ref", sa.String(length=50), nullable=True),
        sa.Column("lay_customer_ref", sa.String(length=50), nullable=True),
        sa.Column("lay_price", sa.Numeric(precision=10, scale=4), nullable=True),
        sa.Column("lay_size", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("lay_matched_size", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("hedge_reason", sa.String(length=20), nullable=True),
        sa.Column("margin", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("commission_paid", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("realised_pnl", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("outcome", sa.String(length=10), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("state_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "strategy_key",
            "betfair_event_id",
            "runner_name",
            name="uq_strategy_trade_selection",
        ),
    )
    op.create_index("idx_strategy_trades_status", "strategy_trades", ["status"])
    op.create_index("idx_strategy_trades_kickoff", "strategy_trades", ["kickoff_at"])

    # Strategy trade audit trail
    op.create_table(
        "strategy_trade_events",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("trade_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "occurred_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.ForeignKeyConstraint(
            ["trade_id"], ["strategy_trades.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_strategy_trade_events_trade", "strategy_trade_events", ["trade_id"]
    )

    # Manual bets
    op.create_table(
        "bets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("market", sa.String(length=50), nullable=False),
        sa.Column("selection", sa.String(length=200), nullable=False),
        sa.Column("source", sa.String(length=100), nullable=False),
        sa.Column("odds", sa.Numeric(precision=10, scale=4), nullable=False),
        sa.Column("stake", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("accepted_fair_prob", sa.Numeric(precision=10, scale=6), nullable=False),
        sa.Column("accepted_fair_price", sa.Numeric(precision=10, scale=4), nullable=False),
        sa.Column("status", sa.String(length=10), nullable=False),
        sa.Column("returns", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("pnl", sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_bets_status", "bets", ["status"])

    # Job runs table
    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_name", sa.String(length=100), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("records_processed", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_job_runs_name_started", "job_runs", ["job_name", "started_at"])


def downgrade() -> None:
    op.drop_index("idx_job_runs_name_started", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_index("idx_bets_status", table_name="bets")
    op.drop_table("bets")
    op.drop_index("idx_strategy_trade_events_trade", table_name="strategy_trade_events")
    op.drop_table("strategy_trade_events")
    op.drop_index("idx_strategy_trades_kickoff", table_name="strategy_trades")
    op.drop_index("idx_strategy_trades_status", table_name="strategy_trades")
    op.drop_table("strategy_trades")
    op.drop_index("idx_candidates_tier_created", table_name="candidates")
    op.drop_index("idx_candidates_edge", table_name="candidates")
    op.drop_table("candidates")
    op.drop_index("idx_quotes_event_market_time", table_name="quotes")
    op.drop_table("quotes")
    op.drop_index("idx_events_commence", table_name="events")
    op.drop_table("events")
