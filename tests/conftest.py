"""Pytest configuration and fixtures for Edgeline tests."""

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from edgeline.config.trading import (
    EdgeConfig,
    FairPriceConfig,
    IngestionConfig,
    RetryPolicy,
    StrategyConfig,
    TradingConfig,
)
from edgeline.models import Base, Event, StrategyTrade
from edgeline.models.base import get_session_factory
from edgeline.services.trading.errors import ExchangeUnavailable
from edgeline.services.trading.gateway import (
    CancelResult,
    Fixture,
    MarketRef,
    OrderRequest,
    OrderState,
    RunnerOutcome,
    TopOfBook,
)

NOW = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)
MARKET_ID = "1.234567"
SELECTION_ID = 47973


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def strategy_config():
    """Strategy parameters used by the lifecycle tests."""
    return StrategyConfig(
        key="epl_under25",
        competition_ids=("10932509",),
        default_stake=Decimal("10.00"),
        min_back_price=Decimal("2.0"),
        min_margin=Decimal("0.50"),
        commission_rate=Decimal("0.02"),
        back_lead_minutes=60,
        hedge_cutoff_minutes=30,
        missed_window_minutes=10,
    )


@pytest.fixture
def trading_config(strategy_config):
    return TradingConfig(
        fair_price=FairPriceConfig(),
        edge=EdgeConfig(),
        strategy=strategy_config,
        retry=RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0),
        ingestion=IngestionConfig(fresh_quote_seconds=600),
    )


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so every session sees the same database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'edgeline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def sample_event(db):
    event = Event(
        external_id="evt-1",
        sport="soccer_epl",
        home_team="Arsenal",
        away_team="Chelsea",
        commence_time=NOW + timedelta(hours=3),
    )
    db.add(event)
    await db.commit()
    return event


@pytest.fixture
def make_trade(session_factory):
    """Insert a StrategyTrade directly and return its id."""
    counter = itertools.count(1)

    async def _make(kickoff_at: datetime, status: str = "scheduled", **values) -> int:
        n = next(counter)
        defaults = {
            "strategy_key": "epl_under25",
            "betfair_event_id": f"3100{n}",
            "runner_name": "Under 2.5 Goals",
            "event_name": f"Home {n} v Away {n}",
            "betfair_market_id": MARKET_ID,
            "selection_id": SELECTION_ID,
        }
        defaults.update(values)
        async with session_factory() as session:
            trade = StrategyTrade(kickoff_at=kickoff_at, status=status, version=0, **defaults)
            session.add(trade)
            await session.commit()
            return trade.id

    return _make


# =============================================================================
# Exchange
# =============================================================================


class FakeGateway:
    """
    In-memory exchange implementing ExchangeGateway, FixtureFeed and
    SettlementFeed.

    Orders match immediately by `match_fraction[side]` of their size at the
    requested price. Errors queued in `place_errors` are raised by the next
    place_order calls; with `persist_failed_orders` the order still lands on
    the book, modelling a timeout after the exchange accepted it.
    `cancel_errors` and `price_errors` work the same way for cancels and
    price reads.
    """

    def __init__(self):
        self.books: dict[tuple[str, int], TopOfBook] = {}
        self.orders: dict[str, OrderState] = {}
        self.markets: dict[str, MarketRef] = {}
        self.fixtures: list[Fixture] = []
        self.outcomes: dict[tuple[str, int], RunnerOutcome] = {}
        self.match_fraction = {"BACK": Decimal("1"), "LAY": Decimal("1")}
        self.place_errors: list[Exception] = []
        self.persist_failed_orders = False
        self.cancel_errors: list[Exception] = []
        self.price_errors: list[Exception] = []
        self.cancel_overrides: dict[str, CancelResult] = {}
        self.placed: list[OrderRequest] = []
        self.cancelled: list[str] = []
        self._ids = itertools.count(1000)

    def set_book(self, best_back=None, best_lay=None, market_id=MARKET_ID, selection_id=SELECTION_ID, **kwargs):
        self.books[(market_id, selection_id)] = TopOfBook(
            market_id=market_id,
            selection_id=selection_id,
            best_back=Decimal(str(best_back)) if best_back is not None else None,
            best_lay=Decimal(str(best_lay)) if best_lay is not None else None,
            **kwargs,
        )

    def add_order(self, order_id: str, size_matched, size_remaining="0", price=None, customer_ref=None):
        self.orders[order_id] = OrderState(
            order_id=order_id,
            status="EXECUTABLE" if Decimal(str(size_remaining)) > 0 else "EXECUTION_COMPLETE",
            size_matched=Decimal(str(size_matched)),
            size_remaining=Decimal(str(size_remaining)),
            average_price_matched=Decimal(str(price)) if price is not None else None,
            customer_ref=customer_ref,
        )

    async def place_order(self, request: OrderRequest) -> OrderState:
        self.placed.append(request)
        matched = (request.size * self.match_fraction[request.side.value]).quantize(Decimal("0.01"))
        order = OrderState(
            order_id=str(next(self._ids)),
            status="EXECUTION_COMPLETE" if matched == request.size else "EXECUTABLE",
            size_matched=matched,
            size_remaining=request.size - matched,
            average_price_matched=request.price if matched > 0 else None,
            customer_ref=request.customer_ref,
        )
        if self.place_errors:
            error = self.place_errors.pop(0)
            if self.persist_failed_orders:
                self.orders[order.order_id] = order
            raise error
        self.orders[order.order_id] = order
        return order

    async def cancel_order(self, market_id: str, order_id: str) -> CancelResult:
        self.cancelled.append(order_id)
        if self.cancel_errors:
            raise self.cancel_errors.pop(0)
        if order_id in self.cancel_overrides:
            return self.cancel_overrides[order_id]
        order = self.orders[order_id]
        remaining = order.size_remaining
        self.orders[order_id] = OrderState(
            order_id=order.order_id,
            status="EXECUTION_COMPLETE",
            size_matched=order.size_matched,
            size_remaining=Decimal("0"),
            average_price_matched=order.average_price_matched,
            customer_ref=order.customer_ref,
        )
        return CancelResult(
            order_id=order_id,
            cancelled=remaining > 0,
            size_matched=order.size_matched,
            size_cancelled=remaining,
        )

    async def query_best_prices(self, market_id: str, selection_id: int) -> TopOfBook:
        if self.price_errors:
            raise self.price_errors.pop(0)
        book = self.books.get((market_id, selection_id))
        if book is None:
            raise ExchangeUnavailable(f"No book for {market_id}")
        return book

    async def get_order(self, order_id: str) -> OrderState | None:
        return self.orders.get(order_id)

    async def find_order(self, market_id: str, customer_ref: str) -> OrderState | None:
        for order in self.orders.values():
            if order.customer_ref == customer_ref:
                return order
        return None

    async def resolve_market(self, event_id: str, market_type: str, runner_name: str) -> MarketRef | None:
        return self.markets.get(event_id)

    async def list_fixtures(self, competition_ids, start, end) -> list[Fixture]:
        return [f for f in self.fixtures if start <= f.kickoff_at <= end]

    async def runner_outcome(self, market_id: str, selection_id: int) -> RunnerOutcome | None:
        return self.outcomes.get((market_id, selection_id))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(session_factory, gateway, strategy_config):
    from edgeline.services.trading.engine import TradeLifecycleEngine

    return TradeLifecycleEngine(
        session_factory=session_factory,
        gateway=gateway,
        config=strategy_config,
        clock=lambda: NOW,
    )
