"""Exchange collaborator interfaces consumed by the lifecycle engine.

The engine only talks to these protocols. BetfairGateway implements them
against the Betfair REST API; tests use an in-memory fake.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol


class OrderSide(str, Enum):
    BACK = "BACK"
    LAY = "LAY"


class RunnerOutcome(str, Enum):
    """Final result of a selection, as reported by the settlement feed."""

    WIN = "WIN"
    LOSE = "LOSE"
    VOID = "VOID"


@dataclass(frozen=True)
class OrderRequest:
    """Limit order instruction."""

    market_id: str
    selection_id: int
    side: OrderSide
    price: Decimal
    size: Decimal
    customer_ref: str


@dataclass(frozen=True)
class OrderState:
    """Exchange view of one order."""

    order_id: str
    status: str
    size_matched: Decimal
    size_remaining: Decimal = Decimal("0")
    average_price_matched: Decimal | None = None
    customer_ref: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.status == "EXECUTION_COMPLETE"


@dataclass(frozen=True)
class CancelResult:
    """
    Outcome of a cancel request.

    size_matched is the matched size confirmed after the cancel. None means
    the exchange could not tell us, which is never treated as zero.
    """

    order_id: str
    cancelled: bool
    size_matched: Decimal | None
    size_cancelled: Decimal = Decimal("0")


@dataclass(frozen=True)
class TopOfBook:
    """Best prices available to back and to lay one selection."""

    market_id: str
    selection_id: int
    best_back: Decimal | None
    best_lay: Decimal | None
    market_status: str = "OPEN"
    in_play: bool = False

    @property
    def is_open(self) -> bool:
        return self.market_status == "OPEN"


@dataclass(frozen=True)
class MarketRef:
    """Exchange market and selection a trade is bound to."""

    market_id: str
    selection_id: int


@dataclass(frozen=True)
class Fixture:
    """Event supplied by the fixture feed."""

    event_id: str
    name: str
    kickoff_at: datetime
    competition_name: str | None = None


class ExchangeGateway(Protocol):
    """Order placement and market data on a betting exchange."""

    async def place_order(self, request: OrderRequest) -> OrderState: ...

    async def cancel_order(self, market_id: str, order_id: str) -> CancelResult: ...

    async def query_best_prices(self, market_id: str, selection_id: int) -> TopOfBook: ...

    async def get_order(self, order_id: str) -> OrderState | None: ...

    async def find_order(self, market_id: str, customer_ref: str) -> OrderState | None: ...

    async def resolve_market(
        self, event_id: str, market_type: str, runner_name: str
    ) -> MarketRef | None: ...


class FixtureFeed(Protocol):
    async def list_fixtures(
        self, competition_ids: list[str], start: datetime, end: datetime
    ) -> list[Fixture]: ...


class SettlementFeed(Protocol):
    async def runner_outcome(
        self, market_id: str, selection_id: int
    ) -> RunnerOutcome | None: ...
