"""Betfair implementation of the exchange, fixture and settlement feeds.

Translates BetfairClient results into the gateway value types and the
trading error taxonomy:
- retryable BetfairAPIError (after the client's retries) -> ExchangeUnavailable
- non-retryable BetfairAPIError or a FAILURE report -> ExchangeRejection
- a TIMEOUT execution report -> ExchangeUnavailable (outcome unknown)
"""

from collections.abc import Awaitable
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

import structlog

from edgeline.services.betfair_client.api import (
    BetfairAPIError,
    BetfairClient,
    ClearedOrder,
    CurrentOrder,
)
from edgeline.services.trading.errors import ExchangeRejection, ExchangeUnavailable
from edgeline.services.trading.gateway import (
    CancelResult,
    Fixture,
    MarketRef,
    OrderRequest,
    OrderState,
    RunnerOutcome,
    TopOfBook,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Instruction error codes where the order may still exist; reconcile instead of failing.
UNKNOWN_OUTCOME_CODES = frozenset({"DUPLICATE_TRANSACTION", "ERROR_IN_MATCHER", "TIMEOUT"})

RUNNER_OUTCOMES = {
    "WINNER": RunnerOutcome.WIN,
    "LOSER": RunnerOutcome.LOSE,
    "REMOVED": RunnerOutcome.VOID,
}

# Checked in order once an order has left listCurrentOrders
CLEARED_STATUSES = ("SETTLED", "LAPSED", "CANCELLED")


def _order_state(order: CurrentOrder) -> OrderState:
    return OrderState(
        order_id=order.bet_id,
        status=order.status,
        size_matched=order.size_matched,
        size_remaining=order.size_remaining,
        average_price_matched=order.average_price_matched,
        customer_ref=order.customer_order_ref,
    )


def _cleared_order_state(order: ClearedOrder) -> OrderState:
    # Only the SETTLED view carries matched stake; lapsed and cancelled bets matched nothing
    matched = order.size_settled if order.bet_status == "SETTLED" else Decimal("0")
    return OrderState(
        order_id=order.bet_id,
        status="EXECUTION_COMPLETE",
        size_matched=matched,
        average_price_matched=order.price_matched if matched > 0 else None,
    )


class BetfairGateway:
    """ExchangeGateway, FixtureFeed and SettlementFeed backed by BetfairClient."""

    def __init__(self, client: BetfairClient):
        self.client = client

    async def _call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except BetfairAPIError as e:
            if e.retryable:
                raise ExchangeUnavailable(f"{operation}: {e}", e.code) from e
            raise ExchangeRejection(f"{operation}: {e}", e.code) from e

    async def place_order(self, request: OrderRequest) -> OrderState:
        instruction: dict[str, Any] = {
            "selectionId": request.selection_id,
            "handicap": 0,
            "side": request.side.value,
            "orderType": "LIMIT",
            "limitOrder": {
                "size": float(request.size),
                "price": float(request.price),
                "persistenceType": "LAPSE",
            },
            "customerOrderRef": request.customer_ref,
        }
        report = await self._call(
            "placeOrders",
            self.client.place_orders(
                request.market_id, [instruction], customer_ref=request.customer_ref
            ),
        )

        status = report.get("status")
        instruction_reports = report.get("instructionReports") or [{}]
        first = instruction_reports[0]
        code = first.get("errorCode") or report.get("errorCode")

        if status == "SUCCESS" and first.get("betId"):
            return OrderState(
                order_id=str(first["betId"]),
                status=first.get("orderStatus", "EXECUTABLE"),
                size_matched=Decimal(str(first.get("sizeMatched") or 0)),
                size_remaining=request.size - Decimal(str(first.get("sizeMatched") or 0)),
                average_price_matched=Decimal(str(first["averagePriceMatched"]))
                if first.get("averagePriceMatched")
                else None,
                customer_ref=request.customer_ref,
            )

        if status == "TIMEOUT" or code in UNKNOWN_OUTCOME_CODES:
            raise ExchangeUnavailable(f"placeOrders outcome unknown: {code or status}", code)

        logger.warning(
            "betfair_order_rejected",
            market_id=request.market_id,
            side=request.side.value,
            error_code=code,
        )
        raise ExchangeRejection(f"placeOrders rejected: {code or 'UNKNOWN_ERROR'}", code)

    async def cancel_order(self, market_id: str, order_id: str) -> CancelResult:
        report = await self._call(
            "cancelOrders", self.client.cancel_orders(market_id, [order_id])
        )
        first = (report.get("instructionReports") or [{}])[0]
        cancelled = first.get("status") == "SUCCESS"
        size_cancelled = Decimal(str(first.get("sizeCancelled") or 0))

        # The cancel report does not carry the matched size; read it back
        order = await self.get_order(order_id)
        return CancelResult(
            order_id=order_id,
            cancelled=cancelled,
            size_matched=order.size_matched if order else None,
            size_cancelled=size_cancelled,
        )

    async def query_best_prices(self, market_id: str, selection_id: int) -> TopOfBook:
        books = await self._call(
            "listMarketBook", self.client.list_market_book([market_id])
        )
        if not books:
            return TopOfBook(
                market_id=market_id,
                selection_id=selection_id,
                best_back=None,
                best_lay=None,
                market_status="CLOSED",
            )
        book = books[0]
        runner = book.runner(selection_id)
        return TopOfBook(
            market_id=market_id,
            selection_id=selection_id,
            best_back=runner.back_prices[0].price if runner and runner.back_prices else None,
            best_lay=runner.lay_prices[0].price if runner and runner.lay_prices else None,
            market_status=book.status,
            in_play=book.in_play,
        )

    async def get_order(self, order_id: str) -> OrderState | None:
        orders = await self._call(
            "listCurrentOrders", self.client.list_current_orders(bet_ids=[order_id])
        )
        if orders:
            return _order_state(orders[0])

        for bet_status in CLEARED_STATUSES:
            cleared = await self._call(
                "listClearedOrders",
                self.client.list_cleared_orders([order_id], bet_status=bet_status),
            )
            if cleared:
                return _cleared_order_state(cleared[0])
        return None

    async def find_order(self, market_id: str, customer_ref: str) -> OrderState | None:
        orders = await self._call(
            "listCurrentOrders",
            self.client.list_current_orders(
                market_ids=[market_id], customer_order_refs=[customer_ref]
            ),
        )
        return _order_state(orders[0]) if orders else None

    async def resolve_market(
        self, event_id: str, market_type: str, runner_name: str
    ) -> MarketRef | None:
        catalogues = await self._call(
            "listMarketCatalogue",
            self.client.list_market_catalogue(
                event_ids=[event_id], market_types=[market_type], max_results=5
            ),
        )
        for market in catalogues:
            for runner in market.runners:
                if runner.runner_name == runner_name:
                    return MarketRef(market_id=market.market_id, selection_id=runner.selection_id)
        logger.warning(
            "betfair_market_not_found",
            event_id=event_id,
            market_type=market_type,
            runner_name=runner_name,
        )
        return None

    async def list_fixtures(
        self, competition_ids: list[str], start: datetime, end: datetime
    ) -> list[Fixture]:
        events = await self._call(
            "listEvents",
            self.client.list_events(
                competition_ids=competition_ids, from_time=start, to_time=end
            ),
        )
        return [
            Fixture(event_id=event.id, name=event.name, kickoff_at=event.open_date)
            for event in events
            if event.open_date is not None
        ]

    async def runner_outcome(
        self, market_id: str, selection_id: int
    ) -> RunnerOutcome | None:
        books = await self._call(
            "listMarketBook", self.client.list_market_book([market_id])
        )
        if not books or books[0].status != "CLOSED":
            return None
        runner = books[0].runner(selection_id)
        if runner is None:
            return None
        return RUNNER_OUTCOMES.get(runner.status)
