"""Tests for the Betfair client retry policy and the gateway error mapping."""

import json
from decimal import Decimal

import httpx
import pytest

from edgeline.config.trading import RetryPolicy
from edgeline.services.betfair_client.api import BetfairAPIError, BetfairClient, BetfairErrorType
from edgeline.services.betfair_client.gateway import BetfairGateway
from edgeline.services.trading.errors import ExchangeRejection, ExchangeUnavailable
from edgeline.services.trading.gateway import OrderRequest, OrderSide, RunnerOutcome


class Reply:
    """HTTP reply rebuilt for every request."""

    def __init__(self, status: int, body=None):
        self.status = status
        self.body = body

    def build(self) -> httpx.Response:
        if self.body is None:
            return httpx.Response(self.status)
        return httpx.Response(self.status, json=self.body)


class FakeAuth:
    def __init__(self):
        self.invalidated = 0

    async def get_session_token(self) -> str:
        return "session-token"

    async def invalidate(self) -> None:
        self.invalidated += 1


def aping_error(code: str, status: int = 400) -> Reply:
    return Reply(
        status,
        {"faultcode": "Client", "detail": {"APINGException": {"errorCode": code}}},
    )


class Exchange:
    """Scripted Betfair endpoint: queued responses per operation."""

    def __init__(self):
        self.responses: dict[str, list] = {}
        self.calls: list[tuple[str, dict]] = []

    def queue(self, endpoint: str, *responses) -> None:
        self.responses.setdefault(endpoint, []).extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rstrip("/").rsplit("/", 1)[-1]
        self.calls.append((endpoint, json.loads(request.content or b"{}")))
        queued = self.responses[endpoint]
        response = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, Reply):
            return response.build()
        return httpx.Response(200, json=response)


@pytest.fixture
def exchange():
    return Exchange()


@pytest.fixture
def auth():
    return FakeAuth()


@pytest.fixture
async def client(exchange, auth):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(exchange.handler))
    client = BetfairClient(
        auth=auth,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0),
        http_client=http_client,
    )
    yield client
    await http_client.aclose()


def order_request(side=OrderSide.BACK):
    return OrderRequest(
        market_id="1.234567",
        selection_id=47973,
        side=side,
        price=Decimal("2.10"),
        size=Decimal("10.00"),
        customer_ref="epl_under25-7-B",
    )


class TestRetryPolicy:
    """Transient failures are retried up to the attempt budget."""

    async def test_recovers_after_server_error(self, client, exchange):
        exchange.queue("listEventTypes", Reply(503), [])

        assert await client.health_check()
        assert len(exchange.calls) == 2

    async def test_budget_exhausted(self, client, exchange):
        exchange.queue("listMarketBook", Reply(503))

        with pytest.raises(BetfairAPIError) as exc:
            await client.list_market_book(["1.234567"])

        assert exc.value.retryable
        assert len(exchange.calls) == 3

    async def test_transport_errors_are_transient(self, client, exchange):
        exchange.queue("listMarketBook", httpx.ConnectTimeout("timed out"), [])

        assert await client.list_market_book(["1.234567"]) == []
        assert len(exchange.calls) == 2

    async def test_invalid_input_is_not_retried(self, client, exchange):
        exchange.queue("placeOrders", aping_error("INVALID_INPUT_DATA"))

        with pytest.raises(BetfairAPIError) as exc:
            await client.place_orders("1.234567", [])

        assert not exc.value.retryable
        assert exc.value.error_type == BetfairErrorType.INVALID_INPUT
        assert len(exchange.calls) == 1

    async def test_expired_session_refreshed(self, client, exchange, auth):
        exchange.queue("listEventTypes", aping_error("INVALID_SESSION_INFORMATION"), [])

        assert await client.health_check()
        assert auth.invalidated == 1

    async def test_rate_limited_then_ok(self, client, exchange):
        exchange.queue("listEventTypes", Reply(429), [])

        assert await client.health_check()


class TestGatewayPlaceOrder:
    async def test_success(self, client, exchange):
        exchange.queue(
            "placeOrders",
            {
                "status": "SUCCESS",
                "instructionReports": [
                    {
                        "status": "SUCCESS",
                        "betId": 31242604945,
                        "orderStatus": "EXECUTION_COMPLETE",
                        "sizeMatched": 10.0,
                        "averagePriceMatched": 2.1,
                    }
                ],
            },
        )

        order = await BetfairGateway(client).place_order(order_request())

        assert order.order_id == "31242604945"
        assert order.size_matched == Decimal("10")
        assert order.average_price_matched == Decimal("2.1")
        assert order.customer_ref == "epl_under25-7-B"
        _, body = exchange.calls[0]
        assert body["customerRef"] == "epl_under25-7-B"
        assert body["instructions"][0]["limitOrder"]["persistenceType"] == "LAPSE"

    async def test_failure_report_is_rejection(self, client, exchange):
        exchange.queue(
            "placeOrders",
            {
                "status": "FAILURE",
                "errorCode": "INSUFFICIENT_FUNDS",
                "instructionReports": [{"status": "FAILURE", "errorCode": "INSUFFICIENT_FUNDS"}],
            },
        )

        with pytest.raises(ExchangeRejection) as exc:
            await BetfairGateway(client).place_order(order_request())
        assert exc.value.code == "INSUFFICIENT_FUNDS"

    async def test_timeout_report_is_unknown_outcome(self, client, exchange):
        exchange.queue("placeOrders", {"status": "TIMEOUT", "instructionReports": []})

        with pytest.raises(ExchangeUnavailable):
            await BetfairGateway(client).place_order(order_request())

    async def test_exhausted_retries_are_unavailable(self, client, exchange):
        exchange.queue("placeOrders", Reply(503))

        with pytest.raises(ExchangeUnavailable):
            await BetfairGateway(client).place_order(order_request())

    async def test_client_error_is_rejection(self, client, exchange):
        exchange.queue("placeOrders", aping_error("INVALID_INPUT_DATA"))

        with pytest.raises(ExchangeRejection):
            await BetfairGateway(client).place_order(order_request())


class TestGatewayReads:
    async def test_best_prices(self, client, exchange):
        exchange.queue(
            "listMarketBook",
            [
                {
                    "marketId": "1.234567",
                    "status": "OPEN",
                    "inplay": False,
                    "runners": [
                        {
                            "selectionId": 47973,
                            "status": "ACTIVE",
                            "ex": {
                                "availableToBack": [{"price": 2.12, "size": 150.0}],
                                "availableToLay": [{"price": 2.14, "size": 80.0}],
                            },
                        }
                    ],
                }
            ],
        )

        book = await BetfairGateway(client).query_best_prices("1.234567", 47973)

        assert book.best_back == Decimal("2.12")
        assert book.best_lay == Decimal("2.14")
        assert book.is_open

    async def test_cancel_reads_back_matched_size(self, client, exchange):
        exchange.queue(
            "cancelOrders",
            {"status": "SUCCESS", "instructionReports": [{"status": "SUCCESS", "sizeCancelled": 6.0}]},
        )
        exchange.queue(
            "listCurrentOrders",
            {
                "currentOrders": [
                    {
                        "betId": "99",
                        "marketId": "1.234567",
                        "selectionId": 47973,
                        "side": "BACK",
                        "status": "EXECUTION_COMPLETE",
                        "priceSize": {"price": 2.1, "size": 10.0},
                        "sizeMatched": 4.0,
                        "sizeRemaining": 0.0,
                        "averagePriceMatched": 2.1,
                    }
                ]
            },
        )

        result = await BetfairGateway(client).cancel_order("1.234567", "99")

        assert result.cancelled
        assert result.size_matched == Decimal("4.0")
        assert result.size_cancelled == Decimal("6.0")

    async def test_cancel_with_order_gone_reports_unknown_fill(self, client, exchange):
        exchange.queue(
            "cancelOrders",
            {"status": "SUCCESS", "instructionReports": [{"status": "SUCCESS", "sizeCancelled": 10.0}]},
        )
        exchange.queue("listCurrentOrders", {"currentOrders": []})
        exchange.queue("listClearedOrders", {"clearedOrders": []})

        result = await BetfairGateway(client).cancel_order("1.234567", "99")

        assert result.size_matched is None

    async def test_order_found_in_cleared_orders(self, client, exchange):
        exchange.queue("listCurrentOrders", {"currentOrders": []})
        exchange.queue(
            "listClearedOrders",
            {"clearedOrders": [{"betId": "99", "sizeSettled": 8.4, "priceMatched": 2.5}]},
        )

        order = await BetfairGateway(client).get_order("99")

        assert order.is_complete
        assert order.size_matched == Decimal("8.4")
        assert order.average_price_matched == Decimal("2.5")
        assert exchange.calls[-1] == ("listClearedOrders", {"betStatus": "SETTLED", "betIds": ["99"]})

    async def test_lapsed_order_matched_nothing(self, client, exchange):
        exchange.queue("listCurrentOrders", {"currentOrders": []})
        exchange.queue(
            "listClearedOrders",
            {"clearedOrders": []},
            {"clearedOrders": [{"betId": "99"}]},
        )

        order = await BetfairGateway(client).get_order("99")

        assert order.size_matched == Decimal("0")
        assert [params["betStatus"] for name, params in exchange.calls if name == "listClearedOrders"] == [
            "SETTLED",
            "LAPSED",
        ]

    async def test_runner_outcome_waits_for_closed_market(self, client, exchange):
        open_book = {"marketId": "1.234567", "status": "SUSPENDED", "runners": []}
        closed_book = {
            "marketId": "1.234567",
            "status": "CLOSED",
            "runners": [{"selectionId": 47973, "status": "WINNER"}],
        }
        exchange.queue("listMarketBook", [open_book], [closed_book])
        gateway = BetfairGateway(client)

        assert await gateway.runner_outcome("1.234567", 47973) is None
        assert await gateway.runner_outcome("1.234567", 47973) == RunnerOutcome.WIN
