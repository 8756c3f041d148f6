"""
Upstream Client Tests

Runs LogisticsBillingClient against a local aiohttp server to check
authentication, retry/backoff on 429 and 5xx, error classification and
response normalization.
"""

import asyncio
import logging
from datetime import date
from decimal import Decimal

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from connectors.billing_base import TransactionQuery
from connectors.logistics_billing import LogisticsBillingClient
from core.config import ApiSettings
from core.errors import TransientUpstreamError, UpstreamRequestError
from core.retry import RetriesExhausted, RetryableError, RetryConfig, retry_async


TX_PAYLOAD = {
    "transaction_id": "01JC7Q",
    "amount": 10.25,
    "currency_code": "USD",
    "charge_date": "2025-11-03T14:22:01Z",
    "invoiced_status": True,
    "invoice_date": "2025-11-10",
    "invoice_id": 8633612,
    "transaction_fee": "Shipping",
    "reference_id": "318870071",
    "reference_type": "Shipment",
    "transaction_type": "Charge",
    "fulfillment_center": "Commerce CA",
    "taxes": [{"tax_type": "GST", "amount": 0.5}],
}


class RecordingSleep:
    """Replaces asyncio.sleep between retries."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_settings(server: TestServer, max_attempts: int = 3) -> ApiSettings:
    return ApiSettings(
        base_url=str(server.make_url("/")),
        api_version="2025-07",
        token="secret-token",
        page_size=50,
        retry=RetryConfig(max_attempts=max_attempts, base_delay=1.0, max_delay=30.0, jitter=0),
    )


def run_against(handlers, scenario):
    """Start a server with `handlers` and run `scenario(server)` against it."""
    async def main():
        app = web.Application()
        for method, path, handler in handlers:
            app.router.add_route(method, path, handler)
        async with TestServer(app) as server:
            return await scenario(server)
    return asyncio.run(main())


class TestRetryHelpers:
    """core.retry without any network."""

    def test_delay_grows_exponentially_and_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=10.0, jitter=0)
        assert config.get_delay(0) == 1.0
        assert config.get_delay(2) == 4.0
        assert config.get_delay(10) == 10.0

    def test_retry_after_wins_when_longer(self):
        config = RetryConfig(base_delay=1.0, max_delay=60.0, jitter=0)
        assert config.get_delay(0, retry_after=7.0) == 7.0
        assert config.get_delay(0, retry_after=600.0) == 60.0

    def test_gives_up_after_max_attempts(self):
        calls = []

        async def always_busy():
            calls.append(1)
            raise RetryableError("busy", status_code=503)

        async def no_sleep(_):
            return None

        with pytest.raises(RetriesExhausted) as exc_info:
            asyncio.run(retry_async(always_busy, RetryConfig(max_attempts=4, jitter=0), sleep=no_sleep))
        assert len(calls) == 4
        assert exc_info.value.attempts == 4
        assert exc_info.value.last_error.status_code == 503

    def test_default_retry_warning_goes_through_correlated_logger(self, caplog):
        calls = []

        async def busy_once():
            calls.append(1)
            if len(calls) == 1:
                raise RetryableError("Rate limited", status_code=429)
            return "ok"

        async def no_sleep(_):
            return None

        with caplog.at_level(logging.WARNING, logger="core.retry"):
            result = asyncio.run(retry_async(busy_once, RetryConfig(max_attempts=3, jitter=0), sleep=no_sleep))

        assert result == "ok"
        warning = [r for r in caplog.records if r.name == "core.retry"][-1]
        assert "attempt 1/3" in warning.getMessage()
        assert warning.extra_fields == {"status_code": 429}

    def test_other_errors_are_not_retried(self):
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            asyncio.run(retry_async(broken, RetryConfig(max_attempts=5)))
        assert len(calls) == 1


class TestLogisticsBillingClient:
    """HTTP behavior of the billing API client."""

    def test_token_required(self):
        with pytest.raises(ValueError):
            LogisticsBillingClient(ApiSettings(token=""))

    def test_query_transactions_normalizes_page(self):
        seen = {}

        async def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["cursor"] = request.query.get("Cursor")
            seen["body"] = await request.json()
            return web.json_response({"items": [TX_PAYLOAD], "next": "page-2"})

        async def scenario(server):
            async with LogisticsBillingClient(make_settings(server)) as client:
                query = TransactionQuery(
                    start_date=date(2025, 11, 1),
                    end_date=date(2025, 11, 30),
                    transaction_types=("Charge",),
                    invoiced_status=False,
                )
                return await client.query_transactions(query, cursor="abc")

        page = run_against([("POST", "/2025-07/transactions:query", handler)], scenario)

        assert seen["auth"] == "Bearer secret-token"
        assert seen["cursor"] == "abc"
        assert seen["body"]["page_size"] == 50
        assert seen["body"]["transaction_types"] == ["Charge"]
        assert seen["body"]["invoiced_status"] is False
        # Date range goes out under both naming schemes
        assert seen["body"]["start_date"] == "2025-11-01"
        assert seen["body"]["from_date"] == "2025-11-01T00:00:00Z"

        assert page.next_cursor == "page-2"
        tx = page.items[0]
        assert tx.transaction_id == "01JC7Q"
        assert tx.amount == Decimal("10.25")
        assert tx.charge_date == date(2025, 11, 3)
        assert tx.upstream_invoice_id == 8633612
        assert tx.upstream_invoice_date == date(2025, 11, 10)
        assert tx.fee_type == "Shipping"
        assert tx.additional_details["taxes"][0]["tax_type"] == "GST"

    def test_rate_limit_is_retried_with_retry_after(self):
        attempts = []

        async def handler(request):
            attempts.append(1)
            if len(attempts) < 3:
                return web.Response(status=429, headers={"Retry-After": "5"})
            return web.json_response({"items": [], "next": None})

        sleep = RecordingSleep()

        async def scenario(server):
            async with LogisticsBillingClient(make_settings(server), sleep=sleep) as client:
                return await client.query_transactions(TransactionQuery())

        page = run_against([("POST", "/2025-07/transactions:query", handler)], scenario)

        assert page.items == []
        assert len(attempts) == 3
        assert sleep.delays == [5.0, 5.0]

    def test_server_errors_exhaust_into_transient_error(self):
        attempts = []

        async def handler(request):
            attempts.append(1)
            return web.Response(status=503, text="unavailable")

        sleep = RecordingSleep()
        query = TransactionQuery(transaction_types=("Charge",), reference_types=("Shipment",))

        async def scenario(server):
            async with LogisticsBillingClient(make_settings(server, max_attempts=3), sleep=sleep) as client:
                await client.query_transactions(query)

        with pytest.raises(TransientUpstreamError) as exc_info:
            run_against([("POST", "/2025-07/transactions:query", handler)], scenario)

        error = exc_info.value
        assert len(attempts) == 3
        assert error.attempts == 3
        assert error.status_code == 503
        assert error.filter_combination == query.combination_key()
        assert sleep.delays == [1.0, 2.0]

    def test_client_errors_are_not_retried(self):
        attempts = []

        async def handler(request):
            attempts.append(1)
            return web.Response(status=400, text='{"error": "bad filter"}')

        async def scenario(server):
            async with LogisticsBillingClient(make_settings(server), sleep=RecordingSleep()) as client:
                await client.query_transactions(TransactionQuery())

        with pytest.raises(UpstreamRequestError) as exc_info:
            run_against([("POST", "/2025-07/transactions:query", handler)], scenario)

        assert len(attempts) == 1
        assert exc_info.value.status_code == 400
        assert "bad filter" in exc_info.value.response_body

    def test_list_invoices_accepts_bare_array(self):
        async def handler(request):
            return web.json_response([
                {"invoice_id": 9001, "invoice_date": "2025-11-10T00:00:00Z", "invoice_type": "Shipping", "amount": 120.5},
                {"invoice_id": 9002, "invoice_date": "2025-11-10", "invoice_type": "AdditionalFee"},
            ])

        async def scenario(server):
            async with LogisticsBillingClient(make_settings(server)) as client:
                return await client.list_invoices(start_date=date(2025, 11, 1))

        page = run_against([("GET", "/2025-07/invoices", handler)], scenario)

        assert [i.invoice_id for i in page.items] == [9001, 9002]
        assert page.items[0].invoice_date == date(2025, 11, 10)
        assert page.items[0].amount == Decimal("120.5")
        assert page.next_cursor is None

    def test_invoice_transactions_follow_cursor_param(self):
        seen = []

        async def handler(request):
            seen.append((request.match_info["invoice_id"], request.query.get("cursor")))
            return web.json_response({"items": [TX_PAYLOAD], "next": None})

        async def scenario(server):
            async with LogisticsBillingClient(make_settings(server)) as client:
                return await client.get_invoice_transactions(8633612, cursor="c2")

        page = run_against([("GET", "/2025-07/invoices/{invoice_id}/transactions", handler)], scenario)

        assert seen == [("8633612", "c2")]
        assert page.items[0].transaction_id == "01JC7Q"

    def test_undecodable_body_is_a_request_error(self):
        attempts = []

        async def handler(request):
            attempts.append(1)
            return web.Response(status=200, text="<html>maintenance</html>", content_type="text/html")

        query = TransactionQuery(transaction_types=("Charge",), reference_types=("Return",))

        async def scenario(server):
            async with LogisticsBillingClient(make_settings(server), sleep=RecordingSleep()) as client:
                await client.query_transactions(query)

        with pytest.raises(UpstreamRequestError) as exc_info:
            run_against([("POST", "/2025-07/transactions:query", handler)], scenario)

        assert len(attempts) == 1
        assert exc_info.value.status_code == 200
        assert exc_info.value.filter_combination == query.combination_key()
        assert "maintenance" in exc_info.value.response_body

    def test_item_failing_validation_is_a_request_error(self):
        async def handler(request):
            broken = {k: v for k, v in TX_PAYLOAD.items() if k != "transaction_id"}
            return web.json_response({"items": [TX_PAYLOAD, broken], "next": None})

        query = TransactionQuery(transaction_types=("Charge",))

        async def scenario(server):
            async with LogisticsBillingClient(make_settings(server)) as client:
                await client.query_transactions(query)

        with pytest.raises(UpstreamRequestError) as exc_info:
            run_against([("POST", "/2025-07/transactions:query", handler)], scenario)

        assert "Malformed payload" in exc_info.value.message
        assert exc_info.value.filter_combination == query.combination_key()
        assert "transaction_id" in exc_info.value.response_body

    def test_unparseable_charge_date_is_a_request_error(self):
        async def handler(request):
            return web.json_response({"items": [{**TX_PAYLOAD, "charge_date": "yesterday"}]})

        async def scenario(server):
            async with LogisticsBillingClient(make_settings(server)) as client:
                await client.get_invoice_transactions(8633612)

        with pytest.raises(UpstreamRequestError) as exc_info:
            run_against([("GET", "/2025-07/invoices/{invoice_id}/transactions", handler)], scenario)

        assert exc_info.value.filter_combination == "invoice=8633612"

    def test_listing_of_unexpected_shape_is_a_request_error(self):
        async def handler(request):
            return web.json_response("rate plan changed")

        async def scenario(server):
            async with LogisticsBillingClient(make_settings(server)) as client:
                await client.list_invoices()

        with pytest.raises(UpstreamRequestError, match="got str"):
            run_against([("GET", "/2025-07/invoices", handler)], scenario)
