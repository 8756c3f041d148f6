"""
Exhaustive Fetch Tests

Runs ExhaustiveFetchOrchestrator against FakeBillingApi, whose hidden
cap (300 per filter combination) silently truncates any single listing.
"""

import asyncio
from datetime import date

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from connectors.logistics_billing import LogisticsBillingClient
from core.audit import AuditLogger, InMemoryAuditBackend
from core.config import ApiSettings, FetchSettings
from core.retry import RetryConfig
from fetch_orchestrator import (
    ExhaustiveFetchOrchestrator,
    FetchRunContext,
    FetchScope,
    SliceStatus,
    date_buckets,
    fetch_upstream_invoices,
    get_fetch_run,
)
from connectors.billing_base import UpstreamInvoiceSummary
from ledger.db import count_transactions, get_transaction, get_upstream_invoice_dates, upsert_transactions


# 1,200 transactions, every (transaction type, reference type) cell under the cap
COUNTS = {
    ("Charge", "Shipment"): 280,
    ("Charge", "Return"): 200,
    ("Charge", "WRO"): 200,
    ("Charge", "Storage"): 250,
    ("Credit", "Shipment"): 100,
    ("Refund", "Shipment"): 50,
    ("Payment", "Default"): 60,
    ("Charge", "Default"): 60,
}


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def upstream(fake_api, spread):
    return fake_api(spread(COUNTS), cap=300, page_size=100)


@pytest.fixture
def orchestrator_for(settings):
    def build(api, **overrides):
        fetch = FetchSettings(**{**settings.fetch.__dict__, **overrides})
        return ExhaustiveFetchOrchestrator(api, fetch, db_path=settings.db_path)
    return build


class TestExhaustiveFetch:
    """Union of partitioned slices recovers everything the cap hides."""

    def test_single_listing_is_capped(self, upstream):
        """Sanity check of the fake: one query never sees more than the cap."""
        async def count_base():
            return len([tx async for tx in upstream.iter_transactions(FetchScope().to_query())])
        assert run(count_base()) == 300

    def test_partitioning_recovers_every_transaction(self, upstream, orchestrator_for, db_path):
        report = run(orchestrator_for(upstream).run(FetchScope(invoiced_status=False)))

        assert report.partitioned
        assert report.is_complete
        assert report.unique_count == 1200
        assert report.inserted == 1200
        assert count_transactions(db_path) == 1200
        # The base slice's 300 items come back again from the partitions
        assert report.duplicates_collapsed == 300
        base = report.slices[0]
        assert base.status == SliceStatus.SPLIT
        assert len(report.slices) == 1 + 5 * 8

    def test_small_scope_is_not_partitioned(self, fake_api, spread, orchestrator_for):
        api = fake_api(spread({("Charge", "Shipment"): 40}), cap=300, page_size=25)
        report = run(orchestrator_for(api).run(FetchScope()))

        assert not report.partitioned
        assert report.is_complete
        assert report.unique_count == 40
        assert report.slices[0].pages == 2

    def test_always_partition(self, fake_api, spread, orchestrator_for):
        api = fake_api(spread({("Charge", "Shipment"): 10}))
        report = run(orchestrator_for(api, always_partition=True).run(FetchScope()))

        assert report.partitioned
        assert report.unique_count == 10

    def test_rerun_is_idempotent(self, upstream, orchestrator_for, db_path):
        orchestrator = orchestrator_for(upstream)
        run(orchestrator.run(FetchScope()))
        second = run(orchestrator.run(FetchScope()))

        assert second.unique_count == 1200
        assert second.inserted == 0
        assert second.updated == 1200
        assert count_transactions(db_path) == 1200

    def test_report_is_persisted(self, upstream, orchestrator_for, db_path):
        context = FetchRunContext(run_id="fetch-persist")
        run(orchestrator_for(upstream).run(FetchScope(), context))

        stored = get_fetch_run("fetch-persist", db_path)
        assert stored["is_complete"] is True
        assert stored["unique_count"] == 1200
        assert len(stored["slices"]) == 41

    def test_audit_records_outcome(self, upstream, settings):
        backend = InMemoryAuditBackend()
        audit = AuditLogger()
        audit.add_backend(backend)
        orchestrator = ExhaustiveFetchOrchestrator(
            upstream, settings.fetch, db_path=settings.db_path, audit=audit
        )
        run(orchestrator.run(FetchScope()))

        events = backend.query(event_type="FETCH_RUN_COMPLETED")
        assert len(events) == 1


class TestPartialCoverage:
    """Failures, truncation and cap suspicion are reported, never hidden."""

    def test_failed_combination_does_not_abort_run(self, fake_api, spread, orchestrator_for, db_path):
        api = fake_api(
            spread(COUNTS),
            fail_when=lambda q: q.reference_types == ("Return",),
        )
        report = run(orchestrator_for(api).run(FetchScope()))

        assert not report.is_complete
        # The base slice saw 20 of the Return rows before its cap; the other 180 are lost
        assert report.unique_count == 1200 - 180
        assert count_transactions(db_path) == 1020
        assert len(report.errored_combinations) == 5
        assert all("ref=Return" in c for c in report.errored_combinations)
        assert report.errors[0]["error_type"] == "TransientUpstreamError"
        assert report.errors[0]["filter_combination"] in report.errored_combinations

    def test_failed_base_slice_still_partitions(self, fake_api, spread, orchestrator_for):
        api = fake_api(spread(COUNTS), fail_when=lambda q: not q.transaction_types)
        report = run(orchestrator_for(api).run(FetchScope()))

        assert report.partitioned
        assert report.unique_count == 1200
        assert report.slices[0].status == SliceStatus.FAILED
        assert not report.is_complete

    def test_truncated_slice_is_flagged(self, fake_api, spread, orchestrator_for):
        api = fake_api(spread({("Charge", "Shipment"): 10}), page_size=3)
        report = run(orchestrator_for(api, max_pages=2).run(FetchScope()))

        assert not report.is_complete
        assert report.slices[0].truncated
        leaf = next(s for s in report.slices if s.combination.startswith("tx=Charge|ref=Shipment"))
        assert leaf.status == SliceStatus.TRUNCATED
        assert leaf.possibly_capped
        assert leaf.combination in report.capped_combinations
        assert report.unique_count == 6

    def test_cell_at_cap_is_flagged_possibly_capped(self, fake_api, spread, orchestrator_for):
        api = fake_api(spread({("Charge", "Shipment"): 350, ("Charge", "Return"): 20}))
        report = run(orchestrator_for(api).run(FetchScope()))

        assert not report.is_complete
        assert report.capped_combinations == ["tx=Charge|ref=Shipment|invoiced=false"]

    def test_cap_cell_split_by_date_bucket(self, fake_api, record, orchestrator_for):
        records = [
            record(f"tx-{i}", charge_date=date(2025, 11, 1 + (i % 30)))
            for i in range(320)
        ]
        api = fake_api(records, cap=300)
        scope = FetchScope(start_date=date(2025, 11, 1), end_date=date(2025, 11, 30))
        report = run(orchestrator_for(api, date_bucket_days=7).run(scope))

        # The fake ignores dates, so every bucket still reaches the cap
        split = [s for s in report.slices if s.status == SliceStatus.SPLIT]
        assert len(split) == 2
        assert len(report.capped_combinations) == len(date_buckets(scope.start_date, scope.end_date, 7))
        assert not report.is_complete


class TestUpstreamQuirks:
    """Re-emitting cursors, ignored date filters, cancellation."""

    def test_reemitting_cursor_stops(self, fake_api, spread, orchestrator_for):
        api = fake_api(spread({("Charge", "Shipment"): 5}), page_size=10, reemit=True)
        report = run(orchestrator_for(api).run(FetchScope()))

        assert report.unique_count == 5
        assert report.slices[0].pages == 2
        assert report.duplicates_collapsed == 5

    def test_out_of_window_rows_are_kept_and_counted(self, fake_api, record, orchestrator_for, db_path):
        api = fake_api([
            record("in-1", charge_date=date(2025, 11, 5)),
            record("in-2", charge_date=date(2025, 11, 30)),
            record("old", charge_date=date(2025, 9, 1)),
        ])
        scope = FetchScope(start_date=date(2025, 11, 1), end_date=date(2025, 11, 30))
        report = run(orchestrator_for(api).run(scope))

        assert report.unique_count == 3
        assert report.out_of_window == 1
        assert get_transaction("old", db_path) is not None

    def test_cancelled_run_is_not_complete(self, upstream, orchestrator_for, db_path):
        context = FetchRunContext()
        context.cancel()
        report = run(orchestrator_for(upstream).run(FetchScope(), context))

        assert report.cancelled
        assert not report.is_complete
        assert report.pages_fetched == 0
        assert count_transactions(db_path) == 0

    def test_invoice_transactions(self, fake_api, record, orchestrator_for, db_path):
        api = fake_api([
            record("a", invoiced_status=True, upstream_invoice_id=9001),
            record("b", invoiced_status=True, upstream_invoice_id=9001),
            record("c", invoiced_status=True, upstream_invoice_id=9002),
        ])
        report = run(orchestrator_for(api).fetch_invoice_transactions([9001]))

        assert report.is_complete
        assert report.unique_count == 2
        assert get_transaction("c", db_path) is None
        assert report.slices[0].combination == "invoice=9001"


class TestPartitionGrid:
    """Every transaction and reference type is reachable by some partition."""

    def test_adjustment_and_uro_cells_are_recovered(self, fake_api, spread, orchestrator_for):
        api = fake_api(spread({
            ("Charge", "Shipment"): 250,
            ("Charge", "URO"): 100,
            ("Adjustment", "Shipment"): 50,
        }), cap=300)
        report = run(orchestrator_for(api).run(FetchScope()))

        assert report.partitioned
        assert report.unique_count == 400
        assert report.is_complete
        combinations = {s.combination: s.unique_count for s in report.slices}
        assert combinations["tx=Charge|ref=URO|invoiced=false"] == 100
        assert combinations["tx=Adjustment|ref=Shipment|invoiced=false"] == 50

    def test_unknown_types_seen_by_base_slice_are_partitioned(self, fake_api, spread, orchestrator_for):
        api = fake_api(spread({
            ("Surcharge", "Widget"): 100,
            ("Charge", "Shipment"): 250,
        }), cap=300)
        report = run(orchestrator_for(api).run(FetchScope()))

        assert report.unique_count == 350
        assert report.is_complete
        widget = next(s for s in report.slices if s.combination == "tx=Surcharge|ref=Widget|invoiced=false")
        assert widget.unique_count == 100
        assert len(report.slices) == 1 + 6 * 9

    def test_untyped_rows_in_capped_base_leave_run_incomplete(self, fake_api, record, spread, orchestrator_for):
        untyped = [record(f"blank-{i}", reference_type="") for i in range(50)]
        api = fake_api(untyped + spread({("Charge", "Shipment"): 260}), cap=300)
        report = run(orchestrator_for(api).run(FetchScope()))

        base = report.slices[0]
        assert base.status == SliceStatus.SPLIT
        assert base.possibly_capped
        assert base.combination in report.capped_combinations
        assert not report.is_complete

    def test_untyped_rows_below_cap_do_not_flag(self, fake_api, record, orchestrator_for):
        api = fake_api([record(f"blank-{i}", reference_type="") for i in range(10)])
        report = run(orchestrator_for(api, always_partition=True).run(FetchScope()))

        assert report.unique_count == 10
        assert not report.slices[0].possibly_capped
        assert report.is_complete


class TestSinkFailure:

    def test_failed_write_fails_only_its_slice(self, fake_api, spread, settings, db_path):
        calls = []

        def flaky_sink(records):
            calls.append(len(records))
            if len(calls) == 1:
                raise OSError("disk I/O error")
            return upsert_transactions(records, db_path)

        orchestrator = ExhaustiveFetchOrchestrator(
            fake_api(spread(COUNTS)), settings.fetch, db_path=db_path, sink=flaky_sink
        )
        report = run(orchestrator.run(FetchScope()))

        assert report.errored_combinations == ["invoiced=false"]
        assert report.errors[0]["error_type"] == "LedgerWriteError"
        assert not report.is_complete
        # Ids of the failed page were released and written by the partitions
        assert report.unique_count == 1200
        assert count_transactions(db_path) == 1200


# =============================================================================
# Against a local HTTP upstream
# =============================================================================

def tx_payload(tx):
    return {
        "transaction_id": tx.transaction_id,
        "amount": str(tx.amount),
        "charge_date": tx.charge_date.isoformat(),
        "transaction_type": tx.transaction_type,
        "transaction_fee": tx.fee_type,
        "reference_id": tx.reference_id,
        "reference_type": tx.reference_type,
        "invoiced_status": tx.invoiced_status,
    }


class HttpUpstream:
    """aiohttp handler serving records with a hidden cap and small pages.

    `intercept(body)` may return a response to send instead of the listing.
    """

    def __init__(self, records, cap=20, page_size=10, intercept=None):
        self.records = records
        self.cap = cap
        self.page_size = page_size
        self.intercept = intercept
        self.served = 0

    def _matches(self, tx, body):
        if body.get("transaction_types") and tx.transaction_type not in body["transaction_types"]:
            return False
        if body.get("reference_types") and tx.reference_type not in body["reference_types"]:
            return False
        if "invoiced_status" in body and tx.invoiced_status != body["invoiced_status"]:
            return False
        return True

    async def handle(self, request):
        body = await request.json()
        if self.intercept:
            response = self.intercept(body)
            if response is not None:
                return response
        matching = [tx for tx in self.records if self._matches(tx, body)][:self.cap]
        offset = int(request.query.get("Cursor") or 0)
        page = matching[offset:offset + self.page_size]
        next_offset = offset + self.page_size
        self.served += 1
        return web.json_response({
            "items": [tx_payload(tx) for tx in page],
            "next": str(next_offset) if next_offset < len(matching) else None,
        })


def run_http(upstream, fetch_settings, db_path, sleep=None):
    async def main():
        app = web.Application()
        app.router.add_route("POST", "/2025-07/transactions:query", upstream.handle)
        async with TestServer(app) as server:
            api_settings = ApiSettings(
                base_url=str(server.make_url("/")),
                token="secret-token",
                page_size=50,
                retry=RetryConfig(max_attempts=4, base_delay=1.0, max_delay=30.0, jitter=0),
            )
            async with LogisticsBillingClient(api_settings, sleep=sleep or asyncio.sleep) as client:
                orchestrator = ExhaustiveFetchOrchestrator(client, fetch_settings, db_path=db_path)
                return await orchestrator.run(FetchScope())
    return asyncio.run(main())


# Return rows last: the capped base slice (first 20) never sees them
SMALL_COUNTS = {
    ("Charge", "Shipment"): 15,
    ("Credit", "Shipment"): 5,
    ("Charge", "Return"): 10,
}


class TestAgainstHttpUpstream:
    """Client and orchestrator together over real HTTP."""

    def test_bad_body_fails_only_its_slice(self, spread, db_path):
        def intercept(body):
            if body.get("reference_types") == ["Return"]:
                return web.Response(status=200, text="<html>upstream error</html>", content_type="text/html")
            return None

        upstream = HttpUpstream(spread(SMALL_COUNTS), intercept=intercept)
        report = run_http(upstream, FetchSettings(observed_cap=20), db_path)

        assert report.partitioned
        assert not report.is_complete
        assert len(report.errored_combinations) == 5
        assert all("ref=Return" in c for c in report.errored_combinations)
        assert {e["error_type"] for e in report.errors} == {"UpstreamRequestError"}
        assert report.unique_count == 20
        assert count_transactions(db_path) == 20

    def test_rate_limited_slice_backs_off_alone(self, spread, db_path):
        throttled = {}

        def intercept(body):
            if body.get("reference_types") != ["Return"]:
                return None
            key = tuple(body.get("transaction_types") or ())
            throttled[key] = throttled.get(key, 0) + 1
            if throttled[key] <= 2:
                return web.Response(status=429, headers={"Retry-After": "1"})
            return None

        upstream = HttpUpstream(spread(SMALL_COUNTS), intercept=intercept)
        windows = []

        async def watched_sleep(delay):
            before = upstream.served
            await asyncio.sleep(0.2)
            windows.append((before, upstream.served))

        report = run_http(upstream, FetchSettings(observed_cap=20, max_concurrency=4), db_path, sleep=watched_sleep)

        assert report.is_complete
        assert report.unique_count == 30
        assert report.errored_combinations == []
        charge_return = next(s for s in report.slices if s.combination == "tx=Charge|ref=Return|invoiced=false")
        assert charge_return.status == SliceStatus.COMPLETED
        assert charge_return.unique_count == 10
        # Two backoffs for each of the five Return cells
        assert len(windows) == 10
        # Sibling slices kept being served while a Return cell waited
        assert any(after > before for before, after in windows)


class TestHelpers:

    def test_date_buckets(self):
        buckets = date_buckets(date(2025, 11, 1), date(2025, 11, 10), 4)
        assert buckets == [
            (date(2025, 11, 1), date(2025, 11, 4)),
            (date(2025, 11, 5), date(2025, 11, 8)),
            (date(2025, 11, 9), date(2025, 11, 10)),
        ]

    def test_fetch_upstream_invoices(self, fake_api, db_path):
        api = fake_api(invoices=[
            UpstreamInvoiceSummary(invoice_id=9000 + i, invoice_date=date(2025, 11, 10))
            for i in range(5)
        ], page_size=2)

        stored = run(fetch_upstream_invoices(api, db_path=db_path))

        assert stored == 5
        assert get_upstream_invoice_dates(db_path)[9003] == date(2025, 11, 10)
