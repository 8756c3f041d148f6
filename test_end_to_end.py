"""
End-to-End Sync Tests

Runs the whole pipeline in-process (invoice sync, exhaustive fetch,
attribution, period linking, markup) against FakeBillingApi.
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from connectors.billing_base import UpstreamInvoiceSummary
from fetch_orchestrator import FetchScope
from ledger import (
    InternalInvoice,
    MarkupStatus,
    Product,
    ReceivingOrder,
    ReturnOrder,
    Shipment,
    add_internal_invoice,
    count_open_exceptions,
    count_transactions,
    list_transactions,
    upsert_products,
    upsert_receiving_orders,
    upsert_returns,
    upsert_shipments,
)
from markup_engine import MarkupRule, MarkupType, add_markup_rule
from pipeline import run_pipeline

PERIOD = date(2025, 11, 10)
INVOICED = 40

# (transaction type, reference type, fee type, count): 1,200 in total
MIX = [
    ("Charge", "Shipment", "Shipping", 280),
    ("Charge", "Return", "Return Label", 200),
    ("Charge", "WRO", "WRO Receiving Fee", 200),
    ("Charge", "Storage", "Warehousing Fee", 250),
    ("Credit", "Shipment", "Credit", 100),
    ("Refund", "Shipment", "Shipping", 50),
    ("Payment", "Default", "Payment", 60),
    ("Charge", "Default", "Credit Card Processing Fee", 60),
]
HOUSE_ROWS = 120


def owner(n):
    return "acme" if n % 2 == 0 else "globex"


def build_upstream(record, db_path):
    """Upstream transactions plus the owner tables they join to."""
    records = []
    shipments, returns, receiving, products = [], [], [], []
    n = 0
    for transaction_type, reference_type, fee_type, count in MIX:
        for _ in range(count):
            if reference_type == "Shipment":
                reference_id = f"s-{n}"
                shipments.append(Shipment(shipment_id=reference_id, client_id=owner(n)))
            elif reference_type == "Return":
                reference_id = f"r-{n}"
                returns.append(ReturnOrder(return_id=reference_id, client_id=owner(n)))
            elif reference_type == "WRO":
                reference_id = f"w-{n}"
                receiving.append(ReceivingOrder(receiving_order_id=reference_id, client_id=owner(n)))
            elif reference_type == "Storage":
                reference_id = f"156-{50000 + n}-Shelf"
                products.append(Product(
                    product_id=f"p-{n}",
                    client_id=owner(n),
                    variants=[{"id": n, "inventory": {"inventory_id": 50000 + n}}],
                ))
            else:
                reference_id = "0"

            invoiced = reference_type == "Shipment" and transaction_type == "Charge" and n < INVOICED
            records.append(record(
                f"tx-{n:05d}",
                transaction_type=transaction_type,
                reference_type=reference_type,
                reference_id=reference_id,
                fee_type=fee_type,
                invoiced_status=invoiced,
                upstream_invoice_id=9001 if invoiced else None,
            ))
            n += 1

    upsert_shipments(shipments, db_path)
    upsert_returns(returns, db_path)
    upsert_receiving_orders(receiving, db_path)
    upsert_products(products, db_path)
    return records


@pytest.fixture
def upstream(fake_api, record, db_path):
    for client_id in ("acme", "globex"):
        add_internal_invoice(InternalInvoice(
            internal_invoice_id=f"ii-{client_id}",
            invoice_number=f"JP-{client_id.upper()}-1110",
            invoice_date=PERIOD,
            client_id=client_id,
        ), db_path)
    add_markup_rule(MarkupRule(name="Standard", markup_type=MarkupType.PERCENTAGE, markup_value="10"), db_path=db_path)

    return fake_api(
        build_upstream(record, db_path),
        invoices=[UpstreamInvoiceSummary(invoice_id=9001, invoice_date=PERIOD, invoice_type="Shipping")],
        cap=300,
    )


def sync(upstream, settings, run_id):
    return asyncio.run(run_pipeline(
        FetchScope(invoiced_status=None), settings=settings, api=upstream, run_id=run_id
    ))


class TestFullSync:

    def test_every_transaction_is_fetched_attributed_and_billed(self, upstream, settings, db_path):
        result = sync(upstream, settings, "sync-e2e")

        assert result.invoices_synced == 1
        assert result.fetch_complete
        assert result.fetch["partitioned"]
        assert result.fetch["unique_count"] == 1200
        assert count_transactions(db_path) == 1200

        assert result.attribution["attributed"] == 1200
        assert result.attribution["unresolved"] == 0
        assert count_transactions(db_path, attributed=False) == 0

        assert result.linking["linked"] == INVOICED
        assert result.linking["unlinkable"] == 0

        assert result.markup["applied"] == 1200 - HOUSE_ROWS
        assert result.markup["skipped"] == HOUSE_ROWS
        assert result.markup["needs_review"] == 0
        assert count_open_exceptions(db_path) == {"unattributable": 0, "unlinkable": 0, "no_markup_rule": 0}

    def test_billed_totals_match_ledger(self, upstream, settings, db_path):
        result = sync(upstream, settings, "sync-totals")

        billed = [tx for tx in list_transactions(db_path) if tx.markup_status == MarkupStatus.APPLIED]
        assert len(billed) == 1200 - HOUSE_ROWS
        assert all(tx.billed_amount == Decimal("11.00") for tx in billed)
        assert Decimal(result.markup["total_billed"]) == sum(tx.billed_amount for tx in billed)
        assert Decimal(result.markup["total_billed"]) == Decimal("11880.00")

    def test_house_fees_go_to_house_accounts(self, upstream, settings, db_path):
        sync(upstream, settings, "sync-house")

        payments = list_transactions(db_path, client_id="house-payments")
        costs = list_transactions(db_path, client_id="house-costs")
        assert len(payments) == 60
        assert len(costs) == 60
        assert all(tx.markup_status == MarkupStatus.SKIPPED for tx in payments + costs)
        assert all(tx.internal_invoice_id is None for tx in payments + costs)

    def test_invoiced_rows_link_to_owner_period(self, upstream, settings, db_path):
        sync(upstream, settings, "sync-link")

        linked = [tx for tx in list_transactions(db_path) if tx.internal_invoice_id]
        assert len(linked) == INVOICED
        assert all(tx.internal_invoice_id == f"ii-{tx.client_id}" for tx in linked)
        assert all(tx.internal_invoice_date == PERIOD for tx in linked)

    def test_second_run_is_a_no_op(self, upstream, settings, db_path):
        sync(upstream, settings, "sync-1")
        before = {tx.transaction_id: tx for tx in list_transactions(db_path)}

        result = sync(upstream, settings, "sync-2")

        assert result.fetch["inserted"] == 0
        assert result.fetch["updated"] == 1200
        assert result.attribution["examined"] == 0
        assert result.linking["examined"] == 0
        assert result.markup["examined"] == 0
        after = {tx.transaction_id: tx for tx in list_transactions(db_path)}
        assert all(
            (after[k].client_id, after[k].billed_amount, after[k].internal_invoice_id)
            == (v.client_id, v.billed_amount, v.internal_invoice_id)
            for k, v in before.items()
        )
