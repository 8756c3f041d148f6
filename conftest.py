"""Shared pytest fixtures.

FakeBillingApi reproduces the upstream quirks the reconciler exists for:
a hidden per-combination result cap, ignored date filters, server-capped
page sizes and (optionally) cursors that re-emit items.
"""

from datetime import date
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from connectors.billing_base import (
    BillingApiBase,
    InvoicePage,
    ReferenceType,
    TransactionPage,
    TransactionQuery,
    TransactionRecord,
    UpstreamInvoiceSummary,
)
from core.config import ApiSettings, AttributionSettings, FetchSettings, Settings
from core.errors import TransientUpstreamError
from ledger import init_ledger_db

PAYMENTS_HOUSE = "house-payments"
COSTS_HOUSE = "house-costs"


class FakeBillingApi(BillingApiBase):
    """In-memory upstream with a hidden total-result cap per filter combination."""

    def __init__(
        self,
        transactions: Sequence[TransactionRecord] = (),
        invoices: Sequence[UpstreamInvoiceSummary] = (),
        cap: int = 300,
        page_size: int = 100,
        fail_when: Optional[Callable[[TransactionQuery], bool]] = None,
        reemit: bool = False,
    ):
        self.transactions = list(transactions)
        self.invoices = list(invoices)
        self.cap = cap
        self.page_size = page_size
        self.fail_when = fail_when
        self.reemit = reemit
        self.queries: List[str] = []

    def _matches(self, tx: TransactionRecord, query: TransactionQuery) -> bool:
        # Date filters are ignored, like the real upstream sometimes does
        if query.transaction_types and tx.transaction_type not in query.transaction_types:
            return False
        if query.reference_types:
            # Filter accepts either the canonical name or the raw spelling
            ref_type = ReferenceType.parse(tx.reference_type)
            names = {tx.reference_type, ref_type.value if ref_type else None}
            if not names.intersection(query.reference_types):
                return False
        if query.invoiced_status is not None and tx.invoiced_status != query.invoiced_status:
            return False
        if query.reference_ids and tx.reference_id not in query.reference_ids:
            return False
        if query.invoice_ids and tx.upstream_invoice_id not in query.invoice_ids:
            return False
        return True

    def _page(self, items: List, cursor: Optional[str], page_size: int):
        if self.reemit:
            # Broken cursor: always hands back the first page again
            return items[:page_size], ("again" if items else None)
        offset = int(cursor) if cursor else 0
        page = items[offset:offset + page_size]
        next_offset = offset + page_size
        return page, (str(next_offset) if next_offset < len(items) else None)

    async def query_transactions(self, query: TransactionQuery, cursor: Optional[str] = None) -> TransactionPage:
        self.queries.append(query.combination_key())
        if self.fail_when and self.fail_when(query):
            raise TransientUpstreamError(
                "Server error 503 persisted",
                status_code=503,
                attempts=5,
                filter_combination=query.combination_key(),
            )
        matching = [tx for tx in self.transactions if self._matches(tx, query)][:self.cap]
        page_size = min(query.page_size or self.page_size, self.page_size)
        items, next_cursor = self._page(matching, cursor, page_size)
        return TransactionPage(items=items, next_cursor=next_cursor)

    async def get_invoice(self, invoice_id: int) -> UpstreamInvoiceSummary:
        for invoice in self.invoices:
            if invoice.invoice_id == invoice_id:
                return invoice
        raise KeyError(invoice_id)

    async def list_invoices(self, start_date=None, end_date=None, page_size=None, cursor=None) -> InvoicePage:
        items, next_cursor = self._page(self.invoices, cursor, page_size or self.page_size)
        return InvoicePage(items=items, next_cursor=next_cursor)

    async def get_invoice_transactions(self, invoice_id: int, cursor: Optional[str] = None) -> TransactionPage:
        matching = [tx for tx in self.transactions if tx.upstream_invoice_id == invoice_id]
        items, next_cursor = self._page(matching, cursor, self.page_size)
        return TransactionPage(items=items, next_cursor=next_cursor)


def make_record(
    transaction_id: str,
    amount: str = "10.00",
    fee_type: str = "Shipping",
    reference_type: str = "Shipment",
    reference_id: Optional[str] = None,
    transaction_type: str = "Charge",
    charge_date: date = date(2025, 11, 3),
    invoiced_status: bool = False,
    upstream_invoice_id: Optional[int] = None,
    additional_details: Optional[Dict] = None,
) -> TransactionRecord:
    return TransactionRecord(
        transaction_id=transaction_id,
        amount=Decimal(amount),
        charge_date=charge_date,
        transaction_type=transaction_type,
        fee_type=fee_type,
        reference_type=reference_type,
        reference_id=reference_id if reference_id is not None else f"ref-{transaction_id}",
        invoiced_status=invoiced_status,
        upstream_invoice_id=upstream_invoice_id,
        additional_details=additional_details or {},
    )


def spread_records(counts: Dict[tuple, int], start: int = 0) -> List[TransactionRecord]:
    """Records per (transaction type, reference type), with unique ids.

    Ids look like "tx-00042"; reference ids are unique per transaction.
    """
    records = []
    n = start
    for (transaction_type, reference_type), count in counts.items():
        for _ in range(count):
            records.append(make_record(
                f"tx-{n:05d}",
                transaction_type=transaction_type,
                reference_type=reference_type,
                reference_id=f"{reference_type.lower()}-{n}",
            ))
            n += 1
    return records


@pytest.fixture
def db_path(tmp_path):
    """Fresh ledger database."""
    path = tmp_path / "ledger.db"
    init_ledger_db(path)
    return path


@pytest.fixture
def attribution_settings():
    return AttributionSettings(
        payments_house_client_id=PAYMENTS_HOUSE,
        costs_house_client_id=COSTS_HOUSE,
        batch_size=50,
    )


@pytest.fixture
def settings(db_path, attribution_settings):
    """Settings pointing at the temporary ledger, cap matched to FakeBillingApi."""
    return Settings(
        api=ApiSettings(token="test-token"),
        fetch=FetchSettings(max_pages=20, observed_cap=300, max_concurrency=4),
        attribution=attribution_settings,
        db_path=db_path,
    )


@pytest.fixture
def record():
    """Factory for normalized upstream transactions."""
    return make_record


@pytest.fixture
def fake_api():
    """Factory for FakeBillingApi instances."""
    return FakeBillingApi


@pytest.fixture
def spread():
    """Factory for records spread over filter combinations."""
    return spread_records
