"""Abstract Billing API Interface.

This module defines the interface every upstream billing provider must
implement. It is intentionally provider-agnostic: no endpoint paths, no
provider field names.

Key Design Principles:
- All methods return NORMALIZED objects (TransactionRecord, TransactionPage, ...)
- The fetch orchestrator, activities and scripts depend ONLY on this interface
- Provider-specific implementations live in connector subfolders

Upstream quirks every implementation must tolerate:
- date filters may be silently ignored
- page size is capped server-side
- each filter combination hides a total-result cap
- cursors occasionally re-emit items already returned
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class TransactionType(str, Enum):
    """Upstream transaction types."""
    CHARGE = "Charge"
    CREDIT = "Credit"
    REFUND = "Refund"
    PAYMENT = "Payment"
    ADJUSTMENT = "Adjustment"


class ReferenceType(str, Enum):
    """Kind of entity a transaction bills against."""
    SHIPMENT = "Shipment"
    DEFAULT = "Default"
    WRO = "WRO"  # warehouse receiving order
    RETURN = "Return"
    FC_TRANSFER = "FC-Transfer"
    TICKET_NUMBER = "TicketNumber"
    STORAGE = "Storage"
    URO = "URO"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ReferenceType"]:
        """Map an upstream reference_type string to the enum.

        Storage transactions are reported as "FC" by some deployments.
        Unknown values return None.
        """
        if not value:
            return None
        if value == "FC":
            return cls.STORAGE
        try:
            return cls(value)
        except ValueError:
            return None


# Partition dimensions used when a scope may exceed the hidden cap: every
# known value. Values the upstream returns outside these enums are added per
# run from what the base slice observed.
PARTITION_TRANSACTION_TYPES: Sequence[TransactionType] = tuple(TransactionType)

PARTITION_REFERENCE_TYPES: Sequence[ReferenceType] = tuple(ReferenceType)


# =============================================================================
# Normalized Models
# =============================================================================

def _filter_value(value: Union[Enum, str]) -> str:
    return value.value if isinstance(value, Enum) else value


def _to_date(value: Any) -> Any:
    # Upstream mixes "YYYY-MM-DD" and full ISO timestamps
    if isinstance(value, str) and len(value) > 10:
        return value[:10]
    return value


class TransactionRecord(BaseModel):
    """One upstream billing transaction, normalized."""
    transaction_id: str = Field(..., description="Immutable upstream id")
    amount: Decimal
    currency_code: str = "USD"
    charge_date: date
    transaction_type: Optional[str] = None
    fee_type: str = Field("", description="Upstream transaction_fee")
    reference_id: str = ""
    reference_type: str = ""
    invoiced_status: bool = False
    upstream_invoice_id: Optional[int] = None
    upstream_invoice_date: Optional[date] = None
    invoice_type: Optional[str] = None
    fulfillment_center: Optional[str] = None
    additional_details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("charge_date", "upstream_invoice_date", mode="before")
    @classmethod
    def _trim_timestamp(cls, value):
        return _to_date(value)

    def in_window(self, start: Optional[date], end: Optional[date]) -> bool:
        """True if charge_date falls inside [start, end]; open bounds match."""
        if start and self.charge_date < start:
            return False
        if end and self.charge_date > end:
            return False
        return True


class UpstreamInvoiceSummary(BaseModel):
    """One upstream billing statement."""
    invoice_id: int
    invoice_date: date
    invoice_type: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency_code: str = "USD"
    running_balance: Optional[Decimal] = None

    @field_validator("invoice_date", mode="before")
    @classmethod
    def _trim_timestamp(cls, value):
        return _to_date(value)


@dataclass
class TransactionPage:
    """One page of a cursor listing."""
    items: List[TransactionRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class InvoicePage:
    """One page of the upstream invoice listing."""
    items: List[UpstreamInvoiceSummary] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class TransactionQuery:
    """Filters for a transactions query.

    A query plus a cursor identifies one position in one listing; cursors
    are only valid for the exact filters that produced them.
    """
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    transaction_types: tuple = ()
    reference_types: tuple = ()
    invoiced_status: Optional[bool] = None
    reference_ids: tuple = ()
    invoice_ids: tuple = ()
    page_size: Optional[int] = None

    def partition(
        self,
        transaction_type: Union[TransactionType, str],
        reference_type: Union[ReferenceType, str],
    ) -> "TransactionQuery":
        """Same scope narrowed to one (transaction type, reference type) cell.

        Raw strings are accepted for values the upstream returned that the
        enums do not know yet.
        """
        return replace(
            self,
            transaction_types=(_filter_value(transaction_type),),
            reference_types=(_filter_value(reference_type),),
        )

    def with_date_range(self, start: date, end: date) -> "TransactionQuery":
        return replace(self, start_date=start, end_date=end)

    def with_reference_ids(self, reference_ids: Sequence[str]) -> "TransactionQuery":
        return replace(self, reference_ids=tuple(reference_ids))

    def combination_key(self) -> str:
        """Stable label for the filter combination, used in reports and logs."""
        parts = []
        if self.transaction_types:
            parts.append("tx=" + ",".join(self.transaction_types))
        if self.reference_types:
            parts.append("ref=" + ",".join(self.reference_types))
        if self.start_date or self.end_date:
            parts.append(f"dates={self.start_date or ''}..{self.end_date or ''}")
        if self.invoiced_status is not None:
            parts.append(f"invoiced={str(self.invoiced_status).lower()}")
        if self.invoice_ids:
            parts.append("invoices=" + ",".join(str(i) for i in self.invoice_ids))
        if self.reference_ids:
            parts.append(f"reference_ids[{len(self.reference_ids)}]")
        return "|".join(parts) or "all"

    def to_body(self, default_page_size: int) -> Dict[str, Any]:
        """Request body for the transactions query endpoint.

        The date range goes out under both naming schemes because different
        upstream deployments honor different names.
        """
        body: Dict[str, Any] = {"page_size": self.page_size or default_page_size}
        if self.start_date:
            body["from_date"] = f"{self.start_date.isoformat()}T00:00:00Z"
            body["start_date"] = self.start_date.isoformat()
        if self.end_date:
            body["to_date"] = f"{self.end_date.isoformat()}T23:59:59Z"
            body["end_date"] = self.end_date.isoformat()
        if self.transaction_types:
            body["transaction_types"] = list(self.transaction_types)
        if self.reference_types:
            body["reference_types"] = list(self.reference_types)
        if self.invoiced_status is not None:
            body["invoiced_status"] = self.invoiced_status
        if self.reference_ids:
            body["reference_ids"] = list(self.reference_ids)
        if self.invoice_ids:
            body["invoice_ids"] = list(self.invoice_ids)
        return body


# =============================================================================
# Abstract Interface
# =============================================================================

class BillingApiBase(ABC):
    """Abstract base class for upstream billing API clients.

    Implementations are read-only: no method may mutate upstream state.
    """

    reference_id_batch_size: int = 100

    @abstractmethod
    async def query_transactions(
        self,
        query: TransactionQuery,
        cursor: Optional[str] = None,
    ) -> TransactionPage:
        """Fetch one page of transactions matching `query`."""
        pass

    @abstractmethod
    async def get_invoice(self, invoice_id: int) -> UpstreamInvoiceSummary:
        """Fetch one upstream invoice."""
        pass

    @abstractmethod
    async def list_invoices(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> InvoicePage:
        """Fetch one page of upstream invoices."""
        pass

    @abstractmethod
    async def get_invoice_transactions(
        self,
        invoice_id: int,
        cursor: Optional[str] = None,
    ) -> TransactionPage:
        """Fetch one page of the transactions settled on an invoice."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # -------------------------------------------------------------------------
    # Convenience pagers
    # -------------------------------------------------------------------------

    async def iter_transactions(
        self,
        query: TransactionQuery,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[TransactionRecord]:
        """Yield every unique transaction of one listing.

        Stops when there is no next cursor, after `max_pages` pages, or when
        a page contains only ids already yielded.
        """
        seen = set()
        cursor: Optional[str] = None
        pages = 0
        while True:
            page = await self.query_transactions(query, cursor)
            pages += 1
            new_items = [tx for tx in page.items if tx.transaction_id not in seen]
            for tx in new_items:
                seen.add(tx.transaction_id)
                yield tx
            if not new_items or not page.next_cursor:
                return
            if max_pages is not None and pages >= max_pages:
                return
            cursor = page.next_cursor

    async def query_by_reference_ids(
        self,
        reference_ids: Sequence[str],
        query: Optional[TransactionQuery] = None,
        max_pages: Optional[int] = None,
    ) -> List[TransactionRecord]:
        """Look up transactions for many reference ids.

        Ids are sent in batches of `reference_id_batch_size`; results are
        deduplicated across batches.
        """
        base = query or TransactionQuery()
        ids = list(dict.fromkeys(reference_ids))
        results: Dict[str, TransactionRecord] = {}
        for i in range(0, len(ids), self.reference_id_batch_size):
            batch = ids[i:i + self.reference_id_batch_size]
            async for tx in self.iter_transactions(base.with_reference_ids(batch), max_pages):
                results.setdefault(tx.transaction_id, tx)
        return list(results.values())
