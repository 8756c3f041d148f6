"""Ledger Data Models.

Pydantic models for the rows of the local billing ledger:
- LedgerTransaction: one upstream transaction plus attribution, linking and markup state
- Shipment / ReturnOrder / ReceivingOrder / Product: owner join targets
- InternalInvoice: client billing periods
- BillingException: a transaction parked in a named exception bucket
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.errors import DuplicateIdCollision


class AttributionMethod(str, Enum):
    """How a transaction's owning client was determined."""
    SHIPMENT = "shipment"
    RETURN = "return"
    RECEIVING_ORDER = "receiving_order"
    STORAGE = "storage"
    SYSTEM_FEE = "system_fee"     # Fixed house account for system-level fees
    CORRECTION = "correction"     # Overwritten by operator-confirmed correction


class MarkupStatus(str, Enum):
    """Markup lifecycle of a transaction."""
    PENDING = "pending"
    APPLIED = "applied"
    NEEDS_REVIEW = "needs_review"  # No rule matched; excluded from invoicing
    SKIPPED = "skipped"            # House account, never billed to a client


class LedgerTransaction(BaseModel):
    """A transaction row of the ledger.

    Attributes:
        transaction_id: Immutable upstream id (primary key)
        amount: Upstream cost (base amount for markup)
        client_id: Owning client, None until attributed
        attribution_method: Which resolver step set client_id
        internal_invoice_id: Client billing-period invoice, set once by the linker
        billed_amount: amount + markup, set by the markup engine
        markup_status: pending / applied / needs_review / skipped
    """
    transaction_id: str
    amount: Decimal
    currency_code: str = "USD"
    charge_date: date
    transaction_type: Optional[str] = None
    fee_type: str = ""
    reference_type: str = ""
    reference_id: str = ""
    invoiced_status: bool = False
    upstream_invoice_id: Optional[int] = None
    upstream_invoice_date: Optional[date] = None
    invoice_type: Optional[str] = None
    fulfillment_center: Optional[str] = None
    additional_details: Dict[str, Any] = Field(default_factory=dict)

    client_id: Optional[str] = None
    attribution_method: Optional[AttributionMethod] = None

    internal_invoice_id: Optional[str] = None
    internal_invoice_date: Optional[date] = None

    billed_amount: Optional[Decimal] = None
    markup_amount: Optional[Decimal] = None
    markup_percentage: Optional[Decimal] = None
    markup_rule_id: Optional[int] = None
    markup_status: MarkupStatus = MarkupStatus.PENDING

    first_seen_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Shipment(BaseModel):
    """Shipment owner record (synced by an external process).

    Weight and destination feed markup rule conditions.
    """
    shipment_id: str
    client_id: str
    ship_option_id: Optional[str] = None
    weight_oz: Optional[float] = None
    destination_state: Optional[str] = None
    destination_country: Optional[str] = None


class ReturnOrder(BaseModel):
    """Return owner record."""
    return_id: str
    client_id: str


class ReceivingOrder(BaseModel):
    """Warehouse receiving order owner record."""
    receiving_order_id: str
    client_id: str


class Product(BaseModel):
    """Product with variants; variants carry inventory ids used by storage fees.

    variants example: [{"id": 1, "inventory": {"inventory_id": 20114295}}]
    """
    product_id: str
    client_id: str
    variants: List[Dict[str, Any]] = Field(default_factory=list)

    def inventory_ids(self) -> List[str]:
        ids = []
        for variant in self.variants:
            inventory_id = (variant.get("inventory") or {}).get("inventory_id")
            if inventory_id is not None:
                ids.append(str(inventory_id))
        return ids


class InternalInvoice(BaseModel):
    """Client-facing billing-period invoice.

    upstream_invoice_ids is append-only: the linker adds ids, never removes them.
    """
    internal_invoice_id: str
    invoice_number: str
    invoice_date: date
    client_id: str
    upstream_invoice_ids: List[int] = Field(default_factory=list)
    status: str = "draft"

    model_config = ConfigDict(from_attributes=True)


class BillingException(BaseModel):
    """A transaction parked in an exception bucket."""
    id: Optional[int] = None
    bucket: str
    transaction_id: str
    reason: Optional[str] = None
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    run_id: Optional[str] = None
    occurrences: int = 1
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


@dataclass
class UpsertResult:
    """Outcome of an idempotent batch upsert.

    updated counts rows whose id already existed; collisions lists the
    subset whose upstream amount or invoice state actually changed.
    """
    inserted: int = 0
    updated: int = 0
    collisions: List[DuplicateIdCollision] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.inserted + self.updated

    def merge(self, other: "UpsertResult") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.collisions.extend(other.collisions)
