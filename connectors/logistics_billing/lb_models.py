"""Logistics billing API data models.

Provider-shaped models that map to the 2025-07 billing API schema (snake_case
field names). They are converted to the normalized models of
connectors.billing_base before leaving this package.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from connectors.billing_base import TransactionRecord, UpstreamInvoiceSummary


class LBBaseModel(BaseModel):
    """Base model for billing API payloads."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LBTax(LBBaseModel):
    tax_type: Optional[str] = None
    amount: Optional[Decimal] = None


class LBTransaction(LBBaseModel):
    """Billing API transaction.

    Maps to: POST /transactions:query, GET /invoices/{id}/transactions
    """
    transaction_id: str
    amount: Decimal = Decimal("0")
    currency_code: Optional[str] = None
    charge_date: str
    invoiced_status: Optional[bool] = False
    invoice_date: Optional[str] = None
    invoice_id: Optional[int] = None
    invoice_type: Optional[str] = None
    transaction_fee: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    transaction_type: Optional[str] = None
    fulfillment_center: Optional[str] = None
    taxes: List[LBTax] = Field(default_factory=list)
    additional_details: Optional[Dict[str, Any]] = None

    def to_record(self) -> TransactionRecord:
        details = dict(self.additional_details or {})
        if self.taxes:
            details.setdefault("taxes", [t.model_dump(mode="json") for t in self.taxes])
        return TransactionRecord(
            transaction_id=self.transaction_id,
            amount=self.amount,
            currency_code=self.currency_code or "USD",
            charge_date=self.charge_date,
            transaction_type=self.transaction_type,
            fee_type=self.transaction_fee or "",
            reference_id=self.reference_id or "",
            reference_type=self.reference_type or "",
            invoiced_status=bool(self.invoiced_status),
            upstream_invoice_id=self.invoice_id,
            upstream_invoice_date=self.invoice_date,
            invoice_type=self.invoice_type,
            fulfillment_center=self.fulfillment_center,
            additional_details=details,
        )


class LBInvoice(LBBaseModel):
    """Billing API invoice.

    Maps to: GET /invoices, GET /invoices/{id}
    """
    invoice_id: int
    invoice_date: str
    invoice_type: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency_code: Optional[str] = None
    running_balance: Optional[Decimal] = None

    def to_summary(self) -> UpstreamInvoiceSummary:
        return UpstreamInvoiceSummary(
            invoice_id=self.invoice_id,
            invoice_date=self.invoice_date,
            invoice_type=self.invoice_type,
            amount=self.amount,
            currency_code=self.currency_code or "USD",
            running_balance=self.running_balance,
        )


def parse_page(payload: Any) -> tuple:
    """Split a listing response into (items, next cursor).

    Some endpoints answer with a bare array instead of {items, next}. An empty
    body decodes to {} and yields no items.

    Raises:
        ValueError: The payload is neither a listing object nor an array
    """
    if isinstance(payload, list):
        return payload, None
    if not isinstance(payload, dict):
        raise ValueError(f"expected a listing object or array, got {type(payload).__name__}")
    return payload.get("items") or [], payload.get("next") or None
