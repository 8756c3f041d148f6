"""Billing Connectors - Pluggable upstream billing integrations.

This package contains the abstract billing API interface and the concrete
client for the logistics provider.

Key Design Principle:
- The fetch orchestrator, activities and scripts depend ONLY on BillingApiBase
- All methods return NORMALIZED types (TransactionRecord, UpstreamInvoiceSummary, ...)
- No provider field names should leak through the interface

To add a new provider:
1. Create a new folder (e.g., acme_billing/)
2. Implement BillingApiBase
"""

from connectors.billing_base import (
    # Core interface
    BillingApiBase,
    TransactionQuery,

    # Normalized types
    TransactionRecord,
    TransactionPage,
    UpstreamInvoiceSummary,
    InvoicePage,

    # Enums and partition dimensions
    TransactionType,
    ReferenceType,
    PARTITION_TRANSACTION_TYPES,
    PARTITION_REFERENCE_TYPES,
)

__all__ = [
    # Core interface
    "BillingApiBase",
    "TransactionQuery",

    # Normalized types
    "TransactionRecord",
    "TransactionPage",
    "UpstreamInvoiceSummary",
    "InvoicePage",

    # Enums
    "TransactionType",
    "ReferenceType",
    "PARTITION_TRANSACTION_TYPES",
    "PARTITION_REFERENCE_TYPES",
]
