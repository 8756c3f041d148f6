"""
Ledger Package

Local SQLite ledger of upstream billing transactions and everything the
reconciler derives from them (owners, billing-period links, markups,
exception buckets).

Usage:
    from ledger import init_ledger_db, upsert_transactions

    init_ledger_db(db_path)
    result = upsert_transactions(records, db_path)
    print(result.inserted, result.updated)
"""

from .models import (
    AttributionMethod,
    MarkupStatus,
    LedgerTransaction,
    Shipment,
    ReturnOrder,
    ReceivingOrder,
    Product,
    InternalInvoice,
    BillingException,
    UpsertResult,
)

from .db import (
    get_connection,
    init_ledger_db,
    # Transactions
    upsert_transactions,
    get_transaction,
    list_transactions,
    count_transactions,
    # Owner join targets
    upsert_shipments,
    upsert_returns,
    upsert_receiving_orders,
    upsert_products,
    # Invoices
    upsert_upstream_invoices,
    add_internal_invoice,
    get_internal_invoice,
    get_internal_invoices,
    # Exception buckets
    record_exceptions,
    resolve_exceptions,
    list_exceptions,
    count_open_exceptions,
)

__all__ = [
    # Models
    "AttributionMethod",
    "MarkupStatus",
    "LedgerTransaction",
    "Shipment",
    "ReturnOrder",
    "ReceivingOrder",
    "Product",
    "InternalInvoice",
    "BillingException",
    "UpsertResult",
    # Database
    "get_connection",
    "init_ledger_db",
    "upsert_transactions",
    "get_transaction",
    "list_transactions",
    "count_transactions",
    "upsert_shipments",
    "upsert_returns",
    "upsert_receiving_orders",
    "upsert_products",
    "upsert_upstream_invoices",
    "add_internal_invoice",
    "get_internal_invoice",
    "get_internal_invoices",
    "record_exceptions",
    "resolve_exceptions",
    "list_exceptions",
    "count_open_exceptions",
]
