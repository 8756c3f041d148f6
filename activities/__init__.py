"""Activity definitions module."""

from activities.billing import (
    sync_upstream_invoices,
    fetch_pending_transactions,
    attribute_transactions,
    link_transactions,
    apply_markups,
    SyncInvoicesInput,
    FetchTransactionsInput,
    FetchTransactionsOutput,
    StageInput,
)

ALL_ACTIVITIES = [
    sync_upstream_invoices,
    fetch_pending_transactions,
    attribute_transactions,
    link_transactions,
    apply_markups,
]

__all__ = [
    "sync_upstream_invoices",
    "fetch_pending_transactions",
    "attribute_transactions",
    "link_transactions",
    "apply_markups",
    "SyncInvoicesInput",
    "FetchTransactionsInput",
    "FetchTransactionsOutput",
    "StageInput",
    "ALL_ACTIVITIES",
]
