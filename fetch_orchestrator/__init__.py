"""
Fetch Orchestrator Package

Exhaustive extraction from the capped, paginated upstream billing API.

Usage:
    from fetch_orchestrator import ExhaustiveFetchOrchestrator, FetchScope

    orchestrator = ExhaustiveFetchOrchestrator(client, settings.fetch, db_path=settings.db_path)
    report = await orchestrator.run(FetchScope(invoiced_status=False))
"""

from .models import (
    SliceStatus,
    FetchScope,
    FetchRunContext,
    FetchSliceResult,
    FetchRunReport,
)

from .orchestrator import (
    ExhaustiveFetchOrchestrator,
    fetch_upstream_invoices,
    date_buckets,
)

from .db import (
    save_fetch_run,
    get_fetch_run,
    get_recent_fetch_runs,
)

__all__ = [
    "SliceStatus",
    "FetchScope",
    "FetchRunContext",
    "FetchSliceResult",
    "FetchRunReport",
    "ExhaustiveFetchOrchestrator",
    "fetch_upstream_invoices",
    "date_buckets",
    "save_fetch_run",
    "get_fetch_run",
    "get_recent_fetch_runs",
]
