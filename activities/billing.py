"""Billing sync activities.

Temporal activities wrapping the pipeline stages. Inputs and outputs are
plain dataclasses with ISO date strings so they serialize through the
default data converter.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from temporalio import activity

import pipeline
from core.config import get_settings
from fetch_orchestrator import FetchRunContext, FetchScope

HEARTBEAT_INTERVAL_SECONDS = 30


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class SyncInvoicesInput:
    """Input for sync_upstream_invoices activity."""
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass
class FetchTransactionsInput:
    """Input for fetch_pending_transactions activity.

    Attributes:
        run_id: Pipeline run id (also the fetch run id)
        start_date / end_date: Charge date window, ISO format
        invoiced_status: False = pending only, None = any
        invoice_ids: Upstream invoices whose transactions are pulled too
    """
    run_id: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    invoiced_status: Optional[bool] = False
    invoice_ids: List[int] = field(default_factory=list)


@dataclass
class FetchTransactionsOutput:
    """Coverage summary of the fetch run."""
    run_id: str
    is_complete: bool
    unique_count: int
    inserted: int
    updated: int
    errored_combinations: List[str] = field(default_factory=list)
    capped_combinations: List[str] = field(default_factory=list)


@dataclass
class StageInput:
    """Input for the ledger-only stages (attribution, linking, markup)."""
    run_id: str
    dry_run: bool = False


# =============================================================================
# Activity Definitions
# =============================================================================

@activity.defn
async def sync_upstream_invoices(input: SyncInvoicesInput) -> int:
    """Refresh the upstream invoice list.

    Returns:
        Number of invoices stored
    """
    settings = get_settings()
    count = await pipeline.sync_upstream_invoices(
        settings, _parse_date(input.start_date), _parse_date(input.end_date)
    )
    activity.logger.info(f"Synced {count} upstream invoices")
    return count


@activity.defn
async def fetch_pending_transactions(input: FetchTransactionsInput) -> FetchTransactionsOutput:
    """Exhaustively fetch pending transactions into the ledger.

    Heartbeats every HEARTBEAT_INTERVAL_SECONDS with the run counters. When
    the activity is cancelled the run stops issuing page requests, writes
    what it already received, then the cancellation propagates.

    A partial run is returned, not raised: the report lists the failed and
    capped combinations so the workflow can surface them.
    """
    settings = get_settings()
    scope = FetchScope(
        start_date=_parse_date(input.start_date),
        end_date=_parse_date(input.end_date),
        invoiced_status=input.invoiced_status,
    )
    context = FetchRunContext(run_id=input.run_id)
    activity.heartbeat(f"Fetching {scope.to_dict()}")
    fetch = asyncio.ensure_future(pipeline.fetch_pending_transactions(
        settings, scope, invoice_ids=input.invoice_ids, context=context
    ))
    try:
        while not fetch.done():
            await asyncio.wait({fetch}, timeout=HEARTBEAT_INTERVAL_SECONDS)
            if not fetch.done():
                activity.heartbeat({
                    "run_id": context.run_id,
                    "pages_fetched": context.pages_fetched,
                    "unique_count": len(context.seen_ids),
                })
    except asyncio.CancelledError:
        activity.logger.warning(f"Fetch {context.run_id}: cancelled, finishing in-flight pages")
        context.cancel()
        await asyncio.wait({fetch})
        raise
    report = fetch.result()

    if report.is_complete:
        activity.logger.info(f"Fetch {report.run_id}: complete, {report.unique_count} unique transactions")
    else:
        activity.logger.warning(
            f"Fetch {report.run_id}: PARTIAL, failed={report.errored_combinations} "
            f"capped={report.capped_combinations}"
        )

    return FetchTransactionsOutput(
        run_id=report.run_id,
        is_complete=report.is_complete,
        unique_count=report.unique_count,
        inserted=report.inserted,
        updated=report.updated,
        errored_combinations=report.errored_combinations,
        capped_combinations=report.capped_combinations,
    )


@activity.defn
async def attribute_transactions(input: StageInput) -> Dict[str, Any]:
    """Assign owning clients to unattributed transactions."""
    result = await asyncio.to_thread(
        pipeline.attribute_transactions, get_settings(), input.run_id, input.dry_run
    )
    activity.logger.info(f"Attributed {result.attributed}, unresolved {len(result.unresolved)}")
    return result.to_dict()


@activity.defn
async def link_transactions(input: StageInput) -> Dict[str, Any]:
    """Link attributed transactions to billing-period invoices."""
    result = await asyncio.to_thread(
        pipeline.link_transactions, get_settings(), input.run_id, input.dry_run
    )
    activity.logger.info(f"Linked {result.linked}, unlinkable {len(result.unlinkable)}")
    return result.to_dict()


@activity.defn
async def apply_markups(input: StageInput) -> Dict[str, Any]:
    """Compute billed amounts for transactions awaiting markup."""
    result = await asyncio.to_thread(
        pipeline.apply_markups, get_settings(), input.run_id, input.dry_run
    )
    activity.logger.info(f"Marked up {result.applied}, needs review {result.needs_review}")
    return result.to_dict()
