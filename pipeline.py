"""Billing sync pipeline stages.

The five stages of a sync run, as plain functions so they can run inside
Temporal activities, from scripts, or from tests:

    sync_upstream_invoices -> fetch_pending_transactions
    -> attribute_transactions -> link_transactions -> apply_markups

Each stage opens what it needs (ledger tables, API client, audit logger)
and is safe to re-run.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional, Sequence

from attribution_resolver import AttributionResolver, AttributionResult
from connectors.billing_base import BillingApiBase
from connectors.logistics_billing import LogisticsBillingClient
from core.audit import AuditLogger, get_audit_logger
from core.config import Settings, get_settings
from core.observability import get_logger, get_metrics, with_correlation
from fetch_orchestrator import (
    ExhaustiveFetchOrchestrator,
    FetchRunContext,
    FetchRunReport,
    FetchScope,
    fetch_upstream_invoices,
)
from invoice_linker import InvoicePeriodLinker, LinkResult
from ledger import init_ledger_db
from markup_engine import MarkupEngine, MarkupRunResult

logger = get_logger(__name__)


@dataclass
class PipelineResult:
    """Per-stage summaries of one sync run."""
    run_id: str
    invoices_synced: int = 0
    fetch: Dict[str, Any] = field(default_factory=dict)
    attribution: Dict[str, Any] = field(default_factory=dict)
    linking: Dict[str, Any] = field(default_factory=dict)
    markup: Dict[str, Any] = field(default_factory=dict)

    @property
    def fetch_complete(self) -> bool:
        return bool(self.fetch.get("is_complete"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "invoices_synced": self.invoices_synced,
            "fetch_complete": self.fetch_complete,
            "fetch": self.fetch,
            "attribution": self.attribution,
            "linking": self.linking,
            "markup": self.markup,
            "metrics": get_metrics().get_summary(),
        }


def new_run_id() -> str:
    return f"sync-{uuid.uuid4().hex[:12]}"


def _audit(settings: Settings) -> AuditLogger:
    return get_audit_logger(settings.db_path)


# =============================================================================
# Stages
# =============================================================================

async def sync_upstream_invoices(
    settings: Settings,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    api: Optional[BillingApiBase] = None,
) -> int:
    """Refresh the upstream invoice list (the dates linking depends on)."""
    init_ledger_db(settings.db_path)
    if api is not None:
        return await fetch_upstream_invoices(api, start_date, end_date, db_path=settings.db_path)
    async with LogisticsBillingClient(settings.api) as client:
        return await fetch_upstream_invoices(client, start_date, end_date, db_path=settings.db_path)


async def fetch_pending_transactions(
    settings: Settings,
    scope: FetchScope,
    run_id: Optional[str] = None,
    api: Optional[BillingApiBase] = None,
    invoice_ids: Sequence[int] = (),
    context: Optional[FetchRunContext] = None,
) -> FetchRunReport:
    """Exhaustively fetch the scope into the ledger.

    When invoice_ids are given, their settled transactions are pulled as
    well, as a second run with the "-invoices" suffix.
    """
    init_ledger_db(settings.db_path)
    if context is None:
        context = FetchRunContext(run_id=run_id) if run_id else FetchRunContext()

    async def go(client: BillingApiBase) -> FetchRunReport:
        orchestrator = ExhaustiveFetchOrchestrator(
            client, settings.fetch, db_path=settings.db_path, audit=_audit(settings)
        )
        report = await orchestrator.run(scope, context)
        if invoice_ids and not context.cancelled:
            invoice_report = await orchestrator.fetch_invoice_transactions(
                invoice_ids, context.derive(f"{context.run_id}-invoices")
            )
            if not invoice_report.is_complete:
                logger.warning(
                    f"Invoice transaction fetch incomplete: {invoice_report.errored_combinations}"
                )
        return report

    if api is not None:
        return await go(api)
    async with LogisticsBillingClient(settings.api) as client:
        return await go(client)


def attribute_transactions(settings: Settings, run_id: Optional[str] = None, dry_run: bool = False) -> AttributionResult:
    init_ledger_db(settings.db_path)
    resolver = AttributionResolver(settings.attribution, db_path=settings.db_path, audit=_audit(settings))
    return resolver.run(dry_run=dry_run, run_id=run_id)


def link_transactions(settings: Settings, run_id: Optional[str] = None, dry_run: bool = False) -> LinkResult:
    init_ledger_db(settings.db_path)
    linker = InvoicePeriodLinker(
        db_path=settings.db_path,
        audit=_audit(settings),
        exclude_client_ids=settings.attribution.house_client_ids,
    )
    return linker.run(dry_run=dry_run, run_id=run_id)


def apply_markups(settings: Settings, run_id: Optional[str] = None, dry_run: bool = False) -> MarkupRunResult:
    init_ledger_db(settings.db_path)
    engine = MarkupEngine(
        settings.attribution,
        db_path=settings.db_path,
        audit=_audit(settings),
        batch_size=settings.attribution.batch_size,
    )
    return engine.apply_to_ledger(run_id=run_id, dry_run=dry_run)


# =============================================================================
# Whole run
# =============================================================================

async def run_pipeline(
    scope: FetchScope,
    settings: Optional[Settings] = None,
    api: Optional[BillingApiBase] = None,
    run_id: Optional[str] = None,
    sync_invoices: bool = True,
) -> PipelineResult:
    """Run every stage in order, in-process.

    A partial fetch does not stop the later stages: they only act on what
    is in the ledger, and the fetch report says what is missing.
    """
    settings = settings or get_settings()
    run_id = run_id or new_run_id()
    result = PipelineResult(run_id=run_id)

    with with_correlation(run_id=run_id):
        if sync_invoices:
            result.invoices_synced = await sync_upstream_invoices(
                settings, scope.start_date, scope.end_date, api=api
            )
        report = await fetch_pending_transactions(settings, scope, run_id=run_id, api=api)
        result.fetch = report.to_dict()
        result.attribution = attribute_transactions(settings, run_id=run_id).to_dict()
        result.linking = link_transactions(settings, run_id=run_id).to_dict()
        result.markup = apply_markups(settings, run_id=run_id).to_dict()

    logger.info(f"Sync run {run_id} finished", extra_fields={"fetch_complete": result.fetch_complete})
    return result
