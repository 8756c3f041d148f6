"""Invoice Period Linker.

Links raw transactions to the client-facing billing-period invoice
(InternalInvoice) they belong to:

    transaction.upstream_invoice_id -> UpstreamInvoice.invoice_date
    (invoice_date, transaction.client_id) -> InternalInvoice

Linking is monotonic. A linked transaction is never relinked by a normal
run (the write is guarded by `internal_invoice_id IS NULL`), and upstream
invoice ids are only ever appended to an internal invoice's set.
reset_links() is the explicit, confirmed way back.
"""

import time
from collections import defaultdict
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from core.audit import AuditEventType, AuditLogger
from core.config import DEFAULT_DB_PATH
from core.errors import CorrectionNotConfirmed, UnlinkableTransaction
from core.observability import get_logger, get_metrics, with_correlation
from ledger.db import (
    clear_internal_invoice_links,
    get_internal_invoices,
    get_upstream_invoice_dates,
    link_transactions,
    list_transactions,
    record_exceptions,
    resolve_exceptions,
)
from ledger.models import InternalInvoice, LedgerTransaction

from .models import LinkResult, PlannedLink, UnlinkableReason

logger = get_logger(__name__)

PeriodLookup = Dict[Tuple[date, str], List[InternalInvoice]]


class InvoicePeriodLinker:
    """Links transactions to internal billing-period invoices.

    Usage:
        linker = InvoicePeriodLinker(db_path=settings.db_path)
        result = linker.run()
        linker.reset_links(["tx-1"], confirmed=True)
    """

    def __init__(
        self,
        db_path: Path = DEFAULT_DB_PATH,
        audit: Optional[AuditLogger] = None,
        exclude_client_ids: Iterable[str] = (),
    ):
        """
        Args:
            db_path: Ledger database
            audit: Optional audit logger
            exclude_client_ids: Clients never invoiced (house accounts)
        """
        self.db_path = db_path
        self.audit = audit
        self.exclude_client_ids = set(exclude_client_ids)
        self.metrics = get_metrics()

    def build_lookups(self) -> Tuple[Dict[int, date], PeriodLookup]:
        """Load upstream invoice dates and the (date, client) period index."""
        invoice_dates = get_upstream_invoice_dates(self.db_path)
        periods: PeriodLookup = defaultdict(list)
        for invoice in get_internal_invoices(self.db_path):
            periods[(invoice.invoice_date, invoice.client_id)].append(invoice)
        return invoice_dates, dict(periods)

    def plan(
        self,
        transactions: Sequence[LedgerTransaction],
        invoice_dates: Dict[int, date],
        periods: PeriodLookup,
    ) -> Tuple[List[Tuple[PlannedLink, InternalInvoice]], List[UnlinkableTransaction]]:
        """Decide links for transactions. Pure: no database access."""
        links: List[Tuple[PlannedLink, InternalInvoice]] = []
        unlinkable: List[UnlinkableTransaction] = []

        for tx in transactions:
            invoice_date = invoice_dates.get(tx.upstream_invoice_id)
            if invoice_date is None:
                unlinkable.append(self._unlinkable(tx, UnlinkableReason.UNKNOWN_UPSTREAM_INVOICE))
                continue

            candidates = periods.get((invoice_date, tx.client_id), [])
            if not candidates:
                unlinkable.append(self._unlinkable(tx, UnlinkableReason.NO_INTERNAL_INVOICE, invoice_date))
                continue
            if len(candidates) > 1:
                unlinkable.append(self._unlinkable(
                    tx,
                    UnlinkableReason.AMBIGUOUS_INTERNAL_INVOICE,
                    invoice_date,
                    [c.internal_invoice_id for c in candidates],
                ))
                continue

            invoice = candidates[0]
            links.append((
                PlannedLink(tx.transaction_id, invoice.internal_invoice_id, tx.upstream_invoice_id),
                invoice,
            ))
        return links, unlinkable

    def _unlinkable(
        self,
        tx: LedgerTransaction,
        reason: UnlinkableReason,
        invoice_date: Optional[date] = None,
        candidates: Optional[List[str]] = None,
    ) -> UnlinkableTransaction:
        details = {"upstream_invoice_id": tx.upstream_invoice_id, "client_id": tx.client_id}
        if invoice_date:
            details["invoice_date"] = invoice_date.isoformat()
        if candidates:
            details["candidates"] = candidates
        return UnlinkableTransaction(
            f"Cannot link transaction to a billing period ({reason.value})",
            reason=reason.value,
            transaction_id=tx.transaction_id,
            reference_id=tx.reference_id,
            details=details,
        )

    def run(self, dry_run: bool = False, run_id: Optional[str] = None) -> LinkResult:
        """Link every attributed, unlinked transaction that has an upstream invoice.

        Transactions that cannot be linked yet are parked in the unlinkable
        bucket and retried on the next run.
        """
        started = time.perf_counter()
        result = LinkResult(run_id=run_id, dry_run=dry_run)

        with with_correlation(run_id=run_id, stage="linking"):
            candidates = [
                tx for tx in list_transactions(self.db_path, attributed=True, linked=False)
                if tx.upstream_invoice_id is not None and tx.client_id not in self.exclude_client_ids
            ]
            result.examined = len(candidates)
            if not candidates:
                logger.info("No transactions awaiting a billing period")
                return result

            invoice_dates, periods = self.build_lookups()
            links, result.unlinkable = self.plan(candidates, invoice_dates, periods)
            result.planned = [link for link, _ in links]

            if not dry_run:
                linked_ids = link_transactions(
                    [(link.transaction_id, invoice, link.upstream_invoice_id) for link, invoice in links],
                    self.db_path,
                )
                result.linked = len(linked_ids)
                resolve_exceptions("unlinkable", linked_ids, self.db_path)
                record_exceptions(result.unlinkable, run_id=run_id, db_path=self.db_path)
                if self.audit and linked_ids:
                    per_invoice: Dict[str, int] = defaultdict(int)
                    for link in result.planned:
                        per_invoice[link.internal_invoice_id] += 1
                    self.audit.log_info(
                        AuditEventType.INVOICE_LINKED,
                        f"Linked {len(linked_ids)} transactions to {len(per_invoice)} billing periods",
                        run_id=run_id,
                        details={"per_invoice": dict(per_invoice)},
                    )

        self.metrics.record_stage_time("linking", (time.perf_counter() - started) * 1000)
        logger.info(
            f"Linking{' (dry run)' if dry_run else ''}: examined {result.examined}, "
            f"linked {result.linked}, unlinkable {len(result.unlinkable)}",
            extra_fields=result.to_dict(),
        )
        return result

    def reset_links(
        self,
        transaction_ids: Sequence[str],
        confirmed: bool = False,
        dry_run: bool = False,
        actor: str = "operator",
    ) -> int:
        """Unlink transactions so the next run can link them again.

        Upstream invoice ids already appended to internal invoices stay.

        Returns:
            Number of transactions unlinked (or that would be, on dry run)

        Raises:
            CorrectionNotConfirmed: Not a dry run and not confirmed
        """
        if dry_run:
            return len(list_transactions(self.db_path, linked=True, transaction_ids=transaction_ids))
        if not confirmed:
            raise CorrectionNotConfirmed("Resetting invoice links requires confirmed=True")

        count = clear_internal_invoice_links(transaction_ids, self.db_path)
        if self.audit and count:
            self.audit.log_warning(
                AuditEventType.INVOICE_LINK_RESET,
                f"Reset {count} invoice links",
                actor=actor,
                details={"transaction_ids": list(transaction_ids)},
            )
        logger.warning(f"Reset {count} invoice links")
        return count
