"""Exhaustive Fetch Orchestrator.

The upstream billing API silently caps the total number of results per
filter combination (observed between 250 and 1000, independent of
pagination) and does not reliably honor date filters. A single listing of
pending transactions therefore under-reports without any error.

Algorithm:
1. Run the base query for the scope.
2. If it may have hit the cap (unique count >= observed_cap, truncated by
   the page bound, or failed), re-run the same scope once per
   (transaction type x reference type) combination. The grid is every
   known type plus any unknown type the base slice returned.
3. A combination that itself reaches the cap is split into date buckets
   when the scope has a date range and date_bucket_days is set; whatever
   still reaches the cap is flagged possibly_capped.
4. Every page is merged into a union keyed by transaction id and newly
   unique items are written to the ledger as soon as the page arrives.

Each cursor loop stops on: no next cursor, max_pages (slice truncated), or
a page made only of ids the slice already returned.
"""

import asyncio
import time
from datetime import date, timedelta
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from connectors.billing_base import (
    PARTITION_REFERENCE_TYPES,
    PARTITION_TRANSACTION_TYPES,
    BillingApiBase,
    TransactionPage,
    TransactionQuery,
    TransactionRecord,
)
from core.audit import AuditEventType, AuditLogger
from core.config import DEFAULT_DB_PATH, FetchSettings
from core.errors import LedgerWriteError, ReconciliationError
from core.observability import get_logger, get_metrics, with_correlation
from ledger.db import upsert_transactions, upsert_upstream_invoices

from .db import save_fetch_run
from .models import (
    FetchRunContext,
    FetchRunReport,
    FetchScope,
    FetchSliceResult,
    SliceStatus,
    TransactionSink,
)

logger = get_logger(__name__)

PageFetcher = Callable[[Optional[str]], Awaitable[TransactionPage]]


def date_buckets(start: date, end: date, days: int) -> List[Tuple[date, date]]:
    """Split [start, end] into consecutive inclusive buckets of `days` days."""
    buckets = []
    current = start
    while current <= end:
        bucket_end = min(current + timedelta(days=days - 1), end)
        buckets.append((current, bucket_end))
        current = bucket_end + timedelta(days=1)
    return buckets


class ExhaustiveFetchOrchestrator:
    """Retrieves every transaction in a scope despite the per-combination cap.

    Usage:
        orchestrator = ExhaustiveFetchOrchestrator(client, settings.fetch, db_path=settings.db_path)
        report = await orchestrator.run(FetchScope(start_date=..., end_date=...))
        if not report.is_complete:
            print(report.errored_combinations)
    """

    def __init__(
        self,
        api: BillingApiBase,
        settings: Optional[FetchSettings] = None,
        db_path: Path = DEFAULT_DB_PATH,
        sink: Optional[TransactionSink] = None,
        persist_report: bool = True,
        audit: Optional[AuditLogger] = None,
    ):
        """
        Args:
            api: Upstream billing API client
            settings: Pagination bound, cap threshold, concurrency
            db_path: Ledger database
            sink: Receives each batch of newly unique transactions;
                defaults to the ledger upsert
            persist_report: Store the run report in fetch_runs/fetch_slices
            audit: Optional audit logger for run outcomes
        """
        self.api = api
        self.settings = settings or FetchSettings()
        self.db_path = db_path
        self.sink = sink or partial(upsert_transactions, db_path=db_path)
        self.persist_report = persist_report
        self.audit = audit
        self.metrics = get_metrics()

    # -------------------------------------------------------------------------
    # Public entry points
    # -------------------------------------------------------------------------

    async def run(self, scope: FetchScope, context: Optional[FetchRunContext] = None) -> FetchRunReport:
        """Fetch every transaction in `scope` into the ledger.

        A failing slice reduces coverage and is listed in the report; it
        never aborts the run.
        """
        context = context or FetchRunContext()
        report = FetchRunReport(run_id=context.run_id, scope=scope.to_dict())
        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrency))
        started = time.perf_counter()

        with with_correlation(run_id=context.run_id, stage="fetch"):
            logger.info(f"Fetch run started: {scope.to_dict()}")
            base_query = scope.to_query()
            base = await self._run_query(base_query, scope, context, report, semaphore)

            if self._needs_partition(base) and not context.cancelled:
                base.status = SliceStatus.SPLIT if base.status != SliceStatus.FAILED else base.status
                report.partitioned = True
                transaction_types, reference_types = self._partition_grid(base)
                queries = [
                    base_query.partition(tx_type, ref_type)
                    for tx_type in transaction_types
                    for ref_type in reference_types
                ]
                logger.info(
                    f"Base slice returned {base.unique_count} unique (cap {self.settings.observed_cap}), "
                    f"partitioning into {len(queries)} combinations"
                )
                await asyncio.gather(*[
                    self._run_partition(q, scope, context, report, semaphore) for q in queries
                ])

        report.finalize(context)
        self._finish(report, started)
        return report

    async def fetch_invoice_transactions(
        self,
        invoice_ids: Sequence[int],
        context: Optional[FetchRunContext] = None,
    ) -> FetchRunReport:
        """Pull the transactions settled on the given upstream invoices.

        One slice per invoice, same pagination guards as run().
        """
        context = context or FetchRunContext()
        report = FetchRunReport(run_id=context.run_id, scope={"invoice_ids": list(invoice_ids)})
        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrency))
        started = time.perf_counter()

        async def one(invoice_id: int) -> None:
            async with semaphore:
                await self._paginate(
                    f"invoice={invoice_id}",
                    lambda cursor: self.api.get_invoice_transactions(invoice_id, cursor),
                    None,
                    context,
                    report,
                )

        with with_correlation(run_id=context.run_id, stage="fetch_invoices"):
            await asyncio.gather(*[one(i) for i in invoice_ids])

        report.finalize(context)
        self._finish(report, started)
        return report

    # -------------------------------------------------------------------------
    # Slices
    # -------------------------------------------------------------------------

    def _reaches_cap(self, result: FetchSliceResult) -> bool:
        return result.truncated or result.unique_count >= self.settings.observed_cap

    def _needs_partition(self, base: FetchSliceResult) -> bool:
        return (
            self.settings.always_partition
            or base.status == SliceStatus.FAILED
            or self._reaches_cap(base)
        )

    def _partition_grid(self, base: FetchSliceResult) -> Tuple[List[str], List[str]]:
        """Transaction and reference types to partition over.

        Every enum value, plus any value the base slice returned that the
        enums do not know. Rows without a transaction or reference type
        cannot be reached by any partition; if the capped base slice returned
        some, more of them may be hidden and the base slice is flagged.
        """
        transaction_types = [t.value for t in PARTITION_TRANSACTION_TYPES]
        reference_types = [r.value for r in PARTITION_REFERENCE_TYPES]
        untargetable = 0
        for tx_type, ref_type in sorted(base.observed_types):
            if not tx_type or not ref_type:
                untargetable += 1
                continue
            if tx_type not in transaction_types:
                transaction_types.append(tx_type)
            if ref_type not in reference_types:
                reference_types.append(ref_type)

        extra_tx = transaction_types[len(PARTITION_TRANSACTION_TYPES):]
        extra_ref = reference_types[len(PARTITION_REFERENCE_TYPES):]
        if extra_tx or extra_ref:
            logger.warning(
                f"Base slice returned types outside the known grid, partitioning over them too: "
                f"transaction types {extra_tx}, reference types {extra_ref}"
            )
        if untargetable and self._reaches_cap(base):
            base.possibly_capped = True
            logger.warning(
                f"Base slice {base.combination} returned rows with no transaction or reference type; "
                f"no partition can reach the rest of them",
                extra_fields={"filter_combination": base.combination},
            )
        return transaction_types, reference_types

    async def _run_query(
        self,
        query: TransactionQuery,
        scope: Optional[FetchScope],
        context: FetchRunContext,
        report: FetchRunReport,
        semaphore: asyncio.Semaphore,
    ) -> FetchSliceResult:
        async with semaphore:
            return await self._paginate(
                query.combination_key(),
                lambda cursor: self.api.query_transactions(query, cursor),
                scope,
                context,
                report,
            )

    async def _run_partition(
        self,
        query: TransactionQuery,
        scope: FetchScope,
        context: FetchRunContext,
        report: FetchRunReport,
        semaphore: asyncio.Semaphore,
    ) -> None:
        result = await self._run_query(query, scope, context, report, semaphore)
        if result.status == SliceStatus.FAILED or not self._reaches_cap(result):
            return

        bucket_days = self.settings.date_bucket_days
        if bucket_days and scope.start_date and scope.end_date and not context.cancelled:
            buckets = date_buckets(scope.start_date, scope.end_date, bucket_days)
            if len(buckets) > 1:
                result.status = SliceStatus.SPLIT
                logger.info(
                    f"Combination {result.combination} reached the cap, splitting into {len(buckets)} date buckets"
                )
                sub_results = await asyncio.gather(*[
                    self._run_query(query.with_date_range(start, end), scope, context, report, semaphore)
                    for start, end in buckets
                ])
                for sub in sub_results:
                    if sub.status != SliceStatus.FAILED and self._reaches_cap(sub):
                        self._flag_capped(sub)
                return

        self._flag_capped(result)

    def _flag_capped(self, result: FetchSliceResult) -> None:
        result.possibly_capped = True
        logger.warning(
            f"Combination {result.combination} returned {result.unique_count} unique items, "
            f"at or above the observed cap; coverage may be partial",
            extra_fields={"filter_combination": result.combination},
        )

    async def _paginate(
        self,
        combination: str,
        fetch_page: PageFetcher,
        scope: Optional[FetchScope],
        context: FetchRunContext,
        report: FetchRunReport,
    ) -> FetchSliceResult:
        """Follow one cursor listing, delivering new items page by page."""
        result = FetchSliceResult(combination=combination)
        report.slices.append(result)
        slice_ids = set()
        cursor: Optional[str] = None

        with with_correlation(filter_combination=combination):
            while True:
                if context.cancelled:
                    result.status = SliceStatus.CANCELLED
                    break

                try:
                    page = await fetch_page(cursor)
                except ReconciliationError as e:
                    # TransientUpstreamError after retries, or a non-retryable/malformed response
                    self._fail_slice(result, report, combination, e)
                    break

                result.pages += 1
                context.pages_fetched += 1
                result.occurrences += len(page.items)
                result.observed_types.update(
                    (tx.transaction_type or "", tx.reference_type or "") for tx in page.items
                )

                new_in_slice = [tx for tx in page.items if tx.transaction_id not in slice_ids]
                slice_ids.update(tx.transaction_id for tx in new_in_slice)
                try:
                    await self._deliver(page.items, scope, context)
                except LedgerWriteError as e:
                    self._fail_slice(result, report, combination, e)
                    break

                if not page.next_cursor:
                    break
                if not new_in_slice:
                    logger.warning(f"Cursor for {combination} re-emitted only seen items, stopping")
                    break
                if result.pages >= self.settings.max_pages:
                    result.truncated = True
                    result.status = SliceStatus.TRUNCATED
                    logger.warning(f"Slice {combination} truncated at {result.pages} pages")
                    break
                cursor = page.next_cursor

        result.unique_count = len(slice_ids)
        if result.status == SliceStatus.COMPLETED and result.unique_count == 0:
            result.status = SliceStatus.EMPTY
        return result

    async def _deliver(
        self,
        items: Sequence[TransactionRecord],
        scope: Optional[FetchScope],
        context: FetchRunContext,
    ) -> None:
        """Merge a page into the run union and write the newly unique items.

        Raises:
            LedgerWriteError: The sink failed; the page's new ids are released
                so a sibling slice returning them can still deliver them
        """
        fresh = context.admit(items)
        if not fresh:
            return
        try:
            upserted = await asyncio.to_thread(self.sink, fresh)
        except Exception as e:
            context.release(fresh)
            raise LedgerWriteError(
                f"Writing {len(fresh)} transactions failed: {type(e).__name__}: {e}",
                details={"transaction_ids": [tx.transaction_id for tx in fresh[:20]]},
            ) from e
        if scope is not None:
            # Kept anyway: the upstream ignored the date filter, the row is still real
            context.out_of_window += sum(1 for tx in fresh if not scope.contains(tx))
        if upserted is not None:
            context.upserted.merge(upserted)

    def _fail_slice(
        self,
        result: FetchSliceResult,
        report: FetchRunReport,
        combination: str,
        error: ReconciliationError,
    ) -> None:
        error.filter_combination = error.filter_combination or combination
        result.status = SliceStatus.FAILED
        result.error = error.to_dict()
        report.errors.append(result.error)
        logger.error(f"Slice {combination} failed: {error}", extra_fields=result.error)

    def _finish(self, report: FetchRunReport, started: float) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        self.metrics.record_stage_time("fetch", duration_ms)
        for s in report.slices:
            self.metrics.record_slice(s.status.value)

        summary = (
            f"Fetch run {report.run_id}: {report.unique_count} unique, "
            f"{report.duplicates_collapsed} duplicates collapsed, "
            f"{report.out_of_window} out of window, {report.pages_fetched} pages, "
            f"{len(report.errored_combinations)} errored combinations"
        )
        if report.is_complete:
            logger.info(summary)
        else:
            logger.warning(summary + " (PARTIAL)")

        if self.persist_report:
            save_fetch_run(report, self.db_path)
        if self.audit:
            event = AuditEventType.FETCH_RUN_COMPLETED if report.is_complete else AuditEventType.FETCH_RUN_PARTIAL
            log = self.audit.log_info if report.is_complete else self.audit.log_warning
            log(event, summary, run_id=report.run_id, details={
                "errored_combinations": report.errored_combinations,
                "capped_combinations": report.capped_combinations,
            })


async def fetch_upstream_invoices(
    api: BillingApiBase,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db_path: Path = DEFAULT_DB_PATH,
    max_pages: int = 50,
) -> int:
    """Sync the upstream invoice list into upstream_invoices.

    Returns:
        Number of distinct invoices stored
    """
    seen = {}
    cursor: Optional[str] = None
    pages = 0
    while True:
        page = await api.list_invoices(start_date=start_date, end_date=end_date, cursor=cursor)
        pages += 1
        fresh = [inv for inv in page.items if inv.invoice_id not in seen]
        for inv in fresh:
            seen[inv.invoice_id] = inv
        if not page.next_cursor or not fresh or pages >= max_pages:
            break
        cursor = page.next_cursor

    stored = upsert_upstream_invoices(list(seen.values()), db_path)
    logger.info(f"Synced {stored} upstream invoices over {pages} pages")
    return stored
