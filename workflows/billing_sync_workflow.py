"""Billing Sync Workflow.

Durable version of one sync run:
SYNC_INVOICES → FETCH → ATTRIBUTE → LINK → MARKUP

Every stage is idempotent against the ledger, so Temporal retries and
replays never duplicate rows or double-apply markups.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.billing import (
        sync_upstream_invoices,
        fetch_pending_transactions,
        attribute_transactions,
        link_transactions,
        apply_markups,
        SyncInvoicesInput,
        FetchTransactionsInput,
        StageInput,
    )


TASK_QUEUE = "billing-sync"


@dataclass
class BillingSyncInput:
    """Input for Billing Sync Workflow.

    Attributes:
        start_date / end_date: Charge date window, ISO format (None = open)
        invoiced_status: False = pending transactions only, None = any
        invoice_ids: Upstream invoices whose transactions are pulled too
        run_id: Pipeline run id (defaults to the workflow id)
        dry_run: Compute attribution/linking/markup without writing
    """
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    invoiced_status: Optional[bool] = False
    invoice_ids: List[int] = field(default_factory=list)
    run_id: Optional[str] = None
    dry_run: bool = False


@workflow.defn
class BillingSyncWorkflow:
    """Runs the five billing sync stages in order.

    A partial fetch does not fail the workflow. The result carries
    `fetch_complete` and the failed/capped combinations instead.
    """

    @workflow.run
    async def run(self, input: BillingSyncInput) -> dict:
        run_id = input.run_id or workflow.info().workflow_id
        workflow.logger.info(f"Starting billing sync {run_id}")

        # Upstream API calls: rate limited, retried inside the client too
        api_activity_options = {
            "start_to_close_timeout": timedelta(minutes=30),
            "heartbeat_timeout": timedelta(minutes=10),
            "retry_policy": RetryPolicy(
                maximum_attempts=3,
                initial_interval=timedelta(seconds=30),
                maximum_interval=timedelta(minutes=5),
                backoff_coefficient=2.0,
                # Bad requests and auth failures won't self-heal
                non_retryable_error_types=["UpstreamRequestError", "ValueError"],
            ),
        }

        # Ledger-only stages
        db_activity_options = {
            "start_to_close_timeout": timedelta(minutes=10),
            "retry_policy": RetryPolicy(
                maximum_attempts=3,
                initial_interval=timedelta(seconds=5),
                backoff_coefficient=2.0,
                non_retryable_error_types=["IntegrityError", "CorrectionNotConfirmed"],
            ),
        }

        invoices_synced = await workflow.execute_activity(
            sync_upstream_invoices,
            SyncInvoicesInput(start_date=input.start_date, end_date=input.end_date),
            **api_activity_options,
        )

        fetch = await workflow.execute_activity(
            fetch_pending_transactions,
            FetchTransactionsInput(
                run_id=run_id,
                start_date=input.start_date,
                end_date=input.end_date,
                invoiced_status=input.invoiced_status,
                invoice_ids=input.invoice_ids,
            ),
            **api_activity_options,
        )
        if not fetch.is_complete:
            workflow.logger.warning(
                f"Fetch {run_id} is partial: failed={fetch.errored_combinations} "
                f"capped={fetch.capped_combinations}"
            )

        stage_input = StageInput(run_id=run_id, dry_run=input.dry_run)
        attribution = await workflow.execute_activity(attribute_transactions, stage_input, **db_activity_options)
        linking = await workflow.execute_activity(link_transactions, stage_input, **db_activity_options)
        markup = await workflow.execute_activity(apply_markups, stage_input, **db_activity_options)

        workflow.logger.info(
            f"Billing sync {run_id} complete: {fetch.unique_count} fetched, "
            f"{attribution.get('attributed', 0)} attributed, {linking.get('linked', 0)} linked, "
            f"{markup.get('applied', 0)} marked up"
        )

        return {
            "run_id": run_id,
            "invoices_synced": invoices_synced,
            "fetch_complete": fetch.is_complete,
            "fetch": {
                "unique_count": fetch.unique_count,
                "inserted": fetch.inserted,
                "updated": fetch.updated,
                "errored_combinations": fetch.errored_combinations,
                "capped_combinations": fetch.capped_combinations,
            },
            "attribution": attribution,
            "linking": linking,
            "markup": markup,
        }
