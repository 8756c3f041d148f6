"""Run a billing sync.

Runs the pipeline in-process against the configured ledger, or starts a
BillingSyncWorkflow on Temporal with --workflow.

Examples:
    python scripts/run_sync.py --start 2025-11-01 --end 2025-11-30
    python scripts/run_sync.py --start 2025-11-01 --end 2025-11-30 --workflow
"""

import argparse
import asyncio
import json
import sys
from datetime import date
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import get_settings
from core.observability import configure_logging, get_logger
from fetch_orchestrator import FetchScope
from pipeline import new_run_id, run_pipeline


logger = get_logger(__name__)


async def start_workflow(args: argparse.Namespace, run_id: str) -> dict:
    """Start BillingSyncWorkflow and wait for its result."""
    from temporal_client import get_temporal_client
    from workflows.billing_sync_workflow import BillingSyncInput, BillingSyncWorkflow, TASK_QUEUE

    client = await get_temporal_client()
    logger.info(f"Connected to Temporal: {client.namespace}")

    handle = await client.start_workflow(
        BillingSyncWorkflow.run,
        BillingSyncInput(
            start_date=args.start.isoformat() if args.start else None,
            end_date=args.end.isoformat() if args.end else None,
            invoiced_status=None if args.all_statuses else False,
            invoice_ids=args.invoice_ids or [],
            run_id=run_id,
        ),
        task_queue=TASK_QUEUE,
        id=run_id,
    )
    logger.info(f"Workflow started: {handle.id}")
    return await handle.result()


async def run_local(args: argparse.Namespace, run_id: str) -> dict:
    scope = FetchScope(
        start_date=args.start,
        end_date=args.end,
        invoiced_status=None if args.all_statuses else False,
    )
    result = await run_pipeline(scope, settings=get_settings(), run_id=run_id, sync_invoices=not args.skip_invoices)
    return result.to_dict()


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Run a billing sync")
    parser.add_argument("--start", type=date.fromisoformat, default=None, help="Charge date from (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, default=None, help="Charge date to (YYYY-MM-DD)")
    parser.add_argument(
        "--all-statuses",
        action="store_true",
        help="Fetch invoiced transactions too (default: pending only)"
    )
    parser.add_argument("--invoice-ids", type=int, nargs="*", help="Also pull these upstream invoices' transactions")
    parser.add_argument("--skip-invoices", action="store_true", help="Do not refresh the upstream invoice list")
    parser.add_argument("--workflow", action="store_true", help="Start the Temporal workflow instead of running locally")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    args = parser.parse_args()

    configure_logging(json_format=args.json_logs)
    run_id = new_run_id()

    try:
        if args.workflow:
            result = asyncio.run(start_workflow(args, run_id))
        else:
            result = asyncio.run(run_local(args, run_id))
    except Exception as e:
        logger.error(f"Sync {run_id} failed: {e}", exc_info=True)
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))
    if not result.get("fetch_complete"):
        logger.warning("Fetch was partial; see errored/capped combinations above")
        sys.exit(2)


if __name__ == "__main__":
    main()
