"""Worker for the billing sync pipeline.

Connects to Temporal, polls the billing-sync task queue and executes the
BillingSyncWorkflow and its activities.

Run with --json-logs to emit structured log lines.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporal_client import get_temporal_client
from workflows.billing_sync_workflow import BillingSyncWorkflow, TASK_QUEUE
from activities import ALL_ACTIVITIES
from core.observability import configure_logging, get_logger

logger = get_logger(__name__)


async def run_worker(task_queue: str = TASK_QUEUE, max_concurrent_activities: int = 4):
    """Start a worker listening on the task queue.

    Args:
        task_queue: Queue to poll
        max_concurrent_activities: Activity slots for this worker

    Raises:
        Exception: If connection to Temporal fails
    """
    client = await get_temporal_client()
    logger.info(f"Connected to Temporal: {client.namespace}")

    worker = Worker(
        client,
        task_queue=task_queue,
        workflows=[BillingSyncWorkflow],
        activities=ALL_ACTIVITIES,
        max_concurrent_activities=max_concurrent_activities,
    )
    logger.info(f"Worker created for queue '{task_queue}' with {len(ALL_ACTIVITIES)} activities")

    try:
        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="Billing Sync Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=TASK_QUEUE,
        help=f"Task queue to poll (default: {TASK_QUEUE})"
    )
    parser.add_argument(
        "--max-activities",
        type=int,
        default=4,
        help="Maximum concurrent activities (default: 4)"
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines"
    )

    args = parser.parse_args()
    configure_logging(level=logging.INFO, json_format=args.json_logs)
    asyncio.run(run_worker(task_queue=args.queue, max_concurrent_activities=args.max_activities))


if __name__ == "__main__":
    main()
