"""Workflow definitions module."""

from workflows.billing_sync_workflow import BillingSyncWorkflow, BillingSyncInput, TASK_QUEUE

__all__ = ["BillingSyncWorkflow", "BillingSyncInput", "TASK_QUEUE"]
