"""Sync coverage endpoints.

Answers "did the last fetch get everything?" without reading logs.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from api.deps import get_db_path
from fetch_orchestrator import get_fetch_run, get_recent_fetch_runs
from ledger.db import count_open_exceptions, count_transactions


router = APIRouter()


class SyncHealthResponse(BaseModel):
    """Latest fetch runs and ledger totals."""
    healthy: bool
    latest_run: Optional[Dict[str, Any]]
    recent_runs: List[Dict[str, Any]]
    transactions: Dict[str, int]
    open_exceptions: Dict[str, int]


@router.get("/sync-health", response_model=SyncHealthResponse)
async def sync_health(
    limit: int = Query(10, ge=1, le=100),
    db_path: Path = Depends(get_db_path),
) -> SyncHealthResponse:
    """Recent fetch runs, their coverage and open exception counts.

    healthy is True when the latest run is complete and nothing is parked
    as unattributable.
    """
    runs = get_recent_fetch_runs(limit=limit, db_path=db_path)
    latest = runs[0] if runs else None
    open_exceptions = count_open_exceptions(db_path)
    total = count_transactions(db_path)
    unattributed = count_transactions(db_path, attributed=False)

    return SyncHealthResponse(
        healthy=bool(latest and latest["is_complete"]) and open_exceptions.get("unattributable", 0) == 0,
        latest_run=latest,
        recent_runs=runs,
        transactions={"total": total, "unattributed": unattributed},
        open_exceptions=open_exceptions,
    )


@router.get("/sync-health/runs/{run_id}")
async def get_run(run_id: str, db_path: Path = Depends(get_db_path)) -> Dict[str, Any]:
    """One fetch run with per-slice detail."""
    run = get_fetch_run(run_id, db_path=db_path)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Fetch run {run_id} not found")
    return run
