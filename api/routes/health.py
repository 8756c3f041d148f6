"""Health check endpoints."""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.deps import get_db_path
from core import __version__
from ledger.db import get_connection


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(db_path: Path = Depends(get_db_path)) -> HealthResponse:
    """Health check endpoint."""
    try:
        conn = get_connection(db_path)
        try:
            conn.execute("SELECT 1 FROM transactions LIMIT 1").fetchall()
        finally:
            conn.close()
        ledger = "up"
    except sqlite3.Error:
        ledger = "down"

    return HealthResponse(
        status="healthy" if ledger == "up" else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        version=__version__,
        services={
            "api": "up",
            "ledger": ledger,
        }
    )


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """Readiness check for Kubernetes."""
    return {"status": "ready"}
