"""Exception bucket endpoints."""

from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from api.deps import get_db_path
from core.errors import EXCEPTION_BUCKETS
from ledger.db import list_exceptions
from ledger.models import BillingException


router = APIRouter()


@router.get("", response_model=List[BillingException])
async def get_exceptions(
    bucket: Optional[str] = Query(None, description="unattributable, unlinkable or no_markup_rule"),
    include_resolved: bool = False,
    limit: int = Query(500, ge=1, le=5000),
    db_path: Path = Depends(get_db_path),
) -> List[BillingException]:
    """List transactions parked in exception buckets, newest first."""
    if bucket is not None and bucket not in EXCEPTION_BUCKETS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid bucket. Valid buckets: {list(EXCEPTION_BUCKETS)}"
        )
    return list_exceptions(bucket=bucket, include_resolved=include_resolved, limit=limit, db_path=db_path)
