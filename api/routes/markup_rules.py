"""Markup rule endpoints.

Read-only views of the rule set, plus a preview of which rule and amount
a hypothetical transaction would get.
"""

from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.deps import get_db_path
from core.errors import NoMarkupRuleMatch
from markup_engine import (
    BillingCategory,
    billing_category_for,
    describe_rules,
    get_markup_rule,
    get_rule_history,
    list_markup_rules,
    preview_markup,
)


router = APIRouter()


class MarkupPreviewRequest(BaseModel):
    """A hypothetical transaction to price."""
    client_id: str = Field(..., description="Owning client")
    fee_type: str = Field(..., description="Upstream fee type, e.g. 'Shipping'")
    base_amount: Decimal = Field(..., description="Upstream cost")
    ship_option_id: Optional[str] = None
    transaction_date: Optional[date] = None
    billing_category: Optional[BillingCategory] = Field(
        None, description="Defaults to the fee type's category"
    )
    weight_oz: Optional[float] = Field(None, description="Shipment weight in ounces")
    state: Optional[str] = Field(None, description="Destination state code")
    country: Optional[str] = Field(None, description="Destination country code")


class MarkupPreviewResponse(BaseModel):
    """Rule and amounts the transaction would get."""
    client_id: str
    fee_type: str
    billing_category: str
    rule_id: Optional[int]
    rule_name: Optional[str]
    base_amount: Decimal
    markup_amount: Decimal
    billed_amount: Decimal
    markup_percentage: Decimal


@router.get("")
async def list_rules(
    client_id: Optional[str] = Query(None, description="Client whose rules to list (global rules only when omitted)"),
    include_inactive: bool = False,
    db_path: Path = Depends(get_db_path),
) -> List[Dict[str, Any]]:
    """Rules that could apply to a client, most specific first."""
    rules = list_markup_rules(client_id=client_id, active_only=not include_inactive, db_path=db_path)
    return describe_rules(rules)


@router.get("/{rule_id}/history")
async def rule_history(rule_id: int, db_path: Path = Depends(get_db_path)) -> List[Dict[str, Any]]:
    """Change history of one rule, newest first."""
    if get_markup_rule(rule_id, db_path) is None:
        raise HTTPException(status_code=404, detail=f"Markup rule {rule_id} not found")
    return get_rule_history(rule_id, db_path)


@router.post("/preview", response_model=MarkupPreviewResponse)
async def preview(request: MarkupPreviewRequest, db_path: Path = Depends(get_db_path)) -> MarkupPreviewResponse:
    """Price a hypothetical transaction without touching the ledger."""
    category = request.billing_category or billing_category_for(request.fee_type)
    try:
        result = preview_markup(
            client_id=request.client_id,
            fee_type=request.fee_type,
            base_amount=request.base_amount,
            ship_option_id=request.ship_option_id,
            transaction_date=request.transaction_date,
            billing_category=category,
            weight_oz=request.weight_oz,
            state=request.state,
            country=request.country,
            db_path=db_path,
        )
    except NoMarkupRuleMatch as e:
        raise HTTPException(status_code=404, detail={"message": e.message, **e.details})

    return MarkupPreviewResponse(
        client_id=request.client_id,
        fee_type=request.fee_type,
        billing_category=category.value,
        rule_id=result.rule_id,
        rule_name=result.rule_name,
        base_amount=result.base_amount,
        markup_amount=result.markup_amount,
        billed_amount=result.billed_amount,
        markup_percentage=result.markup_percentage,
    )
