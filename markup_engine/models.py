"""
Markup Engine Models

Defines data structures for:
- Markup rules (global and client-specific)
- Transaction context used for rule matching
- Markup results and batch outcomes
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from core.errors import NoMarkupRuleMatch


class MarkupType(str, Enum):
    """How a rule's value is applied"""
    PERCENTAGE = "percentage"  # value is a percent of the base amount
    FIXED = "fixed"            # value is a flat amount


class BillingCategory(str, Enum):
    """Invoice section a fee type is billed under"""
    SHIPMENTS = "shipments"
    SHIPMENT_FEES = "shipment_fees"
    STORAGE = "storage"
    CREDITS = "credits"
    RETURNS = "returns"
    RECEIVING = "receiving"


class RuleChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DEACTIVATED = "deactivated"


# =============================================================================
# Fee Type Categorization
# =============================================================================

FEE_TYPE_TO_CATEGORY: Dict[str, BillingCategory] = {
    # Shipment fees
    "Shipping": BillingCategory.SHIPMENTS,
    "Per Pick Fee": BillingCategory.SHIPMENT_FEES,
    "B2B - Label Fee": BillingCategory.SHIPMENT_FEES,
    "B2B - Each Pick Fee": BillingCategory.SHIPMENT_FEES,
    "B2B - Case Pick Fee": BillingCategory.SHIPMENT_FEES,
    "B2B - Order Fee": BillingCategory.SHIPMENT_FEES,
    "B2B - Supplies": BillingCategory.SHIPMENT_FEES,
    "B2B - Pallet Material Charge": BillingCategory.SHIPMENT_FEES,
    "B2B - Pallet Pack Fee": BillingCategory.SHIPMENT_FEES,
    "B2B - ShipBob Freight Fee": BillingCategory.SHIPMENT_FEES,
    "Address Correction": BillingCategory.SHIPMENT_FEES,
    "Inventory Placement Program Fee": BillingCategory.SHIPMENT_FEES,
    "Kitting Fee": BillingCategory.SHIPMENT_FEES,
    "VAS - Paid Requests": BillingCategory.SHIPMENT_FEES,
    "Others": BillingCategory.SHIPMENT_FEES,

    # Storage
    "Warehousing Fee": BillingCategory.STORAGE,
    "URO Storage Fee": BillingCategory.STORAGE,

    # Returns
    "Return to sender - Processing Fees": BillingCategory.RETURNS,
    "Return Processed by Operations Fee": BillingCategory.RETURNS,
    "Return Label": BillingCategory.RETURNS,

    # Receiving
    "WRO Receiving Fee": BillingCategory.RECEIVING,
    "WRO Label Fee": BillingCategory.RECEIVING,

    # Credits
    "Credit": BillingCategory.CREDITS,
}


def billing_category_for(fee_type: Optional[str]) -> BillingCategory:
    """Billing category for a fee type (unknown fee types bill as shipment fees)."""
    return FEE_TYPE_TO_CATEGORY.get((fee_type or "").strip(), BillingCategory.SHIPMENT_FEES)


def _code(value: Optional[str]) -> Optional[str]:
    # State and country codes compare case-insensitively
    if not value:
        return None
    return value.strip().upper() or None


def _codes(values: Optional[List[str]]) -> List[str]:
    return sorted({c for c in (_code(v) for v in values or ()) if c})


# =============================================================================
# Rule Models
# =============================================================================

@dataclass
class MarkupRule:
    """
    A single markup rule.

    Attributes:
        id: Database ID
        client_id: Client this rule applies to (None = global)
        billing_category: Only transactions in this category (None = any)
        fee_type: Only this fee type (None = any)
        ship_option_id: Only shipments with this ship option (None = any)
        weight_min_oz / weight_max_oz: Shipment weight bracket, min inclusive,
            max exclusive (None = unbounded)
        states / countries: Destination must be one of these (empty = any)
        priority: Breaks ties between equally specific rules, higher first
        markup_type: percentage or fixed
        markup_value: Percent or flat amount
        effective_from / effective_to: Inclusive validity window (None = open)
        is_active: Inactive rules never match
    """
    name: str
    markup_type: MarkupType
    markup_value: Decimal
    client_id: Optional[str] = None
    billing_category: Optional[BillingCategory] = None
    fee_type: Optional[str] = None
    ship_option_id: Optional[str] = None
    weight_min_oz: Optional[float] = None
    weight_max_oz: Optional[float] = None
    states: List[str] = field(default_factory=list)
    countries: List[str] = field(default_factory=list)
    priority: int = 0
    description: Optional[str] = None
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        self.markup_type = MarkupType(self.markup_type)
        self.markup_value = Decimal(str(self.markup_value))
        if self.billing_category:
            self.billing_category = BillingCategory(self.billing_category)
        # Empty strings mean "any"
        self.client_id = self.client_id or None
        self.fee_type = self.fee_type or None
        self.ship_option_id = self.ship_option_id or None
        self.states = _codes(self.states)
        self.countries = _codes(self.countries)
        self.priority = int(self.priority or 0)
        if (self.weight_min_oz is not None and self.weight_max_oz is not None
                and self.weight_min_oz >= self.weight_max_oz):
            raise ValueError(f"Empty weight bracket [{self.weight_min_oz}, {self.weight_max_oz})")

    @property
    def is_global(self) -> bool:
        return self.client_id is None

    @property
    def has_weight_bracket(self) -> bool:
        return self.weight_min_oz is not None or self.weight_max_oz is not None

    def condition_count(self) -> int:
        """Destination and weight conditions set on the rule."""
        return int(self.has_weight_bracket) + int(bool(self.states)) + int(bool(self.countries))

    def is_effective(self, on: date) -> bool:
        if self.effective_from and on < self.effective_from:
            return False
        if self.effective_to and on > self.effective_to:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "client_id": self.client_id,
            "billing_category": self.billing_category.value if self.billing_category else None,
            "fee_type": self.fee_type,
            "ship_option_id": self.ship_option_id,
            "weight_min_oz": self.weight_min_oz,
            "weight_max_oz": self.weight_max_oz,
            "states": list(self.states),
            "countries": list(self.countries),
            "priority": self.priority,
            "markup_type": self.markup_type.value,
            "markup_value": str(self.markup_value),
            "description": self.description,
            "effective_from": self.effective_from.isoformat() if self.effective_from else None,
            "effective_to": self.effective_to.isoformat() if self.effective_to else None,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class RuleSnapshot:
    """Rules loaded once at the start of a batch, global rules included."""
    rules: List[MarkupRule] = field(default_factory=list)
    taken_at: datetime = field(default_factory=datetime.utcnow)

    def for_client(self, client_id: Optional[str]) -> List[MarkupRule]:
        return [r for r in self.rules if r.client_id is None or r.client_id == client_id]


# =============================================================================
# Context and Result Models
# =============================================================================

@dataclass
class MarkupContext:
    """What a rule is matched against."""
    client_id: str
    billing_category: BillingCategory
    fee_type: str
    ship_option_id: Optional[str] = None
    transaction_date: Optional[date] = None
    weight_oz: Optional[float] = None
    state: Optional[str] = None
    country: Optional[str] = None

    def __post_init__(self):
        self.billing_category = BillingCategory(self.billing_category)
        self.state = _code(self.state)
        self.country = _code(self.country)


@dataclass
class MarkupItem:
    """One transaction queued for batch markup."""
    transaction_id: str
    base_amount: Decimal
    context: MarkupContext


@dataclass
class MarkupResult:
    """Markup computed for one base amount."""
    base_amount: Decimal
    markup_amount: Decimal
    billed_amount: Decimal
    markup_percentage: Decimal
    rule_id: Optional[int] = None
    rule_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_amount": str(self.base_amount),
            "markup_amount": str(self.markup_amount),
            "billed_amount": str(self.billed_amount),
            "markup_percentage": str(self.markup_percentage),
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
        }


@dataclass
class MarkupBatchResult:
    """Results of calculate_batch_markups: matched ones plus the misses."""
    results: Dict[str, MarkupResult] = field(default_factory=dict)
    unmatched: List[NoMarkupRuleMatch] = field(default_factory=list)


@dataclass
class MarkupRunResult:
    """Outcome of applying markups to the ledger."""
    run_id: Optional[str] = None
    dry_run: bool = False
    examined: int = 0
    applied: int = 0
    needs_review: int = 0
    skipped: int = 0
    total_base: Decimal = Decimal("0")
    total_billed: Decimal = Decimal("0")
    by_rule: Dict[int, int] = field(default_factory=dict)
    unmatched: List[NoMarkupRuleMatch] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "examined": self.examined,
            "applied": self.applied,
            "needs_review": self.needs_review,
            "skipped": self.skipped,
            "total_base": str(self.total_base),
            "total_billed": str(self.total_billed),
            "by_rule": {str(k): v for k, v in self.by_rule.items()},
        }
