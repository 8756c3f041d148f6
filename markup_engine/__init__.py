"""
Markup Engine Package

Rule-based markup computation for attributed transactions.

Features:
- Global and client-specific rules (most specific wins, deterministic ties)
- Percentage and fixed markups with half-up cent rounding
- One rule snapshot per batch
- Rule change history

Usage:
    from markup_engine import MarkupEngine, add_markup_rule, MarkupRule, MarkupType

    add_markup_rule(MarkupRule(name="Standard", markup_type=MarkupType.PERCENTAGE, markup_value="14"))
    result = MarkupEngine(settings.attribution).apply_to_ledger()
"""

from .models import (
    # Enums
    MarkupType,
    BillingCategory,
    RuleChangeType,

    # Data classes
    MarkupRule,
    RuleSnapshot,
    MarkupContext,
    MarkupItem,
    MarkupResult,
    MarkupBatchResult,
    MarkupRunResult,

    # Helpers
    FEE_TYPE_TO_CATEGORY,
    billing_category_for,
)

from .rules import (
    round2,
    rule_matches_context,
    rule_specificity,
    find_matching_rule,
    calculate_markup,
    calculate_batch_markups,
    describe_rules,
)

from .db import (
    add_markup_rule,
    get_markup_rule,
    update_markup_rule,
    deactivate_markup_rule,
    list_markup_rules,
    get_rule_history,
    get_rules_snapshot,
)

from .engine import MarkupEngine, preview_markup

__all__ = [
    # Enums
    "MarkupType",
    "BillingCategory",
    "RuleChangeType",

    # Data classes
    "MarkupRule",
    "RuleSnapshot",
    "MarkupContext",
    "MarkupItem",
    "MarkupResult",
    "MarkupBatchResult",
    "MarkupRunResult",
    "FEE_TYPE_TO_CATEGORY",
    "billing_category_for",

    # Rules
    "round2",
    "rule_matches_context",
    "rule_specificity",
    "find_matching_rule",
    "calculate_markup",
    "calculate_batch_markups",
    "describe_rules",

    # Database
    "add_markup_rule",
    "get_markup_rule",
    "update_markup_rule",
    "deactivate_markup_rule",
    "list_markup_rules",
    "get_rule_history",
    "get_rules_snapshot",

    # Engine
    "MarkupEngine",
    "preview_markup",
]
