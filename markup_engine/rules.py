"""
Markup Rules

Rule matching and markup arithmetic. Everything here is pure: rules come
in as a list or a RuleSnapshot, nothing is read from the database.

Rule selection is "most specific wins". Specificity is compared as the tuple

    (client-specific, has category, has fee type, has ship option,
     number of weight/state/country conditions)

so any client rule beats every global rule, and within a client a
category+fee type+ship option rule beats category+fee type, which beats
category alone, which beats the client default. Among rules with the same
selectors, one narrowed by more destination or weight conditions wins.
Remaining ties go to the higher priority, the most recently created rule,
the highest id, and finally the rule name and value so the choice never
depends on input order.
"""

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence, Tuple

from core.errors import NoMarkupRuleMatch

from .models import (
    MarkupBatchResult,
    MarkupContext,
    MarkupItem,
    MarkupResult,
    MarkupRule,
    MarkupType,
    RuleSnapshot,
)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def round2(value: Decimal) -> Decimal:
    """Round half-up to cents."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# =============================================================================
# Matching
# =============================================================================

def rule_matches_context(rule: MarkupRule, context: MarkupContext) -> bool:
    """Check whether a rule applies to a transaction context."""
    if not rule.is_active:
        return False
    if not rule.is_effective(context.transaction_date or date.today()):
        return False

    # Client: global or the context's client
    if rule.client_id is not None and rule.client_id != context.client_id:
        return False

    # Every field the rule names must equal the context
    if rule.billing_category is not None and rule.billing_category != context.billing_category:
        return False
    if rule.fee_type is not None and rule.fee_type != context.fee_type:
        return False
    if rule.ship_option_id is not None and rule.ship_option_id != context.ship_option_id:
        return False

    # A weight bracket needs a known weight: min inclusive, max exclusive
    if rule.has_weight_bracket:
        if context.weight_oz is None:
            return False
        if rule.weight_min_oz is not None and context.weight_oz < rule.weight_min_oz:
            return False
        if rule.weight_max_oz is not None and context.weight_oz >= rule.weight_max_oz:
            return False
    if rule.states and context.state not in rule.states:
        return False
    if rule.countries and context.country not in rule.countries:
        return False

    return True


def rule_specificity(rule: MarkupRule) -> Tuple[int, int, int, int, int]:
    return (
        int(rule.client_id is not None),
        int(rule.billing_category is not None),
        int(rule.fee_type is not None),
        int(rule.ship_option_id is not None),
        rule.condition_count(),
    )


def _rank(rule: MarkupRule) -> tuple:
    return (
        rule_specificity(rule),
        rule.priority,
        rule.created_at or datetime.min,
        rule.id or 0,
        rule.name,
        rule.markup_type.value,
        rule.markup_value,
    )


def find_matching_rule(rules: Sequence[MarkupRule], context: MarkupContext) -> MarkupRule:
    """
    Find the single rule that applies to a context.

    The result does not depend on the order of `rules`.

    Raises:
        NoMarkupRuleMatch: No rule (global rules included) matches
    """
    matching = [r for r in rules if rule_matches_context(r, context)]
    if not matching:
        raise NoMarkupRuleMatch(
            f"No markup rule for client {context.client_id} "
            f"({context.billing_category.value} / {context.fee_type})",
            details={
                "client_id": context.client_id,
                "billing_category": context.billing_category.value,
                "fee_type": context.fee_type,
                "ship_option_id": context.ship_option_id,
                "weight_oz": context.weight_oz,
                "state": context.state,
                "country": context.country,
                "transaction_date": context.transaction_date.isoformat() if context.transaction_date else None,
            },
        )
    return max(matching, key=_rank)


# =============================================================================
# Arithmetic
# =============================================================================

def calculate_markup(base_amount: Decimal, rule: MarkupRule) -> MarkupResult:
    """
    Apply one rule to a base amount.

    percentage: markup = round2(base * value / 100)
    fixed:      markup = value, whatever the base (0 included)

    billed = round2(base + markup). The effective percentage is
    markup / base * 100 rounded to cents, and 0 when the base is 0.
    """
    base = Decimal(str(base_amount))

    if rule.markup_type == MarkupType.PERCENTAGE:
        markup = round2(base * rule.markup_value / HUNDRED)
    else:
        markup = round2(rule.markup_value)

    billed = round2(base + markup)
    percentage = round2(markup / base * HUNDRED) if base != 0 else Decimal("0.00")

    return MarkupResult(
        base_amount=base,
        markup_amount=markup,
        billed_amount=billed,
        markup_percentage=percentage,
        rule_id=rule.id,
        rule_name=rule.name,
    )


def calculate_batch_markups(items: Sequence[MarkupItem], snapshot: RuleSnapshot) -> MarkupBatchResult:
    """
    Calculate markups for many transactions against one rule snapshot.

    Each client's rule list is filtered out of the snapshot once and reused
    for all of that client's transactions.

    Returns:
        MarkupBatchResult with results by transaction id and one
        NoMarkupRuleMatch per unmatched transaction
    """
    batch = MarkupBatchResult()
    client_rules = {}

    for item in items:
        client_id = item.context.client_id
        if client_id not in client_rules:
            client_rules[client_id] = snapshot.for_client(client_id)
        try:
            rule = find_matching_rule(client_rules[client_id], item.context)
        except NoMarkupRuleMatch as e:
            e.transaction_id = item.transaction_id
            batch.unmatched.append(e)
            continue
        batch.results[item.transaction_id] = calculate_markup(item.base_amount, rule)

    return batch


def describe_rules(rules: Sequence[MarkupRule], context: Optional[MarkupContext] = None) -> List[dict]:
    """Rules ordered most specific first, flagged with whether they match a context."""
    ordered = sorted(rules, key=_rank, reverse=True)
    described = []
    for rule in ordered:
        data = rule.to_dict()
        data["specificity"] = list(rule_specificity(rule))
        if context is not None:
            data["matches"] = rule_matches_context(rule, context)
        described.append(data)
    return described
