"""
Markup Engine

Applies markup rules to attributed ledger transactions:
1. Skip house-account transactions (never billed to a client)
2. Build a MarkupContext per transaction (billing category from fee type,
   ship option from the shipment join)
3. Snapshot the rules of every client in the batch with one query
4. Write billed amounts; park misses in the no_markup_rule bucket
"""

import time
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Sequence

from connectors.billing_base import ReferenceType
from core.audit import AuditEventType, AuditLogger
from core.config import DEFAULT_DB_PATH, AttributionSettings
from core.observability import get_logger, get_metrics, with_correlation
from ledger.db import (
    get_shipments,
    list_transactions,
    record_exceptions,
    resolve_exceptions,
    set_markup_status,
    write_markup_results,
)
from ledger.models import LedgerTransaction, MarkupStatus

from .db import get_rules_snapshot
from .models import (
    BillingCategory,
    MarkupContext,
    MarkupItem,
    MarkupResult,
    MarkupRunResult,
    billing_category_for,
)
from .rules import calculate_batch_markups, calculate_markup, find_matching_rule

logger = get_logger(__name__)


class MarkupEngine:
    """
    Computes billed amounts for ledger transactions.

    Transactions in `pending` or `needs_review` are (re)considered on every
    run, so adding a missing rule clears the review queue on the next run.

    Usage:
        engine = MarkupEngine(settings.attribution, db_path=settings.db_path)
        result = engine.apply_to_ledger()
    """

    def __init__(
        self,
        settings: Optional[AttributionSettings] = None,
        db_path: Path = DEFAULT_DB_PATH,
        audit: Optional[AuditLogger] = None,
        batch_size: int = 500,
    ):
        """
        Args:
            settings: Provides the house accounts that are never marked up
            db_path: Ledger database
            audit: Optional audit logger
            batch_size: Transactions per rule snapshot
        """
        self.settings = settings or AttributionSettings()
        self.db_path = db_path
        self.audit = audit
        self.batch_size = batch_size
        self.metrics = get_metrics()

    def build_items(self, transactions: Sequence[LedgerTransaction]) -> List[MarkupItem]:
        """Build markup contexts for attributed transactions."""
        shipment_ids = [
            tx.reference_id for tx in transactions
            if ReferenceType.parse(tx.reference_type) == ReferenceType.SHIPMENT
        ]
        shipments = get_shipments(shipment_ids, self.db_path)

        items = []
        for tx in transactions:
            shipment = None
            if ReferenceType.parse(tx.reference_type) == ReferenceType.SHIPMENT:
                shipment = shipments.get(tx.reference_id)
            items.append(MarkupItem(
                transaction_id=tx.transaction_id,
                base_amount=tx.amount,
                context=MarkupContext(
                    client_id=tx.client_id,
                    billing_category=billing_category_for(tx.fee_type),
                    fee_type=tx.fee_type,
                    ship_option_id=shipment.ship_option_id if shipment else None,
                    transaction_date=tx.charge_date,
                    weight_oz=shipment.weight_oz if shipment else None,
                    state=shipment.destination_state if shipment else None,
                    country=shipment.destination_country if shipment else None,
                ),
            ))
        return items

    def apply_to_ledger(
        self,
        run_id: Optional[str] = None,
        dry_run: bool = False,
        transaction_ids: Optional[Sequence[str]] = None,
    ) -> MarkupRunResult:
        """
        Apply markups to every attributed transaction awaiting one.

        Args:
            run_id: Pipeline run id for correlation and exception rows
            dry_run: Compute and report without writing
            transaction_ids: Restrict to these transactions

        Returns:
            MarkupRunResult with totals and the unmatched transactions
        """
        started = time.perf_counter()
        result = MarkupRunResult(run_id=run_id, dry_run=dry_run)

        with with_correlation(run_id=run_id, stage="markup"):
            pending = list_transactions(
                self.db_path,
                attributed=True,
                markup_statuses=[MarkupStatus.PENDING.value, MarkupStatus.NEEDS_REVIEW.value],
                transaction_ids=transaction_ids,
            )
            result.examined = len(pending)

            house = self.settings.house_client_ids
            house_ids = [tx.transaction_id for tx in pending if tx.client_id in house]
            billable = [tx for tx in pending if tx.client_id not in house]
            result.skipped = len(house_ids)
            if house_ids and not dry_run:
                set_markup_status(house_ids, MarkupStatus.SKIPPED, self.db_path)

            for start in range(0, len(billable), self.batch_size):
                self._apply_batch(billable[start:start + self.batch_size], result)

            if self.audit and not dry_run:
                if result.applied:
                    self.audit.log_info(
                        AuditEventType.MARKUP_APPLIED,
                        f"Applied markups to {result.applied} transactions",
                        run_id=run_id,
                        details=result.to_dict(),
                    )
                if result.unmatched:
                    self.audit.log_warning(
                        AuditEventType.MARKUP_RULE_MISSING,
                        f"{len(result.unmatched)} transactions have no matching markup rule",
                        run_id=run_id,
                        details={"transaction_ids": [e.transaction_id for e in result.unmatched[:100]]},
                    )

        self.metrics.record_stage_time("markup", (time.perf_counter() - started) * 1000)
        logger.info(
            f"Markup{' (dry run)' if dry_run else ''}: applied {result.applied}, "
            f"needs review {result.needs_review}, skipped {result.skipped}",
            extra_fields=result.to_dict(),
        )
        return result

    def _apply_batch(self, transactions: Sequence[LedgerTransaction], result: MarkupRunResult) -> None:
        items = self.build_items(transactions)
        snapshot = get_rules_snapshot([item.context.client_id for item in items], self.db_path)
        batch = calculate_batch_markups(items, snapshot)

        for markup in batch.results.values():
            result.total_base += markup.base_amount
            result.total_billed += markup.billed_amount
            result.by_rule[markup.rule_id] = result.by_rule.get(markup.rule_id, 0) + 1
        result.applied += len(batch.results)
        result.needs_review += len(batch.unmatched)
        result.unmatched.extend(batch.unmatched)

        if result.dry_run:
            return

        write_markup_results(
            [
                (tx_id, m.billed_amount, m.markup_amount, m.markup_percentage, m.rule_id)
                for tx_id, m in batch.results.items()
            ],
            self.db_path,
        )
        resolve_exceptions("no_markup_rule", list(batch.results), self.db_path)

        unmatched_ids = [e.transaction_id for e in batch.unmatched]
        set_markup_status(unmatched_ids, MarkupStatus.NEEDS_REVIEW, self.db_path)
        record_exceptions(batch.unmatched, run_id=result.run_id, db_path=self.db_path)


def preview_markup(
    client_id: str,
    fee_type: str,
    base_amount: Decimal,
    ship_option_id: Optional[str] = None,
    transaction_date: Optional[date] = None,
    billing_category: Optional[BillingCategory] = None,
    weight_oz: Optional[float] = None,
    state: Optional[str] = None,
    country: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> MarkupResult:
    """
    Which rule and amount a hypothetical transaction would get.

    Raises:
        NoMarkupRuleMatch: No rule matches
    """
    context = MarkupContext(
        client_id=client_id,
        billing_category=billing_category or billing_category_for(fee_type),
        fee_type=fee_type,
        ship_option_id=ship_option_id,
        transaction_date=transaction_date or date.today(),
        weight_oz=weight_oz,
        state=state,
        country=country,
    )
    snapshot = get_rules_snapshot([client_id], db_path)
    rule = find_matching_rule(snapshot.for_client(client_id), context)
    return calculate_markup(base_amount, rule)
