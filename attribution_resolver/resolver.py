"""Attribution Resolver.

Bulk upstream listings omit the merchant for several reference types, and
the owning record may not have synced yet when a transaction is first
fetched. This module assigns an owning client through a single prioritized
chain (first match wins):

1. Shipment reference      -> shipments.shipment_id
2. Return reference        -> returns.return_id
3. WRO or URO reference    -> receiving_orders.receiving_order_id
4. Storage reference       -> inventory id parsed from "{facility}-{inventory}-{location}"
                              joined against product variants
   "Credit" fee on a Default reference -> shipments, then returns, then
                              receiving_orders, by reference id
5. System-level fee type   -> fixed house account
6. Otherwise the transaction stays unattributed and is reported with a reason.

The same chain serves the scheduled pipeline and the manual repair script.
Writes only touch rows whose client_id is still NULL, so re-running is a
no-op for attributed rows. Overwriting an existing owner is only possible
through correct_attributions() with explicit confirmation.
"""

import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from connectors.billing_base import ReferenceType
from core.audit import AuditEventType, AuditLogger
from core.config import DEFAULT_DB_PATH, AttributionSettings
from core.errors import CorrectionNotConfirmed, UnattributableTransaction
from core.observability import get_logger, get_metrics, with_correlation
from ledger.db import (
    assign_client_ids,
    get_inventory_owner_lookup,
    list_transactions,
    lookup_owner_clients,
    overwrite_client_id,
    record_exceptions,
    resolve_exceptions,
)
from ledger.models import AttributionMethod, LedgerTransaction

from .models import (
    CREDIT_FALLBACK_METHODS,
    JOIN_METHODS,
    Attribution,
    AttributionResult,
    CorrectionCandidate,
    CorrectionResult,
    OwnerLookups,
    UnresolvedReason,
    is_credit_reference,
    parse_storage_reference,
)

logger = get_logger(__name__)


class AttributionResolver:
    """Resolves owning clients for ledger transactions.

    Usage:
        resolver = AttributionResolver(settings.attribution, db_path=settings.db_path)
        result = resolver.run()
        print(result.attributed, result.by_reason)
    """

    def __init__(
        self,
        settings: Optional[AttributionSettings] = None,
        db_path: Path = DEFAULT_DB_PATH,
        audit: Optional[AuditLogger] = None,
    ):
        self.settings = settings or AttributionSettings()
        self.db_path = db_path
        self.audit = audit
        self.metrics = get_metrics()

    # -------------------------------------------------------------------------
    # Priority chain
    # -------------------------------------------------------------------------

    def _join_step(self, tx: LedgerTransaction, lookups: OwnerLookups) -> Optional[Attribution]:
        """Steps 1-4: owner record joins by reference type."""
        if is_credit_reference(tx.reference_type, tx.fee_type):
            for method in CREDIT_FALLBACK_METHODS:
                client_id = lookups.by_method(method).get(tx.reference_id)
                if client_id:
                    return Attribution(tx.transaction_id, client_id, method)
            return None

        ref_type = ReferenceType.parse(tx.reference_type)
        method = JOIN_METHODS.get(ref_type)
        if method is None:
            return None

        key = tx.reference_id
        if method == AttributionMethod.STORAGE:
            key = parse_storage_reference(tx.reference_id, tx.additional_details)
        client_id = lookups.by_method(method).get(key) if key else None

        if client_id:
            return Attribution(tx.transaction_id, client_id, method)
        return None

    def _system_fee_step(self, tx: LedgerTransaction) -> Optional[Attribution]:
        """Step 5: known system-level fees go to a fixed house account."""
        client_id = self.settings.system_fee_accounts.get(tx.fee_type)
        if client_id:
            return Attribution(tx.transaction_id, client_id, AttributionMethod.SYSTEM_FEE)
        return None

    def _unresolved(self, tx: LedgerTransaction) -> UnattributableTransaction:
        ref_type = ReferenceType.parse(tx.reference_type)
        if ref_type == ReferenceType.STORAGE and not parse_storage_reference(tx.reference_id, tx.additional_details):
            reason = UnresolvedReason.MALFORMED_STORAGE_REFERENCE
        elif ref_type in JOIN_METHODS or is_credit_reference(tx.reference_type, tx.fee_type):
            reason = UnresolvedReason.OWNER_NOT_SYNCED
        else:
            reason = UnresolvedReason.UNSUPPORTED_REFERENCE_TYPE
        return UnattributableTransaction(
            f"No owner for {tx.reference_type or 'unknown'} reference {tx.reference_id!r} ({reason.value})",
            reason=reason.value,
            transaction_id=tx.transaction_id,
            reference_id=tx.reference_id,
            details={"reference_type": tx.reference_type, "fee_type": tx.fee_type},
        )

    def resolve(
        self,
        transactions: Sequence[LedgerTransaction],
        lookups: OwnerLookups,
    ) -> Tuple[List[Attribution], List[UnattributableTransaction]]:
        """Run the priority chain over transactions. Pure: no database access.

        Returns:
            (attributions, unresolved)
        """
        attributions: List[Attribution] = []
        unresolved: List[UnattributableTransaction] = []
        for tx in transactions:
            found = self._join_step(tx, lookups) or self._system_fee_step(tx)
            if found:
                attributions.append(found)
            else:
                unresolved.append(self._unresolved(tx))
        return attributions, unresolved

    def build_lookups(
        self,
        transactions: Sequence[LedgerTransaction],
        inventory: Optional[Dict[str, str]] = None,
    ) -> OwnerLookups:
        """Load the owner maps needed for a batch of transactions."""
        ids_by_method: Dict[AttributionMethod, List[str]] = {}
        for tx in transactions:
            if is_credit_reference(tx.reference_type, tx.fee_type):
                methods = CREDIT_FALLBACK_METHODS
            else:
                method = JOIN_METHODS.get(ReferenceType.parse(tx.reference_type))
                methods = (method,) if method else ()
            for method in methods:
                ids_by_method.setdefault(method, []).append(tx.reference_id)

        def owners(table: str, method: AttributionMethod) -> Dict[str, str]:
            return lookup_owner_clients(table, ids_by_method.get(method, []), self.db_path)

        return OwnerLookups(
            shipments=owners("shipments", AttributionMethod.SHIPMENT),
            returns=owners("returns", AttributionMethod.RETURN),
            receiving_orders=owners("receiving_orders", AttributionMethod.RECEIVING_ORDER),
            inventory=inventory if inventory is not None else (
                get_inventory_owner_lookup(self.db_path) if AttributionMethod.STORAGE in ids_by_method else {}
            ),
        )

    # -------------------------------------------------------------------------
    # Scheduled / repair run
    # -------------------------------------------------------------------------

    def _batches(self, transactions: Sequence[LedgerTransaction]) -> List[List[LedgerTransaction]]:
        """Split into batches that never share a reference id."""
        groups: "OrderedDict[Tuple[str, str], List[LedgerTransaction]]" = OrderedDict()
        for tx in transactions:
            groups.setdefault((tx.reference_type, tx.reference_id), []).append(tx)

        batches: List[List[LedgerTransaction]] = []
        current: List[LedgerTransaction] = []
        for group in groups.values():
            if current and len(current) + len(group) > self.settings.batch_size:
                batches.append(current)
                current = []
            current.extend(group)
        if current:
            batches.append(current)
        return batches

    def _process_batch(
        self,
        batch: List[LedgerTransaction],
        inventory: Dict[str, str],
        dry_run: bool,
    ) -> Tuple[List[Attribution], List[str], List[UnattributableTransaction]]:
        lookups = self.build_lookups(batch, inventory)
        attributions, unresolved = self.resolve(batch, lookups)
        written: List[str] = []
        if not dry_run and attributions:
            written = assign_client_ids(
                {a.transaction_id: (a.client_id, a.method) for a in attributions},
                self.db_path,
            )
        return attributions, written, unresolved

    def run(
        self,
        dry_run: bool = False,
        run_id: Optional[str] = None,
        transaction_ids: Optional[Sequence[str]] = None,
    ) -> AttributionResult:
        """Attribute every unattributed transaction in the ledger.

        Args:
            dry_run: Compute attributions without writing anything
            run_id: Sync run id for exception rows and audit events
            transaction_ids: Restrict to these transactions

        Returns:
            AttributionResult
        """
        started = time.perf_counter()
        result = AttributionResult(run_id=run_id, dry_run=dry_run)

        with with_correlation(run_id=run_id, stage="attribution"):
            pending = list_transactions(self.db_path, attributed=False, transaction_ids=transaction_ids)
            result.examined = len(pending)
            if not pending:
                logger.info("No unattributed transactions")
                return result

            needs_inventory = any(
                ReferenceType.parse(tx.reference_type) == ReferenceType.STORAGE for tx in pending
            )
            inventory = get_inventory_owner_lookup(self.db_path) if needs_inventory else {}
            batches = self._batches(pending)

            if self.settings.max_workers > 1 and len(batches) > 1:
                with ThreadPoolExecutor(max_workers=self.settings.max_workers) as pool:
                    outcomes = list(pool.map(lambda b: self._process_batch(b, inventory, dry_run), batches))
            else:
                outcomes = [self._process_batch(b, inventory, dry_run) for b in batches]

            written: List[str] = []
            for attributions, batch_written, unresolved in outcomes:
                result.proposed.extend(attributions)
                result.unresolved.extend(unresolved)
                written.extend(batch_written)
            result.attributed = len(written)

            if not dry_run:
                resolve_exceptions("unattributable", written, self.db_path)
                record_exceptions(result.unresolved, run_id=run_id, db_path=self.db_path)
                if self.audit and written:
                    self.audit.log_info(
                        AuditEventType.ATTRIBUTION_APPLIED,
                        f"Attributed {len(written)} transactions",
                        run_id=run_id,
                        details={"by_method": result.by_method, "unresolved": result.by_reason},
                    )

        self.metrics.record_stage_time("attribution", (time.perf_counter() - started) * 1000)
        logger.info(
            f"Attribution{' (dry run)' if dry_run else ''}: examined {result.examined}, "
            f"attributed {result.attributed}, unresolved {len(result.unresolved)}",
            extra_fields=result.to_dict(),
        )
        return result

    # -------------------------------------------------------------------------
    # Correction mode
    # -------------------------------------------------------------------------

    def find_corrections(self, client_id: Optional[str] = None) -> CorrectionResult:
        """Re-evaluate attributed rows and list those whose owner changed.

        A join that now yields nothing is never a correction: an owner is
        never cleared.
        """
        attributed = list_transactions(self.db_path, attributed=True, client_id=client_id)
        result = CorrectionResult(dry_run=True, examined=len(attributed))
        if not attributed:
            return result

        lookups = self.build_lookups(attributed)
        for tx in attributed:
            found = self._join_step(tx, lookups) or self._system_fee_step(tx)
            if found and found.client_id != tx.client_id:
                result.candidates.append(CorrectionCandidate(
                    transaction_id=tx.transaction_id,
                    current_client_id=tx.client_id,
                    proposed_client_id=found.client_id,
                    method=found.method,
                ))
        return result

    def correct_attributions(
        self,
        confirmed: bool = False,
        dry_run: bool = False,
        client_id: Optional[str] = None,
        actor: str = "operator",
    ) -> CorrectionResult:
        """Overwrite owners whose join target now names a different client.

        Args:
            confirmed: Operator confirmation; required unless dry_run
            dry_run: Only report candidates
            client_id: Restrict to rows currently owned by this client
            actor: Recorded on each audit event

        Raises:
            CorrectionNotConfirmed: Not a dry run and not confirmed
        """
        if not dry_run and not confirmed:
            raise CorrectionNotConfirmed(
                "Attribution correction overwrites settled owners; pass confirmed=True or use dry_run"
            )

        with with_correlation(stage="attribution_correction"):
            result = self.find_corrections(client_id)
            result.dry_run = dry_run
            if dry_run:
                logger.info(f"Correction dry run: {len(result.candidates)} of {result.examined} rows would change")
                return result

            for candidate in result.candidates:
                overwritten, previous_invoice_id = overwrite_client_id(
                    candidate.transaction_id,
                    candidate.current_client_id,
                    candidate.proposed_client_id,
                    self.db_path,
                )
                if not overwritten:
                    continue
                result.corrected += 1
                if previous_invoice_id:
                    result.unlinked += 1
                    logger.warning(
                        f"Transaction {candidate.transaction_id} unlinked from internal invoice {previous_invoice_id}",
                        extra_fields={
                            "transaction_id": candidate.transaction_id,
                            "internal_invoice_id": previous_invoice_id,
                        },
                    )
                if self.audit:
                    self.audit.log_warning(
                        AuditEventType.ATTRIBUTION_CORRECTED,
                        f"Owner changed {candidate.current_client_id} -> {candidate.proposed_client_id}",
                        transaction_id=candidate.transaction_id,
                        client_id=candidate.proposed_client_id,
                        actor=actor,
                        details={
                            "previous_client_id": candidate.current_client_id,
                            "previous_internal_invoice_id": previous_invoice_id,
                            "method": candidate.method.value,
                        },
                    )

            logger.warning(
                f"Corrected {result.corrected} of {len(result.candidates)} attribution candidates, "
                f"{result.unlinked} unlinked from internal invoices"
            )
        return result
