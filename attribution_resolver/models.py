"""Attribution Resolver Data Models.

This module defines the models for owner attribution:
- UnresolvedReason: why a transaction could not be attributed
- OwnerLookups: reference id -> client id maps for one batch
- AttributionResult / CorrectionResult: run outcomes
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from connectors.billing_base import ReferenceType
from core.errors import UnattributableTransaction
from ledger.models import AttributionMethod


class UnresolvedReason(str, Enum):
    """Reason recorded in the unattributable exception bucket."""
    OWNER_NOT_SYNCED = "owner_not_synced"                        # Join target missing (yet)
    UNSUPPORTED_REFERENCE_TYPE = "unsupported_reference_type"    # No join exists for this type
    MALFORMED_STORAGE_REFERENCE = "malformed_storage_reference"  # Composite id unparseable


# Reference types that resolve through a join table
JOIN_METHODS = {
    ReferenceType.SHIPMENT: AttributionMethod.SHIPMENT,
    ReferenceType.RETURN: AttributionMethod.RETURN,
    ReferenceType.WRO: AttributionMethod.RECEIVING_ORDER,
    ReferenceType.URO: AttributionMethod.RECEIVING_ORDER,
    ReferenceType.STORAGE: AttributionMethod.STORAGE,
}

# Credits billed against a "Default" reference carry the id of the shipment,
# return or receiving order they refund, tried in that order
CREDIT_FEE_TYPE = "Credit"
CREDIT_FALLBACK_METHODS = (
    AttributionMethod.SHIPMENT,
    AttributionMethod.RETURN,
    AttributionMethod.RECEIVING_ORDER,
)


def is_credit_reference(reference_type: Optional[str], fee_type: Optional[str]) -> bool:
    return ReferenceType.parse(reference_type) == ReferenceType.DEFAULT and fee_type == CREDIT_FEE_TYPE


def parse_storage_reference(reference_id: str, additional_details: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """Extract the inventory id from a storage reference.

    Storage references look like "{facility}-{inventory}-{location}",
    e.g. "156-20114295-Shelf"; the location may itself contain dashes
    ("156-20114295-Pallet-Large") or be missing ("156-20114295"). The
    second segment is the inventory id. When it is empty or absent the
    InventoryId in additional_details is used instead.

    Returns:
        Inventory id, or None if neither source yields one
    """
    parts = (reference_id or "").split("-")
    if len(parts) >= 2 and parts[1].strip():
        return parts[1].strip()
    inventory_id = (additional_details or {}).get("InventoryId")
    if inventory_id not in (None, ""):
        return str(inventory_id)
    return None


@dataclass
class OwnerLookups:
    """Reference id -> client id maps used by the priority chain."""
    shipments: Dict[str, str] = field(default_factory=dict)
    returns: Dict[str, str] = field(default_factory=dict)
    receiving_orders: Dict[str, str] = field(default_factory=dict)
    inventory: Dict[str, str] = field(default_factory=dict)

    def by_method(self, method: AttributionMethod) -> Dict[str, str]:
        return {
            AttributionMethod.SHIPMENT: self.shipments,
            AttributionMethod.RETURN: self.returns,
            AttributionMethod.RECEIVING_ORDER: self.receiving_orders,
            AttributionMethod.STORAGE: self.inventory,
        }[method]


@dataclass
class Attribution:
    """A resolved owner for one transaction."""
    transaction_id: str
    client_id: str
    method: AttributionMethod


@dataclass
class AttributionResult:
    """Outcome of one resolver run.

    Attributes:
        examined: Unattributed transactions considered
        attributed: Rows actually written (0 on dry run)
        proposed: Every attribution the chain produced
        unresolved: Transactions left unattributed, with reasons
    """
    run_id: Optional[str] = None
    dry_run: bool = False
    examined: int = 0
    attributed: int = 0
    proposed: List[Attribution] = field(default_factory=list)
    unresolved: List[UnattributableTransaction] = field(default_factory=list)

    @property
    def by_method(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for a in self.proposed:
            counts[a.method.value] = counts.get(a.method.value, 0) + 1
        return counts

    @property
    def by_reason(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for u in self.unresolved:
            counts[u.reason] = counts.get(u.reason, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "examined": self.examined,
            "attributed": self.attributed,
            "proposed": len(self.proposed),
            "unresolved": len(self.unresolved),
            "by_method": self.by_method,
            "by_reason": self.by_reason,
        }


@dataclass
class CorrectionCandidate:
    """An attributed transaction whose join target now names another owner."""
    transaction_id: str
    current_client_id: str
    proposed_client_id: str
    method: AttributionMethod


@dataclass
class CorrectionResult:
    """Outcome of a correction pass."""
    dry_run: bool = False
    examined: int = 0
    candidates: List[CorrectionCandidate] = field(default_factory=list)
    corrected: int = 0
    # corrected rows whose internal invoice link was cleared
    unlinked: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "examined": self.examined,
            "candidates": len(self.candidates),
            "corrected": self.corrected,
            "unlinked": self.unlinked,
        }
