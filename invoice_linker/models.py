"""Invoice Linker Models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.errors import UnlinkableTransaction


class UnlinkableReason(str, Enum):
    UNKNOWN_UPSTREAM_INVOICE = "unknown_upstream_invoice"      # Upstream invoice not synced
    NO_INTERNAL_INVOICE = "no_internal_invoice"                # Period not created yet
    AMBIGUOUS_INTERNAL_INVOICE = "ambiguous_internal_invoice"  # Several invoices for (date, client)


@dataclass
class PlannedLink:
    """One transaction -> internal invoice assignment."""
    transaction_id: str
    internal_invoice_id: str
    upstream_invoice_id: int


@dataclass
class LinkResult:
    """Outcome of a linking run."""
    run_id: Optional[str] = None
    dry_run: bool = False
    examined: int = 0
    linked: int = 0
    planned: List[PlannedLink] = field(default_factory=list)
    unlinkable: List[UnlinkableTransaction] = field(default_factory=list)

    @property
    def by_reason(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for u in self.unlinkable:
            counts[u.reason] = counts.get(u.reason, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "examined": self.examined,
            "linked": self.linked,
            "planned": len(self.planned),
            "unlinkable": len(self.unlinkable),
            "by_reason": self.by_reason,
        }
