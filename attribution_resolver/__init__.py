"""Attribution Resolver Package.

Assigns owning clients to transactions that arrive without one.

Main components:
- AttributionResolver: The prioritized resolution chain and correction mode
- ReferenceType / AttributionMethod: Closed enums for reference kinds and methods
- UnresolvedReason: Why a transaction was parked as unattributable
"""

from connectors.billing_base import ReferenceType
from ledger.models import AttributionMethod

from attribution_resolver.models import (
    UnresolvedReason,
    OwnerLookups,
    Attribution,
    AttributionResult,
    CorrectionCandidate,
    CorrectionResult,
    parse_storage_reference,
)
from attribution_resolver.resolver import AttributionResolver

__all__ = [
    "AttributionResolver",
    "ReferenceType",
    "AttributionMethod",
    "UnresolvedReason",
    "OwnerLookups",
    "Attribution",
    "AttributionResult",
    "CorrectionCandidate",
    "CorrectionResult",
    "parse_storage_reference",
]
