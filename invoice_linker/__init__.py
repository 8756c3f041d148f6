"""Invoice Linker Package.

Links transactions to client billing-period invoices.
"""

from invoice_linker.models import UnlinkableReason, PlannedLink, LinkResult
from invoice_linker.linker import InvoicePeriodLinker

__all__ = [
    "InvoicePeriodLinker",
    "UnlinkableReason",
    "PlannedLink",
    "LinkResult",
]
