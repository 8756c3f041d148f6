"""Logistics Billing Connector Package.

Implements the BillingApiBase interface for the logistics provider's
2025-07 billing API.
"""

from connectors.logistics_billing.lb_client import LogisticsBillingClient
from connectors.logistics_billing.lb_models import LBInvoice, LBTransaction

__all__ = [
    "LogisticsBillingClient",
    "LBInvoice",
    "LBTransaction",
]
