"""Error taxonomy for the billing reconciler.

Every error carries enough context to replay the failing operation:
the transaction/reference id involved, the filter combination that was
being queried, and when it happened.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation errors."""

    bucket: Optional[str] = None

    def __init__(
        self,
        message: str,
        transaction_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        filter_combination: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id
        self.reference_id = reference_id
        self.filter_combination = filter_combination
        self.occurred_at = occurred_at or datetime.utcnow()
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for persistence and reports."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "transaction_id": self.transaction_id,
            "reference_id": self.reference_id,
            "filter_combination": self.filter_combination,
            "occurred_at": self.occurred_at.isoformat(),
            "details": self.details,
        }


class TransientUpstreamError(ReconciliationError):
    """Rate limit, 5xx or timeout that survived every retry attempt."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        retry_after: Optional[float] = None,
        attempts: int = 0,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.retry_after = retry_after
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"status_code": self.status_code, "attempts": self.attempts})
        return data


class UpstreamRequestError(ReconciliationError):
    """Non-retryable upstream failure (4xx other than 429, bad payload)."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.response_body = response_body

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"status_code": self.status_code, "response_body": self.response_body[:500]})
        return data


class LedgerWriteError(ReconciliationError):
    """Fetched transactions could not be written to the ledger sink."""


class UnattributableTransaction(ReconciliationError):
    """No owning client could be resolved for a transaction."""

    bucket = "unattributable"

    def __init__(self, message: str, reason: str, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.details.setdefault("reason", reason)


class UnlinkableTransaction(ReconciliationError):
    """No internal invoice exists (yet) for the transaction's period and client."""

    bucket = "unlinkable"

    def __init__(self, message: str, reason: str, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.details.setdefault("reason", reason)


class NoMarkupRuleMatch(ReconciliationError):
    """Zero markup rules (including global rules) match a transaction context."""

    bucket = "no_markup_rule"


class DuplicateIdCollision(ReconciliationError):
    """An upsert hit an existing transaction id and overwrote its mutable fields."""


class CorrectionNotConfirmed(ReconciliationError):
    """A mutation of settled data was attempted without operator confirmation."""


EXCEPTION_BUCKETS = (
    UnattributableTransaction.bucket,
    UnlinkableTransaction.bucket,
    NoMarkupRuleMatch.bucket,
)
