"""
Fetch Orchestrator Models

Defines data structures for:
- Fetch scope (what to pull) and per-run context (state + cancellation)
- Per-slice results and the run report
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from connectors.billing_base import TransactionQuery, TransactionRecord
from ledger.models import UpsertResult


class SliceStatus(str, Enum):
    """Outcome of one filter combination's paginated query."""
    COMPLETED = "completed"
    EMPTY = "empty"
    TRUNCATED = "truncated"    # max_pages reached with a next cursor outstanding
    SPLIT = "split"            # superseded by narrower slices
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class FetchScope:
    """What a fetch run should retrieve.

    Attributes:
        start_date: Inclusive lower bound on charge date (upstream may ignore it)
        end_date: Inclusive upper bound on charge date
        invoiced_status: False = pending transactions only, None = any
    """
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    invoiced_status: Optional[bool] = False

    def to_query(self) -> TransactionQuery:
        return TransactionQuery(
            start_date=self.start_date,
            end_date=self.end_date,
            invoiced_status=self.invoiced_status,
        )

    def contains(self, record: TransactionRecord) -> bool:
        return record.in_window(self.start_date, self.end_date)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "invoiced_status": self.invoiced_status,
        }


TransactionSink = Callable[[List[TransactionRecord]], UpsertResult]


@dataclass
class FetchRunContext:
    """Per-run state threaded through the orchestrator.

    Holds the union of transaction ids seen so far, the run counters, the
    sink newly unique transactions are delivered to, and the cancellation
    flag. cancel() may be called from any thread.
    """
    run_id: str = field(default_factory=lambda: f"fetch-{uuid.uuid4().hex[:12]}")
    seen_ids: Set[str] = field(default_factory=set)
    duplicates_collapsed: int = 0
    out_of_window: int = 0
    pages_fetched: int = 0
    upserted: UpsertResult = field(default_factory=UpsertResult)
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        """Stop issuing new page requests. Pages already received are still written."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def derive(self, run_id: str) -> "FetchRunContext":
        """Fresh run state that shares this run's cancellation flag."""
        return FetchRunContext(run_id=run_id, _cancel_event=self._cancel_event)

    def admit(self, items: Sequence[TransactionRecord]) -> List[TransactionRecord]:
        """Merge a page into the union; return only the newly unique items."""
        fresh = []
        for tx in items:
            if tx.transaction_id in self.seen_ids:
                self.duplicates_collapsed += 1
                continue
            self.seen_ids.add(tx.transaction_id)
            fresh.append(tx)
        return fresh

    def release(self, items: Sequence[TransactionRecord]) -> None:
        """Forget ids whose delivery failed so another slice can deliver them."""
        for tx in items:
            self.seen_ids.discard(tx.transaction_id)


@dataclass
class FetchSliceResult:
    """Result of one filter combination."""
    combination: str
    status: SliceStatus = SliceStatus.COMPLETED
    unique_count: int = 0     # distinct ids returned by this slice
    occurrences: int = 0      # items returned including re-emits
    pages: int = 0
    truncated: bool = False
    possibly_capped: bool = False
    error: Optional[Dict[str, Any]] = None
    # (transaction_type, reference_type) pairs seen, as the upstream spelled them
    observed_types: Set[Tuple[str, str]] = field(default_factory=set, repr=False)

    @property
    def is_leaf_complete(self) -> bool:
        if self.possibly_capped:
            return False
        return self.status in (SliceStatus.COMPLETED, SliceStatus.EMPTY, SliceStatus.SPLIT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "combination": self.combination,
            "status": self.status.value,
            "unique_count": self.unique_count,
            "occurrences": self.occurrences,
            "pages": self.pages,
            "truncated": self.truncated,
            "possibly_capped": self.possibly_capped,
            "error": self.error,
        }


@dataclass
class FetchRunReport:
    """Coverage report of one fetch run.

    is_complete is True only when every leaf slice finished without error,
    truncation or cap suspicion and the run was not cancelled.
    """
    run_id: str
    scope: Dict[str, Any]
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    partitioned: bool = False
    unique_count: int = 0
    duplicates_collapsed: int = 0
    out_of_window: int = 0
    pages_fetched: int = 0
    inserted: int = 0
    updated: int = 0
    cancelled: bool = False
    slices: List[FetchSliceResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        if self.cancelled or self.errors:
            return False
        return all(s.is_leaf_complete for s in self.slices)

    @property
    def errored_combinations(self) -> List[str]:
        return [s.combination for s in self.slices if s.status == SliceStatus.FAILED]

    @property
    def capped_combinations(self) -> List[str]:
        return [s.combination for s in self.slices if s.possibly_capped]

    def finalize(self, context: FetchRunContext) -> "FetchRunReport":
        self.unique_count = len(context.seen_ids)
        self.duplicates_collapsed = context.duplicates_collapsed
        self.out_of_window = context.out_of_window
        self.pages_fetched = context.pages_fetched
        self.inserted = context.upserted.inserted
        self.updated = context.upserted.updated
        self.cancelled = context.cancelled
        self.completed_at = datetime.utcnow()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "scope": self.scope,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "partitioned": self.partitioned,
            "unique_count": self.unique_count,
            "duplicates_collapsed": self.duplicates_collapsed,
            "out_of_window": self.out_of_window,
            "pages_fetched": self.pages_fetched,
            "inserted": self.inserted,
            "updated": self.updated,
            "cancelled": self.cancelled,
            "is_complete": self.is_complete,
            "errored_combinations": self.errored_combinations,
            "capped_combinations": self.capped_combinations,
            "errors": self.errors,
            "slices": [s.to_dict() for s in self.slices],
        }
