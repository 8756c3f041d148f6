"""Audit event logging and persistence.

Records every action that mutates settled billing data (attribution
corrections, invoice links and resets, markup application, rule edits)
together with fetch run outcomes. Supports multiple persistence backends.
"""

import json
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.observability.logging import get_logger

logger = get_logger(__name__)


class AuditSeverity(str, Enum):
    """Severity levels for audit events."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class AuditEventType(str, Enum):
    """Standard audit event types."""
    # Fetch events
    FETCH_RUN_STARTED = "FETCH_RUN_STARTED"
    FETCH_RUN_COMPLETED = "FETCH_RUN_COMPLETED"
    FETCH_RUN_PARTIAL = "FETCH_RUN_PARTIAL"

    # Attribution events
    ATTRIBUTION_APPLIED = "ATTRIBUTION_APPLIED"
    ATTRIBUTION_CORRECTED = "ATTRIBUTION_CORRECTED"

    # Linking events
    INVOICE_LINKED = "INVOICE_LINKED"
    INVOICE_LINK_RESET = "INVOICE_LINK_RESET"

    # Markup events
    MARKUP_APPLIED = "MARKUP_APPLIED"
    MARKUP_RULE_MISSING = "MARKUP_RULE_MISSING"
    MARKUP_RULE_CHANGED = "MARKUP_RULE_CHANGED"

    # System events
    SYSTEM_ERROR = "SYSTEM_ERROR"


class AuditEvent(BaseModel):
    """An audit event for tracking system actions."""
    event_id: str = Field(..., description="Unique event identifier")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    event_type: str = Field(..., description="AuditEventType value")
    severity: AuditSeverity = Field(default=AuditSeverity.INFO)

    run_id: Optional[str] = Field(None, description="Sync run that produced the event")
    transaction_id: Optional[str] = None
    client_id: Optional[str] = None

    message: str = Field(..., description="Human-readable message")
    details: Dict[str, Any] = Field(default_factory=dict)
    actor: str = Field(default="system", description="Who/what performed the action")


def create_audit_event(
    event_type: AuditEventType,
    message: str,
    severity: AuditSeverity = AuditSeverity.INFO,
    run_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    client_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    actor: str = "system",
) -> AuditEvent:
    """Create a new audit event with auto-generated ID and timestamp."""
    return AuditEvent(
        event_id=str(uuid.uuid4()),
        timestamp=datetime.utcnow(),
        event_type=event_type.value,
        severity=severity,
        run_id=run_id,
        transaction_id=transaction_id,
        client_id=client_id,
        message=message,
        details=details or {},
        actor=actor,
    )


class AuditBackend(ABC):
    """Abstract base class for audit persistence backends."""

    @abstractmethod
    def log(self, event: AuditEvent) -> None:
        """Persist an audit event."""
        pass

    @abstractmethod
    def query(
        self,
        event_type: Optional[str] = None,
        transaction_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query audit events, newest first."""
        pass


class SQLiteAuditBackend(AuditBackend):
    """Audit backend storing events in the ledger database."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    event_id TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    run_id TEXT,
                    transaction_id TEXT,
                    client_id TEXT,
                    message TEXT NOT NULL,
                    details TEXT,
                    actor TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_events_tx
                ON audit_events(transaction_id)
            """)
            conn.commit()
        finally:
            conn.close()

    def log(self, event: AuditEvent) -> None:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        try:
            conn.execute("""
                INSERT INTO audit_events
                (event_id, timestamp, event_type, severity, run_id, transaction_id,
                 client_id, message, details, actor)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event.event_id,
                event.timestamp.isoformat(),
                event.event_type,
                event.severity.value,
                event.run_id,
                event.transaction_id,
                event.client_id,
                event.message,
                json.dumps(event.details, default=str),
                event.actor,
            ))
            conn.commit()
        finally:
            conn.close()

    def query(
        self,
        event_type: Optional[str] = None,
        transaction_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        sql = "SELECT * FROM audit_events WHERE 1=1"
        params: List[Any] = []
        if event_type:
            sql += " AND event_type = ?"
            params.append(event_type)
        if transaction_id:
            sql += " AND transaction_id = ?"
            params.append(transaction_id)
        sql += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        return [
            AuditEvent(
                event_id=row["event_id"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                event_type=row["event_type"],
                severity=AuditSeverity(row["severity"]),
                run_id=row["run_id"],
                transaction_id=row["transaction_id"],
                client_id=row["client_id"],
                message=row["message"],
                details=json.loads(row["details"]) if row["details"] else {},
                actor=row["actor"],
            )
            for row in rows
        ]


class InMemoryAuditBackend(AuditBackend):
    """In-memory audit backend for testing."""

    def __init__(self):
        self._events: List[AuditEvent] = []

    def log(self, event: AuditEvent) -> None:
        self._events.append(event)

    def query(
        self,
        event_type: Optional[str] = None,
        transaction_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        results = []
        for event in reversed(self._events):
            if event_type and event.event_type != event_type:
                continue
            if transaction_id and event.transaction_id != transaction_id:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def clear(self) -> None:
        self._events.clear()


class AuditLogger:
    """Main audit logger that fans out to multiple backends.

    Usage:
        audit = AuditLogger()
        audit.add_backend(SQLiteAuditBackend(db_path))
        audit.log_info(AuditEventType.INVOICE_LINKED, "Linked tx to JP-0042", transaction_id="t1")
    """

    def __init__(self):
        self._backends: List[AuditBackend] = []

    def add_backend(self, backend: AuditBackend) -> None:
        self._backends.append(backend)

    def log(self, event: AuditEvent) -> None:
        """Log event to all backends."""
        for backend in self._backends:
            try:
                backend.log(event)
            except sqlite3.Error as e:
                # Audit failures must not abort billing work
                logger.error(f"Audit logging failed for backend {type(backend).__name__}: {e}")

    def log_info(self, event_type: AuditEventType, message: str, **kwargs) -> None:
        self.log(create_audit_event(event_type, message, AuditSeverity.INFO, **kwargs))

    def log_warning(self, event_type: AuditEventType, message: str, **kwargs) -> None:
        self.log(create_audit_event(event_type, message, AuditSeverity.WARN, **kwargs))

    def log_error(self, event_type: AuditEventType, message: str, **kwargs) -> None:
        self.log(create_audit_event(event_type, message, AuditSeverity.ERROR, **kwargs))

    def query(
        self,
        event_type: Optional[str] = None,
        transaction_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query events from the first backend."""
        if not self._backends:
            return []
        return self._backends[0].query(event_type, transaction_id, limit)


def get_audit_logger(db_path: Path) -> AuditLogger:
    """Audit logger persisting to the ledger database."""
    audit = AuditLogger()
    audit.add_backend(SQLiteAuditBackend(db_path))
    return audit
