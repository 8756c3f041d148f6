"""Core audit module - audit event tracking and persistence."""

from core.audit.events import (
    AuditEvent,
    AuditSeverity,
    AuditLogger,
    AuditEventType,
    SQLiteAuditBackend,
    InMemoryAuditBackend,
    create_audit_event,
    get_audit_logger,
)

__all__ = [
    "AuditEvent",
    "AuditSeverity",
    "AuditLogger",
    "AuditEventType",
    "SQLiteAuditBackend",
    "InMemoryAuditBackend",
    "create_audit_event",
    "get_audit_logger",
]
