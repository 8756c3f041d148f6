"""
Markup Engine Database

CRUD for the markup tables created by ledger.db.init_ledger_db:
- markup_rules: global (client_id NULL) and client-specific rules
- markup_rule_history: append-only log of created / updated / deactivated

Rules are never deleted. Deactivation keeps the row (and its history) so
markups already written can still be traced to the rule that produced them.
"""

import json
import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from core.audit import AuditEventType, AuditLogger
from core.config import DEFAULT_DB_PATH
from core.observability import get_logger
from ledger.db import get_connection

from .models import MarkupRule, RuleChangeType, RuleSnapshot

logger = get_logger(__name__)

# Fields update_markup_rule may change
UPDATABLE_FIELDS = {
    "name",
    "description",
    "billing_category",
    "fee_type",
    "ship_option_id",
    "weight_min_oz",
    "weight_max_oz",
    "states",
    "countries",
    "priority",
    "markup_type",
    "markup_value",
    "effective_from",
    "effective_to",
    "is_active",
}


def _to_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _to_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _codes_json(values: List[str]) -> Optional[str]:
    return json.dumps(values) if values else None


def _row_to_rule(row: sqlite3.Row) -> MarkupRule:
    return MarkupRule(
        id=row["id"],
        client_id=row["client_id"],
        name=row["name"],
        description=row["description"],
        billing_category=row["billing_category"],
        fee_type=row["fee_type"],
        ship_option_id=row["ship_option_id"],
        weight_min_oz=row["weight_min_oz"],
        weight_max_oz=row["weight_max_oz"],
        states=json.loads(row["states"]) if row["states"] else [],
        countries=json.loads(row["countries"]) if row["countries"] else [],
        priority=row["priority"] or 0,
        markup_type=row["markup_type"],
        markup_value=row["markup_value"],
        effective_from=_to_date(row["effective_from"]),
        effective_to=_to_date(row["effective_to"]),
        is_active=bool(row["is_active"]),
        created_at=_to_datetime(row["created_at"]),
        updated_at=_to_datetime(row["updated_at"]),
    )


def _record_history(
    conn: sqlite3.Connection,
    rule_id: int,
    change_type: RuleChangeType,
    previous: Optional[Dict[str, Any]],
    new: Optional[Dict[str, Any]],
    changed_by: Optional[str],
    change_reason: Optional[str],
) -> None:
    conn.execute(
        """
        INSERT INTO markup_rule_history
        (markup_rule_id, change_type, previous_values, new_values, changed_by, change_reason, changed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            rule_id,
            change_type.value,
            json.dumps(previous) if previous is not None else None,
            json.dumps(new) if new is not None else None,
            changed_by,
            change_reason,
            datetime.utcnow().isoformat(),
        ),
    )


def _audit_change(
    audit: Optional[AuditLogger],
    rule: MarkupRule,
    change_type: RuleChangeType,
    changed_by: Optional[str],
    details: Dict[str, Any],
) -> None:
    if audit is None:
        return
    audit.log_info(
        AuditEventType.MARKUP_RULE_CHANGED,
        f"Markup rule {rule.id} ({rule.name}) {change_type.value}",
        client_id=rule.client_id,
        actor=changed_by or "system",
        details={"rule_id": rule.id, "change_type": change_type.value, **details},
    )


# =============================================================================
# Rule CRUD
# =============================================================================

def add_markup_rule(
    rule: MarkupRule,
    changed_by: Optional[str] = None,
    change_reason: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
    audit: Optional[AuditLogger] = None,
) -> MarkupRule:
    """
    Add a markup rule and its "created" history row.

    Args:
        rule: MarkupRule to add (id and timestamps are assigned)

    Returns:
        The rule with id, created_at and updated_at set
    """
    now = datetime.utcnow()
    rule.created_at = rule.created_at or now
    rule.updated_at = now

    conn = get_connection(db_path)
    try:
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO markup_rules
                (client_id, name, description, billing_category, fee_type, ship_option_id,
                 weight_min_oz, weight_max_oz, states, countries, priority,
                 markup_type, markup_value, effective_from, effective_to, is_active,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.client_id,
                    rule.name,
                    rule.description,
                    rule.billing_category.value if rule.billing_category else None,
                    rule.fee_type,
                    rule.ship_option_id,
                    rule.weight_min_oz,
                    rule.weight_max_oz,
                    _codes_json(rule.states),
                    _codes_json(rule.countries),
                    rule.priority,
                    rule.markup_type.value,
                    str(rule.markup_value),
                    rule.effective_from.isoformat() if rule.effective_from else None,
                    rule.effective_to.isoformat() if rule.effective_to else None,
                    1 if rule.is_active else 0,
                    rule.created_at.isoformat(),
                    rule.updated_at.isoformat(),
                ),
            )
            rule.id = cursor.lastrowid
            _record_history(conn, rule.id, RuleChangeType.CREATED, None, rule.to_dict(), changed_by, change_reason)
    finally:
        conn.close()

    logger.info(f"Added markup rule {rule.id}: {rule.name}", extra_fields={"client_id": rule.client_id})
    _audit_change(audit, rule, RuleChangeType.CREATED, changed_by, {"new": rule.to_dict()})
    return rule


def get_markup_rule(rule_id: int, db_path: Path = DEFAULT_DB_PATH) -> Optional[MarkupRule]:
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM markup_rules WHERE id = ?", (rule_id,)).fetchone()
    finally:
        conn.close()
    return _row_to_rule(row) if row else None


def update_markup_rule(
    rule_id: int,
    changes: Dict[str, Any],
    changed_by: Optional[str] = None,
    change_reason: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
    audit: Optional[AuditLogger] = None,
) -> MarkupRule:
    """
    Change fields of a rule and record previous/new values.

    Raises:
        KeyError: Rule does not exist
        ValueError: A field is not updatable
    """
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update markup rule fields: {sorted(unknown)}")

    current = get_markup_rule(rule_id, db_path)
    if current is None:
        raise KeyError(f"Markup rule {rule_id} not found")

    previous = current.to_dict()
    merged = {**previous, **changes}
    updated = MarkupRule(
        id=rule_id,
        name=merged["name"],
        client_id=current.client_id,
        description=merged["description"],
        billing_category=merged["billing_category"],
        fee_type=merged["fee_type"],
        ship_option_id=merged["ship_option_id"],
        weight_min_oz=merged["weight_min_oz"],
        weight_max_oz=merged["weight_max_oz"],
        states=merged["states"],
        countries=merged["countries"],
        priority=merged["priority"],
        markup_type=merged["markup_type"],
        markup_value=merged["markup_value"],
        effective_from=_coerce_date(merged["effective_from"]),
        effective_to=_coerce_date(merged["effective_to"]),
        is_active=bool(merged["is_active"]),
        created_at=current.created_at,
        updated_at=datetime.utcnow(),
    )

    conn = get_connection(db_path)
    try:
        with conn:
            conn.execute(
                """
                UPDATE markup_rules
                SET name = ?, description = ?, billing_category = ?, fee_type = ?,
                    ship_option_id = ?, weight_min_oz = ?, weight_max_oz = ?, states = ?,
                    countries = ?, priority = ?, markup_type = ?, markup_value = ?,
                    effective_from = ?, effective_to = ?, is_active = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    updated.name,
                    updated.description,
                    updated.billing_category.value if updated.billing_category else None,
                    updated.fee_type,
                    updated.ship_option_id,
                    updated.weight_min_oz,
                    updated.weight_max_oz,
                    _codes_json(updated.states),
                    _codes_json(updated.countries),
                    updated.priority,
                    updated.markup_type.value,
                    str(updated.markup_value),
                    updated.effective_from.isoformat() if updated.effective_from else None,
                    updated.effective_to.isoformat() if updated.effective_to else None,
                    1 if updated.is_active else 0,
                    updated.updated_at.isoformat(),
                    rule_id,
                ),
            )
            _record_history(
                conn, rule_id, RuleChangeType.UPDATED, previous, updated.to_dict(), changed_by, change_reason
            )
    finally:
        conn.close()

    _audit_change(audit, updated, RuleChangeType.UPDATED, changed_by, {"changes": sorted(changes)})
    return updated


def _coerce_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def deactivate_markup_rule(
    rule_id: int,
    changed_by: Optional[str] = None,
    change_reason: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
    audit: Optional[AuditLogger] = None,
) -> MarkupRule:
    """
    Deactivate a rule. The row stays for traceability.

    Raises:
        KeyError: Rule does not exist
    """
    current = get_markup_rule(rule_id, db_path)
    if current is None:
        raise KeyError(f"Markup rule {rule_id} not found")

    now = datetime.utcnow()
    conn = get_connection(db_path)
    try:
        with conn:
            conn.execute(
                "UPDATE markup_rules SET is_active = 0, updated_at = ? WHERE id = ?",
                (now.isoformat(), rule_id),
            )
            _record_history(
                conn, rule_id, RuleChangeType.DEACTIVATED,
                {"is_active": current.is_active}, {"is_active": False},
                changed_by, change_reason,
            )
    finally:
        conn.close()

    current.is_active = False
    current.updated_at = now
    _audit_change(audit, current, RuleChangeType.DEACTIVATED, changed_by, {"reason": change_reason})
    return current


def list_markup_rules(
    client_id: Optional[str] = None,
    include_global: bool = True,
    active_only: bool = True,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[MarkupRule]:
    """
    List rules for a client (and the global rules), or only global rules
    when client_id is None.
    """
    sql = "SELECT * FROM markup_rules WHERE 1=1"
    params: List[Any] = []
    if client_id is None:
        sql += " AND client_id IS NULL"
    elif include_global:
        sql += " AND (client_id IS NULL OR client_id = ?)"
        params.append(client_id)
    else:
        sql += " AND client_id = ?"
        params.append(client_id)
    if active_only:
        sql += " AND is_active = 1"
    sql += " ORDER BY id"

    conn = get_connection(db_path)
    try:
        rows = conn.execute(sql, params).fetchall()
    finally:
        conn.close()
    return [_row_to_rule(row) for row in rows]


def get_rule_history(rule_id: int, db_path: Path = DEFAULT_DB_PATH) -> List[Dict[str, Any]]:
    """History rows for a rule, newest first."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM markup_rule_history WHERE markup_rule_id = ? ORDER BY changed_at DESC, id DESC",
            (rule_id,),
        ).fetchall()
    finally:
        conn.close()
    return [
        {
            "id": row["id"],
            "change_type": row["change_type"],
            "previous_values": json.loads(row["previous_values"]) if row["previous_values"] else None,
            "new_values": json.loads(row["new_values"]) if row["new_values"] else None,
            "changed_by": row["changed_by"],
            "change_reason": row["change_reason"],
            "changed_at": row["changed_at"],
        }
        for row in rows
    ]


def get_rules_snapshot(client_ids: Sequence[str], db_path: Path = DEFAULT_DB_PATH) -> RuleSnapshot:
    """
    Load every active rule for the given clients plus all global rules
    in a single query.
    """
    unique_ids = list(dict.fromkeys(c for c in client_ids if c))
    sql = "SELECT * FROM markup_rules WHERE is_active = 1 AND (client_id IS NULL"
    if unique_ids:
        sql += f" OR client_id IN ({','.join('?' * len(unique_ids))})"
    sql += ")"

    conn = get_connection(db_path)
    try:
        rows = conn.execute(sql, unique_ids).fetchall()
    finally:
        conn.close()
    return RuleSnapshot(rules=[_row_to_rule(row) for row in rows])
