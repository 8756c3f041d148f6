"""Ledger Database

Creates and manages the reconciliation ledger tables:
- transactions: upstream billing transactions (upsert by transaction_id)
- shipments / returns / receiving_orders / products: owner join targets
- upstream_invoices / internal_invoices: statements and client billing periods
- markup_rules / markup_rule_history: markup configuration (see markup_engine.db)
- fetch_runs / fetch_slices: fetch coverage reports (see fetch_orchestrator.db)
- billing_exceptions: named exception buckets

Every write that touches settled data is guarded in SQL (`WHERE client_id IS
NULL`, `WHERE internal_invoice_id IS NULL`) so concurrent or repeated runs
cannot overwrite each other.
"""

import json
import sqlite3
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from connectors.billing_base import TransactionRecord, UpstreamInvoiceSummary
from core.config import DEFAULT_DB_PATH
from core.errors import EXCEPTION_BUCKETS, DuplicateIdCollision, ReconciliationError
from core.observability import get_logger
from ledger.models import (
    AttributionMethod,
    BillingException,
    InternalInvoice,
    LedgerTransaction,
    MarkupStatus,
    Product,
    ReceivingOrder,
    ReturnOrder,
    Shipment,
    UpsertResult,
)

logger = get_logger(__name__)

# SQLite caps host parameters per statement; stay well under the old 999 limit
_IN_CHUNK = 500


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Get database connection with row factory and busy timeout."""
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 30000")
    return conn


def _chunks(items: Sequence[Any], size: int = _IN_CHUNK) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _now() -> str:
    return datetime.utcnow().isoformat()


def _amount_text(value: Decimal) -> str:
    # Canonical text so "10.10" and "10.1" compare equal in SQL
    return format(value.normalize(), "f")


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def init_ledger_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize all ledger tables.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                transaction_id TEXT PRIMARY KEY,
                amount TEXT NOT NULL,
                currency_code TEXT DEFAULT 'USD',
                charge_date TEXT NOT NULL,
                transaction_type TEXT,
                fee_type TEXT,
                reference_type TEXT,
                reference_id TEXT,
                invoiced_status INTEGER DEFAULT 0,
                upstream_invoice_id INTEGER,
                upstream_invoice_date TEXT,
                invoice_type TEXT,
                fulfillment_center TEXT,
                additional_details TEXT DEFAULT '{}',
                client_id TEXT,
                attribution_method TEXT,
                internal_invoice_id TEXT,
                internal_invoice_date TEXT,
                billed_amount TEXT,
                markup_amount TEXT,
                markup_percentage TEXT,
                markup_rule_id INTEGER,
                markup_status TEXT DEFAULT 'pending',
                first_seen_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_client ON transactions(client_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_reference ON transactions(reference_type, reference_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_upstream_invoice ON transactions(upstream_invoice_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_internal_invoice ON transactions(internal_invoice_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_markup_status ON transactions(markup_status)")

        # Owner join targets
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS shipments (
                shipment_id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                ship_option_id TEXT,
                weight_oz REAL,
                destination_state TEXT,
                destination_country TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS returns (
                return_id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS receiving_orders (
                receiving_order_id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS products (
                product_id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                variants TEXT DEFAULT '[]',
                updated_at TEXT NOT NULL
            )
        """)

        # Invoices
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS upstream_invoices (
                invoice_id INTEGER PRIMARY KEY,
                invoice_date TEXT NOT NULL,
                invoice_type TEXT,
                amount TEXT,
                currency_code TEXT DEFAULT 'USD',
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS internal_invoices (
                internal_invoice_id TEXT PRIMARY KEY,
                invoice_number TEXT NOT NULL,
                invoice_date TEXT NOT NULL,
                client_id TEXT NOT NULL,
                upstream_invoice_ids TEXT DEFAULT '[]',
                status TEXT DEFAULT 'draft',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_internal_invoice_period
            ON internal_invoices(invoice_date, client_id)
        """)

        # Markup configuration
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS markup_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                client_id TEXT,
                name TEXT NOT NULL,
                description TEXT,
                billing_category TEXT,
                fee_type TEXT,
                ship_option_id TEXT,
                weight_min_oz REAL,
                weight_max_oz REAL,
                states TEXT,
                countries TEXT,
                priority INTEGER DEFAULT 0,
                markup_type TEXT NOT NULL,
                markup_value TEXT NOT NULL,
                effective_from TEXT,
                effective_to TEXT,
                is_active INTEGER DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_markup_rules_client ON markup_rules(client_id, is_active)")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS markup_rule_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                markup_rule_id INTEGER NOT NULL,
                change_type TEXT NOT NULL,
                previous_values TEXT,
                new_values TEXT,
                changed_by TEXT,
                change_reason TEXT,
                changed_at TEXT NOT NULL
            )
        """)

        # Fetch coverage
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS fetch_runs (
                run_id TEXT PRIMARY KEY,
                scope TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                partitioned INTEGER DEFAULT 0,
                unique_count INTEGER DEFAULT 0,
                duplicates_collapsed INTEGER DEFAULT 0,
                out_of_window INTEGER DEFAULT 0,
                pages_fetched INTEGER DEFAULT 0,
                inserted INTEGER DEFAULT 0,
                updated INTEGER DEFAULT 0,
                is_complete INTEGER DEFAULT 0,
                cancelled INTEGER DEFAULT 0,
                errors TEXT DEFAULT '[]'
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS fetch_slices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                combination TEXT NOT NULL,
                status TEXT NOT NULL,
                unique_count INTEGER DEFAULT 0,
                occurrences INTEGER DEFAULT 0,
                pages INTEGER DEFAULT 0,
                truncated INTEGER DEFAULT 0,
                possibly_capped INTEGER DEFAULT 0,
                error TEXT
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_fetch_slices_run ON fetch_slices(run_id)")

        # Exception buckets
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS billing_exceptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                bucket TEXT NOT NULL,
                transaction_id TEXT NOT NULL,
                reason TEXT,
                message TEXT NOT NULL,
                details TEXT DEFAULT '{}',
                run_id TEXT,
                occurrences INTEGER DEFAULT 1,
                first_seen_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                resolved_at TEXT,
                UNIQUE(bucket, transaction_id)
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_billing_exceptions_open
            ON billing_exceptions(bucket, resolved_at)
        """)

        conn.commit()
        logger.debug(f"Ledger tables initialized at {db_path}")
    finally:
        conn.close()


# =============================================================================
# Transactions
# =============================================================================

_UPSERT_TRANSACTION_SQL = """
    INSERT INTO transactions (
        transaction_id, amount, currency_code, charge_date, transaction_type,
        fee_type, reference_type, reference_id, invoiced_status,
        upstream_invoice_id, upstream_invoice_date, invoice_type,
        fulfillment_center, additional_details, markup_status,
        first_seen_at, updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
    ON CONFLICT(transaction_id) DO UPDATE SET
        amount = excluded.amount,
        currency_code = excluded.currency_code,
        transaction_type = COALESCE(excluded.transaction_type, transactions.transaction_type),
        fee_type = excluded.fee_type,
        invoiced_status = MAX(transactions.invoiced_status, excluded.invoiced_status),
        upstream_invoice_id = COALESCE(excluded.upstream_invoice_id, transactions.upstream_invoice_id),
        upstream_invoice_date = COALESCE(excluded.upstream_invoice_date, transactions.upstream_invoice_date),
        invoice_type = COALESCE(excluded.invoice_type, transactions.invoice_type),
        fulfillment_center = COALESCE(excluded.fulfillment_center, transactions.fulfillment_center),
        additional_details = excluded.additional_details,
        markup_status = CASE
            WHEN transactions.amount != excluded.amount
                 AND transactions.markup_status != 'skipped' THEN 'pending'
            ELSE transactions.markup_status
        END,
        updated_at = excluded.updated_at
"""


def upsert_transactions(
    records: Sequence[TransactionRecord],
    db_path: Path = DEFAULT_DB_PATH,
) -> UpsertResult:
    """Insert or update transactions by id in one database transaction.

    Re-fetching the same transaction never creates a second row. Upstream
    fields are refreshed; attribution, linking and markup columns are never
    touched (a changed amount sends markup back to pending).

    Args:
        records: Normalized upstream transactions
        db_path: Path to database

    Returns:
        UpsertResult with inserted/updated counts and changed-row collisions
    """
    result = UpsertResult()
    if not records:
        return result

    # Last occurrence wins within a batch
    by_id: Dict[str, TransactionRecord] = {}
    for record in records:
        by_id[record.transaction_id] = record
    ids = list(by_id)

    conn = get_connection(db_path)
    try:
        existing: Dict[str, sqlite3.Row] = {}
        for chunk in _chunks(ids):
            placeholders = ",".join("?" * len(chunk))
            rows = conn.execute(
                f"SELECT transaction_id, amount, invoiced_status, upstream_invoice_id "
                f"FROM transactions WHERE transaction_id IN ({placeholders})",
                list(chunk),
            ).fetchall()
            existing.update({row["transaction_id"]: row for row in rows})

        now = _now()
        params = []
        for tx_id, record in by_id.items():
            row = existing.get(tx_id)
            if row is None:
                result.inserted += 1
            else:
                result.updated += 1
                changed = {}
                if Decimal(row["amount"]) != record.amount:
                    changed["amount"] = (row["amount"], str(record.amount))
                if record.upstream_invoice_id is not None and row["upstream_invoice_id"] not in (None, record.upstream_invoice_id):
                    changed["upstream_invoice_id"] = (row["upstream_invoice_id"], record.upstream_invoice_id)
                if changed:
                    result.collisions.append(DuplicateIdCollision(
                        f"Transaction {tx_id} re-fetched with changed upstream values",
                        transaction_id=tx_id,
                        reference_id=record.reference_id,
                        details={"changed": changed},
                    ))
            params.append((
                tx_id,
                _amount_text(record.amount),
                record.currency_code,
                record.charge_date.isoformat(),
                record.transaction_type,
                record.fee_type,
                record.reference_type,
                record.reference_id,
                1 if record.invoiced_status else 0,
                record.upstream_invoice_id,
                _iso(record.upstream_invoice_date),
                record.invoice_type,
                record.fulfillment_center,
                json.dumps(record.additional_details, default=str),
                now,
                now,
            ))

        with conn:
            conn.executemany(_UPSERT_TRANSACTION_SQL, params)
    finally:
        conn.close()

    for collision in result.collisions:
        logger.warning(collision.message, extra_fields=collision.details)
    return result


def _row_to_transaction(row: sqlite3.Row) -> LedgerTransaction:
    def dec(value):
        return Decimal(value) if value is not None else None

    return LedgerTransaction(
        transaction_id=row["transaction_id"],
        amount=Decimal(row["amount"]),
        currency_code=row["currency_code"] or "USD",
        charge_date=row["charge_date"],
        transaction_type=row["transaction_type"],
        fee_type=row["fee_type"] or "",
        reference_type=row["reference_type"] or "",
        reference_id=row["reference_id"] or "",
        invoiced_status=bool(row["invoiced_status"]),
        upstream_invoice_id=row["upstream_invoice_id"],
        upstream_invoice_date=row["upstream_invoice_date"],
        invoice_type=row["invoice_type"],
        fulfillment_center=row["fulfillment_center"],
        additional_details=json.loads(row["additional_details"]) if row["additional_details"] else {},
        client_id=row["client_id"],
        attribution_method=row["attribution_method"],
        internal_invoice_id=row["internal_invoice_id"],
        internal_invoice_date=row["internal_invoice_date"],
        billed_amount=dec(row["billed_amount"]),
        markup_amount=dec(row["markup_amount"]),
        markup_percentage=dec(row["markup_percentage"]),
        markup_rule_id=row["markup_rule_id"],
        markup_status=row["markup_status"] or MarkupStatus.PENDING,
        first_seen_at=row["first_seen_at"],
        updated_at=row["updated_at"],
    )


def get_transaction(transaction_id: str, db_path: Path = DEFAULT_DB_PATH) -> Optional[LedgerTransaction]:
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM transactions WHERE transaction_id = ?", (transaction_id,)
        ).fetchone()
        return _row_to_transaction(row) if row else None
    finally:
        conn.close()


def list_transactions(
    db_path: Path = DEFAULT_DB_PATH,
    client_id: Optional[str] = None,
    attributed: Optional[bool] = None,
    linked: Optional[bool] = None,
    markup_statuses: Optional[Sequence[str]] = None,
    transaction_ids: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
) -> List[LedgerTransaction]:
    """List transactions with optional filters, ordered by charge date then id.

    Args:
        db_path: Path to database
        client_id: Only this client's transactions
        attributed: True = client_id set, False = client_id NULL
        linked: True = internal invoice set, False = not linked yet
        markup_statuses: Only these markup statuses
        transaction_ids: Only these ids
        limit: Maximum rows
    """
    sql = "SELECT * FROM transactions WHERE 1=1"
    params: List[Any] = []
    if client_id is not None:
        sql += " AND client_id = ?"
        params.append(client_id)
    if attributed is True:
        sql += " AND client_id IS NOT NULL"
    elif attributed is False:
        sql += " AND client_id IS NULL"
    if linked is True:
        sql += " AND internal_invoice_id IS NOT NULL"
    elif linked is False:
        sql += " AND internal_invoice_id IS NULL"
    if markup_statuses:
        sql += f" AND markup_status IN ({','.join('?' * len(markup_statuses))})"
        params.extend(markup_statuses)
    if transaction_ids is not None:
        if not transaction_ids:
            return []
        results: List[LedgerTransaction] = []
        for chunk in _chunks(list(transaction_ids)):
            results.extend(_query_transactions(
                sql + f" AND transaction_id IN ({','.join('?' * len(chunk))})",
                params + list(chunk),
                db_path,
            ))
        results.sort(key=lambda t: (t.charge_date, t.transaction_id))
        return results[:limit] if limit else results
    sql += " ORDER BY charge_date, transaction_id"
    if limit:
        sql += " LIMIT ?"
        params.append(limit)
    return _query_transactions(sql, params, db_path)


def _query_transactions(sql: str, params: List[Any], db_path: Path) -> List[LedgerTransaction]:
    conn = get_connection(db_path)
    try:
        return [_row_to_transaction(row) for row in conn.execute(sql, params).fetchall()]
    finally:
        conn.close()


def count_transactions(db_path: Path = DEFAULT_DB_PATH, attributed: Optional[bool] = None) -> int:
    sql = "SELECT COUNT(*) FROM transactions"
    if attributed is True:
        sql += " WHERE client_id IS NOT NULL"
    elif attributed is False:
        sql += " WHERE client_id IS NULL"
    conn = get_connection(db_path)
    try:
        return conn.execute(sql).fetchone()[0]
    finally:
        conn.close()


# -----------------------------------------------------------------------------
# Attribution writes
# -----------------------------------------------------------------------------

def assign_client_ids(
    assignments: Dict[str, Tuple[str, AttributionMethod]],
    db_path: Path = DEFAULT_DB_PATH,
) -> List[str]:
    """Set client ids on still-unattributed transactions.

    Guarded by `client_id IS NULL`: an already attributed row is never
    changed here, so repeated or concurrent runs are harmless.

    Args:
        assignments: transaction_id -> (client_id, method)

    Returns:
        Ids of the rows actually updated
    """
    updated: List[str] = []
    if not assignments:
        return updated
    now = _now()
    conn = get_connection(db_path)
    try:
        with conn:
            for tx_id, (client_id, method) in assignments.items():
                cursor = conn.execute(
                    """
                    UPDATE transactions
                    SET client_id = ?, attribution_method = ?, updated_at = ?
                    WHERE transaction_id = ? AND client_id IS NULL
                    """,
                    (client_id, method.value, now, tx_id),
                )
                if cursor.rowcount:
                    updated.append(tx_id)
    finally:
        conn.close()
    return updated


def overwrite_client_id(
    transaction_id: str,
    expected_client_id: str,
    new_client_id: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> Tuple[bool, Optional[str]]:
    """Replace an attributed client id (correction mode only).

    Guarded by the expected current value so a concurrent change is not
    clobbered. Never sets NULL. The internal invoice link belonged to the
    previous owner, so it is cleared in the same write and the transaction
    goes back to the linker.

    Returns:
        (overwritten, internal invoice id the transaction was unlinked from)
    """
    if not new_client_id:
        raise ValueError("Correction cannot clear a client id")
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                "SELECT internal_invoice_id FROM transactions WHERE transaction_id = ? AND client_id = ?",
                (transaction_id, expected_client_id),
            ).fetchone()
            if row is None:
                conn.rollback()
                return False, None
            conn.execute(
                """
                UPDATE transactions
                SET client_id = ?, attribution_method = ?, markup_status = 'pending',
                    internal_invoice_id = NULL, internal_invoice_date = NULL, updated_at = ?
                WHERE transaction_id = ? AND client_id = ?
                """,
                (new_client_id, AttributionMethod.CORRECTION.value, _now(), transaction_id, expected_client_id),
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        return True, row["internal_invoice_id"]
    finally:
        conn.close()


# -----------------------------------------------------------------------------
# Linking writes
# -----------------------------------------------------------------------------

def link_transactions(
    links: Sequence[Tuple[str, InternalInvoice, int]],
    db_path: Path = DEFAULT_DB_PATH,
) -> List[str]:
    """Link transactions to internal invoices.

    For each (transaction_id, internal invoice, upstream invoice id): set the
    transaction's internal invoice only if it has none, then append the
    upstream invoice id to the internal invoice's id set if absent. Both
    writes commit together.

    Returns:
        Ids of the transactions actually linked
    """
    linked: List[str] = []
    if not links:
        return linked
    now = _now()
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            for tx_id, invoice, upstream_invoice_id in links:
                cursor = conn.execute(
                    """
                    UPDATE transactions
                    SET internal_invoice_id = ?, internal_invoice_date = ?, updated_at = ?
                    WHERE transaction_id = ? AND internal_invoice_id IS NULL
                    """,
                    (invoice.internal_invoice_id, invoice.invoice_date.isoformat(), now, tx_id),
                )
                if not cursor.rowcount:
                    continue
                linked.append(tx_id)
                row = conn.execute(
                    "SELECT upstream_invoice_ids FROM internal_invoices WHERE internal_invoice_id = ?",
                    (invoice.internal_invoice_id,),
                ).fetchone()
                current = json.loads(row["upstream_invoice_ids"]) if row and row["upstream_invoice_ids"] else []
                if upstream_invoice_id not in current:
                    current.append(upstream_invoice_id)
                    conn.execute(
                        "UPDATE internal_invoices SET upstream_invoice_ids = ?, updated_at = ? WHERE internal_invoice_id = ?",
                        (json.dumps(current), now, invoice.internal_invoice_id),
                    )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
    finally:
        conn.close()
    return linked


def clear_internal_invoice_links(transaction_ids: Sequence[str], db_path: Path = DEFAULT_DB_PATH) -> int:
    """Unlink transactions. Upstream id sets on internal invoices are left as is."""
    if not transaction_ids:
        return 0
    count = 0
    conn = get_connection(db_path)
    try:
        with conn:
            for chunk in _chunks(list(transaction_ids)):
                cursor = conn.execute(
                    f"""
                    UPDATE transactions
                    SET internal_invoice_id = NULL, internal_invoice_date = NULL, updated_at = ?
                    WHERE internal_invoice_id IS NOT NULL
                    AND transaction_id IN ({','.join('?' * len(chunk))})
                    """,
                    [_now()] + list(chunk),
                )
                count += cursor.rowcount
    finally:
        conn.close()
    return count


# -----------------------------------------------------------------------------
# Markup writes
# -----------------------------------------------------------------------------

def write_markup_results(
    results: Sequence[Tuple[str, Decimal, Decimal, Decimal, int]],
    db_path: Path = DEFAULT_DB_PATH,
) -> int:
    """Store calculated markups.

    Args:
        results: (transaction_id, billed, markup, effective percentage, rule id)
    """
    if not results:
        return 0
    now = _now()
    conn = get_connection(db_path)
    try:
        with conn:
            conn.executemany(
                """
                UPDATE transactions
                SET billed_amount = ?, markup_amount = ?, markup_percentage = ?,
                    markup_rule_id = ?, markup_status = 'applied', updated_at = ?
                WHERE transaction_id = ?
                """,
                [(str(billed), str(markup), str(pct), rule_id, now, tx_id)
                 for tx_id, billed, markup, pct, rule_id in results],
            )
    finally:
        conn.close()
    return len(results)


def set_markup_status(
    transaction_ids: Sequence[str],
    status: MarkupStatus,
    db_path: Path = DEFAULT_DB_PATH,
) -> int:
    """Set markup status and clear stale markup amounts."""
    if not transaction_ids:
        return 0
    count = 0
    conn = get_connection(db_path)
    try:
        with conn:
            for chunk in _chunks(list(transaction_ids)):
                cursor = conn.execute(
                    f"""
                    UPDATE transactions
                    SET markup_status = ?, billed_amount = NULL, markup_amount = NULL,
                        markup_percentage = NULL, markup_rule_id = NULL, updated_at = ?
                    WHERE transaction_id IN ({','.join('?' * len(chunk))})
                    """,
                    [status.value, _now()] + list(chunk),
                )
                count += cursor.rowcount
    finally:
        conn.close()
    return count


# =============================================================================
# Owner Join Targets
# =============================================================================

def upsert_shipments(shipments: Sequence[Shipment], db_path: Path = DEFAULT_DB_PATH) -> int:
    now = _now()
    conn = get_connection(db_path)
    try:
        with conn:
            conn.executemany(
                """
                INSERT INTO shipments
                (shipment_id, client_id, ship_option_id, weight_oz, destination_state, destination_country, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(shipment_id) DO UPDATE SET
                    client_id = excluded.client_id,
                    ship_option_id = excluded.ship_option_id,
                    weight_oz = excluded.weight_oz,
                    destination_state = excluded.destination_state,
                    destination_country = excluded.destination_country,
                    updated_at = excluded.updated_at
                """,
                [
                    (s.shipment_id, s.client_id, s.ship_option_id, s.weight_oz,
                     s.destination_state, s.destination_country, now)
                    for s in shipments
                ],
            )
    finally:
        conn.close()
    return len(shipments)


def upsert_returns(returns: Sequence[ReturnOrder], db_path: Path = DEFAULT_DB_PATH) -> int:
    now = _now()
    conn = get_connection(db_path)
    try:
        with conn:
            conn.executemany(
                """
                INSERT INTO returns (return_id, client_id, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(return_id) DO UPDATE SET
                    client_id = excluded.client_id, updated_at = excluded.updated_at
                """,
                [(r.return_id, r.client_id, now) for r in returns],
            )
    finally:
        conn.close()
    return len(returns)


def upsert_receiving_orders(orders: Sequence[ReceivingOrder], db_path: Path = DEFAULT_DB_PATH) -> int:
    now = _now()
    conn = get_connection(db_path)
    try:
        with conn:
            conn.executemany(
                """
                INSERT INTO receiving_orders (receiving_order_id, client_id, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(receiving_order_id) DO UPDATE SET
                    client_id = excluded.client_id, updated_at = excluded.updated_at
                """,
                [(o.receiving_order_id, o.client_id, now) for o in orders],
            )
    finally:
        conn.close()
    return len(orders)


def upsert_products(products: Sequence[Product], db_path: Path = DEFAULT_DB_PATH) -> int:
    now = _now()
    conn = get_connection(db_path)
    try:
        with conn:
            conn.executemany(
                """
                INSERT INTO products (product_id, client_id, variants, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(product_id) DO UPDATE SET
                    client_id = excluded.client_id,
                    variants = excluded.variants,
                    updated_at = excluded.updated_at
                """,
                [(p.product_id, p.client_id, json.dumps(p.variants), now) for p in products],
            )
    finally:
        conn.close()
    return len(products)


_OWNER_TABLES = {
    "shipments": "shipment_id",
    "returns": "return_id",
    "receiving_orders": "receiving_order_id",
}


def lookup_owner_clients(
    table: str,
    ids: Sequence[str],
    db_path: Path = DEFAULT_DB_PATH,
) -> Dict[str, str]:
    """Map owner record ids to client ids for one join table.

    Args:
        table: "shipments", "returns" or "receiving_orders"
        ids: Reference ids to resolve

    Returns:
        id -> client_id for the ids that exist
    """
    key_column = _OWNER_TABLES[table]
    lookup: Dict[str, str] = {}
    unique_ids = list(dict.fromkeys(i for i in ids if i))
    if not unique_ids:
        return lookup
    conn = get_connection(db_path)
    try:
        for chunk in _chunks(unique_ids):
            rows = conn.execute(
                f"SELECT {key_column}, client_id FROM {table} WHERE {key_column} IN ({','.join('?' * len(chunk))})",
                list(chunk),
            ).fetchall()
            lookup.update({row[key_column]: row["client_id"] for row in rows})
    finally:
        conn.close()
    return lookup


def get_inventory_owner_lookup(db_path: Path = DEFAULT_DB_PATH) -> Dict[str, str]:
    """Map inventory ids (from product variants) to client ids."""
    lookup: Dict[str, str] = {}
    conn = get_connection(db_path)
    try:
        for row in conn.execute("SELECT product_id, client_id, variants FROM products").fetchall():
            product = Product(
                product_id=row["product_id"],
                client_id=row["client_id"],
                variants=json.loads(row["variants"] or "[]"),
            )
            for inventory_id in product.inventory_ids():
                lookup[inventory_id] = product.client_id
    finally:
        conn.close()
    return lookup


def get_shipments(shipment_ids: Sequence[str], db_path: Path = DEFAULT_DB_PATH) -> Dict[str, Shipment]:
    """Shipment records by id, for the ids that are synced."""
    shipments: Dict[str, Shipment] = {}
    unique_ids = list(dict.fromkeys(i for i in shipment_ids if i))
    if not unique_ids:
        return shipments
    conn = get_connection(db_path)
    try:
        for chunk in _chunks(unique_ids):
            rows = conn.execute(
                f"SELECT shipment_id, client_id, ship_option_id, weight_oz, destination_state, destination_country "
                f"FROM shipments WHERE shipment_id IN ({','.join('?' * len(chunk))})",
                list(chunk),
            ).fetchall()
            shipments.update({row["shipment_id"]: Shipment(**dict(row)) for row in rows})
    finally:
        conn.close()
    return shipments


# =============================================================================
# Invoices
# =============================================================================

def upsert_upstream_invoices(
    invoices: Sequence[UpstreamInvoiceSummary],
    db_path: Path = DEFAULT_DB_PATH,
) -> int:
    now = _now()
    conn = get_connection(db_path)
    try:
        with conn:
            conn.executemany(
                """
                INSERT INTO upstream_invoices (invoice_id, invoice_date, invoice_type, amount, currency_code, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(invoice_id) DO UPDATE SET
                    invoice_date = excluded.invoice_date,
                    invoice_type = excluded.invoice_type,
                    amount = excluded.amount,
                    currency_code = excluded.currency_code,
                    updated_at = excluded.updated_at
                """,
                [(i.invoice_id, i.invoice_date.isoformat(), i.invoice_type, str(i.amount), i.currency_code, now)
                 for i in invoices],
            )
    finally:
        conn.close()
    return len(invoices)


def get_upstream_invoice_dates(db_path: Path = DEFAULT_DB_PATH) -> Dict[int, date]:
    """Map upstream invoice id -> invoice date."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute("SELECT invoice_id, invoice_date FROM upstream_invoices").fetchall()
        return {row["invoice_id"]: date.fromisoformat(row["invoice_date"]) for row in rows}
    finally:
        conn.close()


def add_internal_invoice(invoice: InternalInvoice, db_path: Path = DEFAULT_DB_PATH) -> InternalInvoice:
    """Create an internal invoice (normally done by the invoice assembler)."""
    now = _now()
    conn = get_connection(db_path)
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO internal_invoices
                (internal_invoice_id, invoice_number, invoice_date, client_id,
                 upstream_invoice_ids, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    invoice.internal_invoice_id,
                    invoice.invoice_number,
                    invoice.invoice_date.isoformat(),
                    invoice.client_id,
                    json.dumps(invoice.upstream_invoice_ids),
                    invoice.status,
                    now,
                    now,
                ),
            )
    finally:
        conn.close()
    return invoice


def _row_to_internal_invoice(row: sqlite3.Row) -> InternalInvoice:
    return InternalInvoice(
        internal_invoice_id=row["internal_invoice_id"],
        invoice_number=row["invoice_number"],
        invoice_date=row["invoice_date"],
        client_id=row["client_id"],
        upstream_invoice_ids=json.loads(row["upstream_invoice_ids"] or "[]"),
        status=row["status"] or "draft",
    )


def get_internal_invoices(db_path: Path = DEFAULT_DB_PATH) -> List[InternalInvoice]:
    conn = get_connection(db_path)
    try:
        rows = conn.execute("SELECT * FROM internal_invoices ORDER BY invoice_date, client_id").fetchall()
        return [_row_to_internal_invoice(row) for row in rows]
    finally:
        conn.close()


def get_internal_invoice(internal_invoice_id: str, db_path: Path = DEFAULT_DB_PATH) -> Optional[InternalInvoice]:
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM internal_invoices WHERE internal_invoice_id = ?", (internal_invoice_id,)
        ).fetchone()
        return _row_to_internal_invoice(row) if row else None
    finally:
        conn.close()


# =============================================================================
# Exception Buckets
# =============================================================================

def record_exceptions(
    errors: Sequence[ReconciliationError],
    run_id: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> int:
    """Park transactions in their exception buckets.

    A transaction holds at most one open bucket: the earliest failing stage
    (unattributable, then unlinkable, then no_markup_rule). Recording an
    earlier bucket supersedes open rows of later ones; recording a later
    bucket while an earlier one is open is skipped.

    Returns:
        Number of bucket rows opened or refreshed
    """
    errors = [e for e in errors if e.bucket and e.transaction_id]
    if not errors:
        return 0
    now = _now()
    recorded = 0
    conn = get_connection(db_path)
    try:
        with conn:
            for error in errors:
                stage = EXCEPTION_BUCKETS.index(error.bucket)
                open_rows = conn.execute(
                    "SELECT bucket FROM billing_exceptions WHERE transaction_id = ? AND resolved_at IS NULL",
                    (error.transaction_id,),
                ).fetchall()
                open_buckets = {row["bucket"] for row in open_rows}
                if any(EXCEPTION_BUCKETS.index(b) < stage for b in open_buckets if b in EXCEPTION_BUCKETS):
                    continue
                later = [b for b in open_buckets if b in EXCEPTION_BUCKETS and EXCEPTION_BUCKETS.index(b) > stage]
                for bucket in later:
                    conn.execute(
                        "UPDATE billing_exceptions SET resolved_at = ? WHERE bucket = ? AND transaction_id = ?",
                        (now, bucket, error.transaction_id),
                    )
                conn.execute(
                    """
                    INSERT INTO billing_exceptions
                    (bucket, transaction_id, reason, message, details, run_id,
                     occurrences, first_seen_at, last_seen_at, resolved_at)
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, NULL)
                    ON CONFLICT(bucket, transaction_id) DO UPDATE SET
                        reason = excluded.reason,
                        message = excluded.message,
                        details = excluded.details,
                        run_id = excluded.run_id,
                        occurrences = billing_exceptions.occurrences + 1,
                        last_seen_at = excluded.last_seen_at,
                        resolved_at = NULL
                    """,
                    (
                        error.bucket,
                        error.transaction_id,
                        getattr(error, "reason", None),
                        error.message,
                        json.dumps(error.to_dict(), default=str),
                        run_id,
                        now,
                        now,
                    ),
                )
                recorded += 1
    finally:
        conn.close()
    return recorded


def resolve_exceptions(
    bucket: str,
    transaction_ids: Sequence[str],
    db_path: Path = DEFAULT_DB_PATH,
) -> int:
    """Close open bucket rows for transactions that now succeeded."""
    if not transaction_ids:
        return 0
    count = 0
    now = _now()
    conn = get_connection(db_path)
    try:
        with conn:
            for chunk in _chunks(list(transaction_ids)):
                cursor = conn.execute(
                    f"""
                    UPDATE billing_exceptions SET resolved_at = ?
                    WHERE bucket = ? AND resolved_at IS NULL
                    AND transaction_id IN ({','.join('?' * len(chunk))})
                    """,
                    [now, bucket] + list(chunk),
                )
                count += cursor.rowcount
    finally:
        conn.close()
    return count


def list_exceptions(
    bucket: Optional[str] = None,
    include_resolved: bool = False,
    limit: int = 500,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[BillingException]:
    sql = "SELECT * FROM billing_exceptions WHERE 1=1"
    params: List[Any] = []
    if bucket:
        sql += " AND bucket = ?"
        params.append(bucket)
    if not include_resolved:
        sql += " AND resolved_at IS NULL"
    sql += " ORDER BY last_seen_at DESC, id DESC LIMIT ?"
    params.append(limit)
    conn = get_connection(db_path)
    try:
        rows = conn.execute(sql, params).fetchall()
    finally:
        conn.close()
    return [
        BillingException(
            id=row["id"],
            bucket=row["bucket"],
            transaction_id=row["transaction_id"],
            reason=row["reason"],
            message=row["message"],
            details=json.loads(row["details"] or "{}"),
            run_id=row["run_id"],
            occurrences=row["occurrences"],
            first_seen_at=row["first_seen_at"],
            last_seen_at=row["last_seen_at"],
            resolved_at=row["resolved_at"],
        )
        for row in rows
    ]


def count_open_exceptions(db_path: Path = DEFAULT_DB_PATH) -> Dict[str, int]:
    """Open exception rows per bucket (every bucket present, zero if empty)."""
    counts = {bucket: 0 for bucket in EXCEPTION_BUCKETS}
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT bucket, COUNT(*) AS n FROM billing_exceptions WHERE resolved_at IS NULL GROUP BY bucket"
        ).fetchall()
    finally:
        conn.close()
    counts.update({row["bucket"]: row["n"] for row in rows})
    return counts
