"""
Fetch Run Persistence

Stores each FetchRunReport in fetch_runs / fetch_slices so sync health can
be inspected after the fact.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config import DEFAULT_DB_PATH
from ledger.db import get_connection

from .models import FetchRunReport


def save_fetch_run(report: FetchRunReport, db_path: Path = DEFAULT_DB_PATH) -> None:
    """Insert or replace a run report and its slices."""
    conn = get_connection(db_path)
    try:
        with conn:
            conn.execute("""
                INSERT OR REPLACE INTO fetch_runs
                (run_id, scope, started_at, completed_at, partitioned, unique_count,
                 duplicates_collapsed, out_of_window, pages_fetched, inserted, updated,
                 is_complete, cancelled, errors)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                report.run_id,
                json.dumps(report.scope),
                report.started_at.isoformat(),
                report.completed_at.isoformat() if report.completed_at else None,
                1 if report.partitioned else 0,
                report.unique_count,
                report.duplicates_collapsed,
                report.out_of_window,
                report.pages_fetched,
                report.inserted,
                report.updated,
                1 if report.is_complete else 0,
                1 if report.cancelled else 0,
                json.dumps(report.errors, default=str),
            ))
            conn.execute("DELETE FROM fetch_slices WHERE run_id = ?", (report.run_id,))
            conn.executemany("""
                INSERT INTO fetch_slices
                (run_id, combination, status, unique_count, occurrences, pages,
                 truncated, possibly_capped, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    report.run_id,
                    s.combination,
                    s.status.value,
                    s.unique_count,
                    s.occurrences,
                    s.pages,
                    1 if s.truncated else 0,
                    1 if s.possibly_capped else 0,
                    json.dumps(s.error, default=str) if s.error else None,
                )
                for s in report.slices
            ])
    finally:
        conn.close()


def _row_to_run(row, slices: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    run = {
        "run_id": row["run_id"],
        "scope": json.loads(row["scope"]),
        "started_at": row["started_at"],
        "completed_at": row["completed_at"],
        "partitioned": bool(row["partitioned"]),
        "unique_count": row["unique_count"],
        "duplicates_collapsed": row["duplicates_collapsed"],
        "out_of_window": row["out_of_window"],
        "pages_fetched": row["pages_fetched"],
        "inserted": row["inserted"],
        "updated": row["updated"],
        "is_complete": bool(row["is_complete"]),
        "cancelled": bool(row["cancelled"]),
        "errors": json.loads(row["errors"] or "[]"),
    }
    if slices is not None:
        run["slices"] = slices
    return run


def get_fetch_slices(run_id: str, db_path: Path = DEFAULT_DB_PATH) -> List[Dict[str, Any]]:
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM fetch_slices WHERE run_id = ? ORDER BY id", (run_id,)
        ).fetchall()
    finally:
        conn.close()
    return [
        {
            "combination": row["combination"],
            "status": row["status"],
            "unique_count": row["unique_count"],
            "occurrences": row["occurrences"],
            "pages": row["pages"],
            "truncated": bool(row["truncated"]),
            "possibly_capped": bool(row["possibly_capped"]),
            "error": json.loads(row["error"]) if row["error"] else None,
        }
        for row in rows
    ]


def get_fetch_run(run_id: str, db_path: Path = DEFAULT_DB_PATH) -> Optional[Dict[str, Any]]:
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM fetch_runs WHERE run_id = ?", (run_id,)).fetchone()
    finally:
        conn.close()
    if not row:
        return None
    return _row_to_run(row, get_fetch_slices(run_id, db_path))


def get_recent_fetch_runs(limit: int = 10, db_path: Path = DEFAULT_DB_PATH) -> List[Dict[str, Any]]:
    """Most recent runs first, without slice detail."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM fetch_runs ORDER BY started_at DESC LIMIT ?", (limit,)
        ).fetchall()
    finally:
        conn.close()
    return [_row_to_run(row) for row in rows]
