"""Shared route dependencies."""

from pathlib import Path

from fastapi import Request


def get_db_path(request: Request) -> Path:
    """Ledger database the app was created with."""
    return request.app.state.db_path
