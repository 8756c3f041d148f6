"""API Routes Package."""

from api.routes import health, sync_health, exceptions, markup_rules

__all__ = [
    "health",
    "sync_health",
    "exceptions",
    "markup_rules",
]
