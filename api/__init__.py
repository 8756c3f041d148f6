"""API Package.

FastAPI operator API for the billing reconciler.
"""

from api.server import create_app, app

__all__ = [
    "create_app",
    "app",
]
