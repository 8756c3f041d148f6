"""FastAPI server for the billing reconciler.

Read-only operator API over the ledger: sync coverage, exception buckets
and markup rules.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health, sync_health, exceptions, markup_rules
from core.config import get_settings
from core.observability import configure_logging, get_logger
from ledger import init_ledger_db

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    configure_logging()
    init_ledger_db(app.state.db_path)
    logger.info(f"Billing API starting up (ledger: {app.state.db_path})")

    yield

    logger.info("Billing API shutting down")


def create_app(db_path: Optional[Path] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_path: Ledger database (defaults to the configured one)
    """
    app = FastAPI(
        title="Billing Reconciler API",
        description="Operator API for transaction sync coverage, exception buckets and markup rules",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.db_path = db_path or get_settings().db_path

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(sync_health.router, tags=["Sync"])
    app.include_router(exceptions.router, prefix="/exceptions", tags=["Exceptions"])
    app.include_router(markup_rules.router, prefix="/markup-rules", tags=["Markup Rules"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
