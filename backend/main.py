"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api import connections, sync, usage
from database import init_db
from logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables on startup and stop sync workers on shutdown."""
    try:
        init_db()
    except Exception:
        logger.error("Database initialization failed on startup", exc_info=True)
        raise
    yield
    orchestrator = sync._default_orchestrator
    if orchestrator is not None:
        logger.info("Waiting for queued syncs to finish")
        orchestrator.shutdown(wait=True)


app = FastAPI(
    title="Treasury Sync",
    description="Provider sync and reconciliation engine for bank connections",
    version="0.1.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(connections.router)
app.include_router(sync.router)
app.include_router(usage.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
