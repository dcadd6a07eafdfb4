"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kb_governance import __version__
from kb_governance.api.dependencies import get_orchestrator, get_scheduler
from kb_governance.api.duplicates import router as duplicates_router
from kb_governance.api.governance import router as governance_router
from kb_governance.api.health import router as health_router
from kb_governance.api.sync import router as sync_router
from kb_governance.config import settings
from kb_governance.db.database import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    scheduler = None
    if settings.SYNC_SCHEDULER_ENABLED:
        scheduler = get_scheduler()
        scheduler.start()
    yield
    if scheduler is not None:
        await scheduler.stop()
    get_orchestrator().request_cancel()


app = FastAPI(
    title=settings.APP_NAME,
    description="Knowledge-base mirror sync and content governance issue tracking",
    version=__version__,
    lifespan=lifespan,
)

# Operator dashboards call the API from other origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(sync_router)
app.include_router(governance_router)
app.include_router(duplicates_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic application info."""
    return {
        "name": settings.APP_NAME,
        "version": __version__,
        "docs": "/docs",
        "source_system": settings.SOURCE_SYSTEM,
    }
