"""Health check endpoints for the governance API."""

from typing import Any

from fastapi import APIRouter
from sqlalchemy import text

from kb_governance.api.dependencies import get_orchestrator, get_source_client
from kb_governance.db.database import async_session_maker

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    """Basic health check - returns ok if the service is running."""
    return {"status": "ok"}


@router.get("/health/ready")
async def ready() -> dict[str, Any]:
    """
    Readiness check - verifies dependent services are available.

    Checks:
    - Database: local mirror and governance tables
    - Source: knowledge-base API reachable with the configured token
    """
    services: dict[str, str] = {}
    all_ok = True

    # Check database
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
        services["database"] = "ok"
    except Exception as e:
        services["database"] = f"error: {type(e).__name__}"
        all_ok = False

    # Check source API
    try:
        if await get_source_client().check_connection():
            services["source"] = "ok"
        else:
            services["source"] = "error: not reachable"
            all_ok = False
    except Exception as e:
        services["source"] = f"error: {type(e).__name__}"
        all_ok = False

    status = "ready" if all_ok else "degraded"
    return {"status": status, "services": services, "sync_running": get_orchestrator().is_running}
