"""Health check endpoints."""

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, Response

from supportdesk import __version__
from supportdesk.api.dependencies import get_services
from supportdesk.api.services import Services

router = APIRouter()
logger = structlog.get_logger()

_startup_time = datetime.now(timezone.utc)


@router.get("/health")
async def health_check():
    """Returns 200 if the process is up."""
    now = datetime.now(timezone.utc)
    return {
        "status": "healthy",
        "service": "supportdesk",
        "version": __version__,
        "timestamp": now.isoformat(),
        "uptime_seconds": (now - _startup_time).total_seconds(),
    }


@router.get("/ready")
async def readiness_check(response: Response, services: Services = Depends(get_services)):
    """Verifies the ticket store answers and reports realtime/email backlog."""
    checks = {"database": False}
    try:
        await services.store.get_settings()
        checks["database"] = True
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))

    if not all(checks.values()):
        response.status_code = 503
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "online_users": await services.hub.online_count(),
        "pending_emails": services.dispatcher.pending,
    }
