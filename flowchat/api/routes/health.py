"""Health check endpoints."""

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter

from flowchat import __version__

router = APIRouter()
logger = structlog.get_logger()

# Track startup time
_startup_time = datetime.now(timezone.utc)


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.
    Returns 200 if the service is running.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "healthy",
        "service": "flowchat-relay",
        "version": __version__,
        "timestamp": now.isoformat(),
        "uptime_seconds": (now - _startup_time).total_seconds(),
    }


@router.get("/live")
async def liveness_check():
    """Returns 200 if the process is alive."""
    return {"status": "alive"}
