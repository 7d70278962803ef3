"""Health check endpoints.

Provides:
- Basic liveness probe (/health)
- Detailed component status (/health/status)
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends
import logging

from app.config import get_settings
from app.dependencies import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("", response_model=dict[str, Any])
async def health_check(services: Services = Depends(get_services)) -> dict[str, Any]:
    """
    Liveness probe with a short summary of engine state.
    """
    settings = get_settings()
    running = services.engine.get_running_runs()
    return {
        "status": "ok",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "workflows": len(services.registry),
        "active_runs": len(running),
        "pending_approvals": len(services.engine.approval_gate),
    }


@router.get("/status", response_model=dict[str, Any])
async def system_status(services: Services = Depends(get_services)) -> dict[str, Any]:
    """
    Detailed system status including uptime, versions, and component status.
    Intended for monitoring dashboards.
    """
    settings = get_settings()
    uptime_seconds = time.monotonic() - _start_time
    hours, remainder = divmod(int(uptime_seconds), 3600)
    minutes, seconds = divmod(remainder, 60)

    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime": f"{hours}h {minutes}m {seconds}s",
        "uptime_seconds": round(uptime_seconds, 1),
        "python": {
            "version": sys.version,
            "platform": platform.platform(),
        },
        "components": {
            "engine": {"running_runs": services.engine.get_running_runs()},
            "handlers": services.engine.executor.registry.list_all(),
            "triggers": services.triggers.get_status(),
            "notifications": services.notifications.get_status(),
            "event_bus": settings.EVENT_BUS_BACKEND,
        },
    }
