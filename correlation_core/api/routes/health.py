"""
Health check endpoints.
Provides liveness, readiness and the Prometheus scrape endpoint.
"""
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse

from correlation_core.config import settings
from correlation_core.monitoring.metrics import get_metrics

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> Dict[str, Any]:
    """Liveness check - returns 200 if the process is serving."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.app_name,
        "version": settings.app_version,
    }


@router.get("/ready")
async def readiness_check(request: Request) -> JSONResponse:
    """
    Readiness check - 200 while the orchestrator accepts events, 503 otherwise.
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    ready = orchestrator is not None and orchestrator.accepting
    checks = {
        "orchestrator": "accepting" if ready else "unavailable",
    }
    if orchestrator is not None:
        checks["queue_depth"] = orchestrator.queue_depth
        checks["active_rules"] = len(orchestrator.active_rules())

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "not_ready",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
            "service": settings.app_name,
            "version": settings.app_version,
        },
    )


@router.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    content, content_type = get_metrics()
    return Response(content=content, media_type=content_type)
