"""FastAPI dependency injection."""
from fastapi import HTTPException, Request, status

from correlation_core.orchestrator import CorrelationOrchestrator


def get_orchestrator(request: Request) -> CorrelationOrchestrator:
    """Orchestrator owned by the application lifespan.

    Raises:
        HTTPException: 503 when the orchestrator has not been started
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Correlation orchestrator not available",
        )
    return orchestrator
