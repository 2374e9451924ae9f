"""
Event intake endpoint.
Accepts normalized events and queues them for correlation.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status

from correlation_core.api.dependencies import get_orchestrator
from correlation_core.errors import DuplicateEventError, EventValidationError, IntakeClosedError
from correlation_core.orchestrator import CorrelationOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/events", tags=["events"])


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def submit_event(
    payload: Dict[str, Any] = Body(..., description="Normalized event"),
    orchestrator: CorrelationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Queue a normalized event for correlation.

    **Responses:**
    - **202**: accepted and queued
    - **409**: an event with this id was already accepted
    - **422**: the event is malformed
    - **503**: the orchestrator is shutting down
    """
    try:
        event = await orchestrator.submit(payload)
    except EventValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": e.message, **e.details},
        )
    except DuplicateEventError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except IntakeClosedError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    return {
        "status": "accepted",
        "event_id": event.id,
        "queue_depth": orchestrator.queue_depth,
    }
