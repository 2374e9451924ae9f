"""Analyst feedback endpoint."""
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from correlation_core.api.dependencies import get_orchestrator
from correlation_core.orchestrator import CorrelationOrchestrator
from correlation_core.schemas.rules import Feedback

router = APIRouter(prefix="/api/v1/feedback", tags=["feedback"])


@router.post("", status_code=status.HTTP_200_OK)
async def submit_feedback(
    feedback: Feedback,
    orchestrator: CorrelationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Report a false positive, false negative or confirmed detection.

    False positives lower baseline confidence of the named entity (or of
    every entity of the referenced event); a rule id updates that rule's
    performance counters.
    """
    return orchestrator.apply_feedback(feedback)
