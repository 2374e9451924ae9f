"""Detection rule registry and pipeline statistics endpoints."""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from correlation_core.api.dependencies import get_orchestrator
from correlation_core.orchestrator import CorrelationOrchestrator
from correlation_core.schemas.rules import DetectionRule

router = APIRouter(prefix="/api/v1", tags=["rules"])


@router.get("/rules", response_model=List[DetectionRule])
async def list_rules(
    active_only: bool = Query(False, description="Only rules with status active"),
    orchestrator: CorrelationOrchestrator = Depends(get_orchestrator),
) -> List[DetectionRule]:
    return orchestrator.active_rules() if active_only else orchestrator.rules()


@router.post("/rules", response_model=DetectionRule, status_code=status.HTTP_201_CREATED)
async def register_rule(
    rule: DetectionRule,
    orchestrator: CorrelationOrchestrator = Depends(get_orchestrator),
) -> DetectionRule:
    return orchestrator.register_rule(rule)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_rule(
    rule_id: str,
    orchestrator: CorrelationOrchestrator = Depends(get_orchestrator),
) -> None:
    if not orchestrator.remove_rule(rule_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Rule {rule_id} not found")


@router.get("/stats")
async def get_stats(
    orchestrator: CorrelationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Pipeline counters, state sizes and engine metrics."""
    return orchestrator.get_stats()
