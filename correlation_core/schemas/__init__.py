"""Data model shared by the engines, orchestrator and API."""
from correlation_core.schemas.events import (
    EntityInfo,
    EntityRelationship,
    EntityType,
    EventSeverity,
    NormalizedEvent,
    RelationshipType,
)
from correlation_core.schemas.rules import (
    ConditionOperator,
    DetectionRule,
    Feedback,
    Priority,
    Recommendation,
    RecommendationType,
    RuleCondition,
    RuleLogic,
    RuleMetadata,
    RulePerformance,
    RuleStatus,
)

__all__ = [
    "EntityInfo",
    "EntityRelationship",
    "EntityType",
    "EventSeverity",
    "NormalizedEvent",
    "RelationshipType",
    "ConditionOperator",
    "DetectionRule",
    "Feedback",
    "Priority",
    "Recommendation",
    "RecommendationType",
    "RuleCondition",
    "RuleLogic",
    "RuleMetadata",
    "RulePerformance",
    "RuleStatus",
]
