"""Pydantic schemas for detection rules, recommendations and analyst feedback."""
import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _generate_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def generate_rule_id() -> str:
    return _generate_id("rule")


def generate_recommendation_id() -> str:
    return _generate_id("rec")


def generate_feedback_id() -> str:
    return _generate_id("fb")


class RuleStatus(str, Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    TESTING = "testing"
    DISABLED = "disabled"
    DEPRECATED = "deprecated"


class RuleCategory(str, Enum):
    MALWARE = "malware"
    LATERAL_MOVEMENT = "lateral_movement"
    PERSISTENCE = "persistence"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    DEFENSE_EVASION = "defense_evasion"
    CREDENTIAL_ACCESS = "credential_access"
    DISCOVERY = "discovery"
    COLLECTION = "collection"
    COMMAND_AND_CONTROL = "command_and_control"
    EXFILTRATION = "exfiltration"
    IMPACT = "impact"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class ActionType(str, Enum):
    ALERT = "alert"
    BLOCK = "block"
    QUARANTINE = "quarantine"
    LOG = "log"
    NOTIFY = "notify"
    ESCALATE = "escalate"
    SUPPRESS = "suppress"


class RecommendationType(str, Enum):
    NEW_RULE = "new_rule"
    TUNE_RULE = "tune_rule"
    SUPPRESS_RULE = "suppress_rule"
    UPDATE_RULE = "update_rule"
    DELETE_RULE = "delete_rule"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RuleCondition(BaseModel):
    """A single weighted condition over a dotted event field path."""

    field: str = Field(..., min_length=1, description="Dotted path into the event, e.g. context.action")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Comparison operand")
    weight: float = Field(default=1.0, ge=0, description="Relative weight in the match score")
    required: bool = Field(default=False, description="Rule cannot match unless this holds")


class RuleAction(BaseModel):
    type: ActionType = ActionType.ALERT
    parameters: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 1


class RuleLogic(BaseModel):
    query: str = Field(default="", description="Free-form detection query")
    conditions: List[RuleCondition] = Field(default_factory=list)
    actions: List[RuleAction] = Field(default_factory=list)


class RuleMetadata(BaseModel):
    author: str = Field(default="")
    tags: List[str] = Field(default_factory=list)
    mitre_techniques: List[str] = Field(default_factory=list)
    data_sources: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.8, ge=0, le=1)
    false_positive_rate: float = Field(default=0.1, ge=0, le=1)


class RulePerformance(BaseModel):
    """Feedback-driven rule quality counters."""

    total_matches: int = 0
    true_positives: int = 0
    false_positives: int = 0
    false_negatives: int = 0
    accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    last_updated: Optional[datetime] = None


class DetectionRule(BaseModel):
    """Detection rule evaluated against every processed event."""

    id: str = Field(default_factory=generate_rule_id, min_length=1)
    name: str = Field(..., min_length=1)
    description: str = Field(default="")
    version: str = Field(default="1.0.0")
    status: RuleStatus = Field(default=RuleStatus.ACTIVE)
    category: RuleCategory = Field(default=RuleCategory.MALWARE)
    technique: str = Field(default="", description="MITRE ATT&CK technique id")
    logic: RuleLogic = Field(default_factory=RuleLogic)
    metadata: RuleMetadata = Field(default_factory=RuleMetadata)
    performance: RulePerformance = Field(default_factory=RulePerformance)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE


class RecommendationImpact(BaseModel):
    detection_improvement: float = 0.3
    false_positive_reduction: float = 0.2
    resource_impact: float = 0.1
    implementation_effort: float = 0.4
    risk_level: str = "medium"


class RecommendationAction(BaseModel):
    type: str = Field(default="create_rule")
    description: str = Field(default="")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    automated: bool = False
    estimated_time: int = Field(default=30, description="Estimated minutes to implement")


class RecommendationMetadata(BaseModel):
    source: str = Field(default="correlation-core")
    reasoning: str = Field(default="")
    alternatives: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    rollback_plan: str = Field(default="Revert to previous configuration")


class Recommendation(BaseModel):
    """Detection improvement suggested after a high-confidence match."""

    id: str = Field(default_factory=generate_recommendation_id)
    type: RecommendationType = Field(default=RecommendationType.NEW_RULE)
    priority: Priority = Field(default=Priority.MEDIUM)
    title: str = Field(default="Detection recommendation")
    description: str = Field(default="")
    confidence: float = Field(default=0.8, ge=0, le=1)
    event_id: Optional[str] = None
    rule_id: Optional[str] = None
    impact: RecommendationImpact = Field(default_factory=RecommendationImpact)
    actions: List[RecommendationAction] = Field(default_factory=list)
    metadata: RecommendationMetadata = Field(default_factory=RecommendationMetadata)
    created_at: datetime = Field(default_factory=_utcnow)


class Feedback(BaseModel):
    """Analyst feedback on a processed event."""

    id: str = Field(default_factory=generate_feedback_id)
    event_id: Optional[str] = Field(None, description="Event the feedback refers to")
    entity_id: Optional[str] = Field(None, description="Entity whose baseline produced the alert")
    rule_id: Optional[str] = Field(None, description="Rule whose match is being judged")
    is_false_positive: bool = Field(default=False)
    is_false_negative: bool = Field(default=False, description="A rule missed this event")
    comment: str = Field(default="")
    received_at: datetime = Field(default_factory=_utcnow)
