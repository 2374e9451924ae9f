"""Verdict emitted once per processed event."""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from correlation_core.schemas.rules import Recommendation

if TYPE_CHECKING:
    from correlation_core.behavioral.engine import BehavioralResult
    from correlation_core.collaborators.knowledge import EnrichmentResult
    from correlation_core.graph.engine import CorrelationResult


@dataclass
class RuleMatch:
    """A detection rule the event matched."""
    rule_id: str
    rule_name: str
    confidence: float
    reason: str


@dataclass
class Verdict:
    """Combined behavioral, graph and rule outcome for one event."""
    event_id: str
    matched_rules: List[RuleMatch]
    false_positive_risk: float
    needs_recommendation: bool
    behavioral_result: "BehavioralResult"
    correlation_result: "CorrelationResult"
    enrichment: Optional["EnrichmentResult"]
    processed_at: datetime
    processing_time_ms: float = 0.0
    recommendations: List[Recommendation] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)

    @property
    def risk_score(self) -> float:
        """Highest of the behavioral and graph risk scores."""
        return max(self.behavioral_result.risk_score, self.correlation_result.risk_score)

    def summary(self) -> Dict[str, Any]:
        """Compact JSON-safe view for logs and HTTP responses."""
        return {
            "event_id": self.event_id,
            "matched_rules": [asdict(m) for m in self.matched_rules],
            "false_positive_risk": self.false_positive_risk,
            "needs_recommendation": self.needs_recommendation,
            "behavioral_risk": self.behavioral_result.risk_score,
            "anomalies": len(self.behavioral_result.anomalies),
            "correlation_risk": self.correlation_result.risk_score,
            "correlations": len(self.correlation_result.correlations),
            "threat_chains": [
                {
                    "entities": chain.entities,
                    "pattern": chain.pattern.value,
                    "risk_score": chain.risk_score,
                    "description": chain.description,
                }
                for chain in self.correlation_result.threat_chains
            ],
            "threat_matches": len(self.enrichment.threat_matches) if self.enrichment else 0,
            "recommendations": [r.id for r in self.recommendations],
            "degraded": list(self.degraded),
            "processed_at": self.processed_at.isoformat(),
            "processing_time_ms": self.processing_time_ms,
        }
