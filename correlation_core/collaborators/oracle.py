"""
Rule oracle collaborators.
A RuleOracle decides whether a detection rule matches an event and
proposes recommendations after high-confidence matches. HttpRuleOracle
delegates to a remote model endpoint; HeuristicRuleOracle evaluates the
rule's weighted conditions locally.
"""
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from correlation_core.behavioral.engine import BehavioralResult
from correlation_core.collaborators.knowledge import EnrichmentResult, KnowledgeContext
from correlation_core.config import settings
from correlation_core.graph.engine import CorrelationResult
from correlation_core.monitoring.metrics import track_oracle_call
from correlation_core.observability import get_logger
from correlation_core.schemas.events import NormalizedEvent
from correlation_core.schemas.rules import (
    ConditionOperator,
    DetectionRule,
    Priority,
    Recommendation,
    RecommendationAction,
    RecommendationImpact,
    RecommendationMetadata,
    RecommendationType,
    RuleCondition,
)
from correlation_core.schemas.verdict import RuleMatch

logger = get_logger(__name__)

ORACLE_CONTRACT_VERSION = "1.0"

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\[{][\s\S]*[\]}])\s*```")
_BARE_JSON = re.compile(r"([\[{][\s\S]*[\]}])")


def _is_server_error(error: BaseException) -> bool:
    return isinstance(error, httpx.HTTPStatusError) and error.response.status_code >= 500


def _clamp(value: Any) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


def extract_json(text: str) -> Any:
    """
    Parse JSON from model output, tolerating markdown fences and prose.

    Raises:
        ValueError: no parsable JSON object or array in ``text``
    """
    match = _FENCED_JSON.search(text) or _BARE_JSON.search(text)
    candidate = match.group(1) if match else text
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in oracle response: {text[:200]!r}") from e


@dataclass
class RuleEvaluation:
    """Oracle decision for one rule and one event."""
    matches: bool
    confidence: float
    reason: str
    suggestions: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.matches = bool(self.matches)
        self.confidence = _clamp(self.confidence)

    @classmethod
    def neutral(cls, reason: str) -> "RuleEvaluation":
        return cls(matches=False, confidence=0.0, reason=reason)


@dataclass
class EvaluationContext:
    """Analysis results made available to rule evaluation."""
    behavioral: BehavioralResult
    correlation: CorrelationResult
    enrichment: Optional[EnrichmentResult] = None

    def summary(self) -> Dict[str, Any]:
        enrichment = self.enrichment or EnrichmentResult()
        return {
            "behavioral": {
                "anomalies": len(self.behavioral.anomalies),
                "risk_score": self.behavioral.risk_score,
                "confidence": self.behavioral.confidence,
            },
            "correlation": {
                "correlations": len(self.correlation.correlations),
                "network_strength": self.correlation.network_strength,
                "threat_chains": len(self.correlation.threat_chains),
                "patterns": [c.pattern.value for c in self.correlation.threat_chains],
                "risk_score": self.correlation.risk_score,
            },
            "enrichment": {
                "threat_matches": len(enrichment.threat_matches),
                "attack_patterns": len(enrichment.attack_patterns),
            },
        }


@dataclass
class RuleResults:
    """Outcome of evaluating every active rule against an event."""
    matched_rules: List[RuleMatch] = field(default_factory=list)
    needs_recommendation: bool = False
    false_positive_risk: float = 0.0
    context: Optional[EvaluationContext] = None


def build_recommendation(
    data: Dict[str, Any],
    event_id: Optional[str],
    rule_id: Optional[str],
    source: str,
) -> Recommendation:
    """Tolerant construction of a Recommendation from oracle output."""
    impact = data.get("impact") or {}
    actions = []
    for action in data.get("actions") or []:
        if not isinstance(action, dict):
            continue
        actions.append(RecommendationAction(
            type=str(action.get("type") or "create_rule"),
            description=str(action.get("description") or ""),
            parameters=action.get("parameters") or {},
            automated=bool(action.get("automated", False)),
            estimated_time=int(action.get("estimated_time") or action.get("estimatedTime") or 30),
        ))

    try:
        rec_type = RecommendationType(data.get("type") or RecommendationType.NEW_RULE.value)
    except ValueError:
        rec_type = RecommendationType.NEW_RULE
    try:
        priority = Priority(data.get("priority") or Priority.MEDIUM.value)
    except ValueError:
        priority = Priority.MEDIUM

    return Recommendation(
        type=rec_type,
        priority=priority,
        title=str(data.get("title") or "Detection recommendation"),
        description=str(data.get("description") or "Generated detection recommendation"),
        confidence=_clamp(data.get("confidence", 0.8)),
        event_id=event_id,
        rule_id=rule_id,
        impact=RecommendationImpact(
            detection_improvement=_clamp(impact.get("detection_improvement", impact.get("detectionImprovement", 0.3))),
            false_positive_reduction=_clamp(impact.get("false_positive_reduction", impact.get("falsePositiveReduction", 0.2))),
            resource_impact=_clamp(impact.get("resource_impact", impact.get("resourceImpact", 0.1))),
            implementation_effort=_clamp(impact.get("implementation_effort", impact.get("implementationEffort", 0.4))),
            risk_level=str(impact.get("risk_level") or impact.get("riskLevel") or "medium"),
        ),
        actions=actions,
        metadata=RecommendationMetadata(
            source=source,
            reasoning=str(data.get("reasoning") or "Oracle analysis"),
            alternatives=list(data.get("alternatives") or []),
            dependencies=list(data.get("dependencies") or []),
        ),
    )


class RuleOracle(ABC):
    """Rule evaluation capability consumed by the orchestrator."""

    @abstractmethod
    async def evaluate(
        self,
        rule: DetectionRule,
        event: NormalizedEvent,
        context: EvaluationContext,
    ) -> RuleEvaluation:
        """Decide whether ``rule`` matches ``event``."""

    @abstractmethod
    async def generate_recommendations(
        self,
        event: NormalizedEvent,
        rule_results: RuleResults,
        existing_rules: Sequence[DetectionRule],
        knowledge: KnowledgeContext,
    ) -> List[Recommendation]:
        """Propose detection improvements after a high-confidence match."""

    async def close(self) -> None:
        """Release network resources."""


class HttpRuleOracle(RuleOracle):
    """Rule oracle backed by a remote model endpoint.

    Requests carry ``contract_version`` so the endpoint can reject payloads
    it does not understand. Responses are either the structured result or
    ``{"content": "<model text>"}`` holding JSON, possibly fenced.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff: float = 0.5,
    ) -> None:
        """Initialize the HTTP oracle.

        Args:
            base_url: Oracle endpoint base URL
            api_key: Bearer token for the endpoint
            model: Model name forwarded to the endpoint
            temperature: Sampling temperature forwarded to the endpoint
            max_tokens: Token budget forwarded to the endpoint
            client: Shared HTTP client; one is created lazily when omitted
            timeout: Request timeout in seconds
            max_retries: Attempts per request on transport errors and 5xx answers
            retry_backoff: Exponential backoff multiplier in seconds
        """
        base_url = base_url or settings.oracle_url
        if not base_url:
            raise ValueError("Rule oracle URL not configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else settings.oracle_api_key
        self.model = model or settings.oracle_model
        self.temperature = temperature if temperature is not None else settings.oracle_temperature
        self.max_tokens = max_tokens or settings.oracle_max_tokens
        self.timeout = timeout or settings.oracle_timeout_seconds
        self.max_retries = max_retries or settings.oracle_max_retries
        self.retry_backoff = retry_backoff
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _envelope(self, task: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "contract_version": ORACLE_CONTRACT_VERSION,
            "task": task,
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            **payload,
        }

    async def _post(self, path: str, body: Dict[str, Any]) -> Any:
        # retries stay inside the per-call budget
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError) | retry_if_exception(_is_server_error),
            stop=stop_after_attempt(self.max_retries) | stop_after_delay(self.timeout),
            wait=wait_exponential(multiplier=self.retry_backoff, min=self.retry_backoff, max=self.timeout),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._get_client().post(
                        f"{self.base_url}{path}", json=body, headers=self._headers()
                    )
                    response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Rule oracle error: {e.response.status_code} - {e.response.text[:200]}")
            raise

        data = response.json()
        if isinstance(data, dict) and isinstance(data.get("content"), str):
            return extract_json(data["content"])
        return data

    @track_oracle_call("evaluate")
    async def evaluate(
        self,
        rule: DetectionRule,
        event: NormalizedEvent,
        context: EvaluationContext,
    ) -> RuleEvaluation:
        """Ask the remote oracle whether a rule matches.

        Raises:
            httpx.HTTPError: If the request fails
            ValueError: If the response holds no usable JSON object
        """
        body = self._envelope("evaluate_rule", {
            "rule": rule.model_dump(mode="json", include={"id", "name", "description", "technique", "logic"}),
            "event": event.model_dump(mode="json"),
            "context": context.summary(),
        })
        data = await self._post("/v1/evaluate", body)
        if not isinstance(data, dict):
            raise ValueError("Oracle evaluation response is not an object")

        return RuleEvaluation(
            matches=data.get("matches", False),
            confidence=data.get("confidence", 0.0),
            reason=str(data.get("reason") or "No reason provided"),
            suggestions=list(data.get("suggestions") or []),
        )

    @track_oracle_call("recommend")
    async def generate_recommendations(
        self,
        event: NormalizedEvent,
        rule_results: RuleResults,
        existing_rules: Sequence[DetectionRule],
        knowledge: KnowledgeContext,
    ) -> List[Recommendation]:
        body = self._envelope("generate_recommendations", {
            "event": event.model_dump(mode="json"),
            "rule_results": {
                "matched_rules": [
                    {"rule_id": m.rule_id, "confidence": m.confidence, "reason": m.reason}
                    for m in rule_results.matched_rules
                ],
                "false_positive_risk": rule_results.false_positive_risk,
            },
            "existing_rules": len(existing_rules),
            "knowledge": {
                "threat_intel": len(knowledge.threat_intel),
                "attack_patterns": len(knowledge.attack_patterns),
            },
        })
        data = await self._post("/v1/recommendations", body)

        items = data if isinstance(data, list) else [data]
        top_rule = rule_results.matched_rules[0].rule_id if rule_results.matched_rules else None
        return [
            build_recommendation(item, event.id, item.get("rule_id") or top_rule, source="rule-oracle")
            for item in items
            if isinstance(item, dict)
        ]

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


_MISSING = object()


def resolve_field(document: Any, path: str) -> List[Any]:
    """
    Values at a dotted path; lists along the way fan out.

    ``entities.users.name`` over an event yields every user name.
    """
    values = [document]
    for part in path.split("."):
        next_values = []
        for value in values:
            if isinstance(value, list):
                candidates = value
            else:
                candidates = [value]
            for candidate in candidates:
                if isinstance(candidate, dict):
                    found = candidate.get(part, _MISSING)
                    if found is not _MISSING:
                        next_values.append(found)
        values = next_values
        if not values:
            break

    flattened = []
    for value in values:
        if isinstance(value, list):
            flattened.extend(value)
        elif value is not None:
            flattened.append(value)
    return flattened


def _compare(operator: ConditionOperator, candidate: Any, expected: Any) -> bool:
    try:
        if operator in (ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS):
            if isinstance(candidate, str) and isinstance(expected, str):
                return candidate.lower() == expected.lower()
            return candidate == expected
        if operator in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
            return str(expected).lower() in str(candidate).lower()
        if operator == ConditionOperator.STARTS_WITH:
            return str(candidate).lower().startswith(str(expected).lower())
        if operator == ConditionOperator.ENDS_WITH:
            return str(candidate).lower().endswith(str(expected).lower())
        if operator == ConditionOperator.REGEX:
            return re.search(str(expected), str(candidate)) is not None
        if operator == ConditionOperator.GREATER_THAN:
            return float(candidate) > float(expected)
        if operator == ConditionOperator.LESS_THAN:
            return float(candidate) < float(expected)
        if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            options = expected if isinstance(expected, (list, tuple, set)) else [expected]
            return candidate in options
    except (TypeError, ValueError, re.error):
        return False
    return False


_NEGATED = {
    ConditionOperator.NOT_EQUALS,
    ConditionOperator.NOT_CONTAINS,
    ConditionOperator.NOT_IN,
}


def evaluate_condition(condition: RuleCondition, document: Dict[str, Any]) -> bool:
    """Whether a condition holds for a flattened event document."""
    values = resolve_field(document, condition.field)

    if condition.operator == ConditionOperator.EXISTS:
        return bool(values)
    if condition.operator == ConditionOperator.NOT_EXISTS:
        return not values

    hits = any(_compare(condition.operator, value, condition.value) for value in values)
    if condition.operator in _NEGATED:
        return not hits
    return hits


class HeuristicRuleOracle(RuleOracle):
    """
    Local oracle evaluating a rule's weighted conditions.

    Conditions address the event document by dotted path, plus the
    ``behavioral``, ``correlation`` and ``enrichment`` context summaries.
    A rule matches when every required condition holds and the satisfied
    weight share reaches ``match_threshold``; confidence is that share
    scaled by the rule's own confidence.
    """

    def __init__(
        self,
        match_threshold: float = 0.5,
        recommendation_threshold: Optional[float] = None,
    ) -> None:
        self.match_threshold = match_threshold
        self.recommendation_threshold = (
            recommendation_threshold
            if recommendation_threshold is not None
            else settings.recommendation_confidence_threshold
        )

    @staticmethod
    def _document(event: NormalizedEvent, context: Optional[EvaluationContext]) -> Dict[str, Any]:
        document = event.model_dump(mode="json")
        if context is not None:
            document.update(context.summary())
        return document

    async def evaluate(
        self,
        rule: DetectionRule,
        event: NormalizedEvent,
        context: EvaluationContext,
    ) -> RuleEvaluation:
        conditions = rule.logic.conditions
        if not conditions:
            return RuleEvaluation.neutral("Rule has no conditions")

        document = self._document(event, context)
        total_weight = sum(c.weight for c in conditions)
        satisfied_weight = 0.0
        satisfied = []

        for condition in conditions:
            holds = evaluate_condition(condition, document)
            if not holds and condition.required:
                return RuleEvaluation.neutral(f"Required condition on {condition.field} not met")
            if holds:
                satisfied.append(condition.field)
                satisfied_weight += condition.weight if total_weight > 0 else 1.0

        share = satisfied_weight / (total_weight if total_weight > 0 else len(conditions))
        if share < self.match_threshold:
            return RuleEvaluation(
                matches=False,
                confidence=share * rule.metadata.confidence,
                reason=f"{len(satisfied)} of {len(conditions)} conditions met",
            )

        return RuleEvaluation(
            matches=True,
            confidence=share * rule.metadata.confidence,
            reason=f"Matched {len(satisfied)} of {len(conditions)} conditions: {', '.join(satisfied)}",
        )

    async def generate_recommendations(
        self,
        event: NormalizedEvent,
        rule_results: RuleResults,
        existing_rules: Sequence[DetectionRule],
        knowledge: KnowledgeContext,
    ) -> List[Recommendation]:
        """One NEW_RULE recommendation for the strongest qualifying match."""
        qualifying = [
            m for m in rule_results.matched_rules if m.confidence > self.recommendation_threshold
        ]
        if not qualifying:
            return []

        top = max(qualifying, key=lambda m: m.confidence)
        context = rule_results.context
        chains = context.correlation.threat_chains if context else []
        anomalies = context.behavioral.anomalies if context else []
        risk = max(
            [context.behavioral.risk_score, context.correlation.risk_score] if context else [0.0]
        )

        if risk > 0.8:
            priority = Priority.CRITICAL
        elif risk > 0.6:
            priority = Priority.HIGH
        else:
            priority = Priority.MEDIUM

        activity = event.event_type or "unclassified"
        details = [f"Rule '{top.rule_name}' matched with confidence {top.confidence:.2f}"]
        if chains:
            details.append(f"{len(chains)} threat chains ({', '.join(c.pattern.value for c in chains)})")
        if anomalies:
            details.append(f"{len(anomalies)} behavioral anomalies")
        if knowledge.threat_intel:
            details.append(f"{len(knowledge.threat_intel)} threat intelligence matches")

        return [build_recommendation(
            {
                "type": RecommendationType.NEW_RULE.value,
                "priority": priority.value,
                "title": f"Add dedicated detection for {activity} activity",
                "description": "; ".join(details),
                "confidence": top.confidence,
                "reasoning": (
                    f"No existing rule among {len(existing_rules)} targets {activity} directly"
                ),
                "actions": [{
                    "type": "create_rule",
                    "description": f"Draft a rule covering {activity} from {event.source}",
                    "parameters": {"event_type": activity, "source": event.source},
                }],
            },
            event.id,
            top.rule_id,
            source="heuristic-oracle",
        )]


def create_rule_oracle() -> RuleOracle:
    """HTTP oracle when an endpoint is configured, otherwise the local heuristic."""
    if settings.oracle_url:
        logger.info(f"Using HTTP rule oracle at {settings.oracle_url}")
        return HttpRuleOracle()
    logger.info("No rule oracle URL configured, using heuristic rule oracle")
    return HeuristicRuleOracle()
