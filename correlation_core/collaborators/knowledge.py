"""
Knowledge enrichment collaborator.
Matches events against cached threat intelligence and attack patterns,
learns from processed events and refreshes threat intel from HTTP feeds.
"""
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from correlation_core.behavioral.engine import BehavioralResult
from correlation_core.config import settings
from correlation_core.errors import EnrichmentFailure
from correlation_core.observability import get_logger, metrics
from correlation_core.schemas.events import NormalizedEvent
from correlation_core.schemas.rules import DetectionRule

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ThreatIntelligence(BaseModel):
    """Threat intelligence indicator."""

    id: str = Field(default_factory=lambda: f"threat_{int(time.time() * 1000)}_{secrets.token_hex(3)}")
    type: str = Field(default="unknown")
    value: str = Field(..., min_length=1, description="Indicator value (IP, domain, hash, ...)")
    description: str = Field(default="No description available")
    confidence: float = Field(default=0.5, ge=0, le=1)
    severity: str = Field(default="medium")
    source: str = Field(default="external")
    first_seen: datetime = Field(default_factory=_utcnow)
    last_seen: datetime = Field(default_factory=_utcnow)
    tags: List[str] = Field(default_factory=list)
    references: List[str] = Field(default_factory=list)
    mitigation: List[str] = Field(default_factory=list)


class AttackPattern(BaseModel):
    """ATT&CK-style attack pattern."""

    id: str
    name: str
    description: str = Field(default="No description available")
    technique: str = Field(default="T0000")
    tactics: List[str] = Field(default_factory=list)
    platforms: List[str] = Field(default_factory=list)
    data_sources: List[str] = Field(default_factory=list)
    detection: List[str] = Field(default_factory=list)
    mitigation: List[str] = Field(default_factory=list)
    references: List[str] = Field(default_factory=list)


@dataclass
class EnrichmentResult:
    """Knowledge matched to one event."""
    threat_matches: List[ThreatIntelligence] = field(default_factory=list)
    attack_patterns: List[AttackPattern] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class KnowledgeContext:
    """Knowledge handed to recommendation generation."""
    threat_intel: List[ThreatIntelligence] = field(default_factory=list)
    attack_patterns: List[AttackPattern] = field(default_factory=list)
    rules: List[DetectionRule] = field(default_factory=list)


class KnowledgeEnrichment(ABC):
    """Capability consumed by the orchestrator for event enrichment."""

    @abstractmethod
    async def enrich(self, event: NormalizedEvent) -> EnrichmentResult:
        """Match an event against known threat intelligence and attack patterns."""

    @abstractmethod
    async def get_relevant_knowledge(
        self,
        event: NormalizedEvent,
        rules: Sequence[DetectionRule] = (),
    ) -> KnowledgeContext:
        """Knowledge relevant to generating recommendations for an event."""

    @abstractmethod
    async def update_with_event(
        self,
        event: NormalizedEvent,
        behavioral: Optional[BehavioralResult] = None,
    ) -> None:
        """Learn from a processed event."""

    async def refresh(self) -> int:
        """Pull fresh threat intelligence; returns the number of indicators loaded."""
        return 0

    async def close(self) -> None:
        """Release network resources."""


def parse_threat_intelligence(data: Dict[str, Any]) -> Optional[ThreatIntelligence]:
    """Build an indicator from a feed item; None when it carries no value."""
    value = data.get("value") or data.get("indicator") or data.get("ioc")
    if not value:
        return None

    fields: Dict[str, Any] = {
        "type": data.get("type") or "unknown",
        "value": str(value),
        "description": data.get("description") or data.get("summary") or "No description available",
        "confidence": max(0.0, min(1.0, float(data.get("confidence") or 0.5))),
        "severity": data.get("severity") or "medium",
        "source": data.get("source") or "external",
        "tags": list(data.get("tags") or []),
        "references": list(data.get("references") or []),
        "mitigation": list(data.get("mitigation") or []),
    }
    if data.get("id"):
        fields["id"] = str(data["id"])
    for key, alias in (("first_seen", "firstSeen"), ("last_seen", "lastSeen")):
        seen = data.get(key) or data.get(alias)
        if seen:
            fields[key] = seen
    return ThreatIntelligence(**fields)


class InMemoryKnowledgeBase(KnowledgeEnrichment):
    """
    Knowledge base held in process memory.

    Threat intel is indexed by id and by indicator value; attack patterns by id.
    """

    def __init__(
        self,
        confidence_threshold: Optional[float] = None,
        sources: Optional[List[str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        request_timeout: float = 30.0,
        max_threat_intel: Optional[int] = None,
    ) -> None:
        """Initialize the knowledge base.

        Args:
            confidence_threshold: Minimum indicator confidence for an IOC match
            sources: Threat intel feed URLs returning a JSON array
            client: Shared HTTP client; one is created lazily when omitted
            request_timeout: Feed request timeout in seconds
            max_threat_intel: Threat intel entries kept; the least recently
                added or reinforced entry is evicted first
        """
        self.confidence_threshold = (
            confidence_threshold if confidence_threshold is not None else settings.knowledge_confidence_threshold
        )
        self.sources = list(sources if sources is not None else settings.threat_intel_sources)
        self.request_timeout = request_timeout
        self.max_threat_intel = max_threat_intel or settings.knowledge_max_threat_intel
        self._client = client
        self._owns_client = client is None
        self._threat_intel: Dict[str, ThreatIntelligence] = {}
        self._by_value: Dict[str, str] = {}
        self._attack_patterns: Dict[str, AttackPattern] = {}

    @property
    def threat_intel_count(self) -> int:
        return len(self._threat_intel)

    @property
    def attack_pattern_count(self) -> int:
        return len(self._attack_patterns)

    def add_threat_intel(self, intel: ThreatIntelligence) -> None:
        previous = self._threat_intel.pop(intel.id, None)
        if previous is not None and self._by_value.get(previous.value) == previous.id:
            del self._by_value[previous.value]
        self._threat_intel[intel.id] = intel
        self._by_value[intel.value] = intel.id

        while len(self._threat_intel) > self.max_threat_intel:
            self._evict_oldest()

    def _evict_oldest(self) -> None:
        # dict order is recency order: add and reinforce both move an entry to the end
        intel_id = next(iter(self._threat_intel))
        evicted = self._threat_intel.pop(intel_id)
        if self._by_value.get(evicted.value) == intel_id:
            del self._by_value[evicted.value]
        metrics.increment("knowledge.threat_intel_evicted")

    def _touch(self, intel: ThreatIntelligence) -> None:
        self._threat_intel[intel.id] = self._threat_intel.pop(intel.id)

    def add_attack_pattern(self, pattern: AttackPattern) -> None:
        self._attack_patterns[pattern.id] = pattern

    def lookup(self, value: str) -> Optional[ThreatIntelligence]:
        intel_id = self._by_value.get(value)
        return self._threat_intel.get(intel_id) if intel_id else None

    def _find_threat_matches(self, event: NormalizedEvent) -> List[ThreatIntelligence]:
        matches: Dict[str, ThreatIntelligence] = {}

        for ioc in event.indicators.iocs:
            intel = self.lookup(ioc.value)
            if intel is not None and intel.confidence >= self.confidence_threshold:
                matches[intel.id] = intel

        for behavior in event.indicators.behaviors:
            needle = behavior.type.lower()
            if not needle:
                continue
            for intel in self._threat_intel.values():
                if needle in intel.description.lower():
                    matches[intel.id] = intel

        domain = event.context.network.domain
        if domain:
            intel = self.lookup(domain)
            if intel is not None:
                matches[intel.id] = intel

        return list(matches.values())

    def _find_attack_patterns(self, event: NormalizedEvent) -> List[AttackPattern]:
        matches: Dict[str, AttackPattern] = {}
        event_type = event.event_type.lower()
        populated_lists = [
            name for name in ("users", "hosts", "networks", "processes", "files")
            if event.entities.count(name)
        ]

        for pattern in self._attack_patterns.values():
            if event_type and event_type in pattern.technique.lower():
                matches[pattern.id] = pattern
            elif event.source in pattern.data_sources:
                matches[pattern.id] = pattern
            elif any(name in pattern.data_sources for name in populated_lists):
                matches[pattern.id] = pattern

        return list(matches.values())

    @staticmethod
    def _generate_recommendations(
        threat_matches: Sequence[ThreatIntelligence],
        attack_patterns: Sequence[AttackPattern],
    ) -> List[str]:
        recommendations = []
        if threat_matches:
            recommendations.append(f"Found {len(threat_matches)} threat intelligence matches")
        if attack_patterns:
            recommendations.append(f"Identified {len(attack_patterns)} potential attack patterns")
        high_confidence = [t for t in threat_matches if t.confidence > 0.8]
        if high_confidence:
            recommendations.append(
                f"{len(high_confidence)} high-confidence threats require immediate attention"
            )
        return recommendations

    async def enrich(self, event: NormalizedEvent) -> EnrichmentResult:
        """Enrich an event with matching threat intel and attack patterns.

        Args:
            event: Normalized event

        Returns:
            Matches and enrichment recommendations
        """
        threat_matches = self._find_threat_matches(event)
        attack_patterns = self._find_attack_patterns(event)

        logger.debug(
            "Event enriched",
            extra={
                "event_id": event.id,
                "threat_matches": len(threat_matches),
                "attack_patterns": len(attack_patterns),
            },
        )
        return EnrichmentResult(
            threat_matches=threat_matches,
            attack_patterns=attack_patterns,
            recommendations=self._generate_recommendations(threat_matches, attack_patterns),
        )

    async def get_relevant_knowledge(
        self,
        event: NormalizedEvent,
        rules: Sequence[DetectionRule] = (),
    ) -> KnowledgeContext:
        return KnowledgeContext(
            threat_intel=self._find_threat_matches(event),
            attack_patterns=self._find_attack_patterns(event),
            rules=list(rules),
        )

    async def update_with_event(
        self,
        event: NormalizedEvent,
        behavioral: Optional[BehavioralResult] = None,
    ) -> None:
        """Reinforce seen indicators and record severe behavioral anomalies.

        Args:
            event: Processed event
            behavioral: Behavioral result of the same event
        """
        for ioc in event.indicators.iocs:
            intel = self.lookup(ioc.value)
            if intel is not None:
                intel.last_seen = event.timestamp
                intel.confidence = min(1.0, intel.confidence + 0.01)
                self._touch(intel)

        if behavioral is None:
            return

        for anomaly in behavioral.anomalies:
            if anomaly.severity <= 0.8:
                continue
            self.add_threat_intel(ThreatIntelligence(
                id=f"behavioral_{int(time.time() * 1000)}_{secrets.token_hex(3)}",
                type="behavioral_anomaly",
                value=anomaly.description,
                description=f"Behavioral anomaly: {anomaly.description}",
                confidence=anomaly.confidence,
                severity="high" if anomaly.severity > 0.9 else "medium",
                source="behavioral_analysis",
                first_seen=event.timestamp,
                last_seen=event.timestamp,
                tags=["behavioral", "anomaly"],
                mitigation=["Review user activity", "Implement additional monitoring"],
            ))
            metrics.increment("knowledge.behavioral_intel_recorded")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.request_timeout)
        return self._client

    @retry(
        retry=retry_if_exception_type((httpx.HTTPError, httpx.TimeoutException)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _fetch_source(self, source: str) -> List[Dict[str, Any]]:
        """Fetch one feed.

        Args:
            source: Feed URL

        Returns:
            Feed items

        Raises:
            httpx.HTTPError: If the feed request fails after retries
        """
        response = await self._get_client().get(source)
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, list) else []

    def load_threat_intel(self, items: Iterable[Dict[str, Any]]) -> int:
        count = 0
        for item in items:
            intel = parse_threat_intelligence(item)
            if intel is not None:
                self.add_threat_intel(intel)
                count += 1
        return count

    async def refresh(self) -> int:
        """Pull threat intelligence from every configured feed.

        A failing feed is logged and skipped.

        Returns:
            Number of indicators loaded

        Raises:
            EnrichmentFailure: If every configured feed failed
        """
        total = 0
        failed = []
        for source in self.sources:
            try:
                items = await self._fetch_source(source)
            except (httpx.HTTPError, ValueError) as e:
                failed.append(source)
                metrics.increment("knowledge.refresh_errors")
                logger.error(
                    "Threat intel feed failed",
                    extra={"source": source, "error": str(e), "error_type": type(e).__name__},
                )
                continue

            count = self.load_threat_intel(items)
            total += count
            logger.info(f"Loaded {count} indicators from {source}")

        metrics.set_gauge("knowledge.threat_intel", self.threat_intel_count)
        if self.sources and len(failed) == len(self.sources):
            raise EnrichmentFailure("Every threat intel feed failed", {"sources": failed})
        return total

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
