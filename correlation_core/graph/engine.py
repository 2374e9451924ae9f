"""
Graph correlation engine.
Finds recent, sufficiently strong relationships around the entities of an
event, groups them into connected components and scores multi-hop threat
chains. ``correlate`` also updates the graph with the event; ``analyze``
runs the same read path without mutating anything.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from itertools import combinations
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from correlation_core.config.settings import settings
from correlation_core.errors import GraphQueryTimeout
from correlation_core.graph.store import (
    CorrelationEdge,
    EdgeKey,
    GraphEntity,
    RelationshipGraphStore,
)
from correlation_core.observability.metrics import metrics
from correlation_core.schemas.events import ENTITY_LISTS, NormalizedEvent, RelationshipType

logger = logging.getLogger(__name__)

CO_OCCURRENCE_STRENGTH = 0.5
CO_OCCURRENCE_CONFIDENCE = 0.8
MIN_CHAIN_ENTITIES = 3
MIN_CHAIN_RISK = 0.5

LIST_NAMES = {entity_type: name for name, entity_type in ENTITY_LISTS.items()}


class ThreatPattern(str, Enum):
    """Threat patterns recognized in connected components."""
    LATERAL_MOVEMENT = "lateral_movement"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    COMMAND_AND_CONTROL = "command_and_control"
    DATA_EXFILTRATION = "data_exfiltration"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


@dataclass
class ThreatChain:
    """Connected component of correlated entities that looks like an attack."""
    entities: List[str]
    edges: List[CorrelationEdge]
    pattern: ThreatPattern
    risk_score: float
    description: str


@dataclass
class CorrelationResult:
    """Graph verdict for one event."""
    correlations: List[CorrelationEdge] = field(default_factory=list)
    network_strength: float = 0.0
    threat_chains: List[ThreatChain] = field(default_factory=list)
    risk_score: float = 0.0
    recommendations: List[str] = field(default_factory=list)
    updated_edges: List[CorrelationEdge] = field(default_factory=list, repr=False)


def find_connected_components(edges: Sequence[CorrelationEdge]) -> List[List[str]]:
    """
    Connected components of the undirected graph formed by ``edges``.

    Uses an explicit stack so deep chains do not hit the recursion limit.
    Output order follows first appearance of each entity in ``edges``.
    """
    adjacency: Dict[str, Dict[str, None]] = {}
    for edge in edges:
        adjacency.setdefault(edge.source_id, {})[edge.target_id] = None
        adjacency.setdefault(edge.target_id, {})[edge.source_id] = None

    visited = set()
    components: List[List[str]] = []

    for start in adjacency:
        if start in visited:
            continue
        component = []
        stack = [start]
        visited.add(start)
        while stack:
            node = stack.pop()
            component.append(node)
            for neighbor in adjacency[node]:
                if neighbor not in visited:
                    visited.add(neighbor)
                    stack.append(neighbor)
        components.append(component)

    return components


def classify_pattern(edges: Sequence[CorrelationEdge]) -> ThreatPattern:
    """Pattern of a component by its relationship types; first match wins."""
    types = {edge.relationship for edge in edges}

    if RelationshipType.COMMUNICATES_WITH in types and RelationshipType.ACCESSES in types:
        return ThreatPattern.LATERAL_MOVEMENT
    if RelationshipType.EXECUTES in types and RelationshipType.ACCESSES in types:
        return ThreatPattern.PRIVILEGE_ESCALATION
    if RelationshipType.COMMUNICATES_WITH in types and len(types) > 2:
        return ThreatPattern.COMMAND_AND_CONTROL
    if RelationshipType.ACCESSES in types and len(types) > 3:
        return ThreatPattern.DATA_EXFILTRATION
    return ThreatPattern.SUSPICIOUS_ACTIVITY


def chain_risk_score(entity_count: int, edges: Sequence[CorrelationEdge]) -> float:
    """0.4 * length factor + 0.4 * mean strength + 0.2 * mean confidence."""
    if not edges:
        return 0.0
    avg_strength = sum(e.strength for e in edges) / len(edges)
    avg_confidence = sum(e.confidence for e in edges) / len(edges)
    length_factor = min(1.0, entity_count / 10)
    return 0.4 * length_factor + 0.4 * avg_strength + 0.2 * avg_confidence


def describe_chain(entity_count: int, edges: Sequence[CorrelationEdge], pattern: ThreatPattern) -> str:
    avg_strength = sum(e.strength for e in edges) / len(edges) if edges else 0.0
    return (
        f"Threat chain detected: {pattern.value} pattern involving {entity_count} entities "
        f"with {len(edges)} relationships (avg strength: {avg_strength:.2f})"
    )


class GraphCorrelationEngine:
    """
    Multi-hop correlation over the relationship graph.

    Candidate collection is bounded by a wall-clock budget and a maximum
    number of candidate edges; exceeding either raises GraphQueryTimeout.
    """

    def __init__(
        self,
        store: Optional[RelationshipGraphStore] = None,
        correlation_window_hours: Optional[float] = None,
        min_correlation_strength: Optional[float] = None,
        retention_days: Optional[int] = None,
        query_timeout_seconds: Optional[float] = None,
        max_candidate_edges: Optional[int] = None,
        sweep_batch_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store if store is not None else RelationshipGraphStore()
        self.correlation_window = timedelta(
            hours=correlation_window_hours
            if correlation_window_hours is not None
            else settings.graph_correlation_window_hours
        )
        self.min_correlation_strength = (
            min_correlation_strength
            if min_correlation_strength is not None
            else settings.graph_min_correlation_strength
        )
        self.retention = timedelta(
            days=retention_days if retention_days is not None else settings.graph_retention_days
        )
        self.query_timeout_seconds = (
            query_timeout_seconds if query_timeout_seconds is not None else settings.graph_query_timeout_seconds
        )
        self.max_candidate_edges = (
            max_candidate_edges if max_candidate_edges is not None else settings.graph_max_candidate_edges
        )
        self.sweep_batch_size = sweep_batch_size or settings.graph_sweep_batch_size
        self._clock = clock

    def collect_candidates(self, event: NormalizedEvent) -> List[CorrelationEdge]:
        """
        Edges touching the event's entities inside the correlation window.

        Args:
            event: Normalized event

        Returns:
            Detached edge snapshots, deduplicated by key, strongest first

        Raises:
            GraphQueryTimeout: collection exceeded its time or size budget
        """
        deadline = self._clock() + self.query_timeout_seconds
        window_start = event.timestamp - self.correlation_window
        candidates: Dict[EdgeKey, CorrelationEdge] = {}

        for entity in event.iter_entities():
            if self._clock() > deadline:
                raise GraphQueryTimeout(
                    f"Candidate collection for event {event.id} exceeded "
                    f"{self.query_timeout_seconds}s",
                    {"event_id": event.id},
                )

            for edge in self.store.edges_for(entity.id):
                if edge.key in candidates:
                    continue
                if edge.last_seen < window_start or edge.strength < self.min_correlation_strength:
                    continue
                candidates[edge.key] = edge.snapshot()

                if len(candidates) > self.max_candidate_edges:
                    raise GraphQueryTimeout(
                        f"Candidate collection for event {event.id} exceeded "
                        f"{self.max_candidate_edges} edges",
                        {"event_id": event.id},
                    )

        return sorted(candidates.values(), key=lambda e: (-e.strength, e.key))

    def find_threat_chains(self, correlations: Sequence[CorrelationEdge]) -> List[ThreatChain]:
        """Score every connected component of three or more entities."""
        chains = []

        for component in find_connected_components(correlations):
            if len(component) < MIN_CHAIN_ENTITIES:
                continue

            members = set(component)
            chain_edges = [
                e for e in correlations if e.source_id in members and e.target_id in members
            ]
            risk = chain_risk_score(len(component), chain_edges)
            if risk <= MIN_CHAIN_RISK:
                continue

            pattern = classify_pattern(chain_edges)
            chains.append(ThreatChain(
                entities=component,
                edges=chain_edges,
                pattern=pattern,
                risk_score=risk,
                description=describe_chain(len(component), chain_edges, pattern),
            ))

        return chains

    @staticmethod
    def calculate_risk_score(
        correlations: Sequence[CorrelationEdge],
        chains: Sequence[ThreatChain],
    ) -> float:
        """min(1, 0.6 * mean(strength * confidence) + 0.4 * mean(chain risk))."""
        if not correlations and not chains:
            return 0.0
        correlation_risk = (
            sum(e.strength * e.confidence for e in correlations) / len(correlations)
            if correlations else 0.0
        )
        chain_risk = sum(c.risk_score for c in chains) / len(chains) if chains else 0.0
        return min(1.0, correlation_risk * 0.6 + chain_risk * 0.4)

    @staticmethod
    def generate_recommendations(
        correlations: Sequence[CorrelationEdge],
        chains: Sequence[ThreatChain],
    ) -> List[str]:
        recommendations = []

        if len(correlations) > 10:
            recommendations.append("High correlation density detected - investigate for coordinated attack")

        critical = [c for c in chains if c.risk_score > 0.8]
        if critical:
            recommendations.append(f"{len(critical)} critical threat chains require immediate investigation")

        strong = [e for e in correlations if e.strength > 0.8]
        if len(strong) > 5:
            recommendations.append(
                "Multiple strong correlations detected - consider implementing additional monitoring"
            )

        if any(c.pattern == ThreatPattern.LATERAL_MOVEMENT for c in chains):
            recommendations.append("Lateral movement patterns detected - review network segmentation")

        return recommendations

    async def analyze(self, event: NormalizedEvent) -> CorrelationResult:
        """
        Read-only correlation: candidates, components, chains and risk.

        Raises:
            GraphQueryTimeout: candidate collection exceeded its budget
        """
        correlations = self.collect_candidates(event)
        network_strength = (
            sum(e.strength for e in correlations) / len(correlations) if correlations else 0.0
        )
        chains = self.find_threat_chains(correlations)

        return CorrelationResult(
            correlations=correlations,
            network_strength=network_strength,
            threat_chains=chains,
            risk_score=self.calculate_risk_score(correlations, chains),
            recommendations=self.generate_recommendations(correlations, chains),
        )

    async def correlate(self, event: NormalizedEvent) -> CorrelationResult:
        """
        Correlate an event and fold it into the graph.

        Args:
            event: Normalized event

        Returns:
            Correlation result; ``updated_edges`` holds snapshots of every
            edge written by the graph update

        Raises:
            GraphQueryTimeout: candidate collection exceeded its budget; the
                graph is left untouched
        """
        result = await self.analyze(event)
        result.updated_edges = self._update_graph(event, result.correlations)

        metrics.increment("graph.events_correlated")
        if result.threat_chains:
            metrics.increment("graph.threat_chains", len(result.threat_chains))
        metrics.set_gauge("graph.edges", self.store.edge_count)

        logger.debug(
            "Graph correlation completed",
            extra={
                "event_id": event.id,
                "correlations": len(result.correlations),
                "threat_chains": len(result.threat_chains),
                "risk_score": result.risk_score,
            },
        )
        return result

    def _update_graph(
        self,
        event: NormalizedEvent,
        correlations: Sequence[CorrelationEdge],
    ) -> List[CorrelationEdge]:
        touched: Dict[EdgeKey, CorrelationEdge] = {}
        entities = list(event.iter_entities())

        for entity in entities:
            list_label = LIST_NAMES.get(entity.type, "entities")
            self.store.upsert_entity(GraphEntity(
                id=entity.id,
                type=entity.type,
                labels=[list_label, "Entity"],
                properties={"name": entity.name, **entity.attributes},
                source=event.source,
                last_seen=event.timestamp,
            ))

        for candidate in correlations:
            edge = self.store.touch_edge(candidate.key, event.timestamp, event.id)
            if edge is not None:
                touched[edge.key] = edge

        for entity in entities:
            for rel in entity.relationships:
                if rel.target == entity.id:
                    continue
                edge = self.store.merge_edge(CorrelationEdge(
                    source_id=entity.id,
                    target_id=rel.target,
                    relationship=rel.relationship,
                    strength=rel.strength,
                    confidence=rel.confidence,
                    last_seen=rel.last_seen or event.timestamp,
                    evidence=[event.id],
                ))
                touched[edge.key] = edge

        for first, second in combinations(entities, 2):
            edge = self.store.put_edge(CorrelationEdge(
                source_id=first.id,
                target_id=second.id,
                relationship=RelationshipType.CO_OCCURRED_IN,
                strength=CO_OCCURRENCE_STRENGTH,
                confidence=CO_OCCURRENCE_CONFIDENCE,
                last_seen=event.timestamp,
                evidence=[event.id],
            ))
            touched[edge.key] = edge

        return [edge.snapshot() for edge in touched.values()]

    async def decay_edges(self, now: Optional[datetime] = None) -> List[CorrelationEdge]:
        """Apply recency decay to every edge; returns snapshots of changed edges."""
        now = now or datetime.now(timezone.utc)
        return await self.store.decay_edges(now, batch_size=self.sweep_batch_size)

    async def cleanup(self, now: Optional[datetime] = None) -> Tuple[List[EdgeKey], List[str]]:
        """Drop edges and orphaned entities outside the retention window."""
        now = now or datetime.now(timezone.utc)
        return await self.store.cleanup(now - self.retention, batch_size=self.sweep_batch_size)
