"""
Relationship graph store.
Owns entity nodes and correlation edges, with an adjacency index keyed by
entity id. Writes clamp strength/confidence into [0, 1]; co-occurrence
edges are symmetric and stored under a canonical endpoint order.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from correlation_core.schemas.events import EntityType, RelationshipType, ensure_utc

logger = logging.getLogger(__name__)

EdgeKey = Tuple[str, str, str]

SYMMETRIC_RELATIONSHIPS = {RelationshipType.CO_OCCURRED_IN}


def clamp(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


def edge_key(source_id: str, target_id: str, relationship: RelationshipType) -> EdgeKey:
    """Storage key of an edge; symmetric relationships use sorted endpoints."""
    relationship = RelationshipType(relationship)
    if relationship in SYMMETRIC_RELATIONSHIPS and target_id < source_id:
        source_id, target_id = target_id, source_id
    return (source_id, target_id, relationship.value)


@dataclass
class CorrelationEdge:
    """Weighted, time-stamped relationship between two entities."""
    source_id: str
    target_id: str
    relationship: RelationshipType
    strength: float
    confidence: float
    last_seen: datetime
    evidence: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.relationship = RelationshipType(self.relationship)
        self.strength = clamp(self.strength)
        self.confidence = clamp(self.confidence)
        self.last_seen = ensure_utc(self.last_seen)
        self.source_id, self.target_id, _ = edge_key(self.source_id, self.target_id, self.relationship)

    @property
    def key(self) -> EdgeKey:
        return (self.source_id, self.target_id, self.relationship.value)

    def other(self, entity_id: str) -> str:
        return self.target_id if entity_id == self.source_id else self.source_id

    def snapshot(self) -> "CorrelationEdge":
        """Detached copy safe to hand out of the store."""
        return replace(self, evidence=list(self.evidence))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "relationship": self.relationship.value,
            "strength": self.strength,
            "confidence": self.confidence,
            "last_seen": self.last_seen.isoformat(),
            "evidence": list(self.evidence),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CorrelationEdge":
        last_seen = data["last_seen"]
        if isinstance(last_seen, str):
            last_seen = datetime.fromisoformat(last_seen)
        return cls(
            source_id=data["source_id"],
            target_id=data["target_id"],
            relationship=RelationshipType(data["relationship"]),
            strength=data.get("strength", 0.0),
            confidence=data.get("confidence", 0.0),
            last_seen=last_seen,
            evidence=list(data.get("evidence") or []),
        )


@dataclass
class GraphEntity:
    """Entity node in the relationship graph."""
    id: str
    type: Optional[EntityType] = None
    labels: List[str] = field(default_factory=lambda: ["Entity"])
    properties: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    last_seen: Optional[datetime] = None


class RelationshipGraphStore:
    """In-memory owner of graph nodes and correlation edges."""

    def __init__(self, evidence_limit: int = 20):
        self.evidence_limit = evidence_limit
        self._entities: Dict[str, GraphEntity] = {}
        self._edges: Dict[EdgeKey, CorrelationEdge] = {}
        self._adjacency: Dict[str, Set[EdgeKey]] = {}
        self.sweep_lock = asyncio.Lock()

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    @property
    def entity_count(self) -> int:
        return len(self._entities)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def upsert_entity(self, entity: GraphEntity) -> GraphEntity:
        """Create or merge an entity node; properties and labels accumulate."""
        existing = self._entities.get(entity.id)
        if existing is None:
            self._entities[entity.id] = entity
            return entity

        if entity.type is not None:
            existing.type = entity.type
        for label in entity.labels:
            if label not in existing.labels:
                existing.labels.append(label)
        existing.properties.update(entity.properties)
        if entity.source:
            existing.source = entity.source
        if entity.last_seen is not None and (
            existing.last_seen is None or entity.last_seen > existing.last_seen
        ):
            existing.last_seen = entity.last_seen
        return existing

    def get_entity(self, entity_id: str) -> Optional[GraphEntity]:
        return self._entities.get(entity_id)

    def _ensure_entity(self, entity_id: str, seen_at: datetime) -> None:
        if entity_id not in self._entities:
            self._entities[entity_id] = GraphEntity(id=entity_id, last_seen=seen_at)

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def get_edge(
        self,
        source_id: str,
        target_id: str,
        relationship: RelationshipType,
    ) -> Optional[CorrelationEdge]:
        return self._edges.get(edge_key(source_id, target_id, relationship))

    def edges_for(self, entity_id: str) -> List[CorrelationEdge]:
        """Live edges touching an entity."""
        return [self._edges[key] for key in self._adjacency.get(entity_id, ())]

    def all_edges(self) -> List[CorrelationEdge]:
        return [edge.snapshot() for edge in self._edges.values()]

    def _append_evidence(self, edge: CorrelationEdge, evidence: Iterable[str]) -> None:
        for item in evidence:
            if item and item not in edge.evidence:
                edge.evidence.append(item)
        if len(edge.evidence) > self.evidence_limit:
            del edge.evidence[: len(edge.evidence) - self.evidence_limit]

    def _insert(self, edge: CorrelationEdge) -> None:
        self._edges[edge.key] = edge
        self._adjacency.setdefault(edge.source_id, set()).add(edge.key)
        self._adjacency.setdefault(edge.target_id, set()).add(edge.key)
        self._ensure_entity(edge.source_id, edge.last_seen)
        self._ensure_entity(edge.target_id, edge.last_seen)

    def put_edge(self, edge: CorrelationEdge) -> CorrelationEdge:
        """Insert or overwrite an edge as given."""
        existing = self._edges.get(edge.key)
        if existing is not None:
            existing.strength = edge.strength
            existing.confidence = edge.confidence
            existing.last_seen = edge.last_seen
            self._append_evidence(existing, edge.evidence)
            return existing
        self._insert(edge)
        return edge

    def merge_edge(self, edge: CorrelationEdge) -> CorrelationEdge:
        """Insert an edge or merge it into the stored one by max strength/confidence."""
        existing = self._edges.get(edge.key)
        if existing is None:
            self._insert(edge)
            return edge

        existing.strength = clamp(max(existing.strength, edge.strength))
        existing.confidence = clamp(max(existing.confidence, edge.confidence))
        if edge.last_seen > existing.last_seen:
            existing.last_seen = edge.last_seen
        self._append_evidence(existing, edge.evidence)
        return existing

    def touch_edge(self, key: EdgeKey, seen_at: datetime, event_id: str) -> Optional[CorrelationEdge]:
        """Advance ``last_seen`` and record the event as evidence."""
        edge = self._edges.get(key)
        if edge is None:
            return None
        seen_at = ensure_utc(seen_at)
        if seen_at > edge.last_seen:
            edge.last_seen = seen_at
        self._append_evidence(edge, [event_id])
        return edge

    def remove_edge(self, key: EdgeKey) -> bool:
        edge = self._edges.pop(key, None)
        if edge is None:
            return False
        for entity_id in (edge.source_id, edge.target_id):
            keys = self._adjacency.get(entity_id)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._adjacency[entity_id]
        return True

    def load_edges(self, edges: Iterable[CorrelationEdge]) -> int:
        """Load persisted edges, creating nodes for their endpoints."""
        count = 0
        for edge in edges:
            self.put_edge(edge)
            count += 1
        return count

    # ------------------------------------------------------------------
    # Background sweeps
    # ------------------------------------------------------------------

    @staticmethod
    def recency_factor(age: timedelta) -> float:
        """Strength multiplier by edge age."""
        if age <= timedelta(days=7):
            return 1.0
        if age <= timedelta(days=30):
            return 0.8
        return 0.5

    async def decay_edges(self, now: datetime, batch_size: int = 500) -> List[CorrelationEdge]:
        """
        Multiply every edge's strength by its recency factor.

        Args:
            now: Reference time for edge age
            batch_size: Edges processed per slice before yielding

        Returns:
            Snapshots of edges whose strength changed
        """
        changed: List[CorrelationEdge] = []
        async with self.sweep_lock:
            keys = list(self._edges.keys())
            for start in range(0, len(keys), batch_size):
                for key in keys[start:start + batch_size]:
                    edge = self._edges.get(key)
                    if edge is None:
                        continue
                    factor = self.recency_factor(now - edge.last_seen)
                    if factor < 1.0:
                        edge.strength = clamp(edge.strength * factor)
                        changed.append(edge.snapshot())
                await asyncio.sleep(0)

        logger.debug(f"Decayed {len(changed)} of {len(keys)} edges")
        return changed

    async def cleanup(self, cutoff: datetime, batch_size: int = 500) -> Tuple[List[EdgeKey], List[str]]:
        """
        Remove edges last seen before ``cutoff`` and orphaned stale entities.

        Returns:
            Removed edge keys and removed entity ids
        """
        removed_edges: List[EdgeKey] = []
        removed_entities: List[str] = []

        async with self.sweep_lock:
            keys = list(self._edges.keys())
            for start in range(0, len(keys), batch_size):
                for key in keys[start:start + batch_size]:
                    edge = self._edges.get(key)
                    if edge is not None and edge.last_seen < cutoff:
                        self.remove_edge(key)
                        removed_edges.append(key)
                await asyncio.sleep(0)

            entity_ids = list(self._entities.keys())
            for start in range(0, len(entity_ids), batch_size):
                for entity_id in entity_ids[start:start + batch_size]:
                    entity = self._entities.get(entity_id)
                    if entity is None or self._adjacency.get(entity_id):
                        continue
                    if entity.last_seen is None or entity.last_seen < cutoff:
                        del self._entities[entity_id]
                        removed_entities.append(entity_id)
                await asyncio.sleep(0)

        if removed_edges or removed_entities:
            logger.info(
                "Graph cleanup completed",
                extra={"removed_edges": len(removed_edges), "removed_entities": len(removed_entities)},
            )
        return removed_edges, removed_entities
