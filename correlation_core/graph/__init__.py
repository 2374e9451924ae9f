"""Graph layer - decaying entity relationship graph and threat-chain extraction."""
from correlation_core.graph.engine import (
    CorrelationResult,
    GraphCorrelationEngine,
    ThreatChain,
    ThreatPattern,
    classify_pattern,
    find_connected_components,
)
from correlation_core.graph.store import (
    CorrelationEdge,
    GraphEntity,
    RelationshipGraphStore,
)

__all__ = [
    "CorrelationResult",
    "GraphCorrelationEngine",
    "ThreatChain",
    "ThreatPattern",
    "classify_pattern",
    "find_connected_components",
    "CorrelationEdge",
    "GraphEntity",
    "RelationshipGraphStore",
]
