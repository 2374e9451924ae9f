"""
Tests for the graph correlation engine.
"""
import itertools
import random

import pytest
from datetime import datetime, timedelta, timezone

from correlation_core.errors import GraphQueryTimeout
from correlation_core.graph.engine import (
    GraphCorrelationEngine,
    ThreatPattern,
    chain_risk_score,
    classify_pattern,
    find_connected_components,
)
from correlation_core.graph.store import CorrelationEdge
from correlation_core.schemas.events import NormalizedEvent, RelationshipType

NOW = datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)


def make_edge(source, target, relationship, strength=0.6, confidence=0.7, last_seen=None):
    return CorrelationEdge(
        source_id=source,
        target_id=target,
        relationship=relationship,
        strength=strength,
        confidence=confidence,
        last_seen=last_seen or NOW - timedelta(hours=1),
    )


@pytest.fixture
def escalation_graph(graph_store):
    """A executes B, B accesses C."""
    graph_store.put_edge(make_edge("A", "B", RelationshipType.EXECUTES, 0.9, 0.9))
    graph_store.put_edge(make_edge("B", "C", RelationshipType.ACCESSES, 0.85, 0.8))
    return graph_store


@pytest.mark.asyncio
async def test_privilege_escalation_chain(graph_engine, escalation_graph, make_event):
    event = make_event(event_id="evt-b", hosts=["B"])

    result = await graph_engine.correlate(event)

    assert len(result.correlations) == 2
    assert result.network_strength == pytest.approx(0.875)
    assert len(result.threat_chains) == 1
    chain = result.threat_chains[0]
    assert set(chain.entities) == {"A", "B", "C"}
    assert chain.pattern == ThreatPattern.PRIVILEGE_ESCALATION
    assert chain.risk_score == pytest.approx(0.64)
    assert "privilege_escalation pattern involving 3 entities" in chain.description
    assert result.risk_score == pytest.approx(0.703)


@pytest.mark.asyncio
async def test_two_entity_component_is_not_a_chain(graph_engine, graph_store, make_event):
    graph_store.put_edge(make_edge("A", "B", RelationshipType.EXECUTES, 1.0, 1.0))

    result = await graph_engine.analyze(make_event(hosts=["B"]))

    assert len(result.correlations) == 1
    assert result.threat_chains == []
    assert result.risk_score == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_weak_and_stale_edges_are_ignored(graph_engine, graph_store, make_event):
    graph_store.put_edge(make_edge("A", "B", RelationshipType.ACCESSES, strength=0.4))
    graph_store.put_edge(make_edge("B", "C", RelationshipType.ACCESSES, last_seen=NOW - timedelta(hours=7)))
    graph_store.put_edge(make_edge("B", "D", RelationshipType.ACCESSES, strength=0.5))

    candidates = graph_engine.collect_candidates(make_event(hosts=["B"]))

    assert [e.key for e in candidates] == [("B", "D", "accesses")]


@pytest.mark.asyncio
async def test_analyze_is_idempotent_and_read_only(graph_engine, escalation_graph, make_event):
    event = make_event(event_id="evt-b", users=["u1"], hosts=["B"])
    before = escalation_graph.all_edges()

    first = await graph_engine.analyze(event)
    second = await graph_engine.analyze(event)

    assert first.risk_score == second.risk_score
    assert [e.key for e in first.correlations] == [e.key for e in second.correlations]
    assert [c.entities for c in first.threat_chains] == [c.entities for c in second.threat_chains]
    assert escalation_graph.all_edges() == before
    assert escalation_graph.get_entity("u1") is None


@pytest.mark.asyncio
async def test_correlate_adds_co_occurrence_edges(graph_engine, graph_store, make_event):
    event = make_event(event_id="evt-1", users=["u1"], hosts=["h1"], processes=["p1"])

    result = await graph_engine.correlate(event)

    edge = graph_store.get_edge("u1", "h1", RelationshipType.CO_OCCURRED_IN)
    assert (edge.source_id, edge.target_id) == ("h1", "u1")
    assert edge.strength == 0.5
    assert edge.confidence == 0.8
    assert edge.evidence == ["evt-1"]
    assert edge.last_seen == NOW
    assert graph_store.edge_count == 3
    assert len(result.updated_edges) == 3
    assert graph_store.get_entity("u1").labels == ["users", "Entity"]
    assert graph_store.get_entity("p1").labels == ["processes", "Entity"]
    assert graph_store.get_entity("h1").source == "edr"


@pytest.mark.asyncio
async def test_correlate_refreshes_candidate_edges(graph_engine, escalation_graph, make_event):
    event = make_event(event_id="evt-b", hosts=["B"])

    await graph_engine.correlate(event)

    edge = escalation_graph.get_edge("A", "B", RelationshipType.EXECUTES)
    assert edge.last_seen == NOW
    assert edge.evidence == ["evt-b"]
    assert edge.strength == 0.9


@pytest.mark.asyncio
async def test_correlate_merges_declared_relationships(graph_engine, graph_store):
    event = NormalizedEvent.model_validate({
        "id": "evt-rel",
        "timestamp": NOW,
        "entities": {
            "users": [{
                "id": "u1",
                "relationships": [
                    {"target": "db-01", "relationship": "accesses", "strength": 0.7},
                    {"target": "u1", "relationship": "owns"},
                ],
            }],
        },
    })

    await graph_engine.correlate(event)

    edge = graph_store.get_edge("u1", "db-01", RelationshipType.ACCESSES)
    assert edge.strength == 0.7
    assert edge.confidence == 0.8
    assert graph_store.get_edge("u1", "u1", RelationshipType.OWNS) is None


@pytest.mark.asyncio
async def test_candidate_budget_exceeded_leaves_graph_untouched(graph_store, escalation_graph, make_event):
    engine = GraphCorrelationEngine(store=graph_store, max_candidate_edges=1)
    before = graph_store.all_edges()

    with pytest.raises(GraphQueryTimeout):
        await engine.correlate(make_event(users=["u1"], hosts=["B"]))

    assert graph_store.all_edges() == before
    assert graph_store.get_entity("u1") is None


@pytest.mark.asyncio
async def test_query_deadline_raises(graph_store, make_event):
    ticks = itertools.count(step=5)
    engine = GraphCorrelationEngine(store=graph_store, query_timeout_seconds=1.0, clock=lambda: next(ticks))

    with pytest.raises(GraphQueryTimeout):
        await engine.analyze(make_event(users=["u1"]))


@pytest.mark.asyncio
async def test_decay_and_cleanup(graph_engine, graph_store):
    graph_store.put_edge(make_edge("A", "B", RelationshipType.ACCESSES, 1.0, last_seen=NOW - timedelta(days=10)))
    graph_store.put_edge(make_edge("B", "C", RelationshipType.ACCESSES, 1.0, last_seen=NOW - timedelta(days=31)))

    changed = await graph_engine.decay_edges(now=NOW)
    removed_edges, removed_entities = await graph_engine.cleanup(now=NOW)

    assert len(changed) == 2
    assert graph_store.get_edge("A", "B", RelationshipType.ACCESSES).strength == pytest.approx(0.8)
    assert removed_edges == [("B", "C", "accesses")]
    assert removed_entities == ["C"]


@pytest.mark.parametrize("relationships,expected", [
    ({RelationshipType.COMMUNICATES_WITH, RelationshipType.ACCESSES}, ThreatPattern.LATERAL_MOVEMENT),
    ({RelationshipType.EXECUTES, RelationshipType.ACCESSES}, ThreatPattern.PRIVILEGE_ESCALATION),
    ({RelationshipType.COMMUNICATES_WITH, RelationshipType.OWNS, RelationshipType.CONTAINS},
     ThreatPattern.COMMAND_AND_CONTROL),
    ({RelationshipType.ACCESSES, RelationshipType.OWNS, RelationshipType.CONTAINS, RelationshipType.SIMILAR_TO},
     ThreatPattern.DATA_EXFILTRATION),
    ({RelationshipType.CO_OCCURRED_IN}, ThreatPattern.SUSPICIOUS_ACTIVITY),
])
def test_classify_pattern(relationships, expected):
    edges = [make_edge(f"s{i}", f"t{i}", rel) for i, rel in enumerate(sorted(relationships))]
    assert classify_pattern(edges) == expected


def test_lateral_movement_takes_precedence_over_escalation():
    edges = [
        make_edge("a", "b", RelationshipType.COMMUNICATES_WITH),
        make_edge("b", "c", RelationshipType.ACCESSES),
        make_edge("c", "d", RelationshipType.EXECUTES),
    ]
    assert classify_pattern(edges) == ThreatPattern.LATERAL_MOVEMENT


def test_lateral_movement_recommendation(graph_engine):
    edges = [
        make_edge("a", "b", RelationshipType.COMMUNICATES_WITH, 0.9, 0.9),
        make_edge("b", "c", RelationshipType.ACCESSES, 0.9, 0.9),
    ]
    chains = graph_engine.find_threat_chains(edges)

    recommendations = graph_engine.generate_recommendations(edges, chains)

    assert chains[0].pattern == ThreatPattern.LATERAL_MOVEMENT
    assert "Lateral movement patterns detected - review network segmentation" in recommendations


def test_empty_graph_has_zero_risk():
    assert GraphCorrelationEngine.calculate_risk_score([], []) == 0.0


def _random_edges(rng, nodes=12, count=20):
    relationships = list(RelationshipType)
    edges = []
    for _ in range(count):
        source, target = rng.sample(range(nodes), 2)
        edges.append(make_edge(
            f"n{source}",
            f"n{target}",
            rng.choice(relationships),
            strength=rng.random(),
            confidence=rng.random(),
        ))
    return edges


@pytest.mark.parametrize("seed", range(10))
def test_components_are_exhaustive_and_disjoint(seed):
    edges = _random_edges(random.Random(seed))

    components = find_connected_components(edges)

    membership = {}
    for index, component in enumerate(components):
        for node in component:
            assert node not in membership
            membership[node] = index
    assert set(membership) == {e.source_id for e in edges} | {e.target_id for e in edges}
    for edge in edges:
        assert membership[edge.source_id] == membership[edge.target_id]


@pytest.mark.parametrize("seed", range(10))
def test_scores_stay_in_unit_interval(seed, graph_engine):
    edges = _random_edges(random.Random(seed), nodes=8, count=30)

    chains = graph_engine.find_threat_chains(edges)
    risk = graph_engine.calculate_risk_score(edges, chains)

    assert 0.0 <= risk <= 1.0
    for chain in chains:
        assert 0.5 < chain.risk_score <= 1.0
        assert len(chain.entities) >= 3
    for edge in edges:
        assert 0.0 <= edge.strength <= 1.0
        assert 0.0 <= edge.confidence <= 1.0


def test_chain_risk_score_formula():
    edges = [make_edge("a", "b", RelationshipType.ACCESSES, 1.0, 1.0)]
    assert chain_risk_score(10, edges) == pytest.approx(1.0)
    assert chain_risk_score(20, edges) == pytest.approx(1.0)
    assert chain_risk_score(5, edges) == pytest.approx(0.8)
