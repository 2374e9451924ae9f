"""
Tests for the relationship graph store.
"""
import pytest
from datetime import datetime, timedelta, timezone

from correlation_core.graph.store import (
    CorrelationEdge,
    GraphEntity,
    RelationshipGraphStore,
    edge_key,
)
from correlation_core.schemas.events import EntityType, RelationshipType

NOW = datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)


def make_edge(source, target, relationship=RelationshipType.ACCESSES, strength=0.6, confidence=0.7,
              last_seen=NOW, evidence=None):
    return CorrelationEdge(
        source_id=source,
        target_id=target,
        relationship=relationship,
        strength=strength,
        confidence=confidence,
        last_seen=last_seen,
        evidence=evidence or [],
    )


def test_co_occurrence_key_is_symmetric():
    assert edge_key("b", "a", RelationshipType.CO_OCCURRED_IN) == ("a", "b", "co_occurred_in")
    assert edge_key("a", "b", RelationshipType.CO_OCCURRED_IN) == ("a", "b", "co_occurred_in")


def test_directed_key_keeps_endpoint_order():
    assert edge_key("b", "a", RelationshipType.EXECUTES) == ("b", "a", "executes")


def test_edge_scores_are_clamped_and_timestamps_utc():
    edge = make_edge("a", "b", strength=1.7, confidence=-0.3, last_seen=datetime(2024, 3, 5, 10, 0))

    assert edge.strength == 1.0
    assert edge.confidence == 0.0
    assert edge.last_seen.tzinfo == timezone.utc


def test_co_occurrence_edge_is_canonicalized():
    edge = make_edge("zed", "amy", relationship=RelationshipType.CO_OCCURRED_IN)
    assert (edge.source_id, edge.target_id) == ("amy", "zed")


def test_put_edge_overwrites_scores_and_accumulates_evidence(graph_store):
    graph_store.put_edge(make_edge("a", "b", strength=0.9, evidence=["e1"]))
    stored = graph_store.put_edge(make_edge("a", "b", strength=0.5, evidence=["e2", "e1"]))

    assert stored.strength == 0.5
    assert stored.evidence == ["e1", "e2"]
    assert graph_store.edge_count == 1
    assert graph_store.entity_count == 2


def test_merge_edge_keeps_maximum(graph_store):
    graph_store.put_edge(make_edge("a", "b", strength=0.9, confidence=0.4))
    merged = graph_store.merge_edge(make_edge("a", "b", strength=0.5, confidence=0.8))

    assert merged.strength == 0.9
    assert merged.confidence == 0.8


def test_touch_edge_never_moves_last_seen_backwards(graph_store):
    edge = graph_store.put_edge(make_edge("a", "b"))

    graph_store.touch_edge(edge.key, NOW - timedelta(hours=2), "late")
    assert edge.last_seen == NOW
    assert edge.evidence == ["late"]

    graph_store.touch_edge(edge.key, NOW + timedelta(hours=1), "next")
    assert edge.last_seen == NOW + timedelta(hours=1)


def test_touch_missing_edge_returns_none(graph_store):
    assert graph_store.touch_edge(("x", "y", "accesses"), NOW, "e1") is None


def test_evidence_is_capped():
    store = RelationshipGraphStore(evidence_limit=3)
    edge = store.put_edge(make_edge("a", "b"))
    for i in range(5):
        store.touch_edge(edge.key, NOW, f"e{i}")

    assert edge.evidence == ["e2", "e3", "e4"]


def test_remove_edge_updates_adjacency(graph_store):
    edge = graph_store.put_edge(make_edge("a", "b"))
    graph_store.put_edge(make_edge("b", "c"))

    assert graph_store.remove_edge(edge.key) is True
    assert graph_store.edges_for("a") == []
    assert [e.target_id for e in graph_store.edges_for("b")] == ["c"]
    assert graph_store.remove_edge(edge.key) is False


def test_snapshots_are_detached(graph_store):
    graph_store.put_edge(make_edge("a", "b", evidence=["e1"]))
    snapshot = graph_store.all_edges()[0]
    snapshot.evidence.append("mutated")
    snapshot.strength = 0.0

    live = graph_store.get_edge("a", "b", RelationshipType.ACCESSES)
    assert live.evidence == ["e1"]
    assert live.strength == 0.6


def test_upsert_entity_merges(graph_store):
    graph_store.upsert_entity(GraphEntity(id="alice", labels=["users", "Entity"], properties={"dept": "it"}))
    merged = graph_store.upsert_entity(GraphEntity(
        id="alice", type=EntityType.USER, labels=["Entity", "admins"], properties={"title": "ops"},
        last_seen=NOW,
    ))

    assert merged.type == EntityType.USER
    assert merged.labels == ["users", "Entity", "admins"]
    assert merged.properties == {"dept": "it", "title": "ops"}
    assert merged.last_seen == NOW


@pytest.mark.parametrize("age_days,factor", [(0, 1.0), (7, 1.0), (8, 0.8), (30, 0.8), (31, 0.5)])
def test_recency_factor(age_days, factor):
    assert RelationshipGraphStore.recency_factor(timedelta(days=age_days)) == factor


@pytest.mark.asyncio
async def test_decay_edges_by_age(graph_store):
    graph_store.put_edge(make_edge("a", "b", strength=1.0, last_seen=NOW - timedelta(days=1)))
    graph_store.put_edge(make_edge("b", "c", strength=1.0, last_seen=NOW - timedelta(days=10)))
    graph_store.put_edge(make_edge("c", "d", strength=1.0, last_seen=NOW - timedelta(days=45)))

    changed = await graph_store.decay_edges(NOW, batch_size=1)

    assert {e.key for e in changed} == {("b", "c", "accesses"), ("c", "d", "accesses")}
    assert graph_store.get_edge("a", "b", RelationshipType.ACCESSES).strength == 1.0
    assert graph_store.get_edge("b", "c", RelationshipType.ACCESSES).strength == pytest.approx(0.8)
    assert graph_store.get_edge("c", "d", RelationshipType.ACCESSES).strength == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_cleanup_removes_stale_edges_and_orphans(graph_store):
    graph_store.put_edge(make_edge("a", "b", last_seen=NOW - timedelta(days=1)))
    graph_store.put_edge(make_edge("b", "old", last_seen=NOW - timedelta(days=40)))

    removed_edges, removed_entities = await graph_store.cleanup(NOW - timedelta(days=30), batch_size=1)

    assert removed_edges == [("b", "old", "accesses")]
    assert removed_entities == ["old"]
    assert graph_store.get_entity("b") is not None
    assert graph_store.edge_count == 1


def test_load_edges_creates_nodes(graph_store):
    count = graph_store.load_edges([make_edge("a", "b"), make_edge("b", "c")])

    assert count == 2
    assert graph_store.entity_count == 3
