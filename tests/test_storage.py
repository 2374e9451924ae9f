"""
Tests for state persistence.
"""
import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from correlation_core.behavioral.baseline_store import BehavioralBaseline
from correlation_core.database import (
    InMemoryStorage,
    Persister,
    SqlAlchemyStorage,
    create_engine_for_url,
    init_db,
)
from correlation_core.database.models import RecommendationRecord
from correlation_core.errors import StorageFailure
from correlation_core.graph.store import CorrelationEdge
from correlation_core.observability import metrics
from correlation_core.schemas.events import EntityType, RelationshipType
from correlation_core.schemas.rules import DetectionRule, Recommendation, RuleStatus

NOW = datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)


def make_baseline(entity_id: str = "alice", confidence: float = 0.4) -> BehavioralBaseline:
    return BehavioralBaseline.create(entity_id, EntityType.USER, confidence, NOW)


def make_edge(source: str = "alice", target: str = "ws-1", strength: float = 0.7) -> CorrelationEdge:
    return CorrelationEdge(
        source_id=source,
        target_id=target,
        relationship=RelationshipType.CO_OCCURRED_IN,
        strength=strength,
        confidence=0.8,
        last_seen=NOW,
        evidence=["evt-1"],
    )


@pytest.fixture
def storage(session_factory) -> SqlAlchemyStorage:
    return SqlAlchemyStorage(session_factory=session_factory, max_retries=2, retry_backoff=0)


@pytest.mark.asyncio
async def test_baselines_round_trip_and_upsert(storage):
    await storage.save_baselines([make_baseline("alice"), make_baseline("bob")])
    await storage.save_baseline(make_baseline("alice", confidence=0.9))

    loaded = {b.entity_id: b for b in await storage.load_baselines()}

    assert set(loaded) == {"alice", "bob"}
    assert loaded["alice"].confidence == 0.9
    assert loaded["alice"].last_updated == NOW
    assert set(loaded["alice"].patterns) == set(make_baseline().patterns)


@pytest.mark.asyncio
async def test_edges_round_trip_with_utc_timestamps(storage):
    await storage.save_edges([make_edge(), make_edge("alice", "db-1")])
    await storage.save_edge(make_edge(strength=0.9))

    loaded = {e.key: e for e in await storage.load_edges()}

    edge = loaded[("alice", "ws-1", "co_occurred_in")]
    assert len(loaded) == 2
    assert edge.strength == 0.9
    assert edge.last_seen == NOW
    assert edge.last_seen.tzinfo is not None
    assert edge.evidence == ["evt-1"]


@pytest.mark.asyncio
async def test_deletes(storage):
    await storage.save_baselines([make_baseline("alice"), make_baseline("bob")])
    await storage.save_edges([make_edge(), make_edge("alice", "db-1")])

    await storage.delete_baseline("alice")
    await storage.delete_edge(("alice", "ws-1", "co_occurred_in"))

    assert [b.entity_id for b in await storage.load_baselines()] == ["bob"]
    assert [e.target_id for e in await storage.load_edges()] == ["db-1"]


@pytest.mark.asyncio
async def test_rules_and_recommendations(storage, brute_force_rule, session_factory):
    await storage.save_rule(brute_force_rule)
    brute_force_rule.status = RuleStatus.DEPRECATED
    await storage.save_rule(brute_force_rule)
    await storage.save_recommendation(Recommendation(event_id="evt-1", rule_id=brute_force_rule.id))

    rules = await storage.load_rules()

    assert len(rules) == 1
    assert rules[0].status == RuleStatus.DEPRECATED
    assert rules[0].logic.conditions[0].field == "event_type"

    async with session_factory() as session:
        records = (await session.execute(select(RecommendationRecord))).scalars().all()
    assert [r.rule_id for r in records] == ["rule_brute_force"]
    assert records[0].data["event_id"] == "evt-1"


@pytest.mark.asyncio
async def test_exhausted_retries_raise_storage_failure():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    # no schema: every statement fails
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    storage = SqlAlchemyStorage(session_factory=factory, max_retries=2, retry_backoff=0)

    try:
        with pytest.raises(StorageFailure) as exc_info:
            await storage.load_baselines()
    finally:
        await engine.dispose()

    assert exc_info.value.details["operation"] == "load_baselines"


@pytest.mark.asyncio
async def test_in_memory_storage_keeps_copies():
    storage = InMemoryStorage()
    baseline = make_baseline()
    edge = make_edge()

    await storage.save_baseline(baseline)
    await storage.save_edge(edge)
    await storage.save_rule(DetectionRule(id="rule_x", name="x"))
    baseline.confidence = 1.0
    edge.strength = 0.0

    assert (await storage.load_baselines())[0].confidence == 0.4
    assert (await storage.load_edges())[0].strength == 0.7
    assert (await storage.load_rules())[0].id == "rule_x"

    await storage.delete_edge(["alice", "ws-1", "co_occurred_in"])
    assert await storage.load_edges() == []


@pytest.mark.asyncio
async def test_persister_snapshots_at_submit_time():
    storage = InMemoryStorage()
    persister = Persister(storage)
    baseline = make_baseline()

    persister.save_baselines([baseline])
    baseline.confidence = 1.0

    assert persister.pending == 1
    assert await persister.flush(timeout=5) == 0
    assert persister.pending == 0
    assert storage.baselines["alice"]["confidence"] == 0.4


class FailingStorage(InMemoryStorage):
    async def save_rule(self, rule):
        raise StorageFailure("database unavailable", {"operation": "save_rule"})


@pytest.mark.asyncio
async def test_persister_logs_failures():
    persister = Persister(FailingStorage())
    failures_before = metrics.counters["storage.failures"]

    persister.save_rule(DetectionRule(name="x"))
    await persister.flush()

    assert metrics.counters["storage.failures"] == failures_before + 1


@pytest.mark.asyncio
async def test_persister_contains_unexpected_errors():
    class BrokenStorage(InMemoryStorage):
        async def save_recommendation(self, recommendation):
            raise TypeError("unserializable payload")

    persister = Persister(BrokenStorage())
    failures_before = metrics.counters["storage.failures"]

    task = persister.submit("save_recommendation", persister.storage.save_recommendation(Recommendation()))
    assert await persister.flush(timeout=5) == 0

    assert task.exception() is None
    assert metrics.counters["storage.failures"] == failures_before + 1


@pytest.mark.asyncio
async def test_persister_flush_reports_stragglers():
    class SlowStorage(InMemoryStorage):
        async def save_recommendation(self, recommendation):
            await asyncio.sleep(30)

    persister = Persister(SlowStorage())
    task = persister.submit("slow", persister.storage.save_recommendation(Recommendation()))

    assert await persister.flush(timeout=0.01) == 1

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


def test_engine_pool_follows_backend():
    memory = create_engine_for_url("sqlite+aiosqlite:///:memory:")
    file_backed = create_engine_for_url("sqlite+aiosqlite:///./correlation_state.db")

    assert isinstance(memory.sync_engine.pool, StaticPool)
    assert isinstance(file_backed.sync_engine.pool, NullPool)


@pytest.mark.asyncio
async def test_init_db_creates_schema():
    engine = create_engine_for_url("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    storage = SqlAlchemyStorage(session_factory=factory, max_retries=1, retry_backoff=0)

    try:
        await storage.save_rule(DetectionRule(id="rule_init", name="init"))
        assert [r.id for r in await storage.load_rules()] == ["rule_init"]
    finally:
        await engine.dispose()
