"""Pytest configuration and shared fixtures."""
import pytest
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.ext.asyncio import create_async_engine

from correlation_core.behavioral import BaselineStore, BehavioralEngine
from correlation_core.collaborators import HeuristicRuleOracle, InMemoryKnowledgeBase
from correlation_core.database.connection import Base
from correlation_core.database.storage import InMemoryStorage
from correlation_core.graph import GraphCorrelationEngine, RelationshipGraphStore
from correlation_core.orchestrator import CorrelationOrchestrator
from correlation_core.schemas.events import NormalizedEvent
from correlation_core.schemas.rules import (
    ConditionOperator,
    DetectionRule,
    RuleCondition,
    RuleLogic,
    RuleMetadata,
)


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Tuesday, inside business hours
NOW = datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)


def _entities(ids: Iterable[str]) -> list:
    return [{"id": entity_id, "name": entity_id} for entity_id in ids]


def build_event(
    event_id: str = "evt-1",
    timestamp: Optional[datetime] = None,
    users: Iterable[str] = (),
    hosts: Iterable[str] = (),
    networks: Iterable[str] = (),
    processes: Iterable[str] = (),
    files: Iterable[str] = (),
    event_type: str = "authentication",
    source: str = "edr",
    risk_score: float = 0.0,
    **extra: Any,
) -> NormalizedEvent:
    """Build a normalized event from entity id lists."""
    data: Dict[str, Any] = {
        "id": event_id,
        "timestamp": timestamp or NOW,
        "source": source,
        "event_type": event_type,
        "entities": {
            "users": _entities(users),
            "hosts": _entities(hosts),
            "networks": _entities(networks),
            "processes": _entities(processes),
            "files": _entities(files),
        },
        "risk": {"score": risk_score},
    }
    data.update(extra)
    return NormalizedEvent.model_validate(data)


@pytest.fixture
def make_event():
    """Factory fixture for normalized events."""
    return build_event


@pytest.fixture
def baseline_store() -> BaselineStore:
    return BaselineStore()


@pytest.fixture
def behavioral_engine(baseline_store) -> BehavioralEngine:
    return BehavioralEngine(
        store=baseline_store,
        anomaly_threshold=0.7,
        learning_rate=0.1,
        initial_confidence=0.1,
        confidence_increment=0.01,
        feedback_decrement=0.05,
        retention_days=30,
    )


@pytest.fixture
def graph_store() -> RelationshipGraphStore:
    return RelationshipGraphStore()


@pytest.fixture
def graph_engine(graph_store) -> GraphCorrelationEngine:
    return GraphCorrelationEngine(
        store=graph_store,
        correlation_window_hours=6,
        min_correlation_strength=0.5,
        retention_days=30,
        query_timeout_seconds=1.0,
        max_candidate_edges=10000,
        sweep_batch_size=2,
    )


@pytest.fixture
def knowledge_base() -> InMemoryKnowledgeBase:
    return InMemoryKnowledgeBase(confidence_threshold=0.7, sources=[])


@pytest.fixture
def brute_force_rule() -> DetectionRule:
    """Rule matching failed logins from a known source."""
    return DetectionRule(
        id="rule_brute_force",
        name="Brute force login",
        description="Repeated failed logins",
        technique="T1110",
        logic=RuleLogic(conditions=[
            RuleCondition(field="event_type", operator=ConditionOperator.EQUALS, value="failed_login", required=True),
            RuleCondition(field="context.action", operator=ConditionOperator.CONTAINS, value="login"),
        ]),
        metadata=RuleMetadata(mitre_techniques=["T1110"], confidence=0.9),
    )


@pytest.fixture
async def test_engine():
    """In-memory sqlite engine with the schema created."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def orchestrator(behavioral_engine, graph_engine, knowledge_base):
    """Started orchestrator with local collaborators and no background jobs."""
    instance = CorrelationOrchestrator(
        behavioral_engine=behavioral_engine,
        graph_engine=graph_engine,
        knowledge=knowledge_base,
        oracle=HeuristicRuleOracle(),
        storage=InMemoryStorage(),
        worker_count=2,
        queue_size=100,
        oracle_timeout=1.0,
        enrichment_timeout=1.0,
        shutdown_grace_seconds=1.0,
        background_jobs=False,
    )
    await instance.start()
    yield instance
    await instance.stop()
