"""
Persistence of baselines, graph edges, rules and recommendations.
Writes on the event path go through Persister as background tasks so
processing never waits on storage.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from correlation_core.behavioral.baseline_store import BehavioralBaseline
from correlation_core.config import settings
from correlation_core.database.connection import get_session_factory
from correlation_core.database.models import (
    BaselineRecord,
    EdgeRecord,
    RecommendationRecord,
    RuleRecord,
)
from correlation_core.errors import StorageFailure
from correlation_core.graph.store import CorrelationEdge, EdgeKey
from correlation_core.monitoring.metrics import track_storage_operation
from correlation_core.observability import get_logger, metrics
from correlation_core.schemas.rules import DetectionRule, Recommendation

logger = get_logger(__name__)

T = TypeVar("T")


class Storage(ABC):
    """Durable home of the correlation state."""

    @abstractmethod
    async def save_baseline(self, baseline: BehavioralBaseline) -> None:
        ...

    async def save_baselines(self, baselines: Iterable[BehavioralBaseline]) -> None:
        for baseline in baselines:
            await self.save_baseline(baseline)

    @abstractmethod
    async def save_edge(self, edge: CorrelationEdge) -> None:
        ...

    async def save_edges(self, edges: Iterable[CorrelationEdge]) -> None:
        for edge in edges:
            await self.save_edge(edge)

    @abstractmethod
    async def save_rule(self, rule: DetectionRule) -> None:
        ...

    @abstractmethod
    async def save_recommendation(self, recommendation: Recommendation) -> None:
        ...

    @abstractmethod
    async def load_baselines(self) -> List[BehavioralBaseline]:
        ...

    @abstractmethod
    async def load_edges(self) -> List[CorrelationEdge]:
        ...

    @abstractmethod
    async def load_rules(self) -> List[DetectionRule]:
        ...

    @abstractmethod
    async def delete_baseline(self, entity_id: str) -> None:
        ...

    @abstractmethod
    async def delete_edge(self, key: EdgeKey) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryStorage(Storage):
    """Storage kept in process memory; holds serialized copies."""

    def __init__(self):
        self.baselines: Dict[str, Dict[str, Any]] = {}
        self.edges: Dict[EdgeKey, Dict[str, Any]] = {}
        self.rules: Dict[str, Dict[str, Any]] = {}
        self.recommendations: Dict[str, Dict[str, Any]] = {}

    async def save_baseline(self, baseline: BehavioralBaseline) -> None:
        self.baselines[baseline.entity_id] = baseline.to_dict()

    async def save_edge(self, edge: CorrelationEdge) -> None:
        self.edges[edge.key] = edge.to_dict()

    async def save_rule(self, rule: DetectionRule) -> None:
        self.rules[rule.id] = rule.model_dump(mode="json")

    async def save_recommendation(self, recommendation: Recommendation) -> None:
        self.recommendations[recommendation.id] = recommendation.model_dump(mode="json")

    async def load_baselines(self) -> List[BehavioralBaseline]:
        return [BehavioralBaseline.from_dict(data) for data in self.baselines.values()]

    async def load_edges(self) -> List[CorrelationEdge]:
        return [CorrelationEdge.from_dict(data) for data in self.edges.values()]

    async def load_rules(self) -> List[DetectionRule]:
        return [DetectionRule.model_validate(data) for data in self.rules.values()]

    async def delete_baseline(self, entity_id: str) -> None:
        self.baselines.pop(entity_id, None)

    async def delete_edge(self, key: EdgeKey) -> None:
        self.edges.pop(tuple(key), None)


class SqlAlchemyStorage(Storage):
    """
    Storage on an async SQLAlchemy database (aiosqlite or asyncpg URLs).

    Every operation runs in its own session and is retried with
    exponential backoff; exhausted retries raise StorageFailure.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_retries: Optional[int] = None,
        retry_backoff: float = 1.0,
    ) -> None:
        """Initialize storage.

        Args:
            session_factory: Session factory; the global one when omitted
            max_retries: Attempts per operation
            retry_backoff: Exponential backoff multiplier in seconds
        """
        self._session_factory = session_factory or get_session_factory()
        self.max_retries = max_retries or settings.storage_max_retries
        self.retry_backoff = retry_backoff

    async def _execute(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(SQLAlchemyError),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.retry_backoff, min=2 * self.retry_backoff, max=10),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    async with self._session_factory() as session:
                        try:
                            result = await work(session)
                            await session.commit()
                        except Exception:
                            await session.rollback()
                            raise
                        return result
        except SQLAlchemyError as e:
            logger.error(
                f"Storage operation {operation} failed",
                extra={"operation": operation, "error": str(e), "error_type": type(e).__name__},
            )
            raise StorageFailure(
                f"Storage operation {operation} failed",
                {"operation": operation, "error": str(e)},
            ) from e

    @staticmethod
    def _baseline_record(baseline: BehavioralBaseline) -> BaselineRecord:
        return BaselineRecord(
            entity_id=baseline.entity_id,
            entity_type=baseline.entity_type.value,
            confidence=baseline.confidence,
            last_updated=baseline.last_updated,
            data=baseline.to_dict(),
        )

    @staticmethod
    def _edge_record(edge: CorrelationEdge) -> EdgeRecord:
        return EdgeRecord(
            source_id=edge.source_id,
            target_id=edge.target_id,
            relationship=edge.relationship.value,
            strength=edge.strength,
            confidence=edge.confidence,
            last_seen=edge.last_seen,
            evidence=list(edge.evidence),
        )

    @track_storage_operation("save_baseline")
    async def save_baseline(self, baseline: BehavioralBaseline) -> None:
        record = self._baseline_record(baseline)

        async def work(session: AsyncSession) -> None:
            await session.merge(record)

        await self._execute("save_baseline", work)

    @track_storage_operation("save_baselines")
    async def save_baselines(self, baselines: Iterable[BehavioralBaseline]) -> None:
        records = [self._baseline_record(b) for b in baselines]
        if not records:
            return

        async def work(session: AsyncSession) -> None:
            for record in records:
                await session.merge(record)

        await self._execute("save_baselines", work)

    @track_storage_operation("save_edge")
    async def save_edge(self, edge: CorrelationEdge) -> None:
        record = self._edge_record(edge)

        async def work(session: AsyncSession) -> None:
            await session.merge(record)

        await self._execute("save_edge", work)

    @track_storage_operation("save_edges")
    async def save_edges(self, edges: Iterable[CorrelationEdge]) -> None:
        records = [self._edge_record(e) for e in edges]
        if not records:
            return

        async def work(session: AsyncSession) -> None:
            for record in records:
                await session.merge(record)

        await self._execute("save_edges", work)

    @track_storage_operation("save_rule")
    async def save_rule(self, rule: DetectionRule) -> None:
        record = RuleRecord(
            id=rule.id,
            name=rule.name,
            status=rule.status.value,
            data=rule.model_dump(mode="json"),
            updated_at=rule.updated_at,
        )

        async def work(session: AsyncSession) -> None:
            await session.merge(record)

        await self._execute("save_rule", work)

    @track_storage_operation("save_recommendation")
    async def save_recommendation(self, recommendation: Recommendation) -> None:
        record = RecommendationRecord(
            id=recommendation.id,
            event_id=recommendation.event_id,
            rule_id=recommendation.rule_id,
            type=recommendation.type.value,
            priority=recommendation.priority.value,
            confidence=recommendation.confidence,
            data=recommendation.model_dump(mode="json"),
            created_at=recommendation.created_at,
        )

        async def work(session: AsyncSession) -> None:
            await session.merge(record)

        await self._execute("save_recommendation", work)

    @track_storage_operation("load_baselines")
    async def load_baselines(self) -> List[BehavioralBaseline]:
        async def work(session: AsyncSession) -> List[BehavioralBaseline]:
            result = await session.execute(select(BaselineRecord))
            return [BehavioralBaseline.from_dict(r.data) for r in result.scalars()]

        return await self._execute("load_baselines", work)

    @track_storage_operation("load_edges")
    async def load_edges(self) -> List[CorrelationEdge]:
        async def work(session: AsyncSession) -> List[CorrelationEdge]:
            result = await session.execute(select(EdgeRecord))
            return [
                CorrelationEdge(
                    source_id=r.source_id,
                    target_id=r.target_id,
                    relationship=r.relationship,
                    strength=r.strength,
                    confidence=r.confidence,
                    last_seen=r.last_seen,
                    evidence=list(r.evidence or []),
                )
                for r in result.scalars()
            ]

        return await self._execute("load_edges", work)

    @track_storage_operation("load_rules")
    async def load_rules(self) -> List[DetectionRule]:
        async def work(session: AsyncSession) -> List[DetectionRule]:
            result = await session.execute(select(RuleRecord))
            return [DetectionRule.model_validate(r.data) for r in result.scalars()]

        return await self._execute("load_rules", work)

    @track_storage_operation("delete_baseline")
    async def delete_baseline(self, entity_id: str) -> None:
        async def work(session: AsyncSession) -> None:
            await session.execute(delete(BaselineRecord).where(BaselineRecord.entity_id == entity_id))

        await self._execute("delete_baseline", work)

    @track_storage_operation("delete_edge")
    async def delete_edge(self, key: EdgeKey) -> None:
        source_id, target_id, relationship = key

        async def work(session: AsyncSession) -> None:
            await session.execute(
                delete(EdgeRecord).where(
                    EdgeRecord.source_id == source_id,
                    EdgeRecord.target_id == target_id,
                    EdgeRecord.relationship == relationship,
                )
            )

        await self._execute("delete_edge", work)


class Persister:
    """Fire-and-forget writer in front of a Storage.

    Values are serialized copies taken at submit time, so later
    in-memory mutation does not race the write.
    """

    def __init__(self, storage: Storage):
        self.storage = storage
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, operation: str, write: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(self._run(operation, write))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, operation: str, write: Awaitable[None]) -> None:
        try:
            await write
            metrics.increment("storage.writes")
        except StorageFailure as e:
            metrics.increment("storage.failures")
            logger.error(
                f"Background persistence failed: {operation}",
                extra={"operation": operation, "error": e.message},
            )
        except Exception as e:
            metrics.increment("storage.failures")
            logger.error(
                f"Background persistence failed: {operation}",
                extra={"operation": operation, "error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )

    def save_baselines(self, baselines: Iterable[BehavioralBaseline]) -> None:
        copies = [BehavioralBaseline.from_dict(b.to_dict()) for b in baselines]
        if copies:
            self.submit("save_baselines", self.storage.save_baselines(copies))

    def save_edges(self, edges: Iterable[CorrelationEdge]) -> None:
        copies = [e.snapshot() for e in edges]
        if copies:
            self.submit("save_edges", self.storage.save_edges(copies))

    def save_rule(self, rule: DetectionRule) -> None:
        self.submit("save_rule", self.storage.save_rule(rule.model_copy(deep=True)))

    def save_recommendation(self, recommendation: Recommendation) -> None:
        self.submit("save_recommendation", self.storage.save_recommendation(recommendation))

    def delete_baselines(self, entity_ids: Iterable[str]) -> None:
        for entity_id in entity_ids:
            self.submit("delete_baseline", self.storage.delete_baseline(entity_id))

    def delete_edges(self, keys: Iterable[EdgeKey]) -> None:
        for key in keys:
            self.submit("delete_edge", self.storage.delete_edge(key))

    async def flush(self, timeout: Optional[float] = None) -> int:
        """Wait for pending writes; returns the number still pending after ``timeout``."""
        if not self._tasks:
            return 0
        _, still_pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if still_pending:
            logger.warning(f"{len(still_pending)} persistence tasks still pending after flush")
        return len(still_pending)
