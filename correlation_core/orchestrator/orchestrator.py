"""
Correlation orchestrator.
Accepts normalized events, shards them by primary entity onto worker
queues and drives each one through behavioral and graph analysis,
enrichment, rule evaluation and recommendation generation, then emits
a verdict and feeds the event back into the learning state.
"""
import asyncio
import time
import zlib
from collections import OrderedDict
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from pydantic import ValidationError

from correlation_core.behavioral.engine import BehavioralEngine, BehavioralResult
from correlation_core.collaborators.knowledge import (
    EnrichmentResult,
    InMemoryKnowledgeBase,
    KnowledgeContext,
    KnowledgeEnrichment,
)
from correlation_core.collaborators.oracle import (
    EvaluationContext,
    HeuristicRuleOracle,
    RuleEvaluation,
    RuleOracle,
    RuleResults,
)
from correlation_core.config import settings
from correlation_core.database.storage import InMemoryStorage, Persister, Storage
from correlation_core.errors import (
    DuplicateEventError,
    EventValidationError,
    GraphQueryTimeout,
    IntakeClosedError,
    OracleTimeoutError,
    StorageFailure,
)
from correlation_core.graph.engine import CorrelationResult, GraphCorrelationEngine
from correlation_core.monitoring.metrics import (
    anomalies_detected_total,
    baselines_total,
    degraded_steps_total,
    event_processing_duration_seconds,
    events_discarded_total,
    events_processed_total,
    events_received_total,
    graph_edges_total,
    graph_entities_total,
    intake_queue_depth,
    recommendations_created_total,
    rule_matches_total,
    threat_chains_detected_total,
)
from correlation_core.observability import get_logger, log_context, metrics
from correlation_core.orchestrator.event_bus import RECOMMENDATION_TOPIC, VERDICT_TOPIC, EventBus
from correlation_core.orchestrator.scheduler import BackgroundScheduler
from correlation_core.schemas.events import NormalizedEvent
from correlation_core.schemas.rules import (
    DetectionRule,
    Feedback,
    Recommendation,
    RulePerformance,
    RuleStatus,
)
from correlation_core.schemas.verdict import RuleMatch, Verdict

logger = get_logger(__name__)

T = TypeVar("T")

FALSE_POSITIVE_WEIGHT = 0.3


def shard_for(key: str, shard_count: int) -> int:
    """Stable shard index for a routing key."""
    return zlib.crc32(key.encode("utf-8")) % shard_count


def has_similar_rule(event: NormalizedEvent, rule: DetectionRule) -> bool:
    """
    Whether the rule already covers the event's type.

    True when the event type and the rule's first MITRE technique contain
    each other in either direction. An empty technique always counts.
    """
    event_type = event.event_type.lower()
    techniques = rule.metadata.mitre_techniques
    technique = techniques[0].lower() if techniques else ""
    return technique in event_type or event_type in technique


def update_rule_performance(performance: RulePerformance, feedback: Feedback) -> RulePerformance:
    """Fold one piece of analyst feedback into rule counters."""
    if feedback.is_false_negative:
        performance.false_negatives += 1
    elif feedback.is_false_positive:
        performance.false_positives += 1
    else:
        performance.true_positives += 1

    tp = performance.true_positives
    judged = tp + performance.false_positives
    performance.precision = tp / judged if judged else 0.0
    performance.accuracy = performance.precision

    if performance.false_negatives:
        found = tp + performance.false_negatives
        performance.recall = tp / found if found else 0.0
        denominator = performance.precision + performance.recall
        performance.f1_score = (
            2 * performance.precision * performance.recall / denominator if denominator else 0.0
        )

    performance.last_updated = datetime.now(timezone.utc)
    return performance


@dataclass
class OrchestratorStats:
    events_received: int = 0
    events_processed: int = 0
    events_rejected: int = 0
    duplicates_rejected: int = 0
    events_discarded: int = 0
    events_degraded: int = 0
    recommendations_created: int = 0
    false_positives_reduced: int = 0
    last_processing_time_ms: float = 0.0
    average_processing_time_ms: float = 0.0


class CorrelationOrchestrator:
    """
    Event pipeline coordinator.

    Events with the same primary entity land on the same worker queue and
    are processed in submission order. Collaborator failures degrade the
    affected step and are listed in ``Verdict.degraded``; only intake
    validation keeps an event out of analysis.
    """

    def __init__(
        self,
        behavioral_engine: Optional[BehavioralEngine] = None,
        graph_engine: Optional[GraphCorrelationEngine] = None,
        knowledge: Optional[KnowledgeEnrichment] = None,
        oracle: Optional[RuleOracle] = None,
        storage: Optional[Storage] = None,
        event_bus: Optional[EventBus] = None,
        worker_count: Optional[int] = None,
        queue_size: Optional[int] = None,
        seen_event_ids: Optional[int] = None,
        oracle_timeout: Optional[float] = None,
        enrichment_timeout: Optional[float] = None,
        shutdown_grace_seconds: Optional[float] = None,
        recommendation_threshold: Optional[float] = None,
        false_positive_threshold: Optional[float] = None,
        background_jobs: bool = True,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            behavioral_engine: Baseline scoring engine
            graph_engine: Graph correlation engine
            knowledge: Knowledge enrichment collaborator
            oracle: Rule oracle collaborator
            storage: Persistence backend
            event_bus: Verdict and recommendation dispatcher
            worker_count: Number of shard queues and workers
            queue_size: Capacity of each shard queue
            seen_event_ids: Accepted event ids remembered for duplicate detection
            oracle_timeout: Budget per oracle call in seconds
            enrichment_timeout: Budget per knowledge call in seconds
            shutdown_grace_seconds: Drain period before in-flight work is aborted
            recommendation_threshold: Match confidence above which recommendations are considered
            false_positive_threshold: Match confidence below which false-positive risk accrues
            background_jobs: Schedule cleanup, decay and knowledge refresh jobs
        """
        self.behavioral = behavioral_engine or BehavioralEngine()
        self.graph = graph_engine or GraphCorrelationEngine()
        self.knowledge = knowledge or InMemoryKnowledgeBase()
        self.oracle = oracle or HeuristicRuleOracle()
        self.storage = storage or InMemoryStorage()
        self.persister = Persister(self.storage)
        self.event_bus = event_bus or EventBus()
        self.scheduler = BackgroundScheduler()
        self.background_jobs = background_jobs

        self.worker_count = worker_count or settings.orchestrator_worker_count
        self.queue_size = queue_size or settings.orchestrator_queue_size
        self.seen_limit = seen_event_ids or settings.orchestrator_seen_event_ids
        self.oracle_timeout = oracle_timeout or settings.oracle_timeout_seconds
        self.enrichment_timeout = enrichment_timeout or settings.enrichment_timeout_seconds
        self.shutdown_grace_seconds = (
            shutdown_grace_seconds if shutdown_grace_seconds is not None else settings.shutdown_grace_seconds
        )
        self.recommendation_threshold = (
            recommendation_threshold
            if recommendation_threshold is not None
            else settings.recommendation_confidence_threshold
        )
        self.false_positive_threshold = (
            false_positive_threshold
            if false_positive_threshold is not None
            else settings.false_positive_confidence_threshold
        )

        self.stats = OrchestratorStats()
        self._rules: Dict[str, DetectionRule] = {}
        # accepted event id -> entity ids, for duplicate detection and feedback lookup
        self._seen: "OrderedDict[str, Tuple[str, ...]]" = OrderedDict()
        self._queues: List[asyncio.Queue] = []
        self._workers: List[asyncio.Task] = []
        self._inflight: set = set()
        self._accepting = False
        self.is_running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load persisted state, start workers and background jobs."""
        if self.is_running:
            return

        await self._load_state()

        self._queues = [asyncio.Queue(maxsize=self.queue_size) for _ in range(self.worker_count)]
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"correlation-worker-{i}")
            for i in range(self.worker_count)
        ]

        if self.background_jobs:
            self.scheduler.add_job(
                "baseline_cleanup",
                settings.baseline_cleanup_interval_minutes * 60,
                self.cleanup_baselines,
            )
            self.scheduler.add_job(
                "graph_maintenance",
                settings.graph_decay_interval_minutes * 60,
                self.maintain_graph,
            )
            self.scheduler.add_job(
                "knowledge_refresh",
                settings.knowledge_update_interval_minutes * 60,
                self.knowledge.refresh,
                run_immediately=True,
            )
            self.scheduler.start()

        self._accepting = True
        self.is_running = True
        self._update_gauges()
        logger.info(
            "Correlation orchestrator started",
            extra={
                "workers": self.worker_count,
                "rules": len(self._rules),
                "baselines": len(self.behavioral.store),
                "edges": self.graph.store.edge_count,
            },
        )

    async def _load_state(self) -> None:
        try:
            rules = await self.storage.load_rules()
            baselines = await self.storage.load_baselines()
            edges = await self.storage.load_edges()
        except StorageFailure as e:
            logger.error(
                "Failed to load persisted state, starting empty",
                extra={"error": e.message},
            )
            return

        for rule in rules:
            self._rules[rule.id] = rule
        self.behavioral.store.load(baselines)
        self.graph.store.load_edges(edges)

    async def stop(self) -> None:
        """
        Stop intake, drain the queues for the grace period, then abort.

        In-flight oracle calls are aborted and treated as timeouts, events
        still queued are discarded and counted, workers and background jobs
        are stopped and pending persistence is flushed.
        """
        if not self.is_running:
            return

        self._accepting = False
        logger.info("Stopping correlation orchestrator", extra={"queued": self.queue_depth})

        if not await self._drain(self.shutdown_grace_seconds):
            for task in list(self._inflight):
                task.cancel()

            discarded = self._discard_queued()
            if discarded:
                self.stats.events_discarded += discarded
                events_discarded_total.inc(discarded)
                logger.warning(f"Discarded {discarded} queued events at shutdown")

            await self._drain(self.shutdown_grace_seconds)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        await self.scheduler.stop()
        await self.knowledge.close()
        await self.oracle.close()
        await self.persister.flush(timeout=self.shutdown_grace_seconds)
        await self.storage.close()

        self.is_running = False
        self._update_gauges()
        logger.info("Correlation orchestrator stopped", extra=asdict(self.stats))

    async def _drain(self, timeout: float) -> bool:
        if not self._queues:
            return True
        try:
            await asyncio.wait_for(
                asyncio.gather(*(queue.join() for queue in self._queues)),
                timeout=timeout,
            )
            return True
        except asyncio.TimeoutError:
            return False

    def _discard_queued(self) -> int:
        discarded = 0
        for queue in self._queues:
            while not queue.empty():
                queue.get_nowait()
                queue.task_done()
                discarded += 1
        return discarded

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    @property
    def queue_depth(self) -> int:
        return sum(queue.qsize() for queue in self._queues)

    @property
    def accepting(self) -> bool:
        return self._accepting

    def _remember(self, event: NormalizedEvent) -> None:
        self._seen[event.id] = tuple(entity.id for entity in event.iter_entities())
        while len(self._seen) > self.seen_limit:
            self._seen.popitem(last=False)

    async def submit(self, event: Union[NormalizedEvent, Dict[str, Any]]) -> NormalizedEvent:
        """
        Validate an event and queue it for processing.

        Waits while the target shard queue is full.

        The shard is chosen by the primary entity alone, so ordering holds
        per primary entity. An entity that appears only as a secondary
        entity may be analyzed on two shards out of submission order.

        Args:
            event: Normalized event or its mapping form

        Returns:
            The validated event

        Raises:
            IntakeClosedError: If the orchestrator is not accepting events
            EventValidationError: If the event is malformed
            DuplicateEventError: If the event id was already accepted
        """
        if not self._accepting:
            events_received_total.labels(status="closed").inc()
            raise IntakeClosedError("Orchestrator is not accepting events")

        if not isinstance(event, NormalizedEvent):
            try:
                event = NormalizedEvent.model_validate(event)
            except ValidationError as e:
                self.stats.events_rejected += 1
                events_received_total.labels(status="invalid").inc()
                logger.warning("Event rejected at intake", extra={"errors": e.error_count()})
                raise EventValidationError(
                    "Invalid event",
                    {"errors": e.errors(include_url=False, include_context=False)},
                ) from e

        if event.id in self._seen:
            self.stats.duplicates_rejected += 1
            events_received_total.labels(status="duplicate").inc()
            raise DuplicateEventError(event.id)

        self._remember(event)
        self.stats.events_received += 1
        events_received_total.labels(status="accepted").inc()

        routing_key = event.primary_entity_id or event.id
        await self._queues[shard_for(routing_key, self.worker_count)].put(event)
        intake_queue_depth.set(self.queue_depth)
        return event

    async def _worker(self, index: int) -> None:
        queue = self._queues[index]
        while True:
            event = await queue.get()
            try:
                with log_context(event_id=event.id, shard=index):
                    await self.process_event(event)
            except Exception as e:
                events_processed_total.labels(status="error").inc()
                logger.error(
                    f"Unhandled error processing event {event.id}: {e}",
                    extra={"event_id": event.id, "worker": index},
                    exc_info=True,
                )
            finally:
                queue.task_done()
                intake_queue_depth.set(self.queue_depth)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _degrade(self, degraded: List[str], reason: str, event: NormalizedEvent, error: BaseException) -> None:
        if reason not in degraded:
            degraded.append(reason)
        degraded_steps_total.labels(reason=reason).inc()
        logger.warning(
            f"Pipeline step degraded: {reason}",
            extra={
                "event_id": event.id,
                "reason": reason,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )

    async def _call_with_budget(self, call: Awaitable[T], timeout: float) -> T:
        """
        Await a collaborator call under a time budget.

        The call runs as a tracked task so shutdown can abort it.

        Raises:
            OracleTimeoutError: budget exceeded or call aborted at shutdown
        """
        task = asyncio.ensure_future(call)
        self._inflight.add(task)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                task.cancel()
                raise OracleTimeoutError(f"Call exceeded {timeout}s budget", {"timeout": timeout})
            if task.cancelled():
                raise OracleTimeoutError("Call aborted at shutdown")
            return task.result()
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._inflight.discard(task)

    async def _run_behavioral(self, event: NormalizedEvent, degraded: List[str]) -> BehavioralResult:
        try:
            return await self.behavioral.analyze(event)
        except Exception as e:
            self._degrade(degraded, "behavioral_error", event, e)
            return BehavioralResult()

    async def _run_graph(self, event: NormalizedEvent, degraded: List[str]) -> CorrelationResult:
        try:
            return await self.graph.correlate(event)
        except GraphQueryTimeout as e:
            self._degrade(degraded, "graph_query_timeout", event, e)
        except Exception as e:
            self._degrade(degraded, "graph_error", event, e)
        return CorrelationResult()

    async def _enrich(self, event: NormalizedEvent, degraded: List[str]) -> Optional[EnrichmentResult]:
        try:
            return await asyncio.wait_for(self.knowledge.enrich(event), timeout=self.enrichment_timeout)
        except asyncio.TimeoutError as e:
            self._degrade(degraded, "enrichment_timeout", event, e)
        except Exception as e:
            self._degrade(degraded, "enrichment_error", event, e)
        return None

    async def _evaluate_rule(
        self,
        rule: DetectionRule,
        event: NormalizedEvent,
        context: EvaluationContext,
        degraded: List[str],
    ) -> RuleEvaluation:
        try:
            return await self._call_with_budget(
                self.oracle.evaluate(rule, event, context),
                self.oracle_timeout,
            )
        except OracleTimeoutError as e:
            self._degrade(degraded, "oracle_timeout", event, e)
            return RuleEvaluation.neutral("Evaluation timed out")
        except Exception as e:
            self._degrade(degraded, "oracle_error", event, e)
            return RuleEvaluation.neutral("Evaluation failed due to error")

    async def evaluate_rules(
        self,
        event: NormalizedEvent,
        context: EvaluationContext,
        degraded: Optional[List[str]] = None,
    ) -> RuleResults:
        """
        Evaluate every active rule concurrently.

        A match below the false-positive threshold adds
        ``(1 - confidence) * 0.3`` to the false-positive risk (capped at 1).
        A match above the recommendation threshold whose technique does not
        already cover the event type requests recommendations.
        """
        degraded = degraded if degraded is not None else []
        rules = self.active_rules()
        evaluations = await asyncio.gather(
            *(self._evaluate_rule(rule, event, context, degraded) for rule in rules)
        )

        results = RuleResults(context=context)
        false_positive_risk = 0.0
        for rule, evaluation in zip(rules, evaluations):
            if not evaluation.matches:
                continue

            results.matched_rules.append(RuleMatch(
                rule_id=rule.id,
                rule_name=rule.name,
                confidence=evaluation.confidence,
                reason=evaluation.reason,
            ))
            rule.performance.total_matches += 1
            rule_matches_total.labels(rule_id=rule.id).inc()

            if evaluation.confidence < self.false_positive_threshold:
                false_positive_risk += (1 - evaluation.confidence) * FALSE_POSITIVE_WEIGHT
            if evaluation.confidence > self.recommendation_threshold and not has_similar_rule(event, rule):
                results.needs_recommendation = True

        results.false_positive_risk = min(1.0, false_positive_risk)
        return results

    async def _generate_recommendations(
        self,
        event: NormalizedEvent,
        rule_results: RuleResults,
        degraded: List[str],
    ) -> List[Recommendation]:
        rules = self.active_rules()
        try:
            knowledge = await asyncio.wait_for(
                self.knowledge.get_relevant_knowledge(event, rules),
                timeout=self.enrichment_timeout,
            )
        except asyncio.TimeoutError as e:
            self._degrade(degraded, "enrichment_timeout", event, e)
            knowledge = KnowledgeContext(rules=list(rules))
        except Exception as e:
            self._degrade(degraded, "enrichment_error", event, e)
            knowledge = KnowledgeContext(rules=list(rules))

        try:
            recommendations = await self._call_with_budget(
                self.oracle.generate_recommendations(event, rule_results, rules, knowledge),
                self.oracle_timeout,
            )
        except OracleTimeoutError as e:
            self._degrade(degraded, "recommendation_timeout", event, e)
            return []
        except Exception as e:
            self._degrade(degraded, "recommendation_error", event, e)
            return []

        for recommendation in recommendations:
            self.persister.save_recommendation(recommendation)
            self.stats.recommendations_created += 1
            recommendations_created_total.labels(type=recommendation.type.value).inc()
            await self.event_bus.publish(RECOMMENDATION_TOPIC, recommendation)

        if recommendations:
            logger.info(
                f"Created {len(recommendations)} recommendations",
                extra={"event_id": event.id, "recommendations": [r.id for r in recommendations]},
            )
        return recommendations

    async def process_event(self, event: NormalizedEvent) -> Verdict:
        """
        Run one event through the full pipeline.

        Behavioral and graph analysis run concurrently; the verdict is
        emitted before baselines and knowledge learn from the event.

        Args:
            event: Validated event

        Returns:
            The emitted verdict
        """
        start_time = time.perf_counter()
        degraded: List[str] = []

        behavioral, correlation = await asyncio.gather(
            self._run_behavioral(event, degraded),
            self._run_graph(event, degraded),
        )
        enrichment = await self._enrich(event, degraded)

        context = EvaluationContext(behavioral=behavioral, correlation=correlation, enrichment=enrichment)
        rule_results = await self.evaluate_rules(event, context, degraded)

        recommendations: List[Recommendation] = []
        if rule_results.needs_recommendation:
            recommendations = await self._generate_recommendations(event, rule_results, degraded)

        processing_time_ms = (time.perf_counter() - start_time) * 1000
        verdict = Verdict(
            event_id=event.id,
            matched_rules=rule_results.matched_rules,
            false_positive_risk=rule_results.false_positive_risk,
            needs_recommendation=rule_results.needs_recommendation,
            behavioral_result=behavioral,
            correlation_result=correlation,
            enrichment=enrichment,
            processed_at=datetime.now(timezone.utc),
            processing_time_ms=processing_time_ms,
            recommendations=recommendations,
            degraded=degraded,
        )

        self._record_processed(verdict)
        await self.event_bus.publish(VERDICT_TOPIC, verdict)
        await self._learn(event, behavioral, correlation)
        return verdict

    def _record_processed(self, verdict: Verdict) -> None:
        stats = self.stats
        stats.events_processed += 1
        stats.last_processing_time_ms = verdict.processing_time_ms
        stats.average_processing_time_ms += (
            verdict.processing_time_ms - stats.average_processing_time_ms
        ) / stats.events_processed
        if verdict.degraded:
            stats.events_degraded += 1

        events_processed_total.labels(status="degraded" if verdict.degraded else "success").inc()
        event_processing_duration_seconds.observe(verdict.processing_time_ms / 1000)
        metrics.record_histogram("orchestrator.processing_ms", verdict.processing_time_ms)
        for anomaly in verdict.behavioral_result.anomalies:
            anomalies_detected_total.labels(pattern=anomaly.pattern.value).inc()
        for chain in verdict.correlation_result.threat_chains:
            threat_chains_detected_total.labels(pattern=chain.pattern.value).inc()

        logger.info(
            "Verdict emitted",
            extra={
                "event_id": verdict.event_id,
                "risk_score": verdict.risk_score,
                "matched_rules": len(verdict.matched_rules),
                "degraded": verdict.degraded,
                "processing_time_ms": round(verdict.processing_time_ms, 2),
            },
        )

    async def _learn(
        self,
        event: NormalizedEvent,
        behavioral: BehavioralResult,
        correlation: CorrelationResult,
    ) -> None:
        try:
            touched = await self.behavioral.update_baseline(event)
        except Exception as e:
            self._degrade([], "baseline_update_error", event, e)
        else:
            self.persister.save_baselines(touched)

        self.persister.save_edges(correlation.updated_edges)

        try:
            await asyncio.wait_for(
                self.knowledge.update_with_event(event, behavioral),
                timeout=self.enrichment_timeout,
            )
        except asyncio.TimeoutError as e:
            self._degrade([], "knowledge_update_timeout", event, e)
        except Exception as e:
            self._degrade([], "knowledge_update_error", event, e)

    # ------------------------------------------------------------------
    # Feedback and rules
    # ------------------------------------------------------------------

    def apply_feedback(self, feedback: Feedback) -> Dict[str, Any]:
        """
        Apply analyst feedback.

        A false positive lowers the confidence of the named entity's baseline,
        or of every entity of the referenced event when no entity is named.
        Feedback naming a rule updates that rule's performance counters.

        Returns:
            Summary of what the feedback changed
        """
        adjusted: List[str] = []
        if feedback.is_false_positive:
            if feedback.entity_id:
                entity_ids: Sequence[str] = (feedback.entity_id,)
            else:
                entity_ids = self._seen.get(feedback.event_id or "", ())
            for entity_id in entity_ids:
                baseline = self.behavioral.apply_feedback(entity_id)
                if baseline is not None:
                    adjusted.append(entity_id)
                    self.persister.save_baselines([baseline])
            if adjusted:
                self.stats.false_positives_reduced += 1

        rule_performance = None
        if feedback.rule_id:
            rule = self._rules.get(feedback.rule_id)
            if rule is None:
                logger.debug(f"Feedback for unknown rule {feedback.rule_id} ignored")
            else:
                update_rule_performance(rule.performance, feedback)
                rule.updated_at = datetime.now(timezone.utc)
                self.persister.save_rule(rule)
                rule_performance = rule.performance.model_dump(mode="json")

        logger.info(
            "Feedback applied",
            extra={
                "feedback_id": feedback.id,
                "event_id": feedback.event_id,
                "baselines_adjusted": len(adjusted),
                "rule_id": feedback.rule_id,
            },
        )
        return {
            "feedback_id": feedback.id,
            "baselines_adjusted": adjusted,
            "rule_performance": rule_performance,
        }

    def register_rule(self, rule: Union[DetectionRule, Dict[str, Any]]) -> DetectionRule:
        """Add or replace a detection rule and persist it."""
        if not isinstance(rule, DetectionRule):
            rule = DetectionRule.model_validate(rule)
        self._rules[rule.id] = rule
        self.persister.save_rule(rule)
        logger.info(f"Registered rule {rule.id}", extra={"rule_id": rule.id, "rule_name": rule.name})
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        """Retire a rule; it is persisted as deprecated so it does not return on restart."""
        rule = self._rules.pop(rule_id, None)
        if rule is None:
            return False
        rule.status = RuleStatus.DEPRECATED
        rule.updated_at = datetime.now(timezone.utc)
        self.persister.save_rule(rule)
        logger.info(f"Removed rule {rule_id}", extra={"rule_id": rule_id})
        return True

    def get_rule(self, rule_id: str) -> Optional[DetectionRule]:
        return self._rules.get(rule_id)

    def rules(self) -> List[DetectionRule]:
        return list(self._rules.values())

    def active_rules(self) -> List[DetectionRule]:
        return [rule for rule in self._rules.values() if rule.is_active]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_verdict(self, handler: Callable[[Verdict], Any]) -> Callable[[], None]:
        return self.event_bus.subscribe(VERDICT_TOPIC, handler)

    def on_recommendation_created(self, handler: Callable[[Recommendation], Any]) -> Callable[[], None]:
        return self.event_bus.subscribe(RECOMMENDATION_TOPIC, handler)

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------

    async def cleanup_baselines(self) -> List[str]:
        removed = await self.behavioral.cleanup_stale()
        self.persister.delete_baselines(removed)
        if removed:
            logger.info(f"Removed {len(removed)} stale baselines")
        self._update_gauges()
        return removed

    async def maintain_graph(self) -> Tuple[int, int]:
        """Decay edge strengths, then drop edges and entities past retention."""
        changed = await self.graph.decay_edges()
        self.persister.save_edges(changed)
        removed_edges, removed_entities = await self.graph.cleanup()
        self.persister.delete_edges(removed_edges)
        if removed_edges or removed_entities:
            logger.info(
                "Graph cleanup completed",
                extra={"edges_removed": len(removed_edges), "entities_removed": len(removed_entities)},
            )
        self._update_gauges()
        return len(changed), len(removed_edges)

    def _update_gauges(self) -> None:
        baselines_total.set(len(self.behavioral.store))
        graph_edges_total.set(self.graph.store.edge_count)
        graph_entities_total.set(self.graph.store.entity_count)
        intake_queue_depth.set(self.queue_depth)

    def get_stats(self) -> Dict[str, Any]:
        """Current counters and state sizes."""
        return {
            **asdict(self.stats),
            "queue_depth": self.queue_depth,
            "running": self.is_running,
            "accepting": self._accepting,
            "active_rules": len(self.active_rules()),
            "baselines": len(self.behavioral.store),
            "graph_edges": self.graph.store.edge_count,
            "graph_entities": self.graph.store.entity_count,
            "pending_persistence": self.persister.pending,
            "engine_metrics": metrics.get_snapshot(),
        }
