"""
Behavioral anomaly engine.
Scores each event against per-entity EWMA baselines, then (in a separate
call) folds the event into those baselines. Scoring always reads the
pre-update baseline so an event is never compared against statistics it
has already shifted.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from correlation_core.behavioral.baseline_store import (
    BaselineStore,
    BehavioralBaseline,
    PatternStats,
    PatternType,
)
from correlation_core.config.settings import settings
from correlation_core.observability.metrics import metrics
from correlation_core.schemas.events import EntityType, NormalizedEvent

logger = logging.getLogger(__name__)


@dataclass
class Anomaly:
    """A pattern of one entity that deviates from its baseline."""
    entity_id: str
    pattern: PatternType
    description: str
    severity: float
    confidence: float
    deviation: float
    baseline: float
    current: float
    timeframe: str


@dataclass
class PatternAnalysis:
    """Deviation of a single observation from pattern statistics."""
    is_anomaly: bool
    z_score: float
    severity: float
    confidence: float
    deviation: float


@dataclass
class BaselineComparison:
    """Relative deviation of the event from every known baseline pattern."""
    overall_deviation: float = 0.0
    pattern_deviations: Dict[str, float] = field(default_factory=dict)
    risk_factors: List[str] = field(default_factory=list)
    normal_patterns: int = 0
    anomalous_patterns: int = 0


@dataclass
class BehavioralResult:
    """Behavioral verdict for one event."""
    anomalies: List[Anomaly] = field(default_factory=list)
    risk_score: float = 0.0
    confidence: float = 0.0
    baseline_comparison: BaselineComparison = field(default_factory=BaselineComparison)
    recommendations: List[str] = field(default_factory=list)


def extract_pattern_value(event: NormalizedEvent, pattern: PatternType) -> float:
    """Current observation of a pattern in an event."""
    entities = event.entities
    if pattern == PatternType.LOGIN_PATTERN:
        return float(entities.count("users"))
    if pattern == PatternType.DATA_ACCESS:
        return float(entities.count("files"))
    if pattern == PatternType.NETWORK_COMMUNICATION:
        return float(entities.count("networks"))
    if pattern == PatternType.FILE_OPERATIONS:
        return float(entities.distinct_ids("files"))
    if pattern == PatternType.PROCESS_EXECUTION:
        return float(entities.count("processes"))
    if pattern == PatternType.PRIVILEGE_ESCALATION:
        return float(event.risk.score)
    return 1.0


def timeframe_for(timestamp: datetime) -> str:
    """Coarse time-of-day label."""
    hour = timestamp.hour
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


def describe_anomaly(pattern: PatternType, deviation: float) -> str:
    """Human readable anomaly description tiered by deviation percent."""
    percent = round(deviation)
    if deviation > 200:
        return f"Extreme {pattern.value} activity: {percent}% above normal"
    if deviation > 100:
        return f"High {pattern.value} activity: {percent}% above normal"
    if deviation > 50:
        return f"Elevated {pattern.value} activity: {percent}% above normal"
    return f"Unusual {pattern.value} activity: {percent}% deviation from normal"


class BehavioralEngine:
    """
    Per-entity behavioral baseline scoring.

    ``analyze`` and ``update_baseline`` are separate calls; the orchestrator
    invokes them in that order.
    """

    def __init__(
        self,
        store: Optional[BaselineStore] = None,
        anomaly_threshold: Optional[float] = None,
        learning_rate: Optional[float] = None,
        initial_confidence: Optional[float] = None,
        confidence_increment: Optional[float] = None,
        feedback_decrement: Optional[float] = None,
        retention_days: Optional[int] = None,
        sweep_batch_size: Optional[int] = None,
    ):
        self.store = store if store is not None else BaselineStore()
        self.anomaly_threshold = (
            anomaly_threshold if anomaly_threshold is not None else settings.behavioral_anomaly_threshold
        )
        self.learning_rate = learning_rate if learning_rate is not None else settings.behavioral_learning_rate
        self.initial_confidence = (
            initial_confidence if initial_confidence is not None else settings.baseline_initial_confidence
        )
        self.confidence_increment = (
            confidence_increment if confidence_increment is not None else settings.baseline_confidence_increment
        )
        self.feedback_decrement = (
            feedback_decrement if feedback_decrement is not None else settings.feedback_confidence_decrement
        )
        self.retention = timedelta(
            days=retention_days if retention_days is not None else settings.baseline_retention_days
        )
        self.sweep_batch_size = sweep_batch_size or settings.baseline_sweep_batch_size

    def analyze_pattern(self, stats: PatternStats, current: float) -> PatternAnalysis:
        """
        Compare one observation against pattern statistics.

        The deviation is divided by the EWMA variance and compared against a
        0-1 threshold; it is a bounded score, not a classical z-test.

        Args:
            stats: Pattern statistics from the pre-update baseline
            current: Observed value for this event

        Returns:
            Anomaly decision with severity, confidence and deviation percent
        """
        mean = stats.frequency
        variance = stats.variance
        difference = abs(current - mean)

        z_score = difference / variance if variance > 0 else 0.0
        deviation = 0.0
        if variance > 0:
            deviation = difference / (mean if mean != 0 else 1.0) * 100

        return PatternAnalysis(
            is_anomaly=z_score > self.anomaly_threshold,
            z_score=z_score,
            severity=min(1.0, z_score / 3.0),
            confidence=min(1.0, stats.sample_count / 100),
            deviation=deviation,
        )

    async def analyze(self, event: NormalizedEvent, now: Optional[datetime] = None) -> BehavioralResult:
        """
        Score an event against the current baselines.

        Entities without a baseline get an empty one (cold start) and
        contribute no anomalies.

        Args:
            event: Normalized event
            now: Clock override for lazily created baselines

        Returns:
            Anomalies, aggregate risk and confidence, comparison and recommendations
        """
        now = now or datetime.now(timezone.utc)
        anomalies: List[Anomaly] = []
        total_risk = 0.0
        total_confidence = 0.0
        contributing_entities = 0

        for entity in event.iter_entities():
            baseline = self.store.get(entity.id)
            if baseline is None:
                self.store.get_or_create(entity.id, entity.type or EntityType.USER, self.initial_confidence, now)
                continue

            entity_anomalies = self._analyze_entity(baseline, event)
            if entity_anomalies:
                anomalies.extend(entity_anomalies)
                total_risk += sum(a.severity * a.confidence for a in entity_anomalies) / len(entity_anomalies)
                total_confidence += sum(a.confidence for a in entity_anomalies) / len(entity_anomalies)
                contributing_entities += 1

        risk_score = total_risk / contributing_entities if contributing_entities else 0.0
        confidence = total_confidence / contributing_entities if contributing_entities else 0.0

        comparison = self._compare_to_baselines(event)
        recommendations = self._generate_recommendations(anomalies, comparison)

        metrics.increment("behavioral.events_analyzed")
        if anomalies:
            metrics.increment("behavioral.anomalies", len(anomalies))

        logger.debug(
            "Behavioral analysis completed",
            extra={
                "event_id": event.id,
                "anomalies": len(anomalies),
                "risk_score": risk_score,
                "confidence": confidence,
            },
        )

        return BehavioralResult(
            anomalies=anomalies,
            risk_score=risk_score,
            confidence=confidence,
            baseline_comparison=comparison,
            recommendations=recommendations,
        )

    def _analyze_entity(self, baseline: BehavioralBaseline, event: NormalizedEvent) -> List[Anomaly]:
        anomalies = []
        timeframe = timeframe_for(event.timestamp)

        for pattern, stats in baseline.patterns.items():
            current = extract_pattern_value(event, pattern)
            analysis = self.analyze_pattern(stats, current)
            if not analysis.is_anomaly:
                continue

            anomalies.append(Anomaly(
                entity_id=baseline.entity_id,
                pattern=pattern,
                description=describe_anomaly(pattern, analysis.deviation),
                severity=analysis.severity,
                confidence=analysis.confidence,
                deviation=analysis.deviation,
                baseline=stats.frequency,
                current=current,
                timeframe=timeframe,
            ))

        return anomalies

    def _compare_to_baselines(self, event: NormalizedEvent) -> BaselineComparison:
        comparison = BaselineComparison()

        for entity in event.iter_entities():
            baseline = self.store.get(entity.id)
            if baseline is None:
                continue

            for pattern, stats in baseline.patterns.items():
                current = extract_pattern_value(event, pattern)
                deviation = abs(current - stats.frequency) / stats.frequency if stats.frequency > 0 else 0.0

                previous = comparison.pattern_deviations.get(pattern.value, 0.0)
                comparison.pattern_deviations[pattern.value] = max(previous, deviation)

                if deviation > self.anomaly_threshold:
                    comparison.anomalous_patterns += 1
                    comparison.risk_factors.append(f"{pattern.value} deviation")
                else:
                    comparison.normal_patterns += 1

        if comparison.pattern_deviations:
            values = comparison.pattern_deviations.values()
            comparison.overall_deviation = sum(values) / len(comparison.pattern_deviations)

        return comparison

    def _generate_recommendations(
        self,
        anomalies: List[Anomaly],
        comparison: BaselineComparison,
    ) -> List[str]:
        recommendations = []

        if anomalies:
            recommendations.append(f"Investigate {len(anomalies)} behavioral anomalies detected")

        if comparison.overall_deviation > 0.5:
            recommendations.append("High overall behavioral deviation - consider user training")

        if len(comparison.risk_factors) > 3:
            recommendations.append("Multiple risk factors detected - comprehensive review recommended")

        critical = [a for a in anomalies if a.severity > 0.8]
        if critical:
            recommendations.append(
                f"{len(critical)} critical behavioral anomalies require immediate attention"
            )

        return recommendations

    async def update_baseline(
        self,
        event: NormalizedEvent,
        now: Optional[datetime] = None,
    ) -> List[BehavioralBaseline]:
        """
        Fold an event into the baselines of every entity it carries.

        Args:
            event: Normalized event that has already been scored
            now: Clock override for ``last_updated``

        Returns:
            Baselines touched by the update
        """
        now = now or datetime.now(timezone.utc)
        lr = self.learning_rate
        touched = []

        for entity in event.iter_entities():
            baseline = self.store.get_or_create(
                entity.id,
                entity.type or EntityType.USER,
                self.initial_confidence,
                now,
            )

            for pattern, stats in baseline.patterns.items():
                current = extract_pattern_value(event, pattern)
                stats.frequency = (1 - lr) * stats.frequency + lr * current
                # variance tracks deviation from the updated mean
                stats.variance = (1 - lr) * stats.variance + lr * abs(current - stats.frequency)
                stats.sample_count += 1
                stats.timing.record(event.timestamp)

            baseline.recompute_metrics()
            baseline.last_updated = now
            baseline.confidence = min(1.0, baseline.confidence + self.confidence_increment)
            touched.append(baseline)

        metrics.increment("behavioral.baseline_updates", len(touched))
        return touched

    def apply_feedback(self, entity_id: str) -> Optional[BehavioralBaseline]:
        """
        Lower baseline confidence after a false-positive report.

        Args:
            entity_id: Entity whose baseline raised the false positive

        Returns:
            The adjusted baseline, or None for an unknown entity
        """
        baseline = self.store.get(entity_id)
        if baseline is None:
            logger.debug(f"Feedback for unknown entity {entity_id} ignored")
            return None

        baseline.confidence = max(0.1, baseline.confidence - self.feedback_decrement)
        logger.info(
            "Baseline confidence lowered from feedback",
            extra={"entity_id": entity_id, "confidence": baseline.confidence},
        )
        return baseline

    async def cleanup_stale(self, now: Optional[datetime] = None, batch_size: Optional[int] = None) -> List[str]:
        """Remove baselines outside the retention window; returns removed ids."""
        now = now or datetime.now(timezone.utc)
        return await self.store.cleanup_stale(
            now - self.retention,
            batch_size=batch_size or self.sweep_batch_size,
        )
