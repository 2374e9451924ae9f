"""
Baseline store for per-entity behavioral statistics.
Owns every BehavioralBaseline keyed by entity id. Mutations happen in
synchronous sections so each one is atomic with respect to other
coroutines on the event loop; sweeps serialize on ``sweep_lock``.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

import numpy as np

from correlation_core.schemas.events import EntityType, ensure_utc

logger = logging.getLogger(__name__)


class PatternType(str, Enum):
    """Behavior patterns tracked per entity."""
    LOGIN_PATTERN = "login_pattern"
    DATA_ACCESS = "data_access"
    NETWORK_COMMUNICATION = "network_communication"
    FILE_OPERATIONS = "file_operations"
    PROCESS_EXECUTION = "process_execution"
    PRIVILEGE_ESCALATION = "privilege_escalation"


# Patterns applicable to each entity role
APPLICABLE_PATTERNS: Dict[EntityType, List[PatternType]] = {
    EntityType.USER: list(PatternType),
    EntityType.HOST: [
        PatternType.NETWORK_COMMUNICATION,
        PatternType.FILE_OPERATIONS,
        PatternType.PROCESS_EXECUTION,
        PatternType.PRIVILEGE_ESCALATION,
    ],
    EntityType.PROCESS: [
        PatternType.PROCESS_EXECUTION,
        PatternType.FILE_OPERATIONS,
        PatternType.NETWORK_COMMUNICATION,
    ],
    EntityType.FILE: [
        PatternType.DATA_ACCESS,
        PatternType.FILE_OPERATIONS,
    ],
    EntityType.NETWORK: [
        PatternType.NETWORK_COMMUNICATION,
    ],
}

PERCENTILES = (25, 50, 75, 90, 95, 99)


@dataclass
class TimingHistogram:
    """Counts of observations by time-of-week bucket."""
    business_hours: int = 0
    after_hours: int = 0
    weekends: int = 0
    observed_hours: Set[int] = field(default_factory=set)

    def record(self, timestamp: datetime) -> None:
        """Bucket an observation; business hours are 9-17 inclusive on weekdays."""
        is_weekend = timestamp.weekday() >= 5
        is_business_hours = 9 <= timestamp.hour <= 17

        if is_weekend:
            self.weekends += 1
        elif is_business_hours:
            self.business_hours += 1
        else:
            self.after_hours += 1

        self.observed_hours.add(timestamp.hour)


@dataclass
class PatternStats:
    """EWMA statistics for one behavior pattern."""
    pattern: PatternType
    frequency: float = 0.0
    variance: float = 0.0
    sample_count: int = 0
    timing: TimingHistogram = field(default_factory=TimingHistogram)


@dataclass
class BaselineMetrics:
    """Summary statistics over the pattern means of a baseline."""
    mean: float = 0.0
    median: float = 0.0
    standard_deviation: float = 0.0
    percentiles: Dict[int, float] = field(default_factory=dict)
    outliers: List[float] = field(default_factory=list)


def calculate_metrics(values: Iterable[float]) -> BaselineMetrics:
    """
    Compute summary statistics over pattern means.

    Args:
        values: Pattern frequencies

    Returns:
        Mean, median, population standard deviation, percentiles and IQR outliers
    """
    data = np.asarray(list(values), dtype=float)
    if data.size == 0:
        return BaselineMetrics()

    q1, q3 = np.percentile(data, [25, 75])
    iqr = q3 - q1
    lower_bound = q1 - 1.5 * iqr
    upper_bound = q3 + 1.5 * iqr

    return BaselineMetrics(
        mean=float(np.mean(data)),
        median=float(np.median(data)),
        standard_deviation=float(np.std(data)),
        percentiles={p: float(v) for p, v in zip(PERCENTILES, np.percentile(data, PERCENTILES))},
        outliers=[float(v) for v in data if v < lower_bound or v > upper_bound],
    )


@dataclass
class BehavioralBaseline:
    """Statistical profile of one entity's normal behavior."""
    entity_id: str
    entity_type: EntityType
    patterns: Dict[PatternType, PatternStats]
    confidence: float
    last_updated: datetime
    metrics: BaselineMetrics = field(default_factory=BaselineMetrics)

    @classmethod
    def create(
        cls,
        entity_id: str,
        entity_type: EntityType,
        confidence: float,
        now: datetime,
    ) -> "BehavioralBaseline":
        """Build an empty baseline with the patterns applicable to the entity type."""
        return cls(
            entity_id=entity_id,
            entity_type=entity_type,
            patterns={p: PatternStats(pattern=p) for p in APPLICABLE_PATTERNS[entity_type]},
            confidence=confidence,
            last_updated=now,
        )

    def recompute_metrics(self) -> None:
        self.metrics = calculate_metrics(p.frequency for p in self.patterns.values())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for persistence."""
        return {
            "entity_id": self.entity_id,
            "entity_type": self.entity_type.value,
            "confidence": self.confidence,
            "last_updated": self.last_updated.isoformat(),
            "patterns": {
                p.value: {
                    "frequency": s.frequency,
                    "variance": s.variance,
                    "sample_count": s.sample_count,
                    "timing": {
                        "business_hours": s.timing.business_hours,
                        "after_hours": s.timing.after_hours,
                        "weekends": s.timing.weekends,
                        "observed_hours": sorted(s.timing.observed_hours),
                    },
                }
                for p, s in self.patterns.items()
            },
            "metrics": {
                "mean": self.metrics.mean,
                "median": self.metrics.median,
                "standard_deviation": self.metrics.standard_deviation,
                "percentiles": {str(k): v for k, v in self.metrics.percentiles.items()},
                "outliers": list(self.metrics.outliers),
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BehavioralBaseline":
        """Rebuild a baseline serialized by ``to_dict``."""
        patterns = {}
        for name, stats in data.get("patterns", {}).items():
            pattern = PatternType(name)
            timing = stats.get("timing", {})
            patterns[pattern] = PatternStats(
                pattern=pattern,
                frequency=float(stats.get("frequency", 0.0)),
                variance=float(stats.get("variance", 0.0)),
                sample_count=int(stats.get("sample_count", 0)),
                timing=TimingHistogram(
                    business_hours=int(timing.get("business_hours", 0)),
                    after_hours=int(timing.get("after_hours", 0)),
                    weekends=int(timing.get("weekends", 0)),
                    observed_hours=set(timing.get("observed_hours", [])),
                ),
            )

        metrics = data.get("metrics", {})
        last_updated = data["last_updated"]
        if isinstance(last_updated, str):
            last_updated = datetime.fromisoformat(last_updated)

        return cls(
            entity_id=data["entity_id"],
            entity_type=EntityType(data["entity_type"]),
            patterns=patterns,
            confidence=float(data.get("confidence", 0.1)),
            last_updated=ensure_utc(last_updated),
            metrics=BaselineMetrics(
                mean=float(metrics.get("mean", 0.0)),
                median=float(metrics.get("median", 0.0)),
                standard_deviation=float(metrics.get("standard_deviation", 0.0)),
                percentiles={int(k): float(v) for k, v in metrics.get("percentiles", {}).items()},
                outliers=[float(v) for v in metrics.get("outliers", [])],
            ),
        )


class BaselineStore:
    """In-memory owner of behavioral baselines."""

    def __init__(self):
        self._baselines: Dict[str, BehavioralBaseline] = {}
        self.sweep_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._baselines)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._baselines

    def get(self, entity_id: str) -> Optional[BehavioralBaseline]:
        return self._baselines.get(entity_id)

    def put(self, baseline: BehavioralBaseline) -> None:
        self._baselines[baseline.entity_id] = baseline

    def get_or_create(
        self,
        entity_id: str,
        entity_type: EntityType,
        confidence: float,
        now: Optional[datetime] = None,
    ) -> BehavioralBaseline:
        """Return the entity's baseline, creating an empty one when missing."""
        baseline = self._baselines.get(entity_id)
        if baseline is None:
            baseline = BehavioralBaseline.create(
                entity_id,
                entity_type,
                confidence,
                now or datetime.now(timezone.utc),
            )
            self._baselines[entity_id] = baseline
            logger.info(
                "Created initial baseline",
                extra={"entity_id": entity_id, "entity_type": entity_type.value},
            )
        return baseline

    def delete(self, entity_id: str) -> bool:
        return self._baselines.pop(entity_id, None) is not None

    def all(self) -> List[BehavioralBaseline]:
        return list(self._baselines.values())

    def load(self, baselines: Iterable[BehavioralBaseline]) -> int:
        """Replace store contents with persisted baselines."""
        count = 0
        for baseline in baselines:
            self._baselines[baseline.entity_id] = baseline
            count += 1
        return count

    async def cleanup_stale(self, cutoff: datetime, batch_size: int = 500) -> List[str]:
        """
        Remove baselines not updated since ``cutoff``.

        Works over a snapshot of ids in bounded batches, yielding to the
        event loop between batches.

        Args:
            cutoff: Baselines with ``last_updated`` older than this are removed
            batch_size: Entities examined per slice

        Returns:
            Removed entity ids
        """
        removed: List[str] = []
        async with self.sweep_lock:
            entity_ids = list(self._baselines.keys())
            for start in range(0, len(entity_ids), batch_size):
                for entity_id in entity_ids[start:start + batch_size]:
                    baseline = self._baselines.get(entity_id)
                    if baseline is not None and baseline.last_updated < cutoff:
                        del self._baselines[entity_id]
                        removed.append(entity_id)
                await asyncio.sleep(0)

        if removed:
            logger.info(f"Removed {len(removed)} stale baselines")
        return removed
