"""Behavioral layer - per-entity EWMA baselines and anomaly scoring."""
from correlation_core.behavioral.baseline_store import (
    APPLICABLE_PATTERNS,
    BaselineStore,
    BehavioralBaseline,
    PatternStats,
    PatternType,
)
from correlation_core.behavioral.engine import (
    Anomaly,
    BaselineComparison,
    BehavioralEngine,
    BehavioralResult,
)

__all__ = [
    "APPLICABLE_PATTERNS",
    "BaselineStore",
    "BehavioralBaseline",
    "PatternStats",
    "PatternType",
    "Anomaly",
    "BaselineComparison",
    "BehavioralEngine",
    "BehavioralResult",
]
