"""Orchestration layer - intake, sharded workers, verdict emission and background jobs."""
from correlation_core.orchestrator.event_bus import RECOMMENDATION_TOPIC, VERDICT_TOPIC, EventBus
from correlation_core.orchestrator.orchestrator import (
    CorrelationOrchestrator,
    OrchestratorStats,
    has_similar_rule,
    shard_for,
    update_rule_performance,
)
from correlation_core.orchestrator.scheduler import BackgroundScheduler, ScheduledJob

__all__ = [
    "RECOMMENDATION_TOPIC",
    "VERDICT_TOPIC",
    "EventBus",
    "CorrelationOrchestrator",
    "OrchestratorStats",
    "has_similar_rule",
    "shard_for",
    "update_rule_performance",
    "BackgroundScheduler",
    "ScheduledJob",
]
