"""Prometheus metrics for the correlation pipeline."""
import logging
import time
from functools import wraps
from typing import Callable

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)


# ============================================================================
# HTTP Metrics
# ============================================================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)


# ============================================================================
# Intake Metrics
# ============================================================================

events_received_total = Counter(
    'events_received_total',
    'Events offered to the intake',
    ['status']
)

intake_queue_depth = Gauge(
    'intake_queue_depth',
    'Events waiting in the intake shard queues'
)

events_discarded_total = Counter(
    'events_discarded_total',
    'Queued events discarded at shutdown'
)


# ============================================================================
# Pipeline Metrics
# ============================================================================

events_processed_total = Counter(
    'events_processed_total',
    'Events that produced a verdict',
    ['status']
)

event_processing_duration_seconds = Histogram(
    'event_processing_duration_seconds',
    'Time from dequeue to verdict emission in seconds',
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

anomalies_detected_total = Counter(
    'anomalies_detected_total',
    'Behavioral anomalies detected',
    ['pattern']
)

threat_chains_detected_total = Counter(
    'threat_chains_detected_total',
    'Threat chains extracted from the relationship graph',
    ['pattern']
)

rule_matches_total = Counter(
    'rule_matches_total',
    'Detection rule matches',
    ['rule_id']
)

recommendations_created_total = Counter(
    'recommendations_created_total',
    'Recommendations created',
    ['type']
)

degraded_steps_total = Counter(
    'degraded_steps_total',
    'Pipeline steps that degraded to a neutral result',
    ['reason']
)


# ============================================================================
# Collaborator Metrics
# ============================================================================

oracle_calls_total = Counter(
    'oracle_calls_total',
    'Rule oracle calls',
    ['operation', 'status']
)

oracle_call_duration_seconds = Histogram(
    'oracle_call_duration_seconds',
    'Rule oracle call duration in seconds',
    ['operation'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

storage_operations_total = Counter(
    'storage_operations_total',
    'Persistence operations',
    ['operation', 'status']
)

storage_operation_duration_seconds = Histogram(
    'storage_operation_duration_seconds',
    'Persistence operation duration in seconds',
    ['operation'],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)


# ============================================================================
# Graph / Baseline Metrics
# ============================================================================

graph_edges_total = Gauge(
    'graph_edges_total',
    'Correlation edges held in the relationship graph'
)

graph_entities_total = Gauge(
    'graph_entities_total',
    'Entities held in the relationship graph'
)

baselines_total = Gauge(
    'baselines_total',
    'Behavioral baselines held in the baseline store'
)


# ============================================================================
# System Metrics
# ============================================================================

app_info = Gauge(
    'app_info',
    'Application information',
    ['version', 'environment']
)

background_tasks_active = Gauge(
    'background_tasks_active',
    'Number of active background tasks',
    ['task_type']
)

background_tasks_total = Counter(
    'background_tasks_total',
    'Total background task runs',
    ['task_type', 'status']
)


# ============================================================================
# Decorators for Automatic Instrumentation
# ============================================================================

def track_oracle_call(operation: str) -> Callable:
    """Decorator to track rule oracle call metrics.

    Example:
        @track_oracle_call("evaluate")
        async def evaluate(self, rule, event, context):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.perf_counter()

            try:
                result = await func(*args, **kwargs)
                oracle_calls_total.labels(operation=operation, status="success").inc()
                return result

            except Exception:
                oracle_calls_total.labels(operation=operation, status="error").inc()
                raise

            finally:
                duration = time.perf_counter() - start_time
                oracle_call_duration_seconds.labels(operation=operation).observe(duration)

        return wrapper
    return decorator


def track_storage_operation(operation: str) -> Callable:
    """Decorator to track persistence metrics.

    Example:
        @track_storage_operation("save_edge")
        async def save_edge(self, edge):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.perf_counter()

            try:
                result = await func(*args, **kwargs)
                storage_operations_total.labels(operation=operation, status="success").inc()
                return result

            except Exception:
                storage_operations_total.labels(operation=operation, status="error").inc()
                raise

            finally:
                duration = time.perf_counter() - start_time
                storage_operation_duration_seconds.labels(operation=operation).observe(duration)

        return wrapper
    return decorator


# ============================================================================
# Metrics Endpoint
# ============================================================================

def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics_bytes, content_type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST


def initialize_metrics(version: str, environment: str) -> None:
    """Initialize application metrics.

    Args:
        version: Application version
        environment: Environment (development, staging, production)
    """
    app_info.labels(version=version, environment=environment).set(1)
    logger.info("Prometheus metrics initialized: version=%s, environment=%s", version, environment)
