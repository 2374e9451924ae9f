"""Observability module."""
from correlation_core.observability.logging import current_log_context, get_logger, log_context, setup_logging
from correlation_core.observability.metrics import MetricsCollector, metrics

__all__ = ["setup_logging", "get_logger", "log_context", "current_log_context", "MetricsCollector", "metrics"]
