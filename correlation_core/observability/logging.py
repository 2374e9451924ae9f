"""
Structured JSON logging.
Every record carries the service name; records emitted while an event is
in flight also carry the fields bound with ``log_context`` (event id, shard).
"""
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional
from pythonjsonlogger import jsonlogger

from correlation_core.config import settings

_context_fields: ContextVar[Dict[str, Any]] = ContextVar("correlation_log_context", default={})

QUIET_LOGGERS = ("uvicorn.access", "httpx", "aiosqlite", "sqlalchemy.engine")


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields to every record logged inside the block.

    Nested blocks extend the outer fields. Tasks created inside the block
    inherit them.
    """
    token = _context_fields.set({**_context_fields.get(), **fields})
    try:
        yield
    finally:
        _context_fields.reset(token)


def current_log_context() -> Dict[str, Any]:
    return dict(_context_fields.get())


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding service and bound event context."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = settings.app_name
        log_record["environment"] = settings.environment
        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        # explicit extra={} fields win over bound context
        for key, value in _context_fields.get().items():
            log_record.setdefault(key, value)


def setup_logging(level: Optional[str] = None) -> None:
    """Configure structured JSON logging on the root logger.

    Args:
        level: Log level; ``settings.log_level`` when omitted
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CorrelationJsonFormatter(
        "%(timestamp)s %(level)s %(logger)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    ))

    root_logger = logging.getLogger()
    root_logger.setLevel(level or settings.log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
