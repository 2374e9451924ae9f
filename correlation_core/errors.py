"""Error taxonomy for the correlation core.

Collaborator errors (oracle, enrichment, storage, graph query budget) are
caught by the orchestrator and degrade the affected step. Intake errors
are raised to the caller of ``submit``.
"""
from typing import Any, Dict, Optional


class CorrelationCoreError(Exception):
    """Base class for every error raised by the correlation core."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class EventValidationError(CorrelationCoreError):
    """Event rejected at intake because it is malformed."""


class DuplicateEventError(CorrelationCoreError):
    """Event id has already been accepted."""

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} already accepted", {"event_id": event_id})
        self.event_id = event_id


class IntakeClosedError(CorrelationCoreError):
    """Submit called while the orchestrator is not accepting events."""


class OracleTimeoutError(CorrelationCoreError):
    """Rule oracle call exceeded its budget or was aborted at shutdown."""


class EnrichmentFailure(CorrelationCoreError):
    """Knowledge enrichment lookup failed."""


class StorageFailure(CorrelationCoreError):
    """Persisting or loading state failed after retries."""


class GraphQueryTimeout(CorrelationCoreError):
    """Candidate edge collection exceeded its time or size budget."""
