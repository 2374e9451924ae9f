"""SQLAlchemy models for persisted correlation state."""
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    String,
    Float,
    DateTime,
    JSON,
    Index,
)

from correlation_core.database.connection import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaselineRecord(Base):
    """Behavioral baseline of one entity, stored as its serialized form."""

    __tablename__ = "behavioral_baselines"

    entity_id = Column(String(255), primary_key=True)
    entity_type = Column(String(20), nullable=False, index=True)
    confidence = Column(Float, nullable=False, default=0.1)
    last_updated = Column(DateTime(timezone=True), nullable=False, index=True)
    data = Column(JSON, nullable=False)


class EdgeRecord(Base):
    """Correlation graph edge."""

    __tablename__ = "correlation_edges"

    source_id = Column(String(255), primary_key=True)
    target_id = Column(String(255), primary_key=True)
    relationship = Column(String(32), primary_key=True)
    strength = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False, index=True)
    evidence = Column(JSON, nullable=False, default=list)

    __table_args__ = (
        Index("idx_correlation_edges_target", "target_id"),
    )


class RuleRecord(Base):
    """Detection rule, including its feedback-driven performance."""

    __tablename__ = "detection_rules"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    data = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class RecommendationRecord(Base):
    """Recommendation generated after a high-confidence rule match."""

    __tablename__ = "recommendations"

    id = Column(String(64), primary_key=True)
    event_id = Column(String(255), index=True)
    rule_id = Column(String(64), index=True)
    type = Column(String(20), nullable=False)
    priority = Column(String(20), nullable=False, index=True)
    confidence = Column(Float, nullable=False)
    data = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
