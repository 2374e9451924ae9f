"""Pydantic schemas for normalized security events."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class EntityType(str, Enum):
    """Entity roles an event can carry."""

    USER = "user"
    HOST = "host"
    PROCESS = "process"
    FILE = "file"
    NETWORK = "network"


class RelationshipType(str, Enum):
    """Relationship kinds stored on correlation edges."""

    COMMUNICATES_WITH = "communicates_with"
    ACCESSES = "accesses"
    EXECUTES = "executes"
    OWNS = "owns"
    CONTAINS = "contains"
    SIMILAR_TO = "similar_to"
    CO_OCCURRED_IN = "co_occurred_in"


class EventSeverity(str, Enum):
    """Event severity levels."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# Entity list name on the event -> entity type, in extraction order
ENTITY_LISTS: Dict[str, EntityType] = {
    "users": EntityType.USER,
    "hosts": EntityType.HOST,
    "networks": EntityType.NETWORK,
    "processes": EntityType.PROCESS,
    "files": EntityType.FILE,
}


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EntityRelationship(BaseModel):
    """Relationship declared by the event source for an entity."""

    target: str = Field(..., min_length=1, description="Target entity id")
    relationship: RelationshipType = Field(..., description="Relationship kind")
    strength: float = Field(default=0.5, ge=0, le=1, description="Relationship strength (0-1)")
    confidence: float = Field(default=0.8, ge=0, le=1, description="Relationship confidence (0-1)")
    last_seen: Optional[datetime] = Field(None, description="When the relationship was last observed")


class EntityInfo(BaseModel):
    """An entity referenced by an event."""

    id: str = Field(..., min_length=1, description="Stable opaque entity id")
    name: str = Field(default="", description="Display name")
    type: Optional[EntityType] = Field(None, description="Entity role; inferred from the list when missing")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Source attributes")
    relationships: List[EntityRelationship] = Field(default_factory=list)


class EventEntities(BaseModel):
    """Entities grouped by role."""

    users: List[EntityInfo] = Field(default_factory=list)
    hosts: List[EntityInfo] = Field(default_factory=list)
    networks: List[EntityInfo] = Field(default_factory=list)
    processes: List[EntityInfo] = Field(default_factory=list)
    files: List[EntityInfo] = Field(default_factory=list)

    @model_validator(mode="after")
    def infer_entity_types(self):
        """Fill in missing entity types from the list each entity appears in."""
        for list_name, entity_type in ENTITY_LISTS.items():
            for entity in getattr(self, list_name):
                if entity.type is None:
                    entity.type = entity_type
        return self

    def iter_entities(self) -> Iterator[EntityInfo]:
        """Yield every entity once, first occurrence of an id wins."""
        seen = set()
        for list_name in ENTITY_LISTS:
            for entity in getattr(self, list_name):
                if entity.id in seen:
                    continue
                seen.add(entity.id)
                yield entity

    def count(self, list_name: str) -> int:
        return len(getattr(self, list_name))

    def distinct_ids(self, list_name: str) -> int:
        return len({entity.id for entity in getattr(self, list_name)})


class GeographicInfo(BaseModel):
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    timezone: Optional[str] = None


class NetworkInfo(BaseModel):
    source_ip: Optional[str] = None
    destination_ip: Optional[str] = None
    source_port: Optional[int] = None
    destination_port: Optional[int] = None
    protocol: Optional[str] = None
    domain: Optional[str] = None
    url: Optional[str] = None
    user_agent: Optional[str] = None


class TemporalInfo(BaseModel):
    timezone: str = "UTC"
    business_hours: Optional[bool] = None
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    hour_of_day: Optional[int] = Field(None, ge=0, le=23)


class EventContext(BaseModel):
    """Event context: what happened, where, over which network."""

    action: str = Field(default="", description="Action performed")
    resource: str = Field(default="", description="Resource acted upon")
    location: GeographicInfo = Field(default_factory=GeographicInfo)
    network: NetworkInfo = Field(default_factory=NetworkInfo)
    time: TemporalInfo = Field(default_factory=TemporalInfo)


class IndicatorOfCompromise(BaseModel):
    type: str = Field(..., description="IOC type (ip_address, domain, hash, ...)")
    value: str = Field(..., min_length=1, description="IOC value")
    confidence: float = Field(default=0.5, ge=0, le=1)
    source: str = Field(default="")
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None


class BehavioralIndicator(BaseModel):
    type: str = Field(..., description="Behavior pattern type")
    description: str = Field(default="")
    confidence: float = Field(default=0.5, ge=0, le=1)
    baseline: float = 0.0
    deviation: float = 0.0
    timeframe: str = Field(default="")


class AnomalyIndicator(BaseModel):
    type: str = Field(..., description="Anomaly type (statistical, temporal, ...)")
    description: str = Field(default="")
    severity: float = Field(default=0.5, ge=0, le=1)
    confidence: float = Field(default=0.5, ge=0, le=1)
    context: str = Field(default="")


class EventIndicators(BaseModel):
    iocs: List[IndicatorOfCompromise] = Field(default_factory=list)
    behaviors: List[BehavioralIndicator] = Field(default_factory=list)
    anomalies: List[AnomalyIndicator] = Field(default_factory=list)


class RiskFactor(BaseModel):
    type: str
    description: str = ""
    weight: float = 0.0
    value: Any = None
    impact: str = ""


class EventRisk(BaseModel):
    score: float = Field(default=0.0, ge=0, le=1, description="Source risk score (0-1)")
    factors: List[RiskFactor] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0, le=1)


class NormalizedEvent(BaseModel):
    """Normalized security event accepted at intake."""

    id: str = Field(..., min_length=1, description="Unique event id")
    timestamp: datetime = Field(..., description="Event timestamp (UTC)")
    source: str = Field(default="unknown", description="Data source name")
    event_type: str = Field(default="", description="Normalized event type")
    severity: EventSeverity = Field(default=EventSeverity.MEDIUM, description="Event severity")
    entities: EventEntities = Field(default_factory=EventEntities)
    context: EventContext = Field(default_factory=EventContext)
    indicators: EventIndicators = Field(default_factory=EventIndicators)
    risk: EventRisk = Field(default_factory=EventRisk)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        """Store timestamps as aware UTC datetimes."""
        return ensure_utc(v)

    def iter_entities(self) -> Iterator[EntityInfo]:
        return self.entities.iter_entities()

    @property
    def primary_entity_id(self) -> Optional[str]:
        """Id of the first entity in extraction order, if any."""
        for entity in self.iter_entities():
            return entity.id
        return None
