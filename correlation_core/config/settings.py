"""
Configuration settings for the Security Correlation Core.
Uses Pydantic BaseSettings for environment-aware configuration.
NO HARDCODED SECRETS - oracle credentials come from environment variables.
"""
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    environment: str = Field(default="development", description="Application environment")

    # Application
    app_name: str = Field(default="security-correlation-core", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=False, description="Auto-reload on code changes")

    # Persistence
    persistence_enabled: bool = Field(default=True, description="Persist baselines, edges, rules and recommendations")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./correlation_core.db",
        description="Async SQLAlchemy connection URL"
    )
    db_echo: bool = Field(default=False, description="Echo SQL statements")
    storage_max_retries: int = Field(default=3, description="Attempts per persistence call")

    # Behavioral engine
    behavioral_anomaly_threshold: float = Field(default=0.7, description="Bounded deviation threshold (0-1 scale)")
    behavioral_learning_rate: float = Field(default=0.1, gt=0, lt=1, description="EWMA weight of the newest sample")
    baseline_initial_confidence: float = Field(default=0.1, description="Confidence of a lazily created baseline")
    baseline_confidence_increment: float = Field(default=0.01, description="Confidence gained per baseline update")
    feedback_confidence_decrement: float = Field(default=0.05, description="Confidence lost per false-positive feedback")
    baseline_retention_days: int = Field(default=30, description="Baselines untouched for longer are swept")
    baseline_cleanup_interval_minutes: int = Field(default=60, description="Baseline sweep interval")
    baseline_sweep_batch_size: int = Field(default=500, description="Baselines processed per sweep slice")

    # Graph correlation engine
    graph_correlation_window_hours: float = Field(default=6.0, description="Sliding correlation window")
    graph_min_correlation_strength: float = Field(default=0.5, description="Edges below this strength are invisible")
    graph_retention_days: int = Field(default=30, description="Edges not seen for longer are removed")
    graph_decay_interval_minutes: int = Field(default=60, description="Edge decay / cleanup interval")
    graph_query_timeout_seconds: float = Field(default=1.0, description="Budget for collecting candidate edges")
    graph_max_candidate_edges: int = Field(default=10000, description="Maximum candidate edges per event")
    graph_sweep_batch_size: int = Field(default=500, description="Edges processed per sweep slice")

    # Orchestrator
    orchestrator_worker_count: int = Field(default=4, ge=1, description="Sharded consumer workers")
    orchestrator_queue_size: int = Field(default=10000, ge=1, description="Per-worker intake queue capacity")
    orchestrator_seen_event_ids: int = Field(default=100000, description="Event ids remembered for duplicate refusal")
    shutdown_grace_seconds: float = Field(default=10.0, description="Drain budget at shutdown")
    recommendation_confidence_threshold: float = Field(default=0.8, description="Rule confidence that may trigger a recommendation")
    false_positive_confidence_threshold: float = Field(default=0.7, description="Rule confidence below which a match adds false-positive risk")

    # Rule oracle
    oracle_url: Optional[str] = Field(default=None, description="Remote rule oracle base URL; heuristic oracle when unset")
    oracle_api_key: Optional[str] = Field(default=None, description="Remote rule oracle API key")
    oracle_model: str = Field(default="gpt-4", description="Model name passed to the remote oracle")
    oracle_temperature: float = Field(default=0.1, description="Sampling temperature passed to the remote oracle")
    oracle_max_tokens: int = Field(default=2000, description="Token budget passed to the remote oracle")
    oracle_timeout_seconds: float = Field(default=5.0, description="Budget per oracle call")
    oracle_max_retries: int = Field(default=3, ge=1, description="Attempts per oracle request on transport errors and 5xx answers")

    # Knowledge enrichment
    enrichment_timeout_seconds: float = Field(default=3.0, description="Budget per knowledge lookup")
    knowledge_confidence_threshold: float = Field(default=0.7, description="Minimum threat intel confidence for an IOC match")
    knowledge_update_interval_minutes: int = Field(default=60, description="Threat intel refresh interval")
    threat_intel_sources: List[str] = Field(default_factory=list, description="Threat intel feed URLs")
    knowledge_max_threat_intel: int = Field(default=50000, ge=1, description="Threat intel entries kept; least recently added or reinforced evicted first")

    @field_validator("threat_intel_sources", mode="before")
    @classmethod
    def parse_threat_intel_sources(cls, v):
        """Parse feed URLs from comma-separated string or list."""
        if isinstance(v, str):
            return [source.strip() for source in v.split(",") if source.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment."""
        valid_envs = ["development", "staging", "production"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v_lower

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    def validate_required_for_production(self):
        """Validate that required settings are present for production."""
        if self.is_production:
            if self.debug:
                raise ValueError("DEBUG must be False in production")
            if self.oracle_url and not self.oracle_api_key:
                raise ValueError("ORACLE_API_KEY must be set when ORACLE_URL is configured in production")


# Global settings instance
settings = Settings()

# Validate production settings
if settings.is_production:
    settings.validate_required_for_production()
