"""FastAPI application entry point for the correlation core."""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from correlation_core.api.middleware import setup_middleware
from correlation_core.api.routes import events, feedback, health, rules
from correlation_core.collaborators import InMemoryKnowledgeBase, create_rule_oracle
from correlation_core.config import settings
from correlation_core.database import InMemoryStorage, SqlAlchemyStorage, close_db, init_db
from correlation_core.monitoring.metrics import initialize_metrics
from correlation_core.observability import get_logger, setup_logging
from correlation_core.orchestrator import CorrelationOrchestrator

logger = get_logger(__name__)


async def build_orchestrator() -> CorrelationOrchestrator:
    """Orchestrator wired from settings."""
    if settings.persistence_enabled:
        await init_db()
        storage = SqlAlchemyStorage()
    else:
        storage = InMemoryStorage()

    return CorrelationOrchestrator(
        knowledge=InMemoryKnowledgeBase(),
        oracle=create_rule_oracle(),
        storage=storage,
    )


def create_app(orchestrator: Optional[CorrelationOrchestrator] = None) -> FastAPI:
    """Create the application.

    Args:
        orchestrator: Pre-built orchestrator; one is built from settings when omitted

    Returns:
        FastAPI application whose lifespan starts and stops the orchestrator
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(f"Starting {settings.app_name} ({settings.environment})")
        initialize_metrics(settings.app_version, settings.environment)

        owned = orchestrator is None
        instance = orchestrator or await build_orchestrator()
        await instance.start()
        app.state.orchestrator = instance

        yield

        logger.info(f"Shutting down {settings.app_name}")
        await instance.stop()
        if owned and settings.persistence_enabled:
            try:
                await close_db()
            except Exception as e:
                logger.error(f"Error closing database: {e}", exc_info=True)

    app = FastAPI(
        title="Security Correlation Core",
        description="Real-time behavioral and graph correlation of normalized security events",
        version=settings.app_version,
        docs_url="/docs" if not settings.is_production else None,
        lifespan=lifespan,
    )
    setup_middleware(app)

    app.include_router(health.router)
    app.include_router(events.router)
    app.include_router(feedback.router)
    app.include_router(rules.router)

    return app


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "correlation_core.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
