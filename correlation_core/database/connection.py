"""Database connection and session management."""
import logging

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    AsyncEngine,
    async_sessionmaker,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool, StaticPool

from correlation_core.config import settings

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

# Global engine and session factory
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pooling suited to the backend."""
    if url.startswith("sqlite"):
        # In-memory databases live as long as their single connection
        if ":memory:" in url or "mode=memory" in url:
            return create_async_engine(
                url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_async_engine(url, echo=echo, poolclass=NullPool)

    poolclass = AsyncAdaptedQueuePool if settings.is_production else NullPool
    pool_args = {"pool_size": 5, "max_overflow": 10} if poolclass is AsyncAdaptedQueuePool else {}
    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        poolclass=poolclass,
        **pool_args,
    )


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine

    if _engine is None:
        _engine = create_engine_for_url(settings.database_url, echo=settings.db_echo)
        logger.info(f"Created async database engine for {settings.environment}")

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        engine = get_engine()
        _async_session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Created async session factory")

    return _async_session_factory


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Initialize database schema (create all tables)."""
    engine = engine or get_engine()

    async with engine.begin() as conn:
        # Import all models to ensure they're registered
        from correlation_core.database import models  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database schema initialized")


async def close_db() -> None:
    """Close database connections."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
