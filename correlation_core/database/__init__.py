"""Database package."""
from correlation_core.database import models
from correlation_core.database.connection import (
    Base,
    close_db,
    create_engine_for_url,
    get_engine,
    get_session_factory,
    init_db,
)
from correlation_core.database.storage import (
    InMemoryStorage,
    Persister,
    SqlAlchemyStorage,
    Storage,
)

__all__ = [
    "Base",
    "create_engine_for_url",
    "get_engine",
    "get_session_factory",
    "init_db",
    "close_db",
    "models",
    "InMemoryStorage",
    "Persister",
    "SqlAlchemyStorage",
    "Storage",
]
