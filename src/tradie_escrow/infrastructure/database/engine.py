"""Async database engine and session factory.

Provides:
    - get_engine: The SQLAlchemy async engine (lazy singleton).
    - get_session_factory: A sessionmaker bound to the engine. The SQL record
      stores open one short transaction per call with it.
    - init_db / close_db: Lifecycle hooks for FastAPI's lifespan.
    - ping_db: Connectivity check for the health route.
"""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tradie_escrow.config import Settings, get_settings
from tradie_escrow.logging_config import get_logger

logger = get_logger(__name__)

# Module-level singletons (initialized lazily, reset by close_db)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_for(settings: Settings) -> AsyncEngine:
    """Build an engine for ``settings.database_url``.

    SQLite ignores the pool sizing options, so they are only passed for
    server databases.
    """
    if settings.uses_sqlite:
        return create_async_engine(settings.database_url, echo=settings.db_echo_sql)
    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_pre_ping=True,
        echo=settings.db_echo_sql,
    )


def get_engine(settings: Settings | None = None) -> AsyncEngine:
    """Get or create the async engine."""
    global _engine
    if _engine is None:
        settings = settings or get_settings()
        _engine = create_engine_for(settings)
        logger.info("database.engine_created", sqlite=settings.uses_sqlite)
    return _engine


def get_session_factory(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(settings),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


async def init_db(settings: Settings | None = None) -> None:
    """Create tables in development; production schemas come from Alembic."""
    from tradie_escrow.infrastructure.database.orm_models import Base

    settings = settings or get_settings()
    engine = get_engine(settings)

    if settings.is_development:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("database.tables_created")
    else:
        logger.info("database.skipping_create_all", reason="not in development mode")


async def ping_db() -> None:
    """Run ``SELECT 1``; raises whatever the driver raises when unreachable."""
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    """Dispose of the engine. Called during FastAPI's lifespan shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None
