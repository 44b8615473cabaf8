"""
Scheduler Database

Database connection and session management.
"""
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel
import structlog

from .config import SchedulerSettings
from .scheduler import models  # noqa: F401  registers tables on SQLModel.metadata

logger = structlog.get_logger(__name__)

SQLITE_BUSY_TIMEOUT = 30


class Database:
    """
    Database connection manager for the scheduler.

    Uses async SQLModel with asyncpg in production and aiosqlite in tests.
    """

    def __init__(self, settings: SchedulerSettings) -> None:
        self._settings = settings
        self._engine: AsyncEngine = create_async_engine(
            settings.postgres_dsn, **self._engine_options(settings.postgres_dsn)
        )
        self._session_factory = sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    @staticmethod
    def _engine_options(dsn: str) -> Dict[str, Any]:
        """
        Engine options per backend.

        SQLite serializes writers on a file lock, so concurrent claims wait on
        the busy timeout instead of failing with "database is locked".
        PostgreSQL gets a sized connection pool.
        """
        if dsn.startswith("sqlite"):
            return {"echo": False, "connect_args": {"timeout": SQLITE_BUSY_TIMEOUT}}
        return {"pool_pre_ping": True, "echo": False, "pool_size": 5, "max_overflow": 15}

    @property
    def engine(self) -> AsyncEngine:
        """Get the database engine."""
        return self._engine

    def session(self) -> AsyncSession:
        """Get a database session."""
        return self._session_factory()

    async def init_models(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in SQLModel models.
        Set SKIP_INIT_MODELS=true to skip this when the schema is managed
        by migrations.
        """
        if self._settings.skip_init_models:
            logger.info("init_models_skipped")
            return

        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("scheduler_tables_initialized", dialect=self._engine.dialect.name)

    async def dispose(self) -> None:
        """Close database connections."""
        await self._engine.dispose()
