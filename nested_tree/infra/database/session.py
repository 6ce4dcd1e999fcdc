"""Async engine and session management for the tree core."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from nested_tree.core.settings import DatabaseSettings, get_db_settings
from nested_tree.utils.retry import retry

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy import MetaData

logger = logging.getLogger(__name__)


def create_engine_from_settings(settings: DatabaseSettings | None = None, **engine_kwargs: Any) -> AsyncEngine:
    """Create an async engine for ``settings.dsn``.

    On SQLite the SAVEPOINT fix is installed unless disabled, since tree
    mutations run inside SAVEPOINTs whenever the caller already holds a
    transaction.
    """
    settings = settings or get_db_settings()
    engine = create_async_engine(
        settings.dsn,
        echo=settings.echo,
        pool_pre_ping=settings.pool_pre_ping,
        **engine_kwargs,
    )
    if settings.is_sqlite and settings.sqlite_savepoints:
        install_sqlite_savepoint_fix(engine)
    logger.debug("Database engine created", extra={"dialect": engine.dialect.name})
    return engine


def install_sqlite_savepoint_fix(engine: AsyncEngine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT works on pysqlite/aiosqlite.

    The sqlite3 driver otherwise begins transactions lazily on its own and
    breaks ``session.begin_nested()``.
    """
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _receive_connect(dbapi_connection: Any, connection_record: Any) -> None:
        _ = connection_record
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _receive_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the options the tree core expects.

    ``expire_on_commit=False`` keeps ranges readable on handles after a
    commit without an implicit (sync) reload.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Unit of work: commit on success, roll back on any exception.

    Example:
        async with session_scope(factory) as session:
            tree = TreeManager(Category, session)
            root = await tree.fetch_root()
            await root.add_child(Category(name="Books"))
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


async def create_schema(engine: AsyncEngine, metadata: MetaData) -> None:
    """Create every table of ``metadata`` that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Database schema ensured", extra={"tables": len(metadata.tables)})


async def init_database(engine: AsyncEngine, settings: DatabaseSettings | None = None) -> None:
    """Check connectivity with exponential backoff.

    Useful at startup when the database may not be reachable yet.

    Raises:
        RetryError: If no connection could be made within the retry budget
    """
    settings = settings or get_db_settings()

    @retry(
        max_attempts=settings.startup_retry_attempts,
        initial_delay=settings.startup_retry_delay,
        max_delay=30.0,
        exponential_base=2.0,
        jitter=True,
        stop_after_delay=settings.startup_retry_timeout,
    )
    async def _ping() -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    logger.info(
        "Initializing database connection with retry",
        extra={
            "max_attempts": settings.startup_retry_attempts,
            "initial_delay": settings.startup_retry_delay,
        },
    )
    await _ping()
    logger.info("Database connection established", extra={"dialect": engine.dialect.name})


async def close_database(engine: AsyncEngine) -> None:
    """Dispose of the engine's connection pool."""
    await engine.dispose()
    logger.info("Database connection closed")


__all__ = [
    "close_database",
    "create_engine_from_settings",
    "create_schema",
    "create_session_factory",
    "init_database",
    "install_sqlite_savepoint_fix",
    "session_scope",
]
