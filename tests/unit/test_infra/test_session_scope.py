"""Unit tests for engine and session helpers."""
from __future__ import annotations

import pytest
from sqlalchemy import func, select, text

from conftest import Category
from nested_tree.core.database import Base, TreeManager
from nested_tree.core.settings import DatabaseSettings
from nested_tree.infra.database import (
    close_database,
    create_engine_from_settings,
    create_schema,
    create_session_factory,
    init_database,
    session_scope,
)
from nested_tree.utils.retry import RetryError


@pytest.fixture
def file_settings(tmp_path) -> DatabaseSettings:
    return DatabaseSettings(
        _env_file=None,
        dsn=f"sqlite+aiosqlite:///{tmp_path / 'tree.db'}",
        startup_retry_attempts=2,
        startup_retry_delay=0.0,
    )


@pytest.fixture
async def file_engine(file_settings):
    engine = create_engine_from_settings(file_settings)
    await create_schema(engine, Base.metadata)
    yield engine
    await close_database(engine)


async def count_categories(factory) -> int:
    async with factory() as session:
        return await session.scalar(select(func.count()).select_from(Category))


@pytest.mark.unit
class TestSessionScope:
    """Test suite for session_scope."""

    @pytest.mark.asyncio
    async def test_commits_on_success(self, file_engine):
        factory = create_session_factory(file_engine)

        async with session_scope(factory) as session:
            tree = TreeManager(Category, session)
            root = await tree.create_root(Category(name="R"))
            await root.add_child(Category(name="A"))

        assert await count_categories(factory) == 2

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, file_engine):
        factory = create_session_factory(file_engine)

        with pytest.raises(RuntimeError):
            async with session_scope(factory) as session:
                tree = TreeManager(Category, session)
                await tree.create_root(Category(name="R"))
                raise RuntimeError("abort")

        assert await count_categories(factory) == 0

    @pytest.mark.asyncio
    async def test_factory_keeps_values_after_commit(self, file_engine):
        factory = create_session_factory(file_engine)

        async with session_scope(factory) as session:
            root = await TreeManager(Category, session).create_root(Category(name="R"))

        # No implicit reload needed once the session is closed
        assert (root.left, root.right) == (1, 2)

    @pytest.mark.asyncio
    async def test_mutations_are_invisible_until_the_caller_commits(self, file_engine):
        factory = create_session_factory(file_engine)

        async with factory() as session:
            tree = TreeManager(Category, session)
            await tree.fetch_root()
            root = await tree.create_root(Category(name="R"))
            await root.add_child(Category(name="A"))

            assert await count_categories(factory) == 0
            await session.commit()

        assert await count_categories(factory) == 2

    @pytest.mark.asyncio
    async def test_closing_without_commit_discards_mutations(self, file_engine):
        factory = create_session_factory(file_engine)

        async with factory() as session:
            await TreeManager(Category, session).create_root(Category(name="R"))

        assert await count_categories(factory) == 0


@pytest.mark.unit
class TestEngineSetup:
    """Test suite for engine creation and startup checks."""

    @pytest.mark.asyncio
    async def test_savepoints_work_on_sqlite(self, file_engine):
        async with file_engine.connect() as conn:
            await conn.begin()
            await conn.execute(text("INSERT INTO categories (name, lft, rgt) VALUES ('R', 1, 2)"))
            nested = await conn.begin_nested()
            await conn.execute(text("INSERT INTO categories (name, lft, rgt) VALUES ('X', 3, 4)"))
            await nested.rollback()
            total = await conn.scalar(text("SELECT count(*) FROM categories"))
            await conn.rollback()

        assert total == 1

    @pytest.mark.asyncio
    async def test_init_database_succeeds(self, file_engine, file_settings):
        await init_database(file_engine, file_settings)

    @pytest.mark.asyncio
    async def test_init_database_gives_up(self, tmp_path):
        settings = DatabaseSettings(
            _env_file=None,
            dsn=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'tree.db'}",
            startup_retry_attempts=2,
            startup_retry_delay=0.0,
        )
        engine = create_engine_from_settings(settings)

        with pytest.raises(RetryError) as exc_info:
            await init_database(engine, settings)

        assert exc_info.value.attempts == 2
        await close_database(engine)

    def test_echo_from_settings(self):
        engine = create_engine_from_settings(
            DatabaseSettings(_env_file=None, dsn="sqlite+aiosqlite:///:memory:", echo=True)
        )

        assert engine.echo is True
        assert engine.dialect.name == "sqlite"
