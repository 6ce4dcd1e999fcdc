"""Pytest configuration and shared fixtures.

Organization:
    - Test Models: Category (single tree) and Folder (forest)
    - Database Fixtures: in-memory SQLite engine and session
    - Tree Fixtures: TreeManager instances and a sample tree
    - Utility Fixtures: invariant checks used after every mutation
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import String
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from nested_tree.core.database import Base, ForestMixin, IntegerPKMixin, NestedSetMixin, TreeManager
from nested_tree.core.settings import DatabaseSettings, TreeSettings
from nested_tree.infra.database import create_engine_from_settings, create_schema

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from nested_tree.core.database import NodeHandle


# ============================================================================
# Test Models
# ============================================================================


class Category(Base, IntegerPKMixin, NestedSetMixin):
    """Single tree per table."""

    __tablename__ = "categories"
    __label_column__ = "name"

    name: Mapped[str] = mapped_column(String(255))


class Folder(Base, IntegerPKMixin, ForestMixin):
    """Several independent trees per table, partitioned by root_id."""

    __tablename__ = "folders"
    __label_column__ = "name"

    name: Mapped[str] = mapped_column(String(255))


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """In-memory SQLite engine with SAVEPOINT support and all tables created."""
    engine = create_engine_from_settings(DatabaseSettings(dsn="sqlite+aiosqlite:///:memory:"))
    await create_schema(engine, Base.metadata)

    yield engine

    await engine.dispose()


@pytest.fixture
async def session(async_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    async with AsyncSession(async_engine, expire_on_commit=False) as session:
        yield session


# ============================================================================
# Tree Fixtures
# ============================================================================


@pytest.fixture
def tree_settings() -> TreeSettings:
    """Settings with post-mutation verification enabled."""
    return TreeSettings(verify_after_mutation=True)


@pytest.fixture
def tree(session: AsyncSession, tree_settings: TreeSettings) -> TreeManager[Category]:
    return TreeManager(Category, session, settings=tree_settings)


@pytest.fixture
def forest(session: AsyncSession, tree_settings: TreeSettings) -> TreeManager[Folder]:
    return TreeManager(Folder, session, settings=tree_settings)


@pytest.fixture
async def sample(tree: TreeManager[Category]) -> dict[str, NodeHandle[Category]]:
    """Build R(1,10) with children A(2,3), B(4,7), C(8,9) and D(5,6) under B."""
    r = await tree.create_root(Category(name="R"))
    a = await r.add_child(Category(name="A"))
    b = await r.add_child(Category(name="B"))
    c = await r.add_child(Category(name="C"))
    d = await b.add_child(Category(name="D"))
    return {"R": r, "A": a, "B": b, "C": c, "D": d}


# ============================================================================
# Utility Fixtures
# ============================================================================


@pytest.fixture
def assert_valid() -> Callable[..., Awaitable[None]]:
    """Assert that a partition satisfies every nested set invariant."""

    async def check(manager: TreeManager, root_id: object = None) -> None:
        issues = await manager.verify(root_id)
        assert issues == [], f"Invariant violations: {issues}"

    return check


@pytest.fixture
def ranges() -> Callable[..., Awaitable[dict[str, tuple[int, int]]]]:
    """Map node names to (lft, rgt) as stored in the database."""
    from sqlalchemy import select

    async def read(manager: TreeManager, root_id: object = None) -> dict[str, tuple[int, int]]:
        model = manager.model
        stmt = select(model.name, model.lft, model.rgt).where(*manager.store.partition(root_id))
        result = await manager.session.execute(stmt.where(model.lft.is_not(None)))
        return {name: (lft, rgt) for name, lft, rgt in result.all()}

    return read
