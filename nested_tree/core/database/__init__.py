"""Core database package: declarative base, nested set hierarchy and errors.

Base Classes and Mixins:
    - Base: Declarative base with constraint naming and derived table names
    - IntegerPKMixin: Auto-increment integer primary key
    - NestedSetMixin: ``lft``/``rgt`` columns for a single tree per table
    - ForestMixin: Adds ``root_id`` for several independent trees per table

Tree API:
    - TreeManager[T]: Root lookup, tree/branch retrieval, handle identity map
    - NodeHandle[T]: Navigation and structural mutation of one record
    - NestedSetStore[T]: SQLAlchemy statements used by the tree API

Exceptions:
    - RepositoryError: Base exception for database operations
    - NotFoundError: Entity not found
    - TreeError: Base exception for structural tree operations
    - InvalidOperationError: Mutation would violate tree semantics
    - ConcurrencyConflictError: Transaction could not be serialized (retryable)
    - StorageFailureError: Backend failure during a mutation
    - TreeIntegrityError: Range invariants violated after a mutation

Example:
    from nested_tree.core.database import Base, IntegerPKMixin, NestedSetMixin, TreeManager

    class Category(Base, IntegerPKMixin, NestedSetMixin):
        __tablename__ = "categories"
        __label_column__ = "name"
        name: Mapped[str] = mapped_column(String(255))

    async with session_scope(session_factory) as session:
        tree = TreeManager(Category, session)
        root = await tree.fetch_tree()
        for child in await root.get_children():
            print(await child.get_path(include_self=True))
"""

from nested_tree.core.database.base import NAMING_CONVENTION, Base, IntegerPKMixin
from nested_tree.core.database.exceptions import (
    ConcurrencyConflictError,
    InvalidOperationError,
    NotFoundError,
    RepositoryError,
    StorageFailureError,
    TreeError,
    TreeIntegrityError,
)
from nested_tree.core.database.hierarchy import (
    ForestMixin,
    NestedSetMixin,
    NestedSetStore,
    NodeHandle,
    NodeRange,
    TreeManager,
)

__all__ = [
    "NAMING_CONVENTION",
    "Base",
    "ConcurrencyConflictError",
    "ForestMixin",
    "IntegerPKMixin",
    "InvalidOperationError",
    "NestedSetMixin",
    "NestedSetStore",
    "NodeHandle",
    "NodeRange",
    "NotFoundError",
    "RepositoryError",
    "StorageFailureError",
    "TreeError",
    "TreeIntegrityError",
    "TreeManager",
]
