"""Nested set trees on top of SQLAlchemy's async ORM.

    from nested_tree import TreeManager

    tree = TreeManager(Category, session)
    root = await tree.fetch_tree()
"""

from nested_tree.core.database import (
    ConcurrencyConflictError,
    ForestMixin,
    InvalidOperationError,
    NestedSetMixin,
    NodeHandle,
    NotFoundError,
    StorageFailureError,
    TreeError,
    TreeIntegrityError,
    TreeManager,
)

__version__ = "0.1.0"

__all__ = [
    "ConcurrencyConflictError",
    "ForestMixin",
    "InvalidOperationError",
    "NestedSetMixin",
    "NodeHandle",
    "NotFoundError",
    "StorageFailureError",
    "TreeError",
    "TreeIntegrityError",
    "TreeManager",
    "__version__",
]
