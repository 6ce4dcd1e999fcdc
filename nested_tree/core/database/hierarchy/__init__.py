"""Hierarchical data support using the nested set model.

Every row stores a ``(lft, rgt)`` range; a row is an ancestor of another
exactly when its range strictly contains the other's. Reads are plain range
comparisons, while structural changes renumber the ranges of a partition in
a single transaction.

Components:
    - NestedSetMixin / ForestMixin: columns for single trees and forests
    - TreeManager: root lookup, tree/branch retrieval, handle identity map
    - NodeHandle: navigation and structural mutation of one record
    - NestedSetStore: SQLAlchemy statements and transaction scope
    - renumber: pure range arithmetic shared by all mutations

Example:
    >>> from nested_tree.core.database import Base, IntegerPKMixin
    >>> from nested_tree.core.database.hierarchy import NestedSetMixin, TreeManager
    >>>
    >>> class Category(Base, IntegerPKMixin, NestedSetMixin):
    ...     __tablename__ = "categories"
    ...     __label_column__ = "name"
    ...     name: Mapped[str] = mapped_column(String(255))
    >>>
    >>> tree = TreeManager(Category, session)
    >>> root = await tree.create_root(Category(name="All"))
    >>> books = await root.add_child(Category(name="Books"))
    >>> await books.get_level()
    1

Note:
    - Numbering is unit-gap: a partition of n nodes uses exactly 1..2n
    - Mutations lock the affected partitions (SELECT ... FOR UPDATE) where
      the backend supports it
"""

from nested_tree.core.database.hierarchy.mixins import ForestMixin, NestedSetMixin
from nested_tree.core.database.hierarchy.node import NodeHandle
from nested_tree.core.database.hierarchy.renumber import NodeRange, check_ranges
from nested_tree.core.database.hierarchy.store import NestedSetStore
from nested_tree.core.database.hierarchy.tree import TreeManager

__all__ = [
    "ForestMixin",
    "NestedSetMixin",
    "NestedSetStore",
    "NodeHandle",
    "NodeRange",
    "TreeManager",
    "check_ranges",
]
