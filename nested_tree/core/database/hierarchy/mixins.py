"""Mixins for models stored as nested sets.

Provides the ``lft``/``rgt`` (and optionally ``root_id``) columns a model
needs to be managed by a ``TreeManager``, plus a few properties that read
the current range without querying the database.
"""

from __future__ import annotations

from typing import Any, ClassVar

from sqlalchemy import Index, Integer, text
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from nested_tree.core.database.hierarchy.renumber import ROOT_LEFT, NodeRange


class NestedSetMixin:
    """Mixin for models encoded as a single nested set tree.

    Each row carries a ``(lft, rgt)`` range; a row is an ancestor of another
    exactly when its range strictly contains the other's. Rows whose range
    is unset are *unattached*: they exist as records but are not part of
    the tree yet.

    Example:
        >>> class Category(Base, IntegerPKMixin, NestedSetMixin):
        ...     __tablename__ = "categories"
        ...     __label_column__ = "name"
        ...     name: Mapped[str] = mapped_column(String(255))
        >>>
        >>> tree = TreeManager(Category, session)
        >>> root = await tree.create_root(Category(name="All"))
        >>> books = await root.add_child(Category(name="Books"))

    Note:
        - Column names can be changed via ``__left_column__`` / ``__right_column__``
        - Set ``__label_column__`` to control the labels used by ``get_path``
        - A partial unique index allows one root row per partition; models
          declaring their own ``__table_args__`` should include
          ``cls.tree_root_index()``
    """

    __allow_unmapped__ = True

    __left_column__: ClassVar[str] = "lft"
    __right_column__: ClassVar[str] = "rgt"
    # None means the whole table is one tree
    __root_column__: ClassVar[str | None] = None
    __label_column__: ClassVar[str | None] = None

    lft: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        index=True,
        comment="Nested set left value",
    )
    rgt: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        index=True,
        comment="Nested set right value",
    )

    @declared_attr.directive
    def __table_args__(cls) -> tuple[Any, ...]:
        return (cls.tree_root_index(),)

    @classmethod
    def tree_root_index_name(cls) -> str:
        return f"uq_{cls.__name__.lower()}_tree_root"

    @classmethod
    def tree_root_index(cls) -> Index:
        """Unique index over the rows whose ``lft`` is 1.

        Two transactions racing to create the same root (or two roots of a
        single tree) collide here instead of both committing. Partial
        indexes are rendered for PostgreSQL and SQLite.
        """
        is_root = text(f"{cls.__left_column__} = {ROOT_LEFT}")
        return Index(
            cls.tree_root_index_name(),
            cls.__root_column__ or cls.__left_column__,
            unique=True,
            postgresql_where=is_root,
            sqlite_where=is_root,
        )

    @property
    def tree_root_value(self) -> Any:
        if self.__root_column__ is None:
            return None
        return getattr(self, self.__root_column__)

    @property
    def is_tree_attached(self) -> bool:
        """Check whether the row currently holds a valid range.

        This property does NOT query the database.
        """
        left = getattr(self, self.__left_column__)
        right = getattr(self, self.__right_column__)
        return left is not None and right is not None and left < right

    @property
    def tree_range(self) -> NodeRange | None:
        """Current range as a ``NodeRange`` (None when unattached)."""
        left = getattr(self, self.__left_column__)
        right = getattr(self, self.__right_column__)
        if left is None or right is None:
            return None
        return NodeRange(left, right, self.tree_root_value)

    @property
    def tree_label(self) -> str:
        """Label used when building paths."""
        if self.__label_column__ is not None:
            return str(getattr(self, self.__label_column__))
        return str(self)


class ForestMixin(NestedSetMixin):
    """Nested set mixin for tables holding several independent trees.

    Every tree (root partition) is identified by ``root_id``; ranges are
    numbered from 1 within each partition.
    """

    __root_column__: ClassVar[str | None] = "root_id"

    root_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        index=True,
        comment="Root partition identifier",
    )


__all__ = [
    "ForestMixin",
    "NestedSetMixin",
]
