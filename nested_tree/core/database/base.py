"""Declarative base and primary key mixin for tree models.

Models combine ``Base`` with ``IntegerPKMixin`` and one of the nested set
mixins from ``nested_tree.core.database.hierarchy``.

Example:
    class Category(Base, IntegerPKMixin, NestedSetMixin):
        __tablename__ = "categories"
        __label_column__ = "name"
        name: Mapped[str] = mapped_column(String(255))

    class Folder(Base, IntegerPKMixin, ForestMixin):
        __tablename__ = "folders"
        __label_column__ = "name"
        name: Mapped[str] = mapped_column(String(255))
"""

from __future__ import annotations

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column

# Predictable constraint and index names across backends
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base with constraint naming and derived table names.

    The derived table name is the lowercase class name; set
    ``__tablename__`` explicitly for anything else.
    """

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return cls.__name__.lower()


class IntegerPKMixin:
    """Integer auto-increment primary key."""

    __allow_unmapped__ = True

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True,
        comment="Auto-incrementing integer primary key",
    )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.__dict__.get('id')!r}>"


__all__ = [
    "NAMING_CONVENTION",
    "Base",
    "IntegerPKMixin",
]
