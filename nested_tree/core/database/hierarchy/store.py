"""SQLAlchemy-backed storage for nested set rows.

``NestedSetStore`` is the only component that talks to the database. It
offers row fetching by criteria, bulk range renumbering, row insert/delete
and a transaction scope that turns backend errors into tree exceptions.

All bulk statements run with ``synchronize_session="fetch"`` so that ORM
instances already loaded in the session see their new ``lft``/``rgt``
values without another round trip.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING, Any, cast

from sqlalchemy import delete as sql_delete
from sqlalchemy import func, inspect as sa_inspect, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import aliased

from nested_tree.core.database.exceptions import (
    ConcurrencyConflictError,
    InvalidOperationError,
    StorageFailureError,
)
from nested_tree.core.database.hierarchy.renumber import GapShift, NodeRange, SubtreeShift
from nested_tree.infra.logging import get_lazy_logger, log_context

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction
    from sqlalchemy.orm import InstrumentedAttribute
    from sqlalchemy.sql import ColumnElement
    from sqlalchemy.sql.selectable import ScalarSelect

    from nested_tree.core.database.hierarchy.mixins import NestedSetMixin
    from nested_tree.core.database.hierarchy.renumber import Adjustment

# serialization_failure, deadlock_detected, lock_not_available
_CONFLICT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})

_SYNC = {"synchronize_session": "fetch"}


def is_concurrency_conflict(exc: BaseException) -> bool:
    """Check whether a database error means "retry the transaction"."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _CONFLICT_SQLSTATES:
        return True
    return isinstance(exc, OperationalError) and "database is locked" in str(exc).lower()


class NestedSetStore[T: NestedSetMixin]:
    """Row access and renumbering for one nested set model in one session.

    Criteria helpers (``partition``, ``inside``, ``containing``) build the
    WHERE clauses used by navigation; ``update_ranges`` executes the
    adjustments produced by the renumbering plans.

    Example:
        >>> store = NestedSetStore(Category, session)
        >>> async with store.transaction("tree.insert"):
        ...     await store.lock_partition(None)
        ...     await store.update_ranges(None, [GapShift(5, 2)])
        ...     await store.insert_row(node)
    """

    __slots__ = ("model", "session", "_logger", "_lazy", "_writes")

    def __init__(self, model: type[T], session: AsyncSession) -> None:
        """Initialize store.

        Args:
            model: Model class using NestedSetMixin
            session: Session used for every statement
        """
        self.model = model
        self.session = session
        self._logger = logging.getLogger(f"nested_tree.store.{model.__name__}")
        self._lazy = get_lazy_logger(f"nested_tree.store.{model.__name__}")
        self._writes = 0

    # ------------------------------------------------------------------
    # Columns and criteria
    # ------------------------------------------------------------------

    @property
    def left(self) -> InstrumentedAttribute[int]:
        return getattr(self.model, self.model.__left_column__)

    @property
    def right(self) -> InstrumentedAttribute[int]:
        return getattr(self.model, self.model.__right_column__)

    @property
    def root(self) -> InstrumentedAttribute[Any] | None:
        if self.model.__root_column__ is None:
            return None
        return getattr(self.model, self.model.__root_column__)

    @property
    def has_many_roots(self) -> bool:
        return self.model.__root_column__ is not None

    @property
    def writes(self) -> int:
        """Number of write calls issued through this store."""
        return self._writes

    def pk_attr(self) -> InstrumentedAttribute[Any]:
        """Get primary key attribute.

        Inspects the model to find the primary key column.
        Falls back to 'id' if inspection fails.
        """
        mapper = sa_inspect(self.model)
        pk_cols = getattr(mapper, "primary_key", None)
        if pk_cols:
            return cast("InstrumentedAttribute[Any]", getattr(self.model, pk_cols[0].key))

        attr = getattr(self.model, "id", None)
        if attr is None:
            raise AttributeError(f"{self.model.__name__} has no 'id' attribute")
        return cast("InstrumentedAttribute[Any]", attr)

    def partition(self, root: Any) -> list[ColumnElement[bool]]:
        """Criteria restricting a query to one root partition."""
        root_col = self.root
        if root_col is None:
            return []
        if root is None:
            return [root_col.is_(None)]
        return [root_col == root]

    def inside(self, node: NodeRange, *, include_self: bool = False) -> list[ColumnElement[bool]]:
        """Criteria for the subtree below ``node``."""
        if include_self:
            return [*self.partition(node.root), self.left >= node.left, self.right <= node.right]
        return [*self.partition(node.root), self.left > node.left, self.right < node.right]

    def containing(self, node: NodeRange) -> list[ColumnElement[bool]]:
        """Criteria for the ancestors of ``node``."""
        return [*self.partition(node.root), self.left < node.left, self.right > node.right]

    def depth_below(self, anchor: NodeRange) -> ScalarSelect[int]:
        """Correlated subquery: levels between ``anchor`` and the current row.

        Counts the rows that lie strictly below ``anchor`` and strictly
        contain the outer row, so a direct child of ``anchor`` yields 0,
        a grandchild 1, and so on.
        """
        inner = aliased(self.model)
        inner_left = getattr(inner, self.model.__left_column__)
        inner_right = getattr(inner, self.model.__right_column__)
        criteria = [inner_left > anchor.left, inner_left < self.left, inner_right > self.right]
        if self.root is not None:
            criteria.append(getattr(inner, self.model.__root_column__) == self.root)
        return select(func.count()).select_from(inner).where(*criteria).scalar_subquery()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, pk: Any) -> T | None:
        instance = await self.session.get(self.model, pk)
        self._lazy.debug(
            lambda: f"store.get: {self.model.__name__}({pk}) -> {'found' if instance else 'not found'}"
        )
        return instance

    async def fetch_rows_where(
        self,
        *criteria: ColumnElement[bool],
        order_by: Sequence[Any] | None = None,
        limit: int | None = None,
    ) -> list[T]:
        """Fetch rows matching all criteria (ordered by ``lft`` by default)."""
        stmt = select(self.model).where(*criteria)
        stmt = stmt.order_by(*(order_by if order_by is not None else (self.left,)))
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        rows = list(result.scalars().all())
        self._lazy.debug(lambda: f"store.fetch_rows_where: {self.model.__name__} -> {len(rows)} rows")
        return rows

    async def fetch_one_where(
        self,
        *criteria: ColumnElement[bool],
        order_by: Sequence[Any] | None = None,
    ) -> T | None:
        rows = await self.fetch_rows_where(*criteria, order_by=order_by, limit=1)
        return rows[0] if rows else None

    async def count_where(self, *criteria: ColumnElement[bool]) -> int:
        stmt = select(func.count()).select_from(self.model).where(*criteria)
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def fetch_ids_where(self, *criteria: ColumnElement[bool]) -> set[Any]:
        """Primary keys of the rows matching all criteria."""
        result = await self.session.execute(select(self.pk_attr()).where(*criteria))
        return set(result.scalars().all())

    async def fetch_ranges(self, root: Any = None) -> list[NodeRange]:
        """Raw ranges of every attached row in a partition (no ORM loading)."""
        root_col = self.root
        columns = [self.left, self.right] + ([root_col] if root_col is not None else [])
        stmt = select(*columns).where(
            *self.partition(root),
            self.left.is_not(None),
            self.right.is_not(None),
        )
        result = await self.session.execute(stmt)
        return [
            NodeRange(row[0], row[1], row[2] if root_col is not None else None)
            for row in result.all()
        ]

    async def root_ids(self) -> list[Any]:
        root_col = self.root
        if root_col is None:
            return []
        stmt = select(root_col).where(root_col.is_not(None)).distinct().order_by(root_col)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def next_root_id(self) -> int:
        root_col = self.root
        if root_col is None:
            msg = f"{self.model.__name__} does not support multiple roots"
            raise TypeError(msg)
        result = await self.session.execute(select(func.max(root_col)))
        return (result.scalar() or 0) + 1

    async def refresh(self, record: T, *, range_only: bool = False) -> None:
        """Re-read a record; ``range_only`` leaves unflushed edits of other columns alone."""
        if not range_only:
            await self.session.refresh(record)
            return
        names = [self.model.__left_column__, self.model.__right_column__]
        if self.model.__root_column__ is not None:
            names.append(self.model.__root_column__)
        await self.session.refresh(record, attribute_names=names)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def lock_partition(self, root: Any) -> None:
        """Lock every row of a partition until the transaction ends.

        Backends without row-level locks (SQLite) omit FOR UPDATE and rely on
        their database-level write lock instead.
        """
        stmt = select(self.pk_attr()).where(*self.partition(root)).with_for_update()
        result = await self.session.execute(stmt)
        locked = len(result.all())
        self._lazy.debug(lambda: f"store.lock_partition: root={root!r} -> {locked} rows")

    async def update_ranges(self, root: Any, adjustments: Sequence[Adjustment]) -> int:
        """Apply range adjustments to one partition, in order.

        Returns:
            Total number of row updates issued
        """
        touched = 0
        self._writes += 1
        for adjustment in adjustments:
            if isinstance(adjustment, GapShift):
                touched += await self._shift_column(root, self.left, adjustment)
                touched += await self._shift_column(root, self.right, adjustment)
            else:
                touched += await self._shift_subtree(root, adjustment)
        self._lazy.debug(
            lambda: f"store.update_ranges: root={root!r} {list(adjustments)} -> {touched} row updates"
        )
        return touched

    async def _shift_column(
        self,
        root: Any,
        column: InstrumentedAttribute[int],
        shift: GapShift,
    ) -> int:
        stmt = (
            update(self.model)
            .where(*self.partition(root), column >= shift.first)
            .values({column: column + shift.delta})
            .execution_options(**_SYNC)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def _shift_subtree(self, root: Any, shift: SubtreeShift) -> int:
        values: dict[Any, Any] = {
            self.left: self.left + shift.delta,
            self.right: self.right + shift.delta,
        }
        if shift.reassign_root and self.root is not None:
            values[self.root] = shift.new_root
        stmt = (
            update(self.model)
            .where(*self.partition(root), self.left >= shift.left, self.right <= shift.right)
            .values(values)
            .execution_options(**_SYNC)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def insert_row(self, record: T) -> T:
        self.session.add(record)
        self._writes += 1
        await self.session.flush()
        self._lazy.debug(lambda: f"store.insert_row: {self.model.__name__} -> {record.tree_range}")
        return record

    async def delete_rows(self, *criteria: ColumnElement[bool]) -> int:
        stmt = sql_delete(self.model).where(*criteria).execution_options(**_SYNC)
        self._writes += 1
        result = await self.session.execute(stmt)
        deleted = result.rowcount or 0
        if deleted > 10:
            self._logger.warning(
                "Bulk subtree delete executed",
                extra={"entity": self.model.__name__, "deleted": deleted},
            )
        else:
            self._lazy.debug(lambda: f"store.delete_rows: {self.model.__name__} -> {deleted} deleted")
        return deleted

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def is_root_collision(self, exc: BaseException) -> bool:
        """Check whether ``exc`` is a second root racing into one partition."""
        if not isinstance(exc, IntegrityError):
            return False
        message = str(exc.orig if exc.orig is not None else exc)
        key = self.model.__root_column__ or self.model.__left_column__
        return (
            self.model.tree_root_index_name() in message
            or f"{self.model.__table__.name}.{key}" in message
        )

    @asynccontextmanager
    async def transaction(self, operation: str, **details: Any) -> AsyncIterator[AsyncSessionTransaction]:
        """Run a structural mutation all-or-nothing inside a SAVEPOINT.

        Nothing is committed here. The SAVEPOINT is released on success and
        the caller's unit of work (see ``session_scope``) commits or rolls
        back; an idle session begins its transaction on the way in.

        A rejected operation (``InvalidOperationError``) that has not written
        anything releases the SAVEPOINT and leaves loaded instances alone. Any
        other exception rolls back every statement issued inside the block
        and expires loaded instances so stale ranges are re-read.

        Raises:
            ConcurrencyConflictError: Serialization failure, deadlock, lock
                timeout, or a root created concurrently in the same partition
            StorageFailureError: Any other SQLAlchemy error
        """
        session = self.session
        writes = self._writes
        rejected: InvalidOperationError | None = None

        with log_context(entity=self.model.__name__, operation=operation, **details):
            try:
                async with session.begin_nested() as savepoint:
                    try:
                        yield savepoint
                    except InvalidOperationError as exc:
                        if self._writes != writes:
                            raise
                        rejected = exc
            except SQLAlchemyError as exc:
                session.expire_all()
                if is_concurrency_conflict(exc) or self.is_root_collision(exc):
                    self._logger.warning(
                        "Tree mutation conflicted with a concurrent transaction",
                        extra={"error": str(exc)},
                    )
                    raise ConcurrencyConflictError(
                        f"Concurrent modification during {operation}",
                        operation=operation,
                        details=details,
                    ) from exc
                self._logger.error(
                    "Tree mutation failed in storage",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )
                raise StorageFailureError(operation, exc, details=details) from exc
            except BaseException:
                # A SAVEPOINT rollback leaves bulk-synchronised values behind
                session.expire_all()
                raise

        if rejected is not None:
            raise rejected


__all__ = [
    "NestedSetStore",
    "is_concurrency_conflict",
]
