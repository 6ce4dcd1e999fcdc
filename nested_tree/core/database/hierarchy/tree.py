"""Tree manager: root lookup, tree/branch retrieval and the handle identity map.

One ``TreeManager`` exists per model per session. It wraps records into
``NodeHandle`` objects through an identity map keyed by the Python identity
of the record, so two distinct in-memory objects never share a handle even
when they hold equal values.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import InvalidRequestError

from nested_tree.core.database.exceptions import (
    ConcurrencyConflictError,
    InvalidOperationError,
    NotFoundError,
    TreeIntegrityError,
)
from nested_tree.core.database.hierarchy.node import NodeHandle
from nested_tree.core.database.hierarchy.renumber import ROOT_LEFT, NodeRange, check_ranges
from nested_tree.core.database.hierarchy.store import NestedSetStore
from nested_tree.core.settings import TreeSettings, get_tree_settings
from nested_tree.infra.logging import get_lazy_logger, log_context

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from nested_tree.core.database.hierarchy.mixins import NestedSetMixin
    from nested_tree.core.database.hierarchy.renumber import RenumberPlan


class TreeManager[T: NestedSetMixin]:
    """Entry point for working with one nested set model.

    Example:
        >>> tree = TreeManager(Folder, session)
        >>> docs = await tree.create_root(Folder(name="docs"))
        >>> api = await docs.add_child(Folder(name="api"))
        >>> [n.record.name for n in await tree.fetch_tree_as_array(docs.root_value)]
        ['docs', 'api']
        >>> tree.wrap_node(api.record) is api
        True
    """

    def __init__(
        self,
        model: type[T],
        session: AsyncSession,
        *,
        settings: TreeSettings | None = None,
    ) -> None:
        """Initialize tree manager.

        Args:
            model: Model class using NestedSetMixin (or ForestMixin)
            session: Async session shared by every query of this manager
            settings: Tree settings (defaults to get_tree_settings())
        """
        self.model = model
        self.store: NestedSetStore[T] = NestedSetStore(model, session)
        self.settings = settings or get_tree_settings()
        self._handles: dict[int, NodeHandle[T]] = {}
        self._touched: set[Any] = set()
        self._logger = logging.getLogger(f"nested_tree.tree.{model.__name__}")
        self._lazy = get_lazy_logger(f"nested_tree.tree.{model.__name__}")

    def __repr__(self) -> str:
        return f"<TreeManager {self.model.__name__} handles={len(self._handles)}>"

    def __len__(self) -> int:
        return len(self._handles)

    @property
    def session(self) -> AsyncSession:
        return self.store.session

    @property
    def handles(self) -> list[NodeHandle[T]]:
        """Snapshot of every cached handle."""
        return list(self._handles.values())

    # ------------------------------------------------------------------
    # Identity map
    # ------------------------------------------------------------------

    def wrap_node(self, record: T) -> NodeHandle[T]:
        """Return the handle for ``record``, creating it on first sight.

        Raises:
            TypeError: If ``record`` is not an instance of the managed model
        """
        if not isinstance(record, self.model):
            msg = f"Expected {self.model.__name__} instance, got {type(record).__name__}"
            raise TypeError(msg)
        handle = self._handles.get(id(record))
        if handle is not None and handle.record is record:
            return handle
        handle = NodeHandle(record, self)
        self._handles[id(record)] = handle
        return handle

    def reset(self) -> None:
        """Drop every cached handle. Persisted data is untouched."""
        count = len(self._handles)
        self._handles.clear()
        self._lazy.debug(lambda: f"tree.reset: {self.model.__name__} dropped {count} handles")

    def handles_for_ids(self, ids: Iterable[Any]) -> set[NodeHandle[T]]:
        """Cached handles of persisted records whose primary key is in ``ids``."""
        wanted = set(ids)
        return {h for h in self._handles.values() if h.id is not None and h.id in wanted}

    def forget(self, handles: Iterable[NodeHandle[T]]) -> None:
        """Evict handles of deleted records from the identity map."""
        for handle in handles:
            handle.mark_deleted()
            cached = self._handles.get(id(handle.record))
            if cached is handle:
                del self._handles[id(handle.record)]

    def _invalidate_partitions(self, roots: set[Any]) -> None:
        for handle in self._handles.values():
            rng = handle.loaded_range()
            if rng is None or rng.root in roots:
                handle.invalidate()

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def fetch_root(self, root_id: Any = None) -> NodeHandle[T] | None:
        """Fetch the root of a tree.

        Args:
            root_id: Root partition (forests only; None picks the lowest root id)

        Returns:
            Root handle, or None if the tree is empty
        """
        criteria = [self.store.left == ROOT_LEFT]
        order_by: list[Any] = [self.store.pk_attr()]
        if self.store.root is not None:
            if root_id is not None:
                criteria.extend(self.store.partition(root_id))
            order_by.insert(0, self.store.root)
        record = await self.store.fetch_one_where(*criteria, order_by=order_by)
        return self.wrap_node(record) if record is not None else None

    async def fetch_roots(self) -> list[NodeHandle[T]]:
        """Fetch the root of every partition, ordered by root id."""
        order_by: list[Any] = [self.store.pk_attr()]
        if self.store.root is not None:
            order_by.insert(0, self.store.root)
        records = await self.store.fetch_rows_where(self.store.left == ROOT_LEFT, order_by=order_by)
        return [self.wrap_node(r) for r in records]

    async def fetch_tree_as_array(
        self,
        root_id: Any = None,
        depth: int | None = None,
    ) -> list[NodeHandle[T]]:
        """Fetch a whole tree in ``lft`` order.

        Args:
            root_id: Root partition (forests only)
            depth: Levels below the root to include (None for all)

        Returns:
            Handles in pre-order, root first; empty if the tree does not exist
        """
        root = await self.fetch_root(root_id)
        if root is None:
            return []
        return await self._fetch_subtree(root, depth, with_ancestors=True)

    async def fetch_tree(self, root_id: Any = None, depth: int | None = None) -> NodeHandle[T] | None:
        """Fetch a tree and return its (pre-populated) root handle."""
        nodes = await self.fetch_tree_as_array(root_id, depth)
        return nodes[0] if nodes else None

    async def fetch_branch_as_array(self, pk: Any, depth: int | None = None) -> list[NodeHandle[T]]:
        """Fetch the subtree rooted at the node with primary key ``pk``.

        Args:
            pk: Primary key of the branch head
            depth: Levels below the head to include (None for all)
        """
        head = await self.get_node(pk)
        if head is None:
            return []
        return await self._fetch_subtree(head, depth, with_ancestors=False)

    async def fetch_branch(self, pk: Any, depth: int | None = None) -> NodeHandle[T] | None:
        nodes = await self.fetch_branch_as_array(pk, depth)
        return nodes[0] if nodes else None

    async def get_node(self, pk: Any) -> NodeHandle[T] | None:
        """Handle for the row with primary key ``pk`` (None if absent)."""
        record = await self.store.get(pk)
        return self.wrap_node(record) if record is not None else None

    async def get_node_or_raise(self, pk: Any) -> NodeHandle[T]:
        """Handle for the row with primary key ``pk``.

        Raises:
            NotFoundError: If no such row exists
        """
        handle = await self.get_node(pk)
        if handle is None:
            raise NotFoundError(self.model.__name__, {"id": pk})
        return handle

    async def _fetch_subtree(
        self,
        head: NodeHandle[T],
        depth: int | None,
        *,
        with_ancestors: bool,
    ) -> list[NodeHandle[T]]:
        node = await head.current_range()
        if node is None:
            return []
        if depth is not None and depth < 1:
            return [head]

        criteria = self.store.inside(node, include_self=True)
        if depth is not None:
            criteria.append(self.store.depth_below(node) < depth)
        handles = [self.wrap_node(r) for r in await self.store.fetch_rows_where(*criteria)]
        self._prepopulate(handles, depth, with_ancestors=with_ancestors)
        self._lazy.debug(
            lambda: f"tree.fetch_subtree: {self.model.__name__} head={head.id!r} depth={depth} -> {len(handles)}"
        )
        return handles

    def _prepopulate(
        self,
        handles: list[NodeHandle[T]],
        depth: int | None,
        *,
        with_ancestors: bool,
    ) -> None:
        """Fill navigation caches from rows fetched in ``lft`` order.

        Children are cached only for nodes above the depth limit, whose
        children were all fetched; descendants only when nothing was cut.
        """
        stack: list[tuple[NodeHandle[T], NodeRange]] = []
        entries: dict[NodeHandle[T], dict[str, Any]] = {}
        for handle in handles:
            rng = handle.loaded_range()
            assert rng is not None
            while stack and stack[-1][1].right < rng.left:
                stack.pop()

            level = len(stack)
            entry: dict[str, Any] = {}
            if stack:
                entry["parent"] = stack[-1][0]
            elif with_ancestors:
                entry["parent"] = None
            if with_ancestors:
                entry["ancestors"] = [h for h, _ in stack]
            if depth is None or level < depth:
                entry["children"] = []
            if depth is None:
                entry["descendants"] = []

            if stack:
                parent_entry = entries[stack[-1][0]]
                if "children" in parent_entry:
                    parent_entry["children"].append(handle)
                if depth is None:
                    for ancestor, _ in stack:
                        entries[ancestor]["descendants"].append(handle)
            entries[handle] = entry
            stack.append((handle, rng))

        for handle, entry in entries.items():
            handle.prime_cache(**entry)

    # ------------------------------------------------------------------
    # Root creation and verification
    # ------------------------------------------------------------------

    async def create_root(self, record: T, root_id: Any = None) -> NodeHandle[T]:
        """Persist ``record`` as the root of a new tree.

        Args:
            record: Unattached record
            root_id: Partition id (forests only; defaults to the record's own
                root value, then to the next free id)

        Raises:
            InvalidOperationError: If the record is attached, the root id is in
                use, or a single-tree model already has a root
        """
        operation = "tree.create_root"
        handle = self.wrap_node(record)
        if handle.loaded_range() is not None:
            raise InvalidOperationError(
                "Record is already attached to a tree",
                operation=operation,
                details={"node": handle.id},
            )

        async with self.mutation(operation):
            if self.store.has_many_roots:
                if root_id is None:
                    root_id = record.tree_root_value
                if root_id is None:
                    root_id = await self.store.next_root_id()
                elif await self.store.count_where(*self.store.partition(root_id)):
                    raise InvalidOperationError(
                        "Root id is already in use",
                        operation=operation,
                        details={"root": root_id},
                    )
                setattr(record, self.model.__root_column__, root_id)
            else:
                if root_id is not None:
                    raise InvalidOperationError(
                        f"{self.model.__name__} holds a single tree; root_id is not supported",
                        operation=operation,
                    )
                if self.settings.lock_partitions:
                    await self.store.lock_partition(None)
                if await self.store.count_where(self.store.left.is_not(None)):
                    raise InvalidOperationError(
                        f"{self.model.__name__} already has a root",
                        operation=operation,
                    )

            self._touched.add(root_id)
            setattr(record, self.model.__left_column__, ROOT_LEFT)
            setattr(record, self.model.__right_column__, ROOT_LEFT + 1)
            await self.store.insert_row(record)

        self._logger.info(
            "Tree root created",
            extra={
                "operation": operation,
                "entity": self.model.__name__,
                "node_id": handle.id,
                "root": root_id,
            },
        )
        return handle

    async def verify(self, root_id: Any = None) -> list[str]:
        """Check range invariants of one partition.

        Returns:
            List of violations (empty when the partition is consistent)
        """
        return check_ranges(await self.store.fetch_ranges(root_id))

    # ------------------------------------------------------------------
    # Mutation plumbing used by NodeHandle
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def mutation(self, operation: str, **details: Any) -> AsyncIterator[None]:
        """Transaction scope for one structural mutation.

        Cached navigation of every touched partition is invalidated whether
        the mutation succeeds or not. After a rollback every handle drops its
        caches and records inserted by the mutation lose the range they were
        given; an operation rejected before its first write rolls nothing
        back and leaves loaded ranges usable.
        """
        self._touched = set()
        writes = self.store.writes
        try:
            async with self.store.transaction(operation, **details):
                yield
        except InvalidOperationError:
            if self.store.writes != writes:
                self._after_rollback()
            raise
        except BaseException:
            self._after_rollback()
            raise
        finally:
            self._invalidate_partitions(self._touched)
            self._touched = set()

    async def lock_and_read(self, *handles: NodeHandle[T]) -> tuple[NodeRange | None, ...]:
        """Lock the partitions of ``handles`` and return their current ranges.

        Raises:
            ConcurrencyConflictError: If a node changed partition before the lock
            NotFoundError: If a node was deleted concurrently
        """
        ranges = [await h.current_range() for h in handles]
        roots = {r.root for r in ranges if r is not None}
        self._touched.update(roots)
        if not self.settings.lock_partitions:
            return tuple(ranges)

        for root in sorted(roots, key=lambda r: (r is not None, r)):
            with log_context(root=root):
                await self.store.lock_partition(root)

        locked: list[NodeRange | None] = []
        for handle, seen in zip(handles, ranges, strict=True):
            if seen is None:
                locked.append(None)
                continue
            try:
                await self.store.refresh(handle.record, range_only=True)
            except InvalidRequestError as exc:
                raise NotFoundError(self.model.__name__, {"id": handle.id}) from exc
            current = handle.loaded_range()
            if current is None or current.root != seen.root:
                raise ConcurrencyConflictError(
                    "Node moved to another partition before it could be locked",
                    operation="tree.lock",
                    details={"node": handle.id},
                )
            locked.append(current)
        return tuple(locked)

    async def apply_plan(self, plan: RenumberPlan) -> None:
        for root, adjustments in plan.batches():
            self._touched.add(root)
            with log_context(root=root):
                await self.store.update_ranges(root, adjustments)
        if plan.new_range is not None:
            self._touched.add(plan.new_range.root)

    async def verify_partitions(self, operation: str, roots: Iterable[Any]) -> None:
        """Raise TreeIntegrityError if a touched partition is inconsistent.

        Only runs when ``verify_after_mutation`` is enabled.
        """
        if not self.settings.verify_after_mutation:
            return
        for root in roots:
            issues = await self.verify(root)
            if issues:
                self._logger.error(
                    "Tree invariants violated after mutation",
                    extra={"operation": operation, "root": root, "issues": issues},
                )
                raise TreeIntegrityError(issues, operation=operation, root=root)

    def log_mutation(
        self,
        operation: str,
        node: NodeHandle[T],
        target: NodeHandle[T] | None = None,
        **extra: Any,
    ) -> None:
        self._logger.info(
            "Tree mutation applied",
            extra={
                "operation": operation,
                "entity": self.model.__name__,
                "node_id": node.id,
                "target_id": target.id if target is not None else None,
                **extra,
            },
        )

    def _after_rollback(self) -> None:
        for handle in self._handles.values():
            handle.discard_after_rollback()


__all__ = ["TreeManager"]
