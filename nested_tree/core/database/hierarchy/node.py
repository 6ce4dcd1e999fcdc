"""Per-record facade over a nested set tree.

A ``NodeHandle`` wraps exactly one model instance and exposes hierarchy
navigation (parent, children, ancestors, siblings, ...) and structural
mutation (insert, move, delete, make root). Handles are obtained from a
``TreeManager``, which guarantees one handle per loaded record.

Navigation results are derived from range comparisons and cached on the
handle until ``invalidate()`` is called; the manager invalidates every
handle of a partition after each mutation on it.

Predicates such as ``is_root()`` or ``is_descendant_of()`` read the ranges
already loaded on the records and do NOT query the database. A mutation that
fails after writing expires the loaded ranges; async navigation re-reads them
automatically, synchronous predicates raise until ``await handle.refresh()``.
A mutation rejected before any write leaves every loaded range in place.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import InvalidRequestError

from nested_tree.core.database.exceptions import InvalidOperationError, NotFoundError
from nested_tree.core.database.hierarchy.renumber import (
    NodeRange,
    first_child_position,
    last_child_position,
    next_sibling_position,
    plan_delete,
    plan_insert,
    plan_insert_as_parent,
    plan_make_root,
    plan_move,
    plan_transfer,
    prev_sibling_position,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from nested_tree.core.database.hierarchy.mixins import NestedSetMixin
    from nested_tree.core.database.hierarchy.store import NestedSetStore
    from nested_tree.core.database.hierarchy.tree import TreeManager

_UNSET = object()


class NodeHandle[T: NestedSetMixin]:
    """Navigation and mutation facade for one nested set record.

    Example:
        >>> tree = TreeManager(Category, session)
        >>> root = await tree.fetch_root()
        >>> books = tree.wrap_node(Category(name="Books"))
        >>> await books.insert_as_last_child_of(root)
        >>> [c.record.name for c in await root.get_children()]
        ['Books']
        >>> await books.get_path(include_self=True)
        'All > Books'
    """

    __slots__ = ("_record", "_tree", "_cache", "_deleted")

    def __init__(self, record: T, tree: TreeManager[T]) -> None:
        self._record = record
        self._tree = tree
        self._cache: dict[str, Any] = {}
        self._deleted = False

    def __repr__(self) -> str:
        rng = self.loaded_range()
        where = f"{rng.left}..{rng.right}" if rng else "unattached"
        return f"<NodeHandle {type(self._record).__name__}(id={self._peek_id()!r}) {where}>"

    def __str__(self) -> str:
        return self._record.tree_label

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def record(self) -> T:
        """The wrapped model instance."""
        return self._record

    @property
    def tree(self) -> TreeManager[T]:
        return self._tree

    @property
    def store(self) -> NestedSetStore[T]:
        return self._tree.store

    @property
    def id(self) -> Any:
        return self._peek_id()

    @property
    def range(self) -> NodeRange | None:
        """Loaded range of the record (None when unattached or deleted).

        Raises:
            InvalidOperationError: If the range was expired by a failed
                mutation and has not been re-read with ``refresh()``
        """
        if self._is_stale():
            msg = "Node handle is stale after a failed mutation; await refresh() first"
            raise InvalidOperationError(msg, operation="node.read", details={"id": self._peek_id()})
        return self.loaded_range()

    @property
    def left(self) -> int | None:
        rng = self.range
        return rng.left if rng else None

    @property
    def right(self) -> int | None:
        rng = self.range
        return rng.right if rng else None

    @property
    def root_value(self) -> Any:
        rng = self.range
        return rng.root if rng else None

    # ------------------------------------------------------------------
    # Cache and state
    # ------------------------------------------------------------------

    def invalidate(self) -> None:
        """Drop cached parent/ancestors/children/descendants."""
        self._cache.clear()

    async def refresh(self) -> None:
        """Re-read the record's range from the database.

        Raises:
            NotFoundError: If the row no longer exists
        """
        self.invalidate()
        state = sa_inspect(self._record)
        if not state.has_identity or self._deleted:
            return
        try:
            await self.store.refresh(self._record)
        except InvalidRequestError as exc:
            self.mark_deleted()
            raise NotFoundError(type(self._record).__name__, {"id": self._peek_id()}) from exc

    def prime_cache(
        self,
        *,
        parent: NodeHandle[T] | None | object = _UNSET,
        ancestors: list[NodeHandle[T]] | None = None,
        children: list[NodeHandle[T]] | None = None,
        descendants: list[NodeHandle[T]] | None = None,
    ) -> None:
        """Replace cached navigation with results already known to the caller.

        Omitted entries stay uncached and are queried on demand.
        """
        self._cache.clear()
        if parent is not _UNSET:
            self._cache["parent"] = parent
        for key, value in (("ancestors", ancestors), ("children", children), ("descendants", descendants)):
            if value is not None:
                self._cache[key] = value

    def mark_deleted(self) -> None:
        """Treat the record as deleted: unattached, with nothing cached."""
        self._deleted = True
        self._cache.clear()

    def discard_after_rollback(self) -> None:
        """Drop caches; a record whose INSERT was rolled back loses its range."""
        self._cache.clear()
        state = sa_inspect(self._record)
        if not state.has_identity and not state.pending and self.loaded_range() is not None:
            for key in self._range_keys():
                setattr(self._record, key, None)

    def _range_keys(self) -> set[str]:
        model = type(self._record)
        keys = {model.__left_column__, model.__right_column__}
        if model.__root_column__ is not None:
            keys.add(model.__root_column__)
        return keys

    def _is_stale(self) -> bool:
        if self._deleted:
            return False
        state = sa_inspect(self._record)
        return state.has_identity and bool(self._range_keys() & state.unloaded)

    def _is_gone(self) -> bool:
        if self._deleted:
            return True
        state = sa_inspect(self._record)
        return state.was_deleted or state.deleted

    def loaded_range(self) -> NodeRange | None:
        """Range currently held by the record; never triggers a lazy load."""
        if self._is_gone():
            return None
        model = type(self._record)
        values = sa_inspect(self._record).dict
        left = values.get(model.__left_column__)
        right = values.get(model.__right_column__)
        if left is None or right is None:
            return None
        root = values.get(model.__root_column__) if model.__root_column__ is not None else None
        return NodeRange(left, right, root)

    def _peek_id(self) -> Any:
        state = sa_inspect(self._record)
        if state.identity:
            return state.identity[0] if len(state.identity) == 1 else state.identity
        return None

    async def current_range(self) -> NodeRange | None:
        """Range of the record, re-read first if it was expired.

        A row deleted behind the handle's back reads as unattached.
        """
        if self._is_stale():
            try:
                await self.refresh()
            except NotFoundError:
                return None
        return self.loaded_range()

    def _wrap(self, record: T | None) -> NodeHandle[T] | None:
        return self._tree.wrap_node(record) if record is not None else None

    def _wrap_all(self, records: list[T]) -> list[NodeHandle[T]]:
        return [self._tree.wrap_node(r) for r in records]

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def get_first_child(self) -> NodeHandle[T] | None:
        """Child with the smallest left value, or None for a leaf."""
        node = await self.current_range()
        if node is None or node.is_leaf:
            return None
        if "children" in self._cache:
            children = self._cache["children"]
            return children[0] if children else None
        record = await self.store.fetch_one_where(
            *self.store.partition(node.root), self.store.left == node.left + 1
        )
        return self._wrap(record)

    async def get_last_child(self) -> NodeHandle[T] | None:
        """Child with the largest left value, or None for a leaf."""
        node = await self.current_range()
        if node is None or node.is_leaf:
            return None
        if "children" in self._cache:
            children = self._cache["children"]
            return children[-1] if children else None
        record = await self.store.fetch_one_where(
            *self.store.partition(node.root), self.store.right == node.right - 1
        )
        return self._wrap(record)

    async def get_descendants(self, depth: int | None = None) -> list[NodeHandle[T]]:
        """Nodes strictly inside this node's range, in left order.

        Args:
            depth: Number of levels below this node to include
                (None for unlimited, 1 for children only)
        """
        node = await self.current_range()
        if node is None or node.is_leaf or (depth is not None and depth < 1):
            return []
        if depth is None and "descendants" in self._cache:
            return list(self._cache["descendants"])
        if depth == 1 and "children" in self._cache:
            return list(self._cache["children"])

        criteria = self.store.inside(node)
        if depth is not None:
            criteria.append(self.store.depth_below(node) < depth)
        handles = self._wrap_all(await self.store.fetch_rows_where(*criteria))

        if depth is None:
            self._cache["descendants"] = handles
        elif depth == 1:
            self._cache["children"] = handles
        return list(handles)

    async def get_children(self) -> list[NodeHandle[T]]:
        """Direct children, in left order."""
        return await self.get_descendants(1)

    async def get_parent(self) -> NodeHandle[T] | None:
        """The node minimally containing this one, or None for a root."""
        node = await self.current_range()
        if node is None or node.is_root:
            return None
        if "parent" in self._cache:
            return self._cache["parent"]
        record = await self.store.fetch_one_where(
            *self.store.containing(node), order_by=(self.store.left.desc(),)
        )
        parent = self._wrap(record)
        self._cache["parent"] = parent
        return parent

    async def get_ancestors(self) -> list[NodeHandle[T]]:
        """All containing nodes, ordered root first."""
        node = await self.current_range()
        if node is None or node.is_root:
            return []
        if "ancestors" not in self._cache:
            ancestors = self._wrap_all(await self.store.fetch_rows_where(*self.store.containing(node)))
            self._cache["ancestors"] = ancestors
            if ancestors:
                self._cache["parent"] = ancestors[-1]
        return list(self._cache["ancestors"])

    async def get_level(self) -> int:
        """Number of ancestors (0 for a root or an unattached node)."""
        node = await self.current_range()
        if node is None or node.is_root:
            return 0
        if "ancestors" in self._cache:
            return len(self._cache["ancestors"])
        return await self.store.count_where(*self.store.containing(node))

    async def get_path(self, separator: str | None = None, include_self: bool = False) -> str:
        """Join ancestor labels (and optionally this node's) into a path.

        Args:
            separator: Label separator (defaults to the configured path_separator)
            include_self: Append this node's own label
        """
        if separator is None:
            separator = self._tree.settings.path_separator
        labels = [a.record.tree_label for a in await self.get_ancestors()]
        if include_self:
            labels.append(self._record.tree_label)
        return separator.join(labels)

    async def get_number_children(self) -> int:
        node = await self.current_range()
        if node is None or node.is_leaf:
            return 0
        if "children" in self._cache:
            return len(self._cache["children"])
        return await self.store.count_where(
            *self.store.inside(node), self.store.depth_below(node) < 1
        )

    async def get_number_descendants(self) -> int:
        """Derived from the range width; no query unless the range is stale."""
        node = await self.current_range()
        return node.descendant_count if node is not None else 0

    async def get_siblings(self, include_self: bool = False) -> list[NodeHandle[T]]:
        """Nodes sharing this node's parent, in left order."""
        parent = await self.get_parent()
        if parent is None:
            return [self] if include_self and self.loaded_range() is not None else []
        return [c for c in await parent.get_children() if include_self or c is not self]

    async def get_prev_sibling(self) -> NodeHandle[T] | None:
        node = await self.current_range()
        if node is None or node.is_root:
            return None
        record = await self.store.fetch_one_where(
            *self.store.partition(node.root), self.store.right == node.left - 1
        )
        return self._wrap(record)

    async def get_next_sibling(self) -> NodeHandle[T] | None:
        node = await self.current_range()
        if node is None or node.is_root:
            return None
        record = await self.store.fetch_one_where(
            *self.store.partition(node.root), self.store.left == node.right + 1
        )
        return self._wrap(record)

    async def has_prev_sibling(self) -> bool:
        return await self.get_prev_sibling() is not None

    async def has_next_sibling(self) -> bool:
        return await self.get_next_sibling() is not None

    # ------------------------------------------------------------------
    # Predicates (no queries)
    # ------------------------------------------------------------------

    def has_children(self) -> bool:
        rng = self.range
        return rng is not None and not rng.is_leaf

    def has_parent(self) -> bool:
        return self.is_valid_node() and not self.is_root()

    def is_root(self) -> bool:
        rng = self.range
        return rng is not None and rng.is_root

    def is_leaf(self) -> bool:
        rng = self.range
        return rng is not None and rng.is_leaf

    def is_valid_node(self) -> bool:
        """True while the record holds a valid range and is not deleted.

        A handle left stale by a failed mutation is not valid until refreshed.
        """
        if self._is_stale():
            return False
        rng = self.loaded_range()
        return rng is not None and rng.is_valid

    def is_descendant_of(self, other: NodeHandle[T]) -> bool:
        mine, theirs = self.range, other.range
        return mine is not None and theirs is not None and mine.is_descendant_of(theirs)

    def is_ancestor_of(self, other: NodeHandle[T]) -> bool:
        mine, theirs = self.range, other.range
        return mine is not None and theirs is not None and mine.is_ancestor_of(theirs)

    def is_equal_to(self, other: NodeHandle[T]) -> bool:
        """Same record, or the same range in the same partition."""
        if other is self or other.record is self._record:
            return True
        mine, theirs = self.range, other.range
        return mine is not None and mine == theirs

    # ------------------------------------------------------------------
    # Insertion of new nodes
    # ------------------------------------------------------------------

    async def insert_as_parent_of(self, target: NodeHandle[T]) -> None:
        """Insert this unattached node so that it wraps ``target``."""
        operation = "tree.insert_as_parent"
        self._check_target(target, operation)
        async with self._tree.mutation(operation, node=self._peek_id(), target=target.id):
            mine, dest = await self._tree.lock_and_read(self, target)
            self._require_unattached(mine, operation)
            dest = self._require_attached(dest, operation, "target")
            if dest.is_root:
                raise InvalidOperationError(
                    "Cannot insert a node as parent of a root",
                    operation=operation,
                    details={"target": target.id},
                )
            plan = plan_insert_as_parent(dest)
            await self._tree.apply_plan(plan)
            await self._attach(operation, plan.new_range, {dest.root})
        self._tree.log_mutation(operation, self, target)

    async def insert_as_prev_sibling_of(self, target: NodeHandle[T]) -> None:
        await self._insert("tree.insert_as_prev_sibling", target, prev_sibling_position, sibling=True)

    async def insert_as_next_sibling_of(self, target: NodeHandle[T]) -> None:
        await self._insert("tree.insert_as_next_sibling", target, next_sibling_position, sibling=True)

    async def insert_as_first_child_of(self, target: NodeHandle[T]) -> None:
        await self._insert("tree.insert_as_first_child", target, first_child_position)

    async def insert_as_last_child_of(self, target: NodeHandle[T]) -> None:
        await self._insert("tree.insert_as_last_child", target, last_child_position)

    async def _insert(
        self,
        operation: str,
        target: NodeHandle[T],
        position: Callable[[NodeRange], int],
        *,
        sibling: bool = False,
    ) -> None:
        self._check_target(target, operation)
        async with self._tree.mutation(operation, node=self._peek_id(), target=target.id):
            mine, dest = await self._tree.lock_and_read(self, target)
            self._require_unattached(mine, operation)
            dest = self._require_attached(dest, operation, "target")
            if sibling:
                self._require_not_root(dest, operation, target)
            plan = plan_insert(position(dest), dest.root)
            await self._tree.apply_plan(plan)
            await self._attach(operation, plan.new_range, {dest.root})
        self._tree.log_mutation(operation, self, target)

    async def _attach(self, operation: str, new_range: NodeRange | None, roots: set[Any]) -> None:
        assert new_range is not None
        model = type(self._record)
        setattr(self._record, model.__left_column__, new_range.left)
        setattr(self._record, model.__right_column__, new_range.right)
        if model.__root_column__ is not None:
            setattr(self._record, model.__root_column__, new_range.root)
        await self.store.insert_row(self._record)
        await self._tree.verify_partitions(operation, roots)

    # ------------------------------------------------------------------
    # Relocation of attached nodes
    # ------------------------------------------------------------------

    async def move_as_prev_sibling_of(self, target: NodeHandle[T]) -> None:
        await self._move("tree.move_as_prev_sibling", target, prev_sibling_position, sibling=True)

    async def move_as_next_sibling_of(self, target: NodeHandle[T]) -> None:
        await self._move("tree.move_as_next_sibling", target, next_sibling_position, sibling=True)

    async def move_as_first_child_of(self, target: NodeHandle[T]) -> None:
        await self._move("tree.move_as_first_child", target, first_child_position)

    async def move_as_last_child_of(self, target: NodeHandle[T]) -> None:
        await self._move("tree.move_as_last_child", target, last_child_position)

    async def _move(
        self,
        operation: str,
        target: NodeHandle[T],
        position: Callable[[NodeRange], int],
        *,
        sibling: bool = False,
    ) -> None:
        self._check_target(target, operation)
        async with self._tree.mutation(operation, node=self._peek_id(), target=target.id):
            mine, dest = await self._tree.lock_and_read(self, target)
            node = self._require_attached(mine, operation, "node")
            dest = self._require_attached(dest, operation, "target")
            if dest.is_descendant_of(node):
                raise InvalidOperationError(
                    "Cannot move a node relative to its own descendant",
                    operation=operation,
                    details={"node": self.id, "target": target.id},
                )
            if sibling:
                self._require_not_root(dest, operation, target)

            dest_left = position(dest)
            if node.root == dest.root:
                plan = plan_move(node, dest_left)
            else:
                plan = plan_transfer(node, dest_left, dest.root)
            if plan.is_noop:
                return
            await self._tree.apply_plan(plan)
            await self._tree.verify_partitions(operation, {node.root, dest.root})
        self._tree.log_mutation(operation, self, target)

    async def make_root(self, new_root_id: Any = None) -> None:
        """Detach this node's subtree into a new root partition.

        Args:
            new_root_id: Identifier of the new partition (next free id if None)

        Raises:
            InvalidOperationError: If the model holds a single tree, the node is
                unattached, or ``new_root_id`` is already in use
        """
        operation = "tree.make_root"
        if not self.store.has_many_roots:
            raise InvalidOperationError(
                f"{type(self._record).__name__} does not support multiple roots",
                operation=operation,
            )
        async with self._tree.mutation(operation, node=self._peek_id()):
            (mine,) = await self._tree.lock_and_read(self)
            node = self._require_attached(mine, operation, "node")
            if node.is_root:
                return
            if new_root_id is None:
                new_root_id = await self.store.next_root_id()
            elif await self.store.count_where(*self.store.partition(new_root_id)):
                raise InvalidOperationError(
                    "Root id is already in use",
                    operation=operation,
                    details={"root": new_root_id},
                )
            plan = plan_make_root(node, new_root_id)
            await self._tree.apply_plan(plan)
            await self._tree.verify_partitions(operation, {node.root, new_root_id})
        self._tree.log_mutation(operation, self)

    async def add_child(self, node: NodeHandle[T] | T) -> NodeHandle[T]:
        """Insert (or move) ``node`` as the last child of this node.

        Returns:
            The handle of the added child (``self`` when passed itself)
        """
        handle = node if isinstance(node, NodeHandle) else self._tree.wrap_node(node)
        if handle is self:
            return self
        if await handle.current_range() is None:
            await handle.insert_as_last_child_of(self)
        else:
            await handle.move_as_last_child_of(self)
        return handle

    async def delete(self) -> None:
        """Delete this node and its entire subtree."""
        operation = "tree.delete"
        async with self._tree.mutation(operation, node=self._peek_id()):
            (mine,) = await self._tree.lock_and_read(self)
            node = self._require_attached(mine, operation, "node")
            subtree = self.store.inside(node, include_self=True)
            doomed = self._tree.handles_for_ids(await self.store.fetch_ids_where(*subtree))
            deleted = await self.store.delete_rows(*subtree)
            plan = plan_delete(node)
            await self._tree.apply_plan(plan)
            await self._tree.verify_partitions(operation, {node.root})
        self._tree.forget(doomed | {self})
        self._tree.log_mutation(operation, self, deleted=deleted)

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _check_target(self, target: NodeHandle[T], operation: str) -> None:
        if target.tree is not self._tree:
            raise InvalidOperationError(
                "Target node belongs to a different tree manager",
                operation=operation,
            )
        if target is self:
            raise InvalidOperationError(
                "A node cannot be positioned relative to itself",
                operation=operation,
                details={"node": self._peek_id()},
            )

    def _require_unattached(self, rng: NodeRange | None, operation: str) -> None:
        if self._deleted:
            raise InvalidOperationError("Node has been deleted", operation=operation)
        if rng is not None:
            raise InvalidOperationError(
                "Node is already attached to a tree; use a move operation",
                operation=operation,
                details={"node": self._peek_id(), "left": rng.left, "right": rng.right},
            )

    def _require_attached(self, rng: NodeRange | None, operation: str, role: str) -> NodeRange:
        if rng is None or not rng.is_valid:
            raise InvalidOperationError(
                f"The {role} is not attached to a tree",
                operation=operation,
            )
        return rng

    def _require_not_root(self, dest: NodeRange, operation: str, target: NodeHandle[T]) -> None:
        if dest.is_root:
            raise InvalidOperationError(
                "Cannot position a node as a sibling of a root",
                operation=operation,
                details={"target": target.id},
            )


__all__ = ["NodeHandle"]
