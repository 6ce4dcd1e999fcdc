"""Range arithmetic and renumbering plans for nested sets.

Every structural mutation of a nested set boils down to a short, ordered
list of bulk range adjustments applied to one or more root partitions:

    - GapShift: add ``delta`` to every ``lft``/``rgt`` value ``>= first``.
      A positive delta opens a gap, a negative delta closes one.
    - SubtreeShift: add ``delta`` to both values of every row whose range
      lies inside ``[left, right]``, optionally moving those rows to a
      different partition.

This module is pure Python. It computes *what* to adjust; the store turns
each adjustment into an ``UPDATE`` statement. ``apply_plan`` mirrors the SQL
semantics in memory, and ``check_ranges`` validates the result.

Numbering is unit-gap: a partition holding ``n`` nodes uses exactly the
values ``1..2n``. Adjacent siblings therefore satisfy
``prev.right + 1 == next.left``, which sibling navigation relies on.

Example:
    >>> parent = NodeRange(1, 4)
    >>> plan = plan_insert(last_child_position(parent))
    >>> plan.new_range
    NodeRange(left=4, right=5, root=None)
    >>> apply_plan({"p": parent, "c": NodeRange(2, 3)}, plan)
    {'p': NodeRange(left=1, right=6, root=None), 'c': NodeRange(left=2, right=3, root=None)}
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Hashable, Iterable, Iterator, Mapping

ROOT_LEFT = 1


@dataclass(slots=True, frozen=True)
class NodeRange:
    """The ``(left, right)`` pair of a node plus its root partition."""

    left: int
    right: int
    root: Any = None

    @property
    def width(self) -> int:
        """Number of range values occupied by the node and its subtree."""
        return self.right - self.left + 1

    @property
    def descendant_count(self) -> int:
        return (self.right - self.left - 1) // 2

    @property
    def is_leaf(self) -> bool:
        return self.right - self.left == 1

    @property
    def is_root(self) -> bool:
        return self.left == ROOT_LEFT

    @property
    def is_valid(self) -> bool:
        return self.left < self.right

    def same_partition(self, other: NodeRange) -> bool:
        return self.root == other.root

    def contains(self, other: NodeRange) -> bool:
        """True if ``other`` lies strictly inside this range."""
        return (
            self.same_partition(other)
            and self.left < other.left
            and other.right < self.right
        )

    def is_ancestor_of(self, other: NodeRange) -> bool:
        return self.contains(other)

    def is_descendant_of(self, other: NodeRange) -> bool:
        return other.contains(self)

    def overlaps(self, other: NodeRange) -> bool:
        """True if the ranges partially overlap (neither nested nor disjoint)."""
        if not self.same_partition(other):
            return False
        return (
            self.left < other.left <= self.right < other.right
            or other.left < self.left <= other.right < self.right
        )

    def shifted(self, delta: int) -> NodeRange:
        return replace(self, left=self.left + delta, right=self.right + delta)


@dataclass(slots=True, frozen=True)
class GapShift:
    """Shift every endpoint ``>= first`` by ``delta`` within a partition."""

    first: int
    delta: int

    def apply_to(self, node: NodeRange) -> NodeRange:
        left = node.left + self.delta if node.left >= self.first else node.left
        right = node.right + self.delta if node.right >= self.first else node.right
        return replace(node, left=left, right=right)


@dataclass(slots=True, frozen=True)
class SubtreeShift:
    """Shift every range inside ``[left, right]`` by ``delta``.

    When ``reassign_root`` is set the affected rows also move to
    ``new_root``.
    """

    left: int
    right: int
    delta: int
    new_root: Any = None
    reassign_root: bool = False

    def matches(self, node: NodeRange) -> bool:
        return self.left <= node.left and node.right <= self.right

    def apply_to(self, node: NodeRange) -> NodeRange:
        if not self.matches(node):
            return node
        moved = node.shifted(self.delta)
        if self.reassign_root:
            moved = replace(moved, root=self.new_root)
        return moved


type Adjustment = GapShift | SubtreeShift


@dataclass(slots=True, frozen=True)
class RenumberPlan:
    """Ordered adjustments for one structural mutation.

    Attributes:
        steps: ``(root, adjustment)`` pairs, applied in order
        new_range: Range of the mutated node afterwards (None for deletes)
    """

    steps: tuple[tuple[Any, Adjustment], ...]
    new_range: NodeRange | None

    @property
    def is_noop(self) -> bool:
        return not self.steps

    @property
    def roots(self) -> set[Any]:
        return {root for root, _ in self.steps}

    def batches(self) -> Iterator[tuple[Any, list[Adjustment]]]:
        """Group consecutive steps that target the same partition."""
        current_root: Any = None
        batch: list[Adjustment] = []
        for root, adjustment in self.steps:
            if batch and root != current_root:
                yield current_root, batch
                batch = []
            current_root = root
            batch.append(adjustment)
        if batch:
            yield current_root, batch


# ============================================================================
# Target positions
# ============================================================================


def first_child_position(target: NodeRange) -> int:
    return target.left + 1


def last_child_position(target: NodeRange) -> int:
    return target.right


def prev_sibling_position(target: NodeRange) -> int:
    return target.left


def next_sibling_position(target: NodeRange) -> int:
    return target.right + 1


# ============================================================================
# Plans
# ============================================================================


def plan_insert(dest_left: int, root: Any = None) -> RenumberPlan:
    """Open a two-wide gap at ``dest_left`` for a new leaf."""
    return RenumberPlan(
        steps=((root, GapShift(dest_left, 2)),),
        new_range=NodeRange(dest_left, dest_left + 1, root),
    )


def plan_insert_as_parent(target: NodeRange) -> RenumberPlan:
    """Wrap ``target`` in a new node taking over its position.

    Everything right of the target moves by two, the target subtree moves
    by one, and the new node spans ``target.left .. target.right + 2``.
    """
    return RenumberPlan(
        steps=(
            (target.root, GapShift(target.right + 1, 2)),
            (target.root, SubtreeShift(target.left, target.right, 1)),
        ),
        new_range=NodeRange(target.left, target.right + 2, target.root),
    )


def plan_move(node: NodeRange, dest_left: int) -> RenumberPlan:
    """Relocate a subtree inside its own partition.

    The subtree is parked in negative space so that no intermediate state
    overlaps live ranges, the vacated gap is closed, a gap is opened at the
    (adjusted) destination, and the subtree is shifted into it.

    Raises:
        ValueError: If ``dest_left`` falls inside the subtree itself
    """
    if node.left < dest_left <= node.right:
        msg = f"Destination {dest_left} lies inside {node}"
        raise ValueError(msg)

    width = node.width
    dest = dest_left - width if dest_left > node.right else dest_left
    if dest == node.left:
        return RenumberPlan(steps=(), new_range=node)

    park = -(node.right + 1)
    parked_left = node.left + park
    root = node.root
    return RenumberPlan(
        steps=(
            (root, SubtreeShift(node.left, node.right, park)),
            (root, GapShift(node.right + 1, -width)),
            (root, GapShift(dest, width)),
            (root, SubtreeShift(parked_left, -1, dest - parked_left)),
        ),
        new_range=NodeRange(dest, dest + width - 1, root),
    )


def plan_transfer(node: NodeRange, dest_left: int, dest_root: Any) -> RenumberPlan:
    """Relocate a subtree into another root partition."""
    width = node.width
    return RenumberPlan(
        steps=(
            (dest_root, GapShift(dest_left, width)),
            (
                node.root,
                SubtreeShift(
                    node.left,
                    node.right,
                    dest_left - node.left,
                    new_root=dest_root,
                    reassign_root=True,
                ),
            ),
            (node.root, GapShift(node.right + 1, -width)),
        ),
        new_range=NodeRange(dest_left, dest_left + width - 1, dest_root),
    )


def plan_make_root(node: NodeRange, new_root: Any) -> RenumberPlan:
    """Detach a subtree into a fresh partition numbered from 1."""
    return RenumberPlan(
        steps=(
            (
                node.root,
                SubtreeShift(
                    node.left,
                    node.right,
                    ROOT_LEFT - node.left,
                    new_root=new_root,
                    reassign_root=True,
                ),
            ),
            (node.root, GapShift(node.right + 1, -node.width)),
        ),
        new_range=NodeRange(ROOT_LEFT, node.width, new_root),
    )


def plan_delete(node: NodeRange) -> RenumberPlan:
    """Close the gap left behind once the subtree rows are removed."""
    return RenumberPlan(
        steps=((node.root, GapShift(node.right + 1, -node.width)),),
        new_range=None,
    )


# ============================================================================
# In-memory application and verification
# ============================================================================


def apply_plan[K: Hashable](
    ranges: Mapping[K, NodeRange],
    plan: RenumberPlan,
) -> dict[K, NodeRange]:
    """Apply ``plan`` to a snapshot of ranges, as the store would in SQL."""
    result = dict(ranges)
    for root, adjustment in plan.steps:
        for key, node in result.items():
            if node.root == root:
                result[key] = adjustment.apply_to(node)
    return result


def check_ranges(ranges: Iterable[NodeRange], *, contiguous: bool = True) -> list[str]:
    """Validate nested set invariants, partition by partition.

    Args:
        ranges: Ranges of every node to check
        contiguous: Also require unit-gap numbering (values exactly 1..2n
            and a single top-level node per partition)

    Returns:
        Descriptions of every violation found (empty when consistent)
    """
    partitions: dict[Any, list[NodeRange]] = defaultdict(list)
    for node in ranges:
        partitions[node.root].append(node)

    issues: list[str] = []
    for root, nodes in partitions.items():
        label = f"partition {root!r}" if root is not None else "tree"
        nodes.sort(key=lambda n: n.left)

        endpoints: list[int] = []
        for node in nodes:
            if not node.is_valid:
                issues.append(f"{label}: {node} has left >= right")
            endpoints.extend((node.left, node.right))
        if len(set(endpoints)) != len(endpoints):
            issues.append(f"{label}: duplicate range endpoints")

        stack: list[NodeRange] = []
        top_level = 0
        for node in nodes:
            while stack and stack[-1].right < node.left:
                stack.pop()
            if stack and stack[-1].right < node.right:
                issues.append(f"{label}: {stack[-1]} partially overlaps {node}")
            if not stack:
                top_level += 1
            stack.append(node)

        if contiguous:
            if sorted(endpoints) != list(range(1, 2 * len(nodes) + 1)):
                issues.append(f"{label}: range values are not contiguous 1..{2 * len(nodes)}")
            if top_level != 1:
                issues.append(f"{label}: expected exactly one root, found {top_level}")

    return issues


__all__ = [
    "ROOT_LEFT",
    "Adjustment",
    "GapShift",
    "NodeRange",
    "RenumberPlan",
    "SubtreeShift",
    "apply_plan",
    "check_ranges",
    "first_child_position",
    "last_child_position",
    "next_sibling_position",
    "plan_delete",
    "plan_insert",
    "plan_insert_as_parent",
    "plan_make_root",
    "plan_move",
    "plan_transfer",
    "prev_sibling_position",
]
