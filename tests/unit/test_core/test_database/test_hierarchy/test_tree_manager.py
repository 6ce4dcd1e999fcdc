"""Tests for TreeManager: identity map, retrieval and root creation."""

from __future__ import annotations

import pytest

from conftest import Category, Folder
from nested_tree.core.database import InvalidOperationError, NotFoundError, TreeManager
from nested_tree.core.database.hierarchy.renumber import NodeRange


def names(handles) -> list[str]:
    return [h.record.name for h in handles]


# ============================================================================
# Identity map
# ============================================================================


def test_wrap_node_returns_same_handle_for_same_record(tree):
    record = Category(name="X")

    assert tree.wrap_node(record) is tree.wrap_node(record)
    assert len(tree) == 1


def test_wrap_node_distinguishes_equal_records(tree):
    first = Category(name="X", lft=1, rgt=2)
    second = Category(name="X", lft=1, rgt=2)

    assert tree.wrap_node(first) is not tree.wrap_node(second)
    assert len(tree) == 2


def test_wrap_node_rejects_other_models(tree):
    with pytest.raises(TypeError):
        tree.wrap_node(Folder(name="nope"))


async def test_fetch_returns_cached_handles(sample, tree):
    root = await tree.fetch_root()
    node = await tree.get_node(sample["D"].id)

    assert root is sample["R"]
    assert node is sample["D"]


async def test_reset_drops_handles_but_keeps_data(sample, tree):
    tree.reset()

    assert len(tree) == 0
    root = await tree.fetch_root()
    assert root is not sample["R"]
    assert root.record is sample["R"].record
    assert await root.get_number_descendants() == 4


def test_separate_managers_keep_separate_maps(session, tree):
    other = TreeManager(Category, session, settings=tree.settings)
    record = Category(name="X")

    assert tree.wrap_node(record) is not other.wrap_node(record)


# ============================================================================
# Retrieval
# ============================================================================


async def test_fetch_root_of_empty_tree(tree):
    assert await tree.fetch_root() is None
    assert await tree.fetch_tree() is None
    assert await tree.fetch_tree_as_array() == []


async def test_fetch_tree_as_array_in_left_order(sample, tree):
    nodes = await tree.fetch_tree_as_array()

    assert names(nodes) == ["R", "A", "B", "D", "C"]
    assert nodes[3] is sample["D"]


async def test_fetch_tree_with_depth(sample, tree):
    assert names(await tree.fetch_tree_as_array(depth=1)) == ["R", "A", "B", "C"]
    assert names(await tree.fetch_tree_as_array(depth=0)) == ["R"]


async def test_fetch_tree_prepopulates_navigation(sample, tree, session):
    root = await tree.fetch_tree()
    d = sample["D"]

    # Served from the caches filled by fetch_tree; no further statements needed
    assert "children" in root._cache
    assert names(await root.get_children()) == ["A", "B", "C"]
    assert names(await root.get_descendants()) == ["A", "B", "D", "C"]
    assert names(await d.get_ancestors()) == ["R", "B"]
    assert await d.get_parent() is sample["B"]
    assert await d.get_level() == 2


async def test_fetch_tree_with_depth_does_not_cache_incomplete_children(sample, tree):
    await tree.fetch_tree_as_array(depth=1)

    assert "children" in sample["R"]._cache
    assert "children" not in sample["B"]._cache
    assert names(await sample["B"].get_children()) == ["D"]


async def test_fetch_branch(sample, tree):
    nodes = await tree.fetch_branch_as_array(sample["B"].id)

    assert names(nodes) == ["B", "D"]
    assert await tree.fetch_branch(sample["B"].id) is sample["B"]
    assert "ancestors" not in sample["B"]._cache
    assert sample["D"]._cache["parent"] is sample["B"]


async def test_primed_cache_answers_only_what_it_was_given(sample, tree):
    b = sample["B"]
    b.prime_cache(children=[sample["D"]])

    assert "parent" not in b._cache
    assert await b.get_children() == [sample["D"]]
    assert await b.get_parent() is sample["R"]
    assert b.loaded_range() == NodeRange(4, 7)


async def test_fetch_branch_with_depth(sample, tree):
    assert names(await tree.fetch_branch_as_array(sample["R"].id, depth=1)) == ["R", "A", "B", "C"]


async def test_fetch_missing_branch(sample, tree):
    assert await tree.fetch_branch_as_array(9999) == []
    assert await tree.fetch_branch(9999) is None


async def test_get_node_or_raise(sample, tree):
    assert await tree.get_node_or_raise(sample["A"].id) is sample["A"]

    with pytest.raises(NotFoundError) as exc_info:
        await tree.get_node_or_raise(9999)

    assert exc_info.value.model_name == "Category"
    assert exc_info.value.identifier == {"id": 9999}


async def test_fetch_roots_single_tree(sample, tree):
    assert await tree.fetch_roots() == [sample["R"]]


# ============================================================================
# Root creation
# ============================================================================


async def test_create_root(tree, assert_valid):
    root = await tree.create_root(Category(name="R"))

    assert (root.left, root.right) == (1, 2)
    assert root.is_root()
    assert root.is_leaf()
    assert await tree.fetch_root() is root
    await assert_valid(tree)


async def test_second_root_in_single_tree_is_rejected(sample, tree):
    with pytest.raises(InvalidOperationError) as exc_info:
        await tree.create_root(Category(name="R2"))

    assert exc_info.value.operation == "tree.create_root"


async def test_root_id_in_single_tree_is_rejected(tree):
    with pytest.raises(InvalidOperationError):
        await tree.create_root(Category(name="R"), root_id=5)


async def test_create_root_with_attached_record_is_rejected(sample, tree):
    with pytest.raises(InvalidOperationError):
        await tree.create_root(sample["A"].record)


# ============================================================================
# Verification
# ============================================================================


async def test_verify_reports_corruption(sample, tree, session):
    sample["C"].record.rgt = 12
    await session.flush()

    issues = await tree.verify()

    assert issues
    assert any("contiguous" in issue or "overlaps" in issue for issue in issues)
