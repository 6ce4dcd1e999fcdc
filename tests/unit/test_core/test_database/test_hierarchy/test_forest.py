"""Tests for models holding several trees partitioned by root_id."""

from __future__ import annotations

import pytest

from conftest import Category, Folder
from nested_tree.core.database import InvalidOperationError


def names(handles) -> list[str]:
    return [h.record.name for h in handles]


@pytest.fixture
async def two_trees(forest):
    """docs(1): api, guides -> intro ; media(2): images"""
    docs = await forest.create_root(Folder(name="docs"))
    api = await docs.add_child(Folder(name="api"))
    guides = await docs.add_child(Folder(name="guides"))
    intro = await guides.add_child(Folder(name="intro"))
    media = await forest.create_root(Folder(name="media"))
    images = await media.add_child(Folder(name="images"))
    return {
        "docs": docs,
        "api": api,
        "guides": guides,
        "intro": intro,
        "media": media,
        "images": images,
    }


# ============================================================================
# Root creation
# ============================================================================


async def test_create_root_assigns_next_root_id(two_trees):
    assert two_trees["docs"].root_value == 1
    assert two_trees["media"].root_value == 2
    assert (two_trees["media"].left, two_trees["media"].right) == (1, 4)


async def test_create_root_with_explicit_root_id(forest):
    root = await forest.create_root(Folder(name="x"), root_id=42)

    assert root.root_value == 42
    assert await forest.fetch_root(42) is root


async def test_create_root_uses_record_root_value(forest):
    root = await forest.create_root(Folder(name="x", root_id=7))

    assert root.root_value == 7


async def test_create_root_with_used_root_id_is_rejected(two_trees, forest):
    with pytest.raises(InvalidOperationError):
        await forest.create_root(Folder(name="dup"), root_id=1)


async def test_fetch_roots_ordered_by_root_id(two_trees, forest):
    assert names(await forest.fetch_roots()) == ["docs", "media"]


async def test_fetch_root_defaults_to_lowest_root_id(two_trees, forest):
    assert await forest.fetch_root() is two_trees["docs"]
    assert await forest.fetch_root(2) is two_trees["media"]
    assert await forest.fetch_root(99) is None


async def test_fetch_tree_per_partition(two_trees, forest):
    assert names(await forest.fetch_tree_as_array(1)) == ["docs", "api", "guides", "intro"]
    assert names(await forest.fetch_tree_as_array(2)) == ["media", "images"]


# ============================================================================
# Isolation
# ============================================================================


async def test_mutations_do_not_touch_other_partitions(two_trees, forest, ranges, assert_valid):
    before = await ranges(forest, 2)

    await two_trees["api"].move_as_last_child_of(two_trees["intro"])
    new = forest.wrap_node(Folder(name="howto"))
    await new.insert_as_first_child_of(two_trees["guides"])
    await two_trees["api"].delete()

    assert await ranges(forest, 2) == before
    await assert_valid(forest, 1)
    await assert_valid(forest, 2)


async def test_navigation_stays_in_partition(two_trees):
    assert names(await two_trees["docs"].get_descendants()) == ["api", "guides", "intro"]
    assert names(await two_trees["images"].get_ancestors()) == ["media"]
    assert await two_trees["media"].get_prev_sibling() is None


def test_predicates_compare_partitions(two_trees):
    assert not two_trees["images"].is_descendant_of(two_trees["docs"])
    assert not two_trees["docs"].is_equal_to(two_trees["media"])


async def test_inserted_child_inherits_partition(two_trees):
    child = await two_trees["images"].add_child(Folder(name="png"))

    assert child.root_value == 2
    assert child.record.root_id == 2


# ============================================================================
# Moves across partitions
# ============================================================================


async def test_move_subtree_to_other_partition(two_trees, forest, ranges, assert_valid):
    guides = two_trees["guides"]

    await guides.move_as_last_child_of(two_trees["images"])

    assert guides.root_value == 2
    assert two_trees["intro"].root_value == 2
    assert names(await two_trees["media"].get_descendants()) == ["images", "guides", "intro"]
    assert names(await two_trees["intro"].get_ancestors()) == ["media", "images", "guides"]
    assert await ranges(forest, 1) == {"docs": (1, 4), "api": (2, 3)}
    await assert_valid(forest, 1)
    await assert_valid(forest, 2)


async def test_move_as_sibling_in_other_partition(two_trees, forest, assert_valid):
    await two_trees["api"].move_as_prev_sibling_of(two_trees["images"])

    assert names(await two_trees["media"].get_children()) == ["api", "images"]
    assert names(await two_trees["docs"].get_children()) == ["guides"]
    await assert_valid(forest, 1)
    await assert_valid(forest, 2)


async def test_move_whole_tree_under_other_root(two_trees, forest, assert_valid):
    await two_trees["media"].move_as_last_child_of(two_trees["docs"])

    assert await forest.fetch_root(2) is None
    assert names(await two_trees["docs"].get_children()) == ["api", "guides", "media"]
    await assert_valid(forest, 1)


# ============================================================================
# make_root
# ============================================================================


async def test_make_root_detaches_subtree(two_trees, forest, ranges, assert_valid):
    guides = two_trees["guides"]

    await guides.make_root()

    assert guides.is_root()
    assert guides.root_value == 3
    assert (guides.left, guides.right) == (1, 4)
    assert await two_trees["intro"].get_parent() is guides
    assert await ranges(forest, 1) == {"docs": (1, 4), "api": (2, 3)}
    assert names(await forest.fetch_roots()) == ["docs", "media", "guides"]
    for root_id in (1, 2, 3):
        await assert_valid(forest, root_id)


async def test_make_root_with_explicit_id(two_trees, forest):
    await two_trees["intro"].make_root(10)

    assert await forest.fetch_root(10) is two_trees["intro"]


async def test_make_root_with_used_id_is_rejected(two_trees):
    with pytest.raises(InvalidOperationError):
        await two_trees["intro"].make_root(2)


async def test_make_root_on_root_is_noop(two_trees, forest, ranges):
    before = await ranges(forest, 1)

    await two_trees["docs"].make_root()

    assert await ranges(forest, 1) == before
    assert two_trees["docs"].root_value == 1


async def test_make_root_on_single_tree_is_rejected(sample):
    with pytest.raises(InvalidOperationError):
        await sample["B"].make_root()


async def test_make_root_on_unattached_node_is_rejected(forest):
    loose = forest.wrap_node(Folder(name="loose"))

    with pytest.raises(InvalidOperationError):
        await loose.make_root()


async def test_stores_report_partitioning(tree, forest):
    assert forest.store.has_many_roots
    assert not tree.store.has_many_roots
