"""Async retry with exponential backoff.

Structural mutations that fail with ``ConcurrencyConflictError`` can be
retried from a fresh read:

    @retry_on_conflict()
    async def move_under(session, node_id, parent_id):
        tree = TreeManager(Category, session)
        node = await tree.get_node_or_raise(node_id)
        parent = await tree.get_node_or_raise(parent_id)
        await node.move_as_last_child_of(parent)
"""

from __future__ import annotations

from nested_tree.utils.retry.decorator import retry, retry_on_conflict
from nested_tree.utils.retry.exceptions import RetryError, RetryStatistics
from nested_tree.utils.retry.strategies import RetryStrategy

__all__ = ["RetryError", "RetryStatistics", "RetryStrategy", "retry", "retry_on_conflict"]
