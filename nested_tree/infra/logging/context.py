"""Context management for structured logging.

Provides automatic context injection into log records using contextvars,
so that every record emitted while a tree mutation runs carries the
entity, operation and root partition it belongs to, without passing them
to each logging call.

This approach is:
- Async-safe: Works correctly across async/await boundaries
- Implicit: No need to modify existing logging calls
- Compatible: Works with standard Python logging
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


def set_log_context(**kwargs: Any) -> None:
    """Set logging context for the current async task/thread.

    Args:
        **kwargs: Key-value pairs to add to logging context.

    Example:
        ```python
        set_log_context(entity="Category")
        logger.info("Loading tree")  # Includes entity="Category"
        ```
    """
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def get_log_context() -> dict[str, Any]:
    """Get a copy of the current logging context."""
    return _log_context.get().copy()


def clear_log_context() -> None:
    """Clear all logging context for the current async task/thread."""
    _log_context.set({})


@contextmanager
def log_context(**kwargs: Any) -> Iterator[dict[str, Any]]:
    """Temporarily extend the logging context.

    The previous context is restored on exit, including when the block
    raises.

    Example:
        ```python
        with log_context(operation="tree.move", root=3):
            logger.info("Renumbering")  # Includes operation and root
        ```
    """
    current = _log_context.get().copy()
    current.update(kwargs)
    token = _log_context.set(current)
    try:
        yield current
    finally:
        _log_context.reset(token)


class ContextInjectingFilter(logging.Filter):
    """Logging filter that injects the contextvars context into records.

    Applied to the root logger by ``configure_logging`` so that all loggers
    benefit from it.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        for key, value in context.items():
            # Don't overwrite existing attributes
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


__all__ = [
    "ContextInjectingFilter",
    "clear_log_context",
    "get_log_context",
    "log_context",
    "set_log_context",
]
