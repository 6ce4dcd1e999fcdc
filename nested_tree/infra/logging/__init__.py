"""Logging infrastructure.

Provides structured logging for the tree core with:
- JSONL or text output configured through dictConfig
- Automatic context injection (entity, operation, root partition)
- Lazy evaluation for expensive debug messages

Basic usage:
    from nested_tree.infra.logging import setup_logging, log_context
    import logging

    setup_logging()
    logger = logging.getLogger(__name__)

    with log_context(entity="Category", operation="tree.move"):
        logger.info("Moving node")  # Includes entity and operation

    # Lazy evaluation for expensive operations
    from nested_tree.infra.logging import get_lazy_logger

    lazy_logger = get_lazy_logger(__name__)
    lazy_logger.debug(lambda: f"Ranges: {dump_ranges()}")  # Only runs if DEBUG enabled
"""

from nested_tree.infra.logging.config import configure_logging, setup_logging
from nested_tree.infra.logging.context import (
    ContextInjectingFilter,
    clear_log_context,
    get_log_context,
    log_context,
    set_log_context,
)
from nested_tree.infra.logging.formatters import JSONFormatter
from nested_tree.infra.logging.lazy import LazyLoggerAdapter, get_lazy_logger

__all__ = [
    "ContextInjectingFilter",
    "JSONFormatter",
    "LazyLoggerAdapter",
    "clear_log_context",
    "configure_logging",
    "get_lazy_logger",
    "get_log_context",
    "log_context",
    "set_log_context",
    "setup_logging",
]
