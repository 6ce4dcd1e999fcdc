"""Database and tree operation exceptions.

Custom exceptions for repository and nested set operations that give
better error messages and typing than raw SQLAlchemy exceptions.

Hierarchy:
    RepositoryError
    ├── NotFoundError
    └── TreeError
        ├── InvalidOperationError
        ├── ConcurrencyConflictError
        ├── StorageFailureError
        └── TreeIntegrityError
"""
from __future__ import annotations

from typing import Any


class RepositoryError(Exception):
    """Base exception for repository operations.

    Raised when a repository operation fails due to programming
    errors, configuration issues, or unexpected states.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize repository error.

        Args:
            message: Error description
            details: Additional context about the error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Format error message with details."""
        if self.details:
            details_str = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class NotFoundError(RepositoryError):
    """Entity not found in database.

    Navigation never raises this; it is reserved for explicit
    ``*_or_raise`` lookups where absence is an error for the caller.

    Attributes:
        model_name: Name of the model class that wasn't found
        identifier: The key/value that was searched for
    """

    def __init__(self, model_name: str, identifier: dict[str, Any]):
        """Initialize not found error.

        Args:
            model_name: Name of the model (e.g., "Category")
            identifier: Key-value pairs used in the search (e.g., {"id": 123})
        """
        self.model_name = model_name
        self.identifier = identifier

        id_str = ", ".join(f"{k}={v!r}" for k, v in identifier.items())
        message = f"{model_name} not found with {id_str}"

        super().__init__(message, details={"model": model_name, **identifier})

    def __repr__(self) -> str:
        """Repr for debugging."""
        return f"NotFoundError(model={self.model_name!r}, identifier={self.identifier!r})"


class TreeError(RepositoryError):
    """Base exception for structural tree operations.

    Attributes:
        operation: Name of the attempted operation (e.g. "tree.move")
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.operation = operation
        merged = dict(details or {})
        if operation:
            merged.setdefault("operation", operation)
        super().__init__(message, details=merged)


class InvalidOperationError(TreeError):
    """Structural mutation would violate tree semantics.

    Raised before any write is issued, e.g. when inserting a node that is
    already attached, moving a node under its own descendant, or positioning
    a node as a sibling of a root.
    """


class ConcurrencyConflictError(TreeError):
    """The backing transaction could not be serialized.

    Callers may retry the whole mutation from a fresh read. See
    ``nested_tree.utils.retry.retry_on_conflict``.
    """


class StorageFailureError(TreeError):
    """The storage backend failed while applying a tree operation.

    The original exception is available as ``cause`` (and ``__cause__``).
    """

    def __init__(
        self,
        operation: str,
        cause: BaseException,
        details: dict[str, Any] | None = None,
    ):
        self.cause = cause
        message = f"Storage failure during {operation}: {cause.__class__.__name__}: {cause}"
        super().__init__(message, operation=operation, details=details)


class TreeIntegrityError(TreeError):
    """Range invariants do not hold for a partition.

    Attributes:
        issues: Human readable descriptions of each violation
    """

    def __init__(self, issues: list[str], operation: str | None = None, root: Any = None):
        self.issues = issues
        details: dict[str, Any] = {"issues": len(issues)}
        if root is not None:
            details["root"] = root
        super().__init__(
            f"Nested set invariants violated: {issues[0] if issues else 'unknown'}",
            operation=operation,
            details=details,
        )


__all__ = [
    "ConcurrencyConflictError",
    "InvalidOperationError",
    "NotFoundError",
    "RepositoryError",
    "StorageFailureError",
    "TreeError",
    "TreeIntegrityError",
]
