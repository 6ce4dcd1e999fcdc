"""Database engine and session helpers."""

from nested_tree.infra.database.session import (
    close_database,
    create_engine_from_settings,
    create_schema,
    create_session_factory,
    init_database,
    install_sqlite_savepoint_fix,
    session_scope,
)

__all__ = [
    "close_database",
    "create_engine_from_settings",
    "create_schema",
    "create_session_factory",
    "init_database",
    "install_sqlite_savepoint_fix",
    "session_scope",
]
