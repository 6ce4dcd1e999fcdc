"""Modular Pydantic Settings v2 configuration.

Settings are split by domain (tree behaviour, database, logging), loaded
from environment variables or a local ``.env`` file, cached by LRU loaders
and frozen after validation.

Import settings via cached loaders:
    from nested_tree.core.settings import get_tree_settings

Configuration precedence (highest to lowest):
    1. init kwargs (testing/overrides)
    2. Environment variables
    3. .env file (development only)
"""

from __future__ import annotations

from .database import DatabaseSettings
from .loader import get_db_settings, get_logging_settings, get_tree_settings
from .logs import LoggingSettings
from .tree import TreeSettings

__all__ = [
    "DatabaseSettings",
    "LoggingSettings",
    "TreeSettings",
    "get_db_settings",
    "get_logging_settings",
    "get_tree_settings",
]
