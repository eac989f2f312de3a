"""
Persistence backends.

- json: one JSON document per snapshot under the memory root
- sqlite: per-tier tables in an embedded database (aiosqlite)
"""

from cortex.core.config import Settings
from cortex.memory.backends.json_files import JsonFileAdapter
from cortex.memory.backends.sqlite import SQLiteAdapter
from cortex.memory.base import PersistenceAdapter


def create_adapter(settings: Settings) -> PersistenceAdapter:
    """Build the persistence adapter selected by ``settings.backend``."""
    if settings.backend == "sqlite":
        return SQLiteAdapter(settings.db_path)
    return JsonFileAdapter(settings.memory_root)


__all__ = ["JsonFileAdapter", "SQLiteAdapter", "create_adapter"]
