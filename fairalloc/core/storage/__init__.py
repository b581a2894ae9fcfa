"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Tier configurations and lifecycle state
- Write-once randomness, results and audit records
- Lifecycle events
"""

from fairalloc.core.storage.sqlite_adapter import SQLiteAdapter
from fairalloc.core.storage.storage_manager import StorageManager

__all__ = ["SQLiteAdapter", "StorageManager"]
