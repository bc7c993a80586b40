"""Storage layer for vroom."""

from .change_tracker import ChangeTracker, has_changes
from .sqlite import SQLiteStorage

__all__ = ["ChangeTracker", "SQLiteStorage", "has_changes"]
