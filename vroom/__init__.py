"""
Vroom - change-aware sync and backup for the Vroom expense tracker.

Keeps a user's authoritative local dataset consistent with remote
backups, a spreadsheet mirror and the client-side offline write queue.
"""

from .errors import VroomError
from .types import RestoreMode, SyncTarget

try:
    from importlib.metadata import version

    __version__ = version("vroom-sync")
except Exception:
    __version__ = "0.0.0"

__all__ = ["VroomError", "RestoreMode", "SyncTarget"]
