"""CLI command handlers."""

from .queue import cmd_queue
from .sync import cmd_backups, cmd_export, cmd_restore, cmd_status, cmd_sync

__all__ = ["cmd_backups", "cmd_export", "cmd_queue", "cmd_restore", "cmd_status", "cmd_sync"]
