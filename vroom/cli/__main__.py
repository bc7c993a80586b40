"""
Vroom CLI - change-aware sync and backup from the command line.

Usage:
    vroom status [--json]
    vroom sync [--target sheets|backup]... [--force] [--json]
    vroom export [-o FILE]
    vroom restore FILE [--mode preview|replace|merge] [--json]
    vroom backups [--json]
    vroom queue list [--json]
    vroom queue replay
"""

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from vroom.client.offline_queue import OfflineQueue
from vroom.errors import VroomError
from vroom.storage.sqlite import SQLiteStorage
from vroom.sync.backup_store import LocalBackupStore
from vroom.sync.mirror import SheetsMirror
from vroom.sync.orchestrator import SyncOrchestrator
from vroom.types import RestoreMode, SyncTarget
from vroom.utils import get_vroom_home

from .commands import cmd_backups, cmd_export, cmd_queue, cmd_restore, cmd_status, cmd_sync

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


@dataclass
class CliContext:
    """What every command handler needs."""

    user_id: str
    orchestrator: SyncOrchestrator
    offline_queue: Optional[OfflineQueue] = None


def build_context(args) -> CliContext:
    home = get_vroom_home()
    storage = SQLiteStorage(Path(args.db) if args.db else None)
    user_id = args.user or os.environ.get("VROOM_USER_ID") or "local"
    storage.ensure_user(user_id)

    backup_dir = Path(args.backup_dir) if args.backup_dir else home / "backups"
    credentials = os.environ.get("VROOM_GOOGLE_CREDENTIALS")
    mirror = SheetsMirror(credentials_file=credentials) if credentials else None

    orchestrator = SyncOrchestrator(storage, backup_store=LocalBackupStore(backup_dir), mirror=mirror)
    queue = OfflineQueue(home / "offline_queue.db") if args.command == "queue" else None
    return CliContext(user_id=user_id, orchestrator=orchestrator, offline_queue=queue)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vroom",
        description="Change-aware sync and backup for Vroom expense data",
    )
    parser.add_argument("--user", "-u", help="User ID (default: $VROOM_USER_ID or 'local')")
    parser.add_argument("--db", help="Path to the SQLite database")
    parser.add_argument("--backup-dir", dest="backup_dir", help="Directory for backup archives")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # status
    p_status = subparsers.add_parser("status", help="Show change tracking status")
    p_status.add_argument("--json", "-j", action="store_true")

    # sync
    p_sync = subparsers.add_parser("sync", help="Sync to the backup store and/or spreadsheet")
    p_sync.add_argument(
        "--target",
        "-t",
        action="append",
        choices=[t.value for t in SyncTarget],
        help="Target to sync (repeatable; default: targets enabled in settings)",
    )
    p_sync.add_argument("--force", "-f", action="store_true", help="Sync even if nothing changed")
    p_sync.add_argument("--json", "-j", action="store_true")

    # export
    p_export = subparsers.add_parser("export", help="Write a backup archive")
    p_export.add_argument("--output", "-o", help="Output file (default: stdout)")

    # restore
    p_restore = subparsers.add_parser("restore", help="Restore from a backup archive")
    p_restore.add_argument("file", help="Archive to restore")
    p_restore.add_argument(
        "--mode",
        "-m",
        choices=[m.value for m in RestoreMode],
        default=RestoreMode.PREVIEW.value,
        help="preview (default), replace or merge",
    )
    p_restore.add_argument("--json", "-j", action="store_true")

    # backups
    p_backups = subparsers.add_parser("backups", help="List stored backups")
    p_backups.add_argument("--json", "-j", action="store_true")

    # queue
    p_queue = subparsers.add_parser("queue", help="Offline write queue")
    queue_sub = p_queue.add_subparsers(dest="queue_action", required=True)
    q_list = queue_sub.add_parser("list", help="List pending writes")
    q_list.add_argument("--json", "-j", action="store_true")
    queue_sub.add_parser("replay", help="Replay pending writes against the backend")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        ctx = build_context(args)
    except (ValueError, OSError) as e:
        logger.error(f"Failed to initialize vroom: {e}")
        sys.exit(1)

    # Dispatch with error handling
    try:
        if args.command == "status":
            cmd_status(args, ctx)
        elif args.command == "sync":
            cmd_sync(args, ctx)
        elif args.command == "export":
            cmd_export(args, ctx)
        elif args.command == "restore":
            cmd_restore(args, ctx)
        elif args.command == "backups":
            cmd_backups(args, ctx)
        elif args.command == "queue":
            cmd_queue(args, ctx)
    except VroomError as e:
        logger.error(f"{e.code}: {e.message}")
        sys.exit(1)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
