"""Sync, backup and restore commands for the vroom CLI."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from vroom.errors import VroomError

if TYPE_CHECKING:
    from vroom.cli.__main__ import CliContext

logger = logging.getLogger(__name__)


def cmd_status(args, ctx: "CliContext"):
    """Show change tracking state for the user."""
    status = ctx.orchestrator.tracker.get_change_status(ctx.user_id).to_dict()
    if args.json:
        print(json.dumps(status, indent=2))
        return
    print(f"User: {ctx.user_id}")
    print(f"  Changes since last sync: {'yes' if status['has_changes_since_last_sync'] else 'no'}")
    print(f"  Last data change: {status['last_data_change_date'] or 'never'}")
    print(f"  Last sync:        {status['last_sync_date'] or 'never'}")
    print(f"  Last backup:      {status['last_backup_date'] or 'never'}")


def cmd_sync(args, ctx: "CliContext"):
    """Run a sync, skipping it when nothing changed unless --force is given."""
    orchestrator = ctx.orchestrator
    targets = args.target or None
    if args.force:
        if targets is None:
            targets = asyncio.run(orchestrator.enabled_targets(ctx.user_id))
        outcome = asyncio.run(orchestrator.sync(ctx.user_id, targets))
    else:
        outcome = asyncio.run(orchestrator.maybe_sync(ctx.user_id, targets))

    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    elif outcome.skipped:
        print(f"Sync skipped: {outcome.reason}")
    else:
        for result in outcome.targets:
            mark = "✓" if result.success else "✗"
            detail = result.reference if result.success else result.error
            print(f"{mark} {result.target.value}: {detail}")
    if not outcome.success:
        sys.exit(1)


def cmd_export(args, ctx: "CliContext"):
    """Write a fresh backup archive to a file."""
    archive = asyncio.run(ctx.orchestrator.export_archive(ctx.user_id))
    if args.output:
        Path(args.output).write_bytes(archive)
        print(f"✓ Exported {len(archive)} bytes to {args.output}")
    else:
        sys.stdout.buffer.write(archive)


def cmd_restore(args, ctx: "CliContext"):
    """Restore the user's data from an archive file."""
    path = Path(args.file)
    try:
        archive = path.read_bytes()
    except OSError as e:
        print(f"✗ Cannot read {path}: {e}")
        sys.exit(1)

    outcome = asyncio.run(ctx.orchestrator.restore_from_backup(ctx.user_id, archive, args.mode))
    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    elif not outcome.success:
        print(f"✗ Restore failed ({outcome.error_code}): {outcome.error}")
    elif outcome.preview is not None:
        print("Preview (nothing applied):")
        for table, counts in outcome.preview["counts"].items():
            print(
                f"  {table}: +{counts['insert']} ~{counts['update']} "
                f"-{counts['delete']} ={counts['unchanged']}"
            )
    else:
        print(f"✓ Restored ({outcome.mode.value}):")
        for table, count in outcome.imported.items():
            print(f"  {table}: {count}")
    if not outcome.success:
        sys.exit(1)


def cmd_backups(args, ctx: "CliContext"):
    """List stored backup archives, newest first."""
    try:
        refs = asyncio.run(ctx.orchestrator.list_backups(ctx.user_id))
    except VroomError as e:
        print(f"✗ {e.message}")
        sys.exit(1)
    if args.json:
        print(json.dumps([r.to_dict() for r in refs], indent=2))
        return
    if not refs:
        print("No backups found.")
        return
    for ref in refs:
        print(f"  {ref.name}  {ref.size:>10} bytes  {ref.created_at}")
