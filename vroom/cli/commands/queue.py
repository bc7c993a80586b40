"""Offline queue commands for the vroom CLI."""

import asyncio
import json
import sys
from typing import TYPE_CHECKING

from vroom.client.transport import HttpTransport

if TYPE_CHECKING:
    from vroom.cli.__main__ import CliContext


def cmd_queue(args, ctx: "CliContext"):
    """Handle queue subcommands: list and replay."""
    queue = ctx.offline_queue

    if args.queue_action == "list":
        mutations = queue.pending()
        if args.json:
            print(
                json.dumps(
                    [
                        {
                            "local_id": m.local_id,
                            "target_entity": m.target_entity,
                            "enqueued_at": m.enqueued_at,
                            "attempts": m.attempts,
                            "last_error": m.last_error,
                        }
                        for m in mutations
                    ],
                    indent=2,
                )
            )
            return
        if not mutations:
            print("Offline queue is empty.")
            return
        print(f"{len(mutations)} pending writes:")
        for m in mutations:
            line = f"  {m.local_id}  {m.target_entity}  queued {m.enqueued_at}"
            if m.last_error:
                line += f"  (attempts: {m.attempts}, last error: {m.last_error})"
            print(line)

    elif args.queue_action == "replay":
        transport = HttpTransport.from_credentials()
        result = asyncio.run(queue.replay(transport))
        print(f"Replayed {result.synced}/{result.attempted}, {result.remaining} remaining")
        if not result.complete:
            print(f"✗ Stopped at {result.stopped_at}: {result.error}")
            sys.exit(1)
