"""Client-side offline write queue.

Writes attempted while the server is unreachable are persisted in a
local SQLite file under a fixed table name and replayed in enqueue order
once connectivity returns. Replay is strictly sequential and stops at
the first failure so dependent writes (an expense for a vehicle created
offline) never land out of order.

Each create carries a client-generated ``id``. If a replayed write
already reached the server before a crash, the server answers
DUPLICATE_RECORD and the replay counts it as acknowledged.
"""

import contextlib
import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import ConcurrentSyncError, NetworkPartitionError
from ..types import MutationState, OfflineMutation, ReplayResult, utc_now
from ..utils import get_vroom_home

logger = logging.getLogger(__name__)

# Fixed storage namespace for queued mutations
QUEUE_NAMESPACE = "vroom_offline_mutations"

QUEUE_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {QUEUE_NAMESPACE} (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    local_id TEXT NOT NULL UNIQUE,
    target_entity TEXT NOT NULL,
    payload TEXT NOT NULL,       -- JSON object
    enqueued_at TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);
"""


class OfflineQueue:
    """FIFO of pending client writes.

    ``replay`` is the only operation that moves a mutation out of the
    pending state. Only one replay runs at a time.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else get_vroom_home() / "offline_queue.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._replaying = False
        with self._connect() as conn:
            conn.executescript(QUEUE_SCHEMA)

    @contextlib.contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _row_to_mutation(row: sqlite3.Row) -> OfflineMutation:
        return OfflineMutation(
            local_id=row["local_id"],
            target_entity=row["target_entity"],
            payload=json.loads(row["payload"]),
            enqueued_at=row["enqueued_at"],
            state=MutationState(row["state"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
        )

    # === Queue operations ===

    def enqueue(self, target_entity: str, payload: Dict[str, Any]) -> OfflineMutation:
        """Append a mutation. Creates get a client-generated id if they lack one."""
        payload = dict(payload)
        payload.setdefault("id", str(uuid.uuid4()))
        mutation = OfflineMutation(
            local_id=f"offline_{uuid.uuid4().hex}",
            target_entity=target_entity,
            payload=payload,
            enqueued_at=utc_now(),
        )
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO {QUEUE_NAMESPACE} (local_id, target_entity, payload, enqueued_at, state) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    mutation.local_id,
                    mutation.target_entity,
                    json.dumps(mutation.payload),
                    mutation.enqueued_at,
                    MutationState.PENDING.value,
                ),
            )
        logger.info(f"Queued offline {target_entity} write {mutation.local_id}")
        return mutation

    def pending(self) -> List[OfflineMutation]:
        """Unsynced mutations in enqueue order."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {QUEUE_NAMESPACE} WHERE state = ? ORDER BY seq",
                (MutationState.PENDING.value,),
            ).fetchall()
        return [self._row_to_mutation(r) for r in rows]

    def pending_count(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {QUEUE_NAMESPACE} WHERE state = ?",
                (MutationState.PENDING.value,),
            ).fetchone()
        return row[0]

    def _mark_synced(self, local_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                f"UPDATE {QUEUE_NAMESPACE} SET state = ?, attempts = attempts + 1, last_error = NULL "
                "WHERE local_id = ?",
                (MutationState.SYNCED.value, local_id),
            )

    def _record_failure(self, local_id: str, error: str) -> None:
        with self._connect() as conn:
            conn.execute(
                f"UPDATE {QUEUE_NAMESPACE} SET attempts = attempts + 1, last_error = ? WHERE local_id = ?",
                (error[:1000], local_id),
            )

    def _collect_synced(self) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                f"DELETE FROM {QUEUE_NAMESPACE} WHERE state = ?", (MutationState.SYNCED.value,)
            )
        return cur.rowcount

    # === Replay ===

    async def replay(self, transport) -> ReplayResult:
        """Send pending mutations one at a time, oldest first.

        Stops at the first failure and leaves it, and everything after
        it, for the next call.

        Raises:
            ConcurrentSyncError: A replay is already running on this queue
        """
        if self._replaying:
            raise ConcurrentSyncError("offline-queue")
        self._replaying = True
        result = ReplayResult()
        try:
            for mutation in self.pending():
                result.attempted += 1
                try:
                    await transport.send(mutation)
                except Exception as e:
                    self._record_failure(mutation.local_id, str(e))
                    result.stopped_at = mutation.local_id
                    result.error = str(e)
                    logger.info(f"Replay stopped at {mutation.local_id}: {e}")
                    break
                self._mark_synced(mutation.local_id)
                result.synced += 1
            self._collect_synced()
            result.remaining = self.pending_count()
        finally:
            self._replaying = False
        if result.synced:
            logger.info(f"Replayed {result.synced} offline writes, {result.remaining} remaining")
        return result

    async def submit(self, transport, target_entity: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Write online if possible, otherwise queue.

        While older writes are still queued, new ones queue behind them to
        keep enqueue order.
        """
        if self.pending_count() > 0:
            mutation = self.enqueue(target_entity, payload)
            return {"queued": True, "local_id": mutation.local_id, "id": mutation.payload["id"]}

        payload = dict(payload)
        payload.setdefault("id", str(uuid.uuid4()))
        attempt = OfflineMutation(
            local_id=f"online_{payload['id']}",
            target_entity=target_entity,
            payload=payload,
            enqueued_at=utc_now(),
        )
        try:
            response = await transport.send(attempt)
        except NetworkPartitionError as e:
            logger.info(f"Offline, queueing {target_entity} write: {e}")
            mutation = self.enqueue(target_entity, payload)
            return {"queued": True, "local_id": mutation.local_id, "id": payload["id"]}
        return {"queued": False, "id": payload["id"], "response": response}

    def clear(self) -> int:
        """Drop every queued mutation, pending or not."""
        with self._connect() as conn:
            cur = conn.execute(f"DELETE FROM {QUEUE_NAMESPACE}")
        return cur.rowcount
