"""Apply a decoded Snapshot to local storage.

Per invocation: diff the snapshot against the user's owned records, then
either report the diff (preview) or apply it inside one IMMEDIATE
transaction (replace, merge). Any failure rolls the whole transaction
back and surfaces as RestoreTransactionError.
"""

import logging
import sqlite3
import time
from typing import Any, Dict, List, Optional

from ..errors import ForeignSnapshotError, RestoreTransactionError, SyncValidationError
from ..storage.schema import ENTITY_TABLES, SNAPSHOT_TABLES, TableSpec
from ..storage.sqlite import (
    delete_owned,
    ensure_user_row,
    foreign_keys_present,
    insert_record,
    read_owned,
    upsert_record,
)
from ..types import RestoreDiff, RestoreMode, RestoreResult, Snapshot, TableDiff

logger = logging.getLogger(__name__)

# SQLite progress handler granularity (VM instructions between deadline checks)
_PROGRESS_STEPS = 1000


class _DeadlineExceeded(Exception):
    pass


class _Progress:
    """Counts record writes attempted by one apply call."""

    def __init__(self, deadline: Optional[float] = None):
        self.deadline = deadline
        self.attempted = 0

    def step(self) -> None:
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise _DeadlineExceeded()
        self.attempted += 1


class RestoreReconciler:
    """Computes and applies the mutations that make local storage match a snapshot.

    Merge mode lets the snapshot win: records present on both sides with
    differing fields are overwritten and reported as conflicts in the diff.
    """

    def __init__(self, storage):
        self._storage = storage

    def diff(self, user_id: str, snapshot: Snapshot, mode: RestoreMode) -> RestoreDiff:
        """Compute the diff without writing anything."""
        _check_owner(user_id, snapshot)
        with self._storage.transaction() as conn:
            return self._diff(conn, user_id, snapshot, RestoreMode(mode))

    def apply(
        self,
        user_id: str,
        snapshot: Snapshot,
        mode: RestoreMode,
        deadline: Optional[float] = None,
    ) -> RestoreResult:
        """Run one restore.

        Args:
            user_id: The user whose data is restored
            snapshot: A decoded, validated snapshot for that user
            mode: preview, replace or merge
            deadline: ``time.monotonic()`` value after which the
                transaction is aborted and rolled back

        Raises:
            ForeignSnapshotError: The snapshot belongs to someone else
            RestoreTransactionError: A write failed; nothing was applied
        """
        try:
            mode = RestoreMode(mode)
        except ValueError:
            raise SyncValidationError(f"Invalid restore mode: {mode!r}") from None
        _check_owner(user_id, snapshot)

        if mode == RestoreMode.PREVIEW:
            return RestoreResult(mode=mode, diff=self.diff(user_id, snapshot, mode))

        progress = _Progress(deadline)
        try:
            with self._storage.transaction(immediate=True) as conn:
                if deadline is not None:
                    conn.set_progress_handler(lambda: int(time.monotonic() > deadline), _PROGRESS_STEPS)
                diff = self._diff(conn, user_id, snapshot, mode)
                _check_foreign(diff)
                if diff.is_empty:
                    logger.info(f"Restore ({mode.value}) for {user_id}: nothing to do")
                    return RestoreResult(mode=mode, diff=diff, applied=True)

                ensure_user_row(conn, user_id)
                if mode == RestoreMode.REPLACE:
                    self._apply_replace(conn, user_id, snapshot, progress)
                else:
                    self._apply_merge(conn, diff, progress)
        except RestoreTransactionError:
            raise
        except _DeadlineExceeded:
            raise RestoreTransactionError("deadline exceeded", progress.attempted) from None
        except sqlite3.Error as e:
            if deadline is not None and time.monotonic() > deadline:
                raise RestoreTransactionError("deadline exceeded", progress.attempted) from e
            raise RestoreTransactionError(str(e), progress.attempted) from e

        logger.info(f"Restore ({mode.value}) for {user_id}: wrote {progress.attempted} records")
        return RestoreResult(mode=mode, diff=diff, applied=True, records_written=progress.attempted)

    # --- diff -----------------------------------------------------------

    def _diff(self, conn, user_id: str, snapshot: Snapshot, mode: RestoreMode) -> RestoreDiff:
        result = RestoreDiff(mode=mode)
        for spec in SNAPSHOT_TABLES:
            local = {r[spec.key]: r for r in read_owned(conn, spec, user_id)}
            table = TableDiff(table=spec.name)
            incoming = snapshot.records(spec.name)
            for record in incoming:
                key = record[spec.key]
                current = local.get(key)
                if current is None:
                    table.to_insert.append(dict(record))
                elif current != record:
                    table.to_update.append(dict(record))
                else:
                    table.unchanged.append(key)
            new_keys = [r[spec.key] for r in table.to_insert]
            table.foreign = sorted(foreign_keys_present(conn, spec, user_id, new_keys))
            if mode == RestoreMode.REPLACE and spec in ENTITY_TABLES:
                incoming_keys = {r[spec.key] for r in incoming}
                table.to_delete = sorted(k for k in local if k not in incoming_keys)
            result.tables[spec.name] = table
        return result

    # --- apply ----------------------------------------------------------

    def _apply_replace(self, conn, user_id: str, snapshot: Snapshot, progress: _Progress) -> None:
        # Leaf tables first so no child is left pointing at a deleted parent
        for spec in reversed(ENTITY_TABLES):
            progress.step()
            delete_owned(conn, spec, user_id)

        settings = snapshot.settings
        if settings is not None:
            progress.step()
            upsert_record(conn, SNAPSHOT_TABLES[0], settings)

        for spec in ENTITY_TABLES:
            self._insert_table(conn, spec, snapshot.records(spec.name), progress)

    def _insert_table(self, conn, spec: TableSpec, records, progress: _Progress) -> None:
        for record in records:
            progress.step()
            insert_record(conn, spec, record)

    def _apply_merge(self, conn, diff: RestoreDiff, progress: _Progress) -> None:
        for spec in SNAPSHOT_TABLES:
            table = diff.tables[spec.name]
            for record in table.to_insert + table.to_update:
                progress.step()
                upsert_record(conn, spec, record)


def _check_owner(user_id: str, snapshot: Snapshot) -> None:
    if snapshot.user_id != user_id:
        raise ForeignSnapshotError(
            "Backup belongs to a different user",
            {"snapshot_user_id": snapshot.user_id},
        )


def _check_foreign(diff: RestoreDiff) -> None:
    clashes: Dict[str, List[Any]] = {name: t.foreign for name, t in diff.tables.items() if t.foreign}
    if clashes:
        first = next(iter(clashes))
        raise RestoreTransactionError(
            f"{first} record {clashes[first][0]!r} belongs to another user", 0
        )
