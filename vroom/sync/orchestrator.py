"""Sync orchestration.

SyncOrchestrator decides whether a user needs syncing, runs at most one
sync or restore per user at a time, drives snapshot export and restore
against the backup store and spreadsheet mirror, and keeps the change
tracker accurate:

- ``mark_synced`` only after every requested target succeeded
- ``mark_data_changed`` after every successful replace or merge restore

Storage work runs in worker threads; no storage transaction is open
while a remote call is in flight.
"""

import asyncio
import contextlib
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Set

from ..errors import (
    ConcurrentSyncError,
    ForeignSnapshotError,
    MalformedSnapshotError,
    RemoteUnavailableError,
    RestoreTransactionError,
    SyncValidationError,
)
from ..storage.change_tracker import ChangeTracker
from ..storage.schema import VEHICLES
from ..types import (
    FileRef,
    RestoreMode,
    RestoreOutcome,
    Snapshot,
    SyncOutcome,
    SyncTarget,
    TargetResult,
    parse_datetime,
)
from .backup_store import BackupStore, backup_name, prune_backups
from .mirror import TabularMirror
from .restore import RestoreReconciler
from .snapshot import SnapshotCodec

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_RETENTION_COUNT = 10


def parse_targets(targets: Iterable[Any]) -> List[SyncTarget]:
    """Validate requested targets, keeping request order and dropping repeats.

    Raises:
        SyncValidationError: No targets, or an unknown target
    """
    parsed: List[SyncTarget] = []
    for t in targets:
        try:
            target = SyncTarget(t)
        except ValueError:
            valid = ", ".join(s.value for s in SyncTarget)
            raise SyncValidationError(f"Invalid sync type {t!r}. Must be one of: {valid}") from None
        if target not in parsed:
            parsed.append(target)
    if not parsed:
        raise SyncValidationError("At least one sync type must be specified")
    return parsed


def parse_mode(mode: Any) -> RestoreMode:
    try:
        return RestoreMode(mode)
    except ValueError:
        valid = ", ".join(m.value for m in RestoreMode)
        raise SyncValidationError(f"Invalid restore mode {mode!r}. Must be one of: {valid}") from None


class SyncOrchestrator:
    """Coordinates change-aware sync and restore for all users of one storage."""

    def __init__(
        self,
        storage,
        backup_store: Optional[BackupStore] = None,
        mirror: Optional[TabularMirror] = None,
        tracker: Optional[ChangeTracker] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.storage = storage
        self.backup_store = backup_store
        self.mirror = mirror
        self.tracker = tracker or ChangeTracker(storage)
        self.codec = SnapshotCodec(storage)
        self.reconciler = RestoreReconciler(storage)
        self.timeout_seconds = timeout_seconds
        self._in_flight: Set[str] = set()

    # --- single-flight --------------------------------------------------

    def is_in_flight(self, user_id: str) -> bool:
        return user_id in self._in_flight

    @contextlib.asynccontextmanager
    async def _single_flight(self, user_id: str):
        # Check-and-add has no await in between, so it is atomic on the loop
        if user_id in self._in_flight:
            raise ConcurrentSyncError(user_id)
        self._in_flight.add(user_id)
        try:
            yield
        finally:
            self._in_flight.discard(user_id)

    # --- targets --------------------------------------------------------

    def _configured(self, target: SyncTarget) -> bool:
        if target == SyncTarget.BACKUP:
            return self.backup_store is not None
        return self.mirror is not None

    async def enabled_targets(self, user_id: str) -> List[SyncTarget]:
        """Targets the user switched on that this server can reach."""
        settings = await asyncio.to_thread(self.storage.get_settings, user_id) or {}
        targets = []
        if settings.get("google_sheets_sync_enabled"):
            targets.append(SyncTarget.MIRROR)
        if settings.get("google_drive_backup_enabled"):
            targets.append(SyncTarget.BACKUP)
        return [t for t in targets if self._configured(t)]

    # --- sync -----------------------------------------------------------

    async def maybe_sync(self, user_id: str, targets: Optional[Iterable[Any]] = None) -> SyncOutcome:
        """Sync only if the user's data changed since the last successful sync."""
        changed = await asyncio.to_thread(self.tracker.has_changes_since_last_sync, user_id)
        if not changed:
            logger.debug(f"Sync skipped for {user_id}: no changes")
            return SyncOutcome(user_id=user_id, skipped=True, reason="no changes since last sync")

        if targets is None:
            targets = await self.enabled_targets(user_id)
            if not targets:
                return SyncOutcome(user_id=user_id, skipped=True, reason="no targets enabled")
        return await self.sync(user_id, targets)

    async def sync(self, user_id: str, targets: Iterable[Any]) -> SyncOutcome:
        """Export one snapshot and write it to every requested target.

        Raises:
            SyncValidationError: Bad or unconfigured targets
            ConcurrentSyncError: A sync or restore is already running for the user
        """
        targets = parse_targets(targets)
        for target in targets:
            if not self._configured(target):
                raise SyncValidationError(f"Sync target {target.value!r} is not configured on this server")

        async with self._single_flight(user_id):
            snapshot = await asyncio.to_thread(self.codec.export, user_id)
            archive = None
            if SyncTarget.BACKUP in targets:
                archive = await asyncio.to_thread(self.codec.encode, snapshot)

            results = await asyncio.gather(
                *(self._run_target(user_id, target, snapshot, archive) for target in targets)
            )
            outcome = SyncOutcome(user_id=user_id, targets=list(results))

            if outcome.success:
                synced_at = parse_datetime(snapshot.created_at)
                await asyncio.to_thread(self.tracker.mark_synced, user_id, synced_at)
                outcome.synced_at = snapshot.created_at
                logger.info(f"Sync complete for {user_id}: {[t.value for t in targets]}")
            else:
                outcome.reason = "one or more targets failed; will retry on next sync"
                logger.warning(f"Sync incomplete for {user_id}: {outcome.errors}")
            return outcome

    async def _run_target(
        self,
        user_id: str,
        target: SyncTarget,
        snapshot: Snapshot,
        archive: Optional[bytes],
    ) -> TargetResult:
        try:
            if target == SyncTarget.BACKUP:
                reference = await self._with_timeout(target, self._upload_backup(user_id, archive))
            else:
                reference = await self._with_timeout(target, self._write_mirror(user_id, snapshot))
        except RemoteUnavailableError as e:
            logger.warning(f"{target.value} unavailable for {user_id}: {e}")
            return TargetResult(target=target, success=False, error=str(e))
        except Exception as e:
            logger.error(f"{target.value} sync failed for {user_id}: {e}", exc_info=True)
            return TargetResult(target=target, success=False, error=str(e))
        if target == SyncTarget.BACKUP:
            # Retention runs outside the upload deadline
            await self._apply_retention(user_id, snapshot)
        return TargetResult(target=target, success=True, reference=reference)

    async def _with_timeout(self, target: SyncTarget, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise RemoteUnavailableError(target.value, f"timed out after {self.timeout_seconds}s") from None

    async def _upload_backup(self, user_id: str, archive: bytes) -> str:
        ref = await self.backup_store.upload(user_id, backup_name(), archive)
        await asyncio.to_thread(self.tracker.record_backup, user_id)
        return ref.file_id

    async def _apply_retention(self, user_id: str, snapshot: Snapshot) -> None:
        settings = snapshot.settings or {}
        keep = settings.get("backup_retention_count") or DEFAULT_RETENTION_COUNT
        deleted = await prune_backups(self.backup_store, user_id, keep)
        if deleted:
            logger.info(f"Removed {len(deleted)} old backups for {user_id}")

    async def _write_mirror(self, user_id: str, snapshot: Snapshot) -> str:
        ref = await self.mirror.write(user_id, snapshot)
        settings = snapshot.settings or {}
        if ref.spreadsheet_id and settings.get("google_sheets_spreadsheet_id") != ref.spreadsheet_id:
            # Settings bookkeeping, not a data change
            await asyncio.to_thread(
                self.storage.update_settings, user_id, google_sheets_spreadsheet_id=ref.spreadsheet_id
            )
        return ref.spreadsheet_id

    # --- restore --------------------------------------------------------

    async def restore_from_backup(self, user_id: str, archive: bytes, mode: Any) -> RestoreOutcome:
        """Decode an archive and apply it to the user's data.

        Decode and apply failures are reported on the outcome; nothing is
        applied and no change marks are written in that case.

        Raises:
            SyncValidationError: Unknown mode
            ConcurrentSyncError: A sync or restore is already running for the user
        """
        mode = parse_mode(mode)
        async with self._single_flight(user_id):
            try:
                snapshot = await asyncio.to_thread(self.codec.decode, archive)
            except MalformedSnapshotError as e:
                logger.warning(f"Rejected backup for {user_id}: {e}")
                return RestoreOutcome(success=False, mode=mode, error=e.message, error_code=e.code)
            return await self._restore_snapshot(user_id, snapshot, mode)

    async def restore_from_file_ref(self, user_id: str, file_id: str, mode: Any) -> RestoreOutcome:
        """Fetch one of the user's stored backups and restore it."""
        mode = parse_mode(mode)
        ref = await self._store().find(user_id, file_id)
        archive = await self._store().fetch(ref)
        return await self.restore_from_backup(user_id, archive, mode)

    async def restore_from_mirror(self, user_id: str, mode: Any) -> RestoreOutcome:
        """Read the user's spreadsheet back and restore it."""
        mode = parse_mode(mode)
        if self.mirror is None:
            raise SyncValidationError("Spreadsheet mirror is not configured on this server")
        async with self._single_flight(user_id):
            settings = await asyncio.to_thread(self.storage.get_settings, user_id) or {}
            try:
                snapshot = await self.mirror.read(user_id, settings.get("google_sheets_spreadsheet_id"))
            except MalformedSnapshotError as e:
                logger.warning(f"Rejected spreadsheet data for {user_id}: {e}")
                return RestoreOutcome(success=False, mode=mode, error=e.message, error_code=e.code)
            return await self._restore_snapshot(user_id, snapshot, mode)

    async def _restore_snapshot(self, user_id: str, snapshot: Snapshot, mode: RestoreMode) -> RestoreOutcome:
        deadline = time.monotonic() + self.timeout_seconds
        try:
            result = await asyncio.to_thread(self.reconciler.apply, user_id, snapshot, mode, deadline)
        except (ForeignSnapshotError, RestoreTransactionError) as e:
            logger.warning(f"Restore ({mode.value}) failed for {user_id}: {e}")
            return RestoreOutcome(success=False, mode=mode, error=e.message, error_code=e.code)

        if mode == RestoreMode.PREVIEW:
            return RestoreOutcome(success=True, mode=mode, preview=result.diff.to_dict())

        # A restore is a data change that still has to go out on the next sync
        await asyncio.to_thread(self.tracker.mark_data_changed, user_id)
        return RestoreOutcome(success=True, mode=mode, imported=result.imported())

    async def auto_restore_latest(self, user_id: str) -> Dict[str, Any]:
        """Restore the newest backup, but only into an empty account."""
        count = await asyncio.to_thread(self.storage.count_owned, user_id, VEHICLES)
        if count > 0:
            return {"restored": False, "reason": "user already has data"}
        backups = await self._store().list(user_id)
        if not backups:
            return {"restored": False, "reason": "no backups found"}

        latest = backups[0]
        archive = await self._store().fetch(latest)
        outcome = await self.restore_from_backup(user_id, archive, RestoreMode.REPLACE)
        return {"restored": outcome.success, "backup": latest.to_dict(), "result": outcome.to_dict()}

    # --- archives -------------------------------------------------------

    def _store(self) -> BackupStore:
        if self.backup_store is None:
            raise SyncValidationError("Backup store is not configured on this server")
        return self.backup_store

    async def export_archive(self, user_id: str) -> bytes:
        """Build a fresh archive of the user's data."""
        return await asyncio.to_thread(self.codec.export_archive, user_id)

    async def list_backups(self, user_id: str) -> List[FileRef]:
        return await self._store().list(user_id)

    async def delete_backup(self, user_id: str, file_id: str) -> None:
        store = self._store()
        ref = await store.find(user_id, file_id)
        await store.delete(ref)
