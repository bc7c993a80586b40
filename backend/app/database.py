"""Storage and sync engine wiring for FastAPI dependencies."""

from pathlib import Path
from typing import Annotated

from fastapi import Depends

from vroom.storage.sqlite import SQLiteStorage
from vroom.sync.activity import ActivityTracker
from vroom.sync.backup_store import BackupStore, LocalBackupStore
from vroom.sync.drive_store import DriveBackupStore
from vroom.sync.mirror import SheetsMirror
from vroom.sync.orchestrator import SyncOrchestrator

from .config import Settings, get_settings

_storage: SQLiteStorage | None = None
_orchestrator: SyncOrchestrator | None = None
_activity: ActivityTracker | None = None


def get_storage_instance(settings: Settings | None = None) -> SQLiteStorage:
    """Get cached storage."""
    global _storage
    if _storage is None:
        if settings is None:
            settings = get_settings()
        _storage = SQLiteStorage(Path(settings.database_path))
    return _storage


def get_orchestrator_instance(settings: Settings | None = None) -> SyncOrchestrator:
    """Get cached sync orchestrator.

    With a Google service account, backups go to Drive and the Sheets
    mirror is wired; otherwise backups stay on the local filesystem.
    """
    global _orchestrator
    if _orchestrator is None:
        if settings is None:
            settings = get_settings()
        mirror = None
        backup_store: BackupStore = LocalBackupStore(Path(settings.backup_dir))
        if settings.google_service_account_file:
            mirror = SheetsMirror(credentials_file=settings.google_service_account_file)
            backup_store = DriveBackupStore(
                credentials_file=settings.google_service_account_file,
                folder_name=settings.drive_folder_name,
            )
        _orchestrator = SyncOrchestrator(
            get_storage_instance(settings),
            backup_store=backup_store,
            mirror=mirror,
            timeout_seconds=settings.sync_timeout_seconds,
        )
    return _orchestrator


def get_activity_instance(settings: Settings | None = None) -> ActivityTracker:
    global _activity
    if _activity is None:
        if settings is None:
            settings = get_settings()
        _activity = ActivityTracker(
            get_orchestrator_instance(settings),
            default_delay_minutes=settings.default_inactivity_minutes,
        )
    return _activity


def reset_instances() -> None:
    """Drop cached instances (tests, shutdown)."""
    global _storage, _orchestrator, _activity
    if _activity is not None:
        _activity.shutdown()
    _storage = None
    _orchestrator = None
    _activity = None


def get_storage(settings: Annotated[Settings, Depends(get_settings)]) -> SQLiteStorage:
    """FastAPI dependency for storage."""
    return get_storage_instance(settings)


def get_orchestrator(settings: Annotated[Settings, Depends(get_settings)]) -> SyncOrchestrator:
    """FastAPI dependency for the sync orchestrator."""
    return get_orchestrator_instance(settings)


def get_activity(settings: Annotated[Settings, Depends(get_settings)]) -> ActivityTracker:
    """FastAPI dependency for the inactivity tracker."""
    return get_activity_instance(settings)


# Type aliases for dependency injection
Storage = Annotated[SQLiteStorage, Depends(get_storage)]
Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
Activity = Annotated[ActivityTracker, Depends(get_activity)]
