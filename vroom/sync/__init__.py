"""Sync engine: snapshots, restore, remote targets and orchestration."""

from .backup_store import BackupStore, LocalBackupStore
from .drive_store import DriveBackupStore
from .mirror import SheetsMirror, TabularMirror
from .orchestrator import SyncOrchestrator
from .restore import RestoreReconciler
from .snapshot import SnapshotCodec

__all__ = [
    "BackupStore",
    "DriveBackupStore",
    "LocalBackupStore",
    "RestoreReconciler",
    "SheetsMirror",
    "SnapshotCodec",
    "SyncOrchestrator",
    "TabularMirror",
]
