"""
Shared sync types for vroom.

These are the shared vocabulary between storage, the sync engine, the
offline queue and the HTTP layer. The storage layer persists them, the
orchestrator passes them around, the routes render them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


class ParseDatetimeError(ValueError):
    """Structured parse failure for ISO datetime strings."""

    def __init__(self, value: str, cause: Exception):
        super().__init__(f"Invalid ISO datetime string: {value!r}")
        self.value = value
        self.cause = cause


def parse_datetime(s: Optional[str], *, strict: bool = False) -> Optional[datetime]:
    """Parse ISO datetime string.

    Naive values are assumed to be UTC. Unparseable values return None
    unless ``strict`` is set, in which case ParseDatetimeError is raised.
    """
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError) as exc:
        if strict:
            raise ParseDatetimeError(s, exc) from exc
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Render a datetime as an ISO string, passing None through."""
    if dt is None:
        return None
    return dt.isoformat()


# === Archive Format ===

ARCHIVE_FORMAT = "vroom-backup"
ARCHIVE_FORMAT_VERSION = 1


# === Enums ===


class RestoreMode(str, Enum):
    """How a snapshot is applied to local storage."""

    PREVIEW = "preview"  # Compute the diff, apply nothing
    REPLACE = "replace"  # Delete owned records, insert the snapshot
    MERGE = "merge"  # Upsert snapshot records, never delete


class SyncTarget(str, Enum):
    """Remote destinations a sync can write to."""

    MIRROR = "sheets"  # Spreadsheet mirror for human inspection
    BACKUP = "backup"  # Archive upload to the backup store


class MutationState(str, Enum):
    """Lifecycle of a queued offline mutation."""

    PENDING = "pending"
    SYNCED = "synced"


# === Change Tracking ===


@dataclass
class ChangeState:
    """Per-user change tracking timestamps.

    Absent ``last_sync_date`` means the user has never synced. Absent
    ``last_data_change_date`` means nothing is known about writes, which
    is treated as "changes assumed".
    """

    user_id: str
    last_data_change_date: Optional[datetime] = None
    last_sync_date: Optional[datetime] = None
    last_backup_date: Optional[datetime] = None


@dataclass
class ChangeStatus:
    """Read-only projection of a ChangeState for status endpoints."""

    has_changes: bool
    last_data_change_date: Optional[datetime] = None
    last_sync_date: Optional[datetime] = None
    last_backup_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_changes_since_last_sync": self.has_changes,
            "last_data_change_date": format_datetime(self.last_data_change_date),
            "last_sync_date": format_datetime(self.last_sync_date),
            "last_backup_date": format_datetime(self.last_backup_date),
        }


# === Snapshots ===


@dataclass(frozen=True)
class Snapshot:
    """Immutable export of one user's full dataset.

    ``tables`` maps every snapshot table name to a tuple of records. Each
    record is a plain dict carrying its identifier and foreign keys.
    The ``user_settings`` table is the root record and holds at most one
    row.
    """

    user_id: str
    created_at: str
    tables: Dict[str, Tuple[Dict[str, Any], ...]]
    format_version: int = ARCHIVE_FORMAT_VERSION

    def records(self, table: str) -> Tuple[Dict[str, Any], ...]:
        return self.tables.get(table, ())

    @property
    def settings(self) -> Optional[Dict[str, Any]]:
        rows = self.records("user_settings")
        return rows[0] if rows else None

    def counts(self) -> Dict[str, int]:
        return {name: len(rows) for name, rows in self.tables.items()}

    def normalized(self) -> Dict[str, List[Dict[str, Any]]]:
        """Records per table in a stable order, for comparing snapshots."""
        out = {}
        for name, rows in self.tables.items():
            key = "id" if rows and "id" in rows[0] else "user_id"
            out[name] = sorted((dict(r) for r in rows), key=lambda r: str(r.get(key)))
        return out


# === Restore ===


@dataclass
class TableDiff:
    """Per-table partition of snapshot records against local storage."""

    table: str
    to_insert: List[Dict[str, Any]] = field(default_factory=list)
    to_update: List[Dict[str, Any]] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)  # Record keys
    to_delete: List[str] = field(default_factory=list)  # Replace mode only
    foreign: List[str] = field(default_factory=list)  # Keys owned by another user

    @property
    def is_empty(self) -> bool:
        return not (self.to_insert or self.to_update or self.to_delete)

    def counts(self) -> Dict[str, int]:
        return {
            "insert": len(self.to_insert),
            "update": len(self.to_update),
            "unchanged": len(self.unchanged),
            "delete": len(self.to_delete),
        }


@dataclass
class RestoreDiff:
    """Full diff of a snapshot against a user's local dataset."""

    mode: RestoreMode
    tables: Dict[str, TableDiff] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return all(t.is_empty for t in self.tables.values())

    @property
    def conflicts(self) -> Dict[str, List[str]]:
        """Records present on both sides whose fields differ."""
        out = {}
        for name, diff in self.tables.items():
            keys = [_record_key(r) for r in diff.to_update]
            if keys:
                out[name] = keys
        return out

    def counts(self) -> Dict[str, Dict[str, int]]:
        return {name: diff.counts() for name, diff in self.tables.items()}

    def to_dict(self, include_records: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "mode": self.mode.value,
            "counts": self.counts(),
            "conflicts": self.conflicts,
        }
        if include_records:
            data["records"] = {
                name: {
                    "insert": diff.to_insert,
                    "update": diff.to_update,
                    "delete": diff.to_delete,
                }
                for name, diff in self.tables.items()
            }
        return data


def _record_key(record: Dict[str, Any]) -> str:
    return str(record["id"] if "id" in record else record.get("user_id"))


@dataclass
class RestoreResult:
    """What a reconciler invocation did."""

    mode: RestoreMode
    diff: RestoreDiff
    applied: bool = False
    records_written: int = 0

    def imported(self) -> Dict[str, int]:
        """Records inserted or updated per table."""
        return {
            name: len(d.to_insert) + len(d.to_update) for name, d in self.diff.tables.items()
        }


@dataclass
class RestoreOutcome:
    """Result of an orchestrated restore, as reported to callers."""

    success: bool
    mode: RestoreMode
    imported: Optional[Dict[str, int]] = None
    preview: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "mode": self.mode.value}
        if self.imported is not None:
            data["imported"] = self.imported
        if self.preview is not None:
            data["preview"] = self.preview
        if self.error is not None:
            data["error"] = {"code": self.error_code, "message": self.error}
        return data


# === Remote References ===


@dataclass
class FileRef:
    """A backup archive held by a BackupStore."""

    file_id: str
    user_id: str
    name: str
    size: int = 0
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.file_id,
            "name": self.name,
            "size": self.size,
            "created_at": self.created_at,
        }


@dataclass
class MirrorRef:
    """The spreadsheet a snapshot was projected into."""

    spreadsheet_id: str
    url: Optional[str] = None
    worksheets: List[str] = field(default_factory=list)


# === Sync Results ===


@dataclass
class TargetResult:
    """Outcome of writing one snapshot to one target."""

    target: SyncTarget
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.value,
            "success": self.success,
            "reference": self.reference,
            "error": self.error,
        }


@dataclass
class SyncOutcome:
    """Result of a maybe_sync or sync call."""

    user_id: str
    skipped: bool = False
    reason: Optional[str] = None
    targets: List[TargetResult] = field(default_factory=list)
    synced_at: Optional[str] = None

    @property
    def success(self) -> bool:
        return all(t.success for t in self.targets)

    @property
    def errors(self) -> List[str]:
        return [f"{t.target.value}: {t.error}" for t in self.targets if not t.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "success": self.success,
            "synced_at": self.synced_at,
            "results": [t.to_dict() for t in self.targets],
            "errors": self.errors,
        }


# === Offline Queue ===


@dataclass
class OfflineMutation:
    """A write captured on the client while the server was unreachable."""

    local_id: str
    target_entity: str
    payload: Dict[str, Any]
    enqueued_at: str
    state: MutationState = MutationState.PENDING
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def synced(self) -> bool:
        return self.state == MutationState.SYNCED


@dataclass
class ReplayResult:
    """Result of one pass over the offline queue."""

    attempted: int = 0
    synced: int = 0
    remaining: int = 0
    stopped_at: Optional[str] = None  # local_id of the mutation that failed
    error: Optional[str] = None

    @property
    def complete(self) -> bool:
        return self.stopped_at is None
