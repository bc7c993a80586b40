"""Error taxonomy for vroom sync, backup and restore.

Every error carries a stable ``code`` that the HTTP layer renders into
``{"success": false, "error": {"code", "message", "details"}}``.
"""

from typing import Any, Dict, Optional


class VroomError(Exception):
    """Base for all vroom errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# =============================================================================
# Snapshot errors (decode time, nothing applied)
# =============================================================================


class MalformedSnapshotError(VroomError):
    """Raised when an archive violates the snapshot structure.

    E.g., a missing manifest, a row count that does not match the
    manifest, or a foreign key pointing outside the snapshot.
    """

    code = "INVALID_FILE_FORMAT"


class UnsupportedSnapshotVersionError(MalformedSnapshotError):
    """Raised when an archive declares a format version we cannot read."""

    code = "VERSION_MISMATCH"

    def __init__(self, found: Any, supported: int):
        super().__init__(
            f"Unsupported backup format version {found!r} (supported: {supported})",
            {"found": found, "supported": supported},
        )
        self.found = found
        self.supported = supported


class ForeignSnapshotError(VroomError):
    """Raised when a snapshot belongs to a different user than the caller."""

    code = "USER_MISMATCH"


class BackupNotFoundError(VroomError):
    """Raised when a requested backup archive does not exist."""

    code = "BACKUP_NOT_FOUND"


# =============================================================================
# Apply-time errors
# =============================================================================


class RestoreTransactionError(VroomError):
    """Raised when a restore fails mid-apply. The transaction was rolled back."""

    code = "RESTORE_FAILED"

    def __init__(self, reason: str, records_attempted: int = 0):
        super().__init__(
            f"Restore failed and was rolled back: {reason}",
            {"reason": reason, "records_attempted": records_attempted},
        )
        self.reason = reason
        self.records_attempted = records_attempted


class DuplicateRecordError(VroomError):
    """Raised when a create uses an identifier that already exists."""

    code = "DUPLICATE_RECORD"

    def __init__(self, table: str, record_id: str):
        super().__init__(
            f"{table} record {record_id!r} already exists",
            {"table": table, "id": record_id},
        )
        self.table = table
        self.record_id = record_id


# =============================================================================
# Sync errors
# =============================================================================


class SyncValidationError(VroomError):
    """Raised when a sync or restore request is malformed (bad target, bad mode)."""

    code = "VALIDATION_ERROR"


class RemoteUnavailableError(VroomError):
    """Raised when the backup store or mirror cannot be reached. Safe to retry."""

    code = "REMOTE_UNAVAILABLE"

    def __init__(self, target: str, message: str):
        super().__init__(f"{target} unavailable: {message}", {"target": target})
        self.target = target


class ConcurrentSyncError(VroomError):
    """Raised when a sync or restore is already in flight for the user."""

    code = "SYNC_IN_PROGRESS"

    def __init__(self, user_id: str):
        super().__init__(
            "A sync or restore is already in progress for this user",
            {"user_id": user_id},
        )
        self.user_id = user_id


# =============================================================================
# Client errors
# =============================================================================


class NetworkPartitionError(VroomError):
    """Raised client-side when the server cannot be reached at all."""

    code = "NETWORK_UNAVAILABLE"


class MutationRejectedError(VroomError):
    """Raised when the server answered a replayed mutation with a refusal."""

    code = "MUTATION_REJECTED"

    def __init__(self, status_code: int, detail: Any = None):
        super().__init__(
            f"Server rejected mutation (HTTP {status_code})",
            {"status_code": status_code, "detail": detail},
        )
        self.status_code = status_code
        self.detail = detail
