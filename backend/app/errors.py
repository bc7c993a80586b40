"""Map sync engine errors onto HTTP responses."""

from fastapi import Request
from fastapi.responses import JSONResponse

from vroom.errors import (
    BackupNotFoundError,
    ConcurrentSyncError,
    DuplicateRecordError,
    ForeignSnapshotError,
    MalformedSnapshotError,
    MutationRejectedError,
    NetworkPartitionError,
    RemoteUnavailableError,
    RestoreTransactionError,
    SyncValidationError,
    VroomError,
)

from .logging_config import get_logger

logger = get_logger("vroom.api")

# Most specific class first; UnsupportedSnapshotVersionError is a MalformedSnapshotError
_STATUS_BY_ERROR = (
    (MalformedSnapshotError, 400),
    (SyncValidationError, 400),
    (ForeignSnapshotError, 400),
    (MutationRejectedError, 400),
    (BackupNotFoundError, 404),
    (ConcurrentSyncError, 409),
    (DuplicateRecordError, 409),
    (RestoreTransactionError, 500),
    (RemoteUnavailableError, 503),
    (NetworkPartitionError, 503),
)

_STATUS_BY_CODE = {
    "INVALID_FILE_FORMAT": 400,
    "VERSION_MISMATCH": 400,
    "USER_MISMATCH": 400,
    "VALIDATION_ERROR": 400,
    "BACKUP_NOT_FOUND": 404,
    "SYNC_IN_PROGRESS": 409,
    "DUPLICATE_RECORD": 409,
    "RESTORE_FAILED": 500,
    "REMOTE_UNAVAILABLE": 503,
    "NETWORK_UNAVAILABLE": 503,
    "MUTATION_REJECTED": 400,
}


def status_for_error(exc: VroomError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def status_for_code(code: str | None) -> int:
    return _STATUS_BY_CODE.get(code or "", 500)


def error_response(status_code: int, code: str | None, message: str | None) -> JSONResponse:
    """Standard error body: ``{"success": false, "error": {"code", "message"}}``."""
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


async def vroom_error_handler(request: Request, exc: VroomError) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")
    body = {"success": False, "error": exc.to_dict()}
    return JSONResponse(status_code=status_code, content=body)
