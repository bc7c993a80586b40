"""Sync routes: status, change-aware sync, backup download/upload and restore."""

import asyncio

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import Response

from vroom.errors import SyncValidationError
from vroom.types import RestoreOutcome, SyncOutcome, SyncTarget

from ..auth import CurrentUser
from ..config import get_settings
from ..database import Activity, Orchestrator, Storage
from ..errors import error_response, status_for_code
from ..logging_config import get_logger, log_sync_operation
from ..models import (
    BackupInfo,
    RestoreRequest,
    SyncConfigureRequest,
    SyncRequest,
    SyncResponse,
    SyncStatusResponse,
)
from ..rate_limit import limiter

logger = get_logger("vroom.sync")
router = APIRouter(prefix="/sync", tags=["sync"])


def _sync_response(user_id: str, outcome: SyncOutcome) -> SyncResponse:
    for result in outcome.targets:
        log_sync_operation(user_id, "sync", result.target.value, result.success, result.error)
    return SyncResponse(**outcome.to_dict())


def _restore_response(user_id: str, source: str, outcome: RestoreOutcome):
    log_sync_operation(user_id, f"restore-{outcome.mode.value}", source, outcome.success, outcome.error)
    if not outcome.success:
        return error_response(status_for_code(outcome.error_code), outcome.error_code, outcome.error)
    return outcome.to_dict()


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    auth: CurrentUser,
    orchestrator: Orchestrator,
    activity: Activity,
):
    """Change tracking status plus auto-sync timer state."""
    change_status = await asyncio.to_thread(orchestrator.tracker.get_change_status, auth.user_id)
    status = change_status.to_dict()
    timer = activity.get_status(auth.user_id)
    return SyncStatusResponse(
        **status,
        sync_in_progress=timer["sync_in_progress"],
        next_sync_in=timer["next_sync_in"],
    )


@router.post("", response_model=SyncResponse)
@limiter.limit("20/minute")
async def run_sync(
    request: Request,
    sync_request: SyncRequest,
    auth: CurrentUser,
    orchestrator: Orchestrator,
    activity: Activity,
):
    """
    Sync the user's data to the backup store and/or spreadsheet.

    - force=false: skipped when nothing changed since the last sync
    - sync_types omitted: the targets enabled in the user's settings

    Returns 409 SYNC_IN_PROGRESS if a sync or restore is already running.
    """
    user_id = auth.user_id
    targets = sync_request.sync_types
    logger.info(f"SYNC | {user_id} | targets={targets} force={sync_request.force}")

    if sync_request.force:
        if targets is None:
            targets = await orchestrator.enabled_targets(user_id)
            if not targets:
                raise SyncValidationError("No sync targets enabled in settings")
        outcome = await orchestrator.sync(user_id, targets)
    elif targets is None:
        outcome = await activity.trigger_manual_sync(user_id)
    else:
        outcome = await orchestrator.maybe_sync(user_id, targets)
    return _sync_response(user_id, outcome)


@router.post("/configure")
async def configure_sync(
    configure_request: SyncConfigureRequest,
    auth: CurrentUser,
    storage: Storage,
    orchestrator: Orchestrator,
):
    """Update the user's sync settings."""
    fields = configure_request.model_dump(exclude_none=True)
    if configure_request.google_sheets_sync_enabled and orchestrator.mirror is None:
        raise SyncValidationError(
            f"{SyncTarget.MIRROR.value} sync is not available on this server"
        )
    settings = await asyncio.to_thread(storage.update_settings, auth.user_id, **fields)
    logger.info(f"CONFIGURE | {auth.user_id} | {sorted(fields)}")
    return {"success": True, "settings": settings}


@router.get("/download")
@limiter.limit("10/minute")
async def download_backup(
    request: Request,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """Stream a fresh backup archive of the user's data."""
    archive = await orchestrator.export_archive(auth.user_id)
    filename = f"vroom-backup-{auth.user_id}.zip"
    log_sync_operation(auth.user_id, "download", "archive", True)
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/upload")
@limiter.limit("10/minute")
async def upload_backup(
    request: Request,
    auth: CurrentUser,
    orchestrator: Orchestrator,
    file: UploadFile = File(...),
    mode: str = Form("preview"),
):
    """
    Restore from an uploaded backup archive.

    mode=preview reports the diff without applying it; replace makes the
    user's data equal to the archive; merge inserts and updates only.
    """
    max_bytes = get_settings().max_upload_bytes
    archive = await file.read(max_bytes + 1)
    if len(archive) > max_bytes:
        return error_response(
            413, "FILE_TOO_LARGE", f"Backup exceeds the {max_bytes // (1024 * 1024)} MB limit"
        )
    outcome = await orchestrator.restore_from_backup(auth.user_id, archive, mode)
    return _restore_response(auth.user_id, "upload", outcome)


@router.get("/backups")
async def list_backups(
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """List the user's stored backups, newest first."""
    refs = await orchestrator.list_backups(auth.user_id)
    return {"backups": [BackupInfo(**ref.to_dict()) for ref in refs]}


@router.delete("/backups/{file_id}")
async def delete_backup(
    file_id: str,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    await orchestrator.delete_backup(auth.user_id, file_id)
    log_sync_operation(auth.user_id, "delete-backup", file_id, True)
    return {"success": True}


@router.post("/backups/{file_id}/restore")
@limiter.limit("10/minute")
async def restore_backup(
    request: Request,
    file_id: str,
    restore_request: RestoreRequest,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """Restore one of the user's stored backups."""
    outcome = await orchestrator.restore_from_file_ref(auth.user_id, file_id, restore_request.mode)
    return _restore_response(auth.user_id, file_id, outcome)


@router.post("/auto-restore")
async def auto_restore(
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """Restore the newest backup into an account that has no data yet."""
    result = await orchestrator.auto_restore_latest(auth.user_id)
    backup = result.get("backup", {}).get("name", "-")
    failed = "result" in result and not result["restored"]
    log_sync_operation(auth.user_id, "auto-restore", backup, not failed, result.get("reason"))
    if failed:
        error = result["result"].get("error", {})
        return error_response(
            status_for_code(error.get("code")), error.get("code"), error.get("message")
        )
    return {"success": True, **result}


@router.post("/restore-from-sheets")
@limiter.limit("10/minute")
async def restore_from_sheets(
    request: Request,
    restore_request: RestoreRequest,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """Restore from the user's spreadsheet mirror."""
    outcome = await orchestrator.restore_from_mirror(auth.user_id, restore_request.mode)
    return _restore_response(auth.user_id, SyncTarget.MIRROR.value, outcome)
