"""Backup archive storage.

BackupStore is the only interface the sync engine uses to reach the
remote blob store. LocalBackupStore keeps archives on a filesystem
(a mounted drive, a synced folder) with one directory per user.
"""

import asyncio
import hashlib
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from ..errors import BackupNotFoundError, RemoteUnavailableError
from ..types import FileRef, SyncTarget

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "vroom-backup-"
_BACKUP_NAME_RE = re.compile(r"^vroom-backup-[0-9TZ\-]+\.zip$")


def backup_name(now: Optional[datetime] = None) -> str:
    """Archive file name for a backup taken at ``now``.

    Names sort chronologically: vroom-backup-2024-01-31T08-15-00-123456Z.zip
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return f"{BACKUP_PREFIX}{now.strftime('%Y-%m-%dT%H-%M-%S-%f')}Z.zip"


def is_backup_name(name: str) -> bool:
    return bool(_BACKUP_NAME_RE.match(name))


def user_folder_name(user_id: str) -> str:
    """Folder name holding a user's archives.

    User ids come from the identity provider and may contain any
    character (``auth0|abc123``), so the folder is named by their digest.
    """
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()


class BackupStore(ABC):
    """Remote blob store for backup archives."""

    @abstractmethod
    async def upload(self, user_id: str, name: str, data: bytes) -> FileRef:
        """Store an archive and return a reference to it."""

    @abstractmethod
    async def list(self, user_id: str) -> List[FileRef]:
        """List a user's archives, newest first."""

    @abstractmethod
    async def fetch(self, ref: FileRef) -> bytes:
        """Return the bytes of an archive."""

    @abstractmethod
    async def delete(self, ref: FileRef) -> None:
        """Delete an archive."""

    async def find(self, user_id: str, file_id: str) -> FileRef:
        """Resolve one of the user's archives by id."""
        for ref in await self.list(user_id):
            if ref.file_id == file_id:
                return ref
        raise BackupNotFoundError(f"Backup {file_id!r} not found", {"file_id": file_id})


class LocalBackupStore(BackupStore):
    """Filesystem-backed store: ``<root>/<user_folder_name(user_id)>/<name>``.

    File ids are the archive names. Filesystem errors map to
    RemoteUnavailableError so callers treat them like any unreachable
    remote.
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    def _user_dir(self, user_id: str) -> Path:
        return self.root / user_folder_name(user_id)

    def _path(self, ref: FileRef) -> Path:
        if not is_backup_name(ref.name):
            raise BackupNotFoundError(f"Backup {ref.name!r} not found", {"file_id": ref.file_id})
        return self._user_dir(ref.user_id) / ref.name

    def _ref(self, user_id: str, path: Path) -> FileRef:
        stat = path.stat()
        return FileRef(
            file_id=path.name,
            user_id=user_id,
            name=path.name,
            size=stat.st_size,
            created_at=datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat(),
        )

    async def upload(self, user_id: str, name: str, data: bytes) -> FileRef:
        if not is_backup_name(name):
            raise ValueError(f"Invalid backup name: {name!r}")

        def _write() -> FileRef:
            directory = self._user_dir(user_id)
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / name
            tmp = path.with_suffix(".part")
            tmp.write_bytes(data)
            tmp.replace(path)
            return self._ref(user_id, path)

        try:
            ref = await asyncio.to_thread(_write)
        except OSError as e:
            raise RemoteUnavailableError(SyncTarget.BACKUP.value, str(e)) from e
        logger.info(f"Uploaded backup {name} for {user_id} ({ref.size} bytes)")
        return ref

    async def list(self, user_id: str) -> List[FileRef]:
        def _scan() -> List[FileRef]:
            directory = self._user_dir(user_id)
            if not directory.is_dir():
                return []
            refs = [self._ref(user_id, p) for p in directory.iterdir() if p.is_file() and is_backup_name(p.name)]
            refs.sort(key=lambda r: r.name, reverse=True)
            return refs

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            raise RemoteUnavailableError(SyncTarget.BACKUP.value, str(e)) from e

    async def fetch(self, ref: FileRef) -> bytes:
        path = self._path(ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise BackupNotFoundError(f"Backup {ref.name!r} not found", {"file_id": ref.file_id}) from None
        except OSError as e:
            raise RemoteUnavailableError(SyncTarget.BACKUP.value, str(e)) from e

    async def delete(self, ref: FileRef) -> None:
        path = self._path(ref)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            raise BackupNotFoundError(f"Backup {ref.name!r} not found", {"file_id": ref.file_id}) from None
        except OSError as e:
            raise RemoteUnavailableError(SyncTarget.BACKUP.value, str(e)) from e
        logger.info(f"Deleted backup {ref.name} for {ref.user_id}")


async def prune_backups(store: BackupStore, user_id: str, keep: int) -> List[FileRef]:
    """Delete all but the newest ``keep`` archives. Best effort.

    Returns the archives that were deleted.
    """
    if keep < 1:
        return []
    try:
        refs = await store.list(user_id)
    except Exception as e:
        logger.warning(f"Backup retention skipped for {user_id}: {e}")
        return []
    deleted = []
    for ref in refs[keep:]:
        try:
            await store.delete(ref)
            deleted.append(ref)
        except Exception as e:
            logger.warning(f"Failed to delete old backup {ref.name} for {user_id}: {e}")
    return deleted
