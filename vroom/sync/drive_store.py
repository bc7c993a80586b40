"""Google Drive backup store.

Archives live in the service account's Drive under
``<folder_name>/<user_folder_name(user_id)>/``. Calls go through an
authorized requests session against the Drive v3 REST API.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

from ..errors import BackupNotFoundError, RemoteUnavailableError
from ..types import FileRef, SyncTarget
from .backup_store import BackupStore, is_backup_name, user_folder_name

logger = logging.getLogger(__name__)

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.file"]
FILES_URL = "https://www.googleapis.com/drive/v3/files"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
ARCHIVE_MIME_TYPE = "application/zip"
DEFAULT_FOLDER_NAME = "Vroom Backups"

_FILE_FIELDS = "id,name,size,createdTime"
_PAGE_SIZE = 100

# Errors that mean "Drive could not be used right now"
_REMOTE_ERRORS = (requests.RequestException, GoogleAuthError, OSError)


def _quote(value: str) -> str:
    """Escape a literal for a Drive ``q`` expression."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def multipart_body(metadata: Dict[str, Any], data: bytes, boundary: str) -> bytes:
    """multipart/related body for a Drive upload: JSON metadata, then the archive."""
    head = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        f"Content-Type: {ARCHIVE_MIME_TYPE}\r\n\r\n"
    )
    return head.encode("utf-8") + data + f"\r\n--{boundary}--\r\n".encode("utf-8")


class DriveBackupStore(BackupStore):
    """Backup archives in Google Drive, one folder per user.

    ``session_factory`` returns an authorized requests session; the
    default builds one from a service account file. File ids are Drive
    file ids.
    """

    def __init__(
        self,
        credentials_file: Optional[str] = None,
        session_factory: Optional[Callable[[], AuthorizedSession]] = None,
        folder_name: str = DEFAULT_FOLDER_NAME,
        timeout_seconds: float = 30.0,
    ):
        if session_factory is None:
            if not credentials_file:
                raise ValueError("DriveBackupStore needs credentials_file or session_factory")

            def session_factory():
                credentials = service_account.Credentials.from_service_account_file(
                    credentials_file, scopes=DRIVE_SCOPES
                )
                return AuthorizedSession(credentials)

        self._session_factory = session_factory
        self._session = None
        self.folder_name = folder_name
        self.timeout_seconds = timeout_seconds
        self._folder_ids: Dict[Tuple[Optional[str], str], str] = {}

    def _request(self, method: str, url: str, missing: Optional[Exception] = None, **kwargs):
        if self._session is None:
            self._session = self._session_factory()
        response = self._session.request(method, url, timeout=self.timeout_seconds, **kwargs)
        if response.status_code == 404 and missing is not None:
            raise missing
        if response.status_code >= 400:
            raise RemoteUnavailableError(
                SyncTarget.BACKUP.value,
                f"Drive {method} returned {response.status_code}: {response.text[:200]}",
            )
        return response

    # -------------------------------------------------------------------------
    # Folders
    # -------------------------------------------------------------------------

    def _find_folder(self, name: str, parent_id: Optional[str]) -> Optional[str]:
        query = f"name = '{_quote(name)}' and mimeType = '{FOLDER_MIME_TYPE}' and trashed = false"
        if parent_id:
            query += f" and '{_quote(parent_id)}' in parents"
        response = self._request("GET", FILES_URL, params={"q": query, "fields": "files(id,name)", "pageSize": 10})
        files = response.json().get("files", [])
        return files[0]["id"] if files else None

    def _create_folder(self, name: str, parent_id: Optional[str]) -> str:
        metadata: Dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            metadata["parents"] = [parent_id]
        response = self._request("POST", FILES_URL, params={"fields": "id"}, json=metadata)
        logger.info(f"Created Drive folder {name!r}")
        return response.json()["id"]

    def _folder(self, name: str, parent_id: Optional[str], create: bool) -> Optional[str]:
        key = (parent_id, name)
        if key not in self._folder_ids:
            folder_id = self._find_folder(name, parent_id)
            if folder_id is None:
                if not create:
                    return None
                folder_id = self._create_folder(name, parent_id)
            self._folder_ids[key] = folder_id
        return self._folder_ids[key]

    def _user_folder(self, user_id: str, create: bool) -> Optional[str]:
        root_id = self._folder(self.folder_name, None, create)
        if root_id is None:
            return None
        return self._folder(user_folder_name(user_id), root_id, create)

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    @staticmethod
    def _ref(user_id: str, item: Dict[str, Any]) -> FileRef:
        return FileRef(
            file_id=item["id"],
            user_id=user_id,
            name=item["name"],
            size=int(item.get("size") or 0),
            created_at=item.get("createdTime"),
        )

    @staticmethod
    def _file_url(ref: FileRef) -> str:
        return f"{FILES_URL}/{quote(ref.file_id, safe='')}"

    @staticmethod
    def _not_found(ref: FileRef) -> BackupNotFoundError:
        return BackupNotFoundError(f"Backup {ref.name!r} not found", {"file_id": ref.file_id})

    def _upload_sync(self, user_id: str, name: str, data: bytes) -> FileRef:
        folder_id = self._user_folder(user_id, create=True)
        boundary = uuid.uuid4().hex
        metadata = {"name": name, "parents": [folder_id], "mimeType": ARCHIVE_MIME_TYPE}
        try:
            response = self._request(
                "POST",
                UPLOAD_URL,
                params={"uploadType": "multipart", "fields": _FILE_FIELDS},
                data=multipart_body(metadata, data, boundary),
                headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            )
        except RemoteUnavailableError:
            # The cached folder may have been removed by hand
            self._folder_ids.clear()
            raise
        return self._ref(user_id, response.json())

    def _list_sync(self, user_id: str) -> List[FileRef]:
        folder_id = self._user_folder(user_id, create=False)
        if folder_id is None:
            return []
        params = {
            "q": f"'{_quote(folder_id)}' in parents and trashed = false",
            "fields": f"nextPageToken,files({_FILE_FIELDS})",
            "pageSize": _PAGE_SIZE,
        }
        refs = []
        while True:
            body = self._request("GET", FILES_URL, params=params).json()
            refs.extend(self._ref(user_id, item) for item in body.get("files", []) if is_backup_name(item["name"]))
            token = body.get("nextPageToken")
            if not token:
                break
            params = {**params, "pageToken": token}
        refs.sort(key=lambda r: r.name, reverse=True)
        return refs

    def _fetch_sync(self, ref: FileRef) -> bytes:
        response = self._request("GET", self._file_url(ref), missing=self._not_found(ref), params={"alt": "media"})
        return response.content

    def _delete_sync(self, ref: FileRef) -> None:
        self._request("DELETE", self._file_url(ref), missing=self._not_found(ref))

    async def _call(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except _REMOTE_ERRORS as e:
            raise RemoteUnavailableError(SyncTarget.BACKUP.value, str(e)) from e

    async def upload(self, user_id: str, name: str, data: bytes) -> FileRef:
        if not is_backup_name(name):
            raise ValueError(f"Invalid backup name: {name!r}")
        ref = await self._call(self._upload_sync, user_id, name, data)
        logger.info(f"Uploaded backup {name} to Drive for {user_id} ({ref.size} bytes)")
        return ref

    async def list(self, user_id: str) -> List[FileRef]:
        return await self._call(self._list_sync, user_id)

    async def fetch(self, ref: FileRef) -> bytes:
        return await self._call(self._fetch_sync, ref)

    async def delete(self, ref: FileRef) -> None:
        await self._call(self._delete_sync, ref)
        logger.info(f"Deleted backup {ref.name} from Drive for {ref.user_id}")
