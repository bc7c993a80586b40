"""Tests for the Google Drive backup store against a fake Drive v3 session."""

import json
import re
from datetime import datetime, timedelta, timezone
from urllib.parse import unquote

import pytest
import requests

from vroom.errors import BackupNotFoundError, RemoteUnavailableError
from vroom.sync.backup_store import backup_name, prune_backups, user_folder_name
from vroom.sync.drive_store import FILES_URL, FOLDER_MIME_TYPE, UPLOAD_URL, DriveBackupStore
from vroom.sync.orchestrator import SyncOrchestrator

from factories import vehicle_data

T0 = datetime(2024, 1, 31, 8, 15, tzinfo=timezone.utc)

_LITERAL = r"'((?:[^'\\]|\\.)*)'"


def unescape(value):
    return re.sub(r"\\(.)", r"\1", value)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, content=b""):
        self.status_code = status_code
        self.payload = payload
        self.content = content
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        return self.payload


class FakeDriveSession:
    """Just enough of Drive v3 for folders and file blobs."""

    def __init__(self, page_size=2):
        self.files = {}
        self.page_size = page_size
        self.calls = []
        self.fail_status = None
        self.raise_error = None
        self._next_id = 0

    def add(self, name, parent=None, mime_type="application/zip", content=b""):
        self._next_id += 1
        file_id = f"file-{self._next_id}"
        self.files[file_id] = {
            "id": file_id,
            "name": name,
            "mimeType": mime_type,
            "parents": [parent] if parent else [],
            "size": str(len(content)),
            "createdTime": (T0 + timedelta(seconds=self._next_id)).isoformat(),
            "content": content,
        }
        return self.files[file_id]

    def folders(self):
        return [f for f in self.files.values() if f["mimeType"] == FOLDER_MIME_TYPE]

    def request(self, method, url, params=None, data=None, json=None, headers=None, timeout=None):
        self.calls.append((method, url, params))
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail_status is not None:
            return FakeResponse(self.fail_status, {"error": "backend error"})

        params = params or {}
        if url == UPLOAD_URL and method == "POST":
            return self._upload(data, headers)
        if url == FILES_URL and method == "POST":
            item = self.add(json["name"], (json.get("parents") or [None])[0], json["mimeType"])
            return FakeResponse(payload={"id": item["id"]})
        if url == FILES_URL and method == "GET":
            return self._search(params)

        file_id = unquote(url[len(FILES_URL) + 1 :])
        if file_id not in self.files:
            return FakeResponse(404, {"error": "notFound"})
        if method == "DELETE":
            del self.files[file_id]
            return FakeResponse(204)
        return FakeResponse(content=self.files[file_id]["content"])

    def _upload(self, data, headers):
        boundary = headers["Content-Type"].split("boundary=")[1]
        parts = data.split(f"--{boundary}".encode())
        bodies = [part.partition(b"\r\n\r\n")[2][:-2] for part in parts[1:3]]
        metadata = json.loads(bodies[0])
        item = self.add(metadata["name"], metadata["parents"][0], metadata["mimeType"], bodies[1])
        return FakeResponse(payload=self._public(item))

    def _search(self, params):
        query = params["q"]
        matches = list(self.files.values())
        name = re.search(rf"name = {_LITERAL}", query)
        if name:
            matches = [f for f in matches if f["name"] == unescape(name.group(1))]
        parent = re.search(rf"{_LITERAL} in parents", query)
        if parent:
            matches = [f for f in matches if unescape(parent.group(1)) in f["parents"]]
        else:
            matches = [f for f in matches if not f["parents"]]
        mime_type = re.search(rf"mimeType = {_LITERAL}", query)
        if mime_type:
            matches = [f for f in matches if f["mimeType"] == unescape(mime_type.group(1))]

        start = int(params.get("pageToken", 0))
        end = start + min(self.page_size, params.get("pageSize", self.page_size))
        body = {"files": [self._public(f) for f in matches[start:end]]}
        if end < len(matches):
            body["nextPageToken"] = str(end)
        return FakeResponse(payload=body)

    @staticmethod
    def _public(item):
        return {k: v for k, v in item.items() if k not in ("content", "parents", "mimeType")}


@pytest.fixture
def session():
    return FakeDriveSession()


@pytest.fixture
def drive_store(session):
    return DriveBackupStore(session_factory=lambda: session)


class TestDriveBackupStore:
    def test_needs_credentials(self):
        with pytest.raises(ValueError, match="credentials_file or session_factory"):
            DriveBackupStore()

    @pytest.mark.asyncio
    async def test_upload_list_fetch(self, drive_store):
        ref = await drive_store.upload("user-1", backup_name(T0), b"archive-bytes")

        assert ref.name == backup_name(T0)
        assert ref.size == len(b"archive-bytes")
        assert ref.created_at is not None
        assert await drive_store.list("user-1") == [ref]
        assert await drive_store.fetch(ref) == b"archive-bytes"

    @pytest.mark.asyncio
    async def test_folder_per_user(self, drive_store, session):
        await drive_store.upload("user-1", backup_name(T0), b"a")
        await drive_store.upload("user-1", backup_name(T0 + timedelta(seconds=1)), b"b")
        await drive_store.upload("user-2", backup_name(T0), b"c")

        folders = {f["name"]: f for f in session.folders()}
        assert set(folders) == {"Vroom Backups", user_folder_name("user-1"), user_folder_name("user-2")}
        root_id = folders["Vroom Backups"]["id"]
        assert folders[user_folder_name("user-1")]["parents"] == [root_id]
        assert len(await drive_store.list("user-1")) == 2
        assert len(await drive_store.list("user-2")) == 1

    @pytest.mark.asyncio
    async def test_reuses_existing_folders(self, session):
        root = session.add("Vroom Backups", mime_type=FOLDER_MIME_TYPE)
        mine = session.add(user_folder_name("user-1"), root["id"], FOLDER_MIME_TYPE)
        old = session.add(backup_name(T0), mine["id"], content=b"old")
        store = DriveBackupStore(session_factory=lambda: session)

        [ref] = await store.list("user-1")

        assert ref.file_id == old["id"]
        assert len(session.folders()) == 2

    @pytest.mark.asyncio
    async def test_list_unknown_user_creates_nothing(self, drive_store, session):
        assert await drive_store.list("nobody") == []
        assert session.folders() == []

    @pytest.mark.asyncio
    async def test_list_newest_first_across_pages(self, drive_store, session):
        for s in (0, 60, 30, 90, 10):
            await drive_store.upload("user-1", backup_name(T0 + timedelta(seconds=s)), b"x")
        folder = next(f for f in session.folders() if f["name"] == user_folder_name("user-1"))
        session.add("notes.txt", folder["id"], "text/plain")

        names = [r.name for r in await drive_store.list("user-1")]

        assert len(names) == 5
        assert names == sorted(names, reverse=True)
        assert any("pageToken" in (params or {}) for _, _, params in session.calls)

    @pytest.mark.asyncio
    async def test_provider_user_id(self, drive_store, session):
        ref = await drive_store.upload("auth0|abc123", backup_name(T0), b"x")
        assert await drive_store.find("auth0|abc123", ref.file_id) == ref
        assert user_folder_name("auth0|abc123") in {f["name"] for f in session.folders()}

    @pytest.mark.asyncio
    async def test_folder_name_with_quote(self, session):
        await DriveBackupStore(session_factory=lambda: session, folder_name="Sam's Backups").upload(
            "user-1", backup_name(T0), b"x"
        )
        store = DriveBackupStore(session_factory=lambda: session, folder_name="Sam's Backups")

        assert len(await store.list("user-1")) == 1
        assert [f["name"] for f in session.folders()].count("Sam's Backups") == 1

    @pytest.mark.asyncio
    async def test_delete_and_missing_file(self, drive_store):
        ref = await drive_store.upload("user-1", backup_name(T0), b"x")
        await drive_store.delete(ref)

        assert await drive_store.list("user-1") == []
        with pytest.raises(BackupNotFoundError):
            await drive_store.fetch(ref)
        with pytest.raises(BackupNotFoundError):
            await drive_store.delete(ref)

    @pytest.mark.asyncio
    async def test_rejects_bad_name(self, drive_store):
        with pytest.raises(ValueError, match="Invalid backup name"):
            await drive_store.upload("user-1", "evil.sh", b"x")

    @pytest.mark.asyncio
    async def test_server_error_is_remote_unavailable(self, drive_store, session):
        session.fail_status = 503
        with pytest.raises(RemoteUnavailableError) as exc_info:
            await drive_store.upload("user-1", backup_name(T0), b"x")
        assert exc_info.value.target == "backup"

    @pytest.mark.asyncio
    async def test_transport_error_is_remote_unavailable(self, drive_store, session):
        session.raise_error = requests.ConnectionError("connection reset")
        with pytest.raises(RemoteUnavailableError):
            await drive_store.list("user-1")

    @pytest.mark.asyncio
    async def test_missing_credentials_file_is_remote_unavailable(self, tmp_path):
        store = DriveBackupStore(credentials_file=str(tmp_path / "missing.json"))
        with pytest.raises(RemoteUnavailableError):
            await store.list("user-1")

    @pytest.mark.asyncio
    async def test_retention(self, drive_store):
        for d in range(4):
            await drive_store.upload("user-1", backup_name(T0 + timedelta(days=d)), b"x")

        deleted = await prune_backups(drive_store, "user-1", keep=2)

        assert len(deleted) == 2
        remaining = [r.name for r in await drive_store.list("user-1")]
        assert remaining == [backup_name(T0 + timedelta(days=3)), backup_name(T0 + timedelta(days=2))]


class TestDriveWithOrchestrator:
    @pytest.mark.asyncio
    async def test_sync_then_restore(self, storage, seeded, drive_store):
        orchestrator = SyncOrchestrator(storage, backup_store=drive_store)

        outcome = await orchestrator.sync(seeded, ["backup"])
        assert outcome.success

        [ref] = await orchestrator.list_backups(seeded)
        storage.create_vehicle(seeded, vehicle_data("vehicle-3"))
        restored = await orchestrator.restore_from_file_ref(seeded, ref.file_id, "replace")

        assert restored.success
        assert [v["id"] for v in storage.list_vehicles(seeded)] == ["vehicle-1", "vehicle-2"]
