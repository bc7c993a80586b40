"""Tests for snapshot export and the backup archive codec."""

import io
import json
import zipfile

import pytest

from vroom.errors import MalformedSnapshotError, UnsupportedSnapshotVersionError
from vroom.storage.schema import SNAPSHOT_TABLES
from vroom.sync.snapshot import MANIFEST_NAME, SnapshotCodec, build_snapshot

from factories import vehicle_data


@pytest.fixture
def codec(storage):
    return SnapshotCodec(storage)


def rewrite_archive(archive: bytes, edit) -> bytes:
    """Decompress an archive, let ``edit`` change its JSON members, re-zip."""
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        members = {name: json.loads(zf.read(name)) for name in zf.namelist()}
    edit(members)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, document in members.items():
            zf.writestr(name, json.dumps(document))
    return buf.getvalue()


class TestExport:
    def test_export_reads_every_owned_table(self, codec, seeded):
        snapshot = codec.export(seeded)
        assert snapshot.user_id == seeded
        assert snapshot.counts() == {
            "user_settings": 1,
            "vehicles": 2,
            "vehicle_financing": 1,
            "vehicle_financing_payments": 1,
            "insurance_policies": 1,
            "expenses": 2,
        }
        assert [v["id"] for v in snapshot.records("vehicles")] == ["vehicle-1", "vehicle-2"]

    def test_export_excludes_other_users(self, codec, storage, seeded, other_user):
        storage.create_vehicle(other_user, vehicle_data("their-car"))
        snapshot = codec.export(seeded)
        assert "their-car" not in [v["id"] for v in snapshot.records("vehicles")]

    def test_export_empty_user(self, codec, user):
        snapshot = codec.export(user)
        assert snapshot.settings["user_id"] == user
        assert all(n == 0 for t, n in snapshot.counts().items() if t != "user_settings")

    def test_records_carry_python_types(self, codec, seeded):
        snapshot = codec.export(seeded)
        expense = next(e for e in snapshot.records("expenses") if e["id"] == "expense-1")
        assert expense["tags"] == ["commute"]
        assert expense["amount"] == 42.5
        financing = snapshot.records("vehicle_financing")[0]
        assert financing["is_active"] is True


class TestRoundTrip:
    def test_decode_of_encode_is_identity(self, codec, seeded):
        snapshot = codec.export(seeded)
        decoded = SnapshotCodec.decode(SnapshotCodec.encode(snapshot))
        assert decoded.user_id == snapshot.user_id
        assert decoded.created_at == snapshot.created_at
        assert decoded.normalized() == snapshot.normalized()

    def test_archive_layout(self, codec, seeded):
        archive = codec.export_archive(seeded)
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            names = set(zf.namelist())
            manifest = json.loads(zf.read(MANIFEST_NAME))
        assert MANIFEST_NAME in names
        assert {f"tables/{spec.name}.json" for spec in SNAPSHOT_TABLES} <= names
        assert manifest["format"] == "vroom-backup"
        assert manifest["format_version"] == 1
        assert [t["name"] for t in manifest["tables"]] == [spec.name for spec in SNAPSHOT_TABLES]


class TestDecodeRejects:
    def test_not_a_zip(self):
        with pytest.raises(MalformedSnapshotError, match="Not a valid backup archive"):
            SnapshotCodec.decode(b"definitely not a zip")

    def test_missing_manifest(self, codec, seeded):
        archive = rewrite_archive(codec.export_archive(seeded), lambda m: m.pop(MANIFEST_NAME))
        with pytest.raises(MalformedSnapshotError, match="missing manifest.json"):
            SnapshotCodec.decode(archive)

    def test_future_version(self, codec, seeded):
        def bump(members):
            members[MANIFEST_NAME]["format_version"] = 2

        with pytest.raises(UnsupportedSnapshotVersionError) as exc_info:
            SnapshotCodec.decode(rewrite_archive(codec.export_archive(seeded), bump))
        assert exc_info.value.code == "VERSION_MISMATCH"
        assert exc_info.value.found == 2

    def test_non_integer_version(self, codec, seeded):
        def stringify(members):
            members[MANIFEST_NAME]["format_version"] = "1"

        with pytest.raises(MalformedSnapshotError, match="Invalid format_version"):
            SnapshotCodec.decode(rewrite_archive(codec.export_archive(seeded), stringify))

    def test_row_count_mismatch(self, codec, seeded):
        def drop_row(members):
            members["tables/vehicles.json"]["records"].pop()

        with pytest.raises(MalformedSnapshotError, match="manifest lists 2 rows"):
            SnapshotCodec.decode(rewrite_archive(codec.export_archive(seeded), drop_row))

    def test_dangling_foreign_key(self, codec, seeded):
        def orphan(members):
            members["tables/expenses.json"]["records"][0]["vehicle_id"] = "vehicle-404"

        with pytest.raises(MalformedSnapshotError, match="references missing vehicles"):
            SnapshotCodec.decode(rewrite_archive(codec.export_archive(seeded), orphan))

    def test_wrong_column_type(self, codec, seeded):
        def corrupt(members):
            members["tables/vehicles.json"]["records"][0]["year"] = "twenty twenty"

        with pytest.raises(MalformedSnapshotError, match="year must be an integer"):
            SnapshotCodec.decode(rewrite_archive(codec.export_archive(seeded), corrupt))

    def test_unknown_field(self, codec, seeded):
        def extra(members):
            members["tables/vehicles.json"]["records"][0]["color"] = "red"

        with pytest.raises(MalformedSnapshotError, match="unknown fields: color"):
            SnapshotCodec.decode(rewrite_archive(codec.export_archive(seeded), extra))

    def test_duplicate_ids(self, codec, seeded):
        def duplicate(members):
            records = members["tables/vehicles.json"]["records"]
            records[1]["id"] = records[0]["id"]

        with pytest.raises(MalformedSnapshotError, match="duplicate id"):
            SnapshotCodec.decode(rewrite_archive(codec.export_archive(seeded), duplicate))

    def test_record_owned_by_someone_else(self, codec, seeded):
        def steal(members):
            members["tables/vehicles.json"]["records"][0]["user_id"] = "user-2"

        with pytest.raises(MalformedSnapshotError, match="belongs to 'user-2'"):
            SnapshotCodec.decode(rewrite_archive(codec.export_archive(seeded), steal))

    def test_missing_table(self, codec, seeded):
        def drop_table(members):
            manifest = members[MANIFEST_NAME]
            manifest["tables"] = [t for t in manifest["tables"] if t["name"] != "expenses"]

        with pytest.raises(MalformedSnapshotError, match="missing tables: expenses"):
            SnapshotCodec.decode(rewrite_archive(codec.export_archive(seeded), drop_table))


class TestBuildSnapshot:
    def test_missing_tables_are_empty(self):
        snapshot = build_snapshot("user-1", "2024-01-01T00:00:00+00:00", {})
        assert snapshot.counts()["vehicles"] == 0
        assert snapshot.settings is None

    def test_unknown_table(self):
        with pytest.raises(MalformedSnapshotError, match="Unknown tables: trips"):
            build_snapshot("user-1", "2024-01-01T00:00:00+00:00", {"trips": []})
