"""Snapshot export and the backup archive codec.

Archive layout (zip, deflated):

    manifest.json             format, format_version, user_id, created_at,
                              tables: [{name, file, rows}]
    tables/<table>.json       {"table": name, "columns": [...], "records": [...]}

``decode`` validates everything before returning: the format version,
per-table row counts, column types, unique keys, ownership of every
top-level record and that every foreign key resolves inside the archive.
It never touches storage.
"""

import io
import json
import logging
import zipfile
from typing import Any, Dict, List, Tuple

from ..errors import MalformedSnapshotError, UnsupportedSnapshotVersionError
from ..storage.schema import SNAPSHOT_TABLES, TABLES_BY_NAME, TableSpec
from ..storage.sqlite import read_owned
from ..types import ARCHIVE_FORMAT, ARCHIVE_FORMAT_VERSION, Snapshot, utc_now

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"

# Refuse archives that would inflate past this (zip bomb guard)
MAX_UNCOMPRESSED_BYTES = 256 * 1024 * 1024


class SnapshotCodec:
    """Reads a user's dataset into a Snapshot and (de)serializes archives."""

    def __init__(self, storage):
        self._storage = storage

    def export(self, user_id: str) -> Snapshot:
        """Read every owned record for ``user_id`` in one read transaction.

        The result is fully materialized, so no storage lock is held once
        this returns.
        """
        tables: Dict[str, Tuple[Dict[str, Any], ...]] = {}
        with self._storage.transaction() as conn:
            created_at = utc_now()
            for spec in SNAPSHOT_TABLES:
                tables[spec.name] = tuple(read_owned(conn, spec, user_id))
        snapshot = Snapshot(user_id=user_id, created_at=created_at, tables=tables)
        logger.debug(f"Exported snapshot for {user_id}: {snapshot.counts()}")
        return snapshot

    def export_archive(self, user_id: str) -> bytes:
        return self.encode(self.export(user_id))

    @staticmethod
    def encode(snapshot: Snapshot) -> bytes:
        manifest = {
            "format": ARCHIVE_FORMAT,
            "format_version": ARCHIVE_FORMAT_VERSION,
            "user_id": snapshot.user_id,
            "created_at": snapshot.created_at,
            "tables": [],
        }
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for spec in SNAPSHOT_TABLES:
                records = list(snapshot.records(spec.name))
                path = f"tables/{spec.name}.json"
                document = {
                    "table": spec.name,
                    "columns": list(spec.column_names),
                    "records": records,
                }
                zf.writestr(path, json.dumps(document, indent=2, sort_keys=True))
                manifest["tables"].append({"name": spec.name, "file": path, "rows": len(records)})
            zf.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2))
        return buf.getvalue()

    @staticmethod
    def decode(data: bytes) -> Snapshot:
        """Parse and validate an archive.

        Raises:
            UnsupportedSnapshotVersionError: Unknown or future format version
            MalformedSnapshotError: Any other structural violation
        """
        try:
            zf = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, ValueError) as e:
            raise MalformedSnapshotError(f"Not a valid backup archive: {e}") from e

        with zf:
            if sum(info.file_size for info in zf.infolist()) > MAX_UNCOMPRESSED_BYTES:
                raise MalformedSnapshotError("Backup archive is too large")
            manifest = _read_json(zf, MANIFEST_NAME)
            user_id, created_at, entries = _check_manifest(manifest)
            tables = {}
            for entry in entries:
                spec = TABLES_BY_NAME[entry["name"]]
                tables[spec.name] = _read_table(zf, spec, entry)

        _check_integrity(user_id, tables)
        return Snapshot(user_id=user_id, created_at=created_at, tables=tables)


def _read_json(zf: zipfile.ZipFile, name: str) -> Any:
    try:
        raw = zf.read(name)
    except KeyError:
        raise MalformedSnapshotError(f"Archive is missing {name}") from None
    except (zipfile.BadZipFile, RuntimeError, OSError) as e:
        raise MalformedSnapshotError(f"Could not read {name}: {e}") from e
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedSnapshotError(f"{name} is not valid JSON: {e}") from e


def _check_manifest(manifest: Any) -> Tuple[str, str, List[Dict[str, Any]]]:
    if not isinstance(manifest, dict):
        raise MalformedSnapshotError("Manifest must be a JSON object")
    if manifest.get("format") != ARCHIVE_FORMAT:
        raise MalformedSnapshotError(f"Unknown archive format {manifest.get('format')!r}")

    version = manifest.get("format_version")
    if isinstance(version, bool) or not isinstance(version, int):
        raise MalformedSnapshotError(f"Invalid format_version {version!r}")
    if version != ARCHIVE_FORMAT_VERSION:
        raise UnsupportedSnapshotVersionError(version, ARCHIVE_FORMAT_VERSION)

    user_id = manifest.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        raise MalformedSnapshotError("Manifest has no user_id")
    created_at = manifest.get("created_at")
    if not isinstance(created_at, str):
        raise MalformedSnapshotError("Manifest has no created_at")

    entries = manifest.get("tables")
    if not isinstance(entries, list):
        raise MalformedSnapshotError("Manifest has no table list")
    seen = set()
    for entry in entries:
        if not isinstance(entry, dict):
            raise MalformedSnapshotError("Manifest table entries must be objects")
        name = entry.get("name")
        if name not in TABLES_BY_NAME:
            raise MalformedSnapshotError(f"Unknown table {name!r} in manifest")
        if name in seen:
            raise MalformedSnapshotError(f"Table {name!r} listed twice in manifest")
        rows = entry.get("rows")
        if isinstance(rows, bool) or not isinstance(rows, int) or rows < 0:
            raise MalformedSnapshotError(f"Invalid row count for {name}")
        if not isinstance(entry.get("file"), str):
            raise MalformedSnapshotError(f"No file given for {name}")
        seen.add(name)
    missing = set(TABLES_BY_NAME) - seen
    if missing:
        raise MalformedSnapshotError(f"Manifest is missing tables: {', '.join(sorted(missing))}")
    return user_id, created_at, entries


def _read_table(zf: zipfile.ZipFile, spec: TableSpec, entry: Dict[str, Any]) -> Tuple[Dict[str, Any], ...]:
    document = _read_json(zf, entry["file"])
    if not isinstance(document, dict) or not isinstance(document.get("records"), list):
        raise MalformedSnapshotError(f"{entry['file']} has no record list")
    raw_records = document["records"]
    if len(raw_records) != entry["rows"]:
        raise MalformedSnapshotError(
            f"{spec.name}: manifest lists {entry['rows']} rows, archive holds {len(raw_records)}"
        )
    return validate_records(spec, raw_records)


def build_snapshot(user_id: str, created_at: str, raw_tables: Dict[str, List[Any]]) -> Snapshot:
    """Validate loosely-typed per-table records into a Snapshot.

    Used for sources other than archives (the spreadsheet mirror). Missing
    tables are treated as empty.

    Raises:
        MalformedSnapshotError: On any type or integrity violation
    """
    unknown = set(raw_tables) - set(TABLES_BY_NAME)
    if unknown:
        raise MalformedSnapshotError(f"Unknown tables: {', '.join(sorted(unknown))}")
    tables = {
        spec.name: validate_records(spec, raw_tables.get(spec.name, []))
        for spec in SNAPSHOT_TABLES
    }
    _check_integrity(user_id, tables)
    return Snapshot(user_id=user_id, created_at=created_at, tables=tables)


def validate_records(spec: TableSpec, raw_records: List[Any]) -> Tuple[Dict[str, Any], ...]:
    known = set(spec.column_names)
    records = []
    keys = set()
    for i, raw in enumerate(raw_records):
        if not isinstance(raw, dict):
            raise MalformedSnapshotError(f"{spec.name}[{i}] is not an object")
        extra = set(raw) - known
        if extra:
            raise MalformedSnapshotError(f"{spec.name}[{i}] has unknown fields: {', '.join(sorted(extra))}")
        record = {}
        for column in spec.columns:
            try:
                record[column.name] = column.coerce(raw.get(column.name))
            except ValueError as e:
                raise MalformedSnapshotError(f"{spec.name}[{i}]: {e}") from e
        key = record[spec.key]
        if key in keys:
            raise MalformedSnapshotError(f"{spec.name}: duplicate {spec.key} {key!r}")
        keys.add(key)
        records.append(record)
    return tuple(records)


def _check_integrity(user_id: str, tables: Dict[str, Tuple[Dict[str, Any], ...]]) -> None:
    """Every record must belong to ``user_id`` through exactly one chain of parents."""
    settings = tables["user_settings"]
    if len(settings) > 1:
        raise MalformedSnapshotError("Snapshot holds more than one settings record")
    ids = {}
    for spec in SNAPSHOT_TABLES:
        records = tables[spec.name]
        if spec.owner_column:
            for r in records:
                if r[spec.owner_column] != user_id:
                    raise MalformedSnapshotError(
                        f"{spec.name} {r[spec.key]!r} belongs to {r[spec.owner_column]!r}, not {user_id!r}"
                    )
        if spec.parent:
            fk, parent_table = spec.parent
            parent_ids = ids[parent_table]
            for r in records:
                if r[fk] not in parent_ids:
                    raise MalformedSnapshotError(
                        f"{spec.name} {r['id']!r} references missing {parent_table} {r[fk]!r}"
                    )
        ids[spec.name] = {r[spec.key] for r in records}
