"""Spreadsheet mirror of a user's dataset.

The mirror is for human inspection: one worksheet per snapshot table plus
a Metadata worksheet. It is best-effort and never authoritative, but it
can be read back into a Snapshot for a restore.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import gspread
from google.auth.exceptions import GoogleAuthError

from ..errors import MalformedSnapshotError, RemoteUnavailableError
from ..storage.schema import SNAPSHOT_TABLES, Column, TableSpec
from ..types import MirrorRef, Snapshot, SyncTarget, utc_now
from .snapshot import build_snapshot

logger = logging.getLogger(__name__)

WORKSHEET_TITLES: Dict[str, str] = {
    "user_settings": "Settings",
    "vehicles": "Vehicles",
    "vehicle_financing": "Vehicle Financing",
    "vehicle_financing_payments": "Vehicle Financing Payments",
    "insurance_policies": "Insurance Policies",
    "expenses": "Expenses",
}
METADATA_TITLE = "Metadata"

_TRUE_STRINGS = frozenset({"true", "1", "yes"})
_FALSE_STRINGS = frozenset({"false", "0", "no"})

# Errors that mean "the spreadsheet service could not be used right now"
_REMOTE_ERRORS = (gspread.exceptions.GSpreadException, GoogleAuthError, OSError)


class TabularMirror(ABC):
    """A spreadsheet-like projection of snapshots."""

    @abstractmethod
    async def write(self, user_id: str, snapshot: Snapshot) -> MirrorRef:
        """Project ``snapshot`` into the user's spreadsheet."""

    @abstractmethod
    async def read(self, user_id: str, spreadsheet_id: Optional[str] = None) -> Snapshot:
        """Read the user's spreadsheet back into a validated Snapshot."""


def spreadsheet_title(user_id: str) -> str:
    return f"Vroom Data - {user_id}"


# =============================================================================
# Cell conversion
# =============================================================================


def to_cell(column: Column, value: Any) -> Any:
    """Render a record value for a sheet cell."""
    if value is None:
        return ""
    if column.kind == "bool":
        return "TRUE" if value else "FALSE"
    if column.kind == "json":
        return json.dumps(value)
    return value


def from_cell(column: Column, raw: Any) -> Any:
    """Coerce a sheet cell back to the column's record type.

    Raises:
        ValueError: If the cell cannot be read as the column's type
    """
    if raw is None:
        return None
    text = str(raw).strip()
    if text == "":
        return "" if column.kind == "text" and not column.nullable else None
    if column.kind == "integer":
        number = float(text.replace(",", ""))
        if not number.is_integer():
            raise ValueError(f"{column.name}: {text!r} is not a whole number")
        return int(number)
    if column.kind == "real":
        return float(text.replace(",", ""))
    if column.kind == "bool":
        lowered = text.lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"{column.name}: {text!r} is not a boolean")
    if column.kind == "json":
        return json.loads(text)
    return text


def table_to_values(spec: TableSpec, records) -> List[List[Any]]:
    header = list(spec.column_names)
    rows = [[to_cell(c, r.get(c.name)) for c in spec.columns] for r in records]
    return [header] + rows


def values_to_records(spec: TableSpec, values: List[List[Any]]) -> List[Dict[str, Any]]:
    """Turn a worksheet's values (header row first) into loosely-typed records."""
    if not values:
        return []
    header = [str(h).strip() for h in values[0]]
    unknown = [h for h in header if h and h not in spec.column_names]
    if unknown:
        raise MalformedSnapshotError(f"{spec.name}: unknown columns {', '.join(unknown)}")
    records = []
    for line, row in enumerate(values[1:], start=2):
        if not any(str(cell).strip() for cell in row):
            continue
        record = {}
        for index, name in enumerate(header):
            if not name:
                continue
            cell = row[index] if index < len(row) else ""
            try:
                record[name] = from_cell(spec.column(name), cell)
            except (ValueError, json.JSONDecodeError) as e:
                raise MalformedSnapshotError(f"{spec.name} row {line}: {e}") from e
        records.append(record)
    return records


# =============================================================================
# Google Sheets
# =============================================================================


class SheetsMirror(TabularMirror):
    """Google Sheets mirror using gspread.

    ``client_factory`` returns an authorized gspread client; the default
    builds one from a service account file.
    """

    def __init__(
        self,
        credentials_file: Optional[str] = None,
        client_factory: Optional[Callable[[], gspread.Client]] = None,
    ):
        if client_factory is None:
            if not credentials_file:
                raise ValueError("SheetsMirror needs credentials_file or client_factory")

            def client_factory():
                return gspread.service_account(filename=credentials_file)

        self._client_factory = client_factory

    def _open(self, client: gspread.Client, user_id: str, spreadsheet_id: Optional[str], create: bool):
        if spreadsheet_id:
            return client.open_by_key(spreadsheet_id)
        title = spreadsheet_title(user_id)
        try:
            return client.open(title)
        except gspread.exceptions.SpreadsheetNotFound:
            if not create:
                raise
            logger.info(f"Creating spreadsheet {title!r}")
            return client.create(title)

    @staticmethod
    def _worksheet(spreadsheet, title: str, rows: int, cols: int):
        try:
            return spreadsheet.worksheet(title)
        except gspread.exceptions.WorksheetNotFound:
            return spreadsheet.add_worksheet(title=title, rows=max(rows, 1), cols=max(cols, 1))

    def _write_sync(self, user_id: str, snapshot: Snapshot) -> MirrorRef:
        settings = snapshot.settings or {}
        client = self._client_factory()
        spreadsheet = self._open(client, user_id, settings.get("google_sheets_spreadsheet_id"), create=True)

        titles = []
        for spec in SNAPSHOT_TABLES:
            title = WORKSHEET_TITLES[spec.name]
            values = table_to_values(spec, snapshot.records(spec.name))
            worksheet = self._worksheet(spreadsheet, title, len(values), len(spec.columns))
            worksheet.clear()
            worksheet.update(values=values, range_name="A1", value_input_option="RAW")
            titles.append(title)

        metadata = [
            ["user_id", "snapshot_created_at", "written_at", "format_version"],
            [user_id, snapshot.created_at, utc_now(), snapshot.format_version],
        ]
        worksheet = self._worksheet(spreadsheet, METADATA_TITLE, 2, 4)
        worksheet.clear()
        worksheet.update(values=metadata, range_name="A1", value_input_option="RAW")
        titles.append(METADATA_TITLE)

        return MirrorRef(spreadsheet_id=spreadsheet.id, url=spreadsheet.url, worksheets=titles)

    def _read_sync(self, user_id: str, spreadsheet_id: Optional[str]) -> Snapshot:
        client = self._client_factory()
        spreadsheet = self._open(client, user_id, spreadsheet_id, create=False)
        raw_tables = {}
        for spec in SNAPSHOT_TABLES:
            try:
                worksheet = spreadsheet.worksheet(WORKSHEET_TITLES[spec.name])
            except gspread.exceptions.WorksheetNotFound:
                continue
            raw_tables[spec.name] = values_to_records(spec, worksheet.get_all_values())

        created_at = utc_now()
        try:
            metadata = spreadsheet.worksheet(METADATA_TITLE).get_all_values()
            if len(metadata) > 1:
                row = dict(zip(metadata[0], metadata[1]))
                if row.get("user_id") and row["user_id"] != user_id:
                    raise MalformedSnapshotError("Spreadsheet belongs to a different user")
                created_at = row.get("snapshot_created_at") or created_at
        except gspread.exceptions.WorksheetNotFound:
            pass
        return build_snapshot(user_id, created_at, raw_tables)

    async def write(self, user_id: str, snapshot: Snapshot) -> MirrorRef:
        try:
            ref = await asyncio.to_thread(self._write_sync, user_id, snapshot)
        except _REMOTE_ERRORS as e:
            raise RemoteUnavailableError(SyncTarget.MIRROR.value, str(e)) from e
        logger.info(f"Mirrored snapshot for {user_id} to spreadsheet {ref.spreadsheet_id}")
        return ref

    async def read(self, user_id: str, spreadsheet_id: Optional[str] = None) -> Snapshot:
        try:
            return await asyncio.to_thread(self._read_sync, user_id, spreadsheet_id)
        except _REMOTE_ERRORS as e:
            raise RemoteUnavailableError(SyncTarget.MIRROR.value, str(e)) from e
