"""SQLite storage backend for vroom.

Local-first storage with:
- Users, settings and the vehicle/expense entity tables
- Per-user change tracking timestamps
- Owned-record reads and writes used by snapshot export and restore
"""

import contextlib
import logging
import sqlite3
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from ..errors import DuplicateRecordError
from ..types import ChangeState, format_datetime, parse_datetime, utc_now
from ..utils import get_vroom_home
from .schema import (
    EXPENSES,
    INSURANCE_POLICIES,
    USER_SETTINGS,
    VEHICLE_FINANCING,
    VEHICLE_FINANCING_PAYMENTS,
    VEHICLES,
    TableSpec,
    init_db,
    validate_table_name,
)

logger = logging.getLogger(__name__)

# Settings a user may change through configure; everything else is managed
SETTINGS_FIELDS = frozenset(
    c.name for c in USER_SETTINGS.columns if c.name not in ("user_id", "created_at", "updated_at")
)

_CHANGE_FIELDS = ("last_data_change_date", "last_sync_date", "last_backup_date")


class SQLiteStorage:
    """SQLite-backed store for one vroom database file.

    Connections are created per operation. ``transaction()`` yields a
    connection inside an explicit BEGIN so multi-statement reads see one
    consistent state and multi-statement writes commit or roll back as a
    unit.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = self._resolve_db_path(db_path)
        with self._connect() as conn:
            init_db(conn, self.db_path)

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        """Resolve the database path, falling back to temp dir if home is not writable."""
        if db_path is not None:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            return path

        default_path = get_vroom_home() / "vroom.db"
        try:
            default_path.parent.mkdir(parents=True, exist_ok=True)
            return default_path
        except OSError as e:
            fallback_dir = Path(tempfile.gettempdir()) / ".vroom"
            logger.warning(f"Cannot write to {default_path.parent} ({e}), falling back to {fallback_dir}")
            fallback_dir.mkdir(parents=True, exist_ok=True)
            return fallback_dir / "vroom.db"

    def _get_conn(self, autocommit: bool = False) -> sqlite3.Connection:
        """Get a database connection with foreign keys enforced.

        With ``autocommit`` the connection does not open implicit
        transactions; callers issue BEGIN/COMMIT themselves.
        """
        conn = sqlite3.connect(self.db_path, isolation_level=None if autocommit else "")
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        This handles:
        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Run a block inside one explicit transaction.

        ``immediate`` takes the write lock up front (BEGIN IMMEDIATE) so a
        restore cannot interleave with another writer. Without it the
        transaction is a deferred read snapshot.
        """
        conn = self._get_conn(autocommit=True)
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                # An interrupted write may already have rolled back
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _now(self) -> str:
        """Get current timestamp as ISO string."""
        return utc_now()

    # === Users & Settings ===

    def ensure_user(
        self,
        user_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> None:
        """Create the user and their default settings if missing."""
        now = self._now()
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users (id, email, display_name, created_at) VALUES (?, ?, ?, ?)",
                (user_id, email, display_name, now),
            )
            conn.execute(
                "INSERT OR IGNORE INTO user_settings (user_id, created_at, updated_at) VALUES (?, ?, ?)",
                (user_id, now, now),
            )

    def delete_user(self, user_id: str) -> bool:
        """Delete a user. Owned records and change state cascade."""
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return cur.rowcount > 0

    def get_settings(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM user_settings WHERE user_id = ?", (user_id,)).fetchone()
        return USER_SETTINGS.from_row(row) if row else None

    def update_settings(self, user_id: str, **fields) -> Dict[str, Any]:
        """Update settings columns for a user and return the new settings.

        Raises:
            ValueError: If a field is not a user-editable setting
        """
        unknown = set(fields) - SETTINGS_FIELDS
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        self.ensure_user(user_id)
        if fields:
            assignments = ", ".join(f"{name} = ?" for name in fields)
            params = [USER_SETTINGS.column(name).to_sql(value) for name, value in fields.items()]
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE user_settings SET {assignments}, updated_at = ? WHERE user_id = ?",
                    (*params, self._now(), user_id),
                )
        return self.get_settings(user_id)

    # === Change State ===

    def get_change_state(self, user_id: str) -> ChangeState:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT last_data_change_date, last_sync_date, last_backup_date "
                "FROM change_state WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return ChangeState(user_id=user_id)
        return ChangeState(
            user_id=user_id,
            last_data_change_date=parse_datetime(row["last_data_change_date"]),
            last_sync_date=parse_datetime(row["last_sync_date"]),
            last_backup_date=parse_datetime(row["last_backup_date"]),
        )

    def save_change_dates(self, user_id: str, **dates) -> None:
        """Upsert one or more change_state timestamps, creating the user if missing."""
        unknown = set(dates) - set(_CHANGE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown change_state fields: {', '.join(sorted(unknown))}")
        if not dates:
            return
        self.ensure_user(user_id)
        names = list(dates)
        values = [format_datetime(dates[n]) for n in names]
        updates = ", ".join(f"{n} = excluded.{n}" for n in names)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO change_state (user_id, {', '.join(names)}) "
                f"VALUES (?, {', '.join('?' for _ in names)}) "
                f"ON CONFLICT(user_id) DO UPDATE SET {updates}",
                (user_id, *values),
            )

    # === Entity Writes ===

    def _create(self, spec: TableSpec, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one entity record, keeping a client-supplied id if given."""
        now = self._now()
        full = {c.name: None for c in spec.columns}
        full.update({k: v for k, v in record.items() if k in full})
        full["id"] = record.get("id") or str(uuid.uuid4())
        full["created_at"] = record.get("created_at") or now
        full["updated_at"] = record.get("updated_at") or now
        for c in spec.columns:
            if full[c.name] is None and not c.nullable:
                default = _COLUMN_DEFAULTS.get((spec.name, c.name))
                if default is None:
                    raise ValueError(f"{spec.name}.{c.name} is required")
                full[c.name] = default
            full[c.name] = c.coerce(full[c.name])
        try:
            with self._connect() as conn:
                insert_record(conn, spec, full)
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e) and self._exists(spec, full["id"]):
                raise DuplicateRecordError(spec.name, full["id"]) from e
            raise
        return full

    def _exists(self, spec: TableSpec, record_id: str) -> bool:
        table = validate_table_name(spec.name)
        with self._connect() as conn:
            row = conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return row is not None

    def create_vehicle(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.ensure_user(user_id)
        return self._create(VEHICLES, {**data, "user_id": user_id})

    def create_expense(self, vehicle_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(EXPENSES, {**data, "vehicle_id": vehicle_id})

    def create_financing(self, vehicle_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(VEHICLE_FINANCING, {**data, "vehicle_id": vehicle_id})

    def create_financing_payment(self, financing_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(VEHICLE_FINANCING_PAYMENTS, {**data, "financing_id": financing_id})

    def create_insurance_policy(self, vehicle_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(INSURANCE_POLICIES, {**data, "vehicle_id": vehicle_id})

    # === Entity Reads ===

    def get_vehicle(self, vehicle_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM vehicles WHERE id = ?", (vehicle_id,)).fetchone()
        return VEHICLES.from_row(row) if row else None

    def list_vehicles(self, user_id: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            return read_owned(conn, VEHICLES, user_id)

    def list_expenses(self, user_id: str, vehicle_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            records = read_owned(conn, EXPENSES, user_id)
        if vehicle_id is not None:
            records = [r for r in records if r["vehicle_id"] == vehicle_id]
        return records

    def count_owned(self, user_id: str, spec: TableSpec) -> int:
        table = validate_table_name(spec.name)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE {spec.owner_clause}", (user_id,)
            ).fetchone()
        return row[0]


_COLUMN_DEFAULTS = {
    ("vehicles", "vehicle_type"): "gas",
    ("vehicle_financing", "financing_type"): "loan",
    ("vehicle_financing", "payment_frequency"): "monthly",
    ("vehicle_financing", "is_active"): True,
    ("vehicle_financing_payments", "payment_type"): "standard",
    ("vehicle_financing_payments", "is_scheduled"): True,
    ("insurance_policies", "is_active"): True,
    ("expenses", "currency"): "USD",
}


# =============================================================================
# Owned-record helpers (run on a caller-held connection)
# =============================================================================


def read_owned(conn: sqlite3.Connection, spec: TableSpec, user_id: str) -> List[Dict[str, Any]]:
    """Read every record of ``spec`` owned by ``user_id`` as snapshot records."""
    table = validate_table_name(spec.name)
    cols = ", ".join(spec.column_names)
    rows = conn.execute(
        f"SELECT {cols} FROM {table} WHERE {spec.owner_clause} ORDER BY {spec.key}",
        (user_id,),
    ).fetchall()
    return [spec.from_row(r) for r in rows]


def delete_owned(conn: sqlite3.Connection, spec: TableSpec, user_id: str) -> int:
    """Delete every record of ``spec`` owned by ``user_id``."""
    table = validate_table_name(spec.name)
    cur = conn.execute(f"DELETE FROM {table} WHERE {spec.owner_clause}", (user_id,))
    return cur.rowcount


def insert_record(conn: sqlite3.Connection, spec: TableSpec, record: Dict[str, Any]) -> None:
    table = validate_table_name(spec.name)
    cols = ", ".join(spec.column_names)
    placeholders = ", ".join("?" for _ in spec.columns)
    conn.execute(f"INSERT INTO {table} ({cols}) VALUES ({placeholders})", spec.to_params(record))


def upsert_record(conn: sqlite3.Connection, spec: TableSpec, record: Dict[str, Any]) -> None:
    """Insert a record or update every column of the existing row in place."""
    table = validate_table_name(spec.name)
    cols = ", ".join(spec.column_names)
    placeholders = ", ".join("?" for _ in spec.columns)
    updates = ", ".join(f"{c} = excluded.{c}" for c in spec.column_names if c != spec.key)
    conn.execute(
        f"INSERT INTO {table} ({cols}) VALUES ({placeholders}) "
        f"ON CONFLICT({spec.key}) DO UPDATE SET {updates}",
        spec.to_params(record),
    )


def foreign_keys_present(
    conn: sqlite3.Connection, spec: TableSpec, user_id: str, keys: Iterable[str]
) -> Set[str]:
    """Return the keys that exist in ``spec`` but are owned by another user."""
    keys = list(keys)
    if not keys:
        return set()
    table = validate_table_name(spec.name)
    found: Set[str] = set()
    # Chunked to stay under SQLite's host parameter limit
    for i in range(0, len(keys), 500):
        chunk = keys[i : i + 500]
        marks = ", ".join("?" for _ in chunk)
        rows = conn.execute(
            f"SELECT {spec.key} FROM {table} WHERE {spec.key} IN ({marks}) "
            f"AND NOT ({spec.owner_clause})",
            (*chunk, user_id),
        ).fetchall()
        found.update(r[0] for r in rows)
    return found


def ensure_user_row(conn: sqlite3.Connection, user_id: str) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO users (id, created_at) VALUES (?, ?)",
        (user_id, utc_now()),
    )
