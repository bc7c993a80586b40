"""Database schema for vroom SQLite storage.

Contains:
- Schema DDL (SCHEMA) and version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- The snapshot table registry (SNAPSHOT_TABLES) in dependency order
- Database initialization (init_db)
"""

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..types import parse_datetime

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

# Allowed table names for SQL queries (security: prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "users",
        "user_settings",
        "change_state",
        "vehicles",
        "vehicle_financing",
        "vehicle_financing_payments",
        "insurance_policies",
        "expenses",
        "schema_version",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Args:
        table: Table name to validate

    Returns:
        The validated table name

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    display_name TEXT,
    created_at TEXT NOT NULL
);

-- One row per user; the root record of a snapshot
CREATE TABLE IF NOT EXISTS user_settings (
    user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    distance_unit TEXT NOT NULL DEFAULT 'miles',
    volume_unit TEXT NOT NULL DEFAULT 'gallons_us',
    charge_unit TEXT NOT NULL DEFAULT 'kwh',
    currency_unit TEXT NOT NULL DEFAULT 'USD',
    auto_backup_enabled INTEGER NOT NULL DEFAULT 0,
    backup_frequency TEXT NOT NULL DEFAULT 'weekly',
    google_drive_backup_enabled INTEGER NOT NULL DEFAULT 0,
    backup_retention_count INTEGER NOT NULL DEFAULT 10,
    google_sheets_sync_enabled INTEGER NOT NULL DEFAULT 0,
    google_sheets_spreadsheet_id TEXT,
    sync_on_inactivity INTEGER NOT NULL DEFAULT 1,
    sync_inactivity_minutes INTEGER NOT NULL DEFAULT 5,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Sync bookkeeping; never part of a snapshot
CREATE TABLE IF NOT EXISTS change_state (
    user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    last_data_change_date TEXT,
    last_sync_date TEXT,
    last_backup_date TEXT
);

CREATE TABLE IF NOT EXISTS vehicles (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    make TEXT NOT NULL,
    model TEXT NOT NULL,
    year INTEGER NOT NULL,
    vehicle_type TEXT NOT NULL DEFAULT 'gas',
    license_plate TEXT,
    nickname TEXT,
    initial_mileage INTEGER,
    purchase_price REAL,
    purchase_date TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_vehicles_user ON vehicles(user_id);

CREATE TABLE IF NOT EXISTS vehicle_financing (
    id TEXT PRIMARY KEY,
    vehicle_id TEXT NOT NULL REFERENCES vehicles(id) ON DELETE CASCADE,
    financing_type TEXT NOT NULL DEFAULT 'loan',  -- loan, lease, own
    provider TEXT NOT NULL,
    original_amount REAL NOT NULL,
    current_balance REAL NOT NULL,
    apr REAL,
    term_months INTEGER NOT NULL,
    start_date TEXT NOT NULL,
    payment_amount REAL NOT NULL,
    payment_frequency TEXT NOT NULL DEFAULT 'monthly',
    payment_day_of_month INTEGER,
    payment_day_of_week INTEGER,
    residual_value REAL,      -- lease only
    mileage_limit INTEGER,    -- lease only
    excess_mileage_fee REAL,  -- lease only
    is_active INTEGER NOT NULL DEFAULT 1,
    end_date TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_financing_vehicle ON vehicle_financing(vehicle_id);

CREATE TABLE IF NOT EXISTS vehicle_financing_payments (
    id TEXT PRIMARY KEY,
    financing_id TEXT NOT NULL REFERENCES vehicle_financing(id) ON DELETE CASCADE,
    payment_date TEXT NOT NULL,
    payment_amount REAL NOT NULL,
    principal_amount REAL NOT NULL,
    interest_amount REAL NOT NULL,
    remaining_balance REAL NOT NULL,
    payment_number INTEGER NOT NULL,
    payment_type TEXT NOT NULL DEFAULT 'standard',
    is_scheduled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_payments_financing ON vehicle_financing_payments(financing_id);

CREATE TABLE IF NOT EXISTS insurance_policies (
    id TEXT PRIMARY KEY,
    vehicle_id TEXT NOT NULL REFERENCES vehicles(id) ON DELETE CASCADE,
    company TEXT NOT NULL,
    policy_number TEXT,
    total_cost REAL NOT NULL,
    term_length_months INTEGER NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    monthly_cost REAL NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_insurance_vehicle ON insurance_policies(vehicle_id);

CREATE TABLE IF NOT EXISTS expenses (
    id TEXT PRIMARY KEY,
    vehicle_id TEXT NOT NULL REFERENCES vehicles(id) ON DELETE CASCADE,
    tags TEXT,  -- JSON array
    category TEXT NOT NULL,
    amount REAL NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',
    date TEXT NOT NULL,
    mileage INTEGER,
    volume REAL,
    charge REAL,
    description TEXT,
    receipt_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_expenses_vehicle ON expenses(vehicle_id);
CREATE INDEX IF NOT EXISTS idx_expenses_date ON expenses(date);
"""


# =============================================================================
# Snapshot table registry
# =============================================================================


@dataclass(frozen=True)
class Column:
    """One column of a snapshot table.

    ``kind`` is one of text, integer, real, bool, timestamp, json. Records
    carry Python values (bools as bool, json as list/dict); rows carry the
    SQLite encoding.
    """

    name: str
    kind: str = "text"
    nullable: bool = True

    def coerce(self, value: Any) -> Any:
        """Validate a record value, returning its normalized form.

        Raises:
            ValueError: If the value does not fit the column
        """
        if value is None:
            if not self.nullable:
                raise ValueError(f"{self.name} is required")
            return None
        if self.kind in ("text", "timestamp"):
            if not isinstance(value, str):
                raise ValueError(f"{self.name} must be a string")
            # A blank cell and a missing value are the same thing
            if value == "" and self.nullable:
                return None
            if self.kind == "timestamp":
                parse_datetime(value, strict=True)
            return value
        if self.kind == "integer":
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{self.name} must be an integer")
            return value
        if self.kind == "real":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{self.name} must be a number")
            return float(value)
        if self.kind == "bool":
            if not isinstance(value, bool):
                raise ValueError(f"{self.name} must be a boolean")
            return value
        if self.kind == "json":
            if not isinstance(value, (list, dict)):
                raise ValueError(f"{self.name} must be a JSON array or object")
            return value
        raise ValueError(f"Unknown column kind {self.kind!r}")

    def from_sql(self, value: Any) -> Any:
        if value is None:
            return None
        if self.kind == "bool":
            return bool(value)
        if self.kind == "json":
            try:
                return json.loads(value)
            except (TypeError, json.JSONDecodeError):
                return None
        if self.kind == "real":
            return float(value)
        return value

    def to_sql(self, value: Any) -> Any:
        if value is None:
            return None
        if self.kind == "bool":
            return 1 if value else 0
        if self.kind == "json":
            return json.dumps(value)
        return value


@dataclass(frozen=True)
class TableSpec:
    """A table that participates in snapshots.

    ``parent`` is ``(fk_column, parent_table)`` for child tables; tables
    owned directly by the user have ``owner_column`` instead.
    ``owner_clause`` selects the rows owned by one user (single ``?``).
    """

    name: str
    columns: Tuple[Column, ...]
    owner_clause: str
    key: str = "id"
    owner_column: Optional[str] = None
    parent: Optional[Tuple[str, str]] = None

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def column(self, name: str) -> Column:
        for c in self.columns:
            if c.name == name:
                return c
        raise KeyError(name)

    def from_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        return {c.name: c.from_sql(row[c.name]) for c in self.columns}

    def to_params(self, record: Dict[str, Any]) -> Tuple[Any, ...]:
        return tuple(c.to_sql(record.get(c.name)) for c in self.columns)


def _cols(*specs) -> Tuple[Column, ...]:
    return tuple(Column(*s) if isinstance(s, tuple) else Column(s) for s in specs)


_TIMESTAMPS = (("created_at", "timestamp", False), ("updated_at", "timestamp", False))

USER_SETTINGS = TableSpec(
    name="user_settings",
    key="user_id",
    owner_column="user_id",
    owner_clause="user_id = ?",
    columns=_cols(
        ("user_id", "text", False),
        ("distance_unit", "text", False),
        ("volume_unit", "text", False),
        ("charge_unit", "text", False),
        ("currency_unit", "text", False),
        ("auto_backup_enabled", "bool", False),
        ("backup_frequency", "text", False),
        ("google_drive_backup_enabled", "bool", False),
        ("backup_retention_count", "integer", False),
        ("google_sheets_sync_enabled", "bool", False),
        "google_sheets_spreadsheet_id",
        ("sync_on_inactivity", "bool", False),
        ("sync_inactivity_minutes", "integer", False),
        *_TIMESTAMPS,
    ),
)

VEHICLES = TableSpec(
    name="vehicles",
    owner_column="user_id",
    owner_clause="user_id = ?",
    columns=_cols(
        ("id", "text", False),
        ("user_id", "text", False),
        ("make", "text", False),
        ("model", "text", False),
        ("year", "integer", False),
        ("vehicle_type", "text", False),
        "license_plate",
        "nickname",
        ("initial_mileage", "integer"),
        ("purchase_price", "real"),
        ("purchase_date", "timestamp"),
        *_TIMESTAMPS,
    ),
)

_OWNED_VEHICLES = "vehicle_id IN (SELECT id FROM vehicles WHERE user_id = ?)"

VEHICLE_FINANCING = TableSpec(
    name="vehicle_financing",
    parent=("vehicle_id", "vehicles"),
    owner_clause=_OWNED_VEHICLES,
    columns=_cols(
        ("id", "text", False),
        ("vehicle_id", "text", False),
        ("financing_type", "text", False),
        ("provider", "text", False),
        ("original_amount", "real", False),
        ("current_balance", "real", False),
        ("apr", "real"),
        ("term_months", "integer", False),
        ("start_date", "timestamp", False),
        ("payment_amount", "real", False),
        ("payment_frequency", "text", False),
        ("payment_day_of_month", "integer"),
        ("payment_day_of_week", "integer"),
        ("residual_value", "real"),
        ("mileage_limit", "integer"),
        ("excess_mileage_fee", "real"),
        ("is_active", "bool", False),
        ("end_date", "timestamp"),
        *_TIMESTAMPS,
    ),
)

VEHICLE_FINANCING_PAYMENTS = TableSpec(
    name="vehicle_financing_payments",
    parent=("financing_id", "vehicle_financing"),
    owner_clause=(
        "financing_id IN (SELECT f.id FROM vehicle_financing f "
        "JOIN vehicles v ON v.id = f.vehicle_id WHERE v.user_id = ?)"
    ),
    columns=_cols(
        ("id", "text", False),
        ("financing_id", "text", False),
        ("payment_date", "timestamp", False),
        ("payment_amount", "real", False),
        ("principal_amount", "real", False),
        ("interest_amount", "real", False),
        ("remaining_balance", "real", False),
        ("payment_number", "integer", False),
        ("payment_type", "text", False),
        ("is_scheduled", "bool", False),
        *_TIMESTAMPS,
    ),
)

INSURANCE_POLICIES = TableSpec(
    name="insurance_policies",
    parent=("vehicle_id", "vehicles"),
    owner_clause=_OWNED_VEHICLES,
    columns=_cols(
        ("id", "text", False),
        ("vehicle_id", "text", False),
        ("company", "text", False),
        "policy_number",
        ("total_cost", "real", False),
        ("term_length_months", "integer", False),
        ("start_date", "timestamp", False),
        ("end_date", "timestamp", False),
        ("monthly_cost", "real", False),
        ("is_active", "bool", False),
        *_TIMESTAMPS,
    ),
)

EXPENSES = TableSpec(
    name="expenses",
    parent=("vehicle_id", "vehicles"),
    owner_clause=_OWNED_VEHICLES,
    columns=_cols(
        ("id", "text", False),
        ("vehicle_id", "text", False),
        ("tags", "json"),
        ("category", "text", False),
        ("amount", "real", False),
        ("currency", "text", False),
        ("date", "timestamp", False),
        ("mileage", "integer"),
        ("volume", "real"),
        ("charge", "real"),
        "description",
        "receipt_url",
        *_TIMESTAMPS,
    ),
)

# Dependency order: parents before children. Inserts walk it forwards,
# replace-mode deletes walk ENTITY_TABLES backwards.
SNAPSHOT_TABLES: Tuple[TableSpec, ...] = (
    USER_SETTINGS,
    VEHICLES,
    VEHICLE_FINANCING,
    VEHICLE_FINANCING_PAYMENTS,
    INSURANCE_POLICIES,
    EXPENSES,
)

# Tables replace mode deletes; settings are updated in place instead.
ENTITY_TABLES: Tuple[TableSpec, ...] = SNAPSHOT_TABLES[1:]

TABLES_BY_NAME: Dict[str, TableSpec] = {t.name: t for t in SNAPSHOT_TABLES}


def get_table_spec(name: str) -> TableSpec:
    """Look up a snapshot table, raising ValueError for unknown names."""
    validate_table_name(name)
    try:
        return TABLES_BY_NAME[name]
    except KeyError:
        raise ValueError(f"{name} is not a snapshot table") from None


def init_db(conn: sqlite3.Connection, db_path: Optional[Path] = None) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection.
        db_path: Path to the database file (for permissions).
    """
    # CREATE TABLE IF NOT EXISTS is safe to re-run
    conn.executescript(SCHEMA)

    cur = conn.execute("SELECT version FROM schema_version LIMIT 1")
    row = cur.fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    if db_path is None:
        return

    # Set secure file permissions (owner read/write only)
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")
