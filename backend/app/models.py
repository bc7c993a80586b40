"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

CLIENT_ID_PATTERN = r"^[A-Za-z0-9_-]+$"

# =============================================================================
# Sync Models
# =============================================================================


class SyncRequest(BaseModel):
    """Request to run a sync.

    Without ``force`` the sync is skipped when nothing changed. Without
    ``sync_types`` the targets enabled in the user's settings are used.
    """
    sync_types: list[str] | None = None
    force: bool = False


class SyncTargetResult(BaseModel):
    target: str
    success: bool
    reference: str | None = None
    error: str | None = None


class SyncResponse(BaseModel):
    success: bool
    skipped: bool
    reason: str | None = None
    synced_at: str | None = None
    results: list[SyncTargetResult] = []
    errors: list[str] = []


class SyncStatusResponse(BaseModel):
    has_changes_since_last_sync: bool
    last_sync_date: str | None
    last_data_change_date: str | None
    last_backup_date: str | None = None
    sync_in_progress: bool = False
    next_sync_in: int | None = None  # Seconds until inactivity auto-sync


class SyncConfigureRequest(BaseModel):
    """Partial update of a user's sync settings."""
    google_sheets_sync_enabled: bool | None = None
    google_drive_backup_enabled: bool | None = None
    auto_backup_enabled: bool | None = None
    backup_frequency: Literal["daily", "weekly", "monthly"] | None = None
    backup_retention_count: int | None = Field(default=None, ge=1, le=100)
    sync_on_inactivity: bool | None = None
    sync_inactivity_minutes: int | None = Field(default=None, ge=1, le=24 * 60)


class RestoreRequest(BaseModel):
    mode: Literal["preview", "replace", "merge"] = "preview"


class BackupInfo(BaseModel):
    id: str
    name: str
    size: int
    created_at: str | None = None


# =============================================================================
# Data Models
# =============================================================================


class VehicleCreate(BaseModel):
    """New vehicle. ``id`` is client-generated so offline replays are idempotent."""
    id: str | None = Field(default=None, min_length=1, max_length=64, pattern=CLIENT_ID_PATTERN)
    make: str = Field(..., min_length=1, max_length=100)
    model: str = Field(..., min_length=1, max_length=100)
    year: int = Field(..., ge=1900, le=2100)
    vehicle_type: Literal["gas", "electric", "hybrid"] = "gas"
    license_plate: str | None = None
    nickname: str | None = None
    initial_mileage: int | None = Field(default=None, ge=0)
    purchase_price: float | None = Field(default=None, ge=0)
    purchase_date: datetime | None = None


class ExpenseCreate(BaseModel):
    """New expense. ``id`` is client-generated so offline replays are idempotent."""
    id: str | None = Field(default=None, min_length=1, max_length=64, pattern=CLIENT_ID_PATTERN)
    category: str = Field(..., min_length=1, max_length=50)
    amount: float = Field(..., gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    date: datetime
    tags: list[str] | None = None
    mileage: int | None = Field(default=None, ge=0)
    volume: float | None = Field(default=None, ge=0)
    charge: float | None = Field(default=None, ge=0)
    description: str | None = Field(default=None, max_length=1000)
    receipt_url: str | None = None


def to_record(model: BaseModel) -> dict[str, Any]:
    """Dump a create model into a storage record (datetimes as ISO strings)."""
    return model.model_dump(mode="json", exclude_none=True)
