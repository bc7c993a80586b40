"""
Pytest fixtures for vroom sync engine tests.
"""

import copy
from typing import Dict, List, Optional

import pytest

from vroom.errors import RemoteUnavailableError
from vroom.storage.sqlite import SQLiteStorage
from vroom.sync.backup_store import LocalBackupStore
from vroom.sync.mirror import TabularMirror
from vroom.sync.orchestrator import SyncOrchestrator
from vroom.types import MirrorRef, Snapshot, SyncTarget

from factories import OTHER_USER_ID, USER_ID, expense_data, vehicle_data


class FakeMirror(TabularMirror):
    """In-memory spreadsheet mirror that keeps the last snapshot per user."""

    def __init__(self):
        self.sheets: Dict[str, Snapshot] = {}
        self.writes: List[str] = []
        self.fail_with: Optional[Exception] = None

    async def write(self, user_id: str, snapshot: Snapshot) -> MirrorRef:
        self.writes.append(user_id)
        if self.fail_with is not None:
            raise self.fail_with
        self.sheets[user_id] = snapshot
        return MirrorRef(spreadsheet_id=f"sheet-{user_id}", url=f"https://sheets.test/{user_id}")

    async def read(self, user_id: str, spreadsheet_id: Optional[str] = None) -> Snapshot:
        if self.fail_with is not None:
            raise self.fail_with
        if user_id not in self.sheets:
            raise RemoteUnavailableError(SyncTarget.MIRROR.value, "spreadsheet not found")
        return copy.deepcopy(self.sheets[user_id])


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "vroom.db"


@pytest.fixture
def storage(temp_db):
    """Create a SQLiteStorage instance for testing."""
    return SQLiteStorage(db_path=temp_db)


@pytest.fixture
def user(storage):
    """A user with default settings."""
    storage.ensure_user(USER_ID, email="driver@example.com")
    return USER_ID


@pytest.fixture
def other_user(storage):
    storage.ensure_user(OTHER_USER_ID)
    return OTHER_USER_ID


@pytest.fixture
def seeded(storage, user):
    """Two vehicles with one expense each, plus financing and insurance on vehicle-1."""
    storage.create_vehicle(user, vehicle_data("vehicle-1", nickname="Daily"))
    storage.create_vehicle(user, vehicle_data("vehicle-2", make="Tesla", model="Model 3", vehicle_type="electric"))
    storage.create_expense("vehicle-1", expense_data("expense-1"))
    storage.create_expense("vehicle-2", expense_data("expense-2", category="charging", amount=12.0, volume=None, charge=40.0))
    storage.create_financing(
        "vehicle-1",
        {
            "id": "financing-1",
            "provider": "Credit Union",
            "original_amount": 20000,
            "current_balance": 15000,
            "apr": 4.9,
            "term_months": 60,
            "start_date": "2023-01-15T00:00:00+00:00",
            "payment_amount": 376.5,
        },
    )
    storage.create_financing_payment(
        "financing-1",
        {
            "id": "payment-1",
            "payment_date": "2023-02-15T00:00:00+00:00",
            "payment_amount": 376.5,
            "principal_amount": 300.0,
            "interest_amount": 76.5,
            "remaining_balance": 19700.0,
            "payment_number": 1,
        },
    )
    storage.create_insurance_policy(
        "vehicle-1",
        {
            "id": "insurance-1",
            "company": "Acme Mutual",
            "total_cost": 1200,
            "term_length_months": 12,
            "start_date": "2024-01-01T00:00:00+00:00",
            "end_date": "2025-01-01T00:00:00+00:00",
            "monthly_cost": 100,
        },
    )
    return user


@pytest.fixture
def backup_store(tmp_path):
    return LocalBackupStore(tmp_path / "backups")


@pytest.fixture
def mirror():
    return FakeMirror()


@pytest.fixture
def orchestrator(storage, backup_store, mirror):
    return SyncOrchestrator(storage, backup_store=backup_store, mirror=mirror, timeout_seconds=5)
