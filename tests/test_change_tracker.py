"""Tests for change tracking.

Tests:
- The pure has_changes comparison over a ChangeState
- ChangeTracker persistence of change, sync and backup dates
- Fail-open behaviour when storage is unavailable
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from vroom.storage.change_tracker import ChangeTracker, has_changes
from vroom.types import ChangeState

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 1) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(storage, clock):
    return ChangeTracker(storage, clock=clock)


class TestHasChanges:
    def test_no_state_means_changed(self):
        assert has_changes(None) is True

    def test_missing_sync_date_means_changed(self):
        state = ChangeState(user_id="u", last_data_change_date=T0)
        assert has_changes(state) is True

    def test_missing_change_date_means_changed(self):
        state = ChangeState(user_id="u", last_sync_date=T0)
        assert has_changes(state) is True

    def test_sync_after_change_is_clean(self):
        state = ChangeState(user_id="u", last_data_change_date=T0, last_sync_date=T0 + timedelta(seconds=1))
        assert has_changes(state) is False

    def test_change_after_sync_is_dirty(self):
        state = ChangeState(user_id="u", last_data_change_date=T0 + timedelta(seconds=1), last_sync_date=T0)
        assert has_changes(state) is True

    def test_equal_timestamps_are_clean(self):
        """A change stamped exactly at sync time was included in that sync."""
        state = ChangeState(user_id="u", last_data_change_date=T0, last_sync_date=T0)
        assert has_changes(state) is False


class TestChangeTracker:
    def test_new_user_has_changes(self, tracker, user):
        assert tracker.has_changes_since_last_sync(user) is True

    def test_change_then_sync_is_clean(self, tracker, user, clock):
        tracker.mark_data_changed(user)
        clock.advance()
        tracker.mark_synced(user)
        assert tracker.has_changes_since_last_sync(user) is False

    def test_sync_then_change_is_dirty(self, tracker, user, clock):
        tracker.mark_synced(user)
        clock.advance()
        tracker.mark_data_changed(user)
        assert tracker.has_changes_since_last_sync(user) is True

    def test_mark_synced_with_explicit_time(self, tracker, user, clock):
        """A sync stamped at snapshot time leaves later writes dirty."""
        snapshot_time = clock()
        clock.advance(5)
        tracker.mark_data_changed(user)
        tracker.mark_synced(user, synced_at=snapshot_time)
        assert tracker.has_changes_since_last_sync(user) is True

    def test_mark_synced_returns_timestamp(self, tracker, user, clock):
        assert tracker.mark_synced(user) == clock()

    def test_get_change_status(self, tracker, user, clock):
        tracker.mark_data_changed(user)
        status = tracker.get_change_status(user)
        assert status.has_changes is True
        assert status.last_data_change_date == T0
        assert status.last_sync_date is None

        data = status.to_dict()
        assert data["has_changes_since_last_sync"] is True
        assert data["last_data_change_date"] == T0.isoformat()
        assert data["last_sync_date"] is None
        assert data["last_backup_date"] is None

    def test_record_backup(self, tracker, user, clock):
        tracker.record_backup(user)
        assert tracker.get_change_status(user).last_backup_date == T0

    def test_change_dates_survive_reopen(self, storage, user, clock, temp_db):
        from vroom.storage.sqlite import SQLiteStorage

        ChangeTracker(storage, clock=clock).mark_data_changed(user)
        reopened = ChangeTracker(SQLiteStorage(db_path=temp_db), clock=clock)
        assert reopened.get_change_status(user).last_data_change_date == T0


class TestFailOpen:
    def test_unreadable_state_reports_changes(self):
        storage = MagicMock()
        storage.get_change_state.side_effect = RuntimeError("disk gone")
        tracker = ChangeTracker(storage)
        assert tracker.has_changes_since_last_sync("u") is True
        assert tracker.get_change_status("u").has_changes is True

    def test_mark_data_changed_never_raises(self, caplog):
        storage = MagicMock()
        storage.save_change_dates.side_effect = RuntimeError("disk gone")
        tracker = ChangeTracker(storage)
        tracker.mark_data_changed("u")
        assert "Failed to mark data changed" in caplog.text

    def test_mark_synced_propagates(self):
        """A failed sync mark must not be mistaken for success."""
        storage = MagicMock()
        storage.save_change_dates.side_effect = RuntimeError("disk gone")
        with pytest.raises(RuntimeError):
            ChangeTracker(storage).mark_synced("u")
