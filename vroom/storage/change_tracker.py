"""Change tracking: is a sync needed for this user?

The decision is a pure comparison over a ChangeState (``has_changes``);
ChangeTracker is the persistence boundary around it. Both directions
fail open: a read error reports changes, a failed mark only costs one
extra sync later.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..types import ChangeState, ChangeStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def has_changes(state: Optional[ChangeState]) -> bool:
    """Return True when the user's data may differ from the last sync.

    Missing state, a missing sync date or a missing change date all count
    as changed.
    """
    if state is None:
        return True
    if state.last_sync_date is None or state.last_data_change_date is None:
        return True
    return state.last_data_change_date > state.last_sync_date


class ChangeTracker:
    """Reads and writes per-user change timestamps through the storage layer."""

    def __init__(self, storage, clock: Callable[[], datetime] = _utcnow):
        self._storage = storage
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def mark_data_changed(self, user_id: str) -> None:
        """Record that the user's data changed. Best-effort, never raises."""
        try:
            self._storage.save_change_dates(user_id, last_data_change_date=self._clock())
        except Exception as e:
            logger.warning(f"Failed to mark data changed for {user_id}: {e}")

    def has_changes_since_last_sync(self, user_id: str) -> bool:
        try:
            state = self._storage.get_change_state(user_id)
        except Exception as e:
            logger.warning(f"Change state unreadable for {user_id}, assuming changes: {e}")
            return True
        return has_changes(state)

    def get_change_status(self, user_id: str) -> ChangeStatus:
        try:
            state = self._storage.get_change_state(user_id)
        except Exception as e:
            logger.warning(f"Change state unreadable for {user_id}: {e}")
            return ChangeStatus(has_changes=True)
        return ChangeStatus(
            has_changes=has_changes(state),
            last_data_change_date=state.last_data_change_date,
            last_sync_date=state.last_sync_date,
            last_backup_date=state.last_backup_date,
        )

    def mark_synced(self, user_id: str, synced_at: Optional[datetime] = None) -> datetime:
        """Record a completed sync.

        ``synced_at`` should be the time the synced snapshot was read, so a
        write that lands while the upload is in flight still counts as a
        change afterwards.
        """
        at = synced_at or self._clock()
        self._storage.save_change_dates(user_id, last_sync_date=at)
        return at

    def record_backup(self, user_id: str, at: Optional[datetime] = None) -> None:
        try:
            self._storage.save_change_dates(user_id, last_backup_date=at or self._clock())
        except Exception as e:
            logger.warning(f"Failed to record backup date for {user_id}: {e}")
