"""Inactivity-triggered auto sync.

Every mutating request re-arms a per-user timer. When a user has been
quiet for their configured delay, the timer fires ``maybe_sync`` with the
user's enabled targets, so a burst of edits produces one sync.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from ..errors import ConcurrentSyncError
from ..types import SyncOutcome

logger = logging.getLogger(__name__)

DEFAULT_INACTIVITY_MINUTES = 5


@dataclass
class UserActivity:
    user_id: str
    last_activity: datetime
    fires_at: Optional[datetime] = None
    timer: Optional[asyncio.Task] = None


class ActivityTracker:
    """Per-user inactivity timers driving SyncOrchestrator.maybe_sync."""

    def __init__(self, orchestrator, default_delay_minutes: float = DEFAULT_INACTIVITY_MINUTES):
        self._orchestrator = orchestrator
        self._default_delay = default_delay_minutes * 60
        self._activities: Dict[str, UserActivity] = {}

    def record_activity(self, user_id: str, delay_seconds: Optional[float] = None) -> None:
        """Reset the user's inactivity timer. Must be called on the event loop."""
        delay = self._default_delay if delay_seconds is None else delay_seconds
        now = datetime.now(timezone.utc)
        activity = self._activities.get(user_id)
        if activity is None:
            activity = UserActivity(user_id=user_id, last_activity=now)
            self._activities[user_id] = activity
        self._cancel(activity)
        activity.last_activity = now
        activity.fires_at = now + timedelta(seconds=delay)
        activity.timer = asyncio.get_running_loop().create_task(self._fire_after(user_id, delay))
        logger.debug(f"Activity for {user_id}, auto-sync in {delay:.0f}s")

    async def _fire_after(self, user_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        activity = self._activities.get(user_id)
        if activity is not None:
            activity.timer = None
            activity.fires_at = None
        await self._auto_sync(user_id)

    async def _auto_sync(self, user_id: str) -> Optional[SyncOutcome]:
        if self._orchestrator.is_in_flight(user_id):
            logger.debug(f"Auto-sync for {user_id} skipped: sync already running")
            return None
        try:
            outcome = await self._orchestrator.maybe_sync(user_id)
        except ConcurrentSyncError:
            return None
        except Exception as e:
            logger.error(f"Auto-sync failed for {user_id}: {e}", exc_info=True)
            return None
        if outcome.skipped:
            logger.debug(f"Auto-sync for {user_id} skipped: {outcome.reason}")
        elif not outcome.success:
            logger.warning(f"Auto-sync for {user_id} incomplete: {outcome.errors}")
        return outcome

    async def trigger_manual_sync(self, user_id: str) -> SyncOutcome:
        """Sync now, cancelling any pending timer.

        Raises:
            ConcurrentSyncError: A sync is already running for the user
        """
        activity = self._activities.get(user_id)
        if activity is not None:
            self._cancel(activity)
        return await self._orchestrator.maybe_sync(user_id)

    def get_status(self, user_id: str) -> Dict[str, object]:
        activity = self._activities.get(user_id)
        next_sync_in = None
        if activity is not None and activity.fires_at is not None:
            remaining = (activity.fires_at - datetime.now(timezone.utc)).total_seconds()
            next_sync_in = max(0, int(remaining))
        return {
            "last_activity": activity.last_activity.isoformat() if activity else None,
            "sync_in_progress": self._orchestrator.is_in_flight(user_id),
            "next_sync_in": next_sync_in,
        }

    def stop_tracking(self, user_id: str) -> None:
        activity = self._activities.pop(user_id, None)
        if activity is not None:
            self._cancel(activity)

    def cleanup_inactive(self, max_inactive_hours: float = 24) -> int:
        """Forget users idle for longer than ``max_inactive_hours``."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=max_inactive_hours)
        stale = [uid for uid, a in self._activities.items() if a.last_activity < cutoff]
        for user_id in stale:
            self.stop_tracking(user_id)
        if stale:
            logger.info(f"Stopped tracking {len(stale)} inactive users")
        return len(stale)

    def shutdown(self) -> None:
        for user_id in list(self._activities):
            self.stop_tracking(user_id)

    @staticmethod
    def _cancel(activity: UserActivity) -> None:
        if activity.timer is not None and not activity.timer.done():
            activity.timer.cancel()
        activity.timer = None
        activity.fires_at = None
