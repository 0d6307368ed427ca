"""Inactivity-driven automatic sync, one debounced timer per user."""

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from ..database import VehicleDatabase
from ..models import utc_now
from .change_tracker import ChangeTracker
from .config import SyncConfig
from .guard import SyncGuard
from .logging_config import get_logger, log_sync_event
from .models import (
    ActivityConfig, ActivityState, ActivityStatus, ManualSyncResult, SyncType
)
from .orchestrator import SyncOrchestrator


logger = get_logger(__name__)


@dataclass
class UserActivity:
    """Tracked state of one user.

    Attributes:
        timer: Pending auto-sync timer, None when idle or syncing
        deadline: Monotonic time the pending timer fires at
    """
    user_id: str
    last_activity: datetime
    config: ActivityConfig
    sync_in_progress: bool = False
    timer: Optional[asyncio.TimerHandle] = None
    deadline: Optional[float] = None

    @property
    def state(self) -> ActivityState:
        if self.sync_in_progress:
            return ActivityState.SYNCING
        if self.timer is not None:
            return ActivityState.TIMER_ARMED
        return ActivityState.IDLE


class ActivityTracker:
    """Runs a sync once a user has been inactive for their configured delay.

    Every recorded activity cancels the pending timer and arms a new one,
    so only the last activity counts. A timer that fires while the user is
    already syncing is dropped. Background failures are logged, never
    raised.
    """

    def __init__(self, orchestrator: SyncOrchestrator, change_tracker: ChangeTracker,
                 database: VehicleDatabase, guard: SyncGuard,
                 config: Optional[SyncConfig] = None, seconds_per_minute: float = 60.0):
        """Initialize the activity tracker.

        Args:
            orchestrator: Runs the actual syncs
            change_tracker: Decides whether an auto-sync has anything to push
            database: Source of the persisted sync settings
            guard: Per-user sync mutual exclusion, shared with the orchestrator
            config: Sweep interval and retention horizon
            seconds_per_minute: Length of a delay minute, shortened in tests
        """
        self._orchestrator = orchestrator
        self._change_tracker = change_tracker
        self._database = database
        self._guard = guard
        self._config = config or SyncConfig()
        self._seconds_per_minute = seconds_per_minute
        self._users: Dict[str, UserActivity] = {}
        self._sync_tasks: Set[asyncio.Task] = set()
        self._cleanup_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the periodic sweep of inactive users."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())
            logger.info("Activity tracker started with periodic cleanup")

    async def stop(self) -> None:
        """Stop the sweep, cancel every timer and in-flight auto-sync."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        for activity in self._users.values():
            self._cancel_timer(activity)

        tasks = list(self._sync_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Activity tracker stopped")

    # Activity

    def record_activity(self, user_id: str, config: ActivityConfig) -> None:
        """Note user activity and re-arm the inactivity timer.

        No-op when sync is disabled in the given config. Must be called
        from a running event loop.
        """
        if not (config.enabled and config.auto_sync_enabled):
            return

        activity = self._users.get(user_id)
        if activity is None:
            activity = UserActivity(user_id=user_id, last_activity=utc_now(), config=config)
            self._users[user_id] = activity
        else:
            activity.last_activity = utc_now()
            activity.config = config

        self._arm_timer(activity)

    def update_sync_config(self, user_id: str, config: ActivityConfig) -> None:
        """Apply changed settings to a tracked user.

        An armed timer restarts with the new delay, or is cancelled when
        auto-sync is now disabled.
        """
        activity = self._users.get(user_id)
        if activity is None:
            return

        activity.config = config
        if not (config.enabled and config.auto_sync_enabled):
            self._cancel_timer(activity)
            logger.info(f"Auto-sync disabled for user {user_id}, timer cancelled")
        elif activity.timer is not None:
            self._arm_timer(activity)
            logger.info(f"Auto-sync timer for user {user_id} re-armed with "
                        f"{config.inactivity_delay_minutes} minute delay")

    def _arm_timer(self, activity: UserActivity) -> None:
        self._cancel_timer(activity)
        loop = asyncio.get_running_loop()
        delay = activity.config.inactivity_delay_minutes * self._seconds_per_minute
        activity.deadline = time.monotonic() + delay
        activity.timer = loop.call_later(delay, self._on_timer, activity.user_id)
        logger.debug(f"Auto-sync timer armed for user {activity.user_id} in {delay:.2f}s")

    @staticmethod
    def _cancel_timer(activity: UserActivity) -> None:
        if activity.timer is not None:
            activity.timer.cancel()
        activity.timer = None
        activity.deadline = None

    def _on_timer(self, user_id: str) -> None:
        activity = self._users.get(user_id)
        if activity is None:
            return

        activity.timer = None
        activity.deadline = None

        if activity.sync_in_progress or self._guard.is_active(user_id):
            logger.info(f"Auto-sync for user {user_id} skipped, a sync is already running")
            return

        activity.sync_in_progress = True
        task = asyncio.get_running_loop().create_task(self._perform_auto_sync(user_id))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def _perform_auto_sync(self, user_id: str) -> None:
        try:
            if not await self._change_tracker.has_changes_since_last_sync(user_id):
                logger.info(f"Auto-sync for user {user_id} skipped, no changes since last sync")
                return

            sync_types = await self._enabled_types(user_id)
            if not sync_types:
                logger.info(f"Auto-sync for user {user_id} skipped, no sync types enabled")
                return

            result = await self._orchestrator.execute_sync(user_id, sync_types)
            log_sync_event(
                logger, "auto_sync_completed" if result.success else "auto_sync_failed",
                user_id, f"Auto-sync finished for user {user_id}",
                errors=len(result.errors)
            )
        except Exception as e:
            logger.error(f"Auto-sync failed for user {user_id}: {e}", exc_info=True)
        finally:
            activity = self._users.get(user_id)
            if activity is not None:
                activity.sync_in_progress = False

    async def _enabled_types(self, user_id: str) -> List[SyncType]:
        state = await asyncio.to_thread(self._database.get_or_create_sync_state, user_id,
                                        self._config.default_inactivity_minutes,
                                        self._config.archive_retention_count)
        sync_types = []
        if state.mirror_enabled:
            sync_types.append(SyncType.MIRROR)
        if state.archive_enabled:
            sync_types.append(SyncType.ARCHIVE)
        return sync_types

    # Manual sync and status

    async def trigger_manual_sync(self, user_id: str) -> ManualSyncResult:
        """Run a sync now, cancelling any pending timer.

        Never raises; failures are reported in the result.
        """
        activity = self._users.get(user_id)
        if (activity is not None and activity.sync_in_progress) or self._guard.is_active(user_id):
            return ManualSyncResult(success=False, message="Sync already in progress")

        if activity is None:
            activity = UserActivity(
                user_id=user_id, last_activity=utc_now(),
                config=ActivityConfig(enabled=True, auto_sync_enabled=False,
                                      inactivity_delay_minutes=self._config.default_inactivity_minutes)
            )
            self._users[user_id] = activity

        self._cancel_timer(activity)
        activity.sync_in_progress = True
        try:
            sync_types = await self._enabled_types(user_id)
            if not sync_types:
                return ManualSyncResult(success=False, message="No sync types are enabled")

            result = await self._orchestrator.execute_sync(user_id, sync_types)
            if result.success:
                return ManualSyncResult(success=True, message="Sync completed successfully")
            failures = "; ".join(f"{sync_type.value}: {message}"
                                 for sync_type, message in result.errors.items())
            return ManualSyncResult(success=False, message=f"Sync failed: {failures}")
        except Exception as e:
            logger.error(f"Manual sync failed for user {user_id}: {e}", exc_info=True)
            return ManualSyncResult(success=False, message=f"Sync failed: {e}")
        finally:
            activity.sync_in_progress = False

    def get_sync_status(self, user_id: str) -> ActivityStatus:
        """Last activity, sync flag and whole minutes until the next auto-sync."""
        activity = self._users.get(user_id)
        if activity is None:
            syncing = self._guard.is_active(user_id)
            return ActivityStatus(
                last_activity=None, sync_in_progress=syncing, next_sync_in_minutes=0,
                state=ActivityState.SYNCING if syncing else ActivityState.IDLE
            )

        remaining = 0
        if activity.timer is not None and activity.deadline is not None:
            seconds_left = activity.deadline - time.monotonic()
            remaining = max(0, math.ceil(seconds_left / self._seconds_per_minute))

        return ActivityStatus(
            last_activity=activity.last_activity,
            sync_in_progress=activity.sync_in_progress or self._guard.is_active(user_id),
            next_sync_in_minutes=remaining,
            state=activity.state,
        )

    def stop_tracking(self, user_id: str) -> None:
        """Forget a user entirely, cancelling any pending timer."""
        activity = self._users.pop(user_id, None)
        if activity is not None:
            self._cancel_timer(activity)
            logger.info(f"Stopped tracking activity for user {user_id}")

    def get_active_users(self) -> List[str]:
        return list(self._users)

    # Sweep

    def cleanup_inactive_users(self, max_inactive_hours: Optional[float] = None,
                               now: Optional[datetime] = None) -> List[str]:
        """Drop users inactive past the retention horizon, unless they are syncing.

        Returns:
            IDs of the removed users
        """
        hours = self._config.max_inactive_hours if max_inactive_hours is None else max_inactive_hours
        cutoff = (now or utc_now()) - timedelta(hours=hours)

        removed = []
        for user_id, activity in list(self._users.items()):
            if activity.last_activity < cutoff and not activity.sync_in_progress:
                self._cancel_timer(activity)
                del self._users[user_id]
                removed.append(user_id)

        if removed:
            logger.info(f"Cleaned up {len(removed)} inactive users")
        return removed

    async def _periodic_cleanup(self) -> None:
        """Periodically drop inactive users."""
        while True:
            try:
                await asyncio.sleep(self._config.cleanup_interval_seconds)
                self.cleanup_inactive_users()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic activity cleanup: {e}", exc_info=True)
