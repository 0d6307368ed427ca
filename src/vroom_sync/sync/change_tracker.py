"""Tracks whether a user's local data changed since the last sync."""

import asyncio
import logging
from typing import Optional, Set

from ..database import VehicleDatabase
from ..models import utc_now
from .models import ChangeStatus


logger = logging.getLogger(__name__)


class ChangeTracker:
    """Records data change timestamps and answers has-changes queries.

    Marking is fire-and-forget: the write runs as a task the caller never
    awaits, and a failed write is only logged. Queries fail open, so a
    broken read never suppresses a sync.
    """

    def __init__(self, database: VehicleDatabase):
        """Initialize the change tracker.

        Args:
            database: Local store holding the sync state
        """
        self._database = database
        self._pending: Set[asyncio.Task] = set()

    def mark_changed(self, user_id: str) -> Optional[asyncio.Task]:
        """Record that the user's data changed, without blocking the caller.

        Must be called from a running event loop.

        Returns:
            The scheduled task, or None if it could not be scheduled
        """
        try:
            task = asyncio.get_running_loop().create_task(self._write_change(user_id))
        except RuntimeError as e:
            logger.warning(f"Cannot mark data changed for user {user_id}: {e}")
            return None

        self._pending.add(task)
        task.add_done_callback(lambda done: self._on_marked(user_id, done))
        return task

    async def _write_change(self, user_id: str) -> None:
        await asyncio.to_thread(
            self._database.update_sync_state, user_id, last_data_change_date=utc_now()
        )

    def _on_marked(self, user_id: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Failed to mark data changed for user {user_id}: {error}",
                         exc_info=error)
        else:
            logger.debug(f"Marked data changed for user {user_id}")

    async def flush(self) -> None:
        """Wait for every pending change mark to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def has_changes_since_last_sync(self, user_id: str) -> bool:
        """Whether the user changed data after the last successful sync.

        True when no sync ever completed, when no change was ever recorded,
        or when the read fails.
        """
        status = await self.get_change_status(user_id)
        return status.has_changes

    async def get_change_status(self, user_id: str) -> ChangeStatus:
        """Change and sync timestamps with the derived has-changes flag."""
        try:
            state = await asyncio.to_thread(self._database.get_sync_state, user_id)
        except Exception as e:
            logger.warning(f"Failed to read change status for user {user_id}, "
                           f"assuming changes: {e}")
            return ChangeStatus(has_changes=True)

        if state is None:
            return ChangeStatus(has_changes=True)

        last_change = state.last_data_change_date
        last_sync = state.last_sync_date
        has_changes = last_sync is None or last_change is None or last_change > last_sync
        return ChangeStatus(
            has_changes=has_changes,
            last_data_change_date=last_change,
            last_sync_date=last_sync,
        )
