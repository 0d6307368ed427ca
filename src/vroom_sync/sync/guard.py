"""Per-user mutual exclusion for sync operations."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from .exceptions import SyncInProgressError


logger = logging.getLogger(__name__)


@dataclass
class GuardEntry:
    """A sync currently holding a user's guard."""
    user_id: str
    holder: str
    acquired_at: datetime


class SyncGuard:
    """In-memory registry of users with a sync in flight.

    At most one holder per user. The registry lives in process memory and
    starts empty after a restart.
    """

    def __init__(self):
        self._active: Dict[str, GuardEntry] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, user_id: str, holder: str = "sync") -> bool:
        """Try to mark a sync as running for the user.

        Args:
            user_id: User to guard
            holder: Label of the operation taking the guard

        Returns:
            True if acquired, False if another sync holds it
        """
        async with self._lock:
            existing = self._active.get(user_id)
            if existing is not None:
                logger.warning(
                    f"Sync guard for user {user_id} already held by {existing.holder} "
                    f"since {existing.acquired_at.isoformat()}"
                )
                return False

            self._active[user_id] = GuardEntry(user_id, holder, datetime.now())
            logger.debug(f"Sync guard acquired for user {user_id} by {holder}")
            return True

    async def release(self, user_id: str) -> bool:
        """Release the user's guard; False if it was not held."""
        async with self._lock:
            entry = self._active.pop(user_id, None)
            if entry is None:
                logger.warning(f"No sync guard held for user {user_id}")
                return False
            logger.debug(f"Sync guard released for user {user_id} by {entry.holder}")
            return True

    @asynccontextmanager
    async def hold(self, user_id: str, holder: str = "sync") -> AsyncIterator[GuardEntry]:
        """Hold the user's guard for the duration of a block.

        Raises:
            SyncInProgressError: If another sync already holds the guard
        """
        if not await self.acquire(user_id, holder):
            raise SyncInProgressError(user_id)
        try:
            yield self._active[user_id]
        finally:
            await self.release(user_id)

    def is_active(self, user_id: str) -> bool:
        return user_id in self._active

    def get_entry(self, user_id: str) -> Optional[GuardEntry]:
        return self._active.get(user_id)

    def active_users(self) -> List[str]:
        return list(self._active)
