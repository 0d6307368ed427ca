"""Composition root and public operation surface of the sync engine."""

import asyncio
import logging
from typing import Iterable, Optional, Tuple, Union

from ..database import VehicleDatabase
from ..models import SyncState, utc_now
from . import archive_codec
from .activity_tracker import ActivityTracker
from .change_tracker import ChangeTracker
from .config import SyncConfig
from .exceptions import SyncValidationError
from .guard import SyncGuard
from .interfaces import RemoteAdapterFactory
from .logging_config import get_logger
from .models import (
    ActivityConfig, AutoRestoreResult, DiscoveryResult, RemoteStructure,
    RestoreMode, RestoreResult, RestoreSource, SyncResult, SyncStatus, SyncType
)
from .orchestrator import SyncOrchestrator


logger = get_logger(__name__)


class SyncEngine:
    """Builds every sync component once and exposes the caller-facing operations.

    Each engine owns its own guard, trackers and orchestrator, so separate
    engines never share state.
    """

    def __init__(self, database: VehicleDatabase, adapters: RemoteAdapterFactory,
                 config: Optional[SyncConfig] = None, seconds_per_minute: float = 60.0):
        """Initialize the engine.

        Args:
            database: Local store, already opened
            adapters: Builds remote adapters from user credentials
            config: Engine configuration (defaults apply when omitted)
            seconds_per_minute: Length of an inactivity minute, shortened in tests
        """
        self.config = config or SyncConfig()
        self.config.validate()
        logging.getLogger("vroom_sync").setLevel(self.config.log_level.upper())
        if not self.config.log_sync_events:
            logging.getLogger("vroom_sync.sync").setLevel(logging.WARNING)
        self.database = database
        self.guard = SyncGuard()
        self.change_tracker = ChangeTracker(database)
        self.orchestrator = SyncOrchestrator(
            database, adapters, self.change_tracker, self.guard, self.config
        )
        self.activity_tracker = ActivityTracker(
            self.orchestrator, self.change_tracker, database, self.guard,
            self.config, seconds_per_minute=seconds_per_minute
        )

    async def start(self) -> None:
        await self.activity_tracker.start()
        logger.info("Sync engine started")

    async def stop(self) -> None:
        await self.activity_tracker.stop()
        await self.change_tracker.flush()
        logger.info("Sync engine stopped")

    # Sync

    async def trigger_sync(self, user_id: str,
                           types: Optional[Iterable[Union[str, SyncType]]] = None) -> SyncResult:
        """Run a sync now.

        Args:
            user_id: User to sync
            types: Sync types to run; defaults to every enabled type

        Raises:
            SyncValidationError: If no type is requested and none is enabled
            SyncInProgressError: If a sync already runs for the user
        """
        if types is None:
            state = await self._state(user_id)
            types = self._enabled_types(state)
            if not types:
                raise SyncValidationError("No sync types are enabled", {"user_id": user_id})
        return await self.orchestrator.execute_sync(user_id, types)

    async def get_status(self, user_id: str) -> SyncStatus:
        """Settings, last sync dates, pending changes and activity of a user."""
        state = await self._state(user_id)
        changes = await self.change_tracker.get_change_status(user_id)
        return SyncStatus(
            mirror_enabled=state.mirror_enabled,
            archive_enabled=state.archive_enabled,
            sync_on_inactivity=state.sync_on_inactivity,
            inactivity_delay_minutes=state.inactivity_delay_minutes,
            last_sync_date=state.last_sync_date,
            last_backup_date=state.last_backup_date,
            last_data_change_date=state.last_data_change_date,
            has_changes_since_last_sync=changes.has_changes,
            last_sync_error=state.last_sync_error,
            activity=self.activity_tracker.get_sync_status(user_id),
        )

    async def configure(self, user_id: str, mirror_enabled: Optional[bool] = None,
                        archive_enabled: Optional[bool] = None,
                        sync_on_inactivity: Optional[bool] = None,
                        inactivity_delay_minutes: Optional[int] = None,
                        archive_retention_count: Optional[int] = None) -> SyncState:
        """Change a user's sync settings and apply them to the activity tracker.

        Raises:
            SyncValidationError: If a value is out of range
        """
        fields = {}
        if mirror_enabled is not None:
            fields["mirror_enabled"] = bool(mirror_enabled)
        if archive_enabled is not None:
            fields["archive_enabled"] = bool(archive_enabled)
        if sync_on_inactivity is not None:
            fields["sync_on_inactivity"] = bool(sync_on_inactivity)
        if inactivity_delay_minutes is not None:
            low, high = self.config.min_inactivity_minutes, self.config.max_inactivity_minutes
            if not (low <= inactivity_delay_minutes <= high):
                raise SyncValidationError(
                    f"Inactivity delay must be between {low} and {high} minutes",
                    {"inactivity_delay_minutes": inactivity_delay_minutes}
                )
            fields["inactivity_delay_minutes"] = int(inactivity_delay_minutes)
        if archive_retention_count is not None:
            if archive_retention_count < 1:
                raise SyncValidationError(
                    "Archive retention count must be at least 1",
                    {"archive_retention_count": archive_retention_count}
                )
            fields["archive_retention_count"] = int(archive_retention_count)

        await self._state(user_id)
        state = await asyncio.to_thread(self.database.update_sync_state, user_id, **fields)
        self.activity_tracker.update_sync_config(user_id, self._activity_config(state))
        logger.info(f"Sync settings updated for user {user_id}: {sorted(fields)}")
        return state

    # Archives

    async def download_archive(self, user_id: str) -> Tuple[str, bytes]:
        """Archive of the current local dataset, with its conventional file name."""
        dataset = await asyncio.to_thread(self.database.load_dataset, user_id)
        now = utc_now()
        return self.orchestrator.archive_file_name(now), archive_codec.serialize(dataset, user_id, now)

    async def upload_archive(self, user_id: str, data: bytes,
                             mode: Union[str, RestoreMode] = RestoreMode.PREVIEW) -> RestoreResult:
        """Restore from an archive the user uploaded."""
        return await self.orchestrator.restore_from_bytes(user_id, data, mode)

    async def restore(self, user_id: str, source: Union[str, RestoreSource],
                      mode: Union[str, RestoreMode]) -> RestoreResult:
        """Restore from the user's mirror or latest remote archive."""
        return await self.orchestrator.restore(user_id, source, mode)

    async def discover(self, user_id: str) -> DiscoveryResult:
        return await self.orchestrator.discover_existing_archive_folder(user_id)

    async def enable_remote(self, user_id: str) -> RemoteStructure:
        """Explicit opt-in: create the remote folders and mirror."""
        return await self.orchestrator.initialize_remote_structure(user_id)

    # Request hooks

    async def notify_mutation(self, user_id: str, status_code: int = 200) -> None:
        """Hook for completed mutating requests; only 2xx responses count as changes."""
        if not (200 <= status_code < 300):
            return
        self.change_tracker.mark_changed(user_id)
        await self.notify_activity(user_id)

    async def notify_activity(self, user_id: str) -> None:
        """Hook for any authenticated request; re-arms the inactivity timer."""
        try:
            state = await self._state(user_id)
        except Exception as e:
            logger.warning(f"Could not read sync settings for user {user_id}: {e}")
            return
        self.activity_tracker.record_activity(user_id, self._activity_config(state))

    async def on_login(self, user_id: str) -> AutoRestoreResult:
        return await self.orchestrator.auto_restore_on_login(user_id)

    def on_logout(self, user_id: str) -> None:
        self.activity_tracker.stop_tracking(user_id)

    # Helpers

    async def _state(self, user_id: str) -> SyncState:
        return await asyncio.to_thread(
            self.database.get_or_create_sync_state, user_id,
            self.config.default_inactivity_minutes, self.config.archive_retention_count
        )

    @staticmethod
    def _enabled_types(state: SyncState) -> list:
        types = []
        if state.mirror_enabled:
            types.append(SyncType.MIRROR)
        if state.archive_enabled:
            types.append(SyncType.ARCHIVE)
        return types

    @staticmethod
    def _activity_config(state: SyncState) -> ActivityConfig:
        return ActivityConfig(
            enabled=state.mirror_enabled or state.archive_enabled,
            auto_sync_enabled=state.sync_on_inactivity,
            inactivity_delay_minutes=state.inactivity_delay_minutes,
        )
