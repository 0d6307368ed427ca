"""Sync orchestrator: pushes, backs up and restores a user's dataset."""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Dict, Iterable, List, Optional, Tuple, TypeVar, Union

from ..database import VehicleDatabase
from ..models import ENTITY_TABLES, Dataset, SyncState, UserAccount, utc_now
from . import archive_codec
from .change_tracker import ChangeTracker
from .config import SyncConfig
from .conflict_detector import ConflictDetector
from .exceptions import (
    AuthInvalidError, ConflictDetectedError, InvalidFileFormatError, SyncError, SyncErrorCode,
    SyncValidationError, VersionMismatchError, wrap_remote_error
)
from .guard import SyncGuard
from .interfaces import ArchiveAdapter, MirrorAdapter, RemoteAdapterFactory
from .logging_config import get_logger, log_restore_event, log_sync_event, PerformanceTimer
from .models import (
    ArchiveSyncResult, AutoRestoreResult, DiscoveryResult, ImportSummary,
    MirrorSyncResult, RemoteFile, RemoteStructure, RestoreMode, RestoreResult,
    RestoreSource, SyncResult, SyncType
)


logger = get_logger(__name__)

T = TypeVar("T")

MAX_REPORTED_VALIDATION_ERRORS = 20


def _archive_time(remote_file: RemoteFile) -> datetime:
    """Sort key for archives as naive UTC; files without timestamps sort last."""
    stamp = remote_file.modified_time or remote_file.created_time
    if stamp is None:
        return datetime.min
    if stamp.tzinfo is not None:
        stamp = stamp.astimezone(timezone.utc).replace(tzinfo=None)
    return stamp


class SyncOrchestrator:
    """Runs sync, backup and restore operations for one user at a time.

    Every remote failure is re-raised as a SyncError with a specific code.
    Foreground operations propagate errors to the caller; only discovery
    and the login-time restore convert failures into result values.
    """

    def __init__(self, database: VehicleDatabase, adapters: RemoteAdapterFactory,
                 change_tracker: ChangeTracker, guard: SyncGuard,
                 config: Optional[SyncConfig] = None,
                 conflict_detector: Optional[ConflictDetector] = None):
        """Initialize the orchestrator.

        Args:
            database: Local store
            adapters: Builds remote adapters from user credentials
            change_tracker: Marks data as changed after a restore
            guard: Per-user sync mutual exclusion, shared with the activity tracker
            config: Naming conventions and defaults
            conflict_detector: Detector used by merge restores
        """
        self._database = database
        self._adapters = adapters
        self._change_tracker = change_tracker
        self._guard = guard
        self._config = config or SyncConfig()
        self._detector = conflict_detector or ConflictDetector()

    # Sync

    async def execute_sync(self, user_id: str,
                           types: Iterable[Union[str, SyncType]]) -> SyncResult:
        """Run the requested sync types concurrently for a user.

        Failures of one type do not affect the others; they are collected
        in the result's errors.

        Raises:
            SyncValidationError: If no type or an unknown type is requested
            SyncInProgressError: If a sync already runs for the user
        """
        sync_types = self._parse_types(types)

        async with self._guard.hold(user_id, "execute_sync"):
            log_sync_event(logger, "sync_started", user_id,
                           f"Sync started for user {user_id}: {[t.value for t in sync_types]}")

            with PerformanceTimer(logger, "execute_sync", user_id=user_id):
                outcomes = await asyncio.gather(
                    *(self._run_type(user_id, sync_type) for sync_type in sync_types),
                    return_exceptions=True
                )

            result = SyncResult(timestamp=utc_now())
            for sync_type, outcome in zip(sync_types, outcomes):
                if isinstance(outcome, BaseException):
                    code = outcome.error_code.value if isinstance(outcome, SyncError) else \
                        SyncErrorCode.NETWORK_ERROR.value
                    result.errors[sync_type] = str(outcome) or type(outcome).__name__
                    result.error_codes[sync_type] = code
                    log_sync_event(logger, "sync_failed", user_id,
                                   f"{sync_type.value} sync failed for user {user_id}: {outcome}",
                                   sync_type=sync_type.value, error_code=code)
                else:
                    result.results[sync_type] = outcome

            last_error = "; ".join(
                f"{sync_type.value}: {message}" for sync_type, message in result.errors.items()
            ) or None
            await asyncio.to_thread(self._database.update_sync_state, user_id,
                                    last_sync_error=last_error)

        log_sync_event(logger, "sync_completed" if result.success else "sync_partially_failed",
                       user_id, f"Sync finished for user {user_id}: "
                       f"{len(result.results)} succeeded, {len(result.errors)} failed")
        return result

    @staticmethod
    def _parse_types(types: Iterable[Union[str, SyncType]]) -> List[SyncType]:
        if isinstance(types, (str, SyncType)):
            types = [types]
        requested = list(types or [])
        if not requested:
            raise SyncValidationError("At least one sync type is required")

        parsed: List[SyncType] = []
        for value in requested:
            try:
                sync_type = value if isinstance(value, SyncType) else SyncType.parse(value)
            except ValueError:
                raise SyncValidationError(f"Unknown sync type: {value}",
                                          {"sync_type": str(value),
                                           "valid_types": [t.value for t in SyncType]})
            if sync_type not in parsed:
                parsed.append(sync_type)
        return parsed

    async def _run_type(self, user_id: str, sync_type: SyncType):
        if sync_type is SyncType.MIRROR:
            return await self.sync_mirror(user_id)
        return await self.backup_archive(user_id)

    async def sync_mirror(self, user_id: str) -> MirrorSyncResult:
        """Overwrite the user's mirror with the full local dataset.

        The mirror is resolved from the stored id, then by its conventional
        name, and created as a last resort.

        Raises:
            SyncValidationError: If the mirror is not enabled
            AuthInvalidError: If the user has no remote credentials
        """
        state = await self._state(user_id)
        if not state.mirror_enabled:
            raise SyncValidationError("Mirror sync is not enabled", {"user_id": user_id})

        user = await self._require_user(user_id)
        mirror = self._mirror_adapter(user)
        dataset = await asyncio.to_thread(self._database.load_dataset, user_id)

        with PerformanceTimer(logger, "sync_mirror", user_id=user_id, sync_type="mirror"):
            mirror_id = await self._resolve_mirror(user, state, mirror)
            for spec in ENTITY_TABLES:
                rows = archive_codec.encode_table(spec, dataset.records(spec))
                await self._remote("push_table", user_id,
                                   mirror.push_table(mirror_id, spec.title, rows))
            await self._remote("push_table", user_id, mirror.push_table(
                mirror_id, archive_codec.MIRROR_METADATA_TABLE,
                archive_codec.encode_mirror_metadata(user_id)
            ))
            link = await self._remote("link_for", user_id, mirror.link_for(mirror_id))

        now = utc_now()
        await asyncio.to_thread(self._database.update_sync_state, user_id,
                                mirror_id=mirror_id, last_sync_date=now)
        log_sync_event(logger, "mirror_synced", user_id,
                       f"Mirror {mirror_id} updated for user {user_id}: {dataset.counts()}",
                       sync_type="mirror")
        return MirrorSyncResult(mirror_id=mirror_id, link=link, timestamp=now)

    async def _resolve_mirror(self, user: UserAccount, state: SyncState,
                              mirror: MirrorAdapter) -> str:
        if state.mirror_id:
            return state.mirror_id

        name = self._config.mirror_name(user.display_name)
        mirror_id = await self._remote("find_mirror_by_name", user.id,
                                       mirror.find_mirror_by_name(None, name))
        if mirror_id:
            logger.info(f"Found existing mirror {mirror_id} for user {user.id}")
            return mirror_id

        mirror_id = await self._remote("create_mirror", user.id, mirror.create_mirror(name))
        logger.info(f"Created mirror {mirror_id} for user {user.id}")
        return mirror_id

    # Archive

    async def backup_archive(self, user_id: str) -> ArchiveSyncResult:
        """Upload a new archive of the dataset and prune old ones.

        Raises:
            SyncValidationError: If the archive channel is not enabled
            AuthInvalidError: If the user has no remote credentials
        """
        state = await self._state(user_id)
        if not state.archive_enabled:
            raise SyncValidationError("Archive backup is not enabled", {"user_id": user_id})

        user = await self._require_user(user_id)
        archive = self._archive_adapter(user)
        dataset = await asyncio.to_thread(self._database.load_dataset, user_id)

        now = utc_now()
        data = archive_codec.serialize(dataset, user_id, now)
        file_name = self.archive_file_name(now)

        with PerformanceTimer(logger, "backup_archive", user_id=user_id, sync_type="archive"):
            folder_id = state.archive_folder_id
            if not folder_id:
                _, folder_id = await self._find_or_create_folders(user, archive)

            uploaded = await self._remote("upload", user_id, archive.upload(
                file_name, data, archive_codec.ARCHIVE_MIME_TYPE, folder_id
            ))

        # An archive counts as a sync, so archive-only users stop reporting changes
        await asyncio.to_thread(self._database.update_sync_state, user_id,
                                archive_folder_id=folder_id, last_backup_date=now,
                                last_sync_date=now)
        pruned = await self._prune_archives(user_id, archive, folder_id,
                                            state.archive_retention_count)

        log_sync_event(logger, "archive_uploaded", user_id,
                       f"Archive {file_name} uploaded for user {user_id} "
                       f"({len(data)} bytes, {len(pruned)} pruned)", sync_type="archive")
        return ArchiveSyncResult(file_id=uploaded.id, file_name=file_name, link=uploaded.link,
                                 timestamp=now, pruned=pruned)

    def archive_file_name(self, timestamp: datetime) -> str:
        """Conventional archive name, e.g. vroom-backup-2024-01-31T12-00-00-000Z.zip."""
        stamp = timestamp.strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3]
        return f"{self._config.archive_file_prefix}{stamp}Z.zip"

    def _is_archive(self, remote_file: RemoteFile) -> bool:
        return (remote_file.name.startswith(self._config.archive_file_prefix)
                and remote_file.name.endswith((".zip", ".json")))

    def _sorted_archives(self, files: Iterable[RemoteFile]) -> List[RemoteFile]:
        archives = [remote_file for remote_file in files if self._is_archive(remote_file)]
        return sorted(archives, key=_archive_time, reverse=True)

    async def _prune_archives(self, user_id: str, archive: ArchiveAdapter,
                              folder_id: str, keep: int) -> List[str]:
        try:
            stale_archives = self._sorted_archives(await archive.list_folder(folder_id))[keep:]
        except Exception as e:
            logger.warning(f"Could not list archives for pruning for user {user_id}: {e}")
            return []

        pruned = []
        for stale in stale_archives:
            try:
                await archive.delete(stale.id)
                pruned.append(stale.id)
                logger.info(f"Pruned archive {stale.name} for user {user_id}")
            except Exception as e:
                logger.warning(f"Failed to prune archive {stale.name} for user {user_id}: {e}")
        return pruned

    async def _find_or_create_folders(self, user: UserAccount,
                                      archive: ArchiveAdapter) -> Tuple[str, str]:
        root_name = self._config.root_folder_name(user.display_name)
        backups_name = self._config.backup_folder_name

        root_id = await self._remote("find_folder_by_name", user.id,
                                     archive.find_folder_by_name(root_name, None))
        if not root_id:
            root_id = await self._remote("create_folder", user.id,
                                         archive.create_folder(root_name, None))
            logger.info(f"Created root folder {root_name!r} for user {user.id}")

        backups_id = await self._remote("find_folder_by_name", user.id,
                                        archive.find_folder_by_name(backups_name, root_id))
        if not backups_id:
            backups_id = await self._remote("create_folder", user.id,
                                            archive.create_folder(backups_name, root_id))
            logger.info(f"Created {backups_name!r} folder for user {user.id}")

        return root_id, backups_id

    async def download_latest_archive(self, user_id: str) -> Tuple[RemoteFile, bytes]:
        """Download the most recent archive of a user.

        Raises:
            SyncValidationError: If no archive exists
        """
        user = await self._require_user(user_id)
        archive = self._archive_adapter(user)
        state = await asyncio.to_thread(self._database.get_sync_state, user_id)

        discovery = await self._locate_archives(user, archive, state)
        if discovery.latest is None:
            raise SyncValidationError("No backups found", {"user_id": user_id})

        latest = discovery.latest
        data = await self._remote("download", user_id, archive.download(latest.id))
        return latest, data

    # Discovery

    async def discover_existing_archive_folder(self, user_id: str) -> DiscoveryResult:
        """Look for an existing archive folder without creating anything.

        Adapter failures are logged and reported as not found.
        """
        try:
            user = await self._require_user(user_id)
            archive = self._archive_adapter(user)
            state = await asyncio.to_thread(self._database.get_sync_state, user_id)
            discovery = await self._locate_archives(user, archive, state)
        except Exception as e:
            logger.warning(f"Archive discovery failed for user {user_id}: {e}")
            return DiscoveryResult(found=False)

        logger.info(f"Archive discovery for user {user_id}: found={discovery.found}, "
                    f"{len(discovery.archives)} archives")
        return discovery

    async def _locate_archives(self, user: UserAccount, archive: ArchiveAdapter,
                               state: Optional[SyncState]) -> DiscoveryResult:
        folder_id = state.archive_folder_id if state else None

        if not folder_id:
            root_name = self._config.root_folder_name(user.display_name)
            root_id = await self._remote("find_folder_by_name", user.id,
                                         archive.find_folder_by_name(root_name, None))
            if not root_id:
                return DiscoveryResult(found=False)
            folder_id = await self._remote("find_folder_by_name", user.id,
                                           archive.find_folder_by_name(
                                               self._config.backup_folder_name, root_id))
            if not folder_id:
                return DiscoveryResult(found=False)

        files = await self._remote("list_folder", user.id, archive.list_folder(folder_id))
        return DiscoveryResult(found=True, folder_id=folder_id,
                               archives=self._sorted_archives(files))

    async def initialize_remote_structure(self, user_id: str) -> RemoteStructure:
        """Find or create the remote folders, and the mirror when it is enabled.

        Only called on explicit opt-in; the resulting ids are persisted.
        """
        user = await self._require_user(user_id)
        state = await self._state(user_id)
        archive = self._archive_adapter(user)

        root_id, backups_id = await self._find_or_create_folders(user, archive)

        mirror_id = state.mirror_id
        if state.mirror_enabled and not mirror_id:
            mirror_id = await self._resolve_mirror(user, state, self._mirror_adapter(user))

        await asyncio.to_thread(self._database.update_sync_state, user_id,
                                archive_folder_id=backups_id, mirror_id=mirror_id)
        logger.info(f"Remote structure ready for user {user_id}: root={root_id}, "
                    f"archives={backups_id}, mirror={mirror_id}")
        return RemoteStructure(root_folder_id=root_id, archive_folder_id=backups_id,
                               mirror_id=mirror_id)

    # Restore

    async def restore(self, user_id: str, source: Union[str, RestoreSource],
                      mode: Union[str, RestoreMode]) -> RestoreResult:
        """Restore from the mirror or from the latest archive.

        Raises:
            SyncValidationError: Unknown source or mode, foreign owner, invalid data
            VersionMismatchError: If the remote data has another format version
            InvalidFileFormatError: If the archive cannot be parsed
        """
        source = self._parse_enum(RestoreSource, source, "source")
        mode = self._parse_enum(RestoreMode, mode, "mode")

        if source is RestoreSource.MIRROR:
            dataset, owner_id = await self._read_mirror(user_id)
        else:
            _, data = await self.download_latest_archive(user_id)
            parsed = archive_codec.parse(data)
            dataset, owner_id = parsed.dataset, parsed.metadata.user_id

        return await self._apply_restore(user_id, dataset, owner_id, mode)

    async def restore_from_bytes(self, user_id: str, data: bytes,
                                 mode: Union[str, RestoreMode]) -> RestoreResult:
        """Restore from archive bytes supplied by the caller."""
        mode = self._parse_enum(RestoreMode, mode, "mode")
        parsed = archive_codec.parse(data)
        return await self._apply_restore(user_id, parsed.dataset, parsed.metadata.user_id, mode)

    async def _read_mirror(self, user_id: str) -> Tuple[Dataset, Optional[str]]:
        state = await self._state(user_id)
        if not state.mirror_id:
            raise SyncValidationError("No mirror configured for user", {"user_id": user_id})

        user = await self._require_user(user_id)
        mirror = self._mirror_adapter(user)

        metadata = archive_codec.decode_mirror_metadata(await self._remote(
            "read_table", user_id,
            mirror.read_table(state.mirror_id, archive_codec.MIRROR_METADATA_TABLE)
        ))
        version = metadata.get("formatVersion")
        if version and version != archive_codec.FORMAT_VERSION:
            raise VersionMismatchError(archive_codec.FORMAT_VERSION, version)

        tables = {}
        for spec in ENTITY_TABLES:
            rows = await self._remote("read_table", user_id,
                                      mirror.read_table(state.mirror_id, spec.title))
            tables[spec.key] = archive_codec.decode_table(spec, rows)
        dataset = Dataset(**tables)
        if not version and not dataset.is_empty():
            raise InvalidFileFormatError("mirror has no format version",
                                         {"mirror_id": state.mirror_id})

        owner_id = metadata.get("ownerId")
        if not owner_id and dataset.vehicles:
            owner_id = dataset.vehicles[0].user_id
        if not owner_id and dataset.is_empty():
            owner_id = user_id
        return dataset, owner_id

    async def _apply_restore(self, user_id: str, dataset: Dataset,
                             owner_id: Optional[str], mode: RestoreMode) -> RestoreResult:
        if owner_id != user_id:
            raise SyncValidationError(
                "Backup belongs to a different user",
                {"user_id": user_id, "owner_id": owner_id}
            )
        self.validate_dataset(user_id, dataset)

        summary = ImportSummary.from_dataset(dataset)

        if mode is RestoreMode.PREVIEW:
            log_restore_event(logger, user_id, mode.value, "previewed", dataset.counts())
            return RestoreResult(success=True, mode=mode, summary=summary,
                                 message="Preview only, no data changed")

        if mode is RestoreMode.MERGE:
            local = await asyncio.to_thread(self._database.load_dataset, user_id)
            conflicts = self._detector.detect(local, dataset)
            if conflicts:
                per_table = self._detector.summarize(conflicts)
                log_restore_event(logger, user_id, mode.value, "conflicts", per_table)
                error = ConflictDetectedError(len(conflicts), list(per_table))
                return RestoreResult(
                    success=False, mode=mode, summary=summary, conflicts=conflicts,
                    error_code=error.error_code.value, message=error.message
                )

        try:
            with PerformanceTimer(logger, "restore", user_id=user_id, mode=mode.value):
                await asyncio.to_thread(self._database.apply_restore, user_id, dataset,
                                        mode is RestoreMode.REPLACE)
        except Exception as e:
            log_restore_event(logger, user_id, mode.value, "failed", dataset.counts(),
                              error=str(e))
            raise SyncValidationError(
                "Failed to restore backup",
                {"mode": mode.value, "cause": str(e), "cause_type": type(e).__name__}
            ) from e

        self._change_tracker.mark_changed(user_id)
        log_restore_event(logger, user_id, mode.value, "completed", dataset.counts())
        return RestoreResult(success=True, mode=mode, summary=summary,
                             message="Data restored successfully")

    def validate_dataset(self, user_id: str, dataset: Dataset) -> None:
        """Check ownership, unique ids and parent references inside a dataset.

        Raises:
            SyncValidationError: Listing the first problems found
        """
        errors: List[str] = []
        ids: Dict[str, set] = {}

        for spec in ENTITY_TABLES:
            seen = set()
            for record in dataset.records(spec):
                if record.id in seen:
                    errors.append(f"{spec.table}: duplicate id {record.id}")
                seen.add(record.id)

                if spec.parent_key is None:
                    if record.user_id != user_id:
                        errors.append(f"{spec.table}: {record.id} belongs to {record.user_id}")
                    continue

                parent_id = getattr(record, spec.parent_field)
                if parent_id not in ids[spec.parent_key]:
                    errors.append(
                        f"{spec.table}: {record.id} references missing "
                        f"{spec.parent_field} {parent_id}"
                    )
            ids[spec.key] = seen

        if errors:
            raise SyncValidationError(
                "Backup validation failed",
                {"errors": errors[:MAX_REPORTED_VALIDATION_ERRORS], "error_count": len(errors)}
            )

    # Login

    async def auto_restore_on_login(self, user_id: str) -> AutoRestoreResult:
        """Restore the latest archive for a user who has no local vehicles.

        Never raises; every failure is reported in the result.
        """
        try:
            vehicle_count = await asyncio.to_thread(self._database.count_vehicles, user_id)
            if vehicle_count > 0:
                return AutoRestoreResult(restored=False, error="User already has local data")

            discovery = await self.discover_existing_archive_folder(user_id)
            if not discovery.found or discovery.latest is None:
                return AutoRestoreResult(restored=False, error="No backups found")

            user = await self._require_user(user_id)
            archive = self._archive_adapter(user)
            latest = discovery.latest
            data = await self._remote("download", user_id, archive.download(latest.id))
            result = await self.restore_from_bytes(user_id, data, RestoreMode.REPLACE)
        except Exception as e:
            logger.error(f"Auto-restore failed for user {user_id}: {e}", exc_info=True)
            return AutoRestoreResult(restored=False, error=str(e))

        logger.info(f"Auto-restored archive {latest.name} for user {user_id}")
        return AutoRestoreResult(restored=True, archive=latest, summary=result.summary)

    # Helpers

    async def _state(self, user_id: str) -> SyncState:
        return await asyncio.to_thread(
            self._database.get_or_create_sync_state, user_id,
            self._config.default_inactivity_minutes, self._config.archive_retention_count
        )

    async def _require_user(self, user_id: str) -> UserAccount:
        user = await asyncio.to_thread(self._database.get_user, user_id)
        if user is None:
            raise SyncValidationError(f"Unknown user {user_id}", {"user_id": user_id})
        return user

    def _mirror_adapter(self, user: UserAccount) -> MirrorAdapter:
        if not user.remote_token:
            raise AuthInvalidError(user.id)
        return self._adapters.mirror_for(user)

    def _archive_adapter(self, user: UserAccount) -> ArchiveAdapter:
        if not user.remote_token:
            raise AuthInvalidError(user.id)
        return self._adapters.archive_for(user)

    @staticmethod
    async def _remote(operation: str, user_id: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except SyncError:
            raise
        except Exception as e:
            raise wrap_remote_error(e, operation, user_id) from e

    @staticmethod
    def _parse_enum(enum_type, value, label: str):
        if isinstance(value, enum_type):
            return value
        try:
            return enum_type(str(value).lower())
        except ValueError:
            raise SyncValidationError(
                f"Unknown restore {label}: {value}",
                {label: str(value), "valid": [member.value for member in enum_type]}
            )
