"""Value types exchanged by the sync engine components."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..models import Dataset


class SyncType(str, Enum):
    """Remote channels a sync can push to."""
    MIRROR = "mirror"
    ARCHIVE = "archive"

    @classmethod
    def parse(cls, value: str) -> "SyncType":
        """Parse a sync type name, accepting the legacy channel names."""
        aliases = {"sheets": cls.MIRROR, "backup": cls.ARCHIVE}
        normalized = str(value).strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class RestoreMode(str, Enum):
    """How a restore applies remote data to the local store."""
    PREVIEW = "preview"
    REPLACE = "replace"
    MERGE = "merge"


class RestoreSource(str, Enum):
    """Where a restore reads its data from."""
    MIRROR = "mirror"
    ARCHIVE = "archive"


class ActivityState(str, Enum):
    """Per-user state of the activity tracker."""
    IDLE = "idle"
    TIMER_ARMED = "timer-armed"
    SYNCING = "syncing"


@dataclass
class Conflict:
    """A record present locally and remotely with differing content."""
    table: str
    id: str
    local_data: Dict[str, Any]
    remote_data: Dict[str, Any]
    fields: List[str] = field(default_factory=list)


@dataclass
class ImportSummary:
    """Record counts of a dataset that was or would be imported."""
    vehicles: int = 0
    expenses: int = 0
    financing: int = 0
    financing_payments: int = 0
    insurance: int = 0

    @classmethod
    def from_dataset(cls, dataset: Dataset) -> "ImportSummary":
        return cls(**dataset.counts())

    def to_dict(self) -> Dict[str, int]:
        return {
            "vehicles": self.vehicles,
            "expenses": self.expenses,
            "financing": self.financing,
            "financingPayments": self.financing_payments,
            "insurance": self.insurance,
        }


@dataclass
class ArchiveMetadata:
    """Contents of metadata.json inside an archive."""
    version: str
    timestamp: Optional[datetime]
    user_id: str


@dataclass
class ParsedArchive:
    """An archive decoded into its metadata and dataset."""
    metadata: ArchiveMetadata
    dataset: Dataset


@dataclass
class RemoteFile:
    """A file stored in the archive channel."""
    id: str
    name: str
    created_time: Optional[datetime] = None
    modified_time: Optional[datetime] = None
    size: Optional[int] = None
    link: str = ""


@dataclass
class MirrorSyncResult:
    """Outcome of pushing the dataset to the mirror."""
    mirror_id: str
    link: str
    timestamp: datetime


@dataclass
class ArchiveSyncResult:
    """Outcome of uploading an archive."""
    file_id: str
    file_name: str
    link: str
    timestamp: datetime
    pruned: List[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """
    Aggregate outcome of one execute_sync call.

    Attributes:
        results: Per sync type result for the types that succeeded
        errors: Per sync type error message for the types that failed
        success: True only if no sync type failed
    """
    results: Dict[SyncType, Any] = field(default_factory=dict)
    errors: Dict[SyncType, str] = field(default_factory=dict)
    error_codes: Dict[SyncType, str] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class RestoreResult:
    """Outcome of a restore in any mode."""
    success: bool
    mode: RestoreMode
    summary: ImportSummary
    conflicts: List[Conflict] = field(default_factory=list)
    error_code: Optional[str] = None
    message: str = ""


@dataclass
class DiscoveryResult:
    """Existing archive folder found for a user, if any."""
    found: bool
    folder_id: Optional[str] = None
    archives: List[RemoteFile] = field(default_factory=list)

    @property
    def latest(self) -> Optional[RemoteFile]:
        return self.archives[0] if self.archives else None


@dataclass
class RemoteStructure:
    """Ids of the remote resources created or found for a user."""
    root_folder_id: str
    archive_folder_id: str
    mirror_id: Optional[str] = None


@dataclass
class AutoRestoreResult:
    """Outcome of the login-time restore; never carries an exception."""
    restored: bool
    archive: Optional[RemoteFile] = None
    summary: Optional[ImportSummary] = None
    error: Optional[str] = None


@dataclass
class ManualSyncResult:
    """Outcome of a user-triggered sync through the activity tracker."""
    success: bool
    message: str


@dataclass
class ActivityStatus:
    """What the activity tracker knows about a user."""
    last_activity: Optional[datetime]
    sync_in_progress: bool
    next_sync_in_minutes: int
    state: ActivityState = ActivityState.IDLE


@dataclass
class ChangeStatus:
    """Whether local data changed since the last successful sync."""
    has_changes: bool
    last_data_change_date: Optional[datetime] = None
    last_sync_date: Optional[datetime] = None


@dataclass
class ActivityConfig:
    """The subset of a user's sync settings the activity tracker acts on."""
    enabled: bool
    auto_sync_enabled: bool
    inactivity_delay_minutes: int


@dataclass
class SyncStatus:
    """Combined status returned by the engine's status operation."""
    mirror_enabled: bool
    archive_enabled: bool
    sync_on_inactivity: bool
    inactivity_delay_minutes: int
    last_sync_date: Optional[datetime]
    last_backup_date: Optional[datetime]
    last_data_change_date: Optional[datetime]
    has_changes_since_last_sync: bool
    last_sync_error: Optional[str]
    activity: ActivityStatus

    @property
    def enabled_types(self) -> List[SyncType]:
        types = []
        if self.mirror_enabled:
            types.append(SyncType.MIRROR)
        if self.archive_enabled:
            types.append(SyncType.ARCHIVE)
        return types
