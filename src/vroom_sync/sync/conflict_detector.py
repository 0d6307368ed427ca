"""Conflict detection between a local and a remote dataset."""

from typing import Any, Dict, List, Sequence
import logging

from ..models import ENTITY_TABLES, Dataset, SyncModel, TableSpec
from .models import Conflict


logger = logging.getLogger(__name__)


class ConflictDetector:
    """Reports records whose id exists on both sides with differing content.

    Records present on one side only are never conflicts. Detection never
    resolves anything; a merge with conflicts is aborted by the caller.
    """

    def detect(self, local: Dataset, remote: Dataset) -> List[Conflict]:
        """Compare two datasets across every entity type.

        Args:
            local: Records currently in the local store
            remote: Records about to be merged in

        Returns:
            One Conflict per differing id, grouped by entity type in
            dependency order and sorted by id within a type
        """
        conflicts: List[Conflict] = []
        for spec in ENTITY_TABLES:
            conflicts.extend(self.detect_table(spec, local.records(spec), remote.records(spec)))

        if conflicts:
            logger.warning(
                f"Detected {len(conflicts)} conflicts: {self.summarize(conflicts)}"
            )
        return conflicts

    def detect_table(self, spec: TableSpec, local_records: Sequence[SyncModel],
                     remote_records: Sequence[SyncModel]) -> List[Conflict]:
        """Compare the records of a single entity type by id."""
        local_by_id = {record.id: record for record in local_records}

        conflicts = []
        for remote_record in sorted(remote_records, key=lambda record: record.id):
            local_record = local_by_id.get(remote_record.id)
            if local_record is None:
                continue

            local_data = self._as_dict(local_record)
            remote_data = self._as_dict(remote_record)
            differing = [name for name in spec.headers
                         if local_data.get(name) != remote_data.get(name)]
            if differing:
                conflicts.append(Conflict(
                    table=spec.table,
                    id=remote_record.id,
                    local_data=local_data,
                    remote_data=remote_data,
                    fields=differing,
                ))
        return conflicts

    @staticmethod
    def summarize(conflicts: Sequence[Conflict]) -> Dict[str, int]:
        """Number of conflicts per table."""
        counts: Dict[str, int] = {}
        for conflict in conflicts:
            counts[conflict.table] = counts.get(conflict.table, 0) + 1
        return counts

    @staticmethod
    def _as_dict(record: SyncModel) -> Dict[str, Any]:
        return record.model_dump(by_alias=True)
