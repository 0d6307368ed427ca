"""
Tests for the DuckDB database module.

Covers the schema lifecycle, per-user scoping of the dataset, the sync
state row and the transactional restore.
"""

import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from vroom_sync.database import VehicleDatabase
from vroom_sync.models import Dataset, Expense, UserAccount

from conftest import OTHER_USER_ID, USER_ID, make_dataset


def test_database_file_created_and_schema_persists():
    """Records written in one session are visible in the next."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "vroom.duckdb"
        assert not db_path.exists()

        with VehicleDatabase(db_path) as db:
            assert db_path.exists()
            assert db.conn is not None
            db.insert_dataset(make_dataset())

        with VehicleDatabase(db_path) as db:
            assert db.count_vehicles(USER_ID) == 3
            assert db.load_dataset(USER_ID).model_dump() == make_dataset().model_dump()


def test_operations_require_open_connection():
    db = VehicleDatabase(Path("unused.duckdb"))
    with pytest.raises(RuntimeError, match="Database connection not established"):
        db.count_vehicles(USER_ID)


class TestUsers:
    def test_upsert_and_get_user(self, db):
        user = db.get_user(USER_ID)
        assert user.display_name == "Alex"
        assert user.remote_token == "token-1"

        db.upsert_user(UserAccount(id=USER_ID, email="alex@example.com",
                                   display_name="Alex B", remote_token=None))
        user = db.get_user(USER_ID)
        assert user.display_name == "Alex B"
        assert user.remote_token is None

    def test_unknown_user(self, db):
        assert db.get_user("nobody") is None


class TestDataset:
    def test_load_dataset_is_scoped_to_owner(self, db):
        db.insert_dataset(make_dataset(USER_ID))
        db.insert_dataset(make_dataset(OTHER_USER_ID, vehicles=1, expenses=2, prefix="o-"))

        mine = db.load_dataset(USER_ID)
        theirs = db.load_dataset(OTHER_USER_ID)

        assert mine.counts() == {"vehicles": 3, "expenses": 10, "financing": 1,
                                 "financing_payments": 2, "insurance": 1}
        assert theirs.counts() == {"vehicles": 1, "expenses": 2, "financing": 1,
                                   "financing_payments": 2, "insurance": 1}
        assert {v.id for v in theirs.vehicles} == {"o-veh-0"}

    def test_empty_dataset(self, db):
        dataset = db.load_dataset(USER_ID)
        assert dataset.is_empty()
        assert db.count_vehicles(USER_ID) == 0


class TestSyncState:
    def test_get_or_create_returns_defaults_once(self, db):
        state = db.get_or_create_sync_state(USER_ID, inactivity_delay_minutes=7)
        assert state.inactivity_delay_minutes == 7
        assert state.archive_retention_count == 10
        assert state.mirror_enabled is False
        assert state.sync_on_inactivity is True
        assert state.last_sync_date is None

        again = db.get_or_create_sync_state(USER_ID, inactivity_delay_minutes=12)
        assert again.inactivity_delay_minutes == 7

    def test_get_sync_state_does_not_create(self, db):
        assert db.get_sync_state(USER_ID) is None
        db.get_or_create_sync_state(USER_ID)
        assert db.get_sync_state(USER_ID) is not None

    def test_update_sync_state(self, db):
        when = datetime(2024, 5, 1, 10, 0, 0)
        state = db.update_sync_state(USER_ID, mirror_enabled=True, last_sync_date=when,
                                     mirror_id="mirror-9")
        assert state.mirror_enabled is True
        assert state.last_sync_date == when
        assert state.mirror_id == "mirror-9"
        assert db.get_sync_state(USER_ID).mirror_id == "mirror-9"

    def test_update_rejects_unknown_fields(self, db):
        with pytest.raises(ValueError, match="Unknown sync state fields"):
            db.update_sync_state(USER_ID, favourite_color="red")
        with pytest.raises(ValueError):
            db.update_sync_state(USER_ID, user_id="someone-else")


class TestApplyRestore:
    def test_replace_drops_all_owned_records(self, db):
        db.insert_dataset(make_dataset(USER_ID))
        db.insert_dataset(make_dataset(OTHER_USER_ID, vehicles=1, expenses=1, prefix="o-"))
        incoming = make_dataset(USER_ID, vehicles=1, expenses=2, prefix="new-")

        inserted = db.apply_restore(USER_ID, incoming, replace=True)

        assert inserted["vehicles"] == 1
        assert db.load_dataset(USER_ID).model_dump() == incoming.model_dump()
        assert db.load_dataset(OTHER_USER_ID).counts()["vehicles"] == 1

    def test_merge_keeps_local_only_records(self, db):
        db.insert_dataset(make_dataset(USER_ID, vehicles=2, expenses=4))
        incoming = make_dataset(USER_ID, vehicles=3, expenses=10)

        db.apply_restore(USER_ID, incoming, replace=False)

        result = db.load_dataset(USER_ID)
        assert result.counts()["vehicles"] == 3
        assert result.counts()["expenses"] == 10
        assert len({e.id for e in result.expenses}) == 10

    def test_failed_restore_rolls_back_everything(self, db):
        """A NOT NULL violation in a child table leaves the store untouched."""
        original = make_dataset(USER_ID)
        db.insert_dataset(original)

        incoming = make_dataset(USER_ID, prefix="bad-")
        broken = incoming.expenses[0].model_dump(by_alias=True)
        broken["category"] = None
        incoming.expenses[0] = Expense.model_construct(**broken)

        with pytest.raises(Exception):
            db.apply_restore(USER_ID, incoming, replace=True)

        assert db.load_dataset(USER_ID).model_dump() == original.model_dump()

    def test_restore_of_empty_dataset_with_replace_clears_user(self, db):
        db.insert_dataset(make_dataset(USER_ID))
        db.apply_restore(USER_ID, Dataset(), replace=True)
        assert db.load_dataset(USER_ID).is_empty()

    def test_ids_owned_by_another_user_roll_back(self, db):
        """A vehicle id already used by another user must not pull in their children."""
        theirs = make_dataset(OTHER_USER_ID, vehicles=1, expenses=2)
        db.insert_dataset(theirs)
        mine = make_dataset(USER_ID, vehicles=2, expenses=2, prefix="mine-")
        db.insert_dataset(mine)
        incoming = Dataset(vehicles=make_dataset(USER_ID, vehicles=1, expenses=0).vehicles)

        with pytest.raises(ValueError, match="belong to another user"):
            db.apply_restore(USER_ID, incoming, replace=True)

        assert db.load_dataset(USER_ID).model_dump() == mine.model_dump()
        assert db.load_dataset(OTHER_USER_ID).model_dump() == theirs.model_dump()
