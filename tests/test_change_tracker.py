"""Tests for the change tracker."""

import asyncio
from datetime import datetime, timedelta

from vroom_sync.models import utc_now
from vroom_sync.sync.change_tracker import ChangeTracker

from conftest import USER_ID


class BrokenDatabase:
    """Mock database whose every call fails."""

    def update_sync_state(self, user_id, **fields):
        raise RuntimeError("disk on fire")

    def get_sync_state(self, user_id):
        raise RuntimeError("disk on fire")


class TestMarkChanged:
    def test_mark_changed_records_timestamp(self, db):
        async def run_test():
            tracker = ChangeTracker(db)
            before = utc_now() - timedelta(seconds=1)

            task = tracker.mark_changed(USER_ID)
            assert task is not None
            await tracker.flush()

            state = db.get_sync_state(USER_ID)
            assert state.last_data_change_date is not None
            assert state.last_data_change_date >= before

        asyncio.run(run_test())

    def test_mark_changed_does_not_raise_on_failure(self):
        async def run_test():
            tracker = ChangeTracker(BrokenDatabase())

            task = tracker.mark_changed(USER_ID)
            await tracker.flush()

            assert task.done()
            assert isinstance(task.exception(), RuntimeError)

        asyncio.run(run_test())

    def test_mark_changed_outside_event_loop_is_ignored(self, db):
        assert ChangeTracker(db).mark_changed(USER_ID) is None


class TestHasChanges:
    def test_true_when_never_synced(self, db):
        async def run_test():
            tracker = ChangeTracker(db)
            assert await tracker.has_changes_since_last_sync(USER_ID) is True

            db.update_sync_state(USER_ID, last_data_change_date=datetime(2024, 1, 1))
            assert await tracker.has_changes_since_last_sync(USER_ID) is True

        asyncio.run(run_test())

    def test_true_when_no_change_recorded(self, db):
        async def run_test():
            db.update_sync_state(USER_ID, last_sync_date=datetime(2024, 1, 1))
            assert await ChangeTracker(db).has_changes_since_last_sync(USER_ID) is True

        asyncio.run(run_test())

    def test_compares_change_and_sync_dates(self, db):
        async def run_test():
            tracker = ChangeTracker(db)
            db.update_sync_state(USER_ID, last_data_change_date=datetime(2024, 1, 1, 10),
                                 last_sync_date=datetime(2024, 1, 1, 11))
            assert await tracker.has_changes_since_last_sync(USER_ID) is False

            db.update_sync_state(USER_ID, last_data_change_date=datetime(2024, 1, 1, 12))
            status = await tracker.get_change_status(USER_ID)
            assert status.has_changes is True
            assert status.last_sync_date == datetime(2024, 1, 1, 11)
            assert status.last_data_change_date == datetime(2024, 1, 1, 12)

        asyncio.run(run_test())

    def test_fails_open_on_read_error(self):
        async def run_test():
            tracker = ChangeTracker(BrokenDatabase())
            assert await tracker.has_changes_since_last_sync(USER_ID) is True

        asyncio.run(run_test())
