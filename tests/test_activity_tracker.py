"""Tests for the inactivity-driven activity tracker.

Time is compressed through ``seconds_per_minute`` so a five minute delay
lasts a fraction of a second.
"""

import asyncio
from datetime import timedelta

from vroom_sync.models import utc_now
from vroom_sync.sync.activity_tracker import ActivityTracker
from vroom_sync.sync.config import SyncConfig
from vroom_sync.sync.guard import SyncGuard
from vroom_sync.sync.models import ActivityConfig, ActivityState, SyncResult, SyncType

from conftest import OTHER_USER_ID, USER_ID


class MockOrchestrator:
    """Mock orchestrator recording execute_sync calls."""

    def __init__(self, hold: bool = False, fail: bool = False):
        self.calls = []
        self.release = asyncio.Event()
        self.hold = hold
        self.fail = fail
        if not hold:
            self.release.set()

    async def execute_sync(self, user_id, types):
        self.calls.append((user_id, list(types)))
        await self.release.wait()
        if self.fail:
            raise RuntimeError("remote unavailable")
        return SyncResult()


class MockChangeTracker:
    def __init__(self, has_changes: bool = True):
        self.has_changes = has_changes

    async def has_changes_since_last_sync(self, user_id):
        return self.has_changes


ENABLED = ActivityConfig(enabled=True, auto_sync_enabled=True, inactivity_delay_minutes=5)


def _tracker(db, orchestrator, has_changes=True, seconds_per_minute=0.2, config=None):
    db.update_sync_state(USER_ID, mirror_enabled=True)
    return ActivityTracker(orchestrator, MockChangeTracker(has_changes), db, SyncGuard(),
                           config=config, seconds_per_minute=seconds_per_minute)


class TestDebounce:
    def test_only_last_activity_counts(self, db):
        """Activity at t=0 and t=2 with a 5 minute delay syncs at t=7, not t=5."""
        async def run_test():
            orchestrator = MockOrchestrator()
            tracker = _tracker(db, orchestrator)

            tracker.record_activity(USER_ID, ENABLED)
            await asyncio.sleep(0.4)
            tracker.record_activity(USER_ID, ENABLED)

            await asyncio.sleep(0.8)
            assert orchestrator.calls == []

            await asyncio.sleep(0.6)
            assert orchestrator.calls == [(USER_ID, [SyncType.MIRROR])]
            await tracker.stop()

        asyncio.run(run_test())

    def test_disabled_config_is_a_no_op(self, db):
        async def run_test():
            orchestrator = MockOrchestrator()
            tracker = _tracker(db, orchestrator, seconds_per_minute=0.01)

            tracker.record_activity(USER_ID, ActivityConfig(False, True, 1))
            tracker.record_activity(USER_ID, ActivityConfig(True, False, 1))
            await asyncio.sleep(0.1)

            assert orchestrator.calls == []
            assert tracker.get_active_users() == []
            assert tracker.get_sync_status(USER_ID).last_activity is None

        asyncio.run(run_test())

    def test_fire_while_syncing_is_dropped(self, db):
        async def run_test():
            orchestrator = MockOrchestrator(hold=True)
            tracker = _tracker(db, orchestrator, seconds_per_minute=0.1)
            one_minute = ActivityConfig(True, True, 1)

            tracker.record_activity(USER_ID, one_minute)
            await asyncio.sleep(0.25)
            assert len(orchestrator.calls) == 1
            assert tracker.get_sync_status(USER_ID).state is ActivityState.SYNCING

            tracker.record_activity(USER_ID, one_minute)
            await asyncio.sleep(0.25)

            orchestrator.release.set()
            await asyncio.sleep(0.05)

            assert len(orchestrator.calls) == 1
            status = tracker.get_sync_status(USER_ID)
            assert status.sync_in_progress is False
            assert status.state is ActivityState.IDLE
            await tracker.stop()

        asyncio.run(run_test())

    def test_skips_when_nothing_changed(self, db):
        async def run_test():
            orchestrator = MockOrchestrator()
            tracker = _tracker(db, orchestrator, has_changes=False, seconds_per_minute=0.02)

            tracker.record_activity(USER_ID, ENABLED)
            await asyncio.sleep(0.3)

            assert orchestrator.calls == []
            assert tracker.get_sync_status(USER_ID).sync_in_progress is False

        asyncio.run(run_test())

    def test_skips_when_no_type_enabled(self, db):
        async def run_test():
            orchestrator = MockOrchestrator()
            tracker = _tracker(db, orchestrator, seconds_per_minute=0.02)
            db.update_sync_state(USER_ID, mirror_enabled=False)

            tracker.record_activity(USER_ID, ENABLED)
            await asyncio.sleep(0.3)

            assert orchestrator.calls == []

        asyncio.run(run_test())

    def test_failed_auto_sync_clears_flag(self, db):
        async def run_test():
            orchestrator = MockOrchestrator(fail=True)
            tracker = _tracker(db, orchestrator, seconds_per_minute=0.02)

            tracker.record_activity(USER_ID, ENABLED)
            await asyncio.sleep(0.3)

            assert len(orchestrator.calls) == 1
            assert tracker.get_sync_status(USER_ID).sync_in_progress is False

        asyncio.run(run_test())


class TestManualSync:
    def test_manual_sync_cancels_pending_timer(self, db):
        async def run_test():
            orchestrator = MockOrchestrator()
            tracker = _tracker(db, orchestrator, seconds_per_minute=0.1)

            tracker.record_activity(USER_ID, ENABLED)
            result = await tracker.trigger_manual_sync(USER_ID)
            assert result.success is True

            await asyncio.sleep(0.7)
            assert len(orchestrator.calls) == 1

        asyncio.run(run_test())

    def test_manual_sync_while_syncing_fails_immediately(self, db):
        async def run_test():
            orchestrator = MockOrchestrator(hold=True)
            tracker = _tracker(db, orchestrator)

            first = asyncio.create_task(tracker.trigger_manual_sync(USER_ID))
            await asyncio.sleep(0.05)

            second = await tracker.trigger_manual_sync(USER_ID)
            assert second.success is False
            assert "already in progress" in second.message

            orchestrator.release.set()
            assert (await first).success is True

        asyncio.run(run_test())

    def test_manual_sync_reports_failure(self, db):
        async def run_test():
            tracker = _tracker(db, MockOrchestrator(fail=True))
            result = await tracker.trigger_manual_sync(USER_ID)
            assert result.success is False
            assert "remote unavailable" in result.message
            assert tracker.get_sync_status(USER_ID).sync_in_progress is False

        asyncio.run(run_test())

    def test_manual_sync_without_enabled_types(self, db):
        async def run_test():
            tracker = _tracker(db, MockOrchestrator())
            result = await tracker.trigger_manual_sync(OTHER_USER_ID)
            assert result.success is False
            assert result.message == "No sync types are enabled"

        asyncio.run(run_test())


class TestStatusAndLifecycle:
    def test_status_reports_whole_minutes_remaining(self, db):
        async def run_test():
            tracker = _tracker(db, MockOrchestrator(), seconds_per_minute=60.0)

            tracker.record_activity(USER_ID, ENABLED)
            status = tracker.get_sync_status(USER_ID)

            assert status.next_sync_in_minutes == 5
            assert status.state is ActivityState.TIMER_ARMED
            assert status.last_activity is not None
            assert abs(utc_now() - status.last_activity) < timedelta(seconds=5)

            tracker.stop_tracking(USER_ID)
            assert tracker.get_sync_status(USER_ID).next_sync_in_minutes == 0
            assert tracker.get_active_users() == []

        asyncio.run(run_test())

    def test_update_sync_config_rearms_with_new_delay(self, db):
        async def run_test():
            orchestrator = MockOrchestrator()
            tracker = _tracker(db, orchestrator, seconds_per_minute=0.1)

            tracker.record_activity(USER_ID, ENABLED)
            tracker.update_sync_config(USER_ID, ActivityConfig(True, True, 1))
            await asyncio.sleep(0.3)

            assert len(orchestrator.calls) == 1
            await tracker.stop()

        asyncio.run(run_test())

    def test_update_sync_config_disable_cancels_timer(self, db):
        async def run_test():
            orchestrator = MockOrchestrator()
            tracker = _tracker(db, orchestrator, seconds_per_minute=0.02)

            tracker.record_activity(USER_ID, ENABLED)
            tracker.update_sync_config(USER_ID, ActivityConfig(True, False, 5))
            await asyncio.sleep(0.3)

            assert orchestrator.calls == []
            assert tracker.get_sync_status(USER_ID).state is ActivityState.IDLE

        asyncio.run(run_test())

    def test_cleanup_spares_syncing_users(self, db):
        async def run_test():
            orchestrator = MockOrchestrator(hold=True)
            tracker = _tracker(db, orchestrator)

            tracker.record_activity(OTHER_USER_ID, ENABLED)
            syncing = asyncio.create_task(tracker.trigger_manual_sync(USER_ID))
            await asyncio.sleep(0.05)

            removed = tracker.cleanup_inactive_users(now=utc_now() + timedelta(hours=25))

            assert removed == [OTHER_USER_ID]
            assert tracker.get_active_users() == [USER_ID]

            orchestrator.release.set()
            await syncing

        asyncio.run(run_test())

    def test_periodic_cleanup_and_stop(self, db):
        async def run_test():
            config = SyncConfig(cleanup_interval_seconds=0.05, max_inactive_hours=0)
            tracker = _tracker(db, MockOrchestrator(), config=config)

            await tracker.start()
            tracker.record_activity(USER_ID, ENABLED)
            await asyncio.sleep(0.2)
            assert tracker.get_active_users() == []

            await tracker.stop()

        asyncio.run(run_test())

    def test_stop_cancels_pending_timers(self, db):
        async def run_test():
            orchestrator = MockOrchestrator()
            tracker = _tracker(db, orchestrator, seconds_per_minute=0.02)

            tracker.record_activity(USER_ID, ENABLED)
            await tracker.stop()
            await asyncio.sleep(0.2)

            assert orchestrator.calls == []

        asyncio.run(run_test())
