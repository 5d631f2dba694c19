"""Tests for the global sync channel and invalidation fan-out."""

from portal_realtime.config import SyncConfig, SyncRule
from portal_realtime.feed import ChangeFeed, ChannelBinding
from portal_realtime.invalidation import ALL, QueryInvalidator
from portal_realtime.sync import RealtimeSync

from .fakes import insert, recording_invalidator


def make_sync(config=None):
    invalidator, signals = recording_invalidator()
    return RealtimeSync(ChangeFeed("http://backend.test"), invalidator, config), signals


def test_bindings_scope_user_tables_to_user():
    sync, _ = make_sync()
    bindings = {b.table: b for b in sync.bindings_for("u1")}

    assert bindings["user_enrollments"].filter == "user_id=eq.u1"
    assert bindings["profiles"].filter == "user_id=eq.u1"
    assert bindings["recordings"].filter is None
    assert all(b.event == "*" for b in bindings.values())


def test_catch_all_binds_every_table():
    sync, _ = make_sync(SyncConfig(catch_all=True))
    assert sync.bindings_for("u1") == [ChannelBinding()]


async def test_change_invalidates_table_keys():
    sync, signals = make_sync()
    await sync.handle_event(insert("schedules", id=1))
    assert signals == [("student-schedule-direct", "allStudentSchedulesRPC", "ongoingClassRPC")]


async def test_unmapped_table_is_ignored():
    sync, signals = make_sync()
    await sync.handle_event(insert("audit_log", id=1))
    assert signals == []


async def test_catch_all_invalidates_everything():
    sync, signals = make_sync(SyncConfig(catch_all=True))
    await sync.handle_event(insert("anything", id=1))
    assert signals == [ALL]


async def test_custom_rules():
    config = SyncConfig(rules=[SyncRule(table="grades", keys=["grades", "report-card"])])
    sync, signals = make_sync(config)
    await sync.handle_event(insert("grades", id=1))
    await sync.handle_event(insert("notes", id=1))
    assert signals == [("grades", "report-card")]


async def test_open_and_close_manage_one_channel():
    sync, _ = make_sync()
    first = sync.open("u1")
    second = sync.open("u1")
    assert first.closed and not second.closed
    sync.close()
    assert second.closed and sync.subscription is None
    await first.aclose()
    await second.aclose()


# --- QueryInvalidator ---


def test_unsubscribe_stops_delivery():
    invalidator = QueryInvalidator()
    seen = []
    unsubscribe = invalidator.subscribe(seen.append)
    invalidator.invalidate("a")
    unsubscribe()
    unsubscribe()
    invalidator.invalidate("b")
    assert seen == [("a",)]
    assert invalidator.signals_sent == 2


def test_failing_listener_does_not_block_others():
    invalidator = QueryInvalidator()
    seen = []

    def broken(signal):
        raise RuntimeError("view unmounted")

    invalidator.subscribe(broken)
    invalidator.subscribe(seen.append)
    invalidator.invalidate_all()
    assert seen == [ALL]


def test_empty_invalidate_is_noop():
    invalidator = QueryInvalidator()
    invalidator.invalidate()
    assert invalidator.signals_sent == 0
