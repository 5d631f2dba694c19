"""Tests for playback checkpointing."""

import asyncio
from datetime import datetime, timezone

from portal_realtime.config import ProgressConfig
from portal_realtime.metrics import MetricsCollector
from portal_realtime.models import ProgressCheckpoint
from portal_realtime.progress import ProgressTracker, TrackerState

from .fakes import FakeCheckpointStore, canned_backend

USER = "student-1"
REC = "rec-9"
FAST = ProgressConfig(autosave_interval_seconds=0.02)


def checkpoint(position, duration):
    return ProgressCheckpoint(
        user_id=USER,
        resource_id=REC,
        position_seconds=position,
        duration_seconds=duration,
        last_watched_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


def tracker(store, config=None, metrics=None):
    return ProgressTracker(store, USER, REC, config=config, metrics=metrics)


# --- initial position ---


async def test_nearly_finished_recording_restarts_from_zero():
    store = FakeCheckpointStore()
    store.rows[(USER, REC)] = checkpoint(118, 120)
    assert await tracker(store).load_initial_position() == 0


async def test_partial_recording_resumes_at_checkpoint():
    store = FakeCheckpointStore()
    store.rows[(USER, REC)] = checkpoint(100, 120)
    assert await tracker(store).load_initial_position() == 100


async def test_exactly_at_threshold_restarts():
    store = FakeCheckpointStore()
    store.rows[(USER, REC)] = checkpoint(115, 120)
    assert await tracker(store).load_initial_position() == 0


async def test_unknown_duration_resumes_at_checkpoint():
    store = FakeCheckpointStore()
    store.rows[(USER, REC)] = checkpoint(42, 0)
    assert await tracker(store).load_initial_position() == 42


async def test_missing_checkpoint_starts_at_zero():
    assert await tracker(FakeCheckpointStore()).load_initial_position() == 0


async def test_read_failure_starts_at_zero():
    store = FakeCheckpointStore()
    store.rows[(USER, REC)] = checkpoint(100, 120)
    store.fail_reads = True
    assert await tracker(store).load_initial_position() == 0


async def test_null_stored_position_starts_at_zero():
    backend = await canned_backend(
        [{"progress_seconds": None, "duration_seconds": 600, "last_watched_at": None}]
    )
    try:
        assert await tracker(backend).load_initial_position() == 0
    finally:
        await backend.close()


# --- save ---


async def test_small_movement_is_skipped():
    store = FakeCheckpointStore()
    t = tracker(store)
    assert await t.save(100, 600)
    assert not await t.save(102, 600)
    assert [c.position_seconds for c in store.upserts] == [100]


async def test_movement_past_delta_is_written():
    store = FakeCheckpointStore()
    t = tracker(store)
    assert await t.save(100, 600)
    assert await t.save(107, 600)
    assert [c.position_seconds for c in store.upserts] == [100, 107]


async def test_seeking_backwards_counts_as_movement():
    store = FakeCheckpointStore()
    t = tracker(store)
    await t.save(300, 600)
    assert await t.save(20, 600)
    assert t.last_saved_position == 20


async def test_first_save_near_start_is_skipped():
    store = FakeCheckpointStore()
    assert not await tracker(store).save(3, 600)
    assert store.upserts == []


async def test_zero_duration_is_a_noop():
    store = FakeCheckpointStore()
    t = tracker(store)
    assert not await t.save(100, 0)
    assert not await t.save(100, -1)
    assert store.upserts == []


async def test_failed_write_does_not_advance_watermark():
    store = FakeCheckpointStore()
    store.fail_writes = 1
    metrics = MetricsCollector()
    t = tracker(store, metrics=metrics)

    assert not await t.save(100, 600)
    assert t.last_saved_position == 0
    assert metrics.get("checkpoint_save_failures_total") == 1

    assert await t.save(102, 600)
    assert t.last_saved_position == 102
    assert metrics.get("checkpoint_saves_total") == 1


async def test_saved_checkpoint_carries_identity_and_timestamp():
    store = FakeCheckpointStore()
    await tracker(store).save(50, 600)
    saved = store.upserts[0]
    assert (saved.user_id, saved.resource_id) == (USER, REC)
    assert saved.duration_seconds == 600
    assert saved.last_watched_at is not None


# --- autosave timer ---


async def test_tracking_saves_periodically():
    store = FakeCheckpointStore()
    t = tracker(store, config=FAST)
    position = {"now": 30.0}

    t.start_tracking(lambda: position["now"], lambda: 600.0)
    assert t.state == TrackerState.TRACKING
    await asyncio.sleep(0.06)
    position["now"] = 45.0
    await asyncio.sleep(0.06)
    t.stop_tracking()

    assert t.state == TrackerState.IDLE
    assert [c.position_seconds for c in store.upserts] == [30.0, 45.0]


async def test_stop_tracking_halts_saves_and_is_idempotent():
    store = FakeCheckpointStore()
    t = tracker(store, config=FAST)
    position = {"now": 30.0}

    t.start_tracking(lambda: position["now"], lambda: 600.0)
    await asyncio.sleep(0.05)
    t.stop_tracking()
    t.stop_tracking()
    written = len(store.upserts)

    position["now"] = 200.0
    await asyncio.sleep(0.06)
    assert len(store.upserts) == written


async def test_restart_replaces_running_timer():
    store = FakeCheckpointStore()
    t = tracker(store, config=FAST)

    t.start_tracking(lambda: 30.0, lambda: 600.0)
    first = t._task
    t.start_tracking(lambda: 90.0, lambda: 600.0)
    await asyncio.sleep(0)
    assert first.cancelled() or first.done()

    await asyncio.sleep(0.05)
    t.stop_tracking()
    assert {c.position_seconds for c in store.upserts} == {90.0}


async def test_zero_position_or_duration_is_not_saved():
    store = FakeCheckpointStore()
    t = tracker(store, config=FAST)
    t.start_tracking(lambda: 0.0, lambda: 600.0)
    await asyncio.sleep(0.05)
    t.start_tracking(lambda: 100.0, lambda: 0.0)
    await asyncio.sleep(0.05)
    t.stop_tracking()
    assert store.upserts == []


async def test_position_source_error_stops_tracking():
    store = FakeCheckpointStore()
    t = tracker(store, config=FAST)

    def broken():
        raise RuntimeError("player detached")

    t.start_tracking(broken, lambda: 600.0)
    await asyncio.sleep(0.05)
    assert t.state == TrackerState.IDLE
    assert store.upserts == []
