"""
Playback progress checkpointing.

A ProgressTracker is bound to one (user, recording) pair. While tracking, a
periodic task samples the player's position and persists it when it has moved
far enough from the last successful save. On load, a checkpoint that is
within a few seconds of the end resumes from the start.

    tracker = ProgressTracker(store, user_id, recording_id)
    start_at = await tracker.load_initial_position()
    tracker.start_tracking(player.current_time, player.duration)
    ...
    tracker.stop_tracking()
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Protocol

import structlog

from .config import ProgressConfig
from .errors import PortalRealtimeError
from .metrics import MetricsCollector
from .models import ProgressCheckpoint

log = structlog.get_logger()


class CheckpointStore(Protocol):
    async def fetch_checkpoint(
        self, user_id: str, resource_id: str
    ) -> ProgressCheckpoint | None: ...

    async def upsert_checkpoint(self, checkpoint: ProgressCheckpoint) -> None: ...


class TrackerState(str, Enum):
    IDLE = "idle"
    TRACKING = "tracking"


class ProgressTracker:
    """Debounced autosave of playback position for one recording."""

    def __init__(
        self,
        store: CheckpointStore,
        user_id: str,
        resource_id: str,
        config: ProgressConfig | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._user_id = user_id
        self._resource_id = resource_id
        self._config = config or ProgressConfig()
        self._metrics = metrics
        self._clock = clock
        self._last_saved = 0.0
        self._task: asyncio.Task | None = None

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def resource_id(self) -> str:
        return self._resource_id

    @property
    def state(self) -> TrackerState:
        if self._task is not None and not self._task.done():
            return TrackerState.TRACKING
        return TrackerState.IDLE

    @property
    def last_saved_position(self) -> float:
        return self._last_saved

    async def load_initial_position(self) -> float:
        """
        Where playback should start.

        0 when there is no checkpoint, when it cannot be read, or when fewer
        than ``restart_threshold_seconds`` remain.
        """
        try:
            checkpoint = await self._store.fetch_checkpoint(self._user_id, self._resource_id)
        except PortalRealtimeError as exc:
            log.warning(
                "progress.load_failed",
                resource_id=self._resource_id,
                error=str(exc),
            )
            return 0.0

        if checkpoint is None:
            return 0.0
        if (
            checkpoint.duration_seconds > 0
            and checkpoint.remaining_seconds <= self._config.restart_threshold_seconds
        ):
            log.info(
                "progress.restart_finished",
                resource_id=self._resource_id,
                position=checkpoint.position_seconds,
                duration=checkpoint.duration_seconds,
            )
            return 0.0
        return checkpoint.position_seconds

    async def save(self, position: float, duration: float) -> bool:
        """
        Persist ``position`` if it moved at least ``min_delta_seconds`` since
        the last successful save. Returns True when a write landed.
        """
        if duration <= 0:
            return False
        if abs(position - self._last_saved) < self._config.min_delta_seconds:
            return False

        checkpoint = ProgressCheckpoint(
            user_id=self._user_id,
            resource_id=self._resource_id,
            position_seconds=position,
            duration_seconds=duration,
            last_watched_at=self._clock(),
        )
        try:
            await self._store.upsert_checkpoint(checkpoint)
        except PortalRealtimeError as exc:
            log.warning(
                "progress.save_failed",
                resource_id=self._resource_id,
                position=position,
                error=str(exc),
            )
            if self._metrics:
                self._metrics.inc("checkpoint_save_failures_total")
            return False

        self._last_saved = position
        if self._metrics:
            self._metrics.inc("checkpoint_saves_total")
        log.debug("progress.saved", resource_id=self._resource_id, position=position)
        return True

    def start_tracking(
        self,
        get_position: Callable[[], float],
        get_duration: Callable[[], float],
    ) -> None:
        """Start the autosave timer, replacing any timer already running."""
        self.stop_tracking()
        self._task = asyncio.create_task(
            self._autosave_loop(get_position, get_duration),
            name=f"autosave:{self._resource_id}",
        )
        log.info(
            "progress.tracking_started",
            resource_id=self._resource_id,
            interval=self._config.autosave_interval_seconds,
        )

    def stop_tracking(self) -> None:
        """Cancel the autosave timer. Synchronous and idempotent."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is not asyncio.current_task():
            task.cancel()
        log.info("progress.tracking_stopped", resource_id=self._resource_id)

    async def _autosave_loop(
        self,
        get_position: Callable[[], float],
        get_duration: Callable[[], float],
    ) -> None:
        interval = self._config.autosave_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                position = float(get_position())
                duration = float(get_duration())
            except Exception:
                log.exception("progress.position_source_error", resource_id=self._resource_id)
                self.stop_tracking()
                return
            if position > 0 and duration > 0:
                await self.save(position, duration)
