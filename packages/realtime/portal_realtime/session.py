"""
Client session orchestrator.

Owns everything scoped to the signed-in user: change-feed channels,
membership snapshot, notification dispatch, merge resolution and the active
progress tracker. Handles lifecycle: startup, identity changes, shutdown.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any

import structlog

from .backend import BackendClient
from .config import RealtimeConfig
from .dispatch import NotificationDispatcher, Presenter, SoundPlayer
from .errors import StorageError
from .feed import ChangeFeed, ChannelBinding, Subscription
from .health import HealthServer
from .invalidation import QueryInvalidator
from .membership import MembershipCache
from .merge import MergeResolver
from .metrics import MetricsCollector
from .models import MergeResolution
from .progress import CheckpointStore, ProgressTracker
from .state import LocalCheckpointStore
from .sync import RealtimeSync

log = structlog.get_logger()

DM_CHANNEL = "direct-messages"
COMMUNITY_CHANNEL = "community-messages"
NOTIFICATIONS_CHANNEL = "realtime-notifications"

SHUTDOWN_TIMEOUT = 15.0
HEALTH_INTERVAL = 30.0


class SessionContext:
    """The current identity. Read live by every long-lived callback."""

    def __init__(self) -> None:
        self._user_id: str | None = None

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def set(self, user_id: str | None) -> None:
        self._user_id = user_id


class ClientSession:
    """
    One logical realtime client.

    Identity changes always close every channel and stop tracking before
    anything is opened for the new user, so no event is delivered twice or
    to the wrong identity.
    """

    def __init__(
        self,
        config: RealtimeConfig,
        presenter: Presenter,
        sound: SoundPlayer | None = None,
        backend: BackendClient | None = None,
        feed: ChangeFeed | None = None,
        checkpoint_store: CheckpointStore | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._config = config
        self._metrics = metrics or MetricsCollector()
        self._context = SessionContext()
        self._backend = backend or BackendClient(
            url=config.backend.url,
            api_key=config.backend.api_key,
            verify_tls=config.backend.verify_tls,
            request_timeout=config.backend.request_timeout_seconds,
            metrics=self._metrics,
        )
        self._feed = feed or ChangeFeed(
            url=config.backend.url,
            api_key=config.backend.api_key,
            heartbeat_timeout=config.backend.heartbeat_timeout_seconds,
            verify_tls=config.backend.verify_tls,
            metrics=self._metrics,
        )
        self._local_store: LocalCheckpointStore | None = None
        if checkpoint_store is None and config.progress.store == "local":
            self._local_store = LocalCheckpointStore(config.progress.local_db_path)
            checkpoint_store = self._local_store
        self._checkpoints: CheckpointStore = checkpoint_store or self._backend
        self._saved_progress: dict[str, Any] | None = None

        self._invalidator = QueryInvalidator()
        self._membership = MembershipCache(self._backend)
        self._dispatcher = NotificationDispatcher(
            current_user=lambda: self._context.user_id,
            membership=self._membership,
            presenter=presenter,
            invalidator=self._invalidator,
            sound=sound,
            config=config.notifications,
            store=self._backend,
            metrics=self._metrics,
        )
        self._merge = MergeResolver(
            self._backend,
            ttl_seconds=config.merge.cache_ttl_seconds,
            maxsize=config.merge.cache_maxsize,
            metrics=self._metrics,
        )
        self._sync = RealtimeSync(self._feed, self._invalidator, config.sync)
        self._health = HealthServer(
            host=config.metrics.host,
            port=config.metrics.port,
            metrics=self._metrics,
            status_provider=self.status,
        )
        self._tracker: ProgressTracker | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def invalidator(self) -> QueryInvalidator:
        return self._invalidator

    @property
    def membership(self) -> MembershipCache:
        return self._membership

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @property
    def tracker(self) -> ProgressTracker | None:
        return self._tracker

    async def start(self, user_id: str | None = None) -> None:
        log.info("session.starting")
        await self._backend.open()
        if self._local_store:
            await self._local_store.open()

        if self._config.metrics.enabled:
            try:
                await self._health.start()
                log.info(
                    "session.health_started",
                    host=self._config.metrics.host,
                    port=self._config.metrics.port,
                )
            except Exception as exc:
                log.warning("session.health_start_failed", error=str(exc))

        self._running = True
        if user_id:
            await self.set_identity(user_id)
        log.info("session.started", user_id=user_id)

    async def stop(self) -> None:
        """Close channels, stop tracking, release connections."""
        if not self._running:
            return
        self._running = False
        log.info("session.stopping")

        for sub in self._teardown():
            await sub.aclose()
        self._context.set(None)
        self._dispatcher.cancel_cues()

        await self._health.stop()
        await self._backend.close()
        if self._local_store:
            await self._local_store.close()
        log.info("session.stopped")

    async def set_identity(self, user_id: str | None) -> None:
        """Switch the session to ``user_id`` (None signs out)."""
        if user_id == self._context.user_id:
            return

        previous = self._context.user_id
        self._teardown()
        self._context.set(user_id)
        log.info("session.identity_changed", previous=previous, user_id=user_id)
        if user_id is None:
            return

        structlog.contextvars.bind_contextvars(user_id=user_id)
        self._open_channels(user_id)
        await self._membership.refresh(user_id)
        await self.refresh_saved_progress()

    def _open_channels(self, user_id: str) -> None:
        self._feed.open(
            DM_CHANNEL,
            [ChannelBinding("direct_messages", "INSERT", f"receiver_id=eq.{user_id}")],
            handler=self._dispatcher.handle_direct_message,
        )
        self._feed.open(
            COMMUNITY_CHANNEL,
            [ChannelBinding("community_messages", "INSERT")],
            handler=self._dispatcher.handle_community_message,
        )
        self._feed.open(
            NOTIFICATIONS_CHANNEL,
            [ChannelBinding("notifications", "INSERT", f"target_user_id=eq.{user_id}")],
            handler=self._dispatcher.handle_system_notification,
        )
        if self._config.sync.enabled:
            self._sync.open(user_id)

    def _teardown(self) -> list[Subscription]:
        """Synchronously drop all identity-scoped state; returns the closed channels."""
        closed = list(self._feed.subscriptions.values())
        self._feed.close_all()
        self._sync.close()
        self.stop_tracking()
        self._membership.clear()
        self._merge.invalidate()
        self._saved_progress = None
        structlog.contextvars.unbind_contextvars("user_id")
        return closed

    # --- Merge groups ---

    async def resolve_topic(self, group_name: str, topic_name: str) -> MergeResolution:
        return await self._merge.resolve(group_name, topic_name)

    # --- Progress ---

    def track(self, resource_id: str) -> ProgressTracker:
        """Bind a tracker to ``resource_id``, stopping the previous one."""
        user_id = self._context.user_id
        if user_id is None:
            raise RuntimeError("cannot track progress without a signed-in user")
        self.stop_tracking()
        self._tracker = ProgressTracker(
            self._checkpoints,
            user_id,
            resource_id,
            config=self._config.progress,
            metrics=self._metrics,
        )
        return self._tracker

    def stop_tracking(self) -> None:
        if self._tracker is not None:
            self._tracker.stop_tracking()
            self._tracker = None

    # --- Lifecycle ---

    async def run_forever(self, user_id: str | None = None) -> None:
        """Run until SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        await self.start(user_id)

        try:
            while not self._shutdown_event.is_set():
                await self._update_health()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=HEALTH_INTERVAL
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)

    async def _update_health(self) -> None:
        backend_ok = await self._backend.check_health()
        self._metrics.set_gauge("backend_reachable", 1 if backend_ok else 0)
        self._metrics.set_gauge("membership_entries", len(self._membership.snapshot()))
        await self.refresh_saved_progress()

    async def refresh_saved_progress(self) -> dict[str, Any] | None:
        """Summarise the signed-in user's locally stored checkpoints."""
        user_id = self._context.user_id
        if self._local_store is None or user_id is None:
            return None
        try:
            checkpoints = await self._local_store.list_checkpoints(user_id)
        except StorageError as exc:
            log.warning("session.saved_progress_failed", error=str(exc))
            return self._saved_progress
        if user_id != self._context.user_id:
            return None
        self._saved_progress = {
            "recordings": len(checkpoints),
            "last_watched": checkpoints[0].resource_id if checkpoints else None,
        }
        self._metrics.set_gauge("local_checkpoints", len(checkpoints))
        return self._saved_progress

    def status(self) -> dict[str, Any]:
        tracker = self._tracker
        return {
            "identity_present": self._context.user_id is not None,
            "membership_loaded": self._membership.loaded,
            "membership_entries": len(self._membership.snapshot()),
            "channels": self._feed.states(),
            "tracking": (
                {"resource_id": tracker.resource_id, "state": tracker.state.value}
                if tracker
                else None
            ),
            "saved_progress": self._saved_progress,
        }
