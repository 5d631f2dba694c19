"""
Notification filtering and dispatch.

Turns change events into presentable notifications:
- direct_messages: the channel is filtered server-side to the recipient, so
  every event notifies
- community_messages: the channel is unscoped, so events are dropped when
  authored by the current user or when their exact (batch, subject) pair is
  not in the membership snapshot
- notifications: system notices addressed to the user, with a Mark Read action

Community relevance uses exact pair matching, not merge-group expansion.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Protocol

import structlog

from .config import NotificationConfig
from .deeplinks import community_link, conversation_link, notification_link, truncate_body
from .errors import TransientNetworkError
from .invalidation import QueryInvalidator
from .membership import MembershipCache
from .metrics import MetricsCollector
from .models import ChangeEvent, Notification, NotificationAction

log = structlog.get_logger()


class Presenter(Protocol):
    def show(self, notification: Notification) -> None: ...


class SoundPlayer(Protocol):
    """Best-effort audio cue; may be sync or async."""

    def play(self) -> Any: ...


class NotificationStore(Protocol):
    async def mark_notification_read(self, notification_id: str) -> None: ...


class NotificationDispatcher:
    """
    Maps change events to notifications for the current user.

    The current user is read through ``current_user`` on every event, and
    membership through the cache's live snapshot, so long-lived channel
    callbacks never act on a stale identity or enrollment set.
    """

    def __init__(
        self,
        current_user: Callable[[], str | None],
        membership: MembershipCache,
        presenter: Presenter,
        invalidator: QueryInvalidator,
        sound: SoundPlayer | None = None,
        config: NotificationConfig | None = None,
        store: NotificationStore | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._current_user = current_user
        self._membership = membership
        self._presenter = presenter
        self._invalidator = invalidator
        self._sound = sound
        self._config = config or NotificationConfig()
        self._store = store
        self._metrics = metrics
        self._cue_tasks: set[asyncio.Future] = set()

    def _truncate(self, text: str) -> str:
        return truncate_body(text, self._config.body_max_chars, self._config.ellipsis)

    async def handle_direct_message(self, event: ChangeEvent) -> Notification | None:
        row = event.new
        sender_id = row.get("sender_id")
        if not sender_id:
            log.warning("dispatch.dm_missing_sender", message_id=row.get("id"))
            return None

        notification = Notification(
            title=f"Message from {row.get('sender_name') or 'Unknown'}",
            body=self._truncate(row.get("content") or "Sent an attachment"),
            action=NotificationAction(label="Open", target=conversation_link(str(sender_id))),
            kind="dm",
            source_id=_str_or_none(row.get("id")),
        )
        await self._emit(notification)
        return notification

    async def handle_community_message(self, event: ChangeEvent) -> Notification | None:
        row = event.new
        user_id = self._current_user()
        if user_id is None:
            self._drop("no_identity", row)
            return None

        if str(row.get("user_id")) == str(user_id):
            self._drop("self", row)
            return None

        group_name = row.get("batch")
        topic_name = row.get("subject")
        if not group_name or not topic_name:
            self._drop("no_scope", row)
            return None

        if not self._membership.contains(group_name, topic_name):
            self._drop("not_member", row)
            return None

        notification = Notification(
            title=f"New in {topic_name}",
            body=self._truncate(row.get("content") or "Sent an image"),
            action=NotificationAction(label="View", target=community_link(group_name, topic_name)),
            kind="community",
            source_id=_str_or_none(row.get("id")),
        )
        await self._emit(notification)
        return notification

    async def handle_system_notification(self, event: ChangeEvent) -> Notification | None:
        row = event.new
        notification_id = _str_or_none(row.get("id"))
        if notification_id is None:
            log.warning("dispatch.notification_missing_id")
            return None

        notification = Notification(
            title=row.get("title") or "New Notification",
            body=self._truncate(row.get("message") or ""),
            action=NotificationAction(label="Mark Read", target=notification_link(notification_id)),
            kind="system",
            source_id=notification_id,
        )
        await self._emit(notification)
        return notification

    async def mark_read(self, notification_id: str) -> bool:
        """Deactivate a system notification and refresh the bell views."""
        if self._store is None:
            return False
        try:
            await self._store.mark_notification_read(notification_id)
        except TransientNetworkError as exc:
            log.warning("dispatch.mark_read_failed", notification_id=notification_id, error=str(exc))
            return False
        self._invalidator.invalidate(*self._config.invalidate_keys)
        return True

    async def _emit(self, notification: Notification) -> None:
        try:
            self._presenter.show(notification)
        except Exception:
            log.exception("dispatch.presenter_error", kind=notification.kind)
        self._invalidator.invalidate(*self._config.invalidate_keys)
        if self._metrics:
            self._metrics.inc("notifications_total", kind=notification.kind)
        log.info(
            "dispatch.notified",
            kind=notification.kind,
            source_id=notification.source_id,
            target=notification.action.target,
        )
        self._play_cue()

    def _play_cue(self) -> None:
        """Start the audio cue; an async player runs as a background task."""
        if self._sound is None or not self._config.sound_enabled:
            return
        try:
            result = self._sound.play()
        except Exception as exc:
            log.debug("dispatch.sound_failed", error=str(exc))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._cue_tasks.add(task)
            task.add_done_callback(self._cue_finished)

    def _cue_finished(self, task: asyncio.Future) -> None:
        self._cue_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.debug("dispatch.sound_failed", error=str(exc))

    @property
    def pending_cues(self) -> int:
        return len(self._cue_tasks)

    def cancel_cues(self) -> None:
        for task in list(self._cue_tasks):
            task.cancel()

    def _drop(self, reason: str, row: dict[str, Any]) -> None:
        if self._metrics:
            self._metrics.inc("notifications_dropped_total", reason=reason)
        log.debug("dispatch.community_dropped", reason=reason, message_id=row.get("id"))


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)
