"""
Global realtime sync: keeps cached views fresh as backing tables change.

One channel binds every configured table and maps each change to that
table's query keys. In catch-all mode the channel binds every table and any
change invalidates everything.
"""

from __future__ import annotations

import structlog

from .config import SyncConfig
from .feed import ChangeFeed, ChannelBinding, Subscription
from .invalidation import QueryInvalidator
from .models import ChangeEvent

log = structlog.get_logger()

GLOBAL_SYNC_CHANNEL = "global-realtime-sync"


class RealtimeSync:
    def __init__(
        self,
        feed: ChangeFeed,
        invalidator: QueryInvalidator,
        config: SyncConfig | None = None,
    ):
        self._feed = feed
        self._invalidator = invalidator
        self._config = config or SyncConfig()
        self._keys = {rule.table: tuple(rule.keys) for rule in self._config.rules}
        self._subscription: Subscription | None = None

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    def bindings_for(self, user_id: str) -> list[ChannelBinding]:
        if self._config.catch_all:
            return [ChannelBinding()]
        return [
            ChannelBinding(
                table=rule.table,
                filter=f"{rule.user_column}=eq.{user_id}" if rule.user_column else None,
            )
            for rule in self._config.rules
        ]

    def open(self, user_id: str) -> Subscription:
        self.close()
        self._subscription = self._feed.open(
            GLOBAL_SYNC_CHANNEL, self.bindings_for(user_id), handler=self.handle_event
        )
        log.info("sync.opened", user_id=user_id, catch_all=self._config.catch_all)
        return self._subscription

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    async def handle_event(self, event: ChangeEvent) -> None:
        if self._config.catch_all:
            self._invalidator.invalidate_all()
            return
        keys = self._keys.get(event.table)
        if not keys:
            return
        log.debug("sync.invalidate", table=event.table, operation=event.operation.value)
        self._invalidator.invalidate(*keys)
