"""
Membership cache for community-message relevance filtering.

Holds the signed-in user's (batch, subject) enrollments. Refreshed once when
an identity becomes known and read synchronously by the dispatcher; it is not
kept live within a session.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from .errors import TransientNetworkError
from .models import MembershipEntry

log = structlog.get_logger()


class MembershipStore(Protocol):
    async def fetch_memberships(self, user_id: str) -> list[MembershipEntry]: ...


class MembershipCache:
    """Last-refreshed membership snapshot for the current identity."""

    def __init__(self, store: MembershipStore) -> None:
        self._store = store
        self._entries: frozenset[MembershipEntry] = frozenset()
        self._user_id: str | None = None
        self._generation = 0

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def loaded(self) -> bool:
        return self._user_id is not None

    async def refresh(self, user_id: str) -> frozenset[MembershipEntry]:
        """
        Fetch memberships for ``user_id`` and replace the snapshot.

        On a network failure the previous snapshot is kept and returned. A
        refresh that completes after clear() (identity changed mid-flight)
        is discarded.
        """
        generation = self._generation
        try:
            rows = await self._store.fetch_memberships(user_id)
        except TransientNetworkError as exc:
            log.warning("membership.refresh_failed", user_id=user_id, error=str(exc))
            return self._entries

        if generation != self._generation:
            log.info("membership.refresh_discarded", user_id=user_id)
            return self._entries

        self._entries = frozenset(rows)
        self._user_id = user_id
        log.info("membership.refreshed", user_id=user_id, entries=len(self._entries))
        return self._entries

    def snapshot(self) -> frozenset[MembershipEntry]:
        return self._entries

    def contains(self, group_name: str, topic_name: str) -> bool:
        return MembershipEntry(group_name, topic_name) in self._entries

    def groups(self) -> list[str]:
        return sorted({e.group_name for e in self._entries})

    def topics_for(self, group_name: str) -> list[str]:
        return sorted({e.topic_name for e in self._entries if e.group_name == group_name})

    def clear(self) -> None:
        self._entries = frozenset()
        self._user_id = None
        self._generation += 1
