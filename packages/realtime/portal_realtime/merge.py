"""
Merge-group resolution for (batch, subject) pairs.

Administrators merge subjects taught across batches so they share one
community and content scope. Given any member pair, the resolver returns the
whole class, an OR-filter expression that scopes a query to it, and a
canonical member. Members are ordered by "batch|subject" ascending, so both
sides of a merge produce the same canonical pair and the same filter string.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

import structlog
from cachetools import TTLCache

from .errors import TransientNetworkError
from .metrics import MetricsCollector
from .models import MergePair, MergeResolution

log = structlog.get_logger()


class MergeStore(Protocol):
    async def get_merged_pairs(self, group_name: str, topic_name: str) -> list[MergePair]: ...


def canonical_order(pairs: Iterable[MergePair]) -> list[MergePair]:
    return sorted(set(pairs), key=lambda p: p.sort_key)


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def build_or_filter(pairs: Iterable[MergePair]) -> str:
    """``and(batch.eq."A",subject.eq."B"),and(...)`` over the pairs in canonical order."""
    return ",".join(
        f"and(batch.eq.{_quote(p.group_name)},subject.eq.{_quote(p.topic_name)})"
        for p in canonical_order(pairs)
    )


def resolution_for(pairs: Iterable[MergePair], queried: MergePair) -> MergeResolution:
    members = canonical_order([*pairs, queried])
    return MergeResolution(
        members=frozenset(members),
        or_filter=build_or_filter(members),
        canonical=members[0],
    )


class MergeResolver:
    """
    Resolves merge groups through a store, with a TTL cache.

    Never raises: a failed lookup resolves to the singleton group so callers
    can still build a (narrower) valid query. Singleton fallbacks from
    errors are not cached.
    """

    def __init__(
        self,
        store: MergeStore,
        ttl_seconds: float = 300.0,
        maxsize: int = 256,
        metrics: MetricsCollector | None = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        self._metrics = metrics

    async def resolve(self, group_name: str, topic_name: str) -> MergeResolution:
        queried = MergePair(group_name, topic_name)
        if not group_name or not topic_name:
            return resolution_for([], queried)

        key = (group_name, topic_name)
        cached = self._cache.get(key)
        if cached is not None:
            if self._metrics:
                self._metrics.inc("merge_cache_hits_total")
            return cached

        try:
            pairs = await self._store.get_merged_pairs(group_name, topic_name)
        except Exception as exc:
            log.warning(
                "merge.lookup_failed",
                batch=group_name,
                subject=topic_name,
                error=repr(exc),
            )
            if self._metrics:
                self._metrics.inc("merge_lookup_failures_total")
            return resolution_for([], queried)

        resolution = resolution_for(pairs or [], queried)
        self._cache[key] = resolution
        log.debug(
            "merge.resolved",
            batch=group_name,
            subject=topic_name,
            members=len(resolution.members),
            canonical=resolution.canonical.sort_key,
        )
        return resolution

    def invalidate(self) -> None:
        self._cache.clear()


@dataclass
class SubjectMerge:
    primary: MergePair
    secondary: MergePair
    is_active: bool = True


class MergeTable:
    """
    In-memory merge relation.

    Each active merge is an undirected edge; a pair's group is its connected
    component. Implements MergeStore, returning an empty list for pairs that
    no active merge touches.
    """

    def __init__(self, merges: Iterable[SubjectMerge] = ()) -> None:
        self._merges: list[SubjectMerge] = list(merges)

    @property
    def merges(self) -> list[SubjectMerge]:
        return list(self._merges)

    def add(self, primary: MergePair, secondary: MergePair) -> SubjectMerge:
        if primary == secondary:
            raise ValueError("cannot merge a pair with itself")
        for merge in self._merges:
            if {merge.primary, merge.secondary} == {primary, secondary}:
                merge.is_active = True
                return merge
        merge = SubjectMerge(primary, secondary)
        self._merges.append(merge)
        return merge

    def deactivate(self, primary: MergePair, secondary: MergePair) -> bool:
        for merge in self._merges:
            if merge.is_active and {merge.primary, merge.secondary} == {primary, secondary}:
                merge.is_active = False
                return True
        return False

    def _adjacency(self) -> dict[MergePair, set[MergePair]]:
        graph: dict[MergePair, set[MergePair]] = {}
        for merge in self._merges:
            if not merge.is_active:
                continue
            graph.setdefault(merge.primary, set()).add(merge.secondary)
            graph.setdefault(merge.secondary, set()).add(merge.primary)
        return graph

    def equivalence_class(self, pair: MergePair) -> frozenset[MergePair]:
        graph = self._adjacency()
        seen = {pair}
        queue = deque([pair])
        while queue:
            for neighbour in graph.get(queue.popleft(), ()):
                if neighbour not in seen:
                    seen.add(neighbour)
                    queue.append(neighbour)
        return frozenset(seen)

    def classes(self) -> list[frozenset[MergePair]]:
        """All non-trivial groups, each listed once."""
        remaining = set(self._adjacency())
        result = []
        while remaining:
            group = self.equivalence_class(next(iter(remaining)))
            remaining -= group
            result.append(group)
        return sorted(result, key=lambda g: canonical_order(g)[0].sort_key)

    async def get_merged_pairs(self, group_name: str, topic_name: str) -> list[MergePair]:
        group = self.equivalence_class(MergePair(group_name, topic_name))
        if len(group) == 1:
            return []
        return canonical_order(group)
