"""
Domain types shared across the realtime client.

Change events come off the feed, membership entries and merge pairs identify
a (batch, subject) scope, notifications go out to the presenter, and
checkpoints record playback progress.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ChangeOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @classmethod
    def parse(cls, value: str) -> ChangeOperation:
        return cls(value.upper())


@dataclass
class ChangeEvent:
    """A row-level mutation delivered by the change feed."""
    operation: ChangeOperation
    table: str
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] | None = None
    channel: str | None = None


@dataclass(frozen=True)
class MembershipEntry:
    group_name: str
    topic_name: str


@dataclass(frozen=True)
class MergePair:
    group_name: str
    topic_name: str

    @property
    def sort_key(self) -> str:
        return f"{self.group_name}|{self.topic_name}"


@dataclass(frozen=True)
class MergeResolution:
    members: frozenset[MergePair]
    or_filter: str
    canonical: MergePair

    @property
    def is_merged(self) -> bool:
        return len(self.members) > 1


@dataclass(frozen=True)
class NotificationAction:
    label: str
    target: str


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    action: NotificationAction
    kind: str = "community"
    source_id: str | None = None


@dataclass
class ProgressCheckpoint:
    user_id: str
    resource_id: str
    position_seconds: float
    duration_seconds: float
    last_watched_at: datetime | None = None

    @property
    def remaining_seconds(self) -> float:
        return self.duration_seconds - self.position_seconds
