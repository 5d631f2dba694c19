"""
SQLite checkpoint persistence for offline or headless use.

Stores one video_progress row per (user_id, recording_id), upserted on
conflict. Implements the same checkpoint store interface as the backend
client.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone

import aiosqlite

from .errors import StorageError
from .models import ProgressCheckpoint

_SCHEMA = """
CREATE TABLE IF NOT EXISTS video_progress (
    user_id          TEXT NOT NULL,
    recording_id     TEXT NOT NULL,
    progress_seconds REAL NOT NULL,
    duration_seconds REAL NOT NULL,
    last_watched_at  TEXT NOT NULL,
    PRIMARY KEY (user_id, recording_id)
);

CREATE INDEX IF NOT EXISTS idx_progress_user
    ON video_progress(user_id, last_watched_at);
"""


class LocalCheckpointStore:
    """Async SQLite checkpoint store."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def fetch_checkpoint(
        self, user_id: str, resource_id: str
    ) -> ProgressCheckpoint | None:
        assert self._db
        try:
            cursor = await self._db.execute(
                """SELECT progress_seconds, duration_seconds, last_watched_at
                   FROM video_progress WHERE user_id = ? AND recording_id = ?""",
                (user_id, resource_id),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StorageError(f"checkpoint read failed: {exc}") from exc
        if row is None:
            return None
        return ProgressCheckpoint(
            user_id=user_id,
            resource_id=resource_id,
            position_seconds=row["progress_seconds"],
            duration_seconds=row["duration_seconds"],
            last_watched_at=datetime.fromisoformat(row["last_watched_at"]),
        )

    async def upsert_checkpoint(self, checkpoint: ProgressCheckpoint) -> None:
        assert self._db
        watched = (checkpoint.last_watched_at or datetime.now(timezone.utc)).isoformat()
        try:
            await self._db.execute(
                """INSERT INTO video_progress
                   (user_id, recording_id, progress_seconds, duration_seconds, last_watched_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(user_id, recording_id) DO UPDATE SET
                       progress_seconds=excluded.progress_seconds,
                       duration_seconds=excluded.duration_seconds,
                       last_watched_at=excluded.last_watched_at""",
                (
                    checkpoint.user_id,
                    checkpoint.resource_id,
                    checkpoint.position_seconds,
                    checkpoint.duration_seconds,
                    watched,
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"checkpoint write failed: {exc}") from exc

    async def list_checkpoints(self, user_id: str) -> list[ProgressCheckpoint]:
        """All of a user's checkpoints, most recently watched first."""
        assert self._db
        try:
            cursor = await self._db.execute(
                """SELECT * FROM video_progress WHERE user_id = ?
                   ORDER BY last_watched_at DESC""",
                (user_id,),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError(f"checkpoint listing failed: {exc}") from exc
        return [
            ProgressCheckpoint(
                user_id=r["user_id"],
                resource_id=r["recording_id"],
                position_seconds=r["progress_seconds"],
                duration_seconds=r["duration_seconds"],
                last_watched_at=datetime.fromisoformat(r["last_watched_at"]),
            )
            for r in rows
        ]
