"""
HTTP client for the portal backend's REST surface.

Handles:
- Membership lookup (user_enrollments)
- Merge-group lookup (get_merged_pairs RPC)
- Checkpoint read and upsert (video_progress)
- Marking system notifications read

Every transport failure, non-2xx response or undecodable body is raised as
TransientNetworkError. Nothing here retries; callers decide what a failed
round trip means for their cycle.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

import httpx
import structlog

from .errors import TransientNetworkError
from .metrics import MetricsCollector
from .models import MembershipEntry, MergePair, ProgressCheckpoint

log = structlog.get_logger()

REST_PREFIX = "/rest/v1"


class BackendClient:
    """
    Thin PostgREST-style client.

    Implements the membership, merge and checkpoint store interfaces used by
    the core components.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        verify_tls: bool = True,
        request_timeout: int = 30,
        metrics: MetricsCollector | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._metrics = metrics
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        self._client = httpx.AsyncClient(
            base_url=self._url,
            headers=headers,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        if not self._client:
            raise TransientNetworkError("backend client is not open", operation=operation)
        try:
            resp = await self._client.request(method, REST_PREFIX + path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if self._metrics:
                self._metrics.inc("backend_errors_total", operation=operation)
            raise TransientNetworkError(
                f"{operation} failed with status {exc.response.status_code}",
                operation=operation,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            if self._metrics:
                self._metrics.inc("backend_errors_total", operation=operation)
            raise TransientNetworkError(
                f"{operation} failed: {exc}", operation=operation
            ) from exc
        if self._metrics:
            self._metrics.inc("backend_requests_total", operation=operation)
        return resp

    @contextmanager
    def _decoding(self, operation: str) -> Iterator[None]:
        """Raise TransientNetworkError for a 2xx body that is not the expected rows."""
        try:
            yield
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            log.warning("backend.malformed_response", operation=operation, error=repr(exc))
            if self._metrics:
                self._metrics.inc("backend_errors_total", operation=operation)
            raise TransientNetworkError(
                f"{operation} returned a malformed body: {exc!r}", operation=operation
            ) from exc

    # --- Memberships ---

    async def fetch_memberships(self, user_id: str) -> list[MembershipEntry]:
        resp = await self._request(
            "fetch_memberships",
            "GET",
            "/user_enrollments",
            params={"select": "batch_name,subject_name", "user_id": f"eq.{user_id}"},
        )
        with self._decoding("fetch_memberships"):
            return [
                MembershipEntry(group_name=r["batch_name"], topic_name=r["subject_name"])
                for r in resp.json() or []
                if r.get("batch_name") and r.get("subject_name")
            ]

    # --- Merge groups ---

    async def get_merged_pairs(self, group_name: str, topic_name: str) -> list[MergePair]:
        resp = await self._request(
            "get_merged_pairs",
            "POST",
            "/rpc/get_merged_pairs",
            json={"p_batch": group_name, "p_subject": topic_name},
        )
        with self._decoding("get_merged_pairs"):
            return [
                MergePair(group_name=r["batch"], topic_name=r["subject"])
                for r in resp.json() or []
            ]

    # --- Checkpoints ---

    async def fetch_checkpoint(
        self, user_id: str, resource_id: str
    ) -> ProgressCheckpoint | None:
        resp = await self._request(
            "fetch_checkpoint",
            "GET",
            "/video_progress",
            params={
                "select": "progress_seconds,duration_seconds,last_watched_at",
                "user_id": f"eq.{user_id}",
                "recording_id": f"eq.{resource_id}",
                "limit": "1",
            },
        )
        with self._decoding("fetch_checkpoint"):
            rows = resp.json() or []
            if not rows:
                return None
            row = rows[0]
            last = row.get("last_watched_at")
            return ProgressCheckpoint(
                user_id=user_id,
                resource_id=resource_id,
                position_seconds=float(row["progress_seconds"]),
                duration_seconds=float(row["duration_seconds"]),
                last_watched_at=datetime.fromisoformat(last) if last else None,
            )

    async def upsert_checkpoint(self, checkpoint: ProgressCheckpoint) -> None:
        watched = checkpoint.last_watched_at or datetime.now(timezone.utc)
        await self._request(
            "upsert_checkpoint",
            "POST",
            "/video_progress",
            params={"on_conflict": "user_id,recording_id"},
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            json={
                "user_id": checkpoint.user_id,
                "recording_id": checkpoint.resource_id,
                "progress_seconds": checkpoint.position_seconds,
                "duration_seconds": checkpoint.duration_seconds,
                "last_watched_at": watched.isoformat(),
            },
        )

    # --- Notifications ---

    async def mark_notification_read(self, notification_id: str) -> None:
        await self._request(
            "mark_notification_read",
            "PATCH",
            "/notifications",
            params={"id": f"eq.{notification_id}"},
            json={"is_active": False},
        )

    # --- Health ---

    async def check_health(self) -> bool:
        if not self._client:
            return False
        try:
            resp = await self._client.get(f"{REST_PREFIX}/")
            return resp.status_code < 500
        except httpx.HTTPError:
            return False
