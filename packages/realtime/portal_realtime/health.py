"""
Local HTTP endpoints for supervisors and scrapers.

- GET /health: session status as JSON; 503 while any open channel is not
  subscribed
- GET /metrics: Prometheus text exposition
"""

from __future__ import annotations

from typing import Any, Callable

import structlog
from aiohttp import web

from .metrics import MetricsCollector

log = structlog.get_logger()

StatusProvider = Callable[[], dict[str, Any]]

DEGRADED = "degraded"


def overall_status(status: dict[str, Any]) -> str:
    """idle without an identity; healthy when signed in with every channel subscribed."""
    if not status.get("identity_present"):
        return "idle"
    channels = status.get("channels") or {}
    if channels and all(state == "SUBSCRIBED" for state in channels.values()):
        return "healthy"
    return DEGRADED


class HealthServer:
    """aiohttp app serving /health and /metrics for one ClientSession."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9091,
        metrics: MetricsCollector | None = None,
        status_provider: StatusProvider | None = None,
    ):
        self._bind = (host, port)
        self._metrics = metrics if metrics is not None else MetricsCollector()
        self._status_provider = status_provider or dict
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.add_routes([
            web.get("/health", self._health),
            web.get("/metrics", self._prometheus),
        ])
        return app

    async def start(self) -> None:
        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        await web.TCPSite(runner, *self._bind).start()
        self._runner = runner
        log.info("health.listening", host=self._bind[0], port=self._bind[1])

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

    async def _health(self, request: web.Request) -> web.Response:
        details = self._status_provider()
        status = overall_status(details)
        return web.json_response(
            {**details, "status": status},
            status=503 if status == DEGRADED else 200,
        )

    async def _prometheus(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
            charset="utf-8",
        )
