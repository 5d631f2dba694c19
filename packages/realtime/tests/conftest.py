"""
Shared fixtures: mock backend (in-process ASGI and served over HTTP) and
in-memory collaborators.
"""

import asyncio
import socket

import httpx
import pytest
import uvicorn
from sse_starlette import sse

from portal_realtime.backend import BackendClient

from .mock_servers import MockBackend, create_backend_app


class _UvicornServer:
    def __init__(self, app, host: str, port: int):
        self.config = uvicorn.Config(
            app, host=host, port=port, log_level="error", timeout_graceful_shutdown=1
        )
        self.server = uvicorn.Server(self.config)
        self._task: asyncio.Task | None = None

    async def start(self):
        self._task = asyncio.create_task(self.server.serve())
        for _ in range(100):
            if self.server.started:
                return
            await asyncio.sleep(0.05)
        raise RuntimeError("Server did not start")

    async def stop(self):
        self.server.should_exit = True
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._task.cancel()


def _pick_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _reset_sse_app_status():
    # Older sse-starlette keeps a process-wide exit event bound to the first loop.
    app_status = getattr(sse, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None


@pytest.fixture
def backend_state() -> MockBackend:
    return MockBackend()


@pytest.fixture
async def backend_server(backend_state):
    _reset_sse_app_status()
    port = _pick_port()
    srv = _UvicornServer(create_backend_app(backend_state), "127.0.0.1", port)
    await srv.start()
    yield f"http://127.0.0.1:{port}"
    await srv.stop()


@pytest.fixture
async def backend_client(backend_state):
    transport = httpx.ASGITransport(app=create_backend_app(backend_state))
    client = BackendClient(url="http://backend.test", api_key="anon-key", transport=transport)
    await client.open()
    yield client
    await client.close()
