"""
Change-feed subscriptions over the backend's realtime stream.

One Subscription per logical channel, each holding a streaming SSE
connection with:
- Table/event bindings with optional server-side filter predicates
- Heartbeat timeout detection
- Logged state transitions (SUBSCRIBED / CHANNEL_ERROR / TIMED_OUT / CLOSED)
- Synchronous teardown: once close() is called no handler fires again

The feed never reconnects by itself. Re-establishing channels is the
session's job (see session.ClientSession.set_identity).
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine
from urllib.parse import quote

import httpx
import structlog

from .metrics import MetricsCollector
from .models import ChangeEvent, ChangeOperation

log = structlog.get_logger()

STREAM_PATH = "/realtime/v1/channels/{channel}/stream"


class ChannelState(str, Enum):
    JOINING = "JOINING"
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class ChannelBinding:
    """
    Which changes a channel listens for.

    ``table=None`` binds every table (a catch-all). ``filter`` takes the
    ``column=eq.value`` form and is evaluated by the server; it is checked
    again on arrival so a misbehaving server cannot widen the scope.
    """
    table: str | None = None
    event: str = "*"
    filter: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"table": self.table or "*", "event": self.event, "filter": self.filter}

    def matches(self, event: ChangeEvent) -> bool:
        if self.table is not None and self.table != event.table:
            return False
        if self.event != "*" and self.event.upper() != event.operation.value:
            return False
        if self.filter:
            column, _, expr = self.filter.partition("=")
            op, _, expected = expr.partition(".")
            if op != "eq":
                return True
            row = event.old if event.operation is ChangeOperation.DELETE else event.new
            if not row or str(row.get(column)) != expected:
                return False
        return True


EventHandler = Callable[[ChangeEvent], Coroutine[Any, Any, Any]]
StatusListener = Callable[[ChannelState], None]


class Subscription:
    """Handle for one open channel."""

    def __init__(
        self,
        feed: ChangeFeed,
        channel_name: str,
        bindings: tuple[ChannelBinding, ...],
    ):
        self._feed = feed
        self._channel_name = channel_name
        self._bindings = bindings
        self._handlers: list[tuple[ChannelBinding | None, EventHandler]] = []
        self._status_listeners: list[StatusListener] = []
        self._state = ChannelState.JOINING
        self._closed = False
        self._last_event_at: float | None = None
        self._events_received = 0
        self._task: asyncio.Task | None = None

    @property
    def channel_name(self) -> str:
        return self._channel_name

    @property
    def bindings(self) -> tuple[ChannelBinding, ...]:
        return self._bindings

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_event_at(self) -> float | None:
        return self._last_event_at

    @property
    def events_received(self) -> int:
        return self._events_received

    def on_event(self, handler: EventHandler, binding: ChannelBinding | None = None) -> None:
        """
        Register a handler.

        With ``binding`` the handler only sees events matching it; without,
        it sees every event on the channel.
        """
        if self._closed:
            raise RuntimeError(f"channel {self._channel_name} is closed")
        self._handlers.append((binding, handler))

    def on_status(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def close(self) -> None:
        """Tear down the channel. Synchronous and idempotent."""
        if self._closed:
            return
        self._closed = True
        self._handlers.clear()
        # Closed from inside a handler: the stream loop sees _closed and unwinds.
        if self._task and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        self._set_state(ChannelState.CLOSED)
        self._feed._forget(self)

    async def aclose(self) -> None:
        """close() and wait for the stream task to unwind."""
        self.close()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def _start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"feed:{self._channel_name}")

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        self._state = state
        log.info("feed.status", channel=self._channel_name, status=state.value)
        self._feed._record_state(self._channel_name, state)
        for listener in list(self._status_listeners):
            try:
                listener(state)
            except Exception:
                log.exception("feed.status_listener_error", channel=self._channel_name)

    async def _run(self) -> None:
        try:
            await self._stream()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._closed:
                log.warning(
                    "feed.channel_error",
                    channel=self._channel_name,
                    error=str(exc),
                )
                self._set_state(ChannelState.CHANNEL_ERROR)
            return

        if not self._closed and self._state is ChannelState.SUBSCRIBED:
            log.info("feed.stream_ended", channel=self._channel_name)
            self._closed = True
            self._handlers.clear()
            self._set_state(ChannelState.CLOSED)
            self._feed._forget(self)

    async def _stream(self) -> None:
        url = STREAM_PATH.format(channel=quote(self._channel_name, safe=""))
        params = {"bindings": json.dumps([b.to_dict() for b in self._bindings])}

        async with self._feed._client() as client:
            async with client.stream("GET", url, params=params) as response:
                response.raise_for_status()
                self._last_event_at = time.time()
                self._set_state(ChannelState.SUBSCRIBED)

                data_lines: list[str] = []
                lines = response.aiter_lines()
                while not self._closed:
                    try:
                        line = await asyncio.wait_for(
                            lines.__anext__(), timeout=self._feed.heartbeat_timeout
                        )
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError:
                        log.warning(
                            "feed.heartbeat_timeout",
                            channel=self._channel_name,
                            timeout=self._feed.heartbeat_timeout,
                        )
                        self._set_state(ChannelState.TIMED_OUT)
                        return

                    line = line.rstrip("\n")
                    self._last_event_at = time.time()

                    if line.startswith("data:"):
                        data_lines.append(line[5:].strip())
                    elif line == "":
                        if data_lines:
                            await self._dispatch(data_lines)
                        data_lines = []
                    # event:, id: and ":" keepalive lines carry nothing we use

    async def _dispatch(self, data_lines: list[str]) -> None:
        data_str = "\n".join(data_lines)
        try:
            data = json.loads(data_str)
            record = data.get("payload", data)
            event = ChangeEvent(
                operation=ChangeOperation.parse(record["type"]),
                table=record["table"],
                new=record.get("new") or {},
                old=record.get("old"),
                channel=self._channel_name,
            )
        except (json.JSONDecodeError, KeyError, ValueError, AttributeError):
            log.warning("feed.parse_error", channel=self._channel_name, data=data_str[:200])
            return

        self._events_received += 1
        self._feed._record_event(self._channel_name)

        for binding, handler in list(self._handlers):
            # A handler may close this channel; nothing fires after that.
            if self._closed:
                return
            if binding is not None and not binding.matches(event):
                continue
            if binding is None and not any(b.matches(event) for b in self._bindings):
                continue
            try:
                await handler(event)
            except Exception:
                log.exception(
                    "feed.handler_error",
                    channel=self._channel_name,
                    table=event.table,
                )


class ChangeFeed:
    """
    Opens channels against the backend realtime endpoint.

    At most one subscription is active per channel name: opening a name that
    is already open closes the old handle first.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        heartbeat_timeout: float = 90.0,
        verify_tls: bool = True,
        metrics: MetricsCollector | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._verify_tls = verify_tls
        self._metrics = metrics
        self._transport = transport
        self.heartbeat_timeout = heartbeat_timeout
        self._subscriptions: dict[str, Subscription] = {}

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        return dict(self._subscriptions)

    def open(
        self,
        channel_name: str,
        bindings: list[ChannelBinding] | tuple[ChannelBinding, ...] = (),
        handler: EventHandler | None = None,
    ) -> Subscription:
        """
        Open a channel and start streaming.

        Must be called from a running event loop. The stream task does not
        run until the caller next yields, so handlers registered right after
        open() see every event.
        """
        existing = self._subscriptions.get(channel_name)
        if existing is not None:
            log.info("feed.replacing_channel", channel=channel_name)
            existing.close()

        sub = Subscription(self, channel_name, tuple(bindings) or (ChannelBinding(),))
        if handler is not None:
            sub.on_event(handler)
        self._subscriptions[channel_name] = sub
        sub._start()
        log.info(
            "feed.opening",
            channel=channel_name,
            bindings=[b.to_dict() for b in sub.bindings],
        )
        return sub

    def close(self, handle: Subscription) -> None:
        handle.close()

    def close_all(self) -> None:
        for sub in list(self._subscriptions.values()):
            sub.close()

    async def aclose_all(self) -> None:
        subs = list(self._subscriptions.values())
        for sub in subs:
            await sub.aclose()

    def states(self) -> dict[str, str]:
        return {name: sub.state.value for name, sub in self._subscriptions.items()}

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "text/event-stream"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        return httpx.AsyncClient(
            base_url=self._url,
            headers=headers,
            timeout=httpx.Timeout(None),
            verify=self._verify_tls,
            transport=self._transport,
        )

    def _forget(self, sub: Subscription) -> None:
        if self._subscriptions.get(sub.channel_name) is sub:
            del self._subscriptions[sub.channel_name]
        if self._metrics:
            self._metrics.set_gauge("channels_active", len(self._subscriptions))

    def _record_state(self, channel: str, state: ChannelState) -> None:
        if self._metrics:
            self._metrics.inc("channel_transitions_total", channel=channel, status=state.value)
            self._metrics.set_gauge("channels_active", len(self._subscriptions))

    def _record_event(self, channel: str) -> None:
        if self._metrics:
            self._metrics.inc("events_received_total", channel=channel)
