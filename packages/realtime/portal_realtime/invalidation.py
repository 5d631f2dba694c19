"""
Cache-invalidation signals for the presentation layer.

The core only says which query keys went stale (or that everything did);
what a view does about it is up to the listener.
"""

from __future__ import annotations

from typing import Callable, Union

import structlog

log = structlog.get_logger()


class _All:
    def __repr__(self) -> str:
        return "ALL"


ALL = _All()

InvalidationSignal = Union[tuple[str, ...], _All]
InvalidationListener = Callable[[InvalidationSignal], None]


class QueryInvalidator:
    """Fan-out of invalidation signals to registered listeners."""

    def __init__(self) -> None:
        self._listeners: list[InvalidationListener] = []
        self._signals_sent = 0

    @property
    def signals_sent(self) -> int:
        return self._signals_sent

    def subscribe(self, listener: InvalidationListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def invalidate(self, *keys: str) -> None:
        if not keys:
            return
        self._emit(tuple(keys))

    def invalidate_all(self) -> None:
        self._emit(ALL)

    def _emit(self, signal: InvalidationSignal) -> None:
        self._signals_sent += 1
        log.debug("invalidation.signal", keys=repr(signal))
        for listener in list(self._listeners):
            try:
                listener(signal)
            except Exception:
                log.exception("invalidation.listener_error")
