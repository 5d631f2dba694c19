"""
Exception types for the realtime client.

None of these are fatal: each core component catches them, logs, and
degrades to "no notification", "no checkpoint persisted" or a singleton
merge group.
"""

from __future__ import annotations


class PortalRealtimeError(Exception):
    """Base class for realtime client errors."""


class TransientNetworkError(PortalRealtimeError):
    """A backend round trip failed (transport error or non-2xx response)."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class MalformedURLError(PortalRealtimeError, ValueError):
    """A link or filter could not be built from the given value."""

    def __init__(self, message: str, value: str | None = None):
        super().__init__(message)
        self.value = value


class StorageError(PortalRealtimeError):
    """The local checkpoint database rejected a read or write."""
