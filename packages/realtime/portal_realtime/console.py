"""
Headless presenter and sound player for running the client from a terminal.
"""

from __future__ import annotations

import sys
from typing import TextIO

import structlog

from .models import Notification

log = structlog.get_logger()


class LogPresenter:
    """Writes each notification to the log instead of a toast."""

    def __init__(self) -> None:
        self.shown: int = 0

    def show(self, notification: Notification) -> None:
        self.shown += 1
        log.info(
            "notification",
            kind=notification.kind,
            title=notification.title,
            body=notification.body,
            action=notification.action.label,
            link=notification.action.target,
        )


class TerminalBell:
    """Rings the terminal bell. Raises OSError when stdout is not a TTY."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout

    def play(self) -> None:
        if not self._stream.isatty():
            raise OSError("no terminal attached")
        self._stream.write("\a")
        self._stream.flush()
