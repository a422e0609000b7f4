from __future__ import annotations

import logging
from enum import StrEnum
from typing import Protocol

logger = logging.getLogger(__name__)


class NotificationKind(StrEnum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notifier(Protocol):
    """One-way, non-blocking user notification channel."""

    def notify(self, kind: NotificationKind, message: str) -> None: ...


_LEVELS = {
    NotificationKind.SUCCESS: logging.INFO,
    NotificationKind.WARNING: logging.WARNING,
    NotificationKind.ERROR: logging.ERROR,
}


class LoggingNotifier(Notifier):
    def __init__(self, channel: logging.Logger | None = None) -> None:
        self._channel = channel or logger

    def notify(self, kind: NotificationKind, message: str) -> None:
        self._channel.log(_LEVELS[kind], "[%s] %s", kind, message)


__all__ = ["LoggingNotifier", "NotificationKind", "Notifier"]
