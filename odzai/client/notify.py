"""User-facing notifications (toasts).

The data layers never talk to a UI directly.  They call an injected
``Notifier``; the default one writes to the log, tests use
``RecordingNotifier`` to assert on what the user would have seen.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol, runtime_checkable

from loguru import logger

NotificationLevel = Literal["success", "error", "info"]


@runtime_checkable
class Notifier(Protocol):
    def success(self, title: str, description: str | None = None) -> None: ...

    def error(self, title: str, description: str | None = None) -> None: ...

    def info(self, title: str, description: str | None = None) -> None: ...


class LogNotifier:
    """Notifier that routes every notification to loguru, tagged ``toast=True``."""

    def __init__(self) -> None:
        self._log = logger.bind(toast=True)

    def success(self, title: str, description: str | None = None) -> None:
        self._log.success(_format(title, description))

    def error(self, title: str, description: str | None = None) -> None:
        self._log.error(_format(title, description))

    def info(self, title: str, description: str | None = None) -> None:
        self._log.info(_format(title, description))


@dataclass
class Notification:
    level: NotificationLevel
    title: str
    description: str | None = None


@dataclass
class RecordingNotifier:
    """Notifier that keeps every notification in memory."""

    notifications: list[Notification] = field(default_factory=list)

    def success(self, title: str, description: str | None = None) -> None:
        self.notifications.append(Notification("success", title, description))

    def error(self, title: str, description: str | None = None) -> None:
        self.notifications.append(Notification("error", title, description))

    def info(self, title: str, description: str | None = None) -> None:
        self.notifications.append(Notification("info", title, description))

    def titles(self, level: NotificationLevel | None = None) -> list[str]:
        return [n.title for n in self.notifications if level is None or n.level == level]


def _format(title: str, description: str | None) -> str:
    return f"{title}: {description}" if description else title
