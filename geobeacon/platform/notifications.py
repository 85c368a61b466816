"""Notification channel registration and the foreground service notification.

The notification only exists so the long-running service is visible to the
user, as Android requires for foreground services.  The channel must be
created before the service starts; creating it again is harmless.
"""

from __future__ import annotations

import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from geobeacon.platform.termux import run_command

logger = logging.getLogger("geobeacon.platform.notifications")


class Importance(str, Enum):
    MIN = "min"
    LOW = "low"
    DEFAULT = "default"
    HIGH = "high"
    MAX = "max"


@dataclass(frozen=True)
class NotificationChannel:
    """OS notification channel the foreground notification is posted into."""

    channel_id: str
    display_name: str
    description: str = ""
    importance: Importance = Importance.LOW


@dataclass(frozen=True)
class ForegroundNotification:
    """The ongoing notification shown while the foreground service runs.

    Attributes:
        notification_id: Stable id so updates replace the same notification.
        channel_id:      Channel it is posted into.
        title:           First line.
        body:            Second line.
        action_label:    Optional button label (e.g. "Stop").
        action_command:  Shell command the button runs.
    """

    notification_id: int
    channel_id: str
    title: str
    body: str
    action_label: str | None = None
    action_command: list[str] | None = None


class NotificationSurface(ABC):
    """Where channels are registered and notifications shown."""

    BACKEND_ID: str = "unknown"

    def __init__(self) -> None:
        self._channels: dict[str, NotificationChannel] = {}

    async def create_channel(self, channel: NotificationChannel) -> bool:
        """Register ``channel`` with the OS.

        Returns:
            True if the channel is now available for notifications.
        """
        if await self._register_channel(channel):
            self._channels[channel.channel_id] = channel
            logger.info("Notification channel %r ready", channel.channel_id)
            return True
        logger.warning("Notification channel %r could not be created", channel.channel_id)
        return False

    def has_channel(self, channel_id: str) -> bool:
        return channel_id in self._channels

    def get_channel(self, channel_id: str) -> NotificationChannel | None:
        return self._channels.get(channel_id)

    @abstractmethod
    async def _register_channel(self, channel: NotificationChannel) -> bool:
        """Platform call that creates the channel."""

    @abstractmethod
    async def show(self, notification: ForegroundNotification) -> None:
        """Post or replace the notification."""

    @abstractmethod
    async def cancel(self, notification_id: int) -> None:
        """Remove the notification if present."""


class LogNotificationSurface(NotificationSurface):
    """Headless surface: notifications go to the log."""

    BACKEND_ID = "log"

    def __init__(self) -> None:
        super().__init__()
        self.shown: dict[int, ForegroundNotification] = {}

    async def _register_channel(self, channel: NotificationChannel) -> bool:
        return True

    async def show(self, notification: ForegroundNotification) -> None:
        self.shown[notification.notification_id] = notification
        logger.info("[notification %d] %s — %s", notification.notification_id, notification.title, notification.body)

    async def cancel(self, notification_id: int) -> None:
        self.shown.pop(notification_id, None)
        logger.info("[notification %d] removed", notification_id)


class TermuxNotificationSurface(NotificationSurface):
    """Android notifications through Termux:API."""

    BACKEND_ID = "termux"

    async def _register_channel(self, channel: NotificationChannel) -> bool:
        result = await run_command(
            ["termux-notification-channel", channel.channel_id, channel.display_name],
            timeout=15,
        )
        return result.ok

    async def show(self, notification: ForegroundNotification) -> None:
        channel = self.get_channel(notification.channel_id)
        priority = channel.importance.value if channel else Importance.LOW.value
        args = [
            "termux-notification",
            "--id", str(notification.notification_id),
            "--channel", notification.channel_id,
            "--priority", priority,
            "--ongoing",
            "--alert-once",
            "--title", notification.title,
            "--content", notification.body,
        ]
        if notification.action_label and notification.action_command:
            args += [
                "--button1", notification.action_label,
                "--button1-action", shlex.join(notification.action_command),
            ]
        result = await run_command(args, timeout=15)
        if not result.ok:
            logger.warning("termux-notification failed: %s", result.stderr or result.returncode)

    async def cancel(self, notification_id: int) -> None:
        result = await run_command(["termux-notification-remove", str(notification_id)], timeout=15)
        if not result.ok:
            logger.debug("termux-notification-remove failed: %s", result.stderr)


# Registry: backend_id → surface class
NOTIFICATION_SURFACES: dict[str, type] = {
    "termux": TermuxNotificationSurface,
    "log": LogNotificationSurface,
}
