"""Desktop notifications for brew-updater.

This module provides best-effort desktop notifications for available and
applied updates and for failures. It uses terminal-notifier on macOS and
notify-send on Linux desktops.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass

import structlog

from .interfaces import Notifier
from .models import NotifyMethod

logger = structlog.get_logger(__name__)

APP_TITLE = "brew-updater"
FAILURE_TITLE = "brew-updater failed"


@dataclass
class NotificationConfig:
    """Configuration for notifications."""

    method: NotifyMethod = NotifyMethod.TERMINAL_NOTIFIER
    app_name: str = APP_TITLE
    icon: str = "system-software-update"


class NotificationManager(Notifier):
    """Sends desktop notifications through the configured backend.

    Failures are logged and reported through the return value; they never
    raise, so a missing notifier can't break a check run.
    """

    def __init__(self, config: NotificationConfig | None = None) -> None:
        """Initialize the notification manager.

        Args:
            config: Notification configuration. Uses defaults if not provided.
        """
        self.config = config or NotificationConfig()
        self._executable: str | None = None
        self._checked = False

    @classmethod
    def for_method(cls, method: NotifyMethod) -> NotificationManager:
        """Create a manager for a notify method from the config file."""
        return cls(NotificationConfig(method=method))

    def _find_executable(self) -> str | None:
        """Locate the backend executable, caching the result."""
        if not self._checked:
            self._executable = shutil.which(self.config.method.value)
            self._checked = True
        return self._executable

    def _build_command(self, executable: str, title: str, message: str, action: str) -> list[str]:
        if self.config.method == NotifyMethod.NOTIFY_SEND:
            cmd = [executable, "--app-name", self.config.app_name]
            if self.config.icon:
                cmd.extend(["--icon", self.config.icon])
            cmd.extend([title, message])
            return cmd

        cmd = [executable, "-title", title, "-message", message]
        if action:
            cmd.extend(["-execute", action])
        return cmd

    def notify(self, title: str, message: str, action: str = "") -> bool:
        """Send a desktop notification.

        Args:
            title: Notification title.
            message: Notification message body.
            action: Shell command run when the notification is clicked
                (terminal-notifier only).

        Returns:
            True if notification was sent successfully, False otherwise.
        """
        if self.config.method == NotifyMethod.NONE:
            logger.debug("notifications_disabled")
            return False

        executable = self._find_executable()
        if executable is None:
            logger.warning("notifier_not_available", method=self.config.method.value)
            return False

        cmd = self._build_command(executable, title, message, action)

        try:
            result = subprocess.run(cmd, capture_output=True, check=False, timeout=10)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("notification_error", error=str(e))
            return False

        if result.returncode != 0:
            logger.warning(
                "notification_failed",
                title=title,
                stderr=result.stderr.decode(errors="replace"),
            )
            return False

        logger.debug("notification_sent", title=title)
        return True


def _send(notifier: Notifier, title: str, message: str, action: str) -> bool:
    """Send through any notifier, logging instead of raising on failure."""
    try:
        return notifier.notify(title, message, action)
    except Exception as e:
        logger.warning("notification_error", title=title, error=str(e) or type(e).__name__)
        return False


def notify_package(notifier: Notifier, name: str, installed: str, latest: str) -> bool:
    """Notify about one package update, offering a manual upgrade on click."""
    return _send(
        notifier,
        APP_TITLE,
        f"{name} {installed} → {latest}",
        f"{APP_TITLE} upgrade {name}",
    )


def notify_failure(notifier: Notifier, what: str, error: BaseException | str) -> bool:
    """Notify about a failed brew operation."""
    return _send(
        notifier,
        FAILURE_TITLE,
        f"{what}: {str(error).strip()}",
        f"{APP_TITLE} status",
    )
