"""
notifier.py – Native desktop notifications.

The threshold engine talks to a display collaborator with a single
method, ``show(title, body, severity, on_click)``.  DesktopNotifier is the
default implementation, built on the desktop-notifier package (DBus on
Linux, WinRT toasts on Windows, the user notification center on macOS).

Clicks are reported back through *on_click*.  desktop-notifier delivers
them on the asyncio loop that sent the notification, so they only arrive
while that loop keeps running; on macOS the host must additionally run a
Cocoa main loop.  Where a platform cannot report clicks the notification
is still shown and *on_click* is simply never called.
"""

import logging
from typing import Callable, Optional

from desktop_notifier import DesktopNotifier as NotificationBackend
from desktop_notifier import Urgency

from config import APP_NAME

logger = logging.getLogger(APP_NAME)

# Backend urgency per alert severity.
URGENCY = {
    "critical": Urgency.Critical,
    "urgent": Urgency.Normal,
    "warning": Urgency.Low,
}


class DesktopNotifier:
    """
    Show notifications through the operating system's notification service.

    Parameters
    ----------
    app_name : str
        Name the notifications are attributed to.
    backend : object, optional
        Object with an async ``send(title=, message=, urgency=, on_clicked=)``;
        a desktop_notifier.DesktopNotifier is created when omitted.
    """

    def __init__(self, app_name: str = APP_NAME, backend=None) -> None:
        self.app_name = app_name
        self._backend = backend or NotificationBackend(app_name=app_name)

    async def show(self, title: str, body: str, severity: str = "warning",
                   on_click: Optional[Callable[[], None]] = None) -> bool:
        """
        Display one notification.  Returns False (and logs) when the
        notification service rejects it; never raises.
        """
        try:
            await self._backend.send(
                title=title,
                message=body,
                urgency=URGENCY.get(severity, Urgency.Normal),
                on_clicked=on_click,
            )
        except Exception:
            logger.exception("Failed to show desktop notification")
            return False
        return True


class LogNotifier:
    """Notifier that only writes alerts to the application log."""

    async def show(self, title: str, body: str, severity: str = "warning",
                   on_click: Optional[Callable[[], None]] = None) -> bool:
        logger.warning("[%s] %s\n%s", severity, title, body)
        return True
