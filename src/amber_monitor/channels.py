"""Notification channels that deliver an Alert to the user.

Every channel exposes the same contract: ``name``, ``is_enabled()`` and
``async send(alert)``. A channel is enabled when its name is listed in
the current NotificationConfig (read on every call, so settings swaps
take effect on the next alert). New channels are added to
``CHANNEL_TYPES``; the notifier never needs to change.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import shutil
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from amber_monitor.alert_detector import Alert
from amber_monitor.alert_templates import render_console, render_desktop, render_email
from amber_monitor.config import ConfigHolder
from amber_monitor.errors import ChannelError

logger = logging.getLogger(__name__)

SMTP_HOST = "smtp.gmail.com"
SMTP_PORT = 587


class NotificationChannel(ABC):
    name: str = ""

    def __init__(self, config: ConfigHolder) -> None:
        self._config = config

    def is_enabled(self) -> bool:
        return self.name in self._config.get().notifications.channels

    @abstractmethod
    async def send(self, alert: Alert) -> None:
        """Deliver ``alert``; raise on failure."""


# ── Console ────────────────────────────────────────────────────────────


class ConsoleChannel(NotificationChannel):
    name = "console"

    async def send(self, alert: Alert) -> None:
        tz_name = self._config.get().monitoring.timezone
        logger.info(render_console(alert, tz_name))


# ── Desktop ────────────────────────────────────────────────────────────


def _desktop_command(title: str, body: str, app_name: str) -> list[str]:
    system = platform.system()
    if system == "Darwin":
        script = (
            f"display notification {_applescript_str(body)} "
            f"with title {_applescript_str(title)} sound name \"default\""
        )
        return ["osascript", "-e", script]
    if system == "Linux":
        return ["notify-send", "--app-name", app_name, "--expire-time", "10000", title, body]
    raise ChannelError("desktop", f"Desktop notifications are not supported on {system}")


def _applescript_str(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


class DesktopChannel(NotificationChannel):
    """Popup via ``notify-send`` (Linux) or ``osascript`` (macOS)."""

    name = "desktop"

    async def send(self, alert: Alert) -> None:
        config = self._config.get()
        title, body = render_desktop(alert, config.monitoring.timezone)
        cmd = _desktop_command(title, body, config.notifications.app_name)
        if shutil.which(cmd[0]) is None:
            raise ChannelError("desktop", f"{cmd[0]} not found on PATH")

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ChannelError(
                "desktop",
                f"{cmd[0]} exited with {proc.returncode}: "
                f"{stderr.decode('utf-8', 'replace').strip()}",
            )
        logger.debug("Desktop notification sent: %s", title)


# ── Email ──────────────────────────────────────────────────────────────


def send_alert_email(
    subject: str,
    html_body: str,
    gmail_address: str,
    gmail_app_password: str,
    to_addr: str,
) -> None:
    """Send an HTML alert via Gmail SMTP."""
    msg = MIMEMultipart("alternative")
    msg["From"] = gmail_address
    msg["To"] = to_addr
    msg["Subject"] = subject
    msg.attach(MIMEText(html_body, "html", "utf-8"))

    logger.info("Sending alert email to %s: %s", to_addr, subject)
    with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as server:
        server.starttls()
        server.login(gmail_address, gmail_app_password)
        server.send_message(msg)


class EmailChannel(NotificationChannel):
    """Gmail-to-self (or EMAIL_TO) alert email."""

    name = "email"

    def __init__(self, config: ConfigHolder) -> None:
        super().__init__(config)
        self._warned_missing_credentials = False

    def is_enabled(self) -> bool:
        notifications = self._config.get().notifications
        if self.name not in notifications.channels:
            return False
        if not (notifications.gmail_address and notifications.gmail_app_password):
            if not self._warned_missing_credentials:
                logger.warning(
                    "Email channel listed but GMAIL_ADDRESS/GMAIL_APP_PASSWORD not set",
                )
                self._warned_missing_credentials = True
            return False
        self._warned_missing_credentials = False
        return True

    async def send(self, alert: Alert) -> None:
        config = self._config.get()
        notifications = config.notifications
        subject, html = render_email(alert, config.monitoring.timezone)
        await asyncio.to_thread(
            send_alert_email,
            subject,
            html,
            notifications.gmail_address,
            notifications.gmail_app_password,
            notifications.email_to or notifications.gmail_address,
        )


CHANNEL_TYPES: dict[str, type[NotificationChannel]] = {
    ConsoleChannel.name: ConsoleChannel,
    DesktopChannel.name: DesktopChannel,
    EmailChannel.name: EmailChannel,
}


def build_channels(config: ConfigHolder) -> list[NotificationChannel]:
    """One instance of every known channel; enablement is decided per alert."""
    return [cls(config) for cls in CHANNEL_TYPES.values()]
