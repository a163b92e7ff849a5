"""Exception types raised across the monitor."""

from __future__ import annotations


class AmberMonitorError(Exception):
    """Base class for monitor errors."""


class ConfigError(AmberMonitorError):
    """Configuration is missing or invalid. Fatal at startup."""


class InvalidScheduleError(ConfigError):
    """A schedule spec cannot be turned into a trigger."""


class NoActiveSiteError(AmberMonitorError):
    """The account has no site with status ``active``."""


class ChannelError(AmberMonitorError):
    """A notification channel failed to deliver an alert."""

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel}: {message}")
        self.channel = channel
