"""Fan an alert out to every enabled notification channel.

Channels run concurrently. A failing channel is logged and counted but
never stops delivery to the others, and ``notify`` itself never raises
because of a channel.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from amber_monitor.alert_detector import Alert
from amber_monitor.channels import NotificationChannel

logger = logging.getLogger(__name__)


@dataclass
class NotifyResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


class ChannelNotifier:
    def __init__(self, channels: list[NotificationChannel]) -> None:
        self._channels = list(channels)

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    @staticmethod
    async def _deliver(channel: NotificationChannel, alert: Alert) -> None:
        await channel.send(alert)

    async def notify(self, alert: Alert) -> NotifyResult:
        result = NotifyResult()
        enabled = [c for c in self._channels if c.is_enabled()]
        if not enabled:
            logger.warning("No notification channels enabled")
            return result

        logger.debug("Sending notifications via %s", ", ".join(c.name for c in enabled))
        outcomes = await asyncio.gather(
            *(self._deliver(channel, alert) for channel in enabled),
            return_exceptions=True,
        )

        for channel, outcome in zip(enabled, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Notification failed for channel %s: %s",
                    channel.name, outcome,
                    exc_info=(type(outcome), outcome, outcome.__traceback__),
                )
                result.failed.append(channel.name)
            else:
                result.succeeded.append(channel.name)

        if result.failed:
            logger.warning(
                "Some notifications failed (%d ok, %d failed of %d)",
                len(result.succeeded), len(result.failed), result.total,
            )
        else:
            logger.debug("All %d notifications sent", result.total)
        return result
