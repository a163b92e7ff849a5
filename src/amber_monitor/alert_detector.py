# src/amber_monitor/alert_detector.py
"""Alert Detector — raises an alert when the feed-in price crosses the threshold.

State machine with two states:
  ARMED   — no alert yet, or the last one is at least the cooldown old
  COOLING — an alert was raised less than the cooldown ago; suppress

The cooldown is purely time based. A price that stays above the
threshold produces one alert per cooldown period.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from amber_monitor.amber_client import AmberClient
from amber_monitor.config import ConfigHolder
from amber_monitor.schemas import (
    ChannelKind,
    IntervalKind,
    PriceDescriptor,
    PriceInterval,
    find_current,
    select_price_channel,
)

logger = logging.getLogger(__name__)


class DetectorState(str, Enum):
    ARMED = "ARMED"
    COOLING = "COOLING"


@dataclass(frozen=True)
class Alert:
    """A threshold crossing. Never persisted."""

    interval: PriceInterval
    threshold: float
    raised_at: datetime

    @property
    def price(self) -> float:
        return self.interval.price_per_kwh

    @property
    def spot_price(self) -> float:
        return self.interval.spot_price_per_kwh

    @property
    def descriptor(self) -> PriceDescriptor:
        return self.interval.descriptor

    @property
    def renewables(self) -> float:
        return self.interval.renewables_percent

    @property
    def valid_until(self) -> datetime:
        return self.interval.valid_until

    @property
    def estimate(self) -> bool:
        return bool(self.interval.is_estimate)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertDetector:
    """Threshold + cooldown detection over the current price interval."""

    def __init__(self, client: AmberClient, config: ConfigHolder) -> None:
        self._client = client
        self._config = config
        self.last_alert_at: Optional[datetime] = None

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self._config.get().monitoring.cooldown_minutes)

    def state(self, now: Optional[datetime] = None) -> DetectorState:
        if now is None:
            now = _utcnow()
        if self.last_alert_at is None or now - self.last_alert_at >= self.cooldown:
            return DetectorState.ARMED
        return DetectorState.COOLING

    def check_intervals(
        self, intervals: list[PriceInterval], now: Optional[datetime] = None,
    ) -> Optional[Alert]:
        """Run detection against an already-fetched batch."""
        if now is None:
            now = _utcnow()
        config = self._config.get().monitoring

        target = select_price_channel(intervals)
        if not target:
            logger.warning(
                "No price channels found. Please check your Amber account configuration.",
            )
            return None
        if target[0].channel_kind == ChannelKind.GENERAL:
            logger.info("No feed-in channel found, using general consumption channel")

        current = find_current(target)
        if current is None:
            logger.debug("No current interval in %d intervals", len(target))
            return None

        logger.debug(
            "Current price %.2fc/kWh (spot=%.2f, %s, renewables=%.0f%%, threshold=%.2f)",
            current.price_per_kwh,
            current.spot_price_per_kwh,
            current.descriptor.value,
            current.renewables_percent,
            config.feed_in_threshold,
        )

        if current.price_per_kwh < config.feed_in_threshold:
            return None

        if self.state(now) == DetectorState.COOLING:
            logger.debug(
                "Alert suppressed due to cooldown (last alert at %s)",
                self.last_alert_at.isoformat() if self.last_alert_at else "-",
            )
            return None

        self.last_alert_at = now
        alert = Alert(interval=current, threshold=config.feed_in_threshold, raised_at=now)
        logger.info(
            "High feed-in price detected: %.2fc/kWh >= %.2fc/kWh (%s)",
            alert.price, alert.threshold, alert.descriptor.value,
        )
        return alert

    async def evaluate(self, now: Optional[datetime] = None) -> Optional[Alert]:
        """Fetch the current interval plus a short lookahead and check it.

        Fetch errors propagate unchanged to the caller.
        """
        lookahead = self._config.get().monitoring.lookahead_intervals
        intervals = await self._client.get_current_prices(lookahead=lookahead)
        return self.check_intervals(intervals, now)

    async def upcoming_prices(self, hours: float = 3) -> list[PriceInterval]:
        """Feed-in (or general) intervals for the next ``hours`` hours."""
        count = math.ceil((hours * 60) / 30)
        intervals = await self._client.get_current_prices(lookahead=count)
        target = select_price_channel(intervals)
        upcoming = [i for i in target if i.kind != IntervalKind.ACTUAL]
        logger.info("Upcoming prices: %d intervals", len(upcoming))
        return upcoming
