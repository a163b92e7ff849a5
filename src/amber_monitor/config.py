"""Central configuration for the Amber feed-in price monitor."""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from amber_monitor.errors import ConfigError, InvalidScheduleError

logger = logging.getLogger(__name__)

KNOWN_CHANNELS = ("console", "desktop", "email")

_INTERVAL_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh])\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}


# ── Schedule specs ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class IntervalSchedule:
    """Fire every ``seconds`` seconds."""

    seconds: float

    def describe(self) -> str:
        return f"every {self.seconds:g}s"


@dataclass(frozen=True)
class CalendarSchedule:
    """Cron expression evaluated in ``timezone``."""

    expression: str
    timezone: str = "Australia/Sydney"

    def describe(self) -> str:
        return f"cron '{self.expression}' ({self.timezone})"


ScheduleSpec = Union[IntervalSchedule, CalendarSchedule]


def validate_schedule(spec: ScheduleSpec) -> ScheduleSpec:
    """Raise InvalidScheduleError if ``spec`` cannot be scheduled."""
    if isinstance(spec, IntervalSchedule):
        if spec.seconds <= 0:
            raise InvalidScheduleError(f"Invalid interval: {spec.seconds}s")
        return spec
    if not croniter.is_valid(spec.expression):
        raise InvalidScheduleError(f"Invalid cron expression: {spec.expression!r}")
    try:
        ZoneInfo(spec.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidScheduleError(f"Unknown timezone: {spec.timezone!r}") from exc
    return spec


def parse_schedule(text: str, timezone: str = "Australia/Sydney") -> ScheduleSpec:
    """Decide once whether ``text`` is a plain duration or a cron expression.

    ``30s``, ``5m`` and ``1h`` become IntervalSchedule; anything else is
    treated as a calendar expression and validated up front.
    """
    match = _INTERVAL_RE.match(text)
    if match:
        seconds = float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        return validate_schedule(IntervalSchedule(seconds=seconds))
    return validate_schedule(CalendarSchedule(expression=text.strip(), timezone=timezone))


# ── Sub-configs ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AmberConfig:
    api_key: str = ""
    site_id: Optional[str] = None
    base_url: str = "https://api.amber.com.au/v1"
    timeout_seconds: float = 10.0
    low_remaining_warning: int = 10


@dataclass(frozen=True)
class MonitoringConfig:
    """Threshold detection settings (cents/kWh)."""

    feed_in_threshold: float = 15.0
    schedule: ScheduleSpec = field(
        default_factory=lambda: CalendarSchedule("*/5 * * * *", "Australia/Sydney"),
    )
    timezone: str = "Australia/Sydney"
    cooldown_minutes: float = 30.0
    lookahead_intervals: int = 6


@dataclass(frozen=True)
class NotificationConfig:
    channels: tuple[str, ...] = ("console", "desktop")
    gmail_address: str = ""
    gmail_app_password: str = ""
    email_to: str = ""
    app_name: str = "Amber Feed-In Monitor"


@dataclass(frozen=True)
class HistoryConfig:
    """Durable store keeps ~42 days, snapshots carry the last ~24h."""

    path: Path = Path("data/price-history.json")
    capacity: int = 2016
    live_size: int = 288


@dataclass(frozen=True)
class DistributionConfig:
    interval_seconds: float = 60.0
    usage_interval_seconds: float = 300.0
    lookahead_intervals: int = 48
    ws_host: str = "127.0.0.1"
    ws_port: int = 3001


@dataclass(frozen=True)
class RetryConfig:
    """Backoff for the opt-in retry helper."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0


@dataclass(frozen=True)
class Config:
    """Top-level configuration aggregating all sub-configs."""

    amber: AmberConfig = field(default_factory=AmberConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    distribution: DistributionConfig = field(default_factory=DistributionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)


DEFAULT_CONFIG = Config()


# ── Loading ────────────────────────────────────────────────────────────


def _parse_channels(raw: str) -> tuple[str, ...]:
    channels = tuple(c.strip().lower() for c in raw.split(",") if c.strip())
    unknown = [c for c in channels if c not in KNOWN_CHANNELS]
    if unknown:
        raise ConfigError(
            f"Unknown notification channel(s): {', '.join(unknown)} "
            f"(expected one of {', '.join(KNOWN_CHANNELS)})"
        )
    return channels


def _parse_threshold(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"FEED_IN_THRESHOLD is not a number: {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"FEED_IN_THRESHOLD must be positive, got {value}")
    return value


def load_config(env: Optional[Mapping[str, str]] = None) -> Config:
    """Build a validated Config from environment variables.

    Raises ConfigError (or InvalidScheduleError) on anything that must
    stop the process before scheduling begins.
    """
    if env is None:
        env = os.environ

    api_key = env.get("AMBER_API_KEY", "").strip()
    if not api_key:
        raise ConfigError("AMBER_API_KEY is required")

    timezone = env.get("TIMEZONE", "Australia/Sydney")
    schedule = parse_schedule(env.get("CHECK_INTERVAL", "*/5 * * * *"), timezone)

    config = Config(
        amber=AmberConfig(
            api_key=api_key,
            site_id=env.get("AMBER_SITE_ID") or None,
            base_url=env.get("AMBER_BASE_URL", AmberConfig.base_url),
        ),
        monitoring=MonitoringConfig(
            feed_in_threshold=_parse_threshold(env.get("FEED_IN_THRESHOLD", "15.0")),
            schedule=schedule,
            timezone=timezone,
        ),
        notifications=NotificationConfig(
            channels=_parse_channels(env.get("NOTIFICATION_CHANNELS", "console,desktop")),
            gmail_address=env.get("GMAIL_ADDRESS", ""),
            gmail_app_password=env.get("GMAIL_APP_PASSWORD", ""),
            email_to=env.get("EMAIL_TO", ""),
        ),
        history=HistoryConfig(
            path=Path(env.get("HISTORY_FILE", str(HistoryConfig.path))),
        ),
    )
    logger.debug(
        "Config loaded (threshold=%.2f, schedule=%s, channels=%s)",
        config.monitoring.feed_in_threshold,
        schedule.describe(),
        ",".join(config.notifications.channels),
    )
    return config


class ConfigHolder:
    """Holds the current immutable Config and swaps it atomically.

    Readers call ``get()`` once per cycle and work from that snapshot.
    Schedule changes only reach a Scheduler when it is restarted.
    """

    def __init__(self, config: Config = DEFAULT_CONFIG) -> None:
        self._config = config
        self._lock = threading.Lock()

    def get(self) -> Config:
        return self._config

    def replace(self, config: Config) -> Config:
        with self._lock:
            previous = self._config
            self._config = config
        return previous

    def update_settings(
        self,
        feed_in_threshold: Optional[float] = None,
        check_interval: Optional[str] = None,
        channels: Optional[list[str]] = None,
    ) -> Config:
        """Validate and apply settings changes, returning the new Config."""
        with self._lock:
            current = self._config
            monitoring = current.monitoring
            notifications = current.notifications
            if feed_in_threshold is not None:
                monitoring = replace(
                    monitoring, feed_in_threshold=_parse_threshold(str(feed_in_threshold)),
                )
            if check_interval is not None:
                monitoring = replace(
                    monitoring,
                    schedule=parse_schedule(check_interval, monitoring.timezone),
                )
            if channels is not None:
                notifications = replace(
                    notifications, channels=_parse_channels(",".join(channels)),
                )
            self._config = replace(
                current, monitoring=monitoring, notifications=notifications,
            )
            updated = self._config
        logger.info(
            "Settings updated (threshold=%.2f, schedule=%s, channels=%s)",
            updated.monitoring.feed_in_threshold,
            updated.monitoring.schedule.describe(),
            ",".join(updated.notifications.channels),
        )
        return updated
