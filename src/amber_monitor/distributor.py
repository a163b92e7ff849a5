"""Distributor — keeps the latest price snapshot and pushes it to subscribers.

Runs on its own cadence, independent of alerting: fetch current and
forecast intervals, record the current interval in the history store,
rebuild the snapshot, broadcast it. Subscribers that cannot take pushes
pull ``get_snapshot()`` instead.

Usage:
    distributor = Distributor(client, history, config)
    await distributor.tick()            # refresh + broadcast
    await distributor.on_connect(sub)   # targeted push for a new subscriber
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from amber_monitor.amber_client import AmberClient
from amber_monitor.config import ConfigHolder
from amber_monitor.errors import NoActiveSiteError
from amber_monitor.history_store import HistoryStore
from amber_monitor.schemas import (
    CurrentPrice,
    ForecastPrice,
    HistoryRecord,
    IntervalKind,
    PriceUpdateMessage,
    Snapshot,
    UsageRecord,
    find_current,
    select_price_channel,
)

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    """Anything that can receive a serialized snapshot message."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, message: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Distributor:
    def __init__(
        self,
        client: AmberClient,
        history: HistoryStore,
        config: ConfigHolder,
    ) -> None:
        self._client = client
        self._history = history
        self._config = config
        self._subscribers: set[Subscriber] = set()
        self._current: Optional[CurrentPrice] = None
        self._forecast: list[ForecastPrice] = []
        self._usage: list[UsageRecord] = []
        self.refreshed_at: Optional[datetime] = None

    # ── Subscribers ────────────────────────────────────────────────────

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def add_subscriber(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)
        logger.info("Subscriber connected (%d total)", len(self._subscribers))

    def remove_subscriber(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)
        logger.info("Subscriber disconnected (%d total)", len(self._subscribers))

    async def on_connect(self, subscriber: Subscriber) -> None:
        """Register ``subscriber`` and send it the current snapshot."""
        self.add_subscriber(subscriber)
        if self.refreshed_at is None:
            try:
                await self.refresh()
            except Exception:
                logger.warning("Initial refresh for new subscriber failed", exc_info=True)
        await self.push_snapshot(subscriber)

    # ── Snapshot ───────────────────────────────────────────────────────

    def get_snapshot(self) -> Snapshot:
        """Latest snapshot, annotated with the most recent rate-limit state."""
        return Snapshot(
            current=self._current,
            forecast=list(self._forecast),
            history=self._history.records(self._config.get().history.live_size),
            rate_limit=self._client.last_rate_limit,
        )

    def get_usage(self) -> list[UsageRecord]:
        return list(self._usage)

    async def refresh(self, now: Optional[datetime] = None) -> Optional[Snapshot]:
        """Fetch prices, record the current interval, rebuild the snapshot.

        Returns None and keeps the previous snapshot when the batch has no
        feed-in or general channel.
        """
        if now is None:
            now = _utcnow()
        lookahead = self._config.get().distribution.lookahead_intervals
        intervals = await self._client.get_current_prices(lookahead=lookahead, lookbehind=0)

        target = select_price_channel(intervals)
        if not target:
            logger.warning(
                "No price channels found in %d intervals; snapshot not updated",
                len(intervals),
            )
            return None
        current = find_current(target)
        if current is not None:
            self._history.append(HistoryRecord.from_interval(current, now))

        self._current = CurrentPrice.from_interval(current) if current else None
        self._forecast = [
            ForecastPrice.from_interval(i) for i in target if i.kind == IntervalKind.FORECAST
        ]
        self.refreshed_at = now
        logger.debug(
            "Snapshot refreshed (current=%s, %d forecast, %d history)",
            f"{current.price_per_kwh:.2f}" if current else "none",
            len(self._forecast),
            len(self._history),
        )
        return self.get_snapshot()

    async def refresh_usage(self, now: Optional[datetime] = None) -> list[UsageRecord]:
        """Pull the last 24 hours of usage at 30-minute resolution."""
        if now is None:
            now = _utcnow()
        start = now - timedelta(hours=24)
        usage = await self._client.get_usage(
            start_date=start.date().isoformat(),
            end_date=now.date().isoformat(),
            resolution=30,
        )
        if usage:
            self._usage = usage[: self._config.get().history.live_size]
            logger.info("Updated usage history (%d records)", len(self._usage))
        return self.get_usage()

    # ── Push ───────────────────────────────────────────────────────────

    async def _send(self, subscriber: Subscriber, message: str) -> bool:
        try:
            await subscriber.send(message)
        except Exception as exc:
            logger.debug("Dropping push to subscriber: %s", exc)
            return False
        return True

    async def push_snapshot(self, subscriber: Optional[Subscriber] = None) -> int:
        """Send the snapshot to ``subscriber``, or broadcast to all open ones.

        Returns the number of subscribers the message reached.
        """
        message = PriceUpdateMessage(data=self.get_snapshot()).to_json()
        if subscriber is not None:
            targets = [subscriber] if subscriber.is_open else []
        else:
            targets = [s for s in tuple(self._subscribers) if s.is_open]
        if not targets:
            return 0
        results = await asyncio.gather(*(self._send(s, message) for s in targets))
        sent = sum(1 for ok in results if ok)
        logger.debug("Pushed snapshot to %d/%d subscribers", sent, len(targets))
        return sent

    async def tick(self) -> Optional[Snapshot]:
        """One distribution cycle: refresh then broadcast.

        A missing active site or price channel is a soft outcome: nothing
        is pushed.
        """
        try:
            snapshot = await self.refresh()
        except NoActiveSiteError:
            logger.warning("No active site; snapshot not updated")
            return None
        if snapshot is None:
            return None
        await self.push_snapshot()
        return snapshot

    async def usage_tick(self) -> None:
        try:
            await self.refresh_usage()
        except NoActiveSiteError:
            logger.warning("No active site; usage not updated")
