"""Scheduler — fires a job on a fixed interval or a timezone-aware cron.

Each tick starts one cycle as its own task so a slow cycle never delays
the timer. Cycles are single-flight: a tick that fires while the
previous cycle is still running is skipped. Errors inside a cycle are
logged and the scheduler keeps going; only ``stop()`` halts ticks, and
it never cancels a cycle already in flight.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from amber_monitor.config import (
    CalendarSchedule,
    IntervalSchedule,
    ScheduleSpec,
    validate_schedule,
)

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class Scheduler:
    def __init__(self, spec: ScheduleSpec, job: Job, name: str = "price-check") -> None:
        self._spec = validate_schedule(spec)
        self._job = job
        self._name = name
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._running = False
        self.ticks = 0
        self.skipped = 0
        self.failures = 0

    @property
    def spec(self) -> ScheduleSpec:
        return self._spec

    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Begin ticking. Must be called from inside a running event loop."""
        if self._running:
            logger.debug("Scheduler %s already running", self._name)
            return
        loop = asyncio.get_running_loop()
        self._running = True
        self._timer = loop.create_task(self._tick_loop(), name=f"{self._name}-timer")
        logger.info("Scheduler %s started (%s)", self._name, self._spec.describe())

    def stop(self) -> None:
        """Cancel future ticks. Idempotent; in-flight cycles run to completion."""
        if not self._running:
            return
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.info("Scheduler %s stopped", self._name)

    async def run_once(self) -> Any:
        """Run one cycle immediately, outside the schedule.

        The cycle is tracked as in flight, so ticks that fire while it
        runs are skipped.
        """
        logger.info("Running immediate %s cycle", self._name)
        task = asyncio.get_running_loop().create_task(
            self._run_cycle(), name=f"{self._name}-immediate",
        )
        if self._in_flight is None or self._in_flight.done():
            self._in_flight = task
        return await task

    async def wait_idle(self) -> None:
        """Wait for the in-flight cycle, if any, to finish."""
        task = self._in_flight
        if task is not None and not task.done():
            await asyncio.wait({task})

    # ── Internals ──────────────────────────────────────────────────────

    async def _run_cycle(self, scheduled: bool = False) -> Any:
        try:
            result = await self._job()
        except Exception:
            self.failures += 1
            logger.exception("Error during %s cycle", self._name)
            return None
        if scheduled and not self._running:
            logger.debug("%s cycle finished after stop; result discarded", self._name)
            return None
        return result

    def _fire(self) -> None:
        self.ticks += 1
        if self._in_flight is not None and not self._in_flight.done():
            self.skipped += 1
            logger.warning(
                "Skipping %s tick: previous cycle still running", self._name,
            )
            return
        self._in_flight = asyncio.get_running_loop().create_task(
            self._run_cycle(scheduled=True), name=f"{self._name}-cycle",
        )

    async def _tick_loop(self) -> None:
        if isinstance(self._spec, IntervalSchedule):
            await self._interval_loop(self._spec)
        else:
            await self._calendar_loop(self._spec)

    async def _interval_loop(self, spec: IntervalSchedule) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + spec.seconds
        while self._running:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            if not self._running:
                break
            self._fire()
            next_at += spec.seconds
            now = loop.time()
            if next_at <= now:
                missed = int((now - next_at) // spec.seconds) + 1
                next_at += missed * spec.seconds

    async def _calendar_loop(self, spec: CalendarSchedule) -> None:
        tz = ZoneInfo(spec.timezone)
        trigger = croniter(spec.expression, datetime.now(tz))
        while self._running:
            fire_at: datetime = trigger.get_next(datetime)
            now = datetime.now(tz)
            if fire_at <= now:
                trigger = croniter(spec.expression, now)
                fire_at = trigger.get_next(datetime)
            await asyncio.sleep(max(0.0, (fire_at - datetime.now(tz)).total_seconds()))
            if not self._running:
                break
            self._fire()


def seconds_until_next(spec: ScheduleSpec, now: Optional[datetime] = None) -> float:
    """Delay before the next tick of ``spec`` as seen from ``now``."""
    if isinstance(spec, IntervalSchedule):
        return spec.seconds
    tz = ZoneInfo(spec.timezone)
    base = now.astimezone(tz) if now is not None else datetime.now(tz)
    fire_at: datetime = croniter(spec.expression, base).get_next(datetime)
    return (fire_at - base).total_seconds()
