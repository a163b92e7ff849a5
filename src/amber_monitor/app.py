"""Wires the client, detector, notifier, history and distributor together.

One AppContext is created at startup and passed to whatever needs it;
nothing in the package keeps module-level client or state singletons.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from amber_monitor.alert_detector import Alert, AlertDetector
from amber_monitor.amber_client import AmberClient
from amber_monitor.channels import build_channels
from amber_monitor.config import Config, ConfigHolder, IntervalSchedule
from amber_monitor.distributor import Distributor
from amber_monitor.errors import NoActiveSiteError
from amber_monitor.history_store import HistoryStore
from amber_monitor.notifier import ChannelNotifier
from amber_monitor.scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: ConfigHolder
    client: AmberClient
    detector: AlertDetector
    notifier: ChannelNotifier
    history: HistoryStore
    distributor: Distributor

    @classmethod
    def create(
        cls,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> AppContext:
        holder = ConfigHolder(config)
        client = AmberClient(config.amber, transport=transport)
        history = HistoryStore(config.history.path, config.history.capacity)
        return cls(
            config=holder,
            client=client,
            detector=AlertDetector(client, holder),
            notifier=ChannelNotifier(build_channels(holder)),
            history=history,
            distributor=Distributor(client, history, holder),
        )

    async def close(self) -> None:
        await self.client.close()


async def check_prices(detector: AlertDetector, notifier: ChannelNotifier) -> Optional[Alert]:
    """One fetch -> detect -> notify cycle.

    A missing active site means there is nothing to report. Any other
    fetch error propagates to the scheduler, which logs it.
    """
    logger.debug("Running price check")
    try:
        alert = await detector.evaluate()
    except NoActiveSiteError:
        logger.warning("No active site; nothing to check")
        return None
    if alert is None:
        logger.debug("No price alerts triggered")
        return None
    await notifier.notify(alert)
    return alert


def build_schedulers(ctx: AppContext) -> list[Scheduler]:
    """Alerting, distribution and usage schedulers, in that order."""
    config = ctx.config.get()
    return [
        Scheduler(
            config.monitoring.schedule,
            lambda: check_prices(ctx.detector, ctx.notifier),
            name="price-check",
        ),
        Scheduler(
            IntervalSchedule(config.distribution.interval_seconds),
            ctx.distributor.tick,
            name="distribution",
        ),
        Scheduler(
            IntervalSchedule(config.distribution.usage_interval_seconds),
            ctx.distributor.usage_tick,
            name="usage",
        ),
    ]


async def run_monitor(
    ctx: AppContext,
    stop: Optional[asyncio.Event] = None,
    serve_ws: bool = True,
) -> None:
    """Load history, start every scheduler and run until ``stop`` is set."""
    if stop is None:
        stop = asyncio.Event()
    config = ctx.config.get()

    ctx.history.load()
    schedulers = build_schedulers(ctx)
    server = None
    if serve_ws:
        from amber_monitor.ws_server import start_server

        server = await start_server(
            ctx.distributor, config.distribution.ws_host, config.distribution.ws_port,
        )

    logger.info(
        "Monitoring feed-in price (threshold=%.2fc/kWh, %s)",
        config.monitoring.feed_in_threshold,
        config.monitoring.schedule.describe(),
    )
    try:
        # Prime the snapshot and run an initial check before the first tick.
        await schedulers[1].run_once()
        await schedulers[2].run_once()
        await schedulers[0].run_once()
        for scheduler in schedulers:
            scheduler.start()
        await stop.wait()
    finally:
        for scheduler in schedulers:
            scheduler.stop()
        for scheduler in schedulers:
            await scheduler.wait_idle()
        if server is not None:
            server.close()
            await server.wait_closed()
        logger.info("Monitor stopped")
