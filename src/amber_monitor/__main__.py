"""CLI entry point — run via `python -m amber_monitor`.

Subcommands:
  run    — Alerting scheduler + snapshot distribution until interrupted (default)
  check  — One immediate fetch -> detect -> notify cycle
  prices — Upcoming feed-in prices for the next few hours
  sites  — Sites visible to the API key
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from amber_monitor.config import Config, load_config
from amber_monitor.errors import ConfigError, NoActiveSiteError

logger = logging.getLogger("amber_monitor")


def _output(text: str) -> None:
    """Write text to stdout (avoids bare print() for lint compliance)."""
    sys.stdout.write(text + "\n")


# ── Logging ──────────────────────────────────────────────────────────


def _setup_logging() -> None:
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _setup_file_logging() -> None:
    """Rotating log for the long-running monitor.

    logs/amber_monitor.log, rotates at 5 MB, keeps 3 backups.
    Disabled with LOG_FILE=off.
    """
    from logging.handlers import RotatingFileHandler
    from pathlib import Path

    if os.environ.get("LOG_FILE", "").lower() in ("off", "0", "false"):
        return
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)

    handler = RotatingFileHandler(
        log_dir / "amber_monitor.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    ))
    logging.getLogger().addHandler(handler)


# ── Subcommands ──────────────────────────────────────────────────────


async def _run(config: Config, serve_ws: bool) -> int:
    from amber_monitor.app import AppContext, run_monitor

    ctx = AppContext.create(config)
    try:
        await run_monitor(ctx, serve_ws=serve_ws)
    finally:
        await ctx.close()
    return 0


async def _check(config: Config) -> int:
    from amber_monitor.app import AppContext, check_prices

    ctx = AppContext.create(config)
    try:
        alert = await check_prices(ctx.detector, ctx.notifier)
    finally:
        await ctx.close()
    if alert is None:
        logger.info(
            "No alert raised (threshold=%.2fc/kWh)", config.monitoring.feed_in_threshold,
        )
    return 0


async def _prices(config: Config, hours: float) -> int:
    from zoneinfo import ZoneInfo

    from amber_monitor.app import AppContext

    ctx = AppContext.create(config)
    try:
        upcoming = await ctx.detector.upcoming_prices(hours)
    finally:
        await ctx.close()

    tz = ZoneInfo(config.monitoring.timezone)
    for interval in upcoming:
        start = interval.valid_from.astimezone(tz).strftime("%H:%M")
        _output(
            f"{start}  {interval.price_per_kwh:7.2f}c/kWh  "
            f"{interval.descriptor.value:<12} {interval.kind.value}"
        )
    return 0


async def _sites(config: Config) -> int:
    from amber_monitor.amber_client import AmberClient

    async with AmberClient(config.amber) as client:
        sites = await client.list_sites()
    for site in sites:
        channels = ",".join(c.type.value for c in site.channels)
        _output(f"{site.id}  nmi={site.nmi}  status={site.status.value}  channels={channels}")
    return 0


# ── Main with argparse ───────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="amber_monitor",
        description="Amber Electric feed-in price monitor",
    )
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Monitor prices until interrupted")
    run_parser.add_argument(
        "--no-ws", action="store_true",
        help="Do not start the snapshot WebSocket server",
    )

    subparsers.add_parser("check", help="Run one price check immediately")

    prices_parser = subparsers.add_parser("prices", help="Show upcoming prices")
    prices_parser.add_argument(
        "--hours", type=float, default=3,
        help="Hours of forecast to show (default: 3)",
    )

    subparsers.add_parser("sites", help="List sites for the API key")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate subcommand.

    Parameters
    ----------
    argv : list of CLI args. Defaults to [] (runs 'run').
           Pass sys.argv[1:] for real CLI usage.
    """
    if argv is None:
        argv = []
    load_dotenv()
    _setup_logging()

    args = build_parser().parse_args(argv)

    try:
        config = load_config()
    except ConfigError as exc:
        logger.error("Configuration validation failed: %s", exc)
        return 1

    try:
        if args.command is None or args.command == "run":
            _setup_file_logging()
            return asyncio.run(_run(config, serve_ws=not getattr(args, "no_ws", False)))
        if args.command == "check":
            return asyncio.run(_check(config))
        if args.command == "prices":
            return asyncio.run(_prices(config, args.hours))
        if args.command == "sites":
            return asyncio.run(_sites(config))
    except KeyboardInterrupt:
        logger.info("Stopped by user.")
        return 0
    except NoActiveSiteError:
        logger.error("No active sites found. Please check your Amber account.")
        return 1
    except Exception:
        logger.exception("%s failed", args.command or "run")
        return 1

    return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
