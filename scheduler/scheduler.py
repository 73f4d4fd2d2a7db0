"""
Scheduler and process entry point for the Spot Instance Monitor.

Uses APScheduler to run:
- **Every CHECK_INTERVAL seconds** — reconciliation: restart reclaimed spot instances.
- **Every DISCOVERY_INTERVAL seconds** (optional) — rediscover spot instances.

A background thread long-polls Telegram for operator commands.
Handles graceful shutdown on SIGINT / SIGTERM.

Usage
-----
    python -m scheduler.scheduler
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from datetime import datetime, timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from actions.bot import BotHandler, CommandDispatcher
from actions.telegram_notify import NotificationError
from config.settings import ConfigError, Settings, settings
from detect.monitor import Monitor

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "info", log_file: str = "") -> None:
    """Configure root logging; unknown levels fall back to INFO."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handlers: list[logging.Handler] = []
    file_error: OSError | None = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as exc:
            file_error = exc
    if not handlers:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(level=numeric_level, format=_LOG_FORMAT, datefmt=_LOG_DATEFMT, handlers=handlers, force=True)

    if file_error is not None:
        logger.warning("Failed to open log file %s, using stderr: %s", log_file, file_error)


# ──────────────────────────────────────────────────────────────────────────────
# Jobs
# ──────────────────────────────────────────────────────────────────────────────


def check_job(monitor: Monitor) -> None:
    """Reconciliation tick: remediate every tracked instance once."""
    logger.debug("CHECK JOB STARTED at %s", datetime.now(timezone.utc).isoformat())

    try:
        outcomes = monitor.reconcile()
    except Exception as exc:
        logger.error("Check failed: %s", exc, exc_info=True)
        return

    acted = [o for o in outcomes if o.acted]
    if acted:
        logger.info(
            "Check complete: %d instances, %d remediated (%s)",
            len(outcomes),
            len(acted),
            ", ".join(f"{o.instance.instance_id}={o.state.value}" for o in acted),
        )
    for outcome in acted:
        if outcome.error is not None:
            logger.warning("Instance %s ended %s: %s", outcome.instance.instance_id, outcome.state.value, outcome.error)


def discovery_job(monitor: Monitor) -> None:
    """Periodic rediscovery of spot instances."""
    try:
        monitor.discover()
    except Exception as exc:
        logger.error("Instance discovery failed: %s", exc, exc_info=True)


# ──────────────────────────────────────────────────────────────────────────────
# Scheduler Setup
# ──────────────────────────────────────────────────────────────────────────────


def build_scheduler(monitor: Monitor, cfg: Settings) -> BlockingScheduler:
    """Create the scheduler with the reconciliation and discovery jobs."""
    scheduler = BlockingScheduler(timezone="UTC")

    # max_instances=1: a slow remediation skips ticks instead of overlapping
    scheduler.add_job(
        check_job,
        trigger=IntervalTrigger(seconds=cfg.CHECK_INTERVAL),
        args=[monitor],
        id="instance_check",
        name="Spot Instance Check",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=cfg.CHECK_INTERVAL,
    )

    if cfg.DISCOVERY_INTERVAL > 0:
        scheduler.add_job(
            discovery_job,
            trigger=IntervalTrigger(seconds=cfg.DISCOVERY_INTERVAL),
            args=[monitor],
            id="instance_discovery",
            name="Spot Instance Discovery",
            max_instances=1,
            coalesce=True,
        )

    return scheduler


def start_bot(monitor: Monitor, cfg: Settings, stop_event: threading.Event) -> threading.Thread:
    """Start Telegram command polling on a daemon thread."""
    dispatcher = CommandDispatcher.for_monitor(monitor)
    bot = BotHandler(cfg.TELEGRAM_BOT_TOKEN, cfg.TELEGRAM_CHAT_ID, dispatcher.dispatch)
    thread = threading.Thread(target=bot.run, args=(stop_event,), name="telegram-bot", daemon=True)
    thread.start()
    return thread


def main(cfg: Settings = settings) -> None:
    """Validate config, discover instances and run the scheduler."""
    configure_logging(cfg.LOG_LEVEL, cfg.LOG_FILE)

    try:
        cfg.validate()
    except ConfigError as exc:
        logger.critical("Failed to load configuration: %s", exc)
        sys.exit(1)

    logger.info("Starting Aliyun Spot Instance Monitor")
    monitor = Monitor.from_settings(cfg)

    logger.info("Running initial instance discovery...")
    try:
        instances = monitor.discover()
    except Exception as exc:
        logger.critical("Failed to discover instances: %s", exc, exc_info=True)
        sys.exit(1)

    if monitor.notifier is not None and instances:
        try:
            monitor.notifier.notify_monitor_started(instances)
        except NotificationError as exc:
            logger.warning("Failed to send monitor started notification: %s", exc)

    stop_event = threading.Event()
    if cfg.TELEGRAM_ENABLED:
        start_bot(monitor, cfg, stop_event)

    scheduler = build_scheduler(monitor, cfg)

    # Graceful shutdown
    def shutdown(signum, frame):
        logger.info("Received signal %s, shutting down scheduler...", signum)
        stop_event.set()
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    logger.info("Scheduler started, checking every %d seconds", cfg.CHECK_INTERVAL)

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
