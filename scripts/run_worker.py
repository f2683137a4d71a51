#!/usr/bin/env python3
"""
Worker process - runs the task scheduler and bulk dispatcher consumers.

Usage:
    # Local, in-memory broker and store:
    python scripts/run_worker.py

    # Production config, JSON logs, create tables first:
    NOTIFY_CONFIG=config/settings.prod.yaml python scripts/run_worker.py --json-logs --init-db

Stops cleanly on SIGINT / SIGTERM.
"""
import argparse
import asyncio
import os
import signal
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

import structlog

logger = structlog.get_logger()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scheduled task and bulk notification worker")
    parser.add_argument("--config", help="Path to settings YAML (defaults to $NOTIFY_CONFIG)")
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument("--json-logs", action="store_true", help="Emit one JSON object per line")
    parser.add_argument("--init-db", action="store_true",
                        help="Create missing tables before starting (sql store only)")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace):
    from config.log_setup import configure_logging
    from config.settings import load_settings

    settings = load_settings(args.config)
    configure_logging(args.log_level or settings.log_level, args.json_logs or settings.json_logs)

    from core.platform import NotificationPlatform

    platform = NotificationPlatform(settings)
    if args.init_db:
        await platform.store.initialize()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    await platform.start()
    logger.info("worker_running", app=settings.app_name,
                broker=settings.broker.backend, store=settings.database.store_backend)
    try:
        await stop.wait()
    finally:
        logger.info("worker_stopping")
        await platform.stop()


def main(argv=None):
    asyncio.run(run(parse_args(argv)))


if __name__ == "__main__":
    main()
