#!/usr/bin/env python3
"""
Run the delivery pipeline until interrupted: queue workers plus the
periodic scheduler, delivery status synchronizer and event poller.

Usage:
    python scripts/run_pipeline.py
    python scripts/run_pipeline.py --config config/settings.yaml --json-logs

    # Only consume queues (scale workers separately from periodic loops):
    python scripts/run_pipeline.py --no-periodic
"""
import asyncio
import os
import sys
import signal
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from dotenv import load_dotenv


def configure_json_logs():
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )


async def run(config_path: str = None, workers: bool = True, periodic: bool = True):
    from config.settings import load_settings
    from core.runtime import Pipeline

    settings = load_settings(config_path)
    pipeline = Pipeline(settings)
    await pipeline.start(workers=workers, periodic=periodic)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    try:
        await stop.wait()
    finally:
        await pipeline.stop()


def main():
    parser = argparse.ArgumentParser(description="Run the SMS delivery pipeline")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--no-workers", action="store_true", help="Do not consume queues")
    parser.add_argument("--no-periodic", action="store_true",
                        help="Do not run scheduler, status sync or event poller")
    args = parser.parse_args()

    load_dotenv()
    if args.json_logs:
        configure_json_logs()

    asyncio.run(run(args.config, workers=not args.no_workers, periodic=not args.no_periodic))


if __name__ == "__main__":
    main()
