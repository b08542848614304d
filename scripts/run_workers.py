#!/usr/bin/env python3
"""CLI script to run the meeting sync and auto-end workers without the API.

Usage:
    uv run python scripts/run_workers.py
    uv run python scripts/run_workers.py --sync-workers 4 --auto-end-workers 0
    uv run python scripts/run_workers.py --once

Connects directly to the database using DATABASE_URL from environment or .env file.
With --once, drains the sync queue and the auto-end queue a single time and exits;
otherwise runs until interrupted (SIGINT / SIGTERM).
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys

# Ensure project root is on sys.path so we can import src.meetsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def drain_once() -> None:
    """Process every pending unit and overdue meeting once, then return."""
    from src.meetsync.config import get_settings
    from src.meetsync.core.database import close_db, get_session
    from src.meetsync.meetings.sync.auto_end import AutoEndWorker
    from src.meetsync.meetings.sync.manager import MeetingsManager
    from src.meetsync.meetings.sync.worker import MeetingSyncWorker

    manager = MeetingsManager(settings=get_settings(), session_factory=get_session)
    synced = 0
    checked = 0
    try:
        for worker in manager.build_workers():
            if isinstance(worker, MeetingSyncWorker):
                while await worker.sync_meeting():
                    synced += 1
            elif isinstance(worker, AutoEndWorker):
                while await worker.check_meeting():
                    checked += 1
    except Exception as exc:
        print(f"Stopped early: {exc}")
    finally:
        await close_db()

    print(f"Synced {synced} unit(s), checked {checked} overdue meeting(s)")


async def run(sync_workers: int | None, auto_end_workers: int | None) -> None:
    """Run the workers until a termination signal arrives."""
    from src.meetsync.api.middleware.logging import configure_structlog
    from src.meetsync.config import get_settings
    from src.meetsync.core.database import close_db, get_session
    from src.meetsync.core.monitoring import init_sentry
    from src.meetsync.meetings.sync.manager import MeetingsManager

    settings = get_settings()
    if sync_workers is not None:
        settings.MEETINGS_SYNC_WORKERS = sync_workers
    if auto_end_workers is not None:
        settings.MEETINGS_AUTO_END_WORKERS = auto_end_workers

    configure_structlog()
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    manager = MeetingsManager(settings=settings, session_factory=get_session)
    manager.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await stop_event.wait()
    await manager.stop()
    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the meeting sync workers")
    parser.add_argument("--sync-workers", type=int, default=None, help="Number of sync workers")
    parser.add_argument(
        "--auto-end-workers", type=int, default=None, help="Number of auto-end workers"
    )
    parser.add_argument(
        "--once", action="store_true", help="Drain the queues once and exit"
    )
    args = parser.parse_args()

    for value, flag in ((args.sync_workers, "--sync-workers"), (args.auto_end_workers, "--auto-end-workers")):
        if value is not None and value < 0:
            parser.error(f"{flag} must be zero or positive")

    if args.once:
        asyncio.run(drain_once())
    else:
        asyncio.run(run(args.sync_workers, args.auto_end_workers))


if __name__ == "__main__":
    main()
