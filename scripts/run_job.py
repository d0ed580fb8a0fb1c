#!/usr/bin/env python3
"""
SPARK — Scheduled job runner

Runs one of the periodic jobs and prints its JSON summary, for cron or Cloud
Scheduler.  Every job is idempotent; a failed run can simply be re-invoked.

  weekly-matches  — Generate this cycle's matches (Monday 00:00 Asia/Kolkata).
  advance-days    — Recompute room day numbers and send decision reminders.
  expire-rooms    — Resolve or expire rooms whose window has ended.
  archive-rooms   — Move rooms closed for 30+ days to the archive.

Usage examples
--------------
  python scripts/run_job.py weekly-matches
  python scripts/run_job.py expire-rooms --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import sys

# Ensure the project root is importable
sys.path.insert(0, ".")

from spark.config import get_settings
from spark.errors import SparkError
from spark.services.match_generation_service import MatchGenerationService
from spark.services.notification_service import build_notification_service
from spark.services.room_service import RoomService
from spark.store.factory import build_store
from spark.utils.logging import configure_logging

JOBS = ("weekly-matches", "advance-days", "expire-rooms", "archive-rooms")


async def run_job(name: str) -> str:
    """Run job ``name`` against the configured store; return its summary as JSON."""
    settings = get_settings()
    store = build_store(settings)
    notifications = build_notification_service(settings, store)
    try:
        if name == "weekly-matches":
            summary = await MatchGenerationService(store, notifications, settings).run()
        else:
            rooms = RoomService(store, notifications, settings)
            if name == "advance-days":
                summary = await rooms.advance_days()
            elif name == "expire-rooms":
                summary = await rooms.sweep_expired()
            else:
                summary = await rooms.archive_stale()
        return summary.model_dump_json(indent=2)
    finally:
        await notifications.gateway.close()
        await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="SPARK — run a scheduled job",
    )
    parser.add_argument("job", choices=JOBS, help="Job to run")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL for this run",
    )
    args = parser.parse_args()

    configure_logging(args.log_level or get_settings().LOG_LEVEL)

    try:
        print(asyncio.run(run_job(args.job)))
    except SparkError as exc:
        print(f"{args.job} failed: {exc.code}: {exc.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
