"""Timestamp helpers.

Documents store timestamps as fixed-width UTC ISO-8601 strings
(``2026-01-04T10:00:00.000000Z``) so that lexicographic order in the store
equals chronological order for range filters and ``order_by``.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

ONE_DAY = timedelta(days=1)
ONE_WEEK = timedelta(weeks=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_ts(value: datetime) -> str:
    return ensure_utc(value).strftime(_TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def get_cycle(now: datetime, tz: str = "Asia/Kolkata") -> tuple[int, int]:
    """Return the ``(week_number, year)`` cycle that ``now`` falls in.

    Weeks are counted from 1 January in the matching timezone:
    ``ceil((now - Jan 1) / 1 week)``, never less than 1.
    """
    local_now = ensure_utc(now).astimezone(ZoneInfo(tz))
    start_of_year = datetime(local_now.year, 1, 1, tzinfo=local_now.tzinfo)
    elapsed = local_now - start_of_year
    week_number = max(1, math.ceil(elapsed / ONE_WEEK))
    return week_number, local_now.year
