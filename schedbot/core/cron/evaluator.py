"""Cron evaluator — next fire time for a 5-field cron expression.

Pure and synchronous. Invalid input yields ``None`` instead of raising, so a
task with a broken schedule simply never gets a ``next_run_at``.
"""

from __future__ import annotations

import time
from datetime import datetime
from zoneinfo import ZoneInfo

from croniter import croniter

DEFAULT_TIMEZONE = "UTC"

_PRESETS: dict[str, str] = {
    "0 0 * * *": "Daily at midnight",
    "0 8 * * *": "Daily at 8 AM",
    "0 9 * * *": "Daily at 9 AM",
    "0 8 * * 1": "Weekly on Monday at 8 AM",
    "0 8 * * 1-5": "Weekdays at 8 AM",
    "0 9 * * 1-5": "Weekdays at 9 AM",
    "0 9 * * 1": "Weekly on Monday at 9 AM",
    "0 9 * * 0": "Weekly on Sunday at 9 AM",
}


def next_run_at(
    schedule: str,
    timezone: str | None = None,
    now: int | None = None,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> int | None:
    """Return the first fire time strictly after ``now`` (epoch ms), or None.

    Parameters
    ----------
    schedule : str
        Standard cron: minute, hour, day-of-month, month, day-of-week.
    timezone : str, optional
        IANA zone the expression is evaluated in. Falls back to
        ``default_timezone``.
    now : int, optional
        Reference instant in epoch milliseconds. Defaults to the wall clock.
    """
    if now is None:
        now = int(time.time() * 1000)
    try:
        if len(schedule.split()) != 5:
            return None
        tz = ZoneInfo(timezone or default_timezone)
        base = datetime.fromtimestamp(now / 1000, tz)
        fire = croniter(schedule, base).get_next(datetime)
    except (ValueError, KeyError, TypeError, AttributeError, OverflowError):
        return None
    return int(fire.timestamp() * 1000)


def is_valid_cron(schedule: str) -> bool:
    return next_run_at(schedule, now=0) is not None


def describe_schedule(schedule: str) -> str:
    """Human label for common presets, the raw expression otherwise."""
    return _PRESETS.get(schedule.strip(), schedule)
